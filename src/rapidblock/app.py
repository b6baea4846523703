"""Application entry point for the rapidblock apply tool."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional, TextIO

from dotenv import load_dotenv

from rapidblock import __version__, settings
from rapidblock.adapters.blockfile import load_block_file
from rapidblock.adapters.rest_storage import apply_rest
from rapidblock.adapters.sql_storage import apply_sql, engine_from_uri
from rapidblock.core.config import ApplyMode, ServerConfig
from rapidblock.core.models import ApplyStats, DesiredDocument
from rapidblock.core.reconciler import BlockReconciler

NAME = "rapidblock"


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict, servers: list[ServerConfig]) -> list[str]:
    # Client tokens are always masked; extra env vars only when asked to.
    values = [server.client_token for server in servers if server.client_token]
    redact_cfg = config.get("redact", {}) if config else {}
    if redact_cfg.get("enabled", False):
        for name in redact_cfg.get("patterns", []):
            value = os.getenv(name)
            if value:
                values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(config: dict, servers: list[ServerConfig]) -> None:
    if not config.get("enabled", True):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config, servers)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        # stdout carries the per-server summary, so logs go to stderr.
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/rapidblock.log")
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers, force=True)


def apply_server(
    server: ServerConfig,
    document: DesiredDocument,
    reconciler: Optional[BlockReconciler] = None,
) -> ApplyStats:
    """Reconcile one server with the backend its mode selects."""

    reconciler = reconciler or BlockReconciler()
    if server.mode is ApplyMode.NOOP:
        return ApplyStats()
    if server.mode.is_sql:
        engine = engine_from_uri(server.uri)
        try:
            return apply_sql(engine, document, server.mode, reconciler=reconciler)
        finally:
            engine.dispose()
    if server.mode is ApplyMode.MASTODON_4X_REST:
        return apply_rest(server, document, reconciler=reconciler)
    raise RuntimeError(f"mode {server.mode.value!r} is not supported")


def _apply(config_file: Optional[str], data_file: str, stdout: TextIO) -> int:
    config = settings.load_config(config_file)
    servers = settings.build_servers(config)
    _configure_logging(settings.logging_config(config), servers)
    logger = logging.getLogger(__name__)

    document = load_block_file(data_file)
    logger.info("Loaded %s block entries from %s", len(document.blocks), data_file)

    reconciler = BlockReconciler()
    for server in servers:
        logger.info("Applying to %s (%s)", server.name, server.mode.value)
        try:
            stats = apply_server(server, document, reconciler=reconciler)
        except Exception:
            # SQL targets were rolled back; REST targets keep what was applied.
            logger.exception("Failed to apply blocklist to %s", server.name)
            return 1
        for line in stats.summary_lines(server.name):
            print(line, file=stdout)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog=NAME)
    subparsers = parser.add_subparsers(dest="command")

    apply_parser = subparsers.add_parser(
        "apply",
        help="Applies the given blocklist file to the configured servers",
    )
    apply_parser.add_argument(
        "-c",
        "--config-file",
        default=None,
        help="JSON/YAML config that lists the servers to connect to",
    )
    apply_parser.add_argument(
        "-d",
        "--data-file",
        required=True,
        help="Path to the verified blocklist file to apply",
    )
    subparsers.add_parser("version", help="Print the version")

    args = parser.parse_args(argv)
    if args.command == "version":
        print(__version__)
        return 0
    if args.command == "apply":
        try:
            return _apply(args.config_file, args.data_file, sys.stdout)
        except (OSError, ValueError) as exc:
            logging.getLogger(__name__).error("%s", exc)
            return 1
    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
