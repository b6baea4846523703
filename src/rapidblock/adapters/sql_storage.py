"""SQL storage adapter.

Implements the core ApplierPort directly against Mastodon's database using
SQLAlchemy Core. One reconciliation run happens inside one transaction:
either every block change and its audit row is committed, or none is.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine

from rapidblock.adapters.audit_yaml import build_recorded_changes
from rapidblock.core.config import ApplyMode
from rapidblock.core.models import ApplyStats, DesiredDocument, DomainBlock, Severity
from rapidblock.core.reconciler import BlockReconciler

LOGGER = logging.getLogger(__name__)

# Admin actions taken by this tool are attributed to the instance actor.
SERVER_ACCOUNT_ID = -99
TARGET_TYPE_DOMAIN_BLOCK = "DomainBlock"
ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DESTROY = "destroy"

# SQLite only auto-increments INTEGER PRIMARY KEY columns.
_ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


def _domain_blocks_table(metadata: MetaData) -> Table:
    return Table(
        "domain_blocks",
        metadata,
        Column("id", _ID_TYPE, primary_key=True, autoincrement=True),
        Column("domain", String, nullable=False, unique=True),
        Column("private_comment", Text, nullable=True),
        Column("public_comment", Text, nullable=True),
        Column("created_at", DateTime, nullable=False),
        Column("updated_at", DateTime, nullable=False),
        Column("severity", Integer, nullable=False, default=0),
        Column("reject_media", Boolean, nullable=False, default=False),
        Column("reject_reports", Boolean, nullable=False, default=False),
        Column("obfuscate", Boolean, nullable=False, default=False),
    )


def _audit_columns() -> list[Column]:
    return [
        Column("id", _ID_TYPE, primary_key=True, autoincrement=True),
        Column("created_at", DateTime, nullable=False),
        Column("updated_at", DateTime, nullable=False),
        Column("account_id", BigInteger, nullable=True),
        Column("action", String, nullable=False, default=""),
        Column("target_type", String, nullable=True),
        Column("target_id", BigInteger, nullable=True),
    ]


# Mastodon 3.x: the change itself is serialized into recorded_changes.
LEGACY_METADATA = MetaData()
LEGACY_DOMAIN_BLOCKS = _domain_blocks_table(LEGACY_METADATA)
LEGACY_ADMIN_ACTION_LOGS = Table(
    "admin_action_logs",
    LEGACY_METADATA,
    *_audit_columns(),
    Column("recorded_changes", Text, nullable=False, default=""),
)

# Mastodon 4.x: a human readable identifier replaces the change record.
CURRENT_METADATA = MetaData()
CURRENT_DOMAIN_BLOCKS = _domain_blocks_table(CURRENT_METADATA)
CURRENT_ADMIN_ACTION_LOGS = Table(
    "admin_action_logs",
    CURRENT_METADATA,
    *_audit_columns(),
    Column("human_identifier", String, nullable=True),
    Column("route_param", String, nullable=True),
    Column("permalink", String, nullable=True),
)


def metadata_for_mode(mode: ApplyMode) -> MetaData:
    """Return the schema used for ``mode`` (handy for creating test databases)."""

    return LEGACY_METADATA if mode.uses_legacy_audit_log else CURRENT_METADATA


def _to_db_time(value: Optional[datetime]) -> datetime:
    # The target columns are "timestamp without time zone" holding UTC.
    if value is None:
        value = datetime.now(timezone.utc)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SQLApplier:
    """Applier bound to one open transaction; satisfies the ApplierPort contract."""

    def __init__(self, connection: Connection, mode: ApplyMode) -> None:
        if not mode.is_sql:
            raise ValueError(f"SQLApplier does not support mode {mode.value!r}")
        self._conn = connection
        self._legacy = mode.uses_legacy_audit_log
        if self._legacy:
            self._blocks = LEGACY_DOMAIN_BLOCKS
            self._logs = LEGACY_ADMIN_ACTION_LOGS
        else:
            self._blocks = CURRENT_DOMAIN_BLOCKS
            self._logs = CURRENT_ADMIN_ACTION_LOGS

    def query(self, out: dict[str, DomainBlock]) -> None:
        """Load every domain block visible inside the transaction."""

        table = self._blocks
        rows = self._conn.execute(select(table)).mappings()
        for row in rows:
            block = DomainBlock(
                domain=row["domain"],
                id=int(row["id"]),
                private_comment=row["private_comment"],
                public_comment=row["public_comment"],
                created_at=_from_db_time(row["created_at"]),
                updated_at=_from_db_time(row["updated_at"]),
                severity=Severity.parse(row["severity"]),
                reject_media=bool(row["reject_media"]),
                reject_reports=bool(row["reject_reports"]),
                obfuscate=bool(row["obfuscate"]),
            )
            out[block.domain] = block

    def insert(self, block: DomainBlock) -> None:
        """Insert the block, then log it under its newly generated id."""

        result = self._conn.execute(
            insert(self._blocks).values(
                domain=block.domain,
                private_comment=block.private_comment,
                public_comment=block.public_comment,
                created_at=_to_db_time(block.created_at),
                updated_at=_to_db_time(block.updated_at),
                severity=int(block.severity),
                reject_media=block.reject_media,
                reject_reports=block.reject_reports,
                obfuscate=block.obfuscate,
            )
        )
        block_id = int(result.inserted_primary_key[0])
        block = replace(block, id=block_id)
        self._log_action(ACTION_CREATE, block)

    def update(self, block: DomainBlock) -> None:
        """Update the block located by id; the domain itself never changes."""

        table = self._blocks
        self._conn.execute(
            update(table)
            .where(table.c.id == block.id)
            .values(
                private_comment=block.private_comment,
                public_comment=block.public_comment,
                updated_at=_to_db_time(block.updated_at),
                severity=int(block.severity),
                reject_media=block.reject_media,
                reject_reports=block.reject_reports,
                obfuscate=block.obfuscate,
            )
        )
        self._log_action(ACTION_UPDATE, block)

    def delete(self, block: DomainBlock) -> None:
        table = self._blocks
        self._conn.execute(delete(table).where(table.c.id == block.id))
        self._log_action(ACTION_DESTROY, block)

    def _log_action(self, action: str, block: DomainBlock) -> None:
        """Append one admin_action_logs row describing ``action`` on ``block``."""

        values: dict[str, Any] = {
            "created_at": _to_db_time(block.created_at),
            "updated_at": _to_db_time(block.updated_at),
            "account_id": SERVER_ACCOUNT_ID,
            "action": action,
            "target_type": TARGET_TYPE_DOMAIN_BLOCK,
            "target_id": block.id,
        }
        if self._legacy:
            values["recorded_changes"] = build_recorded_changes(block)
        else:
            values["human_identifier"] = block.domain
            values["route_param"] = ""
            values["permalink"] = ""
        self._conn.execute(insert(self._logs).values(**values))
        LOGGER.debug("Logged %s of %s (id=%s)", action, block.domain, block.id)


def engine_from_uri(uri: str, **kwargs: Any) -> Engine:
    """Create an engine, accepting libpq style ``postgres://`` URIs."""

    if uri.startswith("postgres://"):
        uri = "postgresql+psycopg://" + uri[len("postgres://"):]
    elif uri.startswith("postgresql://"):
        uri = "postgresql+psycopg://" + uri[len("postgresql://"):]
    return create_engine(uri, **kwargs)


def apply_sql(
    engine: Engine,
    document: DesiredDocument,
    mode: ApplyMode,
    reconciler: Optional[BlockReconciler] = None,
) -> ApplyStats:
    """Run one reconciliation inside a single transaction.

    ``engine.begin()`` commits when the block exits normally and rolls back
    on any exception, including KeyboardInterrupt.
    """

    reconciler = reconciler or BlockReconciler()
    with engine.begin() as conn:
        applier = SQLApplier(conn, mode)
        stats = reconciler.apply(applier, document)
    LOGGER.info(
        "Committed %s change(s) (insert=%s update=%s delete=%s)",
        stats.total,
        stats.insert_count,
        stats.update_count,
        stats.delete_count,
    )
    return stats
