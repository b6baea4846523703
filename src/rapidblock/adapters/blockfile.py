"""Blocklist document loader.

Reads a RapidBlock blocklist file that an upstream step already verified
(checksum and signature). Only the structure is checked here.
"""

from __future__ import annotations

import json
import os

import yaml

from rapidblock.core.models import SPEC_V1, DesiredDocument


def load_mapping(path: str) -> dict:
    """Load a JSON file, or a YAML file when the extension says so."""

    if not os.path.exists(path):
        raise FileNotFoundError(f"File not found: {path}")

    with open(path, "r", encoding="utf-8") as handle:
        if path.lower().endswith((".yaml", ".yml")):
            raw = yaml.safe_load(handle)
        else:
            raw = json.load(handle)
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return raw


def load_block_file(path: str) -> DesiredDocument:
    raw = load_mapping(path)
    document = DesiredDocument.from_dict(raw)
    if document.spec != SPEC_V1:
        raise ValueError(f"{path}: unsupported @spec {document.spec!r}, expected {SPEC_V1!r}")
    return document
