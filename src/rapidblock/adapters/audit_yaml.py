"""Legacy admin action log payload.

Mastodon 3.x keeps a YAML dump of the changed DomainBlock in
admin_action_logs.recorded_changes, and reads it back with Psych. The dump
wraps each timestamp in an ActiveSupport::TimeWithZone object whose ``utc``
and ``time`` entries are the *same* node (an anchor plus an alias). Psych
restores that sharing, so a second copy of equal text is not equivalent.

We build the document out of PyYAML nodes. The serializer anchors any node
object that appears twice, which gives us the alias for free as long as we
reference one node object in both places.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import yaml
from yaml.nodes import MappingNode, Node, ScalarNode

from rapidblock.core.models import DomainBlock

TIME_WITH_ZONE_TAG = "!ruby/object:ActiveSupport::TimeWithZone"
TIME_ZONE_TAG = "!ruby/object:ActiveSupport::TimeZone"
ZONE_NAME = "Etc/UTC"

_STR = "tag:yaml.org,2002:str"
_INT = "tag:yaml.org,2002:int"
_BOOL = "tag:yaml.org,2002:bool"
_NULL = "tag:yaml.org,2002:null"
_MAP = "tag:yaml.org,2002:map"


def format_ruby_time(value: Optional[datetime]) -> str:
    """Format like Ruby's Time#to_s with nanoseconds: ``2024-01-02 03:04:05.000000000 +00:00``."""

    if value is None:
        value = datetime.fromtimestamp(0, timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    offset = value.strftime("%z") or "+0000"
    return "{}.{:06d}000 {}:{}".format(
        value.strftime("%Y-%m-%d %H:%M:%S"),
        value.microsecond,
        offset[:3],
        offset[3:],
    )


def _str(value: str) -> ScalarNode:
    return ScalarNode(_STR, value)


def _bool(value: bool) -> ScalarNode:
    return ScalarNode(_BOOL, "true" if value else "false")


def _nullable_str(value: Optional[str]) -> ScalarNode:
    if value is None:
        return ScalarNode(_NULL, "null")
    return _str(value)


def _mapping(tag: str, *pairs: tuple[str, Node]) -> MappingNode:
    return MappingNode(tag, [(_str(key), node) for key, node in pairs], flow_style=False)


def _time_with_zone(value: Optional[datetime]) -> MappingNode:
    # Build once, reference twice: the serializer turns the second
    # reference into an alias of the first.
    shared = _str(format_ruby_time(value))
    zone = _mapping(TIME_ZONE_TAG, ("name", _str(ZONE_NAME)))
    return _mapping(
        TIME_WITH_ZONE_TAG,
        ("utc", shared),
        ("zone", zone),
        ("time", shared),
    )


def build_recorded_changes_node(block: DomainBlock) -> MappingNode:
    return _mapping(
        _MAP,
        ("id", ScalarNode(_INT, str(block.id or 0))),
        ("domain", _str(block.domain)),
        ("created_at", _time_with_zone(block.created_at)),
        ("updated_at", _time_with_zone(block.updated_at)),
        ("severity", _str(block.severity.label)),
        ("reject_media", _bool(block.reject_media)),
        ("reject_reports", _bool(block.reject_reports)),
        ("private_comment", _nullable_str(block.private_comment)),
        ("public_comment", _nullable_str(block.public_comment)),
        ("obfuscate", _bool(block.obfuscate)),
    )


def build_recorded_changes(block: DomainBlock) -> str:
    """Render the legacy ``recorded_changes`` column value for ``block``."""

    return yaml.serialize(
        build_recorded_changes_node(block),
        Dumper=yaml.SafeDumper,
        explicit_start=True,
        indent=2,
        allow_unicode=True,
    )
