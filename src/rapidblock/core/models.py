"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to the SQL schema or the REST wire format.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Optional, Union

# Value of private_comment that marks a domain block as managed by this tool.
SENTINEL_PRIVATE_COMMENT = "RapidBlock"

SPEC_V1 = "https://rapidblock.org/spec/v1/"


class Severity(enum.IntEnum):
    """Moderation level of a domain block, as stored in the database."""

    SILENCE = 0
    SUSPEND = 1
    NOOP = 2

    @property
    def label(self) -> str:
        """Symbolic name used by the REST API and the audit log."""

        return self.name.lower()

    @classmethod
    def parse(cls, value: Union[int, str, "Severity"]) -> "Severity":
        if isinstance(value, bool):
            raise ValueError(f"unknown severity value {value!r}")
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        for member in cls:
            if member.label == text.lower():
                return member
        raise ValueError(f"unknown severity value {value!r}")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Accepts datetimes (naive values are treated as UTC), ISO strings with a
    trailing ``Z``, and None/empty strings which yield None.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class DesiredBlock:
    """One entry of a published blocklist."""

    domain: str
    is_blocked: bool
    reason: str = ""
    tags: tuple[str, ...] = ()
    date_requested: Optional[datetime] = None
    date_decided: Optional[datetime] = None

    @classmethod
    def from_dict(cls, domain: str, raw: Mapping[str, Any]) -> "DesiredBlock":
        # Tags behave as an ordered set: first occurrence wins.
        tags = tuple(dict.fromkeys(str(tag) for tag in raw.get("tags") or []))
        return cls(
            domain=domain,
            is_blocked=bool(raw.get("isBlocked", False)),
            reason=str(raw.get("reason") or ""),
            tags=tags,
            date_requested=parse_timestamp(raw.get("dateRequested")),
            date_decided=parse_timestamp(raw.get("dateDecided")),
        )


@dataclass(frozen=True)
class DesiredDocument:
    """A verified blocklist document: the desired state for every listed domain."""

    spec: str
    published_at: Optional[datetime]
    blocks: Mapping[str, DesiredBlock]

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DesiredDocument":
        raw_blocks = raw.get("blocks") or {}
        if not isinstance(raw_blocks, Mapping):
            raise ValueError("blocks must be a mapping of domain to block entry")
        blocks = {
            str(domain): DesiredBlock.from_dict(str(domain), entry or {})
            for domain, entry in raw_blocks.items()
        }
        return cls(
            spec=str(raw.get("@spec") or ""),
            published_at=parse_timestamp(raw.get("publishedAt")),
            blocks=blocks,
        )


@dataclass(frozen=True)
class DomainBlock:
    """A domain block as the target server currently stores it.

    ``private_comment`` and ``public_comment`` use None for "not set"; an
    empty string is a distinct, explicit value.
    """

    domain: str
    id: Optional[int] = None
    private_comment: Optional[str] = None
    public_comment: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    severity: Severity = Severity.SILENCE
    reject_media: bool = False
    reject_reports: bool = False
    obfuscate: bool = False

    @property
    def is_managed(self) -> bool:
        return self.private_comment == SENTINEL_PRIVATE_COMMENT

    @classmethod
    def from_json(cls, raw: Mapping[str, Any]) -> "DomainBlock":
        """Decode a record from the admin REST API."""

        if not isinstance(raw, Mapping):
            raise ValueError(f"expected a JSON object for a domain block, got {type(raw).__name__}")
        raw_id = raw.get("id")
        return cls(
            domain=str(raw["domain"]),
            id=int(raw_id) if raw_id not in (None, "") else None,
            private_comment=raw.get("private_comment"),
            public_comment=raw.get("public_comment"),
            created_at=parse_timestamp(raw.get("created_at")),
            updated_at=parse_timestamp(raw.get("updated_at")),
            severity=Severity.parse(raw.get("severity", Severity.SILENCE)),
            reject_media=bool(raw.get("reject_media", False)),
            reject_reports=bool(raw.get("reject_reports", False)),
            obfuscate=bool(raw.get("obfuscate", False)),
        )


@dataclass
class ApplyStats:
    """Number of mutations issued during one reconciliation run."""

    insert_count: int = 0
    update_count: int = 0
    delete_count: int = 0

    @property
    def total(self) -> int:
        return self.insert_count + self.update_count + self.delete_count

    def summary_lines(self, server_name: str) -> Iterator[str]:
        if self.insert_count:
            yield f"{server_name}: added {self.insert_count} new block(s)"
        if self.update_count:
            yield f"{server_name}: modified {self.update_count} existing block(s)"
        if self.delete_count:
            yield f"{server_name}: deleted {self.delete_count} existing block(s) that are now remediated"
