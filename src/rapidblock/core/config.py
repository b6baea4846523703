"""Core configuration dataclasses.

We keep config parsing outside the core, but these types define the shape
the core and the backends expect so the app layer can build them safely.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class ApplyMode(enum.Enum):
    """How a server's domain blocks are reached."""

    NOOP = "noop"
    MASTODON_3X_SQL = "mastodon-3.x-sql"
    MASTODON_4X_SQL = "mastodon-4.x-sql"
    MASTODON_4X_REST = "mastodon-4.x-rest"

    @property
    def is_sql(self) -> bool:
        return self in (ApplyMode.MASTODON_3X_SQL, ApplyMode.MASTODON_4X_SQL)

    @property
    def uses_legacy_audit_log(self) -> bool:
        # Mastodon 3.x stores a serialized change record per admin action.
        return self is ApplyMode.MASTODON_3X_SQL

    @classmethod
    def parse(cls, value: object) -> "ApplyMode":
        if isinstance(value, ApplyMode):
            return value
        text = "" if value is None else str(value).strip().lower()
        for member in cls:
            if text == member.value:
                return member
        alias = _MODE_ALIASES.get(text)
        if alias is None:
            raise ValueError(f"unknown apply mode {value!r}")
        return alias


_MODE_ALIASES = {
    "": ApplyMode.NOOP,
    "mastodon-3.x": ApplyMode.MASTODON_3X_SQL,
    "mastodon-4.x": ApplyMode.MASTODON_4X_REST,
}


@dataclass(frozen=True)
class ServerConfig:
    """One target server from the config file."""

    name: str
    mode: ApplyMode
    uri: str = ""
    client_token: str = field(default="", repr=False)
