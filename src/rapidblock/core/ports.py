"""Ports (interfaces) used by the reconciler.

Ports define the minimal contract a storage backend has to satisfy so that
the same reconciliation algorithm can target either the database directly
or the admin REST API.
"""

from __future__ import annotations

from typing import Protocol

from rapidblock.core.models import DomainBlock


class ApplierPort(Protocol):
    """Storage operations required by the reconciler.

    Every mutation also records an audit entry on the backend side.
    """

    def query(self, out: dict[str, DomainBlock]) -> None:
        """Fill ``out`` with one consistent snapshot of all blocks, keyed by domain."""
        ...

    def insert(self, block: DomainBlock) -> None:
        ...

    def update(self, block: DomainBlock) -> None:
        ...

    def delete(self, block: DomainBlock) -> None:
        ...
