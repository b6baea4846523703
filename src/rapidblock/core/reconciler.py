"""Core reconciliation engine.

This module is backend-agnostic. It only relies on the applier port, so the
same diff/apply logic drives the SQL backend and the REST backend.

The ordering of each step matters:
1) Snapshot the actual state once
2) Build the goal record for every listed domain
3) Skip domains that already converged
4) Skip domains an administrator manages by hand
5) Insert, update, or delete through the applier

A failing applier call aborts the run. Rolling back what was already issued
is the backend's business: the SQL backend does it via its transaction, the
REST backend cannot.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

from rapidblock.core.models import (
    SENTINEL_PRIVATE_COMMENT,
    ApplyStats,
    DesiredBlock,
    DesiredDocument,
    DomainBlock,
    Severity,
)
from rapidblock.core.ports import ApplierPort

LOGGER = logging.getLogger(__name__)


class ApplyError(RuntimeError):
    """An applier call failed; the run was aborted at this domain."""

    def __init__(self, operation: str, domain: Optional[str], cause: BaseException) -> None:
        if domain is None:
            message = f"failed to {operation} the existing domain blocks: {cause}"
        else:
            message = f"failed to {operation} domain block {domain!r}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.domain = domain


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_goal(domain: str, desired: DesiredBlock, now: datetime) -> DomainBlock:
    """Return the record we want the server to hold for ``domain``.

    The media/reports/obfuscate flags are never switched on by this tool.
    """

    if desired.is_blocked:
        public_comment: Optional[str] = desired.reason
        severity = Severity.SUSPEND
    else:
        public_comment = None
        severity = Severity.NOOP
    return DomainBlock(
        domain=domain,
        private_comment=SENTINEL_PRIVATE_COMMENT,
        public_comment=public_comment,
        created_at=now,
        updated_at=now,
        severity=severity,
        reject_media=False,
        reject_reports=False,
        obfuscate=False,
    )


class BlockReconciler:
    """Drives one applier toward the state described by a blocklist document."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow

    def apply(self, applier: ApplierPort, document: DesiredDocument) -> ApplyStats:
        """Diff the document against the applier's snapshot and issue the mutations."""

        existing_blocks: dict[str, DomainBlock] = {}
        try:
            applier.query(existing_blocks)
        except Exception as exc:
            raise ApplyError("query", None, exc) from exc

        now = self._clock()
        stats = ApplyStats()
        # Sorted iteration keeps the audit trail identical between runs.
        for domain in sorted(document.blocks):
            desired = document.blocks[domain]
            goal = build_goal(domain, desired, now)

            existing = existing_blocks.get(domain)
            if existing is not None:
                goal = replace(
                    goal,
                    id=existing.id,
                    created_at=existing.created_at,
                    updated_at=existing.updated_at,
                )
                if existing == goal:
                    continue
                if existing.private_comment != SENTINEL_PRIVATE_COMMENT:
                    # An admin made a local decision for this domain; leave it alone.
                    LOGGER.info("Skipping %s: block is managed by an administrator", domain)
                    continue

            goal = replace(goal, updated_at=now)

            if desired.is_blocked and existing is not None:
                self._call(applier.update, "update", goal)
                stats.update_count += 1
            elif desired.is_blocked:
                self._call(applier.insert, "insert", goal)
                stats.insert_count += 1
            elif existing is not None:
                # The domain no longer qualifies for a block.
                self._call(applier.delete, "delete", goal)
                stats.delete_count += 1

        return stats

    @staticmethod
    def _call(operation: Callable[[DomainBlock], None], name: str, block: DomainBlock) -> None:
        try:
            operation(block)
        except Exception as exc:
            raise ApplyError(name, block.domain, exc) from exc
        LOGGER.info("Applied %s for %s (severity=%s)", name, block.domain, block.severity.label)
