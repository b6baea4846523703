from __future__ import annotations

from datetime import datetime, timezone

import pytest
import yaml
from sqlalchemy import create_engine, insert, select

from rapidblock.adapters.sql_storage import (
    CURRENT_ADMIN_ACTION_LOGS,
    CURRENT_DOMAIN_BLOCKS,
    LEGACY_ADMIN_ACTION_LOGS,
    LEGACY_DOMAIN_BLOCKS,
    SERVER_ACCOUNT_ID,
    SQLApplier,
    apply_sql,
    metadata_for_mode,
)
from rapidblock.core.config import ApplyMode
from rapidblock.core.models import SENTINEL_PRIVATE_COMMENT, DesiredDocument, DomainBlock, Severity
from rapidblock.core.reconciler import ApplyError, BlockReconciler

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
EARLIER = datetime(2024, 1, 1, 8, 30, 0)


def _engine(tmp_path, mode: ApplyMode):
    engine = create_engine(f"sqlite:///{tmp_path / 'mastodon.db'}")
    metadata_for_mode(mode).create_all(engine)
    return engine


def _document(blocks: dict[str, dict]) -> DesiredDocument:
    return DesiredDocument.from_dict({"@spec": "https://rapidblock.org/spec/v1/", "blocks": blocks})


def _seed(engine, table, **values) -> None:
    row = dict(
        private_comment=SENTINEL_PRIVATE_COMMENT,
        public_comment="spam",
        created_at=EARLIER,
        updated_at=EARLIER,
        severity=1,
        reject_media=False,
        reject_reports=False,
        obfuscate=False,
    )
    row.update(values)
    with engine.begin() as conn:
        conn.execute(insert(table).values(**row))


def _reconciler() -> BlockReconciler:
    return BlockReconciler(clock=lambda: NOW)


def test_current_mode_insert_update_delete_with_audit_rows(tmp_path) -> None:
    mode = ApplyMode.MASTODON_4X_SQL
    engine = _engine(tmp_path, mode)
    _seed(engine, CURRENT_DOMAIN_BLOCKS, id=1, domain="stale.example", public_comment="old")
    _seed(engine, CURRENT_DOMAIN_BLOCKS, id=2, domain="gone.example")
    _seed(engine, CURRENT_DOMAIN_BLOCKS, id=3, domain="manual.example", private_comment=None)

    document = _document(
        {
            "new.example": {"isBlocked": True, "reason": "abuse"},
            "stale.example": {"isBlocked": True, "reason": "fresh"},
            "gone.example": {"isBlocked": False},
            "manual.example": {"isBlocked": False},
        }
    )
    stats = apply_sql(engine, document, mode, reconciler=_reconciler())

    assert (stats.insert_count, stats.update_count, stats.delete_count) == (1, 1, 1)
    with engine.connect() as conn:
        blocks = {row.domain: row for row in conn.execute(select(CURRENT_DOMAIN_BLOCKS))}
        logs = list(conn.execute(select(CURRENT_ADMIN_ACTION_LOGS).order_by(CURRENT_ADMIN_ACTION_LOGS.c.id)))

    assert set(blocks) == {"new.example", "stale.example", "manual.example"}
    assert blocks["new.example"].severity == int(Severity.SUSPEND)
    assert blocks["new.example"].private_comment == SENTINEL_PRIVATE_COMMENT
    assert blocks["stale.example"].public_comment == "fresh"
    assert blocks["stale.example"].created_at == EARLIER
    assert blocks["stale.example"].updated_at == NOW.replace(tzinfo=None)
    assert blocks["manual.example"].private_comment is None

    # Domains are processed in sorted order: gone, new, stale.
    assert [(log.action, log.human_identifier) for log in logs] == [
        ("destroy", "gone.example"),
        ("create", "new.example"),
        ("update", "stale.example"),
    ]
    assert all(log.account_id == SERVER_ACCOUNT_ID for log in logs)
    assert all(log.target_type == "DomainBlock" for log in logs)
    assert all((log.route_param, log.permalink) == ("", "") for log in logs)
    assert logs[0].target_id == 2
    assert logs[1].target_id == blocks["new.example"].id
    assert logs[2].target_id == 1


def test_legacy_mode_writes_yaml_change_record(tmp_path) -> None:
    mode = ApplyMode.MASTODON_3X_SQL
    engine = _engine(tmp_path, mode)

    apply_sql(engine, _document({"bad.example": {"isBlocked": True, "reason": "spam"}}), mode, reconciler=_reconciler())

    with engine.connect() as conn:
        block = conn.execute(select(LEGACY_DOMAIN_BLOCKS)).one()
        log = conn.execute(select(LEGACY_ADMIN_ACTION_LOGS)).one()

    assert log.action == "create"
    assert log.target_id == block.id
    assert log.recorded_changes.startswith("---")
    fields = _yaml_fields(log.recorded_changes)
    assert fields["id"].value == str(block.id)
    assert fields["domain"].value == "bad.example"
    assert "*id001" in log.recorded_changes


def _yaml_fields(text: str) -> dict:
    root = yaml.compose(text, Loader=yaml.SafeLoader)
    return {key.value: value for key, value in root.value}


def test_legacy_mode_logs_update_and_destroy(tmp_path) -> None:
    mode = ApplyMode.MASTODON_3X_SQL
    engine = _engine(tmp_path, mode)
    _seed(engine, LEGACY_DOMAIN_BLOCKS, id=4, domain="stale.example", public_comment="old")
    _seed(engine, LEGACY_DOMAIN_BLOCKS, id=6, domain="gone.example")

    document = _document(
        {
            "stale.example": {"isBlocked": True, "reason": "fresh"},
            "gone.example": {"isBlocked": False},
        }
    )
    stats = apply_sql(engine, document, mode, reconciler=_reconciler())

    assert (stats.insert_count, stats.update_count, stats.delete_count) == (0, 1, 1)
    with engine.connect() as conn:
        domains = [row.domain for row in conn.execute(select(LEGACY_DOMAIN_BLOCKS))]
        logs = list(conn.execute(select(LEGACY_ADMIN_ACTION_LOGS).order_by(LEGACY_ADMIN_ACTION_LOGS.c.id)))

    assert domains == ["stale.example"]
    assert [(log.action, log.target_id) for log in logs] == [("destroy", 6), ("update", 4)]
    assert all(log.account_id == SERVER_ACCOUNT_ID for log in logs)

    destroyed = _yaml_fields(logs[0].recorded_changes)
    assert destroyed["id"].value == "6"
    assert destroyed["domain"].value == "gone.example"

    updated = _yaml_fields(logs[1].recorded_changes)
    assert updated["id"].value == "4"
    assert updated["public_comment"].value == "fresh"
    created_at = {key.value: value for key, value in updated["created_at"].value}
    updated_at = {key.value: value for key, value in updated["updated_at"].value}
    assert created_at["utc"] is created_at["time"]
    assert created_at["utc"].value == "2024-01-01 08:30:00.000000000 +00:00"
    assert updated_at["utc"] is updated_at["time"]
    assert updated_at["time"].value == "2024-05-01 12:00:00.000000000 +00:00"


def test_second_run_changes_nothing(tmp_path) -> None:
    mode = ApplyMode.MASTODON_4X_SQL
    engine = _engine(tmp_path, mode)
    document = _document({"bad.example": {"isBlocked": True, "reason": "spam"}})

    apply_sql(engine, document, mode, reconciler=_reconciler())
    again = apply_sql(engine, document, mode, reconciler=_reconciler())

    assert again.total == 0
    with engine.connect() as conn:
        assert len(list(conn.execute(select(CURRENT_ADMIN_ACTION_LOGS)))) == 1


def test_failure_rolls_back_the_whole_run(tmp_path, monkeypatch) -> None:
    mode = ApplyMode.MASTODON_4X_SQL
    engine = _engine(tmp_path, mode)
    original_insert = SQLApplier.insert

    def flaky_insert(self, block: DomainBlock) -> None:
        if block.domain == "b.example":
            raise RuntimeError("disk full")
        original_insert(self, block)

    monkeypatch.setattr(SQLApplier, "insert", flaky_insert)
    document = _document(
        {
            "a.example": {"isBlocked": True, "reason": "r"},
            "b.example": {"isBlocked": True, "reason": "r"},
        }
    )

    with pytest.raises(ApplyError):
        apply_sql(engine, document, mode, reconciler=_reconciler())

    with engine.connect() as conn:
        assert list(conn.execute(select(CURRENT_DOMAIN_BLOCKS))) == []
        assert list(conn.execute(select(CURRENT_ADMIN_ACTION_LOGS))) == []


def test_query_reads_rows_as_domain_blocks(tmp_path) -> None:
    mode = ApplyMode.MASTODON_4X_SQL
    engine = _engine(tmp_path, mode)
    _seed(engine, CURRENT_DOMAIN_BLOCKS, id=5, domain="x.example", severity=0, reject_media=True)

    out: dict[str, DomainBlock] = {}
    with engine.begin() as conn:
        SQLApplier(conn, mode).query(out)

    block = out["x.example"]
    assert block.id == 5
    assert block.severity is Severity.SILENCE
    assert block.reject_media is True
    assert block.created_at == EARLIER.replace(tzinfo=timezone.utc)


def test_rest_mode_is_rejected(tmp_path) -> None:
    engine = _engine(tmp_path, ApplyMode.MASTODON_4X_SQL)
    with engine.begin() as conn:
        with pytest.raises(ValueError):
            SQLApplier(conn, ApplyMode.MASTODON_4X_REST)
