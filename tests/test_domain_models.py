from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from priorart_engine.models import (
    CanonicalRecord,
    DetailRecord,
    DetailStatus,
    RecordKind,
    RunStatus,
    isoformat,
    merge_records,
    parse_timestamp,
)


def test_merge_records_keeps_populated_fields() -> None:
    existing = CanonicalRecord(
        record_id="US1B2",
        kind=RecordKind.PATENT,
        title="Solar brush",
        cpc_codes=("B08B1/00",),
        extras={"family_id": "F1", "kind": "B2"},
        first_seen="2024-01-01T00:00:00+00:00",
        last_seen="2024-01-05T00:00:00+00:00",
    )
    incoming = CanonicalRecord(
        record_id="US1B2",
        kind=RecordKind.PATENT,
        title="",
        abstract="Brush on a rail",
        cpc_codes=("H02S40/10", "B08B1/00"),
        extras={"family_id": "", "kind": "B1"},
        first_seen="2024-02-01T00:00:00+00:00",
        last_seen="2024-01-03T00:00:00+00:00",
    )

    merged = merge_records(existing, incoming)

    assert merged.title == "Solar brush"
    assert merged.abstract == "Brush on a rail"
    assert merged.cpc_codes == ("B08B1/00", "H02S40/10")
    assert merged.extras == {"family_id": "F1", "kind": "B1"}
    assert merged.first_seen == "2024-01-01T00:00:00+00:00"
    assert merged.last_seen == "2024-01-05T00:00:00+00:00"
    assert merge_records(None, incoming) is incoming


def test_merge_records_rejects_different_ids() -> None:
    with pytest.raises(ValueError):
        merge_records(
            CanonicalRecord(record_id="US1B2", kind=RecordKind.PATENT),
            CanonicalRecord(record_id="US2B2", kind=RecordKind.PATENT),
        )


def test_detail_freshness() -> None:
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    recent = DetailRecord("US1B2", DetailStatus.OK, isoformat(now - timedelta(days=13)))
    stale = DetailRecord("US1B2", DetailStatus.OK, isoformat(now - timedelta(days=14)))
    failed = DetailRecord("US1B2", DetailStatus.FAILED, isoformat(now))
    assert recent.is_fresh(now, 14)
    assert not stale.is_fresh(now, 14)
    assert not failed.is_fresh(now, 14)


def test_terminal_statuses() -> None:
    terminal = {status for status in RunStatus if status.is_terminal}
    assert terminal == {
        RunStatus.COMPLETED,
        RunStatus.COMPLETED_WITH_WARNINGS,
        RunStatus.CREDIT_EXHAUSTED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
    }


def test_timestamps_are_utc() -> None:
    naive = datetime(2024, 1, 1, 12, 0)
    assert isoformat(naive) == "2024-01-01T12:00:00+00:00"
    assert isoformat(None) is None
    assert parse_timestamp("2024-01-01T12:00:00") == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
    assert parse_timestamp("") is None
