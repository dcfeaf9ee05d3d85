"""Persistence of runs, variant hits, canonical records and details."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterable, Sequence

from ..config.models import VariantLabel
from ..errors import RunNotFoundError
from ..models import (
    CanonicalRecord,
    DetailRecord,
    DetailStatus,
    HitSource,
    IntersectionClass,
    QueryVariantRecord,
    RawResult,
    RecordKind,
    Run,
    RunStatus,
    ShortlistOrigin,
    ShortlistOverride,
    UnifiedResult,
    VariantHit,
    VariantOutcome,
    merge_records,
)
from .storage import SQLiteManager

_RUN_MUTABLE_FIELDS = frozenset(
    {"finished_at", "api_calls", "cost_estimate", "warnings", "summary"}
)
_VARIANT_MUTABLE_FIELDS = frozenset(
    {"outcome", "api_calls", "result_count", "executed_at", "error"}
)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


# ----------------------------------------------------------------------
# Row mapping helpers
# ----------------------------------------------------------------------
def _row_to_run(row: sqlite3.Row) -> Run:
    return Run(
        run_id=row["run_id"],
        bundle_id=row["bundle_id"],
        bundle_json=row["bundle_json"],
        fingerprint=row["fingerprint"],
        owner=row["owner"],
        status=RunStatus(row["status"]),
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        api_calls=row["api_calls"],
        credits_charged=row["credits_charged"],
        cost_estimate=row["cost_estimate"],
        warnings=tuple(json.loads(row["warnings"])),
        summary=row["summary"],
    )


def _row_to_variant(row: sqlite3.Row) -> QueryVariantRecord:
    return QueryVariantRecord(
        run_id=row["run_id"],
        label=VariantLabel(row["label"]),
        query=row["query"],
        num=row["num"],
        page=row["page"],
        outcome=VariantOutcome(row["outcome"]),
        api_calls=row["api_calls"],
        result_count=row["result_count"],
        executed_at=row["executed_at"],
        error=row["error"],
    )


def _record_payload(record: CanonicalRecord) -> str:
    payload = asdict(record)
    for name in ("record_id", "kind", "first_seen", "last_seen"):
        payload.pop(name)
    return _dumps(payload)


def _row_to_record(row: sqlite3.Row) -> CanonicalRecord:
    payload = json.loads(row["payload"])
    for name in ("assignees", "inventors", "cpc_codes", "ipc_codes"):
        payload[name] = tuple(payload.get(name) or ())
    return CanonicalRecord(
        record_id=row["record_id"],
        kind=RecordKind(row["kind"]),
        first_seen=row["first_seen"],
        last_seen=row["last_seen"],
        **payload,
    )


def _row_to_unified(row: sqlite3.Row) -> UnifiedResult:
    ranks = {VariantLabel(label): rank for label, rank in json.loads(row["ranks"]).items()}
    origin = row["shortlist_origin"]
    detail_status = row["detail_status"]
    return UnifiedResult(
        run_id=row["run_id"],
        record_id=row["record_id"],
        found_in=tuple(VariantLabel(label) for label in json.loads(row["found_in"])),
        ranks=ranks,
        intersection=IntersectionClass(row["intersection"]),
        score=row["score"],
        breakdown=json.loads(row["breakdown"]),
        position=row["position"],
        shortlisted=bool(row["shortlisted"]),
        shortlist_origin=ShortlistOrigin(origin) if origin else None,
        detail_status=DetailStatus(detail_status) if detail_status else None,
    )


def _row_to_detail(row: sqlite3.Row) -> DetailRecord:
    payload = json.loads(row["payload"])
    return DetailRecord(
        record_id=row["record_id"],
        status=DetailStatus(row["status"]),
        fetched_at=row["fetched_at"],
        claims=tuple(payload.get("claims") or ()),
        description=payload.get("description") or "",
        classifications=tuple(payload.get("classifications") or ()),
        patent_citations=tuple(payload.get("patent_citations") or ()),
        non_patent_citations=tuple(payload.get("non_patent_citations") or ()),
        events=tuple(payload.get("events") or ()),
        worldwide_applications=tuple(payload.get("worldwide_applications") or ()),
        pdf_link=payload.get("pdf_link") or "",
        error=row["error"],
    )


class RunRepository:
    """SQLite-backed store for every run artifact.

    Writes are serialised through one lock and each public method commits
    its own transaction, so callers on the variant worker threads never see
    half-written state.
    """

    def __init__(self, manager: SQLiteManager, db_path: Path) -> None:
        self.manager = manager
        self.db_path = db_path
        self._conn = self.manager.connect(db_path)
        self._lock = self.manager.lock_for(db_path)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    def create_run(self, run: Run, variants: Sequence[QueryVariantRecord] = ()) -> None:
        """Insert the run row and its variant rows in one transaction."""

        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO runs(run_id, bundle_id, bundle_json, fingerprint, owner, status,
                                 started_at, finished_at, api_calls, credits_charged,
                                 cost_estimate, warnings, summary)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.run_id,
                    run.bundle_id,
                    run.bundle_json,
                    run.fingerprint,
                    run.owner,
                    run.status.value,
                    run.started_at,
                    run.finished_at,
                    run.api_calls,
                    run.credits_charged,
                    run.cost_estimate,
                    _dumps(list(run.warnings)),
                    run.summary,
                ),
            )
            for variant in variants:
                self._conn.execute(
                    """
                    INSERT INTO query_variants(run_id, label, query, num, page, outcome)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        variant.run_id,
                        variant.label.value,
                        variant.query,
                        variant.num,
                        variant.page,
                        variant.outcome.value,
                    ),
                )

    def get_run(self, run_id: str) -> Run:
        with self._lock:
            row = self._conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        if row is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return _row_to_run(row)

    def list_runs(self, limit: int = 20) -> list[Run]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM runs ORDER BY started_at DESC, run_id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_row_to_run(row) for row in rows]

    def compare_and_set_status(
        self, run_id: str, expected: RunStatus, new: RunStatus, **fields: Any
    ) -> bool:
        """Move ``expected`` → ``new`` atomically; return False if the status moved on."""

        assignments, values = self._run_assignments(fields)
        assignments.insert(0, "status = ?")
        values.insert(0, new.value)
        with self._lock, self._conn:
            cursor = self._conn.execute(
                f"UPDATE runs SET {', '.join(assignments)} WHERE run_id = ? AND status = ?",
                (*values, run_id, expected.value),
            )
        return cursor.rowcount == 1

    def update_run(self, run_id: str, **fields: Any) -> None:
        assignments, values = self._run_assignments(fields)
        if not assignments:
            return
        with self._lock, self._conn:
            self._conn.execute(
                f"UPDATE runs SET {', '.join(assignments)} WHERE run_id = ?",
                (*values, run_id),
            )

    def add_api_calls(self, run_id: str, count: int, cost_per_call: float) -> None:
        if count <= 0:
            return
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE runs
                SET api_calls = api_calls + ?,
                    cost_estimate = ROUND((api_calls + ?) * ?, 6)
                WHERE run_id = ?
                """,
                (count, count, cost_per_call, run_id),
            )

    @staticmethod
    def _run_assignments(fields: dict[str, Any]) -> tuple[list[str], list[Any]]:
        unknown = set(fields) - _RUN_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported run fields: {sorted(unknown)}")
        assignments: list[str] = []
        values: list[Any] = []
        for name, value in fields.items():
            if name == "warnings":
                value = _dumps(list(value))
            assignments.append(f"{name} = ?")
            values.append(value)
        return assignments, values

    # ------------------------------------------------------------------
    # Variants and raw pages
    # ------------------------------------------------------------------
    def list_variants(self, run_id: str) -> list[QueryVariantRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM query_variants WHERE run_id = ?", (run_id,)
            ).fetchall()
        order = {label: index for index, label in enumerate(VariantLabel)}
        variants = [_row_to_variant(row) for row in rows]
        return sorted(variants, key=lambda item: order[item.label])

    def update_variant(self, run_id: str, label: VariantLabel, **fields: Any) -> None:
        unknown = set(fields) - _VARIANT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported variant fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = [f"{name} = ?" for name in fields]
        values = [_enum_value(value) for value in fields.values()]
        with self._lock, self._conn:
            self._conn.execute(
                f"UPDATE query_variants SET {', '.join(assignments)} WHERE run_id = ? AND label = ?",
                (*values, run_id, label.value),
            )

    def insert_raw_result(self, raw: RawResult) -> int:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                INSERT INTO raw_results(run_id, label, source, engine, page, payload, captured_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    raw.run_id,
                    raw.label.value,
                    raw.source.value,
                    raw.engine,
                    raw.page,
                    _dumps(raw.payload),
                    raw.captured_at,
                ),
            )
        return int(cursor.lastrowid)

    def list_raw_results(self, run_id: str, label: VariantLabel | None = None) -> list[RawResult]:
        query = "SELECT * FROM raw_results WHERE run_id = ?"
        params: list[Any] = [run_id]
        if label is not None:
            query += " AND label = ?"
            params.append(label.value)
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY raw_id", params).fetchall()
        return [
            RawResult(
                run_id=row["run_id"],
                label=VariantLabel(row["label"]),
                source=HitSource(row["source"]),
                engine=row["engine"],
                page=row["page"],
                payload=json.loads(row["payload"]),
                captured_at=row["captured_at"],
                raw_id=row["raw_id"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Canonical records and hits
    # ------------------------------------------------------------------
    def get_record(self, record_id: str) -> CanonicalRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM canonical_records WHERE record_id = ?", (record_id,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def get_records(self, record_ids: Iterable[str]) -> dict[str, CanonicalRecord]:
        ids = list(dict.fromkeys(record_ids))
        records: dict[str, CanonicalRecord] = {}
        with self._lock:
            # Chunked to stay below SQLite's bound parameter limit
            for start in range(0, len(ids), 500):
                chunk = ids[start : start + 500]
                placeholders = ", ".join("?" for _ in chunk)
                rows = self._conn.execute(
                    f"SELECT * FROM canonical_records WHERE record_id IN ({placeholders})", chunk
                ).fetchall()
                for row in rows:
                    records[row["record_id"]] = _row_to_record(row)
        return records

    def upsert_record(self, record: CanonicalRecord) -> CanonicalRecord:
        """Merge ``record`` into the stored row and return the merged record."""

        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT * FROM canonical_records WHERE record_id = ?", (record.record_id,)
            ).fetchone()
            merged = merge_records(_row_to_record(row) if row else None, record)
            self._conn.execute(
                """
                INSERT INTO canonical_records(record_id, kind, payload, first_seen, last_seen)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(record_id) DO UPDATE SET
                    payload = excluded.payload,
                    first_seen = excluded.first_seen,
                    last_seen = excluded.last_seen
                """,
                (
                    merged.record_id,
                    merged.kind.value,
                    _record_payload(merged),
                    merged.first_seen,
                    merged.last_seen,
                ),
            )
        return merged

    def snapshot_records(self, run_id: str, records: Iterable[CanonicalRecord]) -> None:
        """Freeze the scoring view of ``records`` for ``run_id``; existing rows are kept."""

        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT OR IGNORE INTO run_records(run_id, record_id, kind, payload, first_seen, last_seen)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        run_id,
                        record.record_id,
                        record.kind.value,
                        _record_payload(record),
                        record.first_seen,
                        record.last_seen,
                    )
                    for record in records
                ],
            )

    def get_run_records(self, run_id: str) -> dict[str, CanonicalRecord]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM run_records WHERE run_id = ?", (run_id,)).fetchall()
        return {row["record_id"]: _row_to_record(row) for row in rows}

    def insert_hit(self, hit: VariantHit) -> bool:
        """Insert a hit once; returns False when the identity already exists."""

        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO variant_hits(run_id, label, record_id, rank, snippet, source)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (hit.run_id, hit.label.value, hit.record_id, hit.rank, hit.snippet, hit.source.value),
            )
        return cursor.rowcount == 1

    def list_hits(self, run_id: str) -> list[VariantHit]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM variant_hits WHERE run_id = ? ORDER BY label, rank, record_id",
                (run_id,),
            ).fetchall()
        return [
            VariantHit(
                run_id=row["run_id"],
                label=VariantLabel(row["label"]),
                record_id=row["record_id"],
                rank=row["rank"],
                snippet=row["snippet"],
                source=HitSource(row["source"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Unified results and shortlist
    # ------------------------------------------------------------------
    def replace_unified_results(self, run_id: str, results: Sequence[UnifiedResult]) -> None:
        """Swap the run's unified rows as a whole."""

        with self._lock, self._conn:
            self._conn.execute("DELETE FROM unified_results WHERE run_id = ?", (run_id,))
            self._conn.executemany(
                """
                INSERT INTO unified_results(run_id, record_id, found_in, ranks, intersection, score,
                                            breakdown, position, shortlisted, shortlist_origin,
                                            detail_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        result.run_id,
                        result.record_id,
                        _dumps([label.value for label in result.found_in]),
                        _dumps({label.value: rank for label, rank in result.ranks.items()}),
                        result.intersection.value,
                        result.score,
                        _dumps(dict(result.breakdown)),
                        result.position,
                        int(result.shortlisted),
                        result.shortlist_origin.value if result.shortlist_origin else None,
                        result.detail_status.value if result.detail_status else None,
                    )
                    for result in results
                ],
            )

    def list_unified_results(
        self, run_id: str, shortlisted_only: bool = False, limit: int | None = None
    ) -> list[UnifiedResult]:
        query = "SELECT * FROM unified_results WHERE run_id = ?"
        params: list[Any] = [run_id]
        if shortlisted_only:
            query += " AND shortlisted = 1"
        query += " ORDER BY position"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_unified(row) for row in rows]

    def set_detail_status(self, run_id: str, record_id: str, status: DetailStatus) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE unified_results SET detail_status = ? WHERE run_id = ? AND record_id = ?",
                (status.value, run_id, record_id),
            )

    def set_override(self, override: ShortlistOverride) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO shortlist_overrides(run_id, record_id, include, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(run_id, record_id) DO UPDATE SET
                    include = excluded.include,
                    created_at = excluded.created_at
                """,
                (override.run_id, override.record_id, int(override.include), override.created_at),
            )

    def list_overrides(self, run_id: str) -> dict[str, bool]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_id, include FROM shortlist_overrides WHERE run_id = ?", (run_id,)
            ).fetchall()
        return {row["record_id"]: bool(row["include"]) for row in rows}

    # ------------------------------------------------------------------
    # Details
    # ------------------------------------------------------------------
    def get_detail(self, record_id: str) -> DetailRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM detail_records WHERE record_id = ?", (record_id,)
            ).fetchone()
        return _row_to_detail(row) if row else None

    def upsert_detail(self, detail: DetailRecord) -> None:
        payload = asdict(detail)
        for name in ("record_id", "status", "fetched_at", "error"):
            payload.pop(name)
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO detail_records(record_id, status, fetched_at, payload, error)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(record_id) DO UPDATE SET
                    status = excluded.status,
                    fetched_at = excluded.fetched_at,
                    payload = excluded.payload,
                    error = excluded.error
                """,
                (detail.record_id, detail.status.value, detail.fetched_at, _dumps(payload), detail.error),
            )

    def insert_raw_detail(
        self, record_id: str, payload: dict[str, Any], captured_at: str, run_id: str | None = None
    ) -> int:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "INSERT INTO raw_details(record_id, run_id, payload, captured_at) VALUES (?, ?, ?, ?)",
                (record_id, run_id, _dumps(payload), captured_at),
            )
        return int(cursor.lastrowid)


__all__ = ["RunRepository"]
