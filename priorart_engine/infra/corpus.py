"""Local document corpus: candidate lookup and CSV import."""

from __future__ import annotations

import csv
import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

import structlog

from ..engine.normalizer import normalize_date, normalize_identifier
from ..models import LocalDocument, RecordKind
from .storage import SQLiteManager

CSV_REQUIRED_COLUMNS = ("publication_number", "title")


@dataclass(slots=True)
class ImportSummary:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"inserted": self.inserted, "updated": self.updated, "skipped": self.skipped}


def _escape_like(token: str) -> str:
    return token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_document(row: sqlite3.Row) -> LocalDocument:
    return LocalDocument(
        record_id=row["record_id"],
        kind=RecordKind(row["kind"]),
        title=row["title"],
        abstract=row["abstract"],
        publication_date=row["publication_date"],
        cpc_codes=tuple(json.loads(row["cpc_codes"])),
        kind_code=row["kind_code"],
        source_id=row["source_id"],
    )


class LocalCorpus:
    """Read-mostly store of locally known documents."""

    def __init__(
        self,
        manager: SQLiteManager,
        db_path: Path,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.manager = manager
        self.db_path = db_path
        self.logger = logger or structlog.get_logger("priorart_engine.corpus")
        self._conn = self.manager.connect(db_path)
        self._lock = self.manager.lock_for(db_path)

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS total FROM local_documents").fetchone()
        return int(row["total"])

    def get(self, record_id: str) -> LocalDocument | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM local_documents WHERE record_id = ?", (record_id,)
            ).fetchone()
        return _row_to_document(row) if row else None

    def candidates(self, tokens: Sequence[str]) -> list[LocalDocument]:
        """Return documents whose title or abstract contains at least one token."""

        if not tokens:
            return []
        clauses: list[str] = []
        params: list[str] = []
        for token in tokens:
            pattern = f"%{_escape_like(token.lower())}%"
            clauses.append("lower(title) LIKE ? ESCAPE '\\' OR lower(abstract) LIKE ? ESCAPE '\\'")
            params.extend((pattern, pattern))
        query = f"SELECT * FROM local_documents WHERE {' OR '.join(clauses)} ORDER BY record_id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_document(row) for row in rows]

    def upsert(self, document: LocalDocument) -> bool:
        """Insert or replace one document; returns True when it was new."""

        with self._lock, self._conn:
            existing = self._conn.execute(
                "SELECT 1 FROM local_documents WHERE record_id = ?", (document.record_id,)
            ).fetchone()
            self._conn.execute(
                """
                INSERT INTO local_documents(record_id, kind, title, abstract, publication_date,
                                            cpc_codes, kind_code, source_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(record_id) DO UPDATE SET
                    kind = excluded.kind,
                    title = excluded.title,
                    abstract = excluded.abstract,
                    publication_date = excluded.publication_date,
                    cpc_codes = excluded.cpc_codes,
                    kind_code = excluded.kind_code,
                    source_id = excluded.source_id
                """,
                (
                    document.record_id,
                    document.kind.value,
                    document.title,
                    document.abstract,
                    document.publication_date,
                    json.dumps(list(document.cpc_codes)),
                    document.kind_code,
                    document.source_id,
                ),
            )
        return existing is None

    def upsert_many(self, documents: Iterable[LocalDocument]) -> ImportSummary:
        summary = ImportSummary()
        for document in documents:
            if self.upsert(document):
                summary.inserted += 1
            else:
                summary.updated += 1
        return summary

    # ------------------------------------------------------------------
    def import_csv(self, path: Path) -> ImportSummary:
        """Import a corpus CSV export.

        Expected header: ``id,publication_number,kind,title,abstract_original,
        abstract_normalized``; optional ``publication_date`` and ``cpc_codes``
        (semicolon separated) columns are honoured when present. Rows missing
        a publication number or title are skipped.
        """

        summary = ImportSummary()
        with path.open("r", encoding="utf-8", newline="") as stream:
            reader = csv.DictReader(stream)
            missing = [name for name in CSV_REQUIRED_COLUMNS if name not in (reader.fieldnames or [])]
            if missing:
                raise ValueError(f"CSV is missing required columns: {missing}")
            for line_no, row in enumerate(reader, start=2):
                document = self._document_from_row(row)
                if document is None:
                    summary.skipped += 1
                    self.logger.debug("corpus_row_skipped", path=str(path), line=line_no)
                    continue
                if self.upsert(document):
                    summary.inserted += 1
                else:
                    summary.updated += 1
        self.logger.info("corpus_imported", path=str(path), **summary.as_dict())
        return summary

    @staticmethod
    def _document_from_row(row: dict[str, str | None]) -> LocalDocument | None:
        def _text(name: str) -> str:
            return (row.get(name) or "").strip()

        publication_number = _text("publication_number")
        title = _text("title")
        if not publication_number or not title:
            return None
        try:
            record_id = normalize_identifier(publication_number)
        except ValueError:
            return None
        abstract = _text("abstract_normalized") or _text("abstract_original")
        codes = tuple(code.strip().upper() for code in _text("cpc_codes").split(";") if code.strip())
        return LocalDocument(
            record_id=record_id,
            kind=RecordKind.PATENT,
            title=title,
            abstract=abstract,
            publication_date=normalize_date(_text("publication_date")),
            cpc_codes=codes,
            kind_code=_text("kind") or None,
            source_id=_text("id") or None,
        )


__all__ = ["CSV_REQUIRED_COLUMNS", "ImportSummary", "LocalCorpus"]
