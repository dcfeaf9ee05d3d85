"""Deterministic relevance scoring and ordering of merged records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Mapping, Sequence

from ..config.models import ScoringWeights, SearchBundle, VariantLabel
from ..models import CanonicalRecord, IntersectionClass
from .local_resolver import tokenize_query
from .merge import MergedRecord

SCORE_PRECISION = 4


@dataclass(frozen=True, slots=True)
class ScoreBreakdown:
    title_density: float
    snippet_density: float
    variant_signal: float
    classification_overlap: float
    recency: float
    consensus_bonus: float
    total: float

    def as_dict(self) -> dict[str, float]:
        return {
            "title_density": round(self.title_density, SCORE_PRECISION),
            "snippet_density": round(self.snippet_density, SCORE_PRECISION),
            "variant_signal": round(self.variant_signal, SCORE_PRECISION),
            "classification_overlap": round(self.classification_overlap, SCORE_PRECISION),
            "recency": round(self.recency, SCORE_PRECISION),
            "consensus_bonus": round(self.consensus_bonus, SCORE_PRECISION),
            "total": self.total,
        }


@dataclass(frozen=True, slots=True)
class ScoredRecord:
    merged: MergedRecord
    record: CanonicalRecord | None
    breakdown: ScoreBreakdown

    @property
    def record_id(self) -> str:
        return self.merged.record_id

    @property
    def score(self) -> float:
        return self.breakdown.total

    def sort_key(self) -> tuple:
        day = content_date(self.record)
        # score desc, date desc with undated last, id asc
        return (-self.score, day is None, -(day.toordinal() if day else 0), self.record_id)


def content_date(record: CanonicalRecord | None) -> date | None:
    """Publication date, else filing date, else priority date."""

    if record is None:
        return None
    for value in (record.publication_date, record.filing_date, record.priority_date):
        if value:
            try:
                return date.fromisoformat(value[:10])
            except ValueError:
                continue
    return None


def collect_terms(bundle: SearchBundle) -> tuple[str, ...]:
    """Union of every variant's query tokens plus the bundle's concept phrases."""

    terms: dict[str, None] = {}
    for variant in bundle.query_variants:
        for token in tokenize_query(variant.q):
            terms.setdefault(token, None)
    for phrase in (*bundle.core_concepts, *bundle.technical_features):
        text = " ".join(phrase.lower().split())
        if text:
            terms.setdefault(text, None)
    return tuple(terms)


def term_density(terms: Sequence[str], text: str) -> float:
    if not terms or not text:
        return 0.0
    haystack = text.lower()
    return sum(1 for term in terms if term in haystack) / len(terms)


def classification_overlap(requested: Sequence[str], record_codes: Iterable[str]) -> float:
    """Fraction of requested codes matched by prefix against the record's codes."""

    if not requested:
        return 0.0
    codes = [code.replace(" ", "").upper() for code in record_codes if code]
    if not codes:
        return 0.0
    matched = sum(
        1 for wanted in requested if any(code.startswith(wanted.replace(" ", "").upper()) for code in codes)
    )
    return matched / len(requested)


def recency(published: str | date | None, reference: datetime | date, window_years: float) -> float:
    if not published:
        return 0.0
    if isinstance(published, date):
        published_on = published
    else:
        try:
            published_on = date.fromisoformat(published[:10])
        except ValueError:
            return 0.0
    reference_day = reference.date() if isinstance(reference, datetime) else reference
    age_years = (reference_day - published_on).days / 365.25
    if age_years <= 0:
        return 1.0
    return max(0.0, 1.0 - age_years / window_years)


def variant_signal(found_in: Iterable[VariantLabel], weights: Mapping[VariantLabel, float]) -> float:
    return max((weights.get(label, 0.0) for label in found_in), default=0.0)


class ScoringEngine:
    """Compute weighted scores; all weights come from configuration."""

    def __init__(self, weights: ScoringWeights | None = None) -> None:
        self.weights = weights or ScoringWeights()

    def consensus_bonus(self, intersection: IntersectionClass) -> float:
        if intersection is IntersectionClass.I3:
            return self.weights.consensus_i3
        if intersection is IntersectionClass.I2:
            return self.weights.consensus_i2
        return 0.0

    def score(
        self,
        merged: MergedRecord,
        record: CanonicalRecord | None,
        terms: Sequence[str],
        requested_codes: Sequence[str],
        reference: datetime,
    ) -> ScoreBreakdown:
        w = self.weights
        title = record.title if record else ""
        snippet_text = " ".join(merged.snippets) or (record.abstract if record else "")
        components = {
            "title_density": term_density(terms, title),
            "snippet_density": term_density(terms, snippet_text),
            "variant_signal": variant_signal(merged.found_in, w.variant_weights),
            "classification_overlap": classification_overlap(
                requested_codes, record.classification_codes() if record else ()
            ),
            "recency": recency(content_date(record), reference, w.recency_window_years),
        }
        bonus = self.consensus_bonus(merged.intersection)
        weighted = (
            w.title_density * components["title_density"]
            + w.snippet_density * components["snippet_density"]
            + w.variant_signal * components["variant_signal"]
            + w.classification_overlap * components["classification_overlap"]
            + w.recency * components["recency"]
            + bonus
        )
        total = round(min(max(weighted, 0.0), 1.0), SCORE_PRECISION)
        return ScoreBreakdown(consensus_bonus=bonus, total=total, **components)

    def rank(
        self,
        merged: Iterable[MergedRecord],
        records: Mapping[str, CanonicalRecord],
        bundle: SearchBundle,
        reference: datetime,
    ) -> list[ScoredRecord]:
        terms = collect_terms(bundle)
        requested = bundle.classification_codes()
        scored = [
            ScoredRecord(
                merged=item,
                record=records.get(item.record_id),
                breakdown=self.score(item, records.get(item.record_id), terms, requested, reference),
            )
            for item in merged
        ]
        scored.sort(key=ScoredRecord.sort_key)
        return scored


__all__ = [
    "SCORE_PRECISION",
    "ScoreBreakdown",
    "ScoredRecord",
    "ScoringEngine",
    "classification_overlap",
    "collect_terms",
    "content_date",
    "recency",
    "term_density",
    "variant_signal",
]
