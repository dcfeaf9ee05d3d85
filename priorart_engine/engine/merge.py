"""Cross-variant merge and intersection classification."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from ..config.models import VARIANT_ORDER, VariantLabel
from ..models import IntersectionClass, VariantHit


@dataclass(frozen=True, slots=True)
class MergedRecord:
    record_id: str
    found_in: tuple[VariantLabel, ...]
    ranks: Mapping[VariantLabel, int | None]
    snippets: tuple[str, ...]
    intersection: IntersectionClass


def classify(found_in: Iterable[VariantLabel]) -> IntersectionClass:
    count = len(set(found_in))
    if count >= 3:
        return IntersectionClass.I3
    if count == 2:
        return IntersectionClass.I2
    return IntersectionClass.NONE


def merge_hits(hits: Iterable[VariantHit]) -> list[MergedRecord]:
    """Group a run's hits per record; output is ordered by record id.

    When a variant somehow holds the same record twice, its best (lowest)
    rank wins.
    """

    ranks: dict[str, dict[VariantLabel, int]] = {}
    snippets: dict[str, dict[VariantLabel, str]] = {}
    for hit in hits:
        per_record = ranks.setdefault(hit.record_id, {})
        current = per_record.get(hit.label)
        if current is None or hit.rank < current:
            per_record[hit.label] = hit.rank
            if hit.snippet:
                snippets.setdefault(hit.record_id, {})[hit.label] = hit.snippet

    merged: list[MergedRecord] = []
    for record_id in sorted(ranks):
        per_record = ranks[record_id]
        found_in = tuple(label for label in VARIANT_ORDER if label in per_record)
        record_snippets = snippets.get(record_id, {})
        merged.append(
            MergedRecord(
                record_id=record_id,
                found_in=found_in,
                ranks={label: per_record.get(label) for label in VARIANT_ORDER},
                snippets=tuple(record_snippets[label] for label in found_in if label in record_snippets),
                intersection=classify(found_in),
            )
        )
    return merged


__all__ = ["MergedRecord", "classify", "merge_hits"]
