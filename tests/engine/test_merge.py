from __future__ import annotations

import random

import pytest

from priorart_engine.config import VARIANT_ORDER, VariantLabel
from priorart_engine.engine import classify, merge_hits
from priorart_engine.models import IntersectionClass, VariantHit


def _hit(label: VariantLabel, record_id: str, rank: int, snippet: str = "") -> VariantHit:
    return VariantHit(run_id="run-1", label=label, record_id=record_id, rank=rank, snippet=snippet)


@pytest.mark.parametrize(
    ("labels", "expected"),
    [
        ((), IntersectionClass.NONE),
        ((VariantLabel.BROAD,), IntersectionClass.NONE),
        ((VariantLabel.BROAD, VariantLabel.NARROW), IntersectionClass.I2),
        ((VariantLabel.NARROW, VariantLabel.NARROW), IntersectionClass.NONE),
        (VARIANT_ORDER, IntersectionClass.I3),
    ],
)
def test_classify(labels, expected) -> None:
    assert classify(labels) is expected


def test_merge_collects_ranks_and_snippets() -> None:
    hits = [
        _hit(VariantLabel.NARROW, "US1B2", 3, "narrow snippet"),
        _hit(VariantLabel.BROAD, "US1B2", 2, "broad snippet"),
        _hit(VariantLabel.BASELINE, "US1B2", 1),
        _hit(VariantLabel.BROAD, "US2B2", 1),
    ]
    merged = {item.record_id: item for item in merge_hits(hits)}

    record = merged["US1B2"]
    assert record.found_in == VARIANT_ORDER
    assert record.ranks == {VariantLabel.BROAD: 2, VariantLabel.BASELINE: 1, VariantLabel.NARROW: 3}
    assert record.snippets == ("broad snippet", "narrow snippet")
    assert record.intersection is IntersectionClass.I3

    single = merged["US2B2"]
    assert single.ranks[VariantLabel.NARROW] is None
    assert single.intersection is IntersectionClass.NONE


def test_merge_keeps_best_rank_per_variant() -> None:
    hits = [_hit(VariantLabel.BROAD, "US1B2", 7), _hit(VariantLabel.BROAD, "US1B2", 4)]
    (record,) = merge_hits(hits)
    assert record.ranks[VariantLabel.BROAD] == 4
    assert record.intersection is IntersectionClass.NONE


def _random_hits(rng: random.Random) -> list[VariantHit]:
    pool = [f"US{number}B2" for number in range(rng.randint(1, 30))]
    hits = []
    for label in VARIANT_ORDER:
        chosen = rng.sample(pool, rng.randint(0, len(pool)))
        hits.extend(_hit(label, record_id, rank) for rank, record_id in enumerate(chosen, start=1))
    return hits


@pytest.mark.parametrize("seed", range(25))
def test_intersection_is_a_function_of_hits(seed: int) -> None:
    rng = random.Random(seed)
    hits = _random_hits(rng)

    labels_by_record: dict[str, set[VariantLabel]] = {}
    for hit in hits:
        labels_by_record.setdefault(hit.record_id, set()).add(hit.label)
    expected = {
        record_id: {3: IntersectionClass.I3, 2: IntersectionClass.I2}.get(len(labels), IntersectionClass.NONE)
        for record_id, labels in labels_by_record.items()
    }

    merged = merge_hits(hits)
    assert [item.record_id for item in merged] == sorted(labels_by_record)
    assert {item.record_id: item.intersection for item in merged} == expected

    shuffled = list(hits)
    rng.shuffle(shuffled)
    assert merge_hits(shuffled) == merged
