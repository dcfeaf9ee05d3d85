from __future__ import annotations

from priorart_engine.config import VariantLabel
from priorart_engine.engine import LocalResolver, normalize_page, tokenize_query
from priorart_engine.engine.local_resolver import score_document
from priorart_engine.models import HitSource, LocalDocument, RecordKind


class ListCorpus:
    def __init__(self, documents: list[LocalDocument]) -> None:
        self.documents = documents
        self.requested: list[list[str]] = []

    def candidates(self, tokens):
        self.requested.append(list(tokens))
        return list(self.documents)


def _doc(record_id: str, title: str, abstract: str = "") -> LocalDocument:
    return LocalDocument(record_id=record_id, kind=RecordKind.PATENT, title=title, abstract=abstract)


def test_tokenize_query() -> None:
    assert tokenize_query('"Solar" panel an solar CLEANING robots with AI') == [
        "solar",
        "panel",
        "cleaning",
        "robots",
        "with",
    ]
    many = "alpha beta gamma delta epsilon zeta theta iota kappa"
    assert tokenize_query(many) == many.split()[:8]
    assert tokenize_query("a an of") == []


def test_score_document_counts_title_and_abstract() -> None:
    score = score_document(
        ["solar", "panel"], "Solar Panel Cleaner", "A solar cleaner for solar arrays. Panel."
    )
    assert score == 3 + 3 + 2 + 1


def test_resolve_ranks_by_score_then_identifier() -> None:
    corpus = ListCorpus(
        [
            _doc("US3B2", "Panel washer", "solar"),
            _doc("US1B2", "Solar panel washer"),
            _doc("US2B2", "Panel washer", "solar"),
            _doc("US9B2", "Unrelated gearbox"),
        ]
    )
    resolution = LocalResolver(corpus).resolve("solar panel", 5)

    assert corpus.requested == [["solar", "panel"]]
    assert [match.document.record_id for match in resolution.matches] == ["US1B2", "US2B2", "US3B2"]
    assert [match.score for match in resolution.matches] == [6, 4, 4]
    assert len(LocalResolver(corpus).resolve("solar panel", 2)) == 2


def test_resolve_without_tokens_skips_corpus() -> None:
    corpus = ListCorpus([_doc("US1B2", "Solar")])
    assert len(LocalResolver(corpus).resolve("a of", 5)) == 0
    assert corpus.requested == []


def test_payload_normalizes_like_provider_page() -> None:
    corpus = ListCorpus([_doc("US1B2", "Solar panel washer", "Solar abstract")])
    payload = LocalResolver(corpus).resolve("solar", 5).as_payload()
    page = normalize_page(
        payload,
        run_id="run-1",
        label=VariantLabel.BROAD,
        kind=RecordKind.PATENT,
        source=HitSource.LOCAL,
        seen_at="2024-01-01T00:00:00+00:00",
    )
    assert [record.record_id for record in page.records] == ["US1B2"]
    assert page.hits[0].snippet == "Solar abstract"
