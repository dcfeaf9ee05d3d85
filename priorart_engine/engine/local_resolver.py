"""Answer a variant query from the local corpus before going external."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from ..models import LocalDocument

MIN_TOKEN_LENGTH = 3
MAX_TOKENS = 8
TITLE_WEIGHT = 3
SNIPPET_LENGTH = 500


class CorpusReader(Protocol):
    def candidates(self, tokens: Sequence[str]) -> list[LocalDocument]:
        """Return documents that may contain any of the tokens."""


def tokenize_query(text: str) -> list[str]:
    """Split a query into at most eight distinct lower-case tokens longer than two chars."""

    tokens: list[str] = []
    for token in text.replace('"', " ").lower().split():
        if len(token) < MIN_TOKEN_LENGTH or token in tokens:
            continue
        tokens.append(token)
        if len(tokens) == MAX_TOKENS:
            break
    return tokens


def score_document(tokens: Sequence[str], title: str, abstract: str) -> int:
    title_text = title.lower()
    abstract_text = abstract.lower()
    score = 0
    for token in tokens:
        if token in title_text:
            score += TITLE_WEIGHT
        score += abstract_text.count(token)
    return score


@dataclass(slots=True)
class LocalMatch:
    document: LocalDocument
    score: int


@dataclass(slots=True)
class LocalResolution:
    tokens: list[str]
    matches: list[LocalMatch] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.matches)

    def as_payload(self) -> dict[str, Any]:
        """Render matches in the provider's page shape so they normalize identically."""

        results = []
        for position, match in enumerate(self.matches, start=1):
            document = match.document
            results.append(
                {
                    "position": position,
                    "patent_id": document.record_id,
                    "publication_number": document.record_id,
                    "title": document.title,
                    "abstract": document.abstract,
                    "snippet": document.abstract[:SNIPPET_LENGTH],
                    "publication_date": document.publication_date,
                    "cpc_codes": list(document.cpc_codes),
                    "local_score": match.score,
                }
            )
        return {"search_parameters": {"tokens": self.tokens}, "organic_results": results}


class LocalResolver:
    """Rank local corpus documents for one query."""

    def __init__(self, corpus: CorpusReader) -> None:
        self.corpus = corpus

    def resolve(self, query: str, count: int) -> LocalResolution:
        tokens = tokenize_query(query)
        resolution = LocalResolution(tokens=tokens)
        if not tokens or count <= 0:
            return resolution
        scored = [
            LocalMatch(document, score_document(tokens, document.title, document.abstract))
            for document in self.corpus.candidates(tokens)
        ]
        scored = [match for match in scored if match.score > 0]
        scored.sort(key=lambda match: (-match.score, match.document.record_id))
        resolution.matches = scored[:count]
        return resolution


__all__ = [
    "CorpusReader",
    "LocalMatch",
    "LocalResolution",
    "LocalResolver",
    "score_document",
    "tokenize_query",
]
