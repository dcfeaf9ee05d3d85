"""Infra layer utilities (storage, run repository, local corpus)."""

from .corpus import ImportSummary, LocalCorpus
from .repository import RunRepository
from .storage import SQLiteManager

__all__ = ["ImportSummary", "LocalCorpus", "RunRepository", "SQLiteManager"]
