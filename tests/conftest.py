"""Shared fixtures: isolated home directory, stores, fake provider and fake clocks."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Iterable

import httpx
import pytest

from priorart_engine.config import (
    ConfigLocator,
    ConfigRepository,
    EngineConfig,
    RateLimitConfig,
    RetryConfig,
    SearchBundle,
    SearchConfig,
    ShortlistConfig,
)
from priorart_engine.engine import ProviderClient, RateLimiter, RetryPolicy, ThreadPoolManager
from priorart_engine.infra import LocalCorpus, RunRepository, SQLiteManager
from priorart_engine.orchestrator import Orchestrator

TEST_API_KEY = "test-secret-key"

BROAD_QUERY = "photovoltaic panel cleaning"
BASELINE_QUERY = "autonomous photovoltaic panel cleaning robot"
NARROW_QUERY = "autonomous photovoltaic cleaning robot brush rail"


# ----------------------------------------------------------------------
# Clocks
# ----------------------------------------------------------------------
class FakeClock:
    """Simulated time that jumps forward whenever a caller waits with a timeout.

    Waits without a timeout yield briefly in real time so other threads can
    make progress and notify the condition.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._lock = threading.Lock()
        self.sleeps: list[float] = []

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds

    def wait(self, condition: threading.Condition, timeout: float | None) -> None:
        if timeout is None:
            condition.wait(0.01)
            return
        self.advance(timeout)
        condition.wait(0)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class ManualClock(FakeClock):
    """Simulated time that only moves when the test calls ``advance``."""

    def wait(self, condition: threading.Condition, timeout: float | None) -> None:
        condition.wait(0.01)


# ----------------------------------------------------------------------
# Fake provider
# ----------------------------------------------------------------------
def patent_item(number: int, title: str = "", **extra: Any) -> dict[str, Any]:
    item = {
        "patent_id": f"patent/US{number}B2/en",
        "publication_number": f"US{number}B2",
        "title": title or f"Cleaning device {number}",
        "snippet": extra.pop("snippet", f"Snippet for device {number}"),
        "publication_date": extra.pop("publication_date", "2020-01-01"),
    }
    item.update(extra)
    return item


class FakeSerpApi:
    """In-process stand-in for the SerpAPI endpoints, used via ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.search_results: dict[str, list[dict[str, Any]]] = {}
        self.scholar_results: dict[str, list[dict[str, Any]]] = {}
        self.search_status: dict[str, int] = {}
        self.details: dict[str, dict[str, Any]] = {}
        self.detail_status: dict[str, int] = {}
        self.on_search: Callable[[str], None] | None = None
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        params = request.url.params
        if params["engine"] == "google_patents_details":
            record_id = params["patent_id"].split("/")[1]
            status = self.detail_status.get(record_id)
            if status is not None:
                return httpx.Response(status, json={"error": f"Unknown patent {record_id}"})
            payload = self.details.get(record_id) or {
                "title": f"Detailed {record_id}",
                "claims": [f"1. A device {record_id}."],
                "classifications": [{"code": "B08B 1/00", "is_cpc": True}],
                "publication_date": "2020-01-01",
            }
            return httpx.Response(200, json=payload)

        query = params["q"]
        if self.on_search is not None:
            self.on_search(query)
        status = self.search_status.get(query)
        if status is not None:
            return httpx.Response(status, json={"error": "Your account has run out of searches."})
        start = int(params.get("start", 0))
        num = int(params["num"])
        source = self.scholar_results if params["engine"] == "google_scholar" else self.search_results
        results = source.get(query, [])[start : start + num]
        return httpx.Response(
            200,
            json={
                "search_parameters": {"engine": params["engine"], "q": query, "api_key": params["api_key"]},
                "organic_results": results,
            },
        )

    def calls(self, engine: str | None = None, query: str | None = None) -> int:
        with self._lock:
            requests = list(self.requests)
        return sum(
            1
            for request in requests
            if (engine is None or request.url.params["engine"] == engine)
            and (query is None or request.url.params.get("q") == query)
        )


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------
@pytest.fixture(autouse=True)
def priorart_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("PRIORART_HOME", str(home))
    monkeypatch.delenv("SERP_API_KEY", raising=False)
    return home


@pytest.fixture
def temp_config_repository(priorart_home: Path) -> ConfigRepository:
    return ConfigRepository(ConfigLocator(project_root=priorart_home))


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(
        database_path=tmp_path / "priorart.db",
        rate_limit=RateLimitConfig(min_interval_seconds=0.0, acquire_timeout_seconds=10.0),
        retry=RetryConfig(max_retries=1, backoff_base_seconds=0.0),
        search=SearchConfig(max_pages_per_variant=1, max_results_per_page=50, variant_parallelism=3),
        shortlist=ShortlistConfig(size=10),
    )


@pytest.fixture
def storage() -> Iterable[SQLiteManager]:
    manager = SQLiteManager()
    yield manager
    manager.close_all()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "priorart.db"


@pytest.fixture
def repository(storage: SQLiteManager, db_path: Path) -> RunRepository:
    return RunRepository(storage, db_path)


@pytest.fixture
def corpus(storage: SQLiteManager, db_path: Path) -> LocalCorpus:
    return LocalCorpus(storage, db_path)


@pytest.fixture
def make_bundle() -> Callable[..., SearchBundle]:
    def _builder(**overrides: Any) -> SearchBundle:
        base: dict[str, Any] = {
            "bundle_id": "pv-cleaning",
            "title": "Photovoltaic panel cleaning robots",
            "query_variants": [
                {"label": "broad", "q": BROAD_QUERY, "num": 20},
                {"label": "baseline", "q": BASELINE_QUERY, "num": 20},
                {"label": "narrow", "q": NARROW_QUERY, "num": 20},
            ],
            "cpc_candidates": ["B08B"],
            "core_concepts": ["brush rail"],
        }
        base.update(overrides)
        return SearchBundle.model_validate(base)

    return _builder


@pytest.fixture
def fake_api() -> FakeSerpApi:
    return FakeSerpApi()


@pytest.fixture
def make_provider(engine_config: EngineConfig) -> Iterable[Callable[..., ProviderClient]]:
    clients: list[ProviderClient] = []

    def _builder(
        handler: Callable[[httpx.Request], httpx.Response],
        *,
        config: EngineConfig | None = None,
        api_key: str | None = TEST_API_KEY,
        rate_limiter: RateLimiter | None = None,
        retry: RetryPolicy | None = None,
    ) -> ProviderClient:
        cfg = config or engine_config
        provider = ProviderClient(
            cfg.provider,
            rate_limiter or RateLimiter(cfg.rate_limit.min_interval_seconds),
            retry=retry or RetryPolicy.from_config(cfg.retry),
            client=httpx.Client(transport=httpx.MockTransport(handler)),
            api_key=api_key,
        )
        clients.append(provider)
        return provider

    yield _builder
    for provider in clients:
        provider.close()


@pytest.fixture
def make_orchestrator(
    engine_config: EngineConfig,
    repository: RunRepository,
    corpus: LocalCorpus,
    fake_api: FakeSerpApi,
    make_provider: Callable[..., ProviderClient],
) -> Iterable[Callable[..., Orchestrator]]:
    pools: list[ThreadPoolManager] = []

    def _builder(
        config: EngineConfig | None = None,
        api_key: str | None = TEST_API_KEY,
        rate_limiter: RateLimiter | None = None,
    ) -> Orchestrator:
        cfg = config or engine_config
        pool = ThreadPoolManager(cfg.search.variant_parallelism)
        pools.append(pool)
        return Orchestrator(
            config=cfg,
            repository=repository,
            corpus=corpus,
            provider=make_provider(fake_api, config=cfg, api_key=api_key, rate_limiter=rate_limiter),
            thread_pool=pool,
        )

    yield _builder
    for pool in pools:
        pool.shutdown(wait=True)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def patent() -> Callable[..., dict[str, Any]]:
    return patent_item
