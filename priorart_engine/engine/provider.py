"""HTTP client for the external search provider (SerpAPI-shaped)."""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Event
from typing import Any, Sequence

import httpx
import structlog

from ..config.models import ProviderConfig
from ..errors import (
    ProviderError,
    QuotaExceededError,
    RateLimitTimeout,
    RecordNotFoundError,
    TransientProviderError,
)
from .normalizer import provider_detail_id
from .rate_limiter import DETAIL_ENDPOINT, SEARCH_ENDPOINT, Clock, RateLimiter, SystemClock
from .retry import RetryPolicy

QUOTA_MARKERS = ("run out of searches", "out of searches", "quota", "plan limit", "rate limit")
NO_RESULTS_MARKERS = ("hasn't returned any results", "no results")
REDACTED = "***"
_BODY_LOG_LIMIT = 2000


@dataclass(slots=True)
class ProviderResponse:
    """Decoded provider page plus bookkeeping for the caller."""

    endpoint: str
    engine: str
    params: dict[str, Any]
    payload: dict[str, Any] = field(repr=False)
    status_code: int | None = None
    attempts: int = 1
    skipped: bool = False

    @property
    def results(self) -> list[dict[str, Any]]:
        return list(self.payload.get("organic_results") or [])


class ProviderClient:
    """Perform list searches and detail fetches through the shared limiter.

    Every network attempt, retries included, reserves its own slot on the
    endpoint's lane. Timeouts, transport errors and 5xx responses are
    retried with exponential backoff; quota signals and client errors are
    raised immediately. A shared ``quota_signal`` event is set on the first
    quota response and stops every later attempt before it is sent.
    """

    def __init__(
        self,
        config: ProviderConfig,
        rate_limiter: RateLimiter,
        retry: RetryPolicy | None = None,
        clock: Clock | None = None,
        client: httpx.Client | None = None,
        api_key: str | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config
        self.rate_limiter = rate_limiter
        self.retry = retry or RetryPolicy()
        self.clock = clock or rate_limiter.clock or SystemClock()
        self.logger = logger or structlog.get_logger("priorart_engine.provider")
        self._api_key = api_key if api_key is not None else config.resolve_api_key()
        self._client = client or httpx.Client(
            timeout=config.request_timeout,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    # ------------------------------------------------------------------
    def search(
        self,
        query: str,
        count: int,
        page: int = 1,
        *,
        engine: str | None = None,
        start: int | None = None,
        timeout: float | None = None,
        quota_signal: Event | None = None,
    ) -> ProviderResponse:
        engine_name = engine or self.config.patents_engine
        params: dict[str, Any] = {
            "engine": engine_name,
            "q": query,
            "hl": self.config.locale,
            "num": count,
            "start": start if start is not None else (page - 1) * count,
        }
        return self._execute(
            SEARCH_ENDPOINT, engine_name, params, timeout=timeout, quota_signal=quota_signal
        )

    def fetch_detail(
        self,
        record_id: str,
        fields: Sequence[str] = (),
        *,
        timeout: float | None = None,
        quota_signal: Event | None = None,
    ) -> ProviderResponse:
        engine_name = self.config.details_engine
        params: dict[str, Any] = {
            "engine": engine_name,
            "patent_id": provider_detail_id(record_id, self.config.locale),
            "hl": self.config.locale,
        }
        if fields:
            params["json_restrictor"] = ",".join(fields)
        return self._execute(
            DETAIL_ENDPOINT, engine_name, params, timeout=timeout, quota_signal=quota_signal
        )

    # ------------------------------------------------------------------
    def _execute(
        self,
        endpoint: str,
        engine: str,
        params: dict[str, Any],
        *,
        timeout: float | None,
        quota_signal: Event | None = None,
    ) -> ProviderResponse:
        if not self._api_key:
            self.logger.warning(
                "provider_api_key_missing", endpoint=endpoint, api_key_env=self.config.api_key_env
            )
            if endpoint == DETAIL_ENDPOINT:
                raise ProviderError("Provider API key is not configured", attempts=0)
            return ProviderResponse(
                endpoint=endpoint,
                engine=engine,
                params=dict(params),
                payload={"organic_results": []},
                status_code=None,
                attempts=0,
                skipped=True,
            )

        deadline = None if timeout is None else self.clock.now() + timeout
        context = self.retry.start()
        sent = 0
        while True:
            self._stop_if_exhausted(quota_signal, endpoint, sent)
            remaining = None if deadline is None else max(deadline - self.clock.now(), 0.0)
            try:
                self.rate_limiter.acquire(endpoint, timeout=remaining)
            except RateLimitTimeout as exc:
                raise TransientProviderError(
                    f"{endpoint} call deadline passed while waiting for a rate limit slot",
                    attempts=sent,
                ) from exc
            self._stop_if_exhausted(quota_signal, endpoint, sent)
            request_timeout = self.config.request_timeout
            if deadline is not None:
                request_timeout = min(request_timeout, max(deadline - self.clock.now(), 0.001))
            sent += 1
            try:
                response = self._client.get(
                    self.config.base_url,
                    params={**params, "api_key": self._api_key},
                    timeout=request_timeout,
                )
                payload = self._interpret(endpoint, response, sent)
            except QuotaExceededError:
                if quota_signal is not None:
                    quota_signal.set()
                raise
            except httpx.TimeoutException as exc:
                error: Exception = TransientProviderError(
                    f"{endpoint} request timed out", attempts=sent
                )
                error.__cause__ = exc
            except httpx.TransportError as exc:
                error = TransientProviderError(
                    f"{endpoint} transport error: {self._redact(str(exc))}", attempts=sent
                )
                error.__cause__ = exc
            except TransientProviderError as exc:
                error = exc
            else:
                self.logger.debug(
                    "provider_call_succeeded", endpoint=endpoint, engine=engine, attempts=sent
                )
                return ProviderResponse(
                    endpoint=endpoint,
                    engine=engine,
                    params=dict(params),
                    payload=payload,
                    status_code=response.status_code,
                    attempts=sent,
                )

            self.logger.warning(
                "provider_attempt_failed",
                endpoint=endpoint,
                engine=engine,
                attempt=context.attempt,
                error=str(error),
            )
            context.record_failure(error)
            if not context.should_retry():
                break
            delay = self.retry.delay(context.attempt - 1)
            if deadline is not None and self.clock.now() + delay >= deadline:
                break
            self.clock.sleep(delay)

        raise TransientProviderError(
            f"{endpoint} call failed after {sent} attempt(s)", attempts=sent
        ) from context.last_exception

    def _stop_if_exhausted(self, quota_signal: Event | None, endpoint: str, sent: int) -> None:
        if quota_signal is not None and quota_signal.is_set():
            self.logger.info("provider_call_abandoned", endpoint=endpoint, attempts=sent)
            raise QuotaExceededError("Provider quota already exhausted; call not sent", attempts=sent)

    def _interpret(self, endpoint: str, response: httpx.Response, sent: int) -> dict[str, Any]:
        status = response.status_code
        body = self._redact(response.text[:_BODY_LOG_LIMIT])
        if status == 429 or (status >= 400 and self._is_quota_message(body)):
            self.logger.error("provider_quota_exceeded", endpoint=endpoint, status=status, body=body)
            raise QuotaExceededError("Provider quota exhausted", status, body, attempts=sent)
        if status >= 500:
            raise TransientProviderError(f"Provider returned {status}", status, body, attempts=sent)
        if status >= 400:
            self.logger.warning("provider_client_error", endpoint=endpoint, status=status, body=body)
            if status == 404 or endpoint == DETAIL_ENDPOINT:
                raise RecordNotFoundError(f"Provider returned {status}", status, body, attempts=sent)
            raise ProviderError(f"Provider rejected request with {status}", status, body, attempts=sent)
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientProviderError(
                "Provider returned invalid JSON", status, body, attempts=sent
            ) from exc
        if not isinstance(payload, dict):
            raise TransientProviderError("Provider returned a non-object payload", status, body, attempts=sent)

        parameters = payload.get("search_parameters")
        if isinstance(parameters, dict) and "api_key" in parameters:
            payload["search_parameters"] = {k: v for k, v in parameters.items() if k != "api_key"}

        error_text = payload.get("error")
        if error_text:
            message = self._redact(str(error_text))
            lowered = message.lower()
            if self._is_quota_message(lowered):
                self.logger.error("provider_quota_exceeded", endpoint=endpoint, status=status, body=message)
                raise QuotaExceededError(message, status, message, attempts=sent)
            if endpoint == SEARCH_ENDPOINT and any(marker in lowered for marker in NO_RESULTS_MARKERS):
                return {**payload, "organic_results": []}
            self.logger.warning("provider_error_payload", endpoint=endpoint, body=message)
            if endpoint == DETAIL_ENDPOINT:
                raise RecordNotFoundError(message, status, message, attempts=sent)
            raise ProviderError(message, status, message, attempts=sent)
        return payload

    @staticmethod
    def _is_quota_message(text: str) -> bool:
        lowered = text.lower()
        return any(marker in lowered for marker in QUOTA_MARKERS)

    def _redact(self, text: str) -> str:
        if self._api_key:
            return text.replace(self._api_key, REDACTED)
        return text


__all__ = ["NO_RESULTS_MARKERS", "ProviderClient", "ProviderResponse", "QUOTA_MARKERS", "REDACTED"]
