"""Bounded worker pools for variant execution."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Generic, Iterable, TypeVar

T = TypeVar("T")
R = TypeVar("R")

MAX_VARIANT_WORKERS = 3


@dataclass(slots=True)
class Settled(Generic[T, R]):
    item: T
    result: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ThreadPoolManager:
    """Own the shared variant pool and any named pools created on demand."""

    def __init__(self, default_workers: int = MAX_VARIANT_WORKERS) -> None:
        self.default_workers = max(1, min(default_workers, MAX_VARIANT_WORKERS))
        self._default_executor = ThreadPoolExecutor(
            max_workers=self.default_workers, thread_name_prefix="priorart"
        )
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._lock = Lock()

    def get(self, name: str | None = None, max_workers: int | None = None) -> ThreadPoolExecutor:
        if name is None:
            return self._default_executor
        with self._lock:
            if name not in self._executors:
                workers = max(1, min(max_workers or self.default_workers, MAX_VARIANT_WORKERS))
                self._executors[name] = ThreadPoolExecutor(
                    max_workers=workers, thread_name_prefix=f"priorart-{name}"
                )
            return self._executors[name]

    def run_settled(
        self,
        fn: Callable[[T], R],
        items: Iterable[T],
        name: str | None = None,
    ) -> list[Settled[T, R]]:
        """Run ``fn`` over ``items`` and wait for every one to settle, in input order."""

        executor = self.get(name)
        submitted: list[tuple[T, Future[R]]] = [(item, executor.submit(fn, item)) for item in items]
        settled: list[Settled[T, R]] = []
        for item, future in submitted:
            try:
                settled.append(Settled(item=item, result=future.result()))
            except Exception as exc:  # noqa: BLE001
                settled.append(Settled(item=item, error=exc))
        return settled

    def shutdown(self, wait: bool = False) -> None:
        self._default_executor.shutdown(wait=wait)
        with self._lock:
            for executor in self._executors.values():
                executor.shutdown(wait=wait)
            self._executors.clear()


__all__ = ["MAX_VARIANT_WORKERS", "Settled", "ThreadPoolManager"]
