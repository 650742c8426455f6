"""Rate-limit aware fetching: retry with jittered backoff, pacing, bounded fan-out."""

from __future__ import annotations

import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Iterable, TypeVar

import pandas as pd
import structlog

from statpairs.core.config import DataConfig
from statpairs.data.provider import KlineProvider

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")


def backoff_delay(attempt: int, base_delay: float, jitter: float, rng: random.Random | None = None) -> float:
    """``base * 2**attempt`` plus a uniform jitter in ``[0, jitter)``."""
    rand = (rng or random).random()
    return base_delay * (2 ** attempt) + rand * jitter


def fetch_with_retry(
    func: Callable[..., T],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 0.5,
    jitter: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Call ``func`` and retry on any exception with exponential backoff.

    ``func`` runs at most ``max_retries + 1`` times. The last failure is
    re-raised so the per-item caller can log and skip.
    """
    log = logger.bind(component="fetcher", func=getattr(func, "__qualname__", repr(func)))
    attempts = max(0, max_retries) + 1
    for attempt in range(attempts):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if attempt == attempts - 1:
                log.error("fetch_failed", error=str(e), attempts=attempts)
                raise
            wait = backoff_delay(attempt, base_delay, jitter)
            log.warning("fetch_retry", attempt=attempt + 1, wait_seconds=round(wait, 3), error=str(e))
            sleep(wait)
    raise RuntimeError("unreachable")


class PacedKlineFetcher:
    """Sequential kline fetcher with a fixed delay between upstream calls.

    Each call is retried per ``DataConfig``; the first request is not delayed.
    """

    def __init__(
        self,
        provider: KlineProvider,
        config: DataConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._provider = provider
        self._config = config
        self._sleep = sleep
        self._calls = 0
        self._log = logger.bind(component="kline_fetcher")

    def fetch(self, symbol: str, limit: int | None = None, interval: str | None = None) -> pd.DataFrame:
        if self._calls > 0 and self._config.fetch_delay_seconds > 0:
            self._sleep(self._config.fetch_delay_seconds)
        self._calls += 1

        bars = fetch_with_retry(
            self._provider.get_klines,
            symbol,
            interval or self._config.interval,
            limit or self._config.kline_limit,
            max_retries=self._config.max_retries,
            base_delay=self._config.retry_base_delay_seconds,
            jitter=self._config.retry_jitter_seconds,
            sleep=self._sleep,
        )
        self._log.debug("klines_fetched", symbol=symbol, bars=len(bars))
        return bars


def bounded_map(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int = 5,
) -> dict[T, R | Exception]:
    """Apply ``func`` to each item on a small thread pool.

    Results are keyed by item. A failing item maps to its exception instead
    of aborting the batch.
    """
    results: dict[T, R | Exception] = {}
    items = list(items)
    if not items:
        return results

    log = logger.bind(component="bounded_map")
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {executor.submit(func, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                results[item] = future.result()
            except Exception as e:
                log.warning("item_failed", item=str(item), error=str(e))
                results[item] = e
    return results
