"""Per-asset metric enrichment ahead of candidate generation.

Computes the liquidity score, ATR%, 24h quote volume and funding statistics
for each asset on a bounded worker pool, then assigns liquidity tiers by
percentile across the whole batch.
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Any

import numpy as np
import structlog

from statpairs.core.config import DataConfig, bars_per_day
from statpairs.core.models import Asset, AssetMetrics
from statpairs.data.fetcher import bounded_map, fetch_with_retry
from statpairs.data.provider import MarketDataProvider
from statpairs.stats.indicators import atr_percent

logger = structlog.get_logger()

ATR_BARS = 200
FUNDING_SAMPLES = 50
TIER_T1_FRACTION = 0.2
TIER_T2_FRACTION = 0.6


def liquidity_score(quote_volume: float | None, depth_notional: float | None) -> float:
    """Log-scaled blend of 24h quote volume and top-of-book notional depth."""
    qv = max(0.0, quote_volume or 0.0)
    depth = max(0.0, depth_notional or 0.0)
    return math.log10(1 + qv) + math.log10(1 + depth)


def assign_liquidity_tiers(scores: dict[str, float]) -> dict[str, str]:
    """Top 20% by score are T1, the next 40% T2, the rest T3.

    Non-finite scores are left out. Ties keep input order.
    """
    ranked = sorted(
        ((sym, s) for sym, s in scores.items() if s is not None and math.isfinite(s)),
        key=lambda kv: kv[1],
        reverse=True,
    )
    n = len(ranked)
    cut_t1 = math.ceil(n * TIER_T1_FRACTION)
    cut_t2 = math.ceil(n * TIER_T2_FRACTION)
    tiers = {}
    for k, (sym, _) in enumerate(ranked):
        tiers[sym] = "T1" if k < cut_t1 else "T2" if k < cut_t2 else "T3"
    return tiers


def funding_stats(rates: list[float]) -> tuple[float | None, float | None]:
    """Mean and population variance of the finite funding samples."""
    vals = np.asarray([r for r in rates if r is not None], dtype=float)
    vals = vals[np.isfinite(vals)]
    if vals.size == 0:
        return None, None
    return float(vals.mean()), float(vals.var())


def quote_volume_from_bars(bars, window: int) -> float | None:
    """Sum of ``close * volume`` over the last ``window`` bars."""
    if bars is None or bars.empty:
        return None
    tail = bars.tail(window)
    qv = float((tail["close"].astype(float) * tail["volume"].astype(float)).sum())
    return qv if math.isfinite(qv) else None


class AssetEnricher:
    """Fills ``AssetMetrics`` for a universe of assets.

    A failed fetch for one asset keeps that asset's previous metrics.
    """

    def __init__(self, provider: MarketDataProvider, config: DataConfig) -> None:
        self._provider = provider
        self._config = config
        self._log = logger.bind(component="enricher")

    def _retry(self, func, *args):
        return fetch_with_retry(
            func,
            *args,
            max_retries=self._config.max_retries,
            base_delay=self._config.retry_base_delay_seconds,
            jitter=self._config.retry_jitter_seconds,
        )

    def enrich_one(self, asset: Asset) -> AssetMetrics:
        bars = self._retry(self._provider.get_klines, asset.symbol, self._config.interval, ATR_BARS)
        window = max(1, int(round(bars_per_day(self._config.interval))))
        quote_volume = quote_volume_from_bars(bars, window)
        atr_pct = atr_percent(bars) if not bars.empty else None

        depth = self._retry(self._provider.get_depth_notional, asset.symbol)
        rates = self._retry(self._provider.get_funding_rates, asset.symbol, FUNDING_SAMPLES)
        f_mean, f_var = funding_stats(rates)

        return AssetMetrics(
            liquidity_score=liquidity_score(quote_volume, depth),
            atr_pct_14=atr_pct,
            funding_mean=f_mean,
            funding_variance=f_var,
            quote_volume=quote_volume,
        )

    def enrich(self, assets: list[Asset]) -> list[Asset]:
        """Return new ``Asset`` objects with refreshed metrics and liquidity tiers."""
        by_symbol = {a.symbol: a for a in assets}
        results = bounded_map(
            lambda sym: self.enrich_one(by_symbol[sym]),
            list(by_symbol),
            max_workers=self._config.enrichment_workers,
        )

        ok = 0
        updated: dict[str, Asset] = {}
        for sym, asset in by_symbol.items():
            result = results.get(sym)
            if isinstance(result, AssetMetrics):
                updated[sym] = replace(asset, metrics=result)
                ok += 1
            else:
                self._log.warning("enrichment_skipped", symbol=sym, error=str(result))
                updated[sym] = asset

        tiers = assign_liquidity_tiers(
            {sym: a.metrics.liquidity_score for sym, a in updated.items()}
        )
        out = [
            replace(a, liquidity_tier=tiers.get(sym, a.liquidity_tier))
            for sym, a in updated.items()
        ]

        tier_dist: dict[str, int] = {"T1": 0, "T2": 0, "T3": 0}
        for tier in tiers.values():
            tier_dist[tier] += 1
        self._log.info("enrichment_complete", total=len(assets), ok=ok, failed=len(assets) - ok, tiers=tier_dist)
        return out


def asset_to_record(asset: Asset, base: dict[str, Any] | None = None) -> dict[str, Any]:
    """Merge an asset's computed tier and metrics back into a markets record."""
    record = dict(base or {"symbol": asset.symbol})
    cats = dict(record.get("categories") or {})
    if asset.sector is not None:
        cats["sector"] = asset.sector
    if asset.ecosystem is not None:
        cats["ecosystem"] = asset.ecosystem
    if asset.asset_type is not None:
        cats["type"] = asset.asset_type
    computed = dict(cats.get("computed") or {})
    computed["liquidityTier"] = asset.liquidity_tier
    cats["computed"] = computed
    m = asset.metrics
    cats["metrics"] = {
        **(cats.get("metrics") or {}),
        "liquidityScore": m.liquidity_score,
        "atrPct14": m.atr_pct_14,
        "fundingMean": m.funding_mean,
        "fundingVariance": m.funding_variance,
        "quoteVolume": m.quote_volume,
    }
    record["categories"] = cats
    return record
