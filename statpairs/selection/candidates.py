"""Pair candidate generation.

Groups the universe, ranks assets inside each group, forms long/short
combinations and runs every combination through the statistical gates:

    correlation -> short-window hedge ratio -> spread z-score -> ratio z-score
    -> ADF-style stationarity -> half-life / |z| gates -> composite score

Gate failures and data problems never raise; each skipped pair is recorded as a
``Diagnostic`` with a machine-readable ``SkipReason``.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

import numpy as np
import pandas as pd
import pytz
import structlog

from statpairs.core.config import CandidateConfig, DataConfig, bars_per_day
from statpairs.core.models import (
    Asset,
    CointegrationResult,
    CorrelationEntry,
    Diagnostic,
    PairCandidate,
    PairScores,
    PairTechnicals,
    SkipReason,
)
from statpairs.data.cache import KlineCache
from statpairs.data.fetcher import PacedKlineFetcher
from statpairs.data.provider import KlineProvider, valid_closes
from statpairs.selection.ranking import (
    AssetGroup,
    GroupTag,
    RankedAsset,
    group_assets,
    is_tradable,
    pair_combinations,
    rank_assets,
    select_sides,
    selection_pool,
)
from statpairs.stats.indicators import NEUTRAL_RSI, compute_technicals, enhanced_pair_technicals
from statpairs.stats.primitives import (
    MIN_RAW_POINTS,
    adf_like_test,
    align_series,
    beta_y_on_x,
    ensure_minimum_requirements,
    log_prices,
    log_returns,
    ols_regression,
    pairwise_correlations,
    pearson_correlation,
    sample_std,
    validate_data_quality,
    zscores,
)

logger = structlog.get_logger()

MATRIX_MIN_RETURNS = 20


@dataclass(frozen=True)
class PairStatistics:
    """Statistics for one ``(lo, hi)`` leg ordering, before orientation."""

    correlation: float
    beta: float
    hedge_ratio: float
    cointegration: CointegrationResult
    spread_z: float
    spread_vol: float | None
    ratio_z: float


@dataclass
class GenerationResult:
    candidates: list[PairCandidate] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    groups_evaluated: int = 0


# ── Pure per-pair statistics ─────────────────────────────────────────────────


def _ratio_zscore(log_a: np.ndarray, log_b: np.ndarray, window_bars: int, min_bars: int) -> float:
    n = min(log_a.size, log_b.size)
    ratio = log_a[:n] - log_b[:n]
    ratio = ratio[np.isfinite(ratio)]
    if ratio.size < min_bars:
        return 0.0
    size = min(ratio.size, max(min_bars, window_bars))
    window = ratio[-size:]
    mean = float(window.mean())
    var = float(np.sum((window - mean) ** 2)) / max(1, window.size - 1)
    std = math.sqrt(var) or 1e-12
    return (float(window[-1]) - mean) / std


def _fallback_correlation(
    prices_a: np.ndarray,
    prices_b: np.ndarray,
    min_returns: int,
) -> tuple[float, float] | tuple[SkipReason, dict]:
    ra, rb = log_returns(prices_a), log_returns(prices_b)
    m = min(ra.size, rb.size)
    if m < min_returns:
        return SkipReason.CORRELATION_INSUFFICIENT_RETURNS, {"len_a": int(ra.size), "len_b": int(rb.size)}
    ra, rb = ra[-m:], rb[-m:]
    corr = pearson_correlation(ra, rb)
    beta = beta_y_on_x(ra, rb)
    if corr is None or beta is None or not math.isfinite(corr) or not math.isfinite(beta):
        return SkipReason.CORRELATION_FALLBACK_FAILED, {}
    return corr, beta


def compute_pair_statistics(
    prices_a: np.ndarray,
    prices_b: np.ndarray,
    config: CandidateConfig,
    interval: str,
    correlation: tuple[float, float] | None = None,
    subject: str = "",
) -> PairStatistics | Diagnostic:
    """Run the per-pair pipeline on two close series.

    ``correlation`` is a precomputed ``(corr, beta)`` of A on B; when absent it
    is computed from the aligned returns. The correlation gate applies unless
    ``config.no_filters`` is set. Stationarity, half-life and |z| gates are left
    to the caller.
    """
    req = ensure_minimum_requirements(prices_a, prices_b)
    if not req.is_valid:
        return Diagnostic(subject, SkipReason.INSUFFICIENT_DATA, {"details": req.reason})

    qa, qb = validate_data_quality(prices_a), validate_data_quality(prices_b)
    if not qa.is_valid or not qb.is_valid:
        return Diagnostic(
            subject,
            SkipReason.DATA_QUALITY_ISSUES,
            {"a_issues": qa.issues, "b_issues": qb.issues},
        )

    pa, pb, _ = align_series(prices_a, prices_b)

    if correlation is None:
        fallback = _fallback_correlation(pa, pb, config.fallback_min_returns)
        if isinstance(fallback[0], SkipReason):
            return Diagnostic(subject, fallback[0], fallback[1])
        correlation = fallback
    corr, beta = correlation

    if not config.no_filters and corr < config.min_correlation:
        return Diagnostic(subject, SkipReason.LOW_CORRELATION, {"corr": corr})

    bpd = bars_per_day(interval)
    log_a, log_b = log_prices(pa), log_prices(pb)

    hedge_bars = int(math.floor(config.hedge_days * bpd))
    hedge_a = log_a[-min(log_a.size, hedge_bars):]
    hedge_b = log_b[-min(log_b.size, hedge_bars):]

    ols = ols_regression(hedge_a, hedge_b)
    if ols is None or not math.isfinite(ols.slope):
        return Diagnostic(subject, SkipReason.OLS_REGRESSION_FAILED, {})
    hedge_ratio = ols.slope

    spread = hedge_a - hedge_ratio * hedge_b
    spread = spread[np.isfinite(spread)]

    if spread.size >= config.min_spread_points:
        spread_vol: float | None = sample_std(spread)
        spread_z = float(zscores(spread, use_sample_std=True)[-1])
    else:
        spread_vol = None
        spread_z = 0.0

    ratio_bars = int(math.floor(config.effective_ratio_days * bpd))
    ratio_z = _ratio_zscore(log_a, log_b, ratio_bars, config.ratio_min_bars)

    adf = adf_like_test(spread)
    if adf is None:
        return Diagnostic(subject, SkipReason.ADF_TEST_FAILED, {"spread_points": int(spread.size)})

    return PairStatistics(
        correlation=corr,
        beta=beta,
        hedge_ratio=hedge_ratio,
        cointegration=adf,
        spread_z=spread_z,
        spread_vol=spread_vol,
        ratio_z=ratio_z,
    )


@dataclass(frozen=True)
class GateOutcome:
    passed: bool
    relaxed: bool = False
    reason: SkipReason | None = None
    details: dict = field(default_factory=dict)


def apply_mean_reversion_gates(stats: PairStatistics, config: CandidateConfig) -> GateOutcome:
    """Stationarity, half-life and |z| gates with a strict and a fallback tier.

    ``relaxed`` marks a pair that only clears the fallback tier; whether it is
    admitted depends on the rest of its group.
    """
    if config.no_filters:
        return GateOutcome(True)

    coint = stats.cointegration
    if not coint.is_stationary or coint.p_value is None or coint.p_value > config.max_adf_p:
        return GateOutcome(
            False,
            reason=SkipReason.NON_STATIONARY,
            details={"adf_t": coint.test_statistic, "adf_p": coint.p_value, "max_adf_p": config.max_adf_p},
        )

    relaxed_reasons = []
    half_life = coint.half_life
    if half_life is not None and half_life > config.max_half_life:
        if half_life <= config.fallback_max_half_life:
            relaxed_reasons.append(SkipReason.HALFLIFE_EXCEEDS)
        else:
            return GateOutcome(False, reason=SkipReason.HALFLIFE_EXCEEDS, details={"half_life": half_life})

    abs_z = abs(stats.spread_z)
    if abs_z < config.min_spread_z:
        if abs_z >= config.fallback_min_spread_z:
            relaxed_reasons.append(SkipReason.SPREADZ_LOW)
        else:
            return GateOutcome(False, reason=SkipReason.SPREADZ_LOW, details={"spread_z": stats.spread_z})

    if relaxed_reasons:
        return GateOutcome(True, relaxed=True, reason=relaxed_reasons[0])
    return GateOutcome(True)


def pair_composite_score(
    stats: PairStatistics,
    lo_score: float,
    hi_score: float,
    technicals: PairTechnicals,
) -> float:
    half_life = stats.cointegration.half_life or 0.0
    adf_t = stats.cointegration.test_statistic
    adf_term = max(-5.0, min(0.0, adf_t)) if math.isfinite(adf_t) else 0.0
    return (
        0.2 * max(0.0, stats.correlation)
        + 0.2 * abs(stats.spread_z)
        + 0.15 * lo_score
        + 0.15 * hi_score
        - 0.08 * (half_life / 5)
        + 0.08 * adf_term
        + 0.07 * abs(stats.ratio_z)
        + 0.07 * technicals.volume_confirmation
        + 0.08 * technicals.regime_score
    )


def _combined_sector(lo: Asset, hi: Asset) -> str | None:
    if lo.sector and hi.sector:
        return lo.sector if lo.sector == hi.sector else f"{lo.sector}/{hi.sector}"
    return lo.sector or hi.sector


def _fmt(value: float | None, digits: int) -> str:
    if value is None or not math.isfinite(value):
        return str(value)
    return f"{value:.{digits}f}"


def build_candidate(
    lo: RankedAsset,
    hi: RankedAsset,
    stats: PairStatistics,
    technicals: PairTechnicals,
    group: AssetGroup,
    relaxed: bool = False,
) -> PairCandidate:
    """Orient legs by the spread z-score sign and assemble the candidate.

    Spread is ``log(lo) - h * log(hi)``: a positive z means the spread is rich,
    so the candidate shorts ``lo`` and longs ``hi``.
    """
    composite = pair_composite_score(stats, lo.score, hi.score, technicals)
    z = stats.spread_z
    if z > 0:
        long_leg, short_leg = hi, lo
    else:
        long_leg, short_leg = lo, hi

    notes = [
        "enhanced-scores",
        f"corr:{_fmt(stats.correlation, 3)}",
        f"beta:{_fmt(stats.beta, 3)}",
        f"spreadZ:{_fmt(z, 2)}",
        f"ratioZ:{_fmt(stats.ratio_z, 2)}",
        f"adfT:{_fmt(stats.cointegration.test_statistic, 2)}",
        f"rsiDiv:{_fmt(technicals.rsi_divergence, 2)}",
        f"regime:{_fmt(technicals.regime_score, 2)}",
    ]
    if relaxed:
        notes.append("relaxed-filter")

    sector_label = group.key if group.tag == GroupTag.SECTOR else _combined_sector(lo.asset, hi.asset)

    return PairCandidate(
        long_symbol=long_leg.symbol,
        short_symbol=short_leg.symbol,
        correlation=stats.correlation,
        beta=stats.beta,
        hedge_ratio=stats.hedge_ratio,
        cointegration=stats.cointegration,
        spread_z=z,
        spread_vol=stats.spread_vol,
        ratio_z=stats.ratio_z,
        funding_net=funding_carry(lo.asset, hi.asset, stats.beta),
        technicals=technicals,
        scores=PairScores(long=long_leg.score, short=short_leg.score, composite=composite),
        sector_label=sector_label,
        notes=tuple(notes),
        group_tag=group.tag.value,
        group_key=group.key,
        ecosystem=group.key if group.tag == GroupTag.ECOSYSTEM else None,
        asset_type=group.key if group.tag == GroupTag.ASSET_TYPE else None,
        long_sector=long_leg.asset.sector,
        short_sector=short_leg.asset.sector,
    )


def funding_carry(lo: Asset, hi: Asset, beta: float) -> float:
    """Per-period carry of long ``lo`` / short ``beta`` units of ``hi``."""
    b = beta if math.isfinite(beta) else 1.0
    return -(lo.metrics.funding_mean or 0.0) + b * (hi.metrics.funding_mean or 0.0)


def dedupe_candidates(candidates: list[PairCandidate]) -> list[PairCandidate]:
    """Keep the first candidate seen for each ``long|short`` combination."""
    seen: set[str] = set()
    out = []
    for c in candidates:
        if c.combo_key in seen:
            continue
        seen.add(c.combo_key)
        out.append(c)
    return out


# ── Generator ────────────────────────────────────────────────────────────────


class CandidateGenerator:
    """Builds scored ``PairCandidate`` records from an asset universe.

    Klines are fetched once per symbol per run (sequential, paced, retried)
    and reused across every group the symbol belongs to.
    """

    def __init__(
        self,
        provider: KlineProvider,
        config: CandidateConfig | None = None,
        data_config: DataConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config or CandidateConfig()
        self._data_config = data_config or DataConfig()
        self._fetcher = PacedKlineFetcher(provider, self._data_config, sleep=sleep)
        self._cache = KlineCache(self._data_config.cache_ttl_seconds)
        self._log = logger.bind(component="candidate_generator")

    # ── Data ─────────────────────────────────────────────────────────

    def _klines(self, symbol: str) -> pd.DataFrame:
        interval, limit = self._data_config.interval, self._data_config.kline_limit
        bars = self._cache.get(symbol, interval, limit)
        if bars is None:
            bars = self._fetcher.fetch(symbol)
            self._cache.set(symbol, interval, limit, bars)
        return bars

    def _load_group_data(
        self,
        tradable: list[Asset],
        group: AssetGroup,
        diagnostics: list[Diagnostic],
    ) -> tuple[dict[str, np.ndarray], dict[str, pd.DataFrame], list[float]]:
        series: dict[str, np.ndarray] = {}
        bars_by_symbol: dict[str, pd.DataFrame] = {}
        rsi_values: list[float] = []

        for asset in tradable:
            sym = asset.symbol
            try:
                bars = self._klines(sym)
            except Exception as e:
                diagnostics.append(Diagnostic(sym, SkipReason.FETCH_FAILED, {"group": group.label, "error": str(e)}))
                self._log.warning("kline_fetch_failed", symbol=sym, group=group.label, error=str(e))
                rsi_values.append(NEUTRAL_RSI)
                continue

            bars_by_symbol[sym] = bars
            closes = valid_closes(bars)
            if closes.size >= self._config.min_close_points:
                series[sym] = closes
            else:
                diagnostics.append(Diagnostic(
                    sym, SkipReason.INSUFFICIENT_CLOSES, {"group": group.label, "closes": int(closes.size)},
                ))
                self._log.info("asset_skipped", symbol=sym, reason=SkipReason.INSUFFICIENT_CLOSES.value, closes=int(closes.size))

            rsi = compute_technicals(bars).rsi if not bars.empty else None
            rsi_values.append(rsi if rsi is not None and math.isfinite(rsi) else NEUTRAL_RSI)

        return series, bars_by_symbol, rsi_values

    def _correlation_matrix(
        self,
        pool: list[RankedAsset],
        series: dict[str, np.ndarray],
    ) -> tuple[dict[tuple[str, str], CorrelationEntry], dict[str, int]]:
        bpd = bars_per_day(self._data_config.interval)
        lookback = max(self._config.correlation_min_bars, int(math.floor(self._config.correlation_days * bpd)))

        returns: dict[str, np.ndarray] = {}
        for r in pool:
            prices = series.get(r.symbol)
            if prices is not None and prices.size >= MIN_RAW_POINTS:
                clipped = prices[-min(lookback + 1, prices.size):]
                rets = log_returns(clipped)
                returns[r.symbol] = rets if rets.size >= MATRIX_MIN_RETURNS else np.empty(0)
            else:
                returns[r.symbol] = np.empty(0)

        index = {sym: i for i, sym in enumerate(returns)}
        return pairwise_correlations(returns), index

    @staticmethod
    def _lookup_correlation(
        lo: str,
        hi: str,
        matrix: dict[tuple[str, str], CorrelationEntry],
        index: dict[str, int],
    ) -> tuple[float, float] | None:
        """Matrix entry oriented as ``lo`` on ``hi``; None when invalid or absent."""
        if index[lo] < index[hi]:
            entry = matrix.get((lo, hi))
            if entry is None or not entry.is_valid:
                return None
            return entry.correlation, entry.beta
        entry = matrix.get((hi, lo))
        if entry is None or not entry.is_valid or entry.beta == 0:
            return None
        return entry.correlation, 1 / entry.beta

    # ── Groups ───────────────────────────────────────────────────────

    def generate_for_group(self, group: AssetGroup) -> GenerationResult:
        """Candidates for one group, best composite first, at most the group limit."""
        cfg = self._config
        result = GenerationResult(groups_evaluated=1)
        diagnostics = result.diagnostics

        tradable = [a for a in group.assets if is_tradable(a, cfg)]
        self._log.debug("group_start", group=group.label, items=len(group.assets), tradable=len(tradable))
        if len(tradable) < 2:
            return result
        limit = min(cfg.limit_per_group, math.ceil(len(tradable) / 2))

        series, bars_by_symbol, rsi_values = self._load_group_data(tradable, group, diagnostics)

        ranked = rank_assets(tradable, rsi_values, cfg)
        top, bottom = select_sides(ranked, cfg.side_candidates)
        pool = selection_pool(ranked, top, bottom, cfg)
        matrix, index = self._correlation_matrix(pool, series)

        strict: list[PairCandidate] = []
        relaxed: list[tuple[PairCandidate, GateOutcome]] = []
        seen: set[str] = set()
        skipped_corr = 0

        for lo, hi in pair_combinations(top, bottom, pool, cfg):
            if lo.symbol == hi.symbol:
                continue
            key = f"{group.label}|{lo.symbol}|{hi.symbol}"
            if key in seen:
                continue
            seen.add(key)

            a, b = series.get(lo.symbol), series.get(hi.symbol)
            if a is None or b is None:
                diagnostics.append(Diagnostic(key, SkipReason.INSUFFICIENT_CLOSES, {}))
                continue
            if lo.symbol not in index or hi.symbol not in index:
                diagnostics.append(Diagnostic(key, SkipReason.CORRELATION_DATA_MISSING, {}))
                continue

            try:
                stats = compute_pair_statistics(
                    a, b, cfg, self._data_config.interval,
                    correlation=self._lookup_correlation(lo.symbol, hi.symbol, matrix, index),
                    subject=key,
                )
                if isinstance(stats, Diagnostic):
                    if stats.reason == SkipReason.LOW_CORRELATION:
                        skipped_corr += 1
                    diagnostics.append(stats)
                    self._log.debug("pair_skipped", pair=key, reason=stats.reason.value, **stats.details)
                    continue

                gate = apply_mean_reversion_gates(stats, cfg)
                if not gate.passed:
                    diagnostics.append(Diagnostic(key, gate.reason, gate.details))
                    self._log.debug("pair_skipped", pair=key, reason=gate.reason.value)
                    continue

                technicals = enhanced_pair_technicals(
                    bars_by_symbol.get(lo.symbol), bars_by_symbol.get(hi.symbol),
                )
                candidate = build_candidate(lo, hi, stats, technicals, group, relaxed=gate.relaxed)
            except Exception as e:
                diagnostics.append(Diagnostic(key, SkipReason.PAIR_ERROR, {"error": str(e)}))
                self._log.exception("pair_error", pair=key)
                continue

            if gate.relaxed:
                relaxed.append((candidate, gate))
            else:
                strict.append(candidate)

        if strict:
            admitted = strict
            for candidate, gate in relaxed:
                diagnostics.append(Diagnostic(
                    f"{group.label}|{candidate.combo_key}", gate.reason, {"relaxed_rejected": True},
                ))
        else:
            admitted = [c for c, _ in relaxed]

        admitted = sorted(admitted, key=lambda c: c.scores.composite, reverse=True)[:limit]
        result.candidates.extend(admitted)

        self._log.info(
            "group_summary",
            group=group.label,
            tradable=len(tradable),
            strict=len(strict),
            relaxed=len(relaxed),
            produced=len(admitted),
            skipped_corr=skipped_corr,
            limit=limit,
        )
        return result

    def generate(self, assets: list[Asset]) -> GenerationResult:
        """Run every group and dedupe across groups (first occurrence wins)."""
        groups = group_assets(assets, include_global=self._config.allow_cross_category)
        combined = GenerationResult()

        for group in groups:
            try:
                group_result = self.generate_for_group(group)
            except Exception:
                self._log.exception("group_failed", group=group.label)
                continue
            combined.candidates.extend(group_result.candidates)
            combined.diagnostics.extend(group_result.diagnostics)
            combined.groups_evaluated += group_result.groups_evaluated

        before = len(combined.candidates)
        combined.candidates = dedupe_candidates(combined.candidates)
        self._log.info(
            "generation_complete",
            groups=combined.groups_evaluated,
            before_dedupe=before,
            candidates=len(combined.candidates),
            diagnostics=len(combined.diagnostics),
        )
        return combined


def write_candidates_snapshot(
    path: Path | str,
    candidates: list[PairCandidate],
    as_of: datetime | None = None,
) -> Path:
    """Write ``{as_of, count, pairs}`` JSON; returns the written path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    as_of = as_of or datetime.now(pytz.UTC)
    doc = {
        "as_of": as_of.isoformat(),
        "count": len(candidates),
        "pairs": [c.to_record() for c in candidates],
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(doc, f, indent=2, default=str)
    return path
