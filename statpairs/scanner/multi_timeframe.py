"""Multi-timeframe watchlist scanner.

Each pair is re-derived from scratch every cycle on four independent windows:

    correlation   30d  Pearson of log returns
    cointegration 90d  OLS hedge on log prices -> spread -> ADF-style test
    z-score       30d  its own OLS hedge -> spread -> z of the latest value
    hedge ratio    7d  OLS hedge used only for position sizing

and classified into ENTER / EXIT / WATCH / WAIT on the z-score.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import numpy as np
import pytz
import structlog

from statpairs.core.config import DataConfig, ScannerConfig, bars_per_day, days_to_bars
from statpairs.core.models import (
    Diagnostic,
    PairAction,
    PairSignal,
    PositionSizing,
    SkipReason,
    SpreadDirection,
)
from statpairs.data.fetcher import PacedKlineFetcher
from statpairs.data.provider import KlineProvider, valid_closes
from statpairs.stats.indicators import wilder_rsi
from statpairs.stats.primitives import (
    adf_like_test,
    align_series,
    ensure_minimum_requirements,
    log_prices,
    log_returns,
    ols_regression,
    pearson_correlation,
    sample_std,
)

logger = structlog.get_logger()

MIN_SPREAD_DIFFS = 5


def correlation_strength(corr: float) -> str:
    a = abs(corr)
    if a >= 0.8:
        return "Very Strong"
    if a >= 0.6:
        return "Strong"
    if a >= 0.4:
        return "Moderate"
    if a >= 0.2:
        return "Weak"
    return "Very Weak"


def zscore_signal(z: float) -> str:
    a = abs(z)
    if a >= 2.0:
        return "Extreme"
    if a >= 1.5:
        return "Strong"
    if a >= 1.0:
        return "Moderate"
    return "Weak"


def signal_strength(abs_z: float) -> str:
    if abs_z >= 2.0:
        return "Strong"
    if abs_z >= 1.5:
        return "Moderate"
    return "Weak"


def classify_action(spread_z: float, config: ScannerConfig) -> PairAction:
    abs_z = abs(spread_z)
    if abs_z >= config.entry_threshold:
        return PairAction.ENTER
    if abs_z <= config.exit_threshold:
        return PairAction.EXIT
    if abs_z >= config.watch_threshold:
        return PairAction.WATCH
    return PairAction.WAIT


def position_sizing(long_symbol: str, short_symbol: str, hedge_ratio: float, window_days: float) -> PositionSizing:
    """Split notional ``|h| : 1`` between the long and short legs, in percent."""
    h = abs(hedge_ratio)
    return PositionSizing(
        long_symbol=long_symbol,
        long_percent=h / (1 + h) * 100,
        short_symbol=short_symbol,
        short_percent=1 / (1 + h) * 100,
        hedge_ratio_used=hedge_ratio,
        window_days=window_days,
    )


def scanner_composite(
    correlation: float,
    spread_z: float,
    adf_statistic: float,
    half_life: float | None,
    rsi_a: float,
    rsi_b: float,
) -> float:
    adf_term = max(-5.0, min(0.0, adf_statistic)) if math.isfinite(adf_statistic) else 0.0
    hl_term = min(half_life, 100.0) if half_life else 50.0
    return (
        0.25 * max(0.0, correlation)
        + 0.25 * abs(spread_z)
        + 0.20 * adf_term
        - 0.10 * hl_term
        + 0.10 * (rsi_a / 100)
        + 0.10 * (rsi_b / 100)
    )


def _tail(values: np.ndarray, bars: int) -> np.ndarray:
    return values[-min(values.size, bars):]


def _hedged_spread(log_a: np.ndarray, log_b: np.ndarray, beta: float) -> np.ndarray:
    n = min(log_a.size, log_b.size)
    spread = log_a[:n] - beta * log_b[:n]
    return spread[np.isfinite(spread)]


@dataclass
class ScanReport:
    signals: list[PairSignal] = field(default_factory=list)
    skipped: dict[tuple[str, str], SkipReason] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    timestamp: datetime | None = None

    def by_action(self, action: PairAction) -> list[PairSignal]:
        return [s for s in self.signals if s.action == action]


class MultiTimeframeScanner:
    """Classifies a watchlist of pairs each cycle.

    ``scan_pair`` is pure over two close series. ``scan`` fetches both legs
    through a paced, retried fetcher and never lets one pair abort the batch.
    """

    def __init__(
        self,
        config: ScannerConfig | None = None,
        data_config: DataConfig | None = None,
        provider: KlineProvider | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config or ScannerConfig()
        self._data_config = data_config or DataConfig()
        self._fetcher = PacedKlineFetcher(provider, self._data_config, sleep=sleep) if provider else None
        self._log = logger.bind(component="pair_scanner")

    @property
    def interval(self) -> str:
        return self._data_config.interval

    @property
    def required_candles(self) -> int:
        bpd = bars_per_day(self.interval)
        return int(math.ceil(self._config.cointegration_days * bpd)) + self._config.candle_buffer

    def scan_pair(
        self,
        symbol_a: str,
        symbol_b: str,
        prices_a: np.ndarray,
        prices_b: np.ndarray,
        timestamp: datetime | None = None,
    ) -> PairSignal | Diagnostic:
        cfg = self._config
        subject = f"{symbol_a}/{symbol_b}"
        interval = self.interval

        req = ensure_minimum_requirements(prices_a, prices_b)
        if not req.is_valid:
            return Diagnostic(subject, SkipReason.INSUFFICIENT_DATA, {"details": req.reason})

        pa, pb, n = align_series(prices_a, prices_b)
        log_a, log_b = log_prices(pa), log_prices(pb)

        coint_bars = days_to_bars(cfg.cointegration_days, interval)
        zscore_bars = days_to_bars(cfg.zscore_days, interval)
        hedge_bars = days_to_bars(cfg.hedge_ratio_days, interval)
        corr_bars = days_to_bars(cfg.correlation_days, interval)

        # Correlation window
        corr = pearson_correlation(log_returns(_tail(pa, corr_bars)), log_returns(_tail(pb, corr_bars)))
        correlation = corr if corr is not None else 0.0

        # Cointegration window
        coint_a, coint_b = _tail(log_a, coint_bars), _tail(log_b, coint_bars)
        coint_ols = ols_regression(coint_a, coint_b)
        coint_spread = _hedged_spread(coint_a, coint_b, coint_ols.slope if coint_ols else 0.0)
        adf = adf_like_test(coint_spread)
        is_cointegrated = adf.is_stationary if adf else False
        half_life = adf.half_life if adf else None
        adf_statistic = adf.test_statistic if adf else 0.0
        p_value = adf.p_value if adf else None

        # Sizing window
        hedge_ols = ols_regression(_tail(log_a, hedge_bars), _tail(log_b, hedge_bars))
        if hedge_ols is None or not math.isfinite(hedge_ols.slope):
            return Diagnostic(subject, SkipReason.OLS_REGRESSION_FAILED, {"window_days": cfg.hedge_ratio_days})
        hedge_ratio = hedge_ols.slope

        # Z-score window, with its own hedge
        z_a, z_b = _tail(log_a, zscore_bars), _tail(log_b, zscore_bars)
        z_ols = ols_regression(z_a, z_b)
        z_spread = _hedged_spread(z_a, z_b, z_ols.slope if z_ols else hedge_ratio)
        if z_spread.size < cfg.min_spread_points:
            return Diagnostic(subject, SkipReason.INSUFFICIENT_SPREAD, {"points": int(z_spread.size)})

        mean = float(z_spread.mean())
        std = sample_std(z_spread)
        spread_z = (float(z_spread[-1]) - mean) / std if std > 0 else 0.0

        diffs = np.diff(z_spread)
        spread_vol = sample_std(diffs) if diffs.size >= MIN_SPREAD_DIFFS else 0.0

        rsi_a, rsi_b = wilder_rsi(prices_a), wilder_rsi(prices_b)

        if spread_z > 0:
            direction, long_sym, short_sym = SpreadDirection.SHORT, symbol_b, symbol_a
        else:
            direction, long_sym, short_sym = SpreadDirection.LONG, symbol_a, symbol_b

        return PairSignal(
            symbol_a=symbol_a,
            symbol_b=symbol_b,
            action=classify_action(spread_z, cfg),
            direction=direction,
            long_symbol=long_sym,
            short_symbol=short_sym,
            signal_strength=signal_strength(abs(spread_z)),
            correlation=correlation,
            correlation_strength=correlation_strength(correlation),
            correlation_days=cfg.correlation_days,
            is_cointegrated=is_cointegrated,
            adf_statistic=adf_statistic,
            p_value=p_value,
            half_life=half_life,
            cointegration_days=cfg.cointegration_days,
            spread_z=spread_z,
            zscore_signal=zscore_signal(spread_z),
            zscore_days=cfg.zscore_days,
            hedge_ratio=hedge_ratio,
            hedge_r_squared=hedge_ols.r_squared,
            hedge_ratio_days=cfg.hedge_ratio_days,
            spread_volatility=spread_vol,
            rsi={symbol_a: rsi_a, symbol_b: rsi_b},
            composite_score=scanner_composite(correlation, spread_z, adf_statistic, half_life, rsi_a, rsi_b),
            sizing=position_sizing(long_sym, short_sym, hedge_ratio, cfg.hedge_ratio_days),
            interval=interval,
            candles=n,
            timestamp=timestamp or datetime.now(pytz.UTC),
        )

    def _closes(self, symbol: str) -> np.ndarray:
        if self._fetcher is None:
            raise RuntimeError("scanner has no kline provider")
        return valid_closes(self._fetcher.fetch(symbol, limit=self.required_candles))

    def scan(self, watchlist: list[tuple[str, str]] | None = None) -> ScanReport:
        """Scan every pair; results sorted by |z| descending."""
        pairs = [tuple(p) for p in (watchlist if watchlist is not None else self._config.watchlist)]
        report = ScanReport(timestamp=datetime.now(pytz.UTC))

        for symbol_a, symbol_b in pairs:
            pair = (symbol_a, symbol_b)
            try:
                prices_a = self._closes(symbol_a)
                prices_b = self._closes(symbol_b)
            except Exception as e:
                report.skipped[pair] = SkipReason.FETCH_FAILED
                report.diagnostics.append(Diagnostic(f"{symbol_a}/{symbol_b}", SkipReason.FETCH_FAILED, {"error": str(e)}))
                self._log.warning("pair_skipped", pair=pair, reason=SkipReason.FETCH_FAILED.value, error=str(e))
                continue

            try:
                result = self.scan_pair(symbol_a, symbol_b, prices_a, prices_b, timestamp=report.timestamp)
            except Exception as e:
                self._log.exception("pair_scan_error", pair=pair)
                result = Diagnostic(f"{symbol_a}/{symbol_b}", SkipReason.SCAN_ERROR, {"error": str(e)})

            if isinstance(result, Diagnostic):
                report.skipped[pair] = result.reason
                report.diagnostics.append(result)
                self._log.info("pair_skipped", pair=pair, reason=result.reason.value)
                continue

            report.signals.append(result)
            self._log.info(
                "pair_scanned",
                pair=pair,
                action=result.action.value,
                spread_z=round(result.spread_z, 3),
                correlation=round(result.correlation, 3),
                cointegrated=result.is_cointegrated,
            )

        report.signals.sort(key=lambda s: abs(s.spread_z), reverse=True)
        self._log.info(
            "scan_complete",
            pairs=len(pairs),
            signals=len(report.signals),
            skipped=len(report.skipped),
            enter=len(report.by_action(PairAction.ENTER)),
        )
        return report


def _num(value: float | None, fmt: str) -> str:
    if value is None or not math.isfinite(value):
        return "n/a"
    return format(value, fmt)


def format_scan_report(report: ScanReport) -> str:
    """Fixed-width text table of signals followed by skipped pairs."""
    lines = []
    ts = report.timestamp.isoformat() if report.timestamp else ""
    lines.append(f"Pair scan {ts}")
    header = (
        f"{'PAIR':<20} {'ACTION':<6} {'DIR':<5} {'Z':>7} {'CORR':>6} {'COINT':>5} "
        f"{'HL':>6} {'HEDGE':>7} {'LONG%':>6} {'SHORT%':>6} {'SCORE':>7}"
    )
    lines.append(header)
    lines.append("-" * len(header))
    for s in report.signals:
        lines.append(
            f"{s.symbol_a + '/' + s.symbol_b:<20} {s.action.value:<6} {s.direction.value:<5} "
            f"{_num(s.spread_z, '+.2f'):>7} {_num(s.correlation, '.2f'):>6} "
            f"{'Y' if s.is_cointegrated else 'N':>5} {_num(s.half_life, '.1f'):>6} "
            f"{_num(s.hedge_ratio, '.3f'):>7} {_num(s.sizing.long_percent, '.1f'):>6} "
            f"{_num(s.sizing.short_percent, '.1f'):>6} {_num(s.composite_score, '.2f'):>7}"
        )
    if report.skipped:
        lines.append("")
        lines.append("Skipped:")
        for (a, b), reason in report.skipped.items():
            lines.append(f"  {a}/{b}: {reason.value}")
    return "\n".join(lines)
