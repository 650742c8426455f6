"""Technical indicators over OHLCV bar frames: RSI, ADX, ATR and volume ratios.

Bar frames are pandas DataFrames with ``open, high, low, close, volume`` columns
sorted oldest first, the same shape the data providers return.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd

from statpairs.core.models import PairTechnicals

RSI_PERIOD = 14
ADX_PERIOD = 14
ATR_PERIOD = 14
VOLUME_AVG_PERIOD = 14
SLOPE_POINTS = 5

NEUTRAL_RSI = 50.0
NEUTRAL_ADX = 25.0


def wilder_rsi(prices: Sequence[float] | np.ndarray, period: int = RSI_PERIOD) -> float:
    """Latest Wilder RSI of a close series, 50 when fewer than ``period + 1`` prices.

    Seeds the averages from the first ``period`` of the last ``2 * period``
    changes, then applies Wilder smoothing over the rest.
    """
    p = np.asarray(prices, dtype=float)
    if p.size < period + 1:
        return NEUTRAL_RSI

    changes = np.diff(p)[-period * 2:]
    seed = changes[:period]
    avg_gain = float(seed[seed > 0].sum()) / period
    avg_loss = float(-seed[seed < 0].sum()) / period

    for change in changes[period:]:
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def rsi_series(closes: pd.Series, period: int = RSI_PERIOD) -> pd.Series:
    """RSI for every bar using Wilder smoothing (``ewm(alpha=1/period)``).

    The first ``period`` bars are dropped, so the result is empty for short input.
    """
    delta = closes.diff()
    gain = delta.clip(lower=0)
    loss = -delta.clip(upper=0)
    avg_gain = gain.ewm(alpha=1 / period, adjust=False).mean()
    avg_loss = loss.ewm(alpha=1 / period, adjust=False).mean()
    rs = avg_gain / avg_loss.replace(0, np.nan)
    rsi = 100 - (100 / (1 + rs))
    rsi = rsi.where(avg_loss != 0, 100.0)
    return rsi.iloc[period:]


def series_slope(values: Sequence[float]) -> float:
    """Average per-step change between the first and last value, 0 for < 2 values."""
    if len(values) < 2:
        return 0.0
    return (float(values[-1]) - float(values[0])) / (len(values) - 1)


def adx_series(bars: pd.DataFrame, period: int = ADX_PERIOD) -> pd.Series:
    """Average Directional Index per bar, smoothed with ``ewm(alpha=1/period)``."""
    high = bars["high"]
    low = bars["low"]
    close = bars["close"]
    prev_close = close.shift(1)

    tr = pd.concat([
        high - low,
        (high - prev_close).abs(),
        (low - prev_close).abs(),
    ], axis=1).max(axis=1)

    up_move = high - high.shift(1)
    down_move = low.shift(1) - low
    plus_dm = up_move.where((up_move > down_move) & (up_move > 0), 0.0)
    minus_dm = down_move.where((down_move > up_move) & (down_move > 0), 0.0)

    atr = tr.ewm(alpha=1 / period, adjust=False).mean()
    plus_di = 100 * (plus_dm.ewm(alpha=1 / period, adjust=False).mean() / atr)
    minus_di = 100 * (minus_dm.ewm(alpha=1 / period, adjust=False).mean() / atr)

    dx = 100 * ((plus_di - minus_di).abs() / (plus_di + minus_di + 1e-10))
    return dx.ewm(alpha=1 / period, adjust=False).mean().iloc[period:]


def average_true_range(bars: pd.DataFrame, period: int = ATR_PERIOD) -> float | None:
    """Wilder-smoothed average true range, or None without ``period + 1`` bars.

    Seeded with the mean of the first ``period`` true ranges, then
    ``atr = (atr * (period - 1) + tr) / period`` for every later bar.
    """
    if len(bars) < period + 1:
        return None
    high = bars["high"].to_numpy(dtype=float)
    low = bars["low"].to_numpy(dtype=float)
    close = bars["close"].to_numpy(dtype=float)

    tr = np.maximum.reduce([
        high[1:] - low[1:],
        np.abs(high[1:] - close[:-1]),
        np.abs(low[1:] - close[:-1]),
    ])
    atr = float(np.mean(tr[:period]))
    for value in tr[period:]:
        atr = (atr * (period - 1) + float(value)) / period
    return atr


def atr_percent(bars: pd.DataFrame, period: int = ATR_PERIOD) -> float | None:
    """ATR as a percentage of the last close."""
    atr = average_true_range(bars, period)
    if atr is None:
        return None
    last_close = float(bars["close"].iloc[-1])
    if not np.isfinite(last_close) or last_close <= 0:
        return None
    return atr / last_close * 100


@dataclass(frozen=True)
class TechnicalSnapshot:
    """Latest indicator readings for one symbol."""

    rsi: float | None
    rsi_slope: float
    adx: float | None
    volume_latest: float | None
    volume_avg: float | None


def compute_technicals(bars: pd.DataFrame) -> TechnicalSnapshot:
    if bars.empty:
        return TechnicalSnapshot(None, 0.0, None, None, None)

    closes = bars["close"].astype(float)
    rsi = rsi_series(closes).dropna()
    rsi_last = rsi.tail(SLOPE_POINTS).tolist()

    adx = adx_series(bars).dropna() if len(bars) > ADX_PERIOD * 2 else pd.Series(dtype=float)

    volumes = bars["volume"].astype(float)
    vol_window = volumes.tail(VOLUME_AVG_PERIOD)

    return TechnicalSnapshot(
        rsi=float(rsi.iloc[-1]) if not rsi.empty else None,
        rsi_slope=series_slope(rsi_last),
        adx=float(adx.iloc[-1]) if not adx.empty else None,
        volume_latest=float(volumes.iloc[-1]),
        volume_avg=float(vol_window.mean()),
    )


def _regime_score(avg_adx: float) -> float:
    # Low ADX means a ranging market
    if avg_adx < 20:
        return 0.8
    if avg_adx < 25:
        return 0.4
    if avg_adx < 30:
        return -0.2
    return -0.6


def enhanced_pair_technicals(long_bars: pd.DataFrame, short_bars: pd.DataFrame) -> PairTechnicals:
    """Cross-leg RSI divergence, volume confirmation and ADX regime for a pair.

    Neutral defaults are returned when either leg has no bars.
    """
    if long_bars is None or short_bars is None or long_bars.empty or short_bars.empty:
        return PairTechnicals()

    lt = compute_technicals(long_bars)
    st = compute_technicals(short_bars)

    long_slope, short_slope = lt.rsi_slope, st.rsi_slope
    rsi_divergence = 0.0
    if long_slope > 0.1 and short_slope < -0.1:
        rsi_divergence = 0.8
    elif long_slope < -0.1 and short_slope > 0.1:
        rsi_divergence = -0.8
    elif abs(long_slope - short_slope) > 0.2:
        rsi_divergence = float(np.sign(long_slope - short_slope)) * 0.5

    long_vol = lt.volume_latest or 0.0
    short_vol = st.volume_latest or 0.0
    long_avg = lt.volume_avg or 0.0
    short_avg = st.volume_avg or 0.0

    volume_confirmation = 0.0
    if long_avg > 0 and short_avg > 0:
        long_ratio = long_vol / long_avg
        short_ratio = short_vol / short_avg
        if long_ratio > 1.1 and short_ratio > 1.1:
            volume_confirmation = 0.6
        elif long_ratio < 0.9 and short_ratio < 0.9:
            volume_confirmation = -0.4
        else:
            volume_confirmation = min(0.3, abs(long_ratio - 1) + abs(short_ratio - 1)) * -0.5

    # A zero or missing ADX counts as neutral
    avg_adx = ((lt.adx or NEUTRAL_ADX) + (st.adx or NEUTRAL_ADX)) / 2

    volume_trend = (
        ((long_vol - long_avg) / long_avg if long_avg > 0 else 0.0) * 0.5
        + ((short_vol - short_avg) / short_avg if short_avg > 0 else 0.0) * 0.5
    )

    return PairTechnicals(
        rsi_divergence=rsi_divergence,
        volume_confirmation=volume_confirmation,
        regime_score=_regime_score(avg_adx),
        adx_trend=avg_adx,
        volume_trend=volume_trend,
    )
