"""Market data protocols consumed by the pair engine."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np
import pandas as pd

KLINE_COLUMNS = ["open", "high", "low", "close", "volume"]


@runtime_checkable
class KlineProvider(Protocol):
    """Source of OHLCV bars for a symbol.

    Swap implementations (exchange REST client, local files, test stubs)
    without changing selection or scanner code.
    """

    def get_klines(self, symbol: str, interval: str, limit: int = 500) -> pd.DataFrame:
        """Get OHLCV bars for a symbol.

        Args:
            symbol: Instrument symbol (e.g. "BTCUSDT")
            interval: Bar interval ("15m", "1h", "4h", "1d")
            limit: Max number of bars to return, most recent last

        Returns:
            DataFrame with columns: open, high, low, close, volume.
            Index is datetime (UTC). Sorted ascending (oldest first).
        """
        ...


@runtime_checkable
class MarketDataProvider(KlineProvider, Protocol):
    """Kline source that also exposes the inputs for asset enrichment."""

    def get_funding_rates(self, symbol: str, limit: int = 50) -> list[float]:
        """Recent funding-rate samples, oldest first. Empty when unavailable."""
        ...

    def get_depth_notional(self, symbol: str) -> float | None:
        """Combined bid+ask notional of the top five book levels."""
        ...


def valid_closes(bars: pd.DataFrame) -> np.ndarray:
    """Close prices that are finite and positive, in bar order."""
    if bars is None or bars.empty or "close" not in bars:
        return np.empty(0)
    closes = pd.to_numeric(bars["close"], errors="coerce").to_numpy(dtype=float)
    with np.errstate(invalid="ignore"):
        mask = np.isfinite(closes) & (closes > 0)
    return closes[mask]
