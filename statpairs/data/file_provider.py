"""Offline market data: a markets JSON document plus one kline CSV per symbol."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pandas as pd
import structlog

from statpairs.core.models import Asset
from statpairs.data.provider import KLINE_COLUMNS

logger = structlog.get_logger()


def load_market_records(path: Path | str) -> list[dict[str, Any]]:
    """Read ``{"markets": [...]}`` and drop records missing a symbol or categories."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Markets file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    log = logger.bind(component="markets_loader")
    records = data.get("markets", []) if isinstance(data, dict) else data
    valid = []
    for record in records or []:
        if not isinstance(record, dict) or not record.get("symbol") or not record.get("categories"):
            log.warning("invalid_market", symbol=(record or {}).get("symbol") if isinstance(record, dict) else None)
            continue
        valid.append(record)
    log.info("markets_loaded", total=len(records or []), valid=len(valid))
    return valid


def load_assets(path: Path | str) -> list[Asset]:
    return [Asset.from_market_record(r) for r in load_market_records(path)]


def save_market_records(path: Path | str, records: list[dict[str, Any]], **extra: Any) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump({**extra, "markets": records}, f, indent=2, default=str)


class FileMarketData:
    """``MarketDataProvider`` backed by local files.

    Klines live in ``<klines_dir>/<SYMBOL>.csv`` with a ``timestamp`` column
    (epoch milliseconds or ISO 8601) and the OHLCV columns. Funding samples
    and order-book depth come from the markets record (``fundingRates`` and
    ``orderbook.notionalBid5/notionalAsk5``).
    """

    def __init__(self, markets_file: Path | str, klines_dir: Path | str) -> None:
        self._markets_file = Path(markets_file)
        self._klines_dir = Path(klines_dir)
        self._records: dict[str, dict[str, Any]] | None = None
        self._log = logger.bind(component="file_market_data")

    def _record(self, symbol: str) -> dict[str, Any]:
        if self._records is None:
            self._records = {r["symbol"]: r for r in load_market_records(self._markets_file)}
        return self._records.get(symbol, {})

    def get_klines(self, symbol: str, interval: str, limit: int = 500) -> pd.DataFrame:
        path = self._klines_dir / f"{symbol}.csv"
        if not path.exists():
            raise FileNotFoundError(f"No klines for {symbol}: {path}")

        df = pd.read_csv(path)
        if "timestamp" in df.columns:
            ts = df["timestamp"]
            if pd.api.types.is_numeric_dtype(ts):
                df.index = pd.to_datetime(ts, unit="ms", utc=True)
            else:
                df.index = pd.to_datetime(ts, utc=True)
            df = df.sort_index()

        missing = [c for c in KLINE_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(f"Kline file {path} missing columns: {missing}")

        bars = df[KLINE_COLUMNS].apply(pd.to_numeric, errors="coerce")
        return bars.tail(limit)

    def get_funding_rates(self, symbol: str, limit: int = 50) -> list[float]:
        rates = self._record(symbol).get("fundingRates") or []
        values = [float(r) for r in rates if r is not None]
        return values[-limit:]

    def get_depth_notional(self, symbol: str) -> float | None:
        book = self._record(symbol).get("orderbook")
        if not book:
            return None
        return float(book.get("notionalBid5") or 0.0) + float(book.get("notionalAsk5") or 0.0)
