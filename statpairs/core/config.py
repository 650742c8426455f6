"""YAML config loader with pydantic validation."""

from __future__ import annotations

import math
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from dotenv import load_dotenv


# Load .env file
load_dotenv()


# ── Config Models ────────────────────────────────────────────────────────────


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class DataConfig(_Frozen):
    interval: str = "1h"
    kline_limit: int = 500
    fetch_delay_seconds: float = 0.5
    max_retries: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_jitter_seconds: float = 0.5
    enrichment_workers: int = 5
    cache_ttl_seconds: float = 60.0
    markets_file: str = "data/markets.json"
    klines_dir: str = "data/klines"

    @field_validator("enrichment_workers")
    @classmethod
    def _clamp_workers(cls, v: int) -> int:
        return max(1, min(10, v))


class CandidateConfig(_Frozen):
    """Tunables for the candidate generator. Defaults mirror the production run."""

    no_filters: bool = False
    allow_cross_category: bool = False
    side_candidates: int = 10
    limit_per_group: int = 5
    pairing_mode: Literal["extremes", "pool"] = "extremes"
    quote_suffix: str = "USDT"
    tradable_tiers: tuple[str, ...] = ("T1", "T2")
    min_close_points: int = 30

    # Asset ranking weights (raw weighted sum, not normalised)
    w_liquidity: float = 0.4
    w_volatility: float = 0.3
    w_funding: float = 0.2
    w_quote_volume: float = 0.1
    w_rsi: float = 0.2
    zscore_cap: float = 3.0

    # Correlation / hedge windows
    min_correlation: float = 0.7
    correlation_days: float = 90.0
    correlation_min_bars: int = 30
    fallback_min_returns: int = 10
    hedge_days: float = 30.0
    ratio_days: float = 21.0
    ratio_min_days: float = 14.0
    ratio_max_days: float = 30.0
    ratio_min_bars: int = 20
    min_spread_points: int = 5

    # Stationarity and mean-reversion gates
    max_adf_p: float = 0.10
    max_half_life: float = 20.0
    fallback_max_half_life: float = 40.0
    min_spread_z: float = 0.8
    fallback_min_spread_z: float = 0.5

    @field_validator("side_candidates")
    @classmethod
    def _min_sides(cls, v: int) -> int:
        return max(2, v)

    @property
    def effective_ratio_days(self) -> float:
        return min(self.ratio_max_days, max(self.ratio_min_days, self.ratio_days))


class ScannerConfig(_Frozen):
    correlation_days: float = 30.0
    cointegration_days: float = 90.0
    hedge_ratio_days: float = 7.0
    zscore_days: float = 30.0
    entry_threshold: float = 2.0
    exit_threshold: float = 0.5
    watch_threshold: float = 1.5
    min_spread_points: int = 10
    candle_buffer: int = 50
    watchlist: list[tuple[str, str]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _thresholds_ordered(self) -> ScannerConfig:
        if not (self.exit_threshold <= self.watch_threshold <= self.entry_threshold):
            raise ValueError("expected exit_threshold <= watch_threshold <= entry_threshold")
        return self


class LifecycleConfig(_Frozen):
    profit_target_z: float = 0.5
    time_stop_half_lives: float = 2.0
    convergence_threshold: float = 0.5
    risk_reduction_pnl_usd: float = -40.0
    risk_exit_pnl_usd: float = -100.0


class LoggingConfig(_Frozen):
    level: str = "INFO"
    file: str = "data/logs/statpairs.log"
    json_format: bool = True


class Settings(_Frozen):
    """Top-level application settings."""

    data: DataConfig = Field(default_factory=DataConfig)
    candidates: CandidateConfig = Field(default_factory=CandidateConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    snapshot_dir: str = "data/snapshots"


# ── Helpers ──────────────────────────────────────────────────────────────────


_INTERVAL_RE = re.compile(r"^(\d+)([mhd])$", re.IGNORECASE)


def bars_per_day(interval: str) -> float:
    """Approximate number of bars per day for an interval like "15m", "1h", "1d".

    Falls back to hourly bars (24/day) when the interval cannot be parsed.
    """
    m = _INTERVAL_RE.match(interval.strip())
    if not m:
        return 24.0
    n = int(m.group(1))
    if n <= 0:
        return 24.0
    unit = m.group(2).lower()
    if unit == "m":
        return (24 * 60) / n
    if unit == "h":
        return 24 / n
    return 1 / n


def days_to_bars(days: float, interval: str) -> int:
    return int(math.floor(days * bars_per_day(interval)))


def hours_per_bar(interval: str) -> float:
    return 24.0 / bars_per_day(interval)


# ── Loader ───────────────────────────────────────────────────────────────────


def load_yaml(path: Path | str) -> dict[str, Any]:
    """Load a YAML file and return the parsed dict."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    return data or {}


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load global settings from YAML, overlay the log level from env."""
    if config_path is None:
        config_path = os.getenv("STATPAIRS_CONFIG", "config/settings.yaml")

    path = Path(config_path)
    if path.exists():
        raw = load_yaml(path)
    else:
        raw = {}

    level = os.getenv("STATPAIRS_LOG_LEVEL")
    if level:
        raw.setdefault("logging", {})
        raw["logging"]["level"] = level

    return Settings(**raw)
