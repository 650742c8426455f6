"""Data model shared by the stats, selection, scanner and lifecycle layers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SkipReason(str, Enum):
    """Machine-readable reason an asset or pair was excluded from a cycle."""

    INSUFFICIENT_CLOSES = "insufficient_closes"
    FETCH_FAILED = "fetch_failed"
    INSUFFICIENT_DATA = "insufficient_data"
    DATA_QUALITY_ISSUES = "data_quality_issues"
    CORRELATION_DATA_MISSING = "correlation_data_missing"
    CORRELATION_FALLBACK_FAILED = "correlation_fallback_failed"
    CORRELATION_INSUFFICIENT_RETURNS = "correlation_insufficient_returns"
    LOW_CORRELATION = "low_correlation"
    OLS_REGRESSION_FAILED = "ols_regression_failed"
    ADF_TEST_FAILED = "adf_test_failed"
    NON_STATIONARY = "non_stationary"
    HALFLIFE_EXCEEDS = "halflife_exceeds"
    SPREADZ_LOW = "spreadz_low"
    INSUFFICIENT_SPREAD = "insufficient_spread"
    SCAN_ERROR = "scan_error"
    PAIR_ERROR = "pair_error"


@dataclass
class Diagnostic:
    """Why something was skipped, with free-form context for the audit log."""

    subject: str
    reason: SkipReason
    details: dict[str, Any] = field(default_factory=dict)


# ── Stats results ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RegressionResult:
    slope: float
    intercept: float
    r_squared: float
    residuals: list[float]
    standard_error: float


@dataclass(frozen=True)
class CointegrationResult:
    test_statistic: float
    p_value: float | None
    is_stationary: bool
    half_life: float | None
    lags: int = 1


@dataclass(frozen=True)
class DataQualityReport:
    is_valid: bool
    issues: list[str]


@dataclass(frozen=True)
class RequirementCheck:
    is_valid: bool
    reason: str | None = None


@dataclass(frozen=True)
class CorrelationEntry:
    correlation: float
    beta: float
    is_valid: bool


# ── Universe ─────────────────────────────────────────────────────────────────


@dataclass
class AssetMetrics:
    liquidity_score: float | None = None
    atr_pct_14: float | None = None
    funding_mean: float | None = None
    funding_variance: float | None = None
    quote_volume: float | None = None


@dataclass
class Asset:
    """One tradable instrument with its category labels and precomputed metrics."""

    symbol: str
    sector: str | None = None
    ecosystem: str | None = None
    asset_type: str | None = None
    liquidity_tier: str | None = None
    metrics: AssetMetrics = field(default_factory=AssetMetrics)

    @classmethod
    def from_market_record(cls, record: dict[str, Any]) -> Asset:
        """Build from a markets-file record (``{"symbol", "categories": {...}}``)."""
        cats = record.get("categories") or {}
        computed = cats.get("computed") or {}
        m = cats.get("metrics") or {}
        return cls(
            symbol=record["symbol"],
            sector=cats.get("sector"),
            ecosystem=cats.get("ecosystem"),
            asset_type=cats.get("type"),
            liquidity_tier=computed.get("liquidityTier"),
            metrics=AssetMetrics(
                liquidity_score=m.get("liquidityScore"),
                atr_pct_14=m.get("atrPct14"),
                funding_mean=m.get("fundingMean"),
                funding_variance=m.get("fundingVariance"),
                quote_volume=m.get("quoteVolume"),
            ),
        )


# ── Candidates ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PairTechnicals:
    rsi_divergence: float = 0.0
    volume_confirmation: float = 0.0
    regime_score: float = 0.0
    adx_trend: float = 25.0
    volume_trend: float = 0.0


@dataclass(frozen=True)
class PairScores:
    long: float
    short: float
    composite: float


@dataclass(frozen=True)
class PairCandidate:
    """A scored long/short combination. Immutable once emitted."""

    long_symbol: str
    short_symbol: str
    correlation: float
    beta: float
    hedge_ratio: float
    cointegration: CointegrationResult
    spread_z: float
    spread_vol: float | None
    ratio_z: float
    funding_net: float
    technicals: PairTechnicals
    scores: PairScores
    sector_label: str | None
    notes: tuple[str, ...] = ()
    group_tag: str = ""
    group_key: str = ""
    ecosystem: str | None = None
    asset_type: str | None = None
    long_sector: str | None = None
    short_sector: str | None = None

    @property
    def combo_key(self) -> str:
        return f"{self.long_symbol}|{self.short_symbol}"

    def to_record(self) -> dict[str, Any]:
        """Flatten into a JSON-friendly record for snapshots."""
        return {
            "long": self.long_symbol,
            "short": self.short_symbol,
            "corr": self.correlation,
            "beta": self.beta,
            "hedgeRatio": self.hedge_ratio,
            "adfT": self.cointegration.test_statistic,
            "adfP": self.cointegration.p_value,
            "halfLife": self.cointegration.half_life,
            "stationary": self.cointegration.is_stationary,
            "spreadZ": self.spread_z,
            "spreadVol": self.spread_vol,
            "ratioZ": self.ratio_z,
            "fundingNet": self.funding_net,
            **{f"tech_{k}": v for k, v in asdict(self.technicals).items()},
            "scoreLong": self.scores.long,
            "scoreShort": self.scores.short,
            "composite": self.scores.composite,
            "sector": self.sector_label,
            "ecosystem": self.ecosystem,
            "assetType": self.asset_type,
            "longSector": self.long_sector,
            "shortSector": self.short_sector,
            "group": f"{self.group_tag}:{self.group_key}",
            "notes": list(self.notes),
        }


# ── Scanner ──────────────────────────────────────────────────────────────────


class PairAction(str, Enum):
    ENTER = "ENTER"
    EXIT = "EXIT"
    WATCH = "WATCH"
    WAIT = "WAIT"


class SpreadDirection(str, Enum):
    """Positive z means the spread is rich: short the first symbol, long the second."""

    LONG = "LONG"
    SHORT = "SHORT"


@dataclass(frozen=True)
class PositionSizing:
    long_symbol: str
    long_percent: float
    short_symbol: str
    short_percent: float
    hedge_ratio_used: float
    window_days: float


@dataclass(frozen=True)
class PairSignal:
    """One scanner classification, every metric tagged with the window it came from."""

    symbol_a: str
    symbol_b: str
    action: PairAction
    direction: SpreadDirection
    long_symbol: str
    short_symbol: str
    signal_strength: str
    correlation: float
    correlation_strength: str
    correlation_days: float
    is_cointegrated: bool
    adf_statistic: float
    p_value: float | None
    half_life: float | None
    cointegration_days: float
    spread_z: float
    zscore_signal: str
    zscore_days: float
    hedge_ratio: float
    hedge_r_squared: float
    hedge_ratio_days: float
    spread_volatility: float
    rsi: dict[str, float]
    composite_score: float
    sizing: PositionSizing
    interval: str
    candles: int
    timestamp: datetime

    @property
    def pair(self) -> tuple[str, str]:
        return (self.symbol_a, self.symbol_b)


# ── Lifecycle ────────────────────────────────────────────────────────────────


class PairStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class PairDirection(str, Enum):
    """Which canonical leg is currently long."""

    FIRST_LONG = "FIRST_LONG"
    SECOND_LONG = "SECOND_LONG"


@dataclass(frozen=True)
class HistoryRow:
    ts: datetime
    spread_z: float | None
    half_life: float | None
    pnl_usd: float | None
    delta_spread_z: float | None
    delta_half_life: float | None
    elapsed_ms: int


@dataclass
class ActivePairState:
    pair_key: str
    long_symbol: str
    short_symbol: str
    direction: PairDirection
    entry_time: datetime
    entry_spread_z: float | None
    entry_half_life: float | None
    history: list[HistoryRow] = field(default_factory=list)
    status: PairStatus = PairStatus.OPEN
    closed_at: datetime | None = None
    realized_pnl_usd: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.status == PairStatus.OPEN

    @property
    def latest(self) -> HistoryRow | None:
        return self.history[-1] if self.history else None


@dataclass(frozen=True)
class ExitSignals:
    profit_target: bool
    time_stop: bool
    convergence: bool
    risk_reduction: bool
    risk_exit: bool

    @property
    def any(self) -> bool:
        return (
            self.profit_target or self.time_stop or self.convergence
            or self.risk_reduction or self.risk_exit
        )

    def triggered(self) -> list[str]:
        return [name for name, hit in asdict(self).items() if hit]


@dataclass(frozen=True)
class PairEvaluation:
    """Result of one evaluation cycle for an open pair."""

    pair_key: str
    long_symbol: str
    short_symbol: str
    spread_z: float | None
    half_life: float | None
    pnl_usd: float
    entry_spread_z: float | None
    entry_half_life: float | None
    delta_spread_z: float | None
    delta_half_life: float | None
    elapsed_ms: int
    convergence_progress: float | None
    convergence_to_target_pct: float | None
    remaining_to_target_z: float | None
    elapsed_half_lives: float | None
    stats_source: str
    exit_signals: ExitSignals


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class TradeEvent:
    """A fill/close notification from the execution collaborator."""

    symbol: str
    side: OrderSide
    quantity: float
    price: float
    status: str = "FILLED"
