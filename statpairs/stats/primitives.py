"""Time-series statistics for pair selection.

Pure functions over numeric sequences: returns, correlation, OLS, a simplified
ADF stationarity test with half-life, rolling z-scores and data-quality checks.

None of these raise on short or degenerate input. They return ``None`` (or an
invalid report) instead, and callers are expected to check before use.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np
import pandas as pd
from scipy import stats

from statpairs.core.models import (
    CointegrationResult,
    CorrelationEntry,
    DataQualityReport,
    RegressionResult,
    RequirementCheck,
)

ArrayLike = Sequence[float] | np.ndarray

# Minimum sample sizes
ADF_MIN_POINTS = 10
ADF_MIN_DIFFS = 5
MIN_RAW_POINTS = 50
MIN_RETURN_POINTS = 30

# Half-life bounds, in bars
HALF_LIFE_MIN = 0.1
HALF_LIFE_MAX = 100.0

# |t| thresholds -> coarse p-value bucket. Not a Dickey-Fuller table.
_P_VALUE_BUCKETS = ((2.576, 0.01), (1.96, 0.05), (1.645, 0.10))
_P_VALUE_FLOOR = 0.50


def _as_array(values: ArrayLike) -> np.ndarray:
    return np.asarray(values, dtype=float)


# ── Transforms ───────────────────────────────────────────────────────────────


def log_returns(series: ArrayLike) -> np.ndarray:
    """ln(p[i]/p[i-1]) for adjacent pairs where both prices are finite and positive.

    Non-qualifying pairs are dropped, not zero-filled, so the output can be
    shorter than ``len(series) - 1``.
    """
    p = _as_array(series)
    if p.size < 2:
        return np.empty(0)
    prev, cur = p[:-1], p[1:]
    with np.errstate(invalid="ignore"):
        mask = np.isfinite(prev) & np.isfinite(cur) & (prev > 0) & (cur > 0)
    return np.log(cur[mask] / prev[mask])


def log_prices(series: ArrayLike) -> np.ndarray:
    """Natural log of each finite positive value; everything else is dropped."""
    p = _as_array(series)
    with np.errstate(invalid="ignore"):
        mask = np.isfinite(p) & (p > 0)
    return np.log(p[mask])


# ── Moments ──────────────────────────────────────────────────────────────────


def sample_std(values: ArrayLike) -> float:
    """Standard deviation with an n-1 denominator; 0 for fewer than two values."""
    v = _as_array(values)
    if v.size < 2:
        return 0.0
    std = float(np.std(v, ddof=1))
    return std if math.isfinite(std) else 0.0


def zscores(values: ArrayLike, use_sample_std: bool = True) -> np.ndarray:
    """Z-score of every value against the whole sample. Empty for fewer than 2 values."""
    v = _as_array(values)
    n = v.size
    if n < 2:
        return np.empty(0)
    mean = v.mean()
    denom = max(1, n - 1) if use_sample_std else n
    std = math.sqrt(float(np.sum((v - mean) ** 2)) / denom) or 1e-12
    return (v - mean) / std


def rolling_zscore(values: ArrayLike, window: int, ddof: int = 1) -> np.ndarray:
    """Z-score of each value against its trailing ``window`` values.

    The first ``window - 1`` entries are NaN. A flat window yields 0 rather than
    an infinite score. ``ddof=1`` uses the sample variance, ``ddof=0`` the
    population variance.
    """
    v = pd.Series(_as_array(values))
    if window < 2 or window > len(v):
        return np.full(len(v), np.nan)
    rolling = v.rolling(window=window, min_periods=window)
    mean = rolling.mean()
    std = rolling.std(ddof=ddof)
    z = (v - mean) / std
    z[(std == 0) & mean.notna()] = 0.0
    return z.to_numpy()


# ── Correlation and regression ───────────────────────────────────────────────


def pearson_correlation(x: ArrayLike, y: ArrayLike) -> float | None:
    """Pearson correlation, or None if lengths differ, n < 2 or either side is flat."""
    xa, ya = _as_array(x), _as_array(y)
    if xa.size != ya.size or xa.size < 2:
        return None
    dx = xa - xa.mean()
    dy = ya - ya.mean()
    den = math.sqrt(float(np.dot(dx, dx)) * float(np.dot(dy, dy)))
    if den == 0 or not math.isfinite(den):
        return None
    corr = float(np.dot(dx, dy)) / den
    return max(-1.0, min(1.0, corr))


def beta_y_on_x(y: ArrayLike, x: ArrayLike) -> float | None:
    """cov(x, y) / var(x), or None when undefined."""
    xa, ya = _as_array(x), _as_array(y)
    if xa.size != ya.size or xa.size < 2:
        return None
    dx = xa - xa.mean()
    var_x = float(np.dot(dx, dx))
    if var_x == 0:
        return None
    return float(np.dot(dx, ya - ya.mean())) / var_x


def ols_regression(y: ArrayLike, x: ArrayLike) -> RegressionResult | None:
    """Simple regression y = slope * x + intercept via ``scipy.stats.linregress``.

    Returns None when lengths differ, n < 2, x is constant, or the design is
    singular (``|n*Sxx - Sx^2| < 1e-12``). Rounding can leave that determinant
    well above zero for a constant x, so the constant case is checked directly.
    ``standard_error`` is the residual standard error ``sqrt(SSres / (n - 2))``
    (0 when n <= 2).
    """
    xa, ya = _as_array(x), _as_array(y)
    n = xa.size
    if n != ya.size or n < 2:
        return None
    if np.ptp(xa) == 0:
        return None

    sum_x = float(xa.sum())
    sum_y = float(ya.sum())
    sum_xy = float(np.dot(xa, ya))
    sum_xx = float(np.dot(xa, xa))

    denominator = n * sum_xx - sum_x * sum_x
    if abs(denominator) < 1e-12:
        return None

    fit = stats.linregress(xa, ya)
    slope = float(fit.slope)
    intercept = float(fit.intercept)

    residuals = ya - (slope * xa + intercept)
    ss_res = float(np.dot(residuals, residuals))
    r_squared = max(0.0, min(1.0, float(fit.rvalue) ** 2))
    standard_error = math.sqrt(ss_res / (n - 2)) if n > 2 else 0.0

    return RegressionResult(
        slope=slope,
        intercept=intercept,
        r_squared=r_squared,
        residuals=residuals.tolist(),
        standard_error=standard_error,
    )


# ── Stationarity ─────────────────────────────────────────────────────────────


def _p_value_bucket(test_statistic: float) -> float | None:
    if not math.isfinite(test_statistic):
        return None
    abs_t = abs(test_statistic)
    for threshold, p in _P_VALUE_BUCKETS:
        if abs_t > threshold:
            return p
    return _P_VALUE_FLOOR


def adf_like_test(spread: ArrayLike, max_lags: int = 10) -> CointegrationResult | None:
    """Simplified Dickey-Fuller style mean-reversion test on a spread.

    Regresses Δspread_t on spread_{t-1} with a single lag (``lags`` is always
    reported as 1, ``max_lags`` is accepted for interface compatibility only).
    The spread is called stationary when the slope β is negative. The AR(1)
    coefficient φ = 1 + β gives the half-life ``-ln 2 / ln|φ|`` when |φ| < 1,
    clamped to [0.1, 100] bars.

    ``test_statistic`` is β divided by the regression's residual standard error
    and the p-value is a four-bucket lookup on |t|. Both are heuristics and
    downstream gates are calibrated against them.
    """
    s = _as_array(spread)
    if s.size < ADF_MIN_POINTS:
        return None

    changes = np.diff(s)
    lagged = s[:-1]
    if changes.size < ADF_MIN_DIFFS:
        return None

    ols = ols_regression(changes, lagged)
    if ols is None:
        return None

    beta = ols.slope
    is_stationary = beta < 0

    half_life: float | None = None
    if is_stationary:
        phi = 1 + beta
        if abs(phi) < 1 and phi != 0:
            half_life = -math.log(2) / math.log(abs(phi))
            half_life = max(HALF_LIFE_MIN, min(HALF_LIFE_MAX, half_life))

    se = ols.standard_error
    if se > 0:
        test_statistic = beta / se
    elif beta == 0:
        test_statistic = math.nan
    else:
        test_statistic = math.copysign(math.inf, beta)

    return CointegrationResult(
        test_statistic=test_statistic,
        p_value=_p_value_bucket(test_statistic),
        is_stationary=is_stationary,
        half_life=half_life,
        lags=1,
    )


# ── Validation ───────────────────────────────────────────────────────────────


def validate_data_quality(series: ArrayLike) -> DataQualityReport:
    """Flag short, sparse, non-positive, outlier-ridden or flat price series."""
    v = _as_array(series)
    n = v.size
    issues: list[str] = []

    if n < 10:
        issues.append("Insufficient data points (minimum 10 required)")

    finite = v[np.isfinite(v)]
    if finite.size < n * 0.9:
        issues.append("More than 10% non-finite values")

    with np.errstate(invalid="ignore"):
        positive = int(np.sum(v > 0))
    if positive < n * 0.9:
        issues.append("More than 10% non-positive values")

    if finite.size > 2:
        mean = finite.mean()
        std = sample_std(finite)
        outliers = int(np.sum(np.abs(finite - mean) > 5 * std))
        if outliers > 0:
            issues.append(f"{outliers} extreme outliers detected")

    if finite.size > 1:
        if np.unique(np.round(finite, 6)).size < 2:
            issues.append("Zero or near-zero variance in series")

    return DataQualityReport(is_valid=not issues, issues=issues)


def align_series(a: ArrayLike, b: ArrayLike) -> tuple[np.ndarray, np.ndarray, int]:
    """Right-align two series to the shorter length by dropping the oldest excess.

    This is positional, not a timestamp join: both inputs must already share
    the same sampling grid and end on the same bar.
    """
    aa, ba = _as_array(a), _as_array(b)
    n = min(aa.size, ba.size)
    if n == 0:
        return np.empty(0), np.empty(0), 0
    return aa[-n:], ba[-n:], n


def ensure_minimum_requirements(a: ArrayLike, b: ArrayLike) -> RequirementCheck:
    """Require 50 raw points and 30 log-return points on each side."""
    aa, ba = _as_array(a), _as_array(b)
    if aa.size < MIN_RAW_POINTS or ba.size < MIN_RAW_POINTS:
        got = min(aa.size, ba.size)
        return RequirementCheck(
            False, f"Insufficient data: need {MIN_RAW_POINTS} points, got {got}"
        )

    ra, rb = log_returns(aa), log_returns(ba)
    if ra.size < MIN_RETURN_POINTS or rb.size < MIN_RETURN_POINTS:
        got = min(ra.size, rb.size)
        return RequirementCheck(
            False, f"Insufficient returns data: need {MIN_RETURN_POINTS} points, got {got}"
        )

    return RequirementCheck(True)


def pairwise_correlations(
    returns: dict[str, np.ndarray],
) -> dict[tuple[str, str], CorrelationEntry]:
    """Correlation and beta for every unordered symbol pair, computed once.

    Keys follow the insertion order of ``returns``: ``(first, second)`` where
    ``first`` was inserted earlier. Beta regresses the first series on the second.
    Empty, short or length-mismatched inputs produce an invalid entry.
    """
    symbols = list(returns)
    out: dict[tuple[str, str], CorrelationEntry] = {}
    invalid = CorrelationEntry(correlation=0.0, beta=1.0, is_valid=False)

    for i, sym_a in enumerate(symbols):
        ra = returns[sym_a]
        for sym_b in symbols[i + 1:]:
            rb = returns[sym_b]
            if ra.size < 2 or rb.size < 2 or ra.size != rb.size:
                out[(sym_a, sym_b)] = invalid
                continue
            corr = pearson_correlation(ra, rb)
            beta = beta_y_on_x(ra, rb)
            corr_v = corr if corr is not None else 0.0
            beta_v = beta if beta is not None else 1.0
            ok = corr is not None and beta is not None and math.isfinite(corr_v) and math.isfinite(beta_v)
            out[(sym_a, sym_b)] = CorrelationEntry(
                correlation=corr_v if math.isfinite(corr_v) else 0.0,
                beta=beta_v if math.isfinite(beta_v) else 1.0,
                is_valid=ok,
            )
    return out
