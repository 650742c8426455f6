from __future__ import annotations

import json

import numpy as np
import pandas as pd
import pytest

from statpairs.core.config import CandidateConfig, DataConfig
from statpairs.core.models import (
    Asset,
    AssetMetrics,
    CointegrationResult,
    Diagnostic,
    PairTechnicals,
    SkipReason,
)
from statpairs.selection import candidates as candidates_module
from statpairs.selection.candidates import (
    CandidateGenerator,
    PairStatistics,
    apply_mean_reversion_gates,
    build_candidate,
    compute_pair_statistics,
    dedupe_candidates,
    funding_carry,
    write_candidates_snapshot,
)
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
from statpairs.stats.primitives import log_returns, pearson_correlation


class StubKlineProvider:
    def __init__(self) -> None:
        self.bars: dict[str, pd.DataFrame] = {}
        self.calls: list[str] = []
        self.failing: set[str] = set()

    def set_closes(self, symbol: str, closes: np.ndarray) -> None:
        closes = np.asarray(closes, dtype=float)
        rng = np.random.default_rng(sum(map(ord, symbol)))
        self.bars[symbol] = pd.DataFrame({
            "open": closes,
            "high": closes * 1.002,
            "low": closes * 0.998,
            "close": closes,
            "volume": rng.uniform(800, 1200, closes.size),
        })

    def get_klines(self, symbol, interval, limit=500):
        self.calls.append(symbol)
        if symbol in self.failing:
            raise ConnectionError(f"upstream unavailable for {symbol}")
        df = self.bars.get(symbol)
        if df is None:
            return pd.DataFrame(columns=["open", "high", "low", "close", "volume"])
        return df.tail(limit).copy()


def _no_sleep(_seconds: float) -> None:
    pass


def _data_config(**overrides) -> DataConfig:
    params = {"fetch_delay_seconds": 0.0, "max_retries": 0, "interval": "1h"}
    params.update(overrides)
    return DataConfig(**params)


def _asset(symbol: str, sector: str = "L1", tier: str = "T1", **metrics) -> Asset:
    return Asset(
        symbol=symbol,
        sector=sector,
        ecosystem="EVM",
        asset_type="coin",
        liquidity_tier=tier,
        metrics=AssetMetrics(**metrics),
    )


def _log_linear_pair(n: int = 300, seed: int = 31) -> tuple[np.ndarray, np.ndarray]:
    """log B = 2 log A + AR(1) noise."""
    rng = np.random.default_rng(seed)
    log_a = np.log(100.0) + np.cumsum(rng.normal(0, 0.01, n))
    noise = np.zeros(n)
    for i in range(1, n):
        noise[i] = 0.8 * noise[i - 1] + rng.normal(0, 0.005)
    return np.exp(log_a), np.exp(2 * log_a + noise)


def _random_walk(n: int, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return 100.0 * np.exp(np.cumsum(rng.normal(0, 0.01, n)))


def _stats(spread_z=1.5, half_life=5.0, p_value=0.01, stationary=True, corr=0.9) -> PairStatistics:
    return PairStatistics(
        correlation=corr,
        beta=1.0,
        hedge_ratio=1.2,
        cointegration=CointegrationResult(
            test_statistic=-4.0,
            p_value=p_value,
            is_stationary=stationary,
            half_life=half_life,
        ),
        spread_z=spread_z,
        spread_vol=0.01,
        ratio_z=0.5,
    )


# ── Per-pair statistics ──────────────────────────────────────────────────────


def test_cointegrated_pair_statistics():
    a, b = _log_linear_pair()
    stats = compute_pair_statistics(b, a, CandidateConfig(), "1h")

    assert isinstance(stats, PairStatistics)
    assert stats.correlation > 0.9
    assert stats.hedge_ratio == pytest.approx(2.0, abs=0.1)
    assert stats.cointegration.is_stationary
    assert 1.0 <= stats.cointegration.half_life <= 30.0
    assert stats.spread_vol is not None and stats.spread_vol > 0


def test_unrelated_random_walks_fail_correlation_gate():
    a, b = _random_walk(200, seed=41), _random_walk(200, seed=42)
    assert abs(pearson_correlation(log_returns(a), log_returns(b))) < 0.3

    result = compute_pair_statistics(a, b, CandidateConfig(), "1h", subject="A|B")
    assert isinstance(result, Diagnostic)
    assert result.reason == SkipReason.LOW_CORRELATION
    assert result.subject == "A|B"


def test_short_series_is_insufficient_data():
    a = _random_walk(40, seed=1)
    result = compute_pair_statistics(a, a, CandidateConfig(), "1h")
    assert isinstance(result, Diagnostic)
    assert result.reason == SkipReason.INSUFFICIENT_DATA


def test_flat_series_is_a_data_quality_issue():
    a = _random_walk(80, seed=1)
    flat = np.full(80, 10.0)
    result = compute_pair_statistics(a, flat, CandidateConfig(), "1h")
    assert isinstance(result, Diagnostic)
    assert result.reason == SkipReason.DATA_QUALITY_ISSUES
    assert result.details["b_issues"]


def test_no_filters_skips_correlation_gate():
    a, b = _random_walk(200, seed=41), _random_walk(200, seed=42)
    result = compute_pair_statistics(a, b, CandidateConfig(no_filters=True), "1h")
    assert isinstance(result, PairStatistics)


# ── Gates ────────────────────────────────────────────────────────────────────


def test_gates_strict_pass():
    outcome = apply_mean_reversion_gates(_stats(), CandidateConfig())
    assert outcome.passed and not outcome.relaxed


def test_gates_relaxed_half_life():
    outcome = apply_mean_reversion_gates(_stats(half_life=30.0), CandidateConfig())
    assert outcome.passed and outcome.relaxed
    assert outcome.reason == SkipReason.HALFLIFE_EXCEEDS


def test_gates_relaxed_spread_z():
    outcome = apply_mean_reversion_gates(_stats(spread_z=-0.6), CandidateConfig())
    assert outcome.passed and outcome.relaxed
    assert outcome.reason == SkipReason.SPREADZ_LOW


def test_gates_reject():
    cfg = CandidateConfig()
    assert apply_mean_reversion_gates(_stats(half_life=50.0), cfg).reason == SkipReason.HALFLIFE_EXCEEDS
    assert apply_mean_reversion_gates(_stats(spread_z=0.2), cfg).reason == SkipReason.SPREADZ_LOW
    assert apply_mean_reversion_gates(_stats(stationary=False), cfg).reason == SkipReason.NON_STATIONARY
    assert apply_mean_reversion_gates(_stats(p_value=0.5), cfg).reason == SkipReason.NON_STATIONARY
    assert not apply_mean_reversion_gates(_stats(p_value=0.5), cfg).passed


def test_gates_disabled_with_no_filters():
    outcome = apply_mean_reversion_gates(_stats(stationary=False), CandidateConfig(no_filters=True))
    assert outcome.passed


# ── Ranking ──────────────────────────────────────────────────────────────────


def test_group_assets_uses_unknown_bucket():
    assets = [
        Asset("AUSDT", sector="L1", ecosystem="EVM", asset_type="coin"),
        Asset("BUSDT", sector=None, ecosystem="EVM", asset_type="coin"),
    ]
    groups = group_assets(assets, include_global=True)
    labels = [g.label for g in groups]
    assert labels == ["sector:L1", "sector:Unknown", "ecosystem:EVM", "assetType:coin", "global:ALL"]


def test_is_tradable():
    cfg = CandidateConfig()
    assert is_tradable(_asset("AUSDT", tier="T1"), cfg)
    assert not is_tradable(_asset("AUSDT", tier="T3"), cfg)
    assert not is_tradable(_asset("AUSD", tier="T1"), cfg)
    assert is_tradable(_asset("AUSD", tier="T3"), CandidateConfig(no_filters=True))


def test_rank_assets_ties_keep_input_order():
    assets = [_asset(s) for s in ("CUSDT", "AUSDT", "BUSDT")]
    ranked = rank_assets(assets, [50.0, 50.0, 50.0], CandidateConfig())
    assert [r.symbol for r in ranked] == ["CUSDT", "AUSDT", "BUSDT"]


def test_rank_assets_orders_by_weighted_score():
    assets = [
        _asset("LOWUSDT", liquidity_score=1.0, quote_volume=10.0),
        _asset("HIGHUSDT", liquidity_score=9.0, quote_volume=1000.0),
        _asset("MIDUSDT", liquidity_score=5.0, quote_volume=100.0),
    ]
    ranked = rank_assets(assets, [50.0, 50.0, 50.0], CandidateConfig())
    assert [r.symbol for r in ranked] == ["HIGHUSDT", "MIDUSDT", "LOWUSDT"]


def test_select_sides_and_pool():
    cfg = CandidateConfig(side_candidates=2)
    ranked = [RankedAsset(_asset(f"S{i}USDT"), score=10 - i, index=i, rsi=50.0) for i in range(5)]
    top, bottom = select_sides(ranked, cfg.side_candidates)
    assert [r.symbol for r in top] == ["S0USDT", "S1USDT"]
    assert [r.symbol for r in bottom] == ["S4USDT", "S3USDT"]

    pool = selection_pool(ranked, top, bottom, cfg)
    assert [r.symbol for r in pool] == ["S0USDT", "S1USDT", "S4USDT", "S3USDT"]
    combos = pair_combinations(top, bottom, pool, cfg)
    assert len(combos) == 4
    assert all(lo in bottom and hi in top for lo, hi in combos)


def test_pool_mode_pairs_every_combination():
    cfg = CandidateConfig(side_candidates=2, pairing_mode="pool")
    ranked = [RankedAsset(_asset(f"S{i}USDT"), score=10 - i, index=i, rsi=50.0) for i in range(5)]
    top, bottom = select_sides(ranked, cfg.side_candidates)
    pool = selection_pool(ranked, top, bottom, cfg)
    assert len(pool) == 4
    assert len(pair_combinations(top, bottom, pool, cfg)) == 6


# ── Generator ────────────────────────────────────────────────────────────────


def _cointegrated_universe() -> tuple[StubKlineProvider, list[Asset]]:
    provider = StubKlineProvider()
    a, b = _log_linear_pair()
    provider.set_closes("AUSDT", a)
    provider.set_closes("BUSDT", b)
    provider.set_closes("CUSDT", _random_walk(300, seed=51))
    provider.set_closes("DUSDT", _random_walk(300, seed=52))
    assets = [
        _asset("AUSDT", liquidity_score=8.0),
        _asset("BUSDT", liquidity_score=6.0),
        _asset("CUSDT", liquidity_score=4.0),
        _asset("DUSDT", liquidity_score=2.0),
    ]
    return provider, assets


def test_generation_is_deterministic():
    provider, assets = _cointegrated_universe()
    cfg = CandidateConfig(no_filters=True)

    first = CandidateGenerator(provider, cfg, _data_config(), sleep=_no_sleep).generate(assets)
    second = CandidateGenerator(provider, cfg, _data_config(), sleep=_no_sleep).generate(assets)

    def summary(result):
        return [(c.long_symbol, c.short_symbol, c.scores.composite) for c in result.candidates]

    assert summary(first)
    assert summary(first) == summary(second)


def test_generation_fetches_each_symbol_once():
    provider, assets = _cointegrated_universe()
    CandidateGenerator(provider, CandidateConfig(no_filters=True), _data_config(), sleep=_no_sleep).generate(assets)
    # Every asset sits in three groups; klines are cached across them
    assert sorted(provider.calls) == ["AUSDT", "BUSDT", "CUSDT", "DUSDT"]


def test_generated_candidates_are_unique_and_annotated():
    provider, assets = _cointegrated_universe()
    result = CandidateGenerator(
        provider, CandidateConfig(no_filters=True), _data_config(), sleep=_no_sleep,
    ).generate(assets)

    assert result.groups_evaluated == 3
    keys = [c.combo_key for c in result.candidates]
    assert len(keys) == len(set(keys))
    for c in result.candidates:
        assert c.long_symbol != c.short_symbol
        assert "enhanced-scores" in c.notes
        assert isinstance(c.technicals, PairTechnicals)


def test_unrelated_universe_produces_no_candidates():
    provider = StubKlineProvider()
    provider.set_closes("AUSDT", _random_walk(200, seed=41))
    provider.set_closes("BUSDT", _random_walk(200, seed=42))
    assets = [_asset("AUSDT"), _asset("BUSDT")]

    result = CandidateGenerator(provider, CandidateConfig(), _data_config(), sleep=_no_sleep).generate(assets)
    assert result.candidates == []
    assert any(d.reason == SkipReason.LOW_CORRELATION for d in result.diagnostics)


def test_fetch_failure_is_recorded_not_raised():
    provider, assets = _cointegrated_universe()
    provider.failing.add("CUSDT")
    result = CandidateGenerator(
        provider, CandidateConfig(no_filters=True), _data_config(), sleep=_no_sleep,
    ).generate(assets)

    failed = [d for d in result.diagnostics if d.reason == SkipReason.FETCH_FAILED]
    assert failed and all(d.subject == "CUSDT" for d in failed)
    assert all("CUSDT" not in (c.long_symbol, c.short_symbol) for c in result.candidates)


def test_non_tradable_group_is_skipped():
    provider, assets = _cointegrated_universe()
    for a in assets:
        a.liquidity_tier = "T3"
    result = CandidateGenerator(provider, CandidateConfig(), _data_config(), sleep=_no_sleep).generate(assets)
    assert result.candidates == []
    assert provider.calls == []


def _three_asset_group() -> tuple[StubKlineProvider, AssetGroup]:
    provider = StubKlineProvider()
    for i, sym in enumerate(("AUSDT", "BUSDT", "CUSDT")):
        provider.set_closes(sym, _random_walk(120, seed=60 + i))
    assets = [_asset("AUSDT"), _asset("BUSDT"), _asset("CUSDT")]
    return provider, AssetGroup(GroupTag.SECTOR, "L1", assets)


def test_relaxed_pairs_rejected_when_strict_pairs_exist(monkeypatch):
    def fake_stats(a, b, config, interval, correlation=None, subject=""):
        legs = set(subject.split("|")[1:])
        if legs == {"AUSDT", "BUSDT"}:
            return _stats()
        return _stats(half_life=30.0)

    monkeypatch.setattr(candidates_module, "compute_pair_statistics", fake_stats)
    provider, group = _three_asset_group()
    result = CandidateGenerator(provider, CandidateConfig(), _data_config(), sleep=_no_sleep).generate_for_group(group)

    assert len(result.candidates) == 2
    for c in result.candidates:
        assert {c.long_symbol, c.short_symbol} == {"AUSDT", "BUSDT"}
        assert "relaxed-filter" not in c.notes
    rejected = [d for d in result.diagnostics if d.details.get("relaxed_rejected")]
    assert len(rejected) == 4


def test_relaxed_pairs_admitted_when_no_strict_pair(monkeypatch):
    def fake_stats(a, b, config, interval, correlation=None, subject=""):
        return _stats(half_life=30.0)

    monkeypatch.setattr(candidates_module, "compute_pair_statistics", fake_stats)
    provider, group = _three_asset_group()
    result = CandidateGenerator(provider, CandidateConfig(), _data_config(), sleep=_no_sleep).generate_for_group(group)

    # Limit is min(limit_per_group, ceil(3 / 2))
    assert len(result.candidates) == 2
    assert all("relaxed-filter" in c.notes for c in result.candidates)
    scores = [c.scores.composite for c in result.candidates]
    assert scores == sorted(scores, reverse=True)


def test_stale_leg_is_skipped_without_losing_the_group():
    a, c = _log_linear_pair(seed=33)
    stale = _random_walk(300, seed=71)
    stale[-40:] = stale[-41]
    provider = StubKlineProvider()
    provider.set_closes("AUSDT", a)
    provider.set_closes("CUSDT", c)
    provider.set_closes("SUSDT", stale)
    group = AssetGroup(GroupTag.SECTOR, "L1", [_asset("AUSDT"), _asset("CUSDT"), _asset("SUSDT")])

    # Daily bars: the 30-day hedge window sits inside the flat tail
    generator = CandidateGenerator(
        provider, CandidateConfig(no_filters=True), _data_config(interval="1d"), sleep=_no_sleep,
    )
    result = generator.generate_for_group(group)

    assert result.candidates
    assert not [d for d in result.diagnostics if d.reason == SkipReason.PAIR_ERROR]
    ols_failed = [d for d in result.diagnostics if d.reason == SkipReason.OLS_REGRESSION_FAILED]
    assert ols_failed and all(d.subject.endswith("|SUSDT") for d in ols_failed)


def test_pair_error_is_recorded_and_other_pairs_survive(monkeypatch):
    def flaky_stats(a, b, config, interval, correlation=None, subject=""):
        if "CUSDT" in subject:
            raise ValueError("Cannot calculate a linear regression if all x values are identical")
        return _stats()

    monkeypatch.setattr(candidates_module, "compute_pair_statistics", flaky_stats)
    provider, group = _three_asset_group()
    result = CandidateGenerator(provider, CandidateConfig(), _data_config(), sleep=_no_sleep).generate_for_group(group)

    errors = [d for d in result.diagnostics if d.reason == SkipReason.PAIR_ERROR]
    assert len(errors) == 4
    assert all("CUSDT" in d.subject and "error" in d.details for d in errors)
    assert len(result.candidates) == 2
    for c in result.candidates:
        assert {c.long_symbol, c.short_symbol} == {"AUSDT", "BUSDT"}


def test_build_candidate_orients_legs_by_spread_sign():
    lo = RankedAsset(_asset("AUSDT", sector="L1"), score=0.4, index=0, rsi=50.0)
    hi = RankedAsset(_asset("BUSDT", sector="L2"), score=-0.1, index=1, rsi=50.0)
    group = AssetGroup(GroupTag.ECOSYSTEM, "EVM", [lo.asset, hi.asset])

    rich = build_candidate(lo, hi, _stats(spread_z=1.5), PairTechnicals(), group)
    # Positive z: spread is rich, so the first leg is shorted
    assert (rich.long_symbol, rich.short_symbol) == ("BUSDT", "AUSDT")
    assert rich.scores.long == -0.1 and rich.scores.short == 0.4
    assert rich.ecosystem == "EVM"
    assert rich.sector_label == "L1/L2"

    cheap = build_candidate(lo, hi, _stats(spread_z=-1.5), PairTechnicals(), group, relaxed=True)
    assert (cheap.long_symbol, cheap.short_symbol) == ("AUSDT", "BUSDT")
    assert "relaxed-filter" in cheap.notes
    assert rich.scores.composite == cheap.scores.composite


# ── Helpers ──────────────────────────────────────────────────────────────────


def test_dedupe_keeps_first_seen():
    provider, assets = _cointegrated_universe()
    result = CandidateGenerator(
        provider, CandidateConfig(no_filters=True), _data_config(), sleep=_no_sleep,
    ).generate(assets)
    first = result.candidates[0]
    duplicated = dedupe_candidates([first, first] + result.candidates)
    assert duplicated[0] is first
    assert len(duplicated) == len(result.candidates)


def test_funding_carry():
    lo = _asset("AUSDT", funding_mean=0.0001)
    hi = _asset("BUSDT", funding_mean=0.0003)
    assert funding_carry(lo, hi, 2.0) == pytest.approx(-0.0001 + 2 * 0.0003)
    assert funding_carry(lo, hi, float("nan")) == pytest.approx(-0.0001 + 0.0003)


def test_write_candidates_snapshot(tmp_path):
    provider, assets = _cointegrated_universe()
    result = CandidateGenerator(
        provider, CandidateConfig(no_filters=True), _data_config(), sleep=_no_sleep,
    ).generate(assets)

    path = write_candidates_snapshot(tmp_path / "snap" / "candidates.json", result.candidates)
    doc = json.loads(path.read_text())
    assert doc["count"] == len(result.candidates)
    assert {"as_of", "count", "pairs"} <= set(doc)
    first = doc["pairs"][0]
    assert first["long"] == result.candidates[0].long_symbol
    assert "composite" in first and "tech_regime_score" in first
