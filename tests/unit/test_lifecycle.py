from __future__ import annotations

import random
from datetime import datetime, timedelta

import numpy as np
import pytest
import pytz

from statpairs.core.config import LifecycleConfig
from statpairs.core.events import EXIT_SIGNAL, PAIR_CLOSED, PAIR_OPENED, EventBus
from statpairs.core.models import OrderSide, PairDirection, PairStatus, TradeEvent
from statpairs.lifecycle.manager import (
    ActivePairManager,
    SymbolConflictError,
    convergence_metrics,
    realized_pnl_from_events,
)
from statpairs.lifecycle.pair_keys import (
    canonical_pair_key,
    pair_direction,
    parse_pair_key,
    resolve_long_short,
)

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=pytz.UTC)


def _manager(**kwargs) -> ActivePairManager:
    return ActivePairManager(LifecycleConfig(), interval="1h", clock=lambda: T0, **kwargs)


# ── Pair keys ────────────────────────────────────────────────────────────────


def test_canonical_key_ignores_direction():
    assert canonical_pair_key("ETHUSDT", "BTCUSDT") == "BTCUSDT|ETHUSDT"
    assert canonical_pair_key("BTCUSDT", "ETHUSDT") == "BTCUSDT|ETHUSDT"
    assert parse_pair_key("BTCUSDT|ETHUSDT") == ("BTCUSDT", "ETHUSDT")


def test_canonical_key_rejects_bad_symbols():
    with pytest.raises(ValueError):
        canonical_pair_key("", "BTCUSDT")
    with pytest.raises(ValueError):
        canonical_pair_key("BTCUSDT", "BTCUSDT")
    with pytest.raises(ValueError):
        parse_pair_key("BTCUSDT")


def test_pair_direction_round_trip():
    key = canonical_pair_key("ETHUSDT", "BTCUSDT")
    assert pair_direction(key, "BTCUSDT", "ETHUSDT") == PairDirection.FIRST_LONG
    assert pair_direction(key, "ETHUSDT", "BTCUSDT") == PairDirection.SECOND_LONG
    assert resolve_long_short(key, PairDirection.SECOND_LONG) == ("ETHUSDT", "BTCUSDT")
    with pytest.raises(ValueError):
        pair_direction(key, "BTCUSDT", "SOLUSDT")


# ── Convergence math ─────────────────────────────────────────────────────────


def test_convergence_metrics():
    progress, to_target, remaining = convergence_metrics(2.0, -1.0, 0.5)
    assert progress == pytest.approx(0.5)
    assert to_target == pytest.approx((2.0 - 1.0) / 1.5)
    assert remaining == pytest.approx(0.5)

    # Overshoot past zero is clamped
    progress, to_target, remaining = convergence_metrics(2.0, 0.0, 0.5)
    assert progress == 1.0 and to_target == 1.0 and remaining == 0.0

    assert convergence_metrics(None, 1.0, 0.5) == (None, None, None)
    assert convergence_metrics(0.0, 1.0, 0.5) == (None, None, None)


def test_realized_pnl_from_events():
    events = [
        TradeEvent("AUSDT", OrderSide.BUY, 10, 100.0),
        TradeEvent("AUSDT", OrderSide.SELL, 10, 105.0),
        TradeEvent("BUSDT", OrderSide.SELL, 5, 20.0, status="CANCELLED"),
    ]
    assert realized_pnl_from_events(events) == pytest.approx(50.0)


# ── Lifecycle ────────────────────────────────────────────────────────────────


def test_open_pair_records_baseline():
    mgr = _manager()
    state = mgr.open_pair("ETHUSDT", "BTCUSDT", spread_z=2.3, half_life=8.0)

    assert state.pair_key == "BTCUSDT|ETHUSDT"
    assert state.direction == PairDirection.SECOND_LONG
    assert state.entry_time == T0
    assert state.entry_spread_z == 2.3
    assert len(state.history) == 1
    assert state.history[0].delta_spread_z == 0.0
    assert mgr.get("BTCUSDT", "ETHUSDT") is state


def test_zscore_decay_triggers_profit_target():
    mgr = _manager()
    mgr.open_pair("AUSDT", "BUSDT", spread_z=2.5, half_life=10.0)

    path = np.linspace(2.5, 0.4, 8)
    deltas = []
    for i, z in enumerate(path):
        ev = mgr.evaluate("AUSDT", "BUSDT", spread_z=float(z), half_life=10.0, now=T0 + timedelta(hours=i + 1))
        deltas.append(ev.delta_spread_z)
        assert ev.exit_signals.profit_target == (abs(z) <= 0.5)
        assert ev.stats_source == "live"

    assert all(later > earlier for earlier, later in zip(deltas, deltas[1:]))
    assert mgr.get("AUSDT", "BUSDT").history[-1].spread_z == pytest.approx(0.4)


def test_convergence_trigger():
    mgr = _manager()
    mgr.open_pair("AUSDT", "BUSDT", spread_z=-2.0, half_life=10.0)
    assert not mgr.evaluate("AUSDT", "BUSDT", spread_z=-1.5).exit_signals.convergence
    ev = mgr.evaluate("AUSDT", "BUSDT", spread_z=-0.9)
    assert ev.exit_signals.convergence
    assert ev.convergence_progress == pytest.approx(0.55)


def test_time_stop_uses_half_life_in_bars():
    mgr = ActivePairManager(LifecycleConfig(), interval="4h", clock=lambda: T0)
    mgr.open_pair("AUSDT", "BUSDT", spread_z=2.0, half_life=3.0)

    # 3 bars of 4h = 12h; time stop at two half-lives = 24h
    early = mgr.evaluate("AUSDT", "BUSDT", spread_z=1.9, half_life=3.0, now=T0 + timedelta(hours=23))
    late = mgr.evaluate("AUSDT", "BUSDT", spread_z=1.9, half_life=3.0, now=T0 + timedelta(hours=24))
    assert not early.exit_signals.time_stop
    assert late.exit_signals.time_stop
    assert late.elapsed_half_lives == pytest.approx(2.0)
    assert late.elapsed_ms == 24 * 3600 * 1000


def test_risk_triggers():
    mgr = _manager()
    mgr.open_pair("AUSDT", "BUSDT", spread_z=2.0, half_life=10.0)

    ok = mgr.evaluate("AUSDT", "BUSDT", pnl_usd=-10.0, spread_z=1.9)
    reduce = mgr.evaluate("AUSDT", "BUSDT", pnl_usd=-40.0, spread_z=1.9)
    stop = mgr.evaluate("AUSDT", "BUSDT", pnl_usd=-120.0, spread_z=1.9)

    assert not ok.exit_signals.any
    assert reduce.exit_signals.risk_reduction and not reduce.exit_signals.risk_exit
    assert stop.exit_signals.triggered() == ["risk_reduction", "risk_exit"]


def test_evaluate_falls_back_to_stored_history():
    mgr = _manager()
    mgr.open_pair("AUSDT", "BUSDT", spread_z=2.0, half_life=6.0)

    baseline = mgr.evaluate("AUSDT", "BUSDT")
    # The opening row carries the baseline stats
    assert baseline.stats_source == "history"
    assert baseline.spread_z == 2.0

    mgr.evaluate("AUSDT", "BUSDT", spread_z=1.2, half_life=5.0)
    stored = mgr.evaluate("AUSDT", "BUSDT")
    assert stored.stats_source == "history"
    assert stored.spread_z == 1.2
    assert stored.half_life == 5.0


def test_evaluate_heals_missing_baseline():
    mgr = _manager()
    mgr.open_pair("AUSDT", "BUSDT")
    first = mgr.evaluate("AUSDT", "BUSDT")
    assert first.stats_source == "baseline"
    assert first.spread_z is None
    assert not first.exit_signals.profit_target

    ev = mgr.evaluate("AUSDT", "BUSDT", spread_z=1.8, half_life=7.0)
    assert ev.entry_spread_z == 1.8
    assert ev.entry_half_life == 7.0
    assert ev.delta_spread_z == 0.0


def test_evaluate_unknown_pair_raises():
    with pytest.raises(KeyError):
        _manager().evaluate("AUSDT", "BUSDT")


def test_direction_flip_keeps_one_record():
    mgr = _manager()
    first = mgr.open_pair("AUSDT", "BUSDT", spread_z=-2.1)
    flipped = mgr.open_pair("BUSDT", "AUSDT", spread_z=2.2)

    assert flipped is first
    assert len(mgr.open_pairs()) == 1
    assert flipped.direction == PairDirection.SECOND_LONG
    assert flipped.long_symbol == "BUSDT"
    assert flipped.entry_spread_z == 2.2
    assert len(flipped.history) == 2
    assert flipped.history[-1].delta_spread_z == 0.0


def test_close_and_reopen_creates_new_record():
    mgr = _manager()
    mgr.open_pair("AUSDT", "BUSDT", spread_z=2.0)
    closed = mgr.close_pair("BUSDT", "AUSDT", realized_pnl_usd=12.5)

    assert closed.status == PairStatus.CLOSED
    assert closed.closed_at == T0
    assert closed.realized_pnl_usd == 12.5
    assert mgr.get("AUSDT", "BUSDT") is None

    reopened = mgr.open_pair("AUSDT", "BUSDT", spread_z=1.9)
    assert reopened is not closed
    assert len(mgr.records("AUSDT|BUSDT")) == 2
    assert mgr.latest_history("AUSDT|BUSDT").spread_z == 1.9

    with pytest.raises(KeyError):
        mgr.close_pair("CUSDT", "DUSDT")


def test_add_realized_goes_to_latest_closed_record():
    mgr = _manager()
    mgr.open_pair("AUSDT", "BUSDT", spread_z=2.0)
    mgr.close_pair("AUSDT", "BUSDT")
    state = mgr.add_realized("AUSDT", "BUSDT", 7.0)
    assert state.realized_pnl_usd == 7.0
    with pytest.raises(KeyError):
        mgr.add_realized("CUSDT", "DUSDT", 1.0)


def test_symbol_conflicts_are_reported():
    mgr = _manager()
    mgr.open_pair("AUSDT", "BUSDT", spread_z=2.0)
    assert mgr.find_symbol_conflicts("BUSDT", "CUSDT") == ["AUSDT|BUSDT"]
    assert mgr.find_symbol_conflicts("BUSDT", "AUSDT") == []
    assert mgr.open_symbols() == {"AUSDT", "BUSDT"}


def test_enforced_isolation_rejects_shared_symbol():
    mgr = _manager(enforce_isolation=True)
    mgr.open_pair("AUSDT", "BUSDT", spread_z=2.0)
    with pytest.raises(SymbolConflictError):
        mgr.open_pair("CUSDT", "AUSDT", spread_z=2.0)
    # Re-baselining the same key is not a conflict
    mgr.open_pair("BUSDT", "AUSDT", spread_z=-2.0)


def test_isolation_holds_over_random_sequences():
    rng = random.Random(17)
    symbols = ["AUSDT", "BUSDT", "CUSDT", "DUSDT", "EUSDT"]
    mgr = _manager(enforce_isolation=True)

    for _ in range(300):
        a, b = rng.sample(symbols, 2)
        if rng.random() < 0.6:
            try:
                mgr.open_pair(a, b, spread_z=rng.uniform(-3, 3))
            except SymbolConflictError:
                pass
        elif mgr.get(a, b) is not None:
            mgr.close_pair(a, b)

        held = [s for st in mgr.open_pairs() for s in (st.long_symbol, st.short_symbol)]
        assert len(held) == len(set(held))


def test_evaluate_cycle_matches_signals_by_key():
    mgr = _manager()
    mgr.open_pair("AUSDT", "BUSDT", spread_z=2.0, half_life=5.0)
    mgr.open_pair("CUSDT", "DUSDT", spread_z=-2.0, half_life=5.0)

    class Sig:
        symbol_a, symbol_b, spread_z, half_life = "BUSDT", "AUSDT", 0.3, 4.0

    results = {ev.pair_key: ev for ev in mgr.evaluate_cycle({"CUSDT|DUSDT": -55.0}, signals=[Sig()])}
    assert results["AUSDT|BUSDT"].stats_source == "live"
    assert results["AUSDT|BUSDT"].exit_signals.profit_target
    assert results["CUSDT|DUSDT"].stats_source == "history"
    assert results["CUSDT|DUSDT"].exit_signals.risk_reduction


def test_events_are_published():
    bus = EventBus()
    seen = []
    bus.subscribe(PAIR_OPENED, lambda state: seen.append(("opened", state.pair_key)))
    bus.subscribe(EXIT_SIGNAL, lambda evaluation, triggers: seen.append(("exit", tuple(triggers))))
    bus.subscribe(PAIR_CLOSED, lambda state: seen.append(("closed", state.pair_key)))

    mgr = _manager(event_bus=bus)
    mgr.open_pair("AUSDT", "BUSDT", spread_z=2.0, half_life=5.0)
    mgr.evaluate("AUSDT", "BUSDT", spread_z=0.2)
    mgr.close_pair("AUSDT", "BUSDT")

    assert seen == [
        ("opened", "AUSDT|BUSDT"),
        ("exit", ("profit_target", "convergence")),
        ("closed", "AUSDT|BUSDT"),
    ]


def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    seen = []

    def broken(state):
        raise RuntimeError("subscriber down")

    bus.subscribe(PAIR_OPENED, broken)
    bus.subscribe(PAIR_OPENED, lambda state: seen.append(state.pair_key))

    state = _manager(event_bus=bus).open_pair("BUSDT", "AUSDT", spread_z=-2.0)
    assert seen == ["AUSDT|BUSDT"]
    assert state.is_open


def test_state_survives_save_and_load(tmp_path):
    mgr = _manager()
    mgr.open_pair("AUSDT", "BUSDT", spread_z=2.0, half_life=5.0)
    mgr.evaluate("AUSDT", "BUSDT", spread_z=1.0, now=T0 + timedelta(hours=2))
    mgr.open_pair("CUSDT", "DUSDT", spread_z=-1.8)
    mgr.close_pair("CUSDT", "DUSDT", realized_pnl_usd=3.0)

    path = tmp_path / "state" / "active_pairs.json"
    mgr.save_state(path)

    restored = _manager()
    assert restored.load_state(path)
    state = restored.get("AUSDT", "BUSDT")
    assert state.entry_time == T0
    assert [r.spread_z for r in state.history] == [2.0, 1.0]
    assert state.direction == PairDirection.FIRST_LONG
    closed = restored.closed_pairs()
    assert len(closed) == 1 and closed[0].realized_pnl_usd == 3.0


def test_load_state_missing_or_corrupt(tmp_path):
    mgr = _manager()
    assert not mgr.load_state(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    assert not mgr.load_state(bad)
