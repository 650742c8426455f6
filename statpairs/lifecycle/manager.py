"""Active-pair lifecycle: entry baseline, per-cycle history, exit triggers.

One record per canonical pair key while open (NONE -> OPEN -> CLOSED). Closed
records are kept for audit; reopening a closed key starts a fresh record.
Exit triggers are surfaced as signals and never acted on here.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable

import pytz
import structlog

from statpairs.core.config import LifecycleConfig, hours_per_bar
from statpairs.core.events import EXIT_SIGNAL, PAIR_CLOSED, PAIR_EVALUATED, PAIR_OPENED, EventBus
from statpairs.core.models import (
    ActivePairState,
    ExitSignals,
    HistoryRow,
    OrderSide,
    PairDirection,
    PairEvaluation,
    PairSignal,
    PairStatus,
    TradeEvent,
)
from statpairs.lifecycle.pair_keys import canonical_pair_key, pair_direction

logger = structlog.get_logger()


class SymbolConflictError(ValueError):
    """Opening a pair would put one symbol in two open pairs."""


def _utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def _elapsed_ms(start: datetime, now: datetime) -> int:
    return int((now - start).total_seconds() * 1000)


def convergence_metrics(
    entry_z: float | None,
    current_z: float | None,
    target_z: float,
) -> tuple[float | None, float | None, float | None]:
    """``(progress, to_target_pct, remaining_to_target_z)`` on |z|.

    ``progress`` is the share of the entry |z| already closed, clamped to
    [0, 1]. ``to_target_pct`` measures the same against the target band
    instead of zero. All three are None without a non-zero entry z.
    """
    if entry_z is None or current_z is None:
        return None, None, None
    entry_abs, cur_abs = abs(entry_z), abs(current_z)
    if entry_abs <= 0:
        return None, None, None

    progress = max(0.0, min(1.0, (entry_abs - cur_abs) / entry_abs))
    remaining = max(cur_abs - target_z, 0.0)
    if entry_abs <= target_z:
        to_target = 1.0 if cur_abs <= target_z else 0.0
    else:
        denom = max(entry_abs - target_z, 1e-9)
        to_target = max(0.0, min(1.0, (entry_abs - max(cur_abs, target_z)) / denom))
    return progress, to_target, remaining


def realized_pnl_from_events(events: Iterable[TradeEvent]) -> float:
    """Cash flow of filled events: sells add ``qty * price``, buys subtract it."""
    total = 0.0
    for e in events:
        if str(e.status).upper() != "FILLED":
            continue
        notional = e.quantity * e.price
        total += notional if e.side == OrderSide.SELL else -notional
    return total


class ActivePairManager:
    """Owns every ``ActivePairState`` for one evaluation loop.

    Not thread-safe; all mutation happens on the caller's loop. Symbol
    isolation is the caller's check (``find_symbol_conflicts``) unless
    ``enforce_isolation`` is set, in which case ``open_pair`` raises.
    """

    def __init__(
        self,
        config: LifecycleConfig | None = None,
        interval: str = "1h",
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = _utcnow,
        enforce_isolation: bool = False,
    ) -> None:
        self._config = config or LifecycleConfig()
        self._interval = interval
        self._bus = event_bus
        self._clock = clock
        self._enforce_isolation = enforce_isolation
        self._open: dict[str, ActivePairState] = {}
        self._closed: list[ActivePairState] = []
        self._log = logger.bind(component="pair_lifecycle")

    def _publish(self, event_type: str, **data: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event_type, **data)

    # ── Queries ──────────────────────────────────────────────────────

    def get(self, symbol_a: str, symbol_b: str) -> ActivePairState | None:
        """The open record for two symbols, in either order."""
        return self._open.get(canonical_pair_key(symbol_a, symbol_b))

    def open_pairs(self) -> list[ActivePairState]:
        return list(self._open.values())

    def closed_pairs(self) -> list[ActivePairState]:
        return list(self._closed)

    def records(self, pair_key: str | None = None) -> list[ActivePairState]:
        """Every record, closed first then open, optionally for one key."""
        allrecs = self._closed + list(self._open.values())
        if pair_key is None:
            return allrecs
        return [r for r in allrecs if r.pair_key == pair_key]

    def latest_history(self, pair_key: str) -> HistoryRow | None:
        state = self._open.get(pair_key)
        if state is not None:
            return state.latest
        for record in reversed(self._closed):
            if record.pair_key == pair_key:
                return record.latest
        return None

    def open_symbols(self) -> set[str]:
        symbols: set[str] = set()
        for s in self._open.values():
            symbols.update((s.long_symbol, s.short_symbol))
        return symbols

    def find_symbol_conflicts(self, long_symbol: str, short_symbol: str) -> list[str]:
        """Keys of other open pairs that already hold either symbol."""
        key = canonical_pair_key(long_symbol, short_symbol)
        wanted = {long_symbol, short_symbol}
        return [
            k for k, s in self._open.items()
            if k != key and wanted & {s.long_symbol, s.short_symbol}
        ]

    # ── Transitions ──────────────────────────────────────────────────

    def open_pair(
        self,
        long_symbol: str,
        short_symbol: str,
        spread_z: float | None = None,
        half_life: float | None = None,
        entry_time: datetime | None = None,
    ) -> ActivePairState:
        """Record an entry and its baseline.

        Opening a key that is already open (a reversal, or a re-entry on the
        same structure) updates the direction and re-baselines that record.
        """
        key = canonical_pair_key(long_symbol, short_symbol)
        direction = pair_direction(key, long_symbol, short_symbol)

        if self._enforce_isolation:
            conflicts = self.find_symbol_conflicts(long_symbol, short_symbol)
            if conflicts:
                raise SymbolConflictError(f"{key} shares a symbol with open pairs: {conflicts}")

        now = entry_time or self._clock()
        initial = HistoryRow(
            ts=now,
            spread_z=spread_z,
            half_life=half_life,
            pnl_usd=0.0,
            delta_spread_z=0.0,
            delta_half_life=0.0,
            elapsed_ms=0,
        )

        state = self._open.get(key)
        if state is not None:
            state.long_symbol = long_symbol
            state.short_symbol = short_symbol
            state.direction = direction
            state.entry_time = now
            state.entry_spread_z = spread_z
            state.entry_half_life = half_life
            state.history.append(initial)
            self._log.info("pair_rebaselined", pair=key, direction=direction.value, spread_z=spread_z)
        else:
            state = ActivePairState(
                pair_key=key,
                long_symbol=long_symbol,
                short_symbol=short_symbol,
                direction=direction,
                entry_time=now,
                entry_spread_z=spread_z,
                entry_half_life=half_life,
                history=[initial],
            )
            self._open[key] = state
            self._log.info("pair_opened", pair=key, direction=direction.value, spread_z=spread_z, half_life=half_life)

        self._publish(PAIR_OPENED, state=state)
        return state

    def evaluate(
        self,
        long_symbol: str,
        short_symbol: str,
        pnl_usd: float = 0.0,
        spread_z: float | None = None,
        half_life: float | None = None,
        now: datetime | None = None,
    ) -> PairEvaluation:
        """Append one history row and evaluate the exit triggers.

        Live ``spread_z``/``half_life`` win; without them the latest stored
        history row is used, then the entry baseline.
        """
        key = canonical_pair_key(long_symbol, short_symbol)
        state = self._open.get(key)
        if state is None:
            raise KeyError(f"No open pair for {key}")
        now = now or self._clock()
        cfg = self._config

        if spread_z is not None or half_life is not None:
            cur_z, cur_hl, source = spread_z, half_life, "live"
        else:
            latest = state.latest
            if latest is not None and (latest.spread_z is not None or latest.half_life is not None):
                cur_z, cur_hl, source = latest.spread_z, latest.half_life, "history"
            else:
                cur_z, cur_hl, source = state.entry_spread_z, state.entry_half_life, "baseline"

        # Heal a baseline that was opened without stats
        if state.entry_spread_z is None and cur_z is not None:
            state.entry_spread_z = cur_z
            if state.entry_half_life is None:
                state.entry_half_life = cur_hl
            self._log.warning("baseline_healed", pair=key, spread_z=cur_z)

        entry_z, entry_hl = state.entry_spread_z, state.entry_half_life
        delta_z = abs(entry_z) - abs(cur_z) if entry_z is not None and cur_z is not None else None
        delta_hl = entry_hl - cur_hl if entry_hl is not None and cur_hl is not None else None
        elapsed_ms = _elapsed_ms(state.entry_time, now)

        progress, to_target, remaining = convergence_metrics(entry_z, cur_z, cfg.profit_target_z)

        elapsed_hours = elapsed_ms / 3_600_000
        hl_hours = cur_hl * hours_per_bar(self._interval) if cur_hl is not None else None
        elapsed_half_lives = elapsed_hours / hl_hours if hl_hours else None

        signals = ExitSignals(
            profit_target=cur_z is not None and abs(cur_z) <= cfg.profit_target_z,
            time_stop=hl_hours is not None and elapsed_hours >= cfg.time_stop_half_lives * hl_hours,
            convergence=progress is not None and progress >= cfg.convergence_threshold,
            risk_reduction=pnl_usd <= cfg.risk_reduction_pnl_usd,
            risk_exit=pnl_usd <= cfg.risk_exit_pnl_usd,
        )

        state.history.append(HistoryRow(
            ts=now,
            spread_z=cur_z,
            half_life=cur_hl,
            pnl_usd=pnl_usd,
            delta_spread_z=delta_z,
            delta_half_life=delta_hl,
            elapsed_ms=elapsed_ms,
        ))

        evaluation = PairEvaluation(
            pair_key=key,
            long_symbol=state.long_symbol,
            short_symbol=state.short_symbol,
            spread_z=cur_z,
            half_life=cur_hl,
            pnl_usd=pnl_usd,
            entry_spread_z=entry_z,
            entry_half_life=entry_hl,
            delta_spread_z=delta_z,
            delta_half_life=delta_hl,
            elapsed_ms=elapsed_ms,
            convergence_progress=progress,
            convergence_to_target_pct=to_target,
            remaining_to_target_z=remaining,
            elapsed_half_lives=elapsed_half_lives,
            stats_source=source,
            exit_signals=signals,
        )

        self._log.debug(
            "pair_evaluated",
            pair=key,
            spread_z=cur_z,
            delta_spread_z=delta_z,
            pnl_usd=pnl_usd,
            source=source,
        )
        self._publish(PAIR_EVALUATED, evaluation=evaluation)
        if signals.any:
            self._log.info("exit_signal", pair=key, triggers=signals.triggered(), spread_z=cur_z, pnl_usd=pnl_usd)
            self._publish(EXIT_SIGNAL, evaluation=evaluation, triggers=signals.triggered())
        return evaluation

    def evaluate_cycle(
        self,
        pnl_by_pair: dict[str, float] | None = None,
        signals: Iterable[PairSignal] = (),
        now: datetime | None = None,
    ) -> list[PairEvaluation]:
        """Evaluate every open pair once, matching scanner signals by canonical key.

        A pair that fails to evaluate is logged and left out of the result.
        """
        pnl_by_pair = pnl_by_pair or {}
        live: dict[str, PairSignal] = {}
        for sig in signals:
            live[canonical_pair_key(sig.symbol_a, sig.symbol_b)] = sig

        results = []
        for key, state in list(self._open.items()):
            sig = live.get(key)
            try:
                results.append(self.evaluate(
                    state.long_symbol,
                    state.short_symbol,
                    pnl_usd=pnl_by_pair.get(key, 0.0),
                    spread_z=sig.spread_z if sig else None,
                    half_life=sig.half_life if sig else None,
                    now=now,
                ))
            except Exception:
                self._log.exception("pair_evaluation_failed", pair=key)
        return results

    def add_realized(self, long_symbol: str, short_symbol: str, delta_usd: float) -> ActivePairState:
        """Add realized P&L to the open record, or to the most recent closed one."""
        key = canonical_pair_key(long_symbol, short_symbol)
        state = self._open.get(key)
        if state is None:
            state = next((r for r in reversed(self._closed) if r.pair_key == key), None)
        if state is None:
            raise KeyError(f"No pair record for {key}")
        state.realized_pnl_usd += delta_usd
        self._log.info("realized_pnl_added", pair=key, delta_usd=delta_usd, total_usd=state.realized_pnl_usd)
        return state

    def close_pair(
        self,
        long_symbol: str,
        short_symbol: str,
        realized_pnl_usd: float | None = None,
        closed_at: datetime | None = None,
    ) -> ActivePairState:
        """Stamp ``closed_at``, add realized P&L and retire the record."""
        key = canonical_pair_key(long_symbol, short_symbol)
        state = self._open.pop(key, None)
        if state is None:
            raise KeyError(f"No open pair for {key}")
        state.status = PairStatus.CLOSED
        state.closed_at = closed_at or self._clock()
        if realized_pnl_usd is not None:
            state.realized_pnl_usd += realized_pnl_usd
        self._closed.append(state)
        self._log.info("pair_closed", pair=key, realized_pnl_usd=state.realized_pnl_usd, history_rows=len(state.history))
        self._publish(PAIR_CLOSED, state=state)
        return state

    # ── Persistence ──────────────────────────────────────────────────

    def export_state(self) -> dict[str, Any]:
        return {
            "interval": self._interval,
            "records": [_state_to_dict(r) for r in self.records()],
        }

    def restore_state(self, state: dict[str, Any]) -> None:
        self._open.clear()
        self._closed.clear()
        for raw in state.get("records", []):
            record = _state_from_dict(raw)
            if record.is_open:
                self._open[record.pair_key] = record
            else:
                self._closed.append(record)

    def save_state(self, path: Path | str) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.export_state(), f, indent=2, default=str)
        self._log.debug("state_saved", path=str(path))

    def load_state(self, path: Path | str) -> bool:
        """Restore from disk. Returns True if restored."""
        path = Path(path)
        if not path.exists():
            return False
        try:
            with open(path, "r") as f:
                self.restore_state(json.load(f))
            self._log.info("state_restored", path=str(path), open=len(self._open), closed=len(self._closed))
            return True
        except Exception:
            self._log.exception("state_restore_failed")
            return False


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_dict(row: HistoryRow) -> dict[str, Any]:
    return {
        "ts": row.ts.isoformat(),
        "spread_z": row.spread_z,
        "half_life": row.half_life,
        "pnl_usd": row.pnl_usd,
        "delta_spread_z": row.delta_spread_z,
        "delta_half_life": row.delta_half_life,
        "elapsed_ms": row.elapsed_ms,
    }


def _state_to_dict(state: ActivePairState) -> dict[str, Any]:
    return {
        "pair_key": state.pair_key,
        "long_symbol": state.long_symbol,
        "short_symbol": state.short_symbol,
        "direction": state.direction.value,
        "entry_time": state.entry_time.isoformat(),
        "entry_spread_z": state.entry_spread_z,
        "entry_half_life": state.entry_half_life,
        "status": state.status.value,
        "closed_at": state.closed_at.isoformat() if state.closed_at else None,
        "realized_pnl_usd": state.realized_pnl_usd,
        "history": [_row_to_dict(r) for r in state.history],
    }


def _state_from_dict(raw: dict[str, Any]) -> ActivePairState:
    return ActivePairState(
        pair_key=raw["pair_key"],
        long_symbol=raw["long_symbol"],
        short_symbol=raw["short_symbol"],
        direction=PairDirection(raw["direction"]),
        entry_time=_dt(raw["entry_time"]),
        entry_spread_z=raw.get("entry_spread_z"),
        entry_half_life=raw.get("entry_half_life"),
        status=PairStatus(raw.get("status", PairStatus.OPEN.value)),
        closed_at=_dt(raw.get("closed_at")),
        realized_pnl_usd=raw.get("realized_pnl_usd", 0.0),
        history=[
            HistoryRow(
                ts=_dt(r["ts"]),
                spread_z=r.get("spread_z"),
                half_life=r.get("half_life"),
                pnl_usd=r.get("pnl_usd"),
                delta_spread_z=r.get("delta_spread_z"),
                delta_half_life=r.get("delta_half_life"),
                elapsed_ms=r.get("elapsed_ms", 0),
            )
            for r in raw.get("history", [])
        ],
    )
