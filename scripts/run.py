"""Command-line entry point for the pair engine.

Usage:
  python scripts/run.py generate
  python scripts/run.py generate --output data/snapshots/latest.json
  python scripts/run.py scan
  python scripts/run.py scan --pair BTCUSDT:ETHUSDT --pair SOLUSDT:AVAXUSDT
  python scripts/run.py enrich
  python scripts/run.py evaluate --state data/state/active_pairs.json
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime
from pathlib import Path

# Ensure working directory is project root (needed for relative config paths)
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
os.chdir(PROJECT_ROOT)
sys.path.insert(0, PROJECT_ROOT)

import pytz
from dotenv import load_dotenv

load_dotenv()

DEFAULT_STATE_FILE = "data/state/active_pairs.json"


def parse_pair(value: str) -> tuple[str, str]:
    parts = value.replace("/", ":").split(":")
    if len(parts) != 2 or not all(parts):
        raise argparse.ArgumentTypeError(f"expected SYMBOL_A:SYMBOL_B, got {value!r}")
    return parts[0].upper(), parts[1].upper()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Statistical pair engine")
    parser.add_argument("--config", type=str, default=None, help="Settings YAML (default: config/settings.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate scored pair candidates from the markets file")
    gen.add_argument("--output", type=str, default=None, help="Snapshot path (default: timestamped file in snapshot_dir)")
    gen.add_argument("--no-filters", action="store_true", help="Disable tradability and statistical gates")

    scan = sub.add_parser("scan", help="Scan a watchlist of pairs on multiple windows")
    scan.add_argument("--pair", type=parse_pair, action="append", default=None, help="Pair as A:B (repeatable)")

    sub.add_parser("enrich", help="Recompute asset metrics and liquidity tiers in the markets file")

    ev = sub.add_parser("evaluate", help="Evaluate open pairs against a fresh scan")
    ev.add_argument("--state", type=str, default=DEFAULT_STATE_FILE, help="Active-pair state file")

    return parser.parse_args()


def cached_provider(settings):
    from statpairs.data.cache import CachedKlineProvider, KlineCache
    from statpairs.data.file_provider import FileMarketData

    inner = FileMarketData(settings.data.markets_file, settings.data.klines_dir)
    return CachedKlineProvider(inner, KlineCache(settings.data.cache_ttl_seconds))


def run_generate(settings, args: argparse.Namespace) -> int:
    from statpairs.data.file_provider import FileMarketData, load_assets
    from statpairs.selection.candidates import CandidateGenerator, write_candidates_snapshot

    candidate_cfg = settings.candidates
    if args.no_filters:
        candidate_cfg = candidate_cfg.model_copy(update={"no_filters": True})

    assets = load_assets(settings.data.markets_file)
    provider = FileMarketData(settings.data.markets_file, settings.data.klines_dir)
    generator = CandidateGenerator(provider, config=candidate_cfg, data_config=settings.data)
    result = generator.generate(assets)

    if args.output:
        out = Path(args.output)
    else:
        stamp = datetime.now(pytz.UTC).strftime("%Y%m%dT%H%M%SZ")
        out = Path(settings.snapshot_dir) / f"candidates_{stamp}.json"
    path = write_candidates_snapshot(out, result.candidates)

    print(f"Groups evaluated: {result.groups_evaluated}")
    print(f"Candidates:       {len(result.candidates)}")
    print(f"Skipped:          {len(result.diagnostics)}")
    for c in result.candidates[:20]:
        hl = c.cointegration.half_life
        print(
            f"  {c.long_symbol:>12} / {c.short_symbol:<12} "
            f"z={c.spread_z:+.2f} corr={c.correlation:.2f} "
            f"hl={hl if hl is None else round(hl, 1)} score={c.scores.composite:.3f}"
        )
    print(f"Snapshot written to {path}")
    return 0


def run_scan(settings, args: argparse.Namespace) -> int:
    from statpairs.scanner.multi_timeframe import MultiTimeframeScanner, format_scan_report

    watchlist = args.pair or [tuple(p) for p in settings.scanner.watchlist]
    if not watchlist:
        print("ERROR: no pairs to scan. Pass --pair A:B or set scanner.watchlist in the config.")
        return 1

    scanner = MultiTimeframeScanner(settings.scanner, settings.data, provider=cached_provider(settings))
    report = scanner.scan(watchlist)
    print(format_scan_report(report))
    return 0


def run_enrich(settings, args: argparse.Namespace) -> int:
    from statpairs.data.enrichment import AssetEnricher, asset_to_record
    from statpairs.data.file_provider import FileMarketData, load_market_records, save_market_records
    from statpairs.core.models import Asset

    records = load_market_records(settings.data.markets_file)
    assets = [Asset.from_market_record(r) for r in records]
    provider = FileMarketData(settings.data.markets_file, settings.data.klines_dir)
    enriched = AssetEnricher(provider, settings.data).enrich(assets)

    by_symbol = {r["symbol"]: r for r in records}
    updated = [asset_to_record(a, by_symbol.get(a.symbol)) for a in enriched]
    save_market_records(settings.data.markets_file, updated, updated_at=datetime.now(pytz.UTC).isoformat())

    tiers: dict[str, int] = {}
    for a in enriched:
        tiers[a.liquidity_tier or "-"] = tiers.get(a.liquidity_tier or "-", 0) + 1
    print(f"Enriched {len(enriched)} assets: " + ", ".join(f"{k}={v}" for k, v in sorted(tiers.items())))
    return 0


def run_evaluate(settings, args: argparse.Namespace) -> int:
    from statpairs.lifecycle.manager import ActivePairManager
    from statpairs.scanner.multi_timeframe import MultiTimeframeScanner

    manager = ActivePairManager(settings.lifecycle, interval=settings.data.interval)
    if not manager.load_state(args.state):
        print(f"No active-pair state at {args.state}")
        return 0

    open_pairs = manager.open_pairs()
    scanner = MultiTimeframeScanner(settings.scanner, settings.data, provider=cached_provider(settings))
    report = scanner.scan([(s.long_symbol, s.short_symbol) for s in open_pairs])

    for ev in manager.evaluate_cycle(signals=report.signals):
        z = "n/a" if ev.spread_z is None else f"{ev.spread_z:+.2f}"
        triggers = ",".join(ev.exit_signals.triggered()) or "-"
        print(f"  {ev.pair_key:<24} z={z:>6} source={ev.stats_source:<8} exits={triggers}")

    manager.save_state(args.state)
    return 0


COMMANDS = {
    "generate": run_generate,
    "scan": run_scan,
    "enrich": run_enrich,
    "evaluate": run_evaluate,
}


def main() -> None:
    args = parse_args()

    from statpairs.core.config import load_settings
    from statpairs.core.logging import setup_logging

    settings = load_settings(args.config or os.getenv("STATPAIRS_CONFIG"))
    setup_logging(
        level=settings.logging.level,
        log_file=settings.logging.file,
        json_format=settings.logging.json_format,
    )

    try:
        code = COMMANDS[args.command](settings, args)
    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
