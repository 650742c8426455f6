"""Direction-independent pair keys.

The same two symbols always map to one key (``"A|B"``, alphabetical), so a
pair that flips from long A / short B to long B / short A keeps its record.
"""

from __future__ import annotations

from statpairs.core.models import PairDirection

SEPARATOR = "|"


def canonical_pair_key(symbol_a: str, symbol_b: str) -> str:
    if not symbol_a or not symbol_b:
        raise ValueError(f"Invalid symbols for pair key: {symbol_a!r}, {symbol_b!r}")
    if symbol_a == symbol_b:
        raise ValueError(f"A pair needs two distinct symbols, got {symbol_a!r} twice")
    first, second = sorted((symbol_a, symbol_b))
    return f"{first}{SEPARATOR}{second}"


def parse_pair_key(pair_key: str) -> tuple[str, str]:
    parts = pair_key.split(SEPARATOR)
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid pair key format: {pair_key!r}")
    return parts[0], parts[1]


def pair_direction(pair_key: str, long_symbol: str, short_symbol: str) -> PairDirection:
    """Which canonical leg is long. Raises if the symbols don't match the key."""
    first, second = parse_pair_key(pair_key)
    if (long_symbol, short_symbol) == (first, second):
        return PairDirection.FIRST_LONG
    if (long_symbol, short_symbol) == (second, first):
        return PairDirection.SECOND_LONG
    raise ValueError(
        f"Mismatched pair symbols: canonical=({first}|{second}), "
        f"current=(long:{long_symbol}, short:{short_symbol})"
    )


def resolve_long_short(pair_key: str, direction: PairDirection) -> tuple[str, str]:
    """``(long, short)`` for a key and direction."""
    first, second = parse_pair_key(pair_key)
    if direction == PairDirection.FIRST_LONG:
        return first, second
    return second, first
