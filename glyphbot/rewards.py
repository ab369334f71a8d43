"""Rune alphabet, symbolic distance and the tiered reward model."""

from __future__ import annotations

import math
import random
from typing import Dict, Optional, Sequence, Tuple

from .errors import AlphabetError, ValidationError

RAW_SYMBOLS: Tuple[str, ...] = (
    "ᚹ", "ᚾ", "ᚦ", "ᚠ", "ᚱ", "ᚲ", "ᛉ", "ᛈ", "ᚺ", "ᛏ", "ᛁ",
    "ᛋ", "ᛇ", "ᚨ", "ᛃ", "ᛟ", "ᛞ", "ᛒ", "ᛗ", "ᛚ", "ᛜ", "ᛝ",
)

# (max distance inclusive, min thousandths, max thousandths), checked in order.
REWARD_TIERS: Tuple[Tuple[int, int, int], ...] = (
    (0, 950, 1000),
    (3, 700, 900),
    (7, 400, 600),
)
FAR_TIER: Tuple[int, int] = (150, 300)


def validate_alphabet(symbols: Sequence[str]) -> Tuple[str, ...]:
    seen: Dict[str, int] = {}
    duplicates = []
    for symbol in symbols:
        if symbol in seen:
            duplicates.append(symbol)
        seen[symbol] = seen.get(symbol, 0) + 1
    if duplicates:
        raise AlphabetError(
            f"Duplicate runes in alphabet: {', '.join(duplicates)} "
            f"(count {len(symbols)}, unique {len(seen)})"
        )
    if not symbols:
        raise AlphabetError("Rune alphabet is empty.")
    return tuple(symbols)


SYMBOLS: Tuple[str, ...] = validate_alphabet(RAW_SYMBOLS)
_SYMBOL_INDEX: Dict[str, int] = {symbol: index for index, symbol in enumerate(SYMBOLS)}


def is_symbol(value: object) -> bool:
    return isinstance(value, str) and value in _SYMBOL_INDEX


def symbol_index(symbol: str) -> int:
    try:
        return _SYMBOL_INDEX[symbol]
    except KeyError:
        raise ValidationError(f"Unknown rune {symbol!r}.") from None


def symbol_distance(a: str, b: str) -> int:
    """Shortest distance between two runes on the circular alphabet."""
    direct = abs(symbol_index(a) - symbol_index(b))
    return min(direct, len(SYMBOLS) - direct)


def reward_tier(distance: int) -> Tuple[int, int]:
    """Return the inclusive (min, max) payout range in thousandths of the base reward."""
    for max_distance, low, high in REWARD_TIERS:
        if distance <= max_distance:
            return low, high
    return FAR_TIER


def compute_reward(
    base_reward: int,
    player: str,
    system: str,
    rng: Optional[random.Random] = None,
) -> int:
    rng = rng or random
    low, high = reward_tier(symbol_distance(player, system))
    draw = rng.randint(low, high)
    return base_reward * draw // 1000


def pick_random_symbol(rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    return SYMBOLS[rng.randrange(len(SYMBOLS))]


def format_duration(ms: int) -> str:
    seconds = max(0, math.ceil(ms / 1000))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes or hours:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


__all__ = [
    "FAR_TIER",
    "RAW_SYMBOLS",
    "REWARD_TIERS",
    "SYMBOLS",
    "compute_reward",
    "format_duration",
    "is_symbol",
    "pick_random_symbol",
    "reward_tier",
    "symbol_distance",
    "symbol_index",
    "validate_alphabet",
]
