"""Glyphs bot package: round engine, side games and the Discord surface."""

from . import auction, engine, errors, grumble, leaderboard, ledger, market, models, rewards, state, utils  # noqa: F401

__version__ = "1.0.0"

__all__ = [
    "auction",
    "engine",
    "errors",
    "grumble",
    "leaderboard",
    "ledger",
    "market",
    "models",
    "rewards",
    "state",
    "utils",
]
