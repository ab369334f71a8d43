"""Exception taxonomy shared by the engine and the side-game coordinators."""

from __future__ import annotations


class GlyphBotError(Exception):
    """Base class for every error raised by the game core."""


class ValidationError(GlyphBotError):
    """Bad user input; nothing was mutated."""


class InsufficientFundsError(GlyphBotError):
    """A debit larger than the current balance was requested."""

    def __init__(self, user_id: str, requested: int, balance: int):
        super().__init__(
            f"You don't have enough GLYPHS. Your balance: {balance:,}"
        )
        self.user_id = user_id
        self.requested = requested
        self.balance = balance


class NotFoundError(GlyphBotError):
    """The referenced grumble, auction or pack does not exist."""


class AuctionClosedError(NotFoundError):
    """The auction exists but no longer accepts bids."""


class ConcurrencyGuardError(GlyphBotError):
    """A round resolution is already in flight."""


class PersistenceError(GlyphBotError):
    """Writing a document to disk failed."""


class AlphabetError(GlyphBotError):
    """The symbol alphabet is malformed. Raised at import time."""


__all__ = [
    "AlphabetError",
    "AuctionClosedError",
    "ConcurrencyGuardError",
    "GlyphBotError",
    "InsufficientFundsError",
    "NotFoundError",
    "PersistenceError",
    "ValidationError",
]
