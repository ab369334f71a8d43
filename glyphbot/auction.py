"""Sealed single-bid auctions paid in GLYPHS."""

from __future__ import annotations

import logging
import random
import string
from typing import List, Optional, Sequence, Tuple

from .engine import RoundEngine
from .errors import AuctionClosedError, NotFoundError, ValidationError
from .events import ListenerSet
from .ledger import BalanceLedger
from .models import AuctionResult, AuctionState

logger = logging.getLogger("glyphbot.auction")

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_auction_id(now: int, rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    suffix = "".join(rng.choice(_ID_ALPHABET) for _ in range(9))
    return f"auction_{now}_{suffix}"


class AuctionCoordinator:
    """Holds every auction in the round state and settles them on expiry.

    Bids are debited when placed. Winners are the top ``number_of_winners``
    bids, ties keeping bid order. Losing bids are kept unless
    ``refund_losers`` is set.
    """

    def __init__(
        self,
        engine: RoundEngine,
        ledger: BalanceLedger,
        *,
        refund_losers: bool = False,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.refund_losers = refund_losers
        self._rng = rng or random.Random()
        self.resolved_listeners: ListenerSet[AuctionResult] = ListenerSet("auction-resolved")
        engine.add_tick_hook(self.resolve_expired)

    @property
    def auctions(self):
        return self.engine.state.auctions

    @property
    def store(self):
        return self.engine.store

    async def create(
        self,
        description: str,
        roles_to_tag: Sequence[str],
        end_time: int,
        number_of_winners: int,
    ) -> AuctionState:
        description = (description or "").strip()
        if not description:
            raise ValidationError("Auction description must not be empty.")
        if number_of_winners < 1:
            raise ValidationError("Number of winners must be at least 1.")
        now = self.engine.now()
        if end_time <= now:
            raise ValidationError("Auction end time must be in the future.")
        auction = AuctionState(
            id=generate_auction_id(now, self._rng),
            description=description,
            end_time=end_time,
            number_of_winners=number_of_winners,
            roles_to_tag=[str(role_id) for role_id in roles_to_tag],
        )
        self.auctions[auction.id] = auction
        await self.store.commit_state()
        logger.info("Auction %s created (%s winner(s), ends %s)", auction.id, number_of_winners, end_time)
        return auction

    async def attach_message(self, auction_id: str, message_id: str, channel_id: str) -> None:
        auction = self.auctions.get(auction_id)
        if auction is None:
            return
        auction.message_id = str(message_id)
        auction.channel_id = str(channel_id)
        await self.store.commit_state()

    def get(self, auction_id: str) -> Optional[AuctionState]:
        return self.auctions.get(auction_id)

    def active_auctions(self, now: Optional[int] = None) -> List[AuctionState]:
        now = self.engine.now() if now is None else now
        return [
            auction
            for auction in self.auctions.values()
            if auction.is_active and not auction.ended and auction.end_time > now
        ]

    def expired_auctions(self, now: Optional[int] = None) -> List[AuctionState]:
        now = self.engine.now() if now is None else now
        return [auction for auction in self.auctions.values() if not auction.ended and auction.end_time <= now]

    async def place_bid(self, auction_id: str, user_id: str, amount: int) -> int:
        """Debit ``amount`` and record the user's only bid; returns the new balance."""
        key = str(user_id)
        auction = self.auctions.get(auction_id)
        if auction is None:
            raise NotFoundError("Auction not found.")
        if auction.ended or not auction.is_active:
            raise AuctionClosedError("Auction has ended.")
        if self.engine.now() >= auction.end_time:
            raise AuctionClosedError("Auction has ended.")
        if key in auction.bids:
            raise ValidationError("You already placed a bid.")
        if amount <= 0:
            raise ValidationError("Bid amount must be greater than 0.")
        new_balance = self.ledger.debit(key, amount)
        auction.bids[key] = amount
        await self.store.commit_state()
        logger.info("User %s bid %s on auction %s", key, amount, auction_id)
        return new_balance

    def ranking(self, auction_id: str) -> List[Tuple[str, int]]:
        auction = self.auctions.get(auction_id)
        if auction is None:
            return []
        return sorted(auction.bids.items(), key=lambda item: item[1], reverse=True)

    def user_rank(self, auction_id: str, user_id: str) -> Optional[int]:
        key = str(user_id)
        for index, (bidder, _) in enumerate(self.ranking(auction_id), start=1):
            if bidder == key:
                return index
        return None

    def user_bid(self, auction_id: str, user_id: str) -> Optional[int]:
        auction = self.auctions.get(auction_id)
        if auction is None:
            return None
        return auction.bids.get(str(user_id))

    def settle(self, auction_id: str) -> Optional[AuctionResult]:
        auction = self.auctions.get(auction_id)
        if auction is None or auction.ended:
            return None
        auction.ended = True
        auction.is_active = False
        ranked = self.ranking(auction_id)
        winners = tuple(ranked[: auction.number_of_winners])
        losers = tuple(ranked[auction.number_of_winners:])
        refunded = 0
        if self.refund_losers:
            for user_id, bid in losers:
                self.ledger.credit(user_id, bid)
                refunded += bid
        self.store.schedule_state_write()
        logger.info(
            "Auction %s ended: %s winner(s), %s loser(s), %s refunded",
            auction_id,
            len(winners),
            len(losers),
            refunded,
        )
        result = AuctionResult(auction=auction, winners=winners, losers=losers, refunded=refunded)
        self.resolved_listeners.dispatch(result)
        return result

    async def resolve(self, auction_id: str) -> Optional[AuctionResult]:
        """Close the auction; a second call on an ended auction returns ``None``."""
        result = self.settle(auction_id)
        if result is not None:
            await self.store.commit_state()
        return result

    def resolve_expired(self, now: int) -> List[AuctionResult]:
        results = []
        for auction in self.expired_auctions(now):
            result = self.settle(auction.id)
            if result is not None:
                results.append(result)
        return results

    def shutdown(self) -> None:
        self.resolved_listeners.cancel_pending()


__all__ = ["AuctionCoordinator", "generate_auction_id"]
