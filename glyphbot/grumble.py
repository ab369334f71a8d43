"""Grumble: a pari-mutuel pool settled against the drawn rune."""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from typing import Dict, List, Optional, Tuple

from .engine import RoundEngine
from .errors import NotFoundError, ValidationError
from .events import ListenerSet
from .ledger import BalanceLedger
from .models import GrumbleBet, GrumbleOutcome, GrumbleState, RoundOutcome
from .rewards import is_symbol, pick_random_symbol, symbol_distance

logger = logging.getLogger("glyphbot.grumble")


class RemainderPolicy(enum.Enum):
    """What happens to the units left over when a tied pool does not divide evenly."""

    HOUSE = "house"                 # undistributed, nobody receives it
    FIRST_WINNER = "first_winner"   # the earliest co-winner receives it

    @classmethod
    def parse(cls, raw: Optional[str]) -> "RemainderPolicy":
        value = (raw or "").strip().lower()
        for policy in cls:
            if policy.value == value:
                return policy
        if value:
            logger.warning("Unknown grumble remainder policy %r; using %s.", raw, cls.HOUSE.value)
        return cls.HOUSE


def closest_bettors(bets: Dict[str, GrumbleBet], system_choice: str) -> Tuple[List[str], Optional[int]]:
    """Return every bettor at the global minimum distance, in betting order."""
    winners: List[str] = []
    best: Optional[int] = None
    for user_id, bet in bets.items():
        distance = symbol_distance(bet.guess, system_choice)
        if best is None or distance < best:
            best = distance
            winners = [user_id]
        elif distance == best:
            winners.append(user_id)
    return winners, best


class GrumbleCoordinator:
    """Runs one grumble session at a time inside the round state."""

    def __init__(
        self,
        engine: RoundEngine,
        ledger: BalanceLedger,
        *,
        remainder_policy: RemainderPolicy = RemainderPolicy.HOUSE,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.remainder_policy = remainder_policy
        self._rng = rng or random.Random()
        self._timer_task: Optional[asyncio.Task] = None
        self.resolved_listeners: ListenerSet[GrumbleOutcome] = ListenerSet("grumble-resolved")
        self.reopened_listeners: ListenerSet[GrumbleState] = ListenerSet("grumble-reopened")
        self._round_settlement: Optional[GrumbleOutcome] = None
        # Settle inside the resolution; announce once the engine has committed.
        engine.add_round_hook(self.on_round_advanced)
        engine.add_round_listener(self._announce_round_settlement)

    @property
    def store(self):
        return self.engine.store

    def get_state(self) -> Optional[GrumbleState]:
        return self.engine.state.grumble_state

    def is_active(self) -> bool:
        state = self.get_state()
        return state is not None and state.is_active

    def _require_active(self) -> GrumbleState:
        state = self.get_state()
        if state is None or not state.is_active:
            raise NotFoundError("No active grumble.")
        return state

    def get_user_bet(self, user_id: str) -> Optional[GrumbleBet]:
        state = self.get_state()
        if state is None or not state.is_active:
            return None
        return state.bets.get(str(user_id))

    # Lifecycle -------------------------------------------------------

    async def start(self, channel_id: Optional[str] = None) -> GrumbleState:
        if self.is_active():
            raise ValidationError("A grumble is already active. Use /grumble_restart to restart it.")
        state = GrumbleState(
            prize_pool=0,
            bets={},
            channel_id=channel_id,
            block_number=self.engine.state.current_block,
            is_active=True,
        )
        self.engine.state.grumble_state = state
        await self.store.commit_state()
        logger.info("Grumble started at block %s", state.block_number)
        return state

    async def attach_message(self, message_id: str, channel_id: str) -> None:
        state = self._require_active()
        state.message_id = str(message_id)
        state.channel_id = str(channel_id)
        self.store.schedule_state_write()

    async def restart(self) -> GrumbleState:
        """Keep the pool and bets but end at the next block again."""
        state = self._require_active()
        state.block_number = self.engine.state.current_block
        await self.store.commit_state()
        logger.info("Grumble restarted at block %s with %s bets", state.block_number, len(state.bets))
        return state

    async def join(self, user_id: str, symbol: str, amount: int) -> int:
        """Place a one-time bet; returns the bettor's new GLYPHS balance."""
        key = str(user_id)
        state = self._require_active()
        if self.should_end():
            raise ValidationError("This grumble is closing. Bets are no longer accepted.")
        if key in state.bets:
            raise ValidationError("You already joined the grumble.")
        if not is_symbol(symbol):
            raise ValidationError("Invalid rune selection.")
        if amount <= 0:
            raise ValidationError("Invalid amount.")
        # Debit and bet recording share one synchronous section, so no other
        # handler can observe the debit without the bet.
        new_balance = self.ledger.debit(key, amount)
        state.bets[key] = GrumbleBet(amount=amount, guess=symbol)
        state.prize_pool += amount
        await self.store.commit_state()
        logger.info("User %s joined grumble with %s on %s (pool %s)", key, amount, symbol, state.prize_pool)
        return new_balance

    # Timers ----------------------------------------------------------

    async def set_timer(self, seconds: int) -> GrumbleState:
        if seconds < 0:
            raise ValidationError("Timer must be 0 or greater. Use 0 to disable custom timer.")
        state = self._require_active()
        self._cancel_timer()
        if seconds == 0:
            state.custom_timer_sec = None
            state.custom_timer_ends_at = None
        else:
            state.custom_timer_sec = seconds
            state.custom_timer_ends_at = self.engine.now() + seconds * 1000
            self._schedule_timer(seconds)
        await self.store.commit_state()
        return state

    def _schedule_timer(self, delay_seconds: float) -> None:
        self._cancel_timer()
        self._timer_task = asyncio.get_running_loop().create_task(self._run_timer(delay_seconds))

    async def _run_timer(self, delay_seconds: float) -> None:
        try:
            await asyncio.sleep(max(0.0, delay_seconds))
        except asyncio.CancelledError:
            logger.debug("Grumble timer cancelled")
            return
        self._timer_task = None
        try:
            await self.resolve(pick_random_symbol(self._rng))
        except Exception:  # pylint: disable=broad-except
            logger.exception("Grumble timer resolution failed")

    def _cancel_timer(self) -> None:
        task = self._timer_task
        self._timer_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def should_end(self) -> bool:
        state = self.get_state()
        if state is None or not state.is_active:
            return False
        if state.uses_custom_timer:
            return self.engine.now() >= state.custom_timer_ends_at
        return self.engine.state.current_block > state.block_number

    def time_left_ms(self) -> int:
        state = self.get_state()
        if state is None or not state.is_active:
            return 0
        if state.uses_custom_timer:
            return max(0, state.custom_timer_ends_at - self.engine.now())
        return self.engine.time_left_ms()

    # Resolution ------------------------------------------------------

    def settle(self, system_choice: str) -> Optional[GrumbleOutcome]:
        """Pay the closest bettors and clear the session.

        Ties split the pool by floor division; the remainder follows
        ``remainder_policy``.
        """
        state = self.get_state()
        if state is None or not state.is_active:
            return None
        winners, best = closest_bettors(state.bets, system_choice)
        per_winner = state.prize_pool // len(winners) if winners else 0
        remainder = state.prize_pool - per_winner * len(winners) if winners else 0
        for index, user_id in enumerate(winners):
            payout = per_winner
            if index == 0 and self.remainder_policy is RemainderPolicy.FIRST_WINNER:
                payout += remainder
            if payout:
                self.ledger.credit(user_id, payout)
        if self.remainder_policy is RemainderPolicy.FIRST_WINNER:
            remainder = 0
        outcome = GrumbleOutcome(
            system_choice=system_choice,
            prize_pool=state.prize_pool,
            winners=tuple(winners),
            prize_per_winner=per_winner,
            remainder=remainder,
            min_distance=best,
            channel_id=state.channel_id,
            message_id=state.message_id,
        )
        self.engine.state.grumble_state = None
        self._cancel_timer()
        self.store.schedule_state_write()
        if winners:
            logger.info(
                "Grumble resolved on %s: %s winner(s) at distance %s, %s each, %s undistributed",
                system_choice,
                len(winners),
                best,
                per_winner,
                remainder,
            )
        else:
            logger.info("Grumble resolved on %s with no bettors", system_choice)
        return outcome

    async def resolve(self, system_choice: str) -> Optional[GrumbleOutcome]:
        outcome = self.settle(system_choice)
        if outcome is not None:
            await self.store.commit_state()
            self.resolved_listeners.dispatch(outcome)
        return outcome

    def on_round_advanced(self, outcome: RoundOutcome) -> None:
        if self.should_end():
            self._round_settlement = self.settle(outcome.system_choice)

    def _announce_round_settlement(self, outcome: RoundOutcome) -> None:
        settled, self._round_settlement = self._round_settlement, None
        if settled is not None:
            self.resolved_listeners.dispatch(settled)

    async def handle_member_departure(self, user_id: str) -> bool:
        """Reopen the session with the pool intact when a leading bettor leaves.

        The leaders are judged against the most recently drawn rune, since the
        next draw is not known yet.
        """
        key = str(user_id)
        state = self.get_state()
        if state is None or not state.is_active or key not in state.bets:
            return False
        reference = self.engine.state.last_system_choice
        if reference is None:
            return False
        leaders, _ = closest_bettors(state.bets, reference)
        if key not in leaders:
            return False
        self._cancel_timer()
        reopened = GrumbleState(
            prize_pool=state.prize_pool,
            bets={},
            message_id=state.message_id,
            channel_id=state.channel_id,
            block_number=self.engine.state.current_block,
            is_active=True,
        )
        self.engine.state.grumble_state = reopened
        await self.store.commit_state()
        logger.warning(
            "Grumble leader %s left; reopened session at block %s with preserved pool %s",
            key,
            reopened.block_number,
            reopened.prize_pool,
        )
        self.reopened_listeners.dispatch(reopened)
        return True

    async def restore_on_startup(self) -> Optional[GrumbleOutcome]:
        state = self.get_state()
        if state is None or not state.is_active:
            return None
        if self.should_end():
            logger.info("Grumble from previous session expired while offline; settling it now")
            choice = self.engine.state.last_system_choice
            if state.uses_custom_timer or choice is None:
                choice = pick_random_symbol(self._rng)
            return await self.resolve(choice)
        logger.info(
            "Loaded active grumble: %s GLYPHS pool, %s participants",
            state.prize_pool,
            len(state.bets),
        )
        if state.uses_custom_timer:
            self._schedule_timer(self.time_left_ms() / 1000)
        return None

    def shutdown(self) -> None:
        self._cancel_timer()
        self.resolved_listeners.cancel_pending()
        self.reopened_listeners.cancel_pending()


__all__ = ["GrumbleCoordinator", "RemainderPolicy", "closest_bettors"]
