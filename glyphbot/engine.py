"""Block round engine: choices, resolution, history and the ticker."""

from __future__ import annotations

import enum
import logging
import random
from dataclasses import replace
from typing import Callable, List, Optional

from .errors import ConcurrencyGuardError, ValidationError
from .events import Listener, ListenerSet
from .ledger import BalanceLedger
from .models import (
    BetInfo,
    BlockRecord,
    MemberResult,
    RoundOutcome,
    RoundState,
    UserHistory,
    UserHistoryEntry,
)
from .rewards import compute_reward, is_symbol, pick_random_symbol, symbol_distance
from .state import StateStore
from .utils import now_ms

logger = logging.getLogger("glyphbot.engine")

TICK_INTERVAL_SECONDS = 1.0

RoundHook = Callable[[RoundOutcome], None]
TickHook = Callable[[int], None]


class EnginePhase(enum.Enum):
    IDLE = "idle"
    RESOLVING = "resolving"


class RoundEngine:
    """Owns the current block, the in-flight choices and block resolution."""

    def __init__(
        self,
        store: StateStore,
        ledger: BalanceLedger,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self._rng = rng or random.Random()
        self._clock = clock
        self.phase = EnginePhase.IDLE
        self.is_active = True
        self.autorun_remaining: Optional[int] = None
        self._round_hooks: List[RoundHook] = []
        self._tick_hooks: List[TickHook] = []
        self.round_listeners: ListenerSet[RoundOutcome] = ListenerSet("round-advanced")
        self.autorun_listeners: ListenerSet[RoundOutcome] = ListenerSet("autorun-complete")

    @property
    def state(self) -> RoundState:
        return self.store.state

    def now(self) -> int:
        return self._clock()

    # Wiring ----------------------------------------------------------

    def add_round_hook(self, hook: RoundHook) -> None:
        """Run ``hook`` synchronously inside the resolution, before the state is committed."""
        self._round_hooks.append(hook)

    def add_tick_hook(self, hook: TickHook) -> None:
        self._tick_hooks.append(hook)

    def add_round_listener(self, listener: Listener) -> None:
        self.round_listeners.add(listener)

    # Player actions --------------------------------------------------

    async def record_choice(self, user_id: str, symbol: str) -> None:
        if not self.is_active:
            raise ValidationError("Bot is currently stopped. Use /start to enable it again.")
        if not is_symbol(symbol):
            raise ValidationError("Invalid choice.")
        self.state.current_choices[str(user_id)] = symbol
        self.store.schedule_state_write()

    # Resolution ------------------------------------------------------

    def resolve_round(self, system_choice: str) -> Optional[BlockRecord]:
        """Pay every participant of the current block and append its record.

        Returns ``None`` without touching history when nobody played.
        """
        choices = self.state.current_choices
        if not choices:
            return None
        base_reward = self.state.base_reward
        results: List[MemberResult] = []
        for user_id, choice in choices.items():
            distance = symbol_distance(choice, system_choice)
            reward = compute_reward(base_reward, choice, system_choice, self._rng)
            self.ledger.credit(user_id, reward)
            results.append(MemberResult(user_id=user_id, choice=choice, reward=reward, distance=distance))
        record = BlockRecord(
            block_number=self.state.current_block,
            system_choice=system_choice,
            timestamp=self.now(),
            member_results=tuple(results),
        )
        self.state.block_history.append(record)
        return record

    async def advance(self, system_choice: Optional[str] = None) -> RoundOutcome:
        if self.phase is EnginePhase.RESOLVING:
            raise ConcurrencyGuardError("Round resolution already in progress.")
        if system_choice is not None and not is_symbol(system_choice):
            raise ValidationError("Invalid system choice.")
        self.phase = EnginePhase.RESOLVING
        try:
            choice = system_choice or pick_random_symbol(self._rng)
            resolved_block = self.state.current_block
            record = self.resolve_round(choice)
            self.state.last_system_choice = choice
            self.state.current_block = resolved_block + 1
            self.state.next_block_at = self.now() + self.state.block_duration_sec * 1000
            self.state.current_choices = {}
            outcome = RoundOutcome(
                resolved_block=resolved_block,
                new_block=self.state.current_block,
                system_choice=choice,
                record=record,
            )
            for hook in list(self._round_hooks):
                try:
                    hook(outcome)
                except Exception:  # pylint: disable=broad-except
                    logger.exception("Round hook %r failed for block %s", hook, resolved_block)
            await self.store.commit_state()
        finally:
            self.phase = EnginePhase.IDLE
        participants = len(record.member_results) if record else 0
        logger.info(
            "Block %s resolved with %s (%s participants); block %s open",
            resolved_block,
            choice,
            participants,
            outcome.new_block,
        )
        self.round_listeners.dispatch(outcome)
        self._count_down_autorun(outcome)
        return outcome

    def _count_down_autorun(self, outcome: RoundOutcome) -> None:
        if self.autorun_remaining is None or self.autorun_remaining <= 0:
            return
        self.autorun_remaining -= 1
        if self.autorun_remaining <= 0:
            logger.info("Autorun finished after block %s", outcome.resolved_block)
            self.autorun_remaining = None
            self.autorun_listeners.dispatch(outcome)

    async def tick(self) -> Optional[RoundOutcome]:
        now = self.now()
        for hook in list(self._tick_hooks):
            try:
                hook(now)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Tick hook %r failed", hook)
        if now < self.state.next_block_at:
            return None
        try:
            return await self.advance()
        except ConcurrencyGuardError:
            logger.debug("Tick skipped: block %s is still resolving", self.state.current_block)
            return None

    def shutdown(self) -> None:
        self.round_listeners.cancel_pending()
        self.autorun_listeners.cancel_pending()

    # Admin -----------------------------------------------------------

    def start(self) -> bool:
        if self.is_active:
            return False
        self.is_active = True
        logger.info("Engine re-enabled")
        return True

    def stop(self) -> bool:
        if not self.is_active:
            return False
        self.is_active = False
        logger.info("Engine soft-stopped")
        return True

    def set_autorun(self, blocks: int) -> None:
        if blocks <= 0:
            raise ValidationError("Blocks must be greater than 0.")
        self.autorun_remaining = blocks

    async def set_block_duration(self, seconds: int) -> None:
        if seconds <= 0:
            raise ValidationError("Duration must be greater than 0 seconds.")
        self.state.block_duration_sec = seconds
        self.state.next_block_at = self.now() + seconds * 1000
        await self.store.commit_state()

    async def set_current_block(self, block: int) -> None:
        if block < 1:
            raise ValidationError("Block number must be at least 1.")
        self.state.current_block = block
        await self.store.commit_state()

    async def set_base_reward(self, amount: int) -> None:
        if amount < 0:
            raise ValidationError("Base reward must not be negative.")
        self.state.base_reward = amount
        await self.store.commit_state()

    async def set_total_rewards(self, amount: int) -> None:
        if amount < 0:
            raise ValidationError("Total rewards must not be negative.")
        self.state.total_rewards_per_block = amount
        await self.store.commit_state()

    async def set_balance(self, user_id: str, amount: int) -> int:
        return self.ledger.set_balance(user_id, amount)

    async def reset_balances(self) -> None:
        self.ledger.reset()

    async def reset_records(self) -> None:
        self.state.block_history = []
        await self.store.commit_state()
        logger.info("Block history reset.")

    async def reset_all(self) -> None:
        self.ledger.reset()
        self.state.block_history = []
        self.state.current_block = 1
        self.state.next_block_at = self.now() + self.state.block_duration_sec * 1000
        self.state.last_system_choice = None
        await self.store.commit_state()
        logger.info("Blocks, balances and records reset.")

    # Queries ---------------------------------------------------------

    def time_left_ms(self) -> int:
        return max(0, self.state.next_block_at - self.now())

    def get_balance(self, user_id: str) -> int:
        return self.ledger.get_balance(user_id)

    def get_last_round_summary(self) -> Optional[BlockRecord]:
        last_block = self.state.current_block - 1
        if last_block < 1:
            return None
        for record in reversed(self.state.block_history):
            if record.block_number == last_block:
                if not record.member_results:
                    return None
                ordered = sorted(record.member_results, key=lambda result: result.reward, reverse=True)
                return replace(record, member_results=tuple(ordered))
        return None

    def get_user_history(self, user_id: str) -> UserHistory:
        key = str(user_id)
        entries: List[UserHistoryEntry] = []
        for record in self.state.block_history:
            result = record.result_for(key)
            if result is None:
                continue
            entries.append(
                UserHistoryEntry(
                    block_number=record.block_number,
                    system_choice=record.system_choice,
                    choice=result.choice,
                    reward=result.reward,
                    distance=result.distance,
                    timestamp=record.timestamp,
                )
            )
        entries.sort(key=lambda entry: entry.block_number, reverse=True)
        return UserHistory(entries=tuple(entries), total_earned=sum(entry.reward for entry in entries))

    def get_user_bet_info(self, user_id: str) -> BetInfo:
        key = str(user_id)
        grumble = self.state.grumble_state
        bet = grumble.bets.get(key) if grumble and grumble.is_active else None
        return BetInfo(mining_choice=self.state.current_choices.get(key), grumble_bet=bet)

    def participant_count(self) -> int:
        return len(self.state.current_choices)


__all__ = ["EnginePhase", "RoundEngine", "TICK_INTERVAL_SECONDS"]
