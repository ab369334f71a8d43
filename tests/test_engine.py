import asyncio
import random
import tempfile
import unittest
from pathlib import Path

from glyphbot.engine import EnginePhase, RoundEngine
from glyphbot.errors import ConcurrencyGuardError, ValidationError
from glyphbot.ledger import BalanceLedger
from glyphbot.rewards import SYMBOLS, reward_tier
from glyphbot.state import StateStore


class RoundEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = StateStore(Path(self._tmp.name), write_delay=0.01)
        self.store.load()
        self.ledger = BalanceLedger(self.store)
        self.now = 1_000_000
        self.engine = RoundEngine(self.store, self.ledger, rng=random.Random(7), clock=lambda: self.now)
        self.engine.state.next_block_at = self.now + 30_000

    async def asyncTearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    async def test_record_choice_validates(self) -> None:
        with self.assertRaises(ValidationError):
            await self.engine.record_choice("u1", "not-a-rune")
        await self.engine.record_choice("u1", SYMBOLS[2])
        await self.engine.record_choice("u1", SYMBOLS[3])
        self.assertEqual(self.engine.state.current_choices, {"u1": SYMBOLS[3]})
        self.assertEqual(self.engine.participant_count(), 1)

    async def test_stopped_engine_refuses_choices(self) -> None:
        self.assertTrue(self.engine.stop())
        self.assertFalse(self.engine.stop())
        with self.assertRaises(ValidationError):
            await self.engine.record_choice("u1", SYMBOLS[0])
        self.assertTrue(self.engine.start())
        self.assertFalse(self.engine.start())

    async def test_advance_without_participants(self) -> None:
        outcome = await self.engine.advance(SYMBOLS[4])
        self.assertIsNone(outcome.record)
        self.assertEqual(outcome.resolved_block, 1)
        self.assertEqual(outcome.new_block, 2)
        self.assertEqual(self.engine.state.block_history, [])
        self.assertEqual(self.engine.state.last_system_choice, SYMBOLS[4])
        self.assertEqual(self.engine.state.next_block_at, self.now + 30_000)
        self.assertEqual(self.ledger.total(), 0)

    async def test_advance_pays_participants_and_clears_choices(self) -> None:
        await self.engine.record_choice("near", SYMBOLS[0])
        await self.engine.record_choice("far", SYMBOLS[11])
        outcome = await self.engine.advance(SYMBOLS[0])

        self.assertEqual(len(outcome.record.member_results), 2)
        near = outcome.record.result_for("near")
        far = outcome.record.result_for("far")
        self.assertEqual(near.distance, 0)
        self.assertEqual(far.distance, 11)
        self.assertTrue(950_000 <= self.ledger.get_balance("near") <= 1_000_000)
        self.assertTrue(150_000 <= self.ledger.get_balance("far") <= 300_000)
        self.assertEqual(self.engine.state.current_choices, {})
        self.assertEqual(len(self.engine.state.block_history), 1)
        self.assertIs(self.engine.phase, EnginePhase.IDLE)

    async def test_concurrent_advance_resolves_once(self) -> None:
        await self.engine.record_choice("u1", SYMBOLS[0])
        results = await asyncio.gather(
            self.engine.advance(SYMBOLS[0]),
            self.engine.advance(SYMBOLS[0]),
            return_exceptions=True,
        )
        errors = [result for result in results if isinstance(result, ConcurrencyGuardError)]
        self.assertEqual(len(errors), 1)
        self.assertEqual(self.engine.state.current_block, 2)
        self.assertEqual(len(self.engine.state.block_history), 1)

    async def test_overlapping_ticks_pay_each_participant_once(self) -> None:
        await self.engine.record_choice("u1", SYMBOLS[0])
        await self.engine.record_choice("u2", SYMBOLS[12])
        self.now = self.engine.state.next_block_at
        results = await asyncio.gather(self.engine.tick(), self.engine.tick())

        outcomes = [result for result in results if result is not None]
        self.assertEqual(len(outcomes), 1)
        self.assertEqual(self.engine.state.current_block, 2)
        self.assertEqual(len(self.engine.state.block_history), 1)
        base = self.engine.state.base_reward
        for member in outcomes[0].record.member_results:
            low, high = reward_tier(member.distance)
            balance = self.ledger.get_balance(member.user_id)
            self.assertEqual(balance, member.reward)
            self.assertTrue(base * low // 1000 <= balance <= base * high // 1000)

    async def test_admin_can_zero_a_balance(self) -> None:
        self.ledger.set_balance("u1", 500)
        self.assertEqual(await self.engine.set_balance("u1", 0), 0)
        self.assertEqual(self.ledger.get_balance("u1"), 0)
        with self.assertRaises(ValidationError):
            await self.engine.set_balance("u1", -1)

    async def test_invalid_system_choice_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            await self.engine.advance("nope")
        self.assertEqual(self.engine.state.current_block, 1)

    async def test_tick_waits_for_deadline(self) -> None:
        seen = []
        self.engine.add_tick_hook(seen.append)
        self.assertIsNone(await self.engine.tick())
        self.assertEqual(self.engine.state.current_block, 1)
        self.now += 30_000
        outcome = await self.engine.tick()
        self.assertIsNotNone(outcome)
        self.assertEqual(self.engine.state.current_block, 2)
        self.assertEqual(seen, [1_000_000, 1_030_000])

    async def test_failing_round_hook_does_not_block_advance(self) -> None:
        calls = []

        def broken(outcome) -> None:
            raise RuntimeError("boom")

        self.engine.add_round_hook(broken)
        self.engine.add_round_hook(calls.append)
        self.engine.add_round_listener(calls.append)
        outcome = await self.engine.advance()
        self.assertEqual(calls, [outcome, outcome])

    async def test_autorun_fires_once_after_last_block(self) -> None:
        finished = []
        self.engine.autorun_listeners.add(finished.append)
        with self.assertRaises(ValidationError):
            self.engine.set_autorun(0)
        self.engine.set_autorun(2)
        await self.engine.advance()
        self.assertEqual(finished, [])
        self.assertEqual(self.engine.autorun_remaining, 1)
        second = await self.engine.advance()
        self.assertEqual(finished, [second])
        self.assertIsNone(self.engine.autorun_remaining)
        await self.engine.advance()
        self.assertEqual(len(finished), 1)

    async def test_last_round_summary_sorted_by_reward(self) -> None:
        self.assertIsNone(self.engine.get_last_round_summary())
        await self.engine.record_choice("far", SYMBOLS[11])
        await self.engine.record_choice("exact", SYMBOLS[0])
        await self.engine.advance(SYMBOLS[0])
        summary = self.engine.get_last_round_summary()
        self.assertEqual([result.user_id for result in summary.member_results], ["exact", "far"])

        await self.engine.advance(SYMBOLS[0])
        self.assertIsNone(self.engine.get_last_round_summary())

    async def test_user_history_newest_first(self) -> None:
        for _ in range(3):
            await self.engine.record_choice("u1", SYMBOLS[1])
            await self.engine.advance(SYMBOLS[1])
        history = self.engine.get_user_history("u1")
        self.assertEqual([entry.block_number for entry in history.entries], [3, 2, 1])
        self.assertEqual(history.total_earned, self.ledger.get_balance("u1"))
        self.assertEqual(self.engine.get_user_history("other").entries, ())

    async def test_admin_setters(self) -> None:
        with self.assertRaises(ValidationError):
            await self.engine.set_block_duration(0)
        await self.engine.set_block_duration(10)
        self.assertEqual(self.engine.state.next_block_at, self.now + 10_000)
        with self.assertRaises(ValidationError):
            await self.engine.set_current_block(0)
        await self.engine.set_current_block(42)
        self.assertEqual(self.engine.state.current_block, 42)
        await self.engine.set_base_reward(5)
        await self.engine.set_total_rewards(6)
        self.assertEqual((self.engine.state.base_reward, self.engine.state.total_rewards_per_block), (5, 6))

    async def test_reset_all(self) -> None:
        await self.engine.record_choice("u1", SYMBOLS[0])
        await self.engine.advance(SYMBOLS[0])
        await self.engine.reset_all()
        self.assertEqual(self.engine.state.current_block, 1)
        self.assertEqual(self.engine.state.block_history, [])
        self.assertIsNone(self.engine.state.last_system_choice)
        self.assertEqual(self.ledger.total(), 0)

    async def test_bet_info_reports_mining_choice(self) -> None:
        self.assertFalse(self.engine.get_user_bet_info("u1").has_any)
        await self.engine.record_choice("u1", SYMBOLS[6])
        info = self.engine.get_user_bet_info("u1")
        self.assertEqual(info.mining_choice, SYMBOLS[6])
        self.assertIsNone(info.grumble_bet)


if __name__ == "__main__":
    unittest.main()
