import json
import random
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from glyphbot.engine import RoundEngine
from glyphbot.leaderboard import LEADERBOARD_CACHE_TTL_MS, LeaderboardAggregator
from glyphbot.ledger import BalanceLedger
from glyphbot.models import BlockRecord, MemberResult
from glyphbot.panels import format_leaderboard
from glyphbot.rewards import SYMBOLS
from glyphbot.state import StateStore


def _record(block: int, system: str, *results) -> BlockRecord:
    return BlockRecord(
        block_number=block,
        system_choice=system,
        timestamp=block * 1_000,
        member_results=tuple(MemberResult(user_id, choice, reward, distance) for user_id, choice, reward, distance in results),
    )


class LeaderboardTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._tmp.name)
        self.store = StateStore(self.data_dir)
        self.store.load()
        self.ledger = BalanceLedger(self.store)
        self.now = 10_000_000
        self.engine = RoundEngine(self.store, self.ledger, rng=random.Random(1), clock=lambda: self.now)
        self.board = LeaderboardAggregator(self.engine, self.ledger, notify_role_id="42")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _seed(self) -> None:
        self.engine.state.block_history = [
            _record(1, SYMBOLS[0], ("a", SYMBOLS[0], 1_000, 0), ("b", SYMBOLS[2], 800, 2)),
            _record(2, SYMBOLS[2], ("a", SYMBOLS[5], 500, 3), ("b", SYMBOLS[2], 990, 0)),
            _record(3, SYMBOLS[5], ("a", SYMBOLS[5], 990, 0)),
        ]
        self.ledger.set_balance("a", 2_490)
        self.ledger.set_balance("b", 1_790)
        self.ledger.set_balance("c", 9_999)
        self.engine.state.current_choices = {"d": SYMBOLS[1]}

    def test_stats_ordering_and_fields(self) -> None:
        self._seed()
        stats = self.board.compute_stats()
        self.assertEqual([entry.user_id for entry in stats], ["a", "b", "c", "d"])
        first = stats[0]
        self.assertEqual(first.exact_matches, 2)
        self.assertEqual(first.total_participations, 3)
        self.assertEqual(first.most_picked, SYMBOLS[5])
        self.assertEqual(first.last_participation_at, 3_000)
        self.assertEqual(stats[1].most_picked, SYMBOLS[2])
        self.assertIsNone(stats[2].most_picked)
        self.assertEqual(stats[3].balance, 0)

    def test_most_picked_tie_keeps_first_rune(self) -> None:
        self.engine.state.block_history = [
            _record(1, SYMBOLS[0], ("a", SYMBOLS[4], 1, 4)),
            _record(2, SYMBOLS[0], ("a", SYMBOLS[7], 1, 7)),
        ]
        self.assertEqual(self.board.compute_stats()[0].most_picked, SYMBOLS[4])

    def test_requester_outside_top_gets_rank(self) -> None:
        for index in range(12):
            self.ledger.set_balance(f"user{index:02d}", 1_000 - index)
        view = self.board.get_leaderboard("user11")
        self.assertEqual(len(view.top), 10)
        self.assertEqual(view.requester.user_id, "user11")
        self.assertEqual(view.requester_rank, 12)
        inside = self.board.get_leaderboard("user00")
        self.assertIsNone(inside.requester)

        text = format_leaderboard(view, {"user00": "Alice"})
        self.assertIn("1. **Alice**", text)
        self.assertIn("Your Rank: 12. **user11**", text)

    def test_cache_reused_until_inputs_change(self) -> None:
        self._seed()
        first = self.board.get_leaderboard()
        self.engine.state.block_history.append(_record(4, SYMBOLS[1], ("c", SYMBOLS[1], 1, 0)))
        self.assertIs(self.board.get_leaderboard().top[0], first.top[0])
        self.assertEqual(self.board.get_leaderboard().top[0].user_id, "a")

        self.ledger.credit("c", 1)
        self.assertEqual(self.board.get_leaderboard().top[0].user_id, "a")
        refreshed = self.board.get_leaderboard()
        self.assertEqual([entry.user_id for entry in refreshed.top], ["a", "c", "b", "d"])

    def test_cache_expires_and_invalidates(self) -> None:
        self._seed()
        first = self.board.get_leaderboard()
        self.now += LEADERBOARD_CACHE_TTL_MS + 1
        self.assertIsNot(self.board.get_leaderboard().top[0], first.top[0])
        second = self.board.get_leaderboard()
        self.board.invalidate()
        self.assertIsNot(self.board.get_leaderboard().top[0], second.top[0])

    def test_block_change_invalidates_cache(self) -> None:
        self._seed()
        first = self.board.get_leaderboard()
        self.engine.state.current_block += 1
        self.assertIsNot(self.board.get_leaderboard().top[0], first.top[0])

    def test_export_writes_snapshot(self) -> None:
        self._seed()
        self.engine.state.market_packs = {"a": 2}
        self.engine.state.market_dollars = {"b": 7}
        when = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
        result = self.board.export_to(self.data_dir / "exports", when)
        self.assertEqual(result.path.name, "glyphs-export-2024-05-06T07-08-09.json")
        payload = json.loads(result.path.read_text(encoding="utf-8"))
        self.assertEqual(payload["summary"]["totalAccounts"], 3)
        self.assertEqual(payload["summary"]["totalGlyphs"], 2_490 + 1_790 + 9_999)
        self.assertEqual(payload["summary"]["totalBlockHistoryEntries"], 3)
        self.assertEqual(payload["summary"]["totalLeaderboardEntries"], 4)
        self.assertEqual(payload["summary"]["totalPacks"], 2)
        self.assertEqual(payload["metadata"]["notifyRoleId"], "42")
        self.assertEqual(payload["currentChoices"], {"d": SYMBOLS[1]})
        self.assertEqual(payload["leaderboard"][0]["user_id"], "a")
        self.assertEqual(payload["market"]["dollars"], {"b": 7})


if __name__ == "__main__":
    unittest.main()
