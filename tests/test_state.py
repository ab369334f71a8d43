import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from glyphbot.errors import PersistenceError
from glyphbot.models import BlockRecord, GrumbleBet, GrumbleState, MemberResult
from glyphbot.state import (
    STATE_SCHEMA_VERSION,
    StateStore,
    WriteCoalescer,
    deserialize_round_state,
    merge_state_defaults,
    serialize_round_state,
)


class MergeDefaultsTests(unittest.TestCase):
    def test_missing_fields_are_filled(self) -> None:
        merged = merge_state_defaults({"currentBlock": 5}, now=1_000)
        self.assertEqual(merged["currentBlock"], 5)
        self.assertEqual(merged["baseReward"], 1_000_000)
        self.assertEqual(merged["blockDurationSec"], 30)
        self.assertEqual(merged["nextBlockAt"], 31_000)
        self.assertEqual(merged["claimLimit"], 80)
        self.assertEqual(merged["auctions"], {})
        self.assertEqual(merged["schemaVersion"], STATE_SCHEMA_VERSION)

    def test_mistyped_fields_fall_back(self) -> None:
        merged = merge_state_defaults({"currentBlock": "seven", "claimLimit": True, "blockHistory": {}})
        self.assertEqual(merged["currentBlock"], 1)
        self.assertEqual(merged["claimLimit"], 80)
        self.assertEqual(merged["blockHistory"], [])

    def test_deserialize_clamps_block_and_duration(self) -> None:
        state = deserialize_round_state({"currentBlock": 0, "blockDurationSec": 0}, now=0)
        self.assertEqual(state.current_block, 1)
        self.assertEqual(state.block_duration_sec, 30)

    def test_malformed_history_entries_are_skipped(self) -> None:
        payload = {
            "blockHistory": [
                {"blockNumber": 1, "botChoice": "ᚹ", "timestamp": 5, "memberResults": []},
                {"botChoice": "ᚹ"},
            ]
        }
        state = deserialize_round_state(payload, now=0)
        self.assertEqual(len(state.block_history), 1)
        self.assertEqual(state.block_history[0].block_number, 1)

    def test_serialized_state_survives_reload(self) -> None:
        state = deserialize_round_state({}, now=0)
        state.current_block = 4
        state.block_history.append(
            BlockRecord(3, "ᚹ", 123, (MemberResult("u1", "ᚾ", 800_000, 1),))
        )
        state.grumble_state = GrumbleState(prize_pool=10, bets={"u1": GrumbleBet(10, "ᚦ")}, block_number=4)
        reloaded = deserialize_round_state(json.loads(json.dumps(serialize_round_state(state))), now=0)
        self.assertEqual(reloaded.current_block, 4)
        self.assertEqual(reloaded.block_history, state.block_history)
        self.assertEqual(reloaded.grumble_state.bets["u1"].guess, "ᚦ")
        self.assertIsNone(reloaded.grumble_state.custom_timer_sec)


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_fresh_directory_loads_defaults(self) -> None:
        store = StateStore(self.data_dir)
        store.load()
        self.assertEqual(store.state.current_block, 1)
        self.assertEqual(store.balances, {})

    def test_written_documents_reload(self) -> None:
        store = StateStore(self.data_dir)
        store.load()
        store.state.current_block = 7
        store.balances["u1"] = 1234
        store.write_state()
        store.write_balances()

        reloaded = StateStore(self.data_dir)
        reloaded.load()
        self.assertEqual(reloaded.state.current_block, 7)
        self.assertEqual(reloaded.balances, {"u1": 1234})

    def test_malformed_documents_fall_back(self) -> None:
        (self.data_dir / "state.json").write_text("{not json", encoding="utf-8")
        (self.data_dir / "balances.json").write_text("[1, 2]", encoding="utf-8")
        store = StateStore(self.data_dir)
        store.load()
        self.assertEqual(store.state.current_block, 1)
        self.assertEqual(store.balances, {})

    def test_negative_and_bad_balances_are_sanitized(self) -> None:
        (self.data_dir / "balances.json").write_text(
            json.dumps({"a": -5, "b": "oops", "c": 10}), encoding="utf-8"
        )
        store = StateStore(self.data_dir)
        store.load()
        self.assertEqual(store.balances, {"a": 0, "c": 10})

    def test_schedule_without_loop_writes_through(self) -> None:
        store = StateStore(self.data_dir)
        store.load()
        store.balances["u1"] = 5
        store.schedule_balances_write()
        saved = json.loads((self.data_dir / "balances.json").read_text(encoding="utf-8"))
        self.assertEqual(saved, {"u1": 5})


class WriteCoalescerTests(unittest.IsolatedAsyncioTestCase):
    async def test_burst_collapses_into_one_write(self) -> None:
        calls = []
        coalescer = WriteCoalescer("test", lambda: calls.append(1), delay=0.01)
        for _ in range(5):
            coalescer.schedule()
        self.assertTrue(coalescer.pending)
        await asyncio.sleep(0.05)
        self.assertEqual(len(calls), 1)
        self.assertEqual(coalescer.write_count, 1)

    async def test_failed_write_is_swallowed(self) -> None:
        def failing() -> None:
            raise PersistenceError("disk full")

        coalescer = WriteCoalescer("test", failing, delay=0.01)
        coalescer.schedule()
        await asyncio.sleep(0.05)
        self.assertEqual(coalescer.write_count, 0)
        self.assertFalse(coalescer.flush())

    async def test_close_flushes_pending_write(self) -> None:
        calls = []
        coalescer = WriteCoalescer("test", lambda: calls.append(1), delay=10)
        coalescer.schedule()
        self.assertTrue(coalescer.close())
        self.assertEqual(len(calls), 1)
        self.assertFalse(coalescer.pending)


class CommitStateTests(unittest.IsolatedAsyncioTestCase):
    async def test_commit_writes_state_document(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = StateStore(Path(tmp))
            store.load()
            store.state.current_block = 12
            self.assertTrue(await store.commit_state())
            saved = json.loads((Path(tmp) / "state.json").read_text(encoding="utf-8"))
            self.assertEqual(saved["currentBlock"], 12)
            store.close()


if __name__ == "__main__":
    unittest.main()
