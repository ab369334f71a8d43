import json
import tempfile
import unittest
from pathlib import Path

from glyphbot.errors import InsufficientFundsError, ValidationError
from glyphbot.ledger import BalanceLedger
from glyphbot.state import StateStore


class BalanceLedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._tmp.name)
        self.store = StateStore(self.data_dir)
        self.store.load()
        self.ledger = BalanceLedger(self.store)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_unknown_user_has_zero_balance(self) -> None:
        self.assertEqual(self.ledger.get_balance("nobody"), 0)

    def test_credit_and_debit(self) -> None:
        self.assertEqual(self.ledger.credit("u1", 1_000), 1_000)
        self.assertEqual(self.ledger.debit("u1", 400), 600)
        self.assertEqual(self.ledger.get_balance("u1"), 600)
        saved = json.loads((self.data_dir / "balances.json").read_text(encoding="utf-8"))
        self.assertEqual(saved, {"u1": 600})

    def test_overdraw_leaves_balance_untouched(self) -> None:
        self.ledger.credit("u1", 100)
        with self.assertRaises(InsufficientFundsError) as ctx:
            self.ledger.debit("u1", 101)
        self.assertEqual(ctx.exception.requested, 101)
        self.assertEqual(ctx.exception.balance, 100)
        self.assertEqual(self.ledger.get_balance("u1"), 100)

    def test_non_positive_debit_is_rejected(self) -> None:
        self.ledger.credit("u1", 100)
        with self.assertRaises(ValidationError):
            self.ledger.debit("u1", 0)
        with self.assertRaises(ValidationError):
            self.ledger.credit("u1", -1)
        self.assertEqual(self.ledger.get_balance("u1"), 100)

    def test_set_balance_and_reset(self) -> None:
        self.assertEqual(self.ledger.set_balance("u1", 50), 50)
        self.ledger.set_balance("u2", 70)
        self.assertEqual(self.ledger.total(), 120)
        with self.assertRaises(ValidationError):
            self.ledger.set_balance("u1", -1)
        self.ledger.reset()
        self.assertEqual(self.ledger.snapshot(), {})
        saved = json.loads((self.data_dir / "balances.json").read_text(encoding="utf-8"))
        self.assertEqual(saved, {})

    def test_content_hash_tracks_changes(self) -> None:
        empty = self.ledger.content_hash()
        self.ledger.credit("u1", 1)
        changed = self.ledger.content_hash()
        self.assertNotEqual(empty, changed)
        self.ledger.debit("u1", 1)
        self.assertNotEqual(changed, self.ledger.content_hash())

    def test_snapshot_is_a_copy(self) -> None:
        self.ledger.credit("u1", 5)
        snapshot = self.ledger.snapshot()
        snapshot["u1"] = 999
        self.assertEqual(self.ledger.get_balance("u1"), 5)


if __name__ == "__main__":
    unittest.main()
