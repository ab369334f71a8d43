import random
import tempfile
import unittest
from pathlib import Path

from glyphbot.engine import RoundEngine
from glyphbot.errors import InsufficientFundsError, NotFoundError, ValidationError
from glyphbot.ledger import BalanceLedger
from glyphbot.market import (
    DEFAULT_PRIZE_TABLE,
    MAX_DOLLAR_BALANCE,
    PACK_COST,
    MarketCoordinator,
    load_prize_table,
)
from glyphbot.models import PackPrizeDefinition
from glyphbot.state import StateStore

GLYPH_PRIZE = PackPrizeDefinition("g100", "100 GLYPHS", "glyphs", 100, 1)
SMALL_DOLLAR = PackPrizeDefinition("d1", "$1", "dollar", 1, 1)
BIG_DOLLAR = PackPrizeDefinition("d3", "$3", "dollar", 3, 1)


class MarketCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = StateStore(Path(self._tmp.name), write_delay=0.01)
        self.store.load()
        self.ledger = BalanceLedger(self.store)
        self.engine = RoundEngine(self.store, self.ledger, rng=random.Random(1))
        self.market = self._market([GLYPH_PRIZE])

    def _market(self, table, **kwargs) -> MarketCoordinator:
        return MarketCoordinator(self.engine, self.ledger, prize_table=table, rng=random.Random(3), **kwargs)

    async def asyncTearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    async def test_buy_pack_spends_glyphs(self) -> None:
        self.ledger.set_balance("u1", PACK_COST + 20)
        self.assertEqual(await self.market.buy_pack("u1"), 1)
        self.assertEqual(self.ledger.get_balance("u1"), 20)
        with self.assertRaises(InsufficientFundsError):
            await self.market.buy_pack("u1")
        self.assertEqual(self.market.get_pack_count("u1"), 1)

    async def test_open_pack_needs_a_pack(self) -> None:
        with self.assertRaises(NotFoundError):
            await self.market.open_pack("u1", [])

    async def test_open_glyph_pack_credits_balance(self) -> None:
        await self.market.give_packs("u1", 2)
        result = await self.market.open_pack("u1", [])
        self.assertEqual(result.prize, GLYPH_PRIZE)
        self.assertEqual(result.glyph_balance, 100)
        self.assertEqual(result.packs_remaining, 1)
        self.assertIsNone(result.dollar_balance)

    async def test_open_dollar_pack_respects_cap(self) -> None:
        market = self._market([BIG_DOLLAR])
        market.add_dollars("u1", MAX_DOLLAR_BALANCE - 1)
        await market.give_packs("u1", 1)
        result = await market.open_pack("u1", [])
        self.assertEqual(result.dollars_added, 1)
        self.assertEqual(result.dollar_balance, MAX_DOLLAR_BALANCE)
        self.assertTrue(result.dollars_capped)
        self.assertEqual(result.packs_remaining, 0)

    async def test_dollar_balance_caps_at_twenty(self) -> None:
        first = self.market.add_dollars("u1", 10)
        self.assertEqual((first.added, first.new_balance, first.capped), (10, 10, False))
        second = self.market.add_dollars("u1", 15)
        self.assertEqual((second.added, second.new_balance, second.capped), (10, 20, True))
        self.assertEqual(self.market.get_dollar_balance("u1"), 20)

    async def test_role_eligibility(self) -> None:
        market = self._market(
            [GLYPH_PRIZE, SMALL_DOLLAR, BIG_DOLLAR],
            all_prizes_roles={"vip"},
            limited_dollars_roles={"limited"},
        )
        self.assertEqual(len(market.get_eligible_prizes([])), 3)
        self.assertEqual(market.get_eligible_prizes(["limited"]), [GLYPH_PRIZE, SMALL_DOLLAR])
        self.assertEqual(len(market.get_eligible_prizes(["limited", "vip"])), 3)

    async def test_draw_without_eligible_prizes_fails(self) -> None:
        market = self._market([BIG_DOLLAR], limited_dollars_roles={"limited"})
        with self.assertRaises(NotFoundError):
            market.draw_prize(["limited"])

    async def test_draw_follows_weights(self) -> None:
        market = MarketCoordinator(self.engine, self.ledger, rng=random.Random(11))
        counts = {}
        for _ in range(2_000):
            prize = market.draw_prize([])
            counts[prize.id] = counts.get(prize.id, 0) + 1
        self.assertGreater(counts["glyphs_250"], counts.get("glyphs_500", 0))
        self.assertLess(counts.get("dollar_4", 0), counts["glyphs_250"])

    async def test_claim_flow(self) -> None:
        self.market.add_dollars("u1", 9)
        with self.assertRaises(ValidationError):
            await self.market.claim("u1")
        self.market.add_dollars("u1", 3)
        result = await self.market.claim("u1")
        self.assertEqual((result.claimed, result.total_claimed, result.limit_reached), (12, 12, False))
        self.assertEqual(self.market.get_dollar_balance("u1"), 0)

    async def test_claim_limit_disables_claims(self) -> None:
        await self.market.set_claim_limit(12)
        self.market.add_dollars("u1", 12)
        self.market.add_dollars("u2", 15)
        result = await self.market.claim("u1")
        self.assertTrue(result.limit_reached)
        self.assertTrue(self.engine.state.claim_button_disabled)
        with self.assertRaises(ValidationError):
            await self.market.claim("u2")
        self.assertEqual(self.market.get_dollar_balance("u2"), 15)

        await self.market.reset_claim_counter()
        self.assertFalse(self.market.is_claim_limit_reached())
        self.assertEqual((await self.market.claim("u2")).claimed, 15)

    async def test_manual_claim_toggle(self) -> None:
        self.market.add_dollars("u1", 10)
        await self.market.disable_claim()
        with self.assertRaises(ValidationError):
            await self.market.claim("u1")
        self.assertFalse(self.market.get_market_state("u1").can_claim)
        await self.market.enable_claim()
        view = self.market.get_market_state("u1")
        self.assertTrue(view.can_claim)
        self.assertEqual(view.dollars, 10)

    async def test_give_packs_validates(self) -> None:
        with self.assertRaises(ValidationError):
            await self.market.give_packs("u1", 0)
        self.assertEqual(await self.market.give_packs("u1", 3), 3)
        with self.assertRaises(ValidationError):
            await self.market.set_claim_limit(-1)


class PrizeTableTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "prizes.yaml"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_defaults_when_unset_or_missing(self) -> None:
        self.assertEqual(load_prize_table(None), DEFAULT_PRIZE_TABLE)
        self.assertEqual(load_prize_table(self.path), DEFAULT_PRIZE_TABLE)

    def test_yaml_table_with_invalid_entries_skipped(self) -> None:
        self.path.write_text(
            "prizes:\n"
            "  - {id: small, label: Small, type: glyphs, amount: 10, weight: 5}\n"
            "  - {id: bad, type: coupon, amount: 1, weight: 1}\n"
            "  - {id: broken}\n"
            "  - {id: buck, type: dollar, amount: 1, weight: 2, image_url: 'http://x/y.png'}\n",
            encoding="utf-8",
        )
        table = load_prize_table(self.path)
        self.assertEqual([prize.id for prize in table], ["small", "buck"])
        self.assertEqual(table[1].image_url, "http://x/y.png")

    def test_empty_yaml_falls_back(self) -> None:
        self.path.write_text("prizes: []\n", encoding="utf-8")
        self.assertEqual(load_prize_table(self.path), DEFAULT_PRIZE_TABLE)


if __name__ == "__main__":
    unittest.main()
