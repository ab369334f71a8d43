"""Pack market: pack inventory, weighted prize draws and dollar claims."""

from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set

import yaml

from .engine import RoundEngine
from .errors import NotFoundError, ValidationError
from .ledger import BalanceLedger
from .models import ClaimResult, DollarBalanceUpdate, MarketView, PackOpenResult, PackPrizeDefinition

logger = logging.getLogger("glyphbot.market")

PACK_COST = 500
MIN_CLAIM_DOLLARS = 10
MAX_DOLLAR_BALANCE = 20
PURCHASE_IMAGE_URL = "https://i.imgur.com/avZ3tRj.jpeg"

DEFAULT_PRIZE_TABLE: Sequence[PackPrizeDefinition] = (
    PackPrizeDefinition("glyphs_250", "250 GLYPHS", "glyphs", 250, 750, "https://i.imgur.com/SwuzzoO.png"),
    PackPrizeDefinition("glyphs_500", "500 GLYPHS", "glyphs", 500, 150, "https://i.imgur.com/WK6QAsK.png"),
    PackPrizeDefinition("glyphs_750", "750 GLYPHS", "glyphs", 750, 60, "https://i.imgur.com/1oBOxsi.png"),
    PackPrizeDefinition("dollar_1", "$1", "dollar", 1, 25, "https://i.imgur.com/oyPLjoG.png"),
    PackPrizeDefinition("dollar_2", "$2", "dollar", 2, 10, "https://i.imgur.com/UHvsr15.png"),
    PackPrizeDefinition("dollar_3", "$3", "dollar", 3, 4, "https://i.imgur.com/Tgrt4ow.png"),
    PackPrizeDefinition("dollar_4", "$4", "dollar", 4, 1, "https://i.imgur.com/UOl6uz0.png"),
)

PRIZE_TYPES = ("glyphs", "dollar")


def load_prize_table(path: Optional[Path]) -> Sequence[PackPrizeDefinition]:
    """Read a prize table override from YAML, falling back to the defaults.

    The file holds a top-level ``prizes`` list whose entries carry ``id``,
    ``label``, ``type``, ``amount``, ``weight`` and optionally ``image_url``.
    """
    if path is None:
        return DEFAULT_PRIZE_TABLE
    if not path.exists():
        logger.warning("Prize table %s not found; using defaults.", path)
        return DEFAULT_PRIZE_TABLE
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to read prize table %s: %s", path, exc)
        return DEFAULT_PRIZE_TABLE
    entries = payload.get("prizes") if isinstance(payload, dict) else None
    if not isinstance(entries, list) or not entries:
        logger.warning("Prize table %s has no prizes; using defaults.", path)
        return DEFAULT_PRIZE_TABLE
    prizes: List[PackPrizeDefinition] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            prize = PackPrizeDefinition(
                id=str(entry["id"]),
                label=str(entry.get("label") or entry["id"]),
                type=str(entry["type"]).lower(),
                amount=int(entry["amount"]),
                weight=int(entry["weight"]),
                image_url=str(entry.get("image_url") or ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed prize entry %r: %s", entry, exc)
            continue
        if prize.type not in PRIZE_TYPES or prize.amount <= 0 or prize.weight <= 0:
            logger.warning("Skipping invalid prize entry %r", entry)
            continue
        prizes.append(prize)
    if not prizes:
        return DEFAULT_PRIZE_TABLE
    logger.info("Loaded %s prizes from %s", len(prizes), path)
    return tuple(prizes)


class MarketCoordinator:
    def __init__(
        self,
        engine: RoundEngine,
        ledger: BalanceLedger,
        *,
        prize_table: Optional[Sequence[PackPrizeDefinition]] = None,
        all_prizes_roles: Optional[Set[str]] = None,
        limited_dollars_roles: Optional[Set[str]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.prize_table = tuple(prize_table or DEFAULT_PRIZE_TABLE)
        self.all_prizes_roles = set(all_prizes_roles or ())
        self.limited_dollars_roles = set(limited_dollars_roles or ())
        self._rng = rng or random.Random()

    @property
    def state(self):
        return self.engine.state

    @property
    def store(self):
        return self.engine.store

    # Prize table -----------------------------------------------------

    def get_eligible_prizes(self, role_ids: Iterable[str]) -> List[PackPrizeDefinition]:
        roles = {str(role_id) for role_id in role_ids}
        allow_all_dollars = bool(roles & self.all_prizes_roles) or not (roles & self.limited_dollars_roles)
        return [
            prize
            for prize in self.prize_table
            if allow_all_dollars or prize.type != "dollar" or prize.amount <= 1
        ]

    def draw_prize(self, role_ids: Iterable[str]) -> PackPrizeDefinition:
        eligible = self.get_eligible_prizes(role_ids)
        if not eligible:
            raise NotFoundError("No eligible prizes.")
        total_weight = sum(prize.weight for prize in eligible)
        roll = self._rng.randint(1, total_weight)
        cumulative = 0
        for prize in eligible:
            cumulative += prize.weight
            if roll <= cumulative:
                return prize
        return eligible[-1]

    # Inventory -------------------------------------------------------

    def get_pack_count(self, user_id: str) -> int:
        return self.state.market_packs.get(str(user_id), 0)

    def add_packs(self, user_id: str, count: int = 1) -> int:
        key = str(user_id)
        updated = max(0, self.state.market_packs.get(key, 0) + count)
        if updated == 0:
            self.state.market_packs.pop(key, None)
        else:
            self.state.market_packs[key] = updated
        self.store.schedule_state_write()
        return updated

    def consume_pack(self, user_id: str) -> int:
        if self.get_pack_count(user_id) <= 0:
            raise NotFoundError("You don't have any packs to open.")
        return self.add_packs(user_id, -1)

    def get_dollar_balance(self, user_id: str) -> int:
        return self.state.market_dollars.get(str(user_id), 0)

    def add_dollars(self, user_id: str, amount: int) -> DollarBalanceUpdate:
        key = str(user_id)
        current = self.state.market_dollars.get(key, 0)
        room = max(0, MAX_DOLLAR_BALANCE - current)
        added = max(0, min(room, amount))
        new_balance = current + added
        if new_balance <= 0:
            self.state.market_dollars.pop(key, None)
        else:
            self.state.market_dollars[key] = new_balance
        self.store.schedule_state_write()
        return DollarBalanceUpdate(
            added=added,
            new_balance=new_balance,
            capped=added < amount or new_balance >= MAX_DOLLAR_BALANCE,
        )

    # Player actions --------------------------------------------------

    async def buy_pack(self, user_id: str) -> int:
        """Spend ``PACK_COST`` GLYPHS on one pack; returns the new pack count."""
        self.ledger.debit(user_id, PACK_COST)
        packs = self.add_packs(user_id, 1)
        await self.store.commit_state()
        logger.info("User %s bought a pack (%s owned)", user_id, packs)
        return packs

    async def open_pack(self, user_id: str, role_ids: Iterable[str]) -> PackOpenResult:
        key = str(user_id)
        prize = self.draw_prize(role_ids)
        packs_remaining = self.consume_pack(key)
        if prize.type == "glyphs":
            balance = self.ledger.credit(key, prize.amount)
            result = PackOpenResult(prize=prize, packs_remaining=packs_remaining, glyph_balance=balance)
        else:
            update = self.add_dollars(key, prize.amount)
            result = PackOpenResult(
                prize=prize,
                packs_remaining=packs_remaining,
                dollar_balance=update.new_balance,
                dollars_added=update.added,
                dollars_capped=update.capped,
            )
        await self.store.commit_state()
        logger.info("User %s opened a pack: %s", key, prize.id)
        return result

    async def claim(self, user_id: str) -> ClaimResult:
        key = str(user_id)
        if self.state.claim_button_disabled:
            raise ValidationError("Claims are currently disabled.")
        if self.is_claim_limit_reached():
            raise ValidationError("The global claim limit has been reached.")
        current = self.get_dollar_balance(key)
        if current < MIN_CLAIM_DOLLARS:
            raise ValidationError(f"You need at least ${MIN_CLAIM_DOLLARS} to claim. Your balance: ${current}")
        self.state.market_dollars.pop(key, None)
        self.state.total_claimed_dollars += current
        limit_reached = self.is_claim_limit_reached()
        if limit_reached:
            self.state.claim_button_disabled = True
        await self.store.commit_state()
        logger.info(
            "User %s claimed $%s (total claimed %s/%s)",
            key,
            current,
            self.state.total_claimed_dollars,
            self.state.claim_limit,
        )
        if limit_reached:
            logger.warning("Claim limit reached; claim button disabled")
        return ClaimResult(
            claimed=current,
            total_claimed=self.state.total_claimed_dollars,
            limit_reached=limit_reached,
        )

    # Admin -----------------------------------------------------------

    async def give_packs(self, user_id: str, count: int) -> int:
        if count <= 0:
            raise ValidationError("Pack count must be greater than 0.")
        packs = self.add_packs(user_id, count)
        await self.store.commit_state()
        return packs

    def is_claim_limit_reached(self) -> bool:
        return self.state.total_claimed_dollars >= self.state.claim_limit

    async def set_claim_limit(self, limit: int) -> None:
        if limit < 0:
            raise ValidationError("Claim limit must not be negative.")
        self.state.claim_limit = limit
        await self.store.commit_state()

    async def reset_claim_counter(self) -> None:
        self.state.total_claimed_dollars = 0
        self.state.claim_button_disabled = False
        await self.store.commit_state()
        logger.info("Claim counter reset")

    async def enable_claim(self) -> None:
        self.state.claim_button_disabled = False
        await self.store.commit_state()

    async def disable_claim(self) -> None:
        self.state.claim_button_disabled = True
        await self.store.commit_state()

    # Queries ---------------------------------------------------------

    def get_market_state(self, user_id: str) -> MarketView:
        dollars = self.get_dollar_balance(user_id)
        disabled = self.state.claim_button_disabled or self.is_claim_limit_reached()
        return MarketView(
            packs=self.get_pack_count(user_id),
            dollars=dollars,
            glyphs=self.ledger.get_balance(user_id),
            can_claim=dollars >= MIN_CLAIM_DOLLARS and not disabled,
            claim_disabled=disabled,
            total_claimed=self.state.total_claimed_dollars,
            claim_limit=self.state.claim_limit,
        )


__all__ = [
    "DEFAULT_PRIZE_TABLE",
    "MAX_DOLLAR_BALANCE",
    "MIN_CLAIM_DOLLARS",
    "MarketCoordinator",
    "PACK_COST",
    "PURCHASE_IMAGE_URL",
    "load_prize_table",
]
