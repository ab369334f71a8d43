"""Leaderboard statistics and the JSON export snapshot."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .engine import RoundEngine
from .ledger import BalanceLedger
from .models import LeaderboardUserStats, LeaderboardView
from .state import serialize_round_state

logger = logging.getLogger("glyphbot.leaderboard")

LEADERBOARD_SIZE = 10
LEADERBOARD_CACHE_TTL_MS = 30_000
EXPORT_PREFIX = "glyphs-export-"


@dataclass(frozen=True)
class ExportResult:
    path: Path
    payload: Dict[str, object]


class LeaderboardAggregator:
    def __init__(
        self,
        engine: RoundEngine,
        ledger: BalanceLedger,
        *,
        cache_ttl_ms: int = LEADERBOARD_CACHE_TTL_MS,
        notify_role_id: Optional[str] = None,
        notify_channel_id: Optional[str] = None,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.cache_ttl_ms = cache_ttl_ms
        self.notify_role_id = notify_role_id
        self.notify_channel_id = notify_channel_id
        self._cache: Optional[Tuple[Tuple[int, str], int, List[LeaderboardUserStats]]] = None

    def compute_stats(self) -> List[LeaderboardUserStats]:
        """Fold history, balances and in-flight choices into per-user stats.

        Sorted by exact matches, then balance, both descending.
        """
        balances = self.ledger.snapshot()
        stats: Dict[str, LeaderboardUserStats] = {}

        def ensure(user_id: str) -> LeaderboardUserStats:
            entry = stats.get(user_id)
            if entry is None:
                entry = LeaderboardUserStats(user_id=user_id, balance=balances.get(user_id, 0))
                stats[user_id] = entry
            return entry

        for record in self.engine.state.block_history:
            for result in record.member_results:
                entry = ensure(result.user_id)
                entry.picks[result.choice] = entry.picks.get(result.choice, 0) + 1
                if result.distance == 0:
                    entry.exact_matches += 1
                entry.total_participations += 1
                if entry.last_participation_at is None or record.timestamp > entry.last_participation_at:
                    entry.last_participation_at = record.timestamp

        for user_id in balances:
            ensure(user_id)
        for user_id in self.engine.state.current_choices:
            ensure(user_id)

        for entry in stats.values():
            top_rune, top_count = None, -1
            # first rune to reach the highest count wins ties
            for rune, count in entry.picks.items():
                if count > top_count:
                    top_rune, top_count = rune, count
            entry.most_picked = top_rune

        return sorted(stats.values(), key=lambda entry: (-entry.exact_matches, -entry.balance))

    def _cache_key(self) -> Tuple[int, str]:
        return (self.engine.state.current_block, self.ledger.content_hash())

    def _cached_stats(self) -> List[LeaderboardUserStats]:
        now = self.engine.now()
        key = self._cache_key()
        if self._cache is not None:
            cached_key, expires_at, cached = self._cache
            if cached_key == key and expires_at > now:
                return cached
        computed = self.compute_stats()
        self._cache = (key, now + self.cache_ttl_ms, computed)
        return computed

    def invalidate(self) -> None:
        self._cache = None

    def get_leaderboard(self, user_id: Optional[str] = None) -> LeaderboardView:
        ranked = self._cached_stats()
        top = ranked[:LEADERBOARD_SIZE]
        if user_id is None:
            return LeaderboardView(top=top)
        key = str(user_id)
        if any(entry.user_id == key for entry in top):
            return LeaderboardView(top=top)
        for index, entry in enumerate(ranked, start=1):
            if entry.user_id == key:
                return LeaderboardView(top=top, requester=entry, requester_rank=index)
        return LeaderboardView(top=top)

    def build_export(self, now: Optional[datetime] = None) -> Dict[str, object]:
        now = now or datetime.now(timezone.utc)
        stats = self.compute_stats()
        balances = self.ledger.snapshot()
        state_payload = serialize_round_state(self.engine.state)
        packs = dict(self.engine.state.market_packs)
        dollars = dict(self.engine.state.market_dollars)
        return {
            "generatedAt": now.isoformat(),
            "metadata": {
                "currentBlock": self.engine.state.current_block,
                "totalRewardsPerBlock": self.engine.state.total_rewards_per_block,
                "baseReward": self.engine.state.base_reward,
                "blockDurationSec": self.engine.state.block_duration_sec,
                "nextBlockAt": self.engine.state.next_block_at,
                "lastBotChoice": self.engine.state.last_system_choice,
                "autorunRemainingBlocks": self.engine.autorun_remaining,
                "notifyRoleId": self.notify_role_id,
                "notifyChannelId": self.notify_channel_id,
            },
            "summary": {
                "totalAccounts": len(balances),
                "totalGlyphs": sum(balances.values()),
                "totalBlockHistoryEntries": len(self.engine.state.block_history),
                "totalLeaderboardEntries": len(stats),
                "totalPacks": sum(packs.values()),
                "totalDollarBalance": sum(dollars.values()),
            },
            "balances": balances,
            "currentChoices": dict(self.engine.state.current_choices),
            "state": state_payload,
            "leaderboard": [asdict(entry) for entry in stats],
            "market": {"packs": packs, "dollars": dollars},
        }

    def export_to(self, directory: Path, now: Optional[datetime] = None) -> ExportResult:
        now = now or datetime.now(timezone.utc)
        payload = self.build_export(now)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{EXPORT_PREFIX}{now.strftime('%Y-%m-%dT%H-%M-%S')}.json"
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info("Exported game data to %s", path)
        return ExportResult(path=path, payload=payload)


__all__ = [
    "ExportResult",
    "LEADERBOARD_CACHE_TTL_MS",
    "LEADERBOARD_SIZE",
    "LeaderboardAggregator",
]
