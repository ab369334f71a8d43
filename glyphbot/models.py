"""Dataclasses and shared type definitions for the Glyphs bot."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple


UserId = str
SymbolRune = str


@dataclass(frozen=True)
class MemberResult:
    user_id: UserId
    choice: SymbolRune
    reward: int
    distance: int


@dataclass(frozen=True)
class BlockRecord:
    block_number: int
    system_choice: SymbolRune
    timestamp: int
    member_results: Tuple[MemberResult, ...] = field(default_factory=tuple)

    def result_for(self, user_id: UserId) -> Optional[MemberResult]:
        for result in self.member_results:
            if result.user_id == user_id:
                return result
        return None


@dataclass
class GrumbleBet:
    amount: int
    guess: SymbolRune


@dataclass
class GrumbleState:
    prize_pool: int = 0
    bets: Dict[UserId, GrumbleBet] = field(default_factory=dict)
    message_id: Optional[str] = None
    channel_id: Optional[str] = None
    block_number: int = 1                      # round after which the session may resolve
    is_active: bool = True
    custom_timer_sec: Optional[int] = None
    custom_timer_ends_at: Optional[int] = None  # epoch ms

    @property
    def uses_custom_timer(self) -> bool:
        return bool(self.custom_timer_sec) and self.custom_timer_ends_at is not None


@dataclass
class AuctionState:
    id: str
    description: str
    end_time: int                               # epoch ms
    number_of_winners: int
    roles_to_tag: List[str] = field(default_factory=list)
    bids: Dict[UserId, int] = field(default_factory=dict)
    message_id: Optional[str] = None
    channel_id: Optional[str] = None
    is_active: bool = True
    ended: bool = False


@dataclass
class RoundState:
    """Process-wide round configuration, history and side-game slices."""

    current_block: int = 1
    total_rewards_per_block: int = 700_000
    base_reward: int = 1_000_000
    block_duration_sec: int = 30
    next_block_at: int = 0                      # epoch ms
    last_system_choice: Optional[SymbolRune] = None
    block_history: List[BlockRecord] = field(default_factory=list)
    current_choices: Dict[UserId, SymbolRune] = field(default_factory=dict)
    grumble_state: Optional[GrumbleState] = None
    market_packs: Dict[UserId, int] = field(default_factory=dict)
    market_dollars: Dict[UserId, int] = field(default_factory=dict)
    total_claimed_dollars: int = 0
    claim_limit: int = 80
    claim_button_disabled: bool = False
    auctions: Dict[str, AuctionState] = field(default_factory=dict)
    schema_version: int = 0


@dataclass(frozen=True)
class PackPrizeDefinition:
    id: str
    label: str
    type: str                                   # "glyphs" or "dollar"
    amount: int
    weight: int
    image_url: str = ""


@dataclass(frozen=True)
class DollarBalanceUpdate:
    added: int
    new_balance: int
    capped: bool


@dataclass(frozen=True)
class PackOpenResult:
    prize: PackPrizeDefinition
    packs_remaining: int
    glyph_balance: Optional[int] = None
    dollar_balance: Optional[int] = None
    dollars_added: Optional[int] = None
    dollars_capped: Optional[bool] = None


@dataclass(frozen=True)
class ClaimResult:
    claimed: int
    total_claimed: int
    limit_reached: bool


@dataclass(frozen=True)
class MarketView:
    packs: int
    dollars: int
    glyphs: int
    can_claim: bool
    claim_disabled: bool
    total_claimed: int
    claim_limit: int


@dataclass(frozen=True)
class RoundOutcome:
    resolved_block: int
    new_block: int
    system_choice: SymbolRune
    record: Optional[BlockRecord]


@dataclass(frozen=True)
class GrumbleOutcome:
    system_choice: SymbolRune
    prize_pool: int
    winners: Tuple[UserId, ...]
    prize_per_winner: int
    remainder: int
    min_distance: Optional[int]
    channel_id: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def returned(self) -> bool:
        return not self.winners


@dataclass(frozen=True)
class AuctionResult:
    auction: AuctionState
    winners: Tuple[Tuple[UserId, int], ...]
    losers: Tuple[Tuple[UserId, int], ...]
    refunded: int = 0


@dataclass(frozen=True)
class UserHistoryEntry:
    block_number: int
    system_choice: SymbolRune
    choice: SymbolRune
    reward: int
    distance: int
    timestamp: int


@dataclass(frozen=True)
class UserHistory:
    entries: Sequence[UserHistoryEntry]
    total_earned: int


@dataclass(frozen=True)
class BetInfo:
    mining_choice: Optional[SymbolRune]
    grumble_bet: Optional[GrumbleBet]

    @property
    def has_any(self) -> bool:
        return self.mining_choice is not None or self.grumble_bet is not None


@dataclass
class LeaderboardUserStats:
    user_id: UserId
    balance: int = 0
    picks: Dict[SymbolRune, int] = field(default_factory=dict)
    exact_matches: int = 0
    total_participations: int = 0
    last_participation_at: Optional[int] = None
    most_picked: Optional[SymbolRune] = None


@dataclass(frozen=True)
class LeaderboardView:
    top: Sequence[LeaderboardUserStats]
    requester: Optional[LeaderboardUserStats] = None
    requester_rank: Optional[int] = None        # only set when outside the top list


__all__ = [
    "AuctionResult",
    "AuctionState",
    "BetInfo",
    "BlockRecord",
    "ClaimResult",
    "DollarBalanceUpdate",
    "GrumbleBet",
    "GrumbleOutcome",
    "GrumbleState",
    "LeaderboardUserStats",
    "LeaderboardView",
    "MarketView",
    "MemberResult",
    "PackOpenResult",
    "PackPrizeDefinition",
    "RoundOutcome",
    "RoundState",
    "SymbolRune",
    "UserHistory",
    "UserHistoryEntry",
    "UserId",
]
