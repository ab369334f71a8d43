"""Embeds, text blocks and discord.ui views for the game panels."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

import discord

from .models import (
    AuctionResult,
    AuctionState,
    BetInfo,
    BlockRecord,
    GrumbleOutcome,
    GrumbleState,
    LeaderboardUserStats,
    LeaderboardView,
    MarketView,
    PackOpenResult,
    UserHistory,
)
from .rewards import SYMBOLS, format_duration

if TYPE_CHECKING:
    from .cog import GlyphsCog

PANEL_COLOR = 0x6C63FF
GRUMBLE_COLOR = 0xE67E22
MARKET_COLOR = 0x2ECC71
AUCTION_COLOR = 0xF1C40F

PANEL_REWARD_TEXT = "1,000,000 GLYPHS"
RUNES_PER_ROW = 5
GRUMBLE_AMOUNTS: Tuple[int, ...] = (1_000, 10_000, 50_000, 100_000, 500_000)
SHARE_HANDLE = "@glyphsrunes"
HISTORY_LINES = 15


def _timestamp(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


# Round panel ---------------------------------------------------------

def build_round_embed(
    current_block: int,
    time_left_ms: int,
    miners: int,
    last_system_choice: Optional[str],
    next_block_at: int,
    *,
    is_active: bool = True,
) -> discord.Embed:
    embed = discord.Embed(title=f"Block {current_block}", color=PANEL_COLOR)
    embed.add_field(name="Total Reward", value=PANEL_REWARD_TEXT, inline=False)
    embed.add_field(name="Next Block In", value=format_duration(time_left_ms), inline=False)
    embed.add_field(name="Miners", value=str(miners), inline=False)
    embed.add_field(
        name="Last Bot Choice",
        value=f"Bot picked: {last_system_choice}" if last_system_choice else "No previous choice",
        inline=False,
    )
    footer = _timestamp(next_block_at) if next_block_at else "Waiting for first block"
    if not is_active:
        footer = f"Paused. {footer}"
    embed.set_footer(text=footer)
    return embed


def format_last_round(record: Optional[BlockRecord], current_block: int) -> str:
    if current_block - 1 < 1:
        return "No previous block data available yet."
    if record is None:
        return "No member data available for the last block."
    lines = [f"**Block {record.block_number} Member Results:**", ""]
    for result in record.member_results:
        lines.append(
            f"<@{result.user_id}> picked {result.choice} | distance {result.distance} | "
            f"{result.reward:,} GLYPHS"
        )
    lines.append("")
    lines.append(f"Bot picked: {record.system_choice}")
    return "\n".join(lines)


def format_user_history(history: UserHistory, limit: int = HISTORY_LINES) -> str:
    if not history.entries:
        return "You have no reward records yet."
    lines = ["**Your Reward Records:**", ""]
    for entry in list(history.entries)[:limit]:
        lines.append(
            f"Block {entry.block_number}: you {entry.choice}, bot {entry.system_choice} "
            f"(distance {entry.distance}) | {entry.reward:,} GLYPHS"
        )
    if len(history.entries) > limit:
        lines.append(f"...and {len(history.entries) - limit} older blocks")
    lines.append("")
    lines.append(f"**Total earned:** {history.total_earned:,} GLYPHS")
    return "\n".join(lines)


def format_bet_info(info: BetInfo) -> str:
    if not info.has_any:
        return "**Your Current Bets:**\n\nNo bets placed for this block."
    lines = ["**Your Current Bets:**", ""]
    lines.append(f"**Mining Bet:** {info.mining_choice or 'No bet placed'}")
    if info.grumble_bet is not None:
        lines.append(f"**Grumble Bet:** {info.grumble_bet.guess} ({info.grumble_bet.amount:,} GLYPHS)")
    else:
        lines.append("**Grumble Bet:** No bet placed")
    return "\n".join(lines)


def _leaderboard_line(rank: int, entry: LeaderboardUserStats, name: str) -> str:
    return (
        f"{rank}. **{name}** | Balance: {entry.balance:,} | "
        f"Most Picked: {entry.most_picked or '-'} | Exact Matches: {entry.exact_matches}"
    )


def format_leaderboard(view: LeaderboardView, names: Mapping[str, str]) -> str:
    if not view.top:
        return "No leaderboard data yet."
    lines = ["**Leaderboard (Top 10 by Exact Matches):**", ""]
    for rank, entry in enumerate(view.top, start=1):
        lines.append(_leaderboard_line(rank, entry, names.get(entry.user_id, entry.user_id)))
    if view.requester is not None and view.requester_rank is not None:
        name = names.get(view.requester.user_id, view.requester.user_id)
        lines.append("")
        lines.append(f"Your Rank: {_leaderboard_line(view.requester_rank, view.requester, name)}")
    return "\n".join(lines)


def share_url(balance: int) -> str:
    text = f"GLYPHS Balance = {balance:,} GLYPHS\nCome Mining in {SHARE_HANDLE}"
    return f"https://twitter.com/intent/tweet?text={quote(text)}"


# Grumble -------------------------------------------------------------

def build_grumble_embed(state: Optional[GrumbleState], time_left_ms: int) -> discord.Embed:
    embed = discord.Embed(title="Grumble", color=GRUMBLE_COLOR)
    if state is None or not state.is_active:
        embed.description = "No active grumble."
        return embed
    embed.description = (
        "Pick a rune and stake GLYPHS. The closest guess to the next bot pick takes the pool; "
        "ties split it."
    )
    embed.add_field(name="Prize Pool", value=f"{state.prize_pool:,} GLYPHS", inline=False)
    embed.add_field(name="Participants", value=str(len(state.bets)), inline=True)
    label = "Ends In" if state.uses_custom_timer else "Ends With Block"
    value = format_duration(time_left_ms) if state.uses_custom_timer else f"{state.block_number} ({format_duration(time_left_ms)})"
    embed.add_field(name=label, value=value, inline=True)
    return embed


def format_grumble_outcome(outcome: GrumbleOutcome, role_id: Optional[str] = None) -> str:
    mention = f"<@&{role_id}> " if role_id else ""
    if outcome.returned:
        return f"{mention}No one joined the grumble. Prize pool is returned."
    if len(outcome.winners) == 1:
        return (
            f"{mention}<@{outcome.winners[0]}> wins the grumble and takes "
            f"{outcome.prize_per_winner:,} GLYPHS! Bot chose: {outcome.system_choice}"
        )
    mentions = ", ".join(f"<@{user_id}>" for user_id in outcome.winners)
    return (
        f"{mention}**TIE!** {mentions} all win the grumble!\n\n"
        f"Bot chose: {outcome.system_choice}\n"
        f"Prize pool: {outcome.prize_pool:,} GLYPHS\n"
        f"Each winner gets: {outcome.prize_per_winner:,} GLYPHS"
    )


def format_grumble_reopened(role_id: Optional[str] = None) -> str:
    mention = f"<@&{role_id}> " if role_id else ""
    return (
        f"{mention}**The winner has left and rug!**\n\n"
        "Starting next grumble session with increased prize pool..."
    )


# Market --------------------------------------------------------------

def build_market_embed() -> discord.Embed:
    embed = discord.Embed(title="Glyphs Market", color=MARKET_COLOR)
    embed.description = "Buy packs with GLYPHS, open them for prizes and claim your dollar balance."
    return embed


def format_market_view(view: MarketView, pack_cost: int, min_claim: int) -> str:
    lines = [
        f"**Packs:** {view.packs}",
        f"**GLYPHS:** {view.glyphs:,} (pack cost {pack_cost:,})",
        f"**Dollar balance:** ${view.dollars}",
        f"**Claimed so far:** ${view.total_claimed} / ${view.claim_limit}",
    ]
    if view.claim_disabled:
        lines.append("Claims are closed.")
    elif not view.can_claim:
        lines.append(f"You can claim once you reach ${min_claim}.")
    return "\n".join(lines)


def build_pack_result_embed(result: PackOpenResult) -> discord.Embed:
    embed = discord.Embed(title=f"You won {result.prize.label}!", color=MARKET_COLOR)
    if result.prize.image_url:
        embed.set_image(url=result.prize.image_url)
    if result.glyph_balance is not None:
        embed.add_field(name="GLYPHS Balance", value=f"{result.glyph_balance:,}", inline=True)
    if result.dollar_balance is not None:
        embed.add_field(name="Dollar Balance", value=f"${result.dollar_balance}", inline=True)
        if result.dollars_capped:
            embed.add_field(
                name="Capped",
                value=f"Only ${result.dollars_added} was added; your dollar balance is full.",
                inline=False,
            )
    embed.set_footer(text=f"Packs remaining: {result.packs_remaining}")
    return embed


# Auctions ------------------------------------------------------------

def build_auction_embed(auction: AuctionState, ranking: Sequence[Tuple[str, int]], now: int) -> discord.Embed:
    embed = discord.Embed(title="Auction", description=auction.description, color=AUCTION_COLOR)
    embed.add_field(name="Winners", value=str(auction.number_of_winners), inline=True)
    embed.add_field(name="Bids", value=str(len(auction.bids)), inline=True)
    if auction.ended:
        embed.add_field(name="Status", value="Ended", inline=True)
    else:
        embed.add_field(name="Ends In", value=format_duration(auction.end_time - now), inline=True)
    embed.set_footer(text=f"Ends {_timestamp(auction.end_time)} | {auction.id}")
    return embed


def format_auction_result(result: AuctionResult) -> str:
    roles = " ".join(f"<@&{role_id}>" for role_id in result.auction.roles_to_tag)
    header = f"{roles} " if roles else ""
    if not result.winners:
        return f"{header}Auction ended with no bids: {result.auction.description}"
    lines = [f"{header}**Auction ended:** {result.auction.description}", ""]
    for rank, (user_id, bid) in enumerate(result.winners, start=1):
        lines.append(f"{rank}. <@{user_id}> with {bid:,} GLYPHS")
    if result.refunded:
        lines.append("")
        lines.append(f"Refunded {result.refunded:,} GLYPHS to other bidders.")
    return "\n".join(lines)


# Views ---------------------------------------------------------------

class _GatedView(discord.ui.View):
    """Routes every component through the cog's rate limiter first."""

    def __init__(self, cog: "GlyphsCog", *, timeout: Optional[float] = None):
        super().__init__(timeout=timeout)
        self.cog = cog

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        return await self.cog.gate_component(interaction)

    async def on_error(self, interaction: discord.Interaction, error: Exception, item: discord.ui.Item) -> None:
        await self.cog.report_component_error(interaction, error)


class RoundPanelView(_GatedView):
    def __init__(self, cog: "GlyphsCog"):
        super().__init__(cog, timeout=None)

    @discord.ui.button(label="Mine", style=discord.ButtonStyle.primary, custom_id="glyphs:mine")
    async def mine(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_mine(interaction)

    @discord.ui.button(label="Balance", style=discord.ButtonStyle.secondary, custom_id="glyphs:balance")
    async def balance(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_balance(interaction)

    @discord.ui.button(label="Last Block Reward", style=discord.ButtonStyle.secondary, custom_id="glyphs:lastreward")
    async def last_reward(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_last_reward(interaction)

    @discord.ui.button(label="Reward Records", style=discord.ButtonStyle.secondary, custom_id="glyphs:rewardrecords")
    async def reward_records(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_reward_records(interaction)

    @discord.ui.button(label="Leaderboard", style=discord.ButtonStyle.secondary, custom_id="glyphs:leaderboard")
    async def leaderboard(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_leaderboard(interaction)

    @discord.ui.button(label="Check Bet", style=discord.ButtonStyle.secondary, custom_id="glyphs:checkbet", row=1)
    async def check_bet(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_check_bet(interaction)


class _RuneButton(discord.ui.Button):
    def __init__(self, symbol: str, *, selected: bool, row: int, on_pick):
        super().__init__(
            label=symbol,
            style=discord.ButtonStyle.success if selected else discord.ButtonStyle.secondary,
            row=row,
        )
        self.symbol = symbol
        self._on_pick = on_pick

    async def callback(self, interaction: discord.Interaction):
        await self._on_pick(interaction, self.symbol)


class RunePickerView(_GatedView):
    """Ephemeral grid of every rune; the current pick is highlighted."""

    def __init__(self, cog: "GlyphsCog", on_pick, *, selected: Optional[str] = None, timeout: float = 300):
        super().__init__(cog, timeout=timeout)
        for index, symbol in enumerate(SYMBOLS):
            self.add_item(
                _RuneButton(symbol, selected=symbol == selected, row=index // RUNES_PER_ROW, on_pick=on_pick)
            )


class BalanceShareView(discord.ui.View):
    def __init__(self, balance: int):
        super().__init__(timeout=None)
        self.add_item(discord.ui.Button(label="Share on X", style=discord.ButtonStyle.link, url=share_url(balance)))


class GrumblePanelView(_GatedView):
    def __init__(self, cog: "GlyphsCog"):
        super().__init__(cog, timeout=None)

    @discord.ui.button(label="Join Grumble", style=discord.ButtonStyle.primary, custom_id="glyphs:grumble_join")
    async def join(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_grumble_join(interaction)

    @discord.ui.button(label="Check Bet", style=discord.ButtonStyle.secondary, custom_id="glyphs:grumble_checkbet")
    async def check_bet(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_check_bet(interaction)


class _AmountButton(discord.ui.Button):
    def __init__(self, amount: int, *, disabled: bool, on_pick):
        super().__init__(label=f"{amount:,}", style=discord.ButtonStyle.primary, disabled=disabled)
        self.amount = amount
        self._on_pick = on_pick

    async def callback(self, interaction: discord.Interaction):
        await self._on_pick(interaction, self.amount)


class GrumbleAmountView(_GatedView):
    """Preset stakes for a chosen rune; stakes above the balance are disabled."""

    def __init__(self, cog: "GlyphsCog", symbol: str, balance: int, *, amounts: Iterable[int] = GRUMBLE_AMOUNTS):
        super().__init__(cog, timeout=300)
        self.symbol = symbol

        async def _pick(interaction: discord.Interaction, amount: int) -> None:
            await cog.handle_grumble_amount(interaction, self.symbol, amount)

        for amount in amounts:
            self.add_item(_AmountButton(amount, disabled=amount > balance, on_pick=_pick))


class MarketPanelView(_GatedView):
    def __init__(self, cog: "GlyphsCog"):
        super().__init__(cog, timeout=None)

    @discord.ui.button(label="Buy Pack", style=discord.ButtonStyle.primary, custom_id="glyphs:market_buy")
    async def buy(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_market_buy(interaction)

    @discord.ui.button(label="Open Pack", style=discord.ButtonStyle.success, custom_id="glyphs:market_open")
    async def open_pack(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_market_open(interaction)

    @discord.ui.button(label="Claim $", style=discord.ButtonStyle.secondary, custom_id="glyphs:market_claim")
    async def claim(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_market_claim(interaction)

    @discord.ui.button(label="My Market", style=discord.ButtonStyle.secondary, custom_id="glyphs:market_view")
    async def view(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.handle_market_view(interaction)


class BidModal(discord.ui.Modal, title="Place your bid"):
    amount = discord.ui.TextInput(label="Amount (GLYPHS)", placeholder="e.g. 250000", required=True, max_length=15)

    def __init__(self, cog: "GlyphsCog", auction_id: str):
        super().__init__()
        self.cog = cog
        self.auction_id = auction_id

    async def on_submit(self, interaction: discord.Interaction):
        await self.cog.handle_auction_bid(interaction, self.auction_id, str(self.amount.value))

    async def on_error(self, interaction: discord.Interaction, error: Exception) -> None:
        await self.cog.report_component_error(interaction, error)


class AuctionPanelView(_GatedView):
    def __init__(self, cog: "GlyphsCog", auction_id: str):
        super().__init__(cog, timeout=None)
        self.auction_id = auction_id
        bid = discord.ui.Button(
            label="Place Bid",
            style=discord.ButtonStyle.primary,
            custom_id=f"glyphs:auction_bid:{auction_id}",
        )
        bid.callback = self._bid
        self.add_item(bid)
        mine = discord.ui.Button(
            label="My Bid",
            style=discord.ButtonStyle.secondary,
            custom_id=f"glyphs:auction_mine:{auction_id}",
        )
        mine.callback = self._mine
        self.add_item(mine)

    async def _bid(self, interaction: discord.Interaction) -> None:
        await self.cog.handle_auction_bid_button(interaction, self.auction_id)

    async def _mine(self, interaction: discord.Interaction) -> None:
        await self.cog.handle_auction_status(interaction, self.auction_id)


__all__ = [
    "AuctionPanelView",
    "BalanceShareView",
    "BidModal",
    "GRUMBLE_AMOUNTS",
    "GrumbleAmountView",
    "GrumblePanelView",
    "MarketPanelView",
    "RoundPanelView",
    "RunePickerView",
    "build_auction_embed",
    "build_grumble_embed",
    "build_market_embed",
    "build_pack_result_embed",
    "build_round_embed",
    "format_auction_result",
    "format_bet_info",
    "format_grumble_outcome",
    "format_grumble_reopened",
    "format_last_round",
    "format_leaderboard",
    "format_market_view",
    "format_user_history",
    "share_url",
]
