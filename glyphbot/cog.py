"""Discord surface for the Glyphs game: slash commands, buttons and loops."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import discord
from discord import app_commands
from discord.ext import commands, tasks

from .auction import AuctionCoordinator
from .engine import TICK_INTERVAL_SECONDS, RoundEngine
from .errors import AuctionClosedError, GlyphBotError, NotFoundError, ValidationError
from .grumble import GrumbleCoordinator
from .interactions import InteractionResponder, describe_http_error, is_unknown_message
from .leaderboard import LeaderboardAggregator
from .ledger import BalanceLedger
from .market import MIN_CLAIM_DOLLARS, PACK_COST, MarketCoordinator
from .models import AuctionResult, GrumbleOutcome, GrumbleState, RoundOutcome
from .panels import (
    AuctionPanelView,
    BalanceShareView,
    BidModal,
    GrumbleAmountView,
    GrumblePanelView,
    MarketPanelView,
    RoundPanelView,
    RunePickerView,
    build_auction_embed,
    build_grumble_embed,
    build_market_embed,
    build_pack_result_embed,
    build_round_embed,
    format_auction_result,
    format_bet_info,
    format_grumble_outcome,
    format_grumble_reopened,
    format_last_round,
    format_leaderboard,
    format_market_view,
    format_user_history,
)
from .throttle import (
    BUTTON_MAX_PER_WINDOW,
    REFRESH_MIN_INTERVAL_MS,
    SLASH_MAX_PER_WINDOW,
    InteractionGate,
    RefreshThrottle,
)
from .utils import is_admin, member_role_ids

logger = logging.getLogger("glyphbot.cog")

_ROLE_ID_PATTERN = re.compile(r"\d{17,20}")
_USER_ID_PATTERN = re.compile(r"^\d{17,19}$")
# Commands that stay usable while the game is soft-stopped.
_ALWAYS_ALLOWED = {"start", "stop", "runblocks", "export"}
AUTORUN_SHUTDOWN_DELAY = 1.0
COOLDOWN_PRUNE_SECONDS = 30.0


@dataclass
class GlyphsConfig:
    export_dir: Path
    notify_role_id: Optional[str] = None
    notify_channel_id: Optional[str] = None
    keep_alive: bool = False


def parse_role_mentions(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return _ROLE_ID_PATTERN.findall(raw)


class GlyphsCog(commands.Cog):
    """Owns the game services and routes every Discord interaction to them."""

    def __init__(
        self,
        bot: commands.Bot,
        *,
        engine: RoundEngine,
        ledger: BalanceLedger,
        grumble: GrumbleCoordinator,
        market: MarketCoordinator,
        auctions: AuctionCoordinator,
        leaderboard: LeaderboardAggregator,
        config: GlyphsConfig,
    ):
        self.bot = bot
        self.engine = engine
        self.ledger = ledger
        self.grumble = grumble
        self.market = market
        self.auctions = auctions
        self.leaderboard = leaderboard
        self.config = config
        self.panel_channel_id: Optional[int] = None
        self.panel_message_id: Optional[int] = None
        self.button_gate = InteractionGate(BUTTON_MAX_PER_WINDOW)
        self.slash_gate = InteractionGate(SLASH_MAX_PER_WINDOW)
        self.panel_refresher = RefreshThrottle(self.refresh_panel, min_interval_ms=REFRESH_MIN_INTERVAL_MS)
        self._shutdown_task: Optional[asyncio.Task] = None

        engine.round_listeners.add(self._on_round_advanced)
        engine.autorun_listeners.add(self._on_autorun_complete)
        grumble.resolved_listeners.add(self._on_grumble_resolved)
        grumble.reopened_listeners.add(self._on_grumble_reopened)
        auctions.resolved_listeners.add(self._on_auction_resolved)

    #
    # Lifecycle
    #
    async def cog_load(self) -> None:
        self.bot.add_view(RoundPanelView(self))
        self.bot.add_view(GrumblePanelView(self))
        self.bot.add_view(MarketPanelView(self))
        for auction in self.auctions.active_auctions():
            if auction.message_id:
                self.bot.add_view(AuctionPanelView(self, auction.id), message_id=int(auction.message_id))
        await self.grumble.restore_on_startup()
        self.block_ticker.start()
        self.panel_loop.start()
        self.cooldown_pruner.start()
        logger.info("Glyphs cog loaded at block %s", self.engine.state.current_block)

    async def cog_unload(self) -> None:
        self.block_ticker.cancel()
        self.panel_loop.cancel()
        self.cooldown_pruner.cancel()
        self.panel_refresher.cancel()
        self.grumble.shutdown()
        self.auctions.shutdown()
        self.engine.shutdown()

    @tasks.loop(seconds=TICK_INTERVAL_SECONDS)
    async def block_ticker(self) -> None:
        try:
            await self.engine.tick()
        except Exception:  # pylint: disable=broad-except
            logger.exception("Unexpected error during block tick")

    @block_ticker.before_loop
    async def _before_block_ticker(self) -> None:
        await self.bot.wait_until_ready()

    @tasks.loop(seconds=REFRESH_MIN_INTERVAL_MS / 1000)
    async def panel_loop(self) -> None:
        if self.panel_message_id is not None:
            self.panel_refresher.request()

    @panel_loop.before_loop
    async def _before_panel_loop(self) -> None:
        await self.bot.wait_until_ready()

    @tasks.loop(seconds=COOLDOWN_PRUNE_SECONDS)
    async def cooldown_pruner(self) -> None:
        self.button_gate.cooldowns.prune()
        self.slash_gate.cooldowns.prune()

    #
    # Channel helpers
    #
    async def _resolve_channel(self, channel_id: Optional[object]) -> Optional[discord.abc.Messageable]:
        if not channel_id:
            return None
        try:
            key = int(channel_id)
        except (TypeError, ValueError):
            return None
        channel = self.bot.get_channel(key)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(key)
            except discord.HTTPException as exc:
                logger.warning("Unable to fetch channel %s: %s", key, describe_http_error(exc))
                return None
        if not isinstance(channel, discord.abc.Messageable):
            return None
        return channel

    async def _notify(self, content: str, *, fallback_channel_id: Optional[str] = None) -> None:
        channel = await self._resolve_channel(self.config.notify_channel_id or fallback_channel_id)
        if channel is None:
            return
        try:
            await channel.send(content, allowed_mentions=discord.AllowedMentions(roles=True, users=True))
        except discord.HTTPException as exc:
            logger.warning("Failed to send notification: %s", describe_http_error(exc))

    async def _edit_message(self, channel_id: Optional[object], message_id: Optional[object], **kwargs) -> bool:
        channel = await self._resolve_channel(channel_id)
        if channel is None or not message_id or not hasattr(channel, "get_partial_message"):
            return False
        try:
            await channel.get_partial_message(int(message_id)).edit(**kwargs)
            return True
        except discord.HTTPException as exc:
            logger.warning("Failed to edit message %s: %s", message_id, describe_http_error(exc))
            if is_unknown_message(exc):
                raise
            return False

    #
    # Panels
    #
    def _round_embed(self) -> discord.Embed:
        state = self.engine.state
        return build_round_embed(
            state.current_block,
            self.engine.time_left_ms(),
            self.engine.participant_count(),
            state.last_system_choice,
            state.next_block_at,
            is_active=self.engine.is_active,
        )

    async def refresh_panel(self) -> None:
        if self.panel_channel_id is None or self.panel_message_id is None:
            return
        try:
            await self._edit_message(self.panel_channel_id, self.panel_message_id, embed=self._round_embed())
        except discord.HTTPException:
            logger.warning("Panel message no longer exists, clearing reference")
            self.panel_channel_id = None
            self.panel_message_id = None

    async def post_panel(self, channel: discord.abc.Messageable) -> discord.Message:
        message = await channel.send(embed=self._round_embed(), view=RoundPanelView(self))
        self.panel_channel_id = message.channel.id
        self.panel_message_id = message.id
        return message

    def _grumble_embed(self, state: Optional[GrumbleState] = None) -> discord.Embed:
        return build_grumble_embed(state or self.grumble.get_state(), self.grumble.time_left_ms())

    async def refresh_grumble_panel(self, state: Optional[GrumbleState] = None) -> None:
        state = state or self.grumble.get_state()
        if state is None or not state.message_id:
            return
        try:
            await self._edit_message(state.channel_id, state.message_id, embed=self._grumble_embed(state))
        except discord.HTTPException:
            logger.warning("Grumble panel message %s is gone", state.message_id)

    async def _post_grumble_panel(self, channel: discord.abc.Messageable) -> None:
        message = await channel.send(embed=self._grumble_embed(), view=GrumblePanelView(self))
        await self.grumble.attach_message(str(message.id), str(message.channel.id))

    #
    # Listeners from the game core
    #
    async def _on_round_advanced(self, outcome: RoundOutcome) -> None:
        self.panel_refresher.request()
        if self.config.notify_channel_id and self.config.notify_role_id:
            await self._notify(
                f"<@&{self.config.notify_role_id}> Block {outcome.new_block} started. "
                f"Bot picked: {outcome.system_choice}"
            )

    async def _on_autorun_complete(self, outcome: RoundOutcome) -> None:
        if self.config.notify_channel_id and self.config.notify_role_id:
            await self._notify(f"<@&{self.config.notify_role_id}> Block is over. Shutting down...")
        if self.config.keep_alive:
            logger.info("Autorun complete; KEEP_ALIVE set, staying online")
            return
        await asyncio.sleep(AUTORUN_SHUTDOWN_DELAY)
        logger.info("Autorun complete after block %s; closing bot", outcome.resolved_block)
        # Unloading the cog cancels listener tasks, so close from a task of its own.
        self._shutdown_task = asyncio.get_running_loop().create_task(self.bot.close())

    async def _on_grumble_resolved(self, outcome: GrumbleOutcome) -> None:
        await self._notify(
            format_grumble_outcome(outcome, self.config.notify_role_id),
            fallback_channel_id=outcome.channel_id,
        )
        if outcome.message_id:
            try:
                await self._edit_message(
                    outcome.channel_id,
                    outcome.message_id,
                    embed=build_grumble_embed(None, 0),
                    view=None,
                )
            except discord.HTTPException:
                logger.debug("Grumble panel %s already removed", outcome.message_id)

    async def _on_grumble_reopened(self, state: GrumbleState) -> None:
        await self._notify(format_grumble_reopened(self.config.notify_role_id), fallback_channel_id=state.channel_id)
        await self.refresh_grumble_panel(state)

    async def _on_auction_resolved(self, result: AuctionResult) -> None:
        auction = result.auction
        if auction.message_id:
            embed = build_auction_embed(auction, self.auctions.ranking(auction.id), self.engine.now())
            try:
                await self._edit_message(auction.channel_id, auction.message_id, embed=embed, view=None)
            except discord.HTTPException:
                logger.debug("Auction message %s already removed", auction.message_id)
        channel = await self._resolve_channel(auction.channel_id)
        if channel is None:
            return
        try:
            await channel.send(
                format_auction_result(result),
                allowed_mentions=discord.AllowedMentions(roles=True, users=True),
            )
        except discord.HTTPException as exc:
            logger.warning("Failed to announce auction %s: %s", auction.id, describe_http_error(exc))

    @commands.Cog.listener()
    async def on_member_remove(self, member: discord.Member) -> None:
        try:
            reopened = await self.grumble.handle_member_departure(str(member.id))
        except GlyphBotError as exc:
            logger.warning("Grumble departure check failed for %s: %s", member.id, exc)
            return
        if reopened:
            logger.info("Grumble leader %s (%s) left the server", member, member.id)

    #
    # Gates and error reporting
    #
    async def gate_component(self, interaction: discord.Interaction) -> bool:
        rejection = self.button_gate.check(str(interaction.user.id))
        if rejection is None:
            return True
        await InteractionResponder(interaction).reply(rejection)
        return False

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        responder = InteractionResponder(interaction)
        rejection = self.slash_gate.check(str(interaction.user.id))
        if rejection is not None:
            await responder.reply(rejection)
            return False
        command_name = interaction.command.name if interaction.command else ""
        if not self.engine.is_active and command_name not in _ALWAYS_ALLOWED:
            await responder.reply("Bot is currently stopped. Use /start to enable it again.")
            return False
        return True

    async def report_component_error(self, interaction: discord.Interaction, error: Exception) -> None:
        responder = InteractionResponder(interaction)
        if isinstance(error, GlyphBotError):
            await responder.reply(str(error))
            return
        logger.exception("Unhandled error in component for %s", interaction.user.id, exc_info=error)
        await responder.reply("Something went wrong. Please try again.")

    async def cog_app_command_error(
        self,
        interaction: discord.Interaction,
        error: app_commands.AppCommandError,
    ) -> None:
        original = getattr(error, "original", error)
        if isinstance(original, app_commands.CheckFailure):
            return
        await self.report_component_error(interaction, original)

    def _require_admin(self, interaction: discord.Interaction) -> None:
        if not is_admin(interaction.user):
            raise ValidationError("You do not have permission to use this command.")

    #
    # Round panel buttons
    #
    async def handle_mine(self, interaction: discord.Interaction) -> None:
        responder = InteractionResponder(interaction)
        if not self.engine.is_active:
            raise ValidationError("Bot is currently stopped. Use /start to enable it again.")
        selected = self.engine.state.current_choices.get(responder.user_id)
        await responder.reply("Pick your rune:", view=RunePickerView(self, self.handle_rune_pick, selected=selected))

    async def handle_rune_pick(self, interaction: discord.Interaction, symbol: str) -> None:
        responder = InteractionResponder(interaction)
        await self.engine.record_choice(responder.user_id, symbol)
        await responder.update(
            content=f"You chose {symbol}. You can change it until the block ends.",
            view=RunePickerView(self, self.handle_rune_pick, selected=symbol),
        )
        self.panel_refresher.request()

    async def handle_balance(self, interaction: discord.Interaction) -> None:
        responder = InteractionResponder(interaction)
        balance = self.engine.get_balance(responder.user_id)
        await responder.reply(f"Your balance: {balance:,} GLYPHS", view=BalanceShareView(balance))

    async def handle_check_bet(self, interaction: discord.Interaction) -> None:
        responder = InteractionResponder(interaction)
        await responder.reply(format_bet_info(self.engine.get_user_bet_info(responder.user_id)))

    async def handle_last_reward(self, interaction: discord.Interaction) -> None:
        responder = InteractionResponder(interaction)
        record = self.engine.get_last_round_summary()
        await responder.reply(format_last_round(record, self.engine.state.current_block))

    async def handle_reward_records(self, interaction: discord.Interaction) -> None:
        responder = InteractionResponder(interaction)
        await responder.reply(format_user_history(self.engine.get_user_history(responder.user_id)))

    async def _resolve_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        names: Dict[str, str] = {}

        async def _lookup(user_id: str) -> None:
            if not _USER_ID_PATTERN.match(user_id):
                names[user_id] = user_id
                return
            user = self.bot.get_user(int(user_id))
            if user is None:
                try:
                    user = await self.bot.fetch_user(int(user_id))
                except discord.HTTPException as exc:
                    logger.warning("Failed to fetch user %s: %s", user_id, describe_http_error(exc))
            names[user_id] = user.name if user is not None else user_id

        await asyncio.gather(*(_lookup(user_id) for user_id in set(user_ids)))
        return names

    async def handle_leaderboard(self, interaction: discord.Interaction) -> None:
        responder = InteractionResponder(interaction)
        await responder.defer()
        view = self.leaderboard.get_leaderboard(responder.user_id)
        user_ids = [entry.user_id for entry in view.top]
        if view.requester is not None:
            user_ids.append(view.requester.user_id)
        names = await self._resolve_names(user_ids)
        await responder.reply(format_leaderboard(view, names))

    #
    # Grumble buttons
    #
    async def handle_grumble_join(self, interaction: discord.Interaction) -> None:
        responder = InteractionResponder(interaction)
        if not self.grumble.is_active():
            raise NotFoundError("No active grumble.")
        bet = self.grumble.get_user_bet(responder.user_id)
        if bet is not None:
            await responder.reply(
                "**Your Current Grumble Bet:**\n\n"
                f"**Amount:** {bet.amount:,} GLYPHS\n"
                f"**Rune Guess:** {bet.guess}\n\n"
                "You cannot change your bet once placed."
            )
            return
        await responder.reply(
            "Choose your rune for the grumble:",
            view=RunePickerView(self, self.handle_grumble_rune),
        )

    async def handle_grumble_rune(self, interaction: discord.Interaction, symbol: str) -> None:
        responder = InteractionResponder(interaction)
        if not self.grumble.is_active():
            raise NotFoundError("No active grumble.")
        if self.grumble.get_user_bet(responder.user_id) is not None:
            raise ValidationError("You already joined the grumble.")
        balance = self.engine.get_balance(responder.user_id)
        await responder.update(
            content=f"You picked {symbol}. Choose your bet amount (balance {balance:,} GLYPHS):",
            view=GrumbleAmountView(self, symbol, balance),
        )

    async def handle_grumble_amount(self, interaction: discord.Interaction, symbol: str, amount: int) -> None:
        responder = InteractionResponder(interaction)
        new_balance = await self.grumble.join(responder.user_id, symbol, amount)
        await responder.update(
            content=(
                f"You joined the grumble with {amount:,} GLYPHS and guessed {symbol}. Good luck! "
                f"Your new balance: {new_balance:,} GLYPHS"
            ),
            view=None,
        )
        await self.refresh_grumble_panel()

    #
    # Market buttons
    #
    async def handle_market_view(self, interaction: discord.Interaction) -> None:
        responder = InteractionResponder(interaction)
        view = self.market.get_market_state(responder.user_id)
        await responder.reply(format_market_view(view, PACK_COST, MIN_CLAIM_DOLLARS))

    async def handle_market_buy(self, interaction: discord.Interaction) -> None:
        responder = InteractionResponder(interaction)
        packs = await self.market.buy_pack(responder.user_id)
        balance = self.engine.get_balance(responder.user_id)
        await responder.reply(
            f"You bought a pack for {PACK_COST:,} GLYPHS. Packs: {packs}. Balance: {balance:,} GLYPHS"
        )

    async def handle_market_open(self, interaction: discord.Interaction) -> None:
        responder = InteractionResponder(interaction)
        result = await self.market.open_pack(responder.user_id, member_role_ids(interaction.user))
        await responder.reply(embed=build_pack_result_embed(result))

    async def handle_market_claim(self, interaction: discord.Interaction) -> None:
        responder = InteractionResponder(interaction)
        result = await self.market.claim(responder.user_id)
        await responder.reply(
            f"Claim received for ${result.claimed}. An admin will process it shortly. "
            f"(Total claimed: ${result.total_claimed})"
        )
        if result.limit_reached:
            await self._notify(f"Claim limit reached (${result.total_claimed}). Claims are now closed.")

    #
    # Auction buttons
    #
    async def handle_auction_bid_button(self, interaction: discord.Interaction, auction_id: str) -> None:
        responder = InteractionResponder(interaction)
        auction = self.auctions.get(auction_id)
        if auction is None:
            raise NotFoundError("Auction not found.")
        if auction.ended or self.engine.now() >= auction.end_time:
            raise AuctionClosedError("Auction has ended.")
        existing = self.auctions.user_bid(auction_id, responder.user_id)
        if existing is not None:
            raise ValidationError(f"You already placed a bid of {existing:,} GLYPHS.")
        await responder.send_modal(BidModal(self, auction_id))

    async def handle_auction_bid(self, interaction: discord.Interaction, auction_id: str, raw_amount: str) -> None:
        responder = InteractionResponder(interaction)
        try:
            amount = int(raw_amount.strip().replace(",", "").replace("_", ""))
        except ValueError:
            raise ValidationError("Enter a valid number.") from None
        new_balance = await self.auctions.place_bid(auction_id, responder.user_id, amount)
        rank = self.auctions.user_rank(auction_id, responder.user_id)
        await responder.reply(
            f"Bid placed: {amount:,} GLYPHS. Current rank: #{rank}. New balance: {new_balance:,} GLYPHS"
        )
        auction = self.auctions.get(auction_id)
        if auction is not None and auction.message_id:
            embed = build_auction_embed(auction, self.auctions.ranking(auction_id), self.engine.now())
            try:
                await self._edit_message(auction.channel_id, auction.message_id, embed=embed)
            except discord.HTTPException:
                logger.debug("Auction message %s is gone", auction.message_id)

    async def handle_auction_status(self, interaction: discord.Interaction, auction_id: str) -> None:
        responder = InteractionResponder(interaction)
        bid = self.auctions.user_bid(auction_id, responder.user_id)
        if bid is None:
            await responder.reply("You have not bid on this auction.")
            return
        rank = self.auctions.user_rank(auction_id, responder.user_id)
        await responder.reply(f"Your bid: {bid:,} GLYPHS. Current rank: #{rank}.")

    #
    # Slash commands
    #
    @app_commands.command(name="post", description="Post the Glyphs game panel in this channel.")
    @app_commands.guild_only()
    async def post_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        await self.post_panel(interaction.channel)
        await InteractionResponder(interaction).reply("Panel posted.")

    @app_commands.command(name="refresh", description="Refresh the game panel, posting it if missing.")
    @app_commands.guild_only()
    async def refresh_command(self, interaction: discord.Interaction):
        responder = InteractionResponder(interaction)
        if self.panel_message_id is not None:
            await self.refresh_panel()
            await responder.reply("Mining bot UI panel has been refreshed.")
            return
        await self.post_panel(interaction.channel)
        await responder.reply("Mining bot UI panel has been posted.")

    @app_commands.command(name="start", description="Re-enable the bot after a soft stop (admin only).")
    @app_commands.guild_only()
    async def start_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        responder = InteractionResponder(interaction)
        if not self.engine.start():
            await responder.reply("Bot is already running.")
            return
        self.panel_refresher.request()
        await responder.reply("Bot has been started and is now active.")

    @app_commands.command(name="stop", description="Soft-stop the bot (admin only).")
    @app_commands.guild_only()
    async def stop_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        responder = InteractionResponder(interaction)
        if not self.engine.stop():
            await responder.reply("Bot is already stopped.")
            return
        self.panel_refresher.request()
        await responder.reply("Bot has been stopped. Use /start to enable it again.")

    @app_commands.command(name="setblock", description="Set current block number (admin only).")
    @app_commands.describe(number="Block number")
    @app_commands.guild_only()
    async def setblock_command(self, interaction: discord.Interaction, number: int):
        self._require_admin(interaction)
        await self.engine.set_current_block(number)
        self.panel_refresher.request()
        await InteractionResponder(interaction).reply(f"Block set to {number}.")

    @app_commands.command(name="setrewards", description="Set total rewards per block (admin only).")
    @app_commands.describe(amount="Amount of GLYPHS")
    @app_commands.guild_only()
    async def setrewards_command(self, interaction: discord.Interaction, amount: int):
        self._require_admin(interaction)
        await self.engine.set_total_rewards(amount)
        await InteractionResponder(interaction).reply(f"Total rewards per block set to {amount:,}.")

    @app_commands.command(name="setbasereward", description="Set base reward per block (admin only).")
    @app_commands.describe(amount="Base reward")
    @app_commands.guild_only()
    async def setbasereward_command(self, interaction: discord.Interaction, amount: int):
        self._require_admin(interaction)
        await self.engine.set_base_reward(amount)
        await InteractionResponder(interaction).reply(f"Base reward per block set to {amount:,}.")

    @app_commands.command(name="setduration", description="Set seconds per block (admin only).")
    @app_commands.describe(seconds="Seconds")
    @app_commands.guild_only()
    async def setduration_command(self, interaction: discord.Interaction, seconds: int):
        self._require_admin(interaction)
        await self.engine.set_block_duration(seconds)
        self.panel_refresher.request()
        await InteractionResponder(interaction).reply(f"Block duration set to {seconds}s.")

    @app_commands.command(name="resetbalances", description="Reset all balances to zero (admin only).")
    @app_commands.guild_only()
    async def resetbalances_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        await self.engine.reset_balances()
        self.leaderboard.invalidate()
        await InteractionResponder(interaction).reply("All balances reset.")

    @app_commands.command(name="resetrecords", description="Reset all reward records (admin only).")
    @app_commands.guild_only()
    async def resetrecords_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        await self.engine.reset_records()
        self.leaderboard.invalidate()
        await InteractionResponder(interaction).reply("All reward records reset.")

    @app_commands.command(name="resetall", description="Reset blocks, balances and records (admin only).")
    @app_commands.guild_only()
    async def resetall_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        await self.engine.reset_all()
        self.leaderboard.invalidate()
        self.panel_refresher.request()
        await InteractionResponder(interaction).reply("Everything reset: blocks, balances, and records.")

    @app_commands.command(name="runblocks", description="Run N blocks, then notify and shut down (admin only).")
    @app_commands.describe(
        blocks="Number of blocks to run",
        role="Role to ping on each block",
        channel="Channel for block notifications",
    )
    @app_commands.guild_only()
    async def runblocks_command(
        self,
        interaction: discord.Interaction,
        blocks: int,
        role: Optional[discord.Role] = None,
        channel: Optional[discord.TextChannel] = None,
    ):
        self._require_admin(interaction)
        self.engine.set_autorun(blocks)
        if role is not None:
            self.config.notify_role_id = str(role.id)
            self.leaderboard.notify_role_id = self.config.notify_role_id
        if channel is not None:
            self.config.notify_channel_id = str(channel.id)
            self.leaderboard.notify_channel_id = self.config.notify_channel_id
        role_text = role.mention if role is not None else "unchanged"
        channel_text = channel.mention if channel is not None else "unchanged or unset"
        self.panel_refresher.request()
        await InteractionResponder(interaction).reply(
            f"Autorun started for {blocks} block(s). Notifications: {role_text} in {channel_text}."
        )

    @app_commands.command(name="setglyphs", description="Set a user's GLYPHS balance (admin only).")
    @app_commands.describe(user="Target user", amount="New balance")
    @app_commands.guild_only()
    async def setglyphs_command(self, interaction: discord.Interaction, user: discord.User, amount: int):
        self._require_admin(interaction)
        new_balance = await self.engine.set_balance(str(user.id), amount)
        await InteractionResponder(interaction).reply(f"Set {user.name}'s balance to {new_balance:,} GLYPHS.")

    @app_commands.command(name="grumble", description="Start a grumble in this channel (admin only).")
    @app_commands.guild_only()
    async def grumble_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        await self.grumble.start(str(interaction.channel_id))
        await self._post_grumble_panel(interaction.channel)
        await InteractionResponder(interaction).reply("Grumble started! The grumble panel has been posted.")

    @app_commands.command(name="grumble_restart", description="Restart the grumble, keeping bets (admin only).")
    @app_commands.guild_only()
    async def grumble_restart_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        if not self.grumble.is_active():
            raise NotFoundError("No active grumble to restart.")
        await self.grumble.restart()
        await self.refresh_grumble_panel()
        await InteractionResponder(interaction).reply(
            "Grumble restarted! The grumble will now end at the next block. Participant history preserved."
        )

    @app_commands.command(name="grumblepanel", description="Repost the grumble panel (admin only).")
    @app_commands.guild_only()
    async def grumblepanel_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        if not self.grumble.is_active():
            raise NotFoundError("No active grumble to repost panel for.")
        await self._post_grumble_panel(interaction.channel)
        await InteractionResponder(interaction).reply("Grumble panel reposted successfully.")

    @app_commands.command(name="grumbletimer", description="Set a custom grumble timer; 0 disables it (admin only).")
    @app_commands.describe(seconds="Seconds until the grumble ends, or 0 to follow blocks")
    @app_commands.guild_only()
    async def grumbletimer_command(self, interaction: discord.Interaction, seconds: int):
        self._require_admin(interaction)
        await self.grumble.set_timer(seconds)
        await self.refresh_grumble_panel()
        responder = InteractionResponder(interaction)
        if seconds == 0:
            await responder.reply("Custom grumble timer disabled. Grumble will now follow block timing.")
        else:
            await responder.reply(
                f"Grumble timer set to {seconds} seconds. Grumble will end in {seconds} seconds regardless of blocks."
            )

    @app_commands.command(name="market", description="Post the pack market panel (admin only).")
    @app_commands.guild_only()
    async def market_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        await interaction.channel.send(embed=build_market_embed(), view=MarketPanelView(self))
        await InteractionResponder(interaction).reply("Market panel posted.")

    @app_commands.command(name="givepacks", description="Give packs to a user (admin only).")
    @app_commands.describe(user="Target user", count="Number of packs")
    @app_commands.guild_only()
    async def givepacks_command(self, interaction: discord.Interaction, user: discord.User, count: int):
        self._require_admin(interaction)
        packs = await self.market.give_packs(str(user.id), count)
        await InteractionResponder(interaction).reply(f"Gave {count} pack(s) to {user.name}. They now have {packs}.")

    @app_commands.command(name="claimlimit", description="Set the global dollar claim limit (admin only).")
    @app_commands.describe(limit="Total dollars that may be claimed")
    @app_commands.guild_only()
    async def claimlimit_command(self, interaction: discord.Interaction, limit: int):
        self._require_admin(interaction)
        await self.market.set_claim_limit(limit)
        await InteractionResponder(interaction).reply(f"Claim limit set to ${limit}.")

    @app_commands.command(name="claimreset", description="Reset the claimed-dollars counter (admin only).")
    @app_commands.guild_only()
    async def claimreset_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        await self.market.reset_claim_counter()
        await InteractionResponder(interaction).reply("Claim counter reset and claims re-enabled.")

    @app_commands.command(name="claimbutton", description="Enable or disable dollar claims (admin only).")
    @app_commands.describe(enabled="Whether claims are allowed")
    @app_commands.guild_only()
    async def claimbutton_command(self, interaction: discord.Interaction, enabled: bool):
        self._require_admin(interaction)
        if enabled:
            await self.market.enable_claim()
        else:
            await self.market.disable_claim()
        await InteractionResponder(interaction).reply(f"Claims {'enabled' if enabled else 'disabled'}.")

    @app_commands.command(name="auction", description="Start a sealed-bid auction in this channel (admin only).")
    @app_commands.describe(
        description="What is being auctioned",
        minutes="Minutes until the auction ends",
        winners="Number of winning bids",
        roles="Roles to ping (mentions or ids)",
    )
    @app_commands.guild_only()
    async def auction_command(
        self,
        interaction: discord.Interaction,
        description: str,
        minutes: int,
        winners: int = 1,
        roles: Optional[str] = None,
    ):
        self._require_admin(interaction)
        if minutes <= 0:
            raise ValidationError("Duration must be greater than 0 minutes.")
        role_ids = parse_role_mentions(roles)
        auction = await self.auctions.create(
            description,
            role_ids,
            self.engine.now() + minutes * 60_000,
            winners,
        )
        ping = " ".join(f"<@&{role_id}>" for role_id in role_ids) or None
        message = await interaction.channel.send(
            content=ping,
            embed=build_auction_embed(auction, [], self.engine.now()),
            view=AuctionPanelView(self, auction.id),
            allowed_mentions=discord.AllowedMentions(roles=True),
        )
        await self.auctions.attach_message(auction.id, str(message.id), str(message.channel.id))
        await InteractionResponder(interaction).reply(f"Auction `{auction.id}` started.")

    @app_commands.command(name="export", description="Export game data to a JSON file (admin only).")
    @app_commands.guild_only()
    async def export_command(self, interaction: discord.Interaction):
        self._require_admin(interaction)
        result = self.leaderboard.export_to(self.config.export_dir)
        summary = result.payload["summary"]
        await InteractionResponder(interaction).reply(
            f"Exported to `{result.path.name}`: {summary['totalAccounts']} accounts, "
            f"{summary['totalGlyphs']:,} GLYPHS, {summary['totalBlockHistoryEntries']} blocks.",
            file=discord.File(str(result.path)),
        )


async def add_glyphs_cog(bot: commands.Bot, **services) -> GlyphsCog:
    cog = GlyphsCog(bot, **services)
    await bot.add_cog(cog)
    logger.info("Glyphs game enabled")
    return cog


__all__ = ["GlyphsCog", "GlyphsConfig", "add_glyphs_cog", "parse_role_mentions"]
