import asyncio
import logging
import os
import random
import signal
from pathlib import Path
from typing import Optional

import discord
from discord.ext import commands
from dotenv import load_dotenv

from glyphbot.auction import AuctionCoordinator
from glyphbot.cog import GlyphsCog, GlyphsConfig, add_glyphs_cog
from glyphbot.engine import RoundEngine
from glyphbot.grumble import GrumbleCoordinator, RemainderPolicy
from glyphbot.health import DEFAULT_PORT, HealthServer
from glyphbot.leaderboard import LeaderboardAggregator
from glyphbot.ledger import BalanceLedger
from glyphbot.market import MarketCoordinator, load_prize_table
from glyphbot.state import StateStore
from glyphbot.utils import bool_from_env, int_from_env, parse_role_ids, path_from_env, str_from_env

load_dotenv()

logging.basicConfig(
    level=os.getenv("GLYPHBOT_LOG_LEVEL", "INFO"),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("glyphbot")
logging.getLogger("discord.gateway").setLevel(logging.WARNING)

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = path_from_env("GLYPHBOT_DATA_DIR") or BASE_DIR / "data"
EXPORT_DIR = DATA_DIR / "exports"
PRIZE_TABLE_FILE = path_from_env("GLYPHBOT_PRIZE_TABLE_FILE")

DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
GUILD_ID = int_from_env("GLYPHBOT_GUILD_ID", 0)
NOTIFY_ROLE_ID = str_from_env("DISCORD_NOTIFY_ROLE_ID")
NOTIFY_CHANNEL_ID = str_from_env("DISCORD_NOTIFY_CHANNEL_ID")
ALL_PRIZES_ROLES = parse_role_ids(os.getenv("GLYPHBOT_ROLE_ALL_PRIZES", ""))
LIMITED_DOLLARS_ROLES = parse_role_ids(os.getenv("GLYPHBOT_ROLE_LIMITED_DOLLARS", ""))
AUCTION_REFUND_LOSERS = bool_from_env("GLYPHBOT_AUCTION_REFUND_LOSERS", False)
GRUMBLE_REMAINDER = RemainderPolicy.parse(os.getenv("GLYPHBOT_GRUMBLE_REMAINDER"))
HEALTH_PORT = int_from_env("PORT", DEFAULT_PORT)
KEEP_ALIVE = bool_from_env("KEEP_ALIVE", False)

intents = discord.Intents.default()
intents.members = True


class GlyphBot(commands.Bot):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.store = StateStore(DATA_DIR)
        self.health: Optional[HealthServer] = None
        self.glyphs: Optional[GlyphsCog] = None

    async def setup_hook(self) -> None:
        self.store.load()
        rng = random.Random()
        ledger = BalanceLedger(self.store)
        engine = RoundEngine(self.store, ledger, rng=rng)
        grumble = GrumbleCoordinator(engine, ledger, remainder_policy=GRUMBLE_REMAINDER, rng=rng)
        market = MarketCoordinator(
            engine,
            ledger,
            prize_table=load_prize_table(PRIZE_TABLE_FILE),
            all_prizes_roles=ALL_PRIZES_ROLES,
            limited_dollars_roles=LIMITED_DOLLARS_ROLES,
            rng=rng,
        )
        auctions = AuctionCoordinator(engine, ledger, refund_losers=AUCTION_REFUND_LOSERS, rng=rng)
        leaderboard = LeaderboardAggregator(
            engine,
            ledger,
            notify_role_id=NOTIFY_ROLE_ID,
            notify_channel_id=NOTIFY_CHANNEL_ID,
        )
        self.glyphs = await add_glyphs_cog(
            self,
            engine=engine,
            ledger=ledger,
            grumble=grumble,
            market=market,
            auctions=auctions,
            leaderboard=leaderboard,
            config=GlyphsConfig(
                export_dir=EXPORT_DIR,
                notify_role_id=NOTIFY_ROLE_ID,
                notify_channel_id=NOTIFY_CHANNEL_ID,
                keep_alive=KEEP_ALIVE,
            ),
        )
        await self._sync_commands()
        self.health = HealthServer(lambda: engine.state.current_block, port=HEALTH_PORT)
        await self.health.start()
        self._install_signal_handlers()

    async def _sync_commands(self) -> None:
        try:
            if GUILD_ID:
                guild = discord.Object(id=GUILD_ID)
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
                logger.info("Synced application commands for guild %s", GUILD_ID)
            else:
                await self.tree.sync()
                logger.info("Synced global application commands")
        except discord.HTTPException as exc:
            logger.warning("Failed to sync application commands: %s", exc)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._request_close, signum)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable for %s", signum)

    def _request_close(self, signum: int) -> None:
        logger.info("Received signal %s; shutting down", signum)
        if not self.is_closed():
            asyncio.get_running_loop().create_task(self.close())

    async def close(self) -> None:
        if self.glyphs is not None:
            await self.remove_cog(self.glyphs.qualified_name)
            self.glyphs = None
        self.store.close()
        if self.health is not None:
            await self.health.stop()
            self.health = None
        await super().close()


bot = GlyphBot(command_prefix=os.getenv("GLYPHBOT_PREFIX", "!"), intents=intents)


@bot.event
async def on_ready():
    logger.info("Logged in as %s (%s)", bot.user, getattr(bot.user, "id", None))


def main():
    if not DISCORD_TOKEN:
        raise RuntimeError("Missing DISCORD_TOKEN. Set it in your environment or .env file.")
    bot.run(DISCORD_TOKEN)


if __name__ == "__main__":
    main()
