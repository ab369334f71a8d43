"""Reply helpers that tolerate expired or already-answered interactions."""

from __future__ import annotations

import logging
from typing import Optional

import discord

logger = logging.getLogger("glyphbot.interactions")

_UNKNOWN_INTERACTION = 10062
_MISSING_ACCESS = 50001
_MISSING_PERMISSIONS = 50013
_UNKNOWN_MESSAGE = 10008


def describe_http_error(exc: discord.HTTPException) -> str:
    code = getattr(exc, "code", None)
    if code == _MISSING_PERMISSIONS:
        return "missing permissions"
    if code == _MISSING_ACCESS:
        return "missing access"
    if code == _UNKNOWN_INTERACTION:
        return "unknown interaction (likely expired)"
    if code == _UNKNOWN_MESSAGE:
        return "unknown message"
    return f"discord error {code}"


def is_unknown_message(exc: discord.HTTPException) -> bool:
    return isinstance(exc, discord.NotFound) or getattr(exc, "code", None) == _UNKNOWN_MESSAGE


class InteractionResponder:
    """Wraps a ``discord.Interaction`` with reply/update calls that never raise.

    Replies default to ephemeral. The first call answers the interaction;
    later calls go through the followup webhook.
    """

    def __init__(self, interaction: discord.Interaction, *, default_ephemeral: bool = True):
        self.interaction = interaction
        self.default_ephemeral = default_ephemeral
        self.user_id = str(interaction.user.id)

    @property
    def responded(self) -> bool:
        return self.interaction.response.is_done()

    async def reply(self, content: Optional[str] = None, **kwargs) -> bool:
        ephemeral = kwargs.pop("ephemeral", self.default_ephemeral)
        try:
            if not self.interaction.response.is_done():
                await self.interaction.response.send_message(content, ephemeral=ephemeral, **kwargs)
            else:
                await self.interaction.followup.send(content, ephemeral=ephemeral, **kwargs)
            return True
        except discord.HTTPException as exc:
            logger.warning(
                "Failed to reply to interaction %s: %s (%s)",
                self.interaction.id,
                describe_http_error(exc),
                exc,
            )
            return False

    async def update(self, content: Optional[str] = None, **kwargs) -> bool:
        """Edit the message the component belongs to."""
        if self.interaction.response.is_done():
            logger.warning("Attempted to update already handled interaction %s", self.interaction.id)
            return False
        try:
            await self.interaction.response.edit_message(content=content, **kwargs)
            return True
        except discord.HTTPException as exc:
            logger.warning(
                "Failed to update interaction %s: %s (%s)",
                self.interaction.id,
                describe_http_error(exc),
                exc,
            )
            return False

    async def send_modal(self, modal: discord.ui.Modal) -> bool:
        try:
            await self.interaction.response.send_modal(modal)
            return True
        except discord.HTTPException as exc:
            logger.warning("Failed to open modal for %s: %s", self.interaction.id, describe_http_error(exc))
            return False

    async def defer(self, *, thinking: bool = False) -> None:
        if self.interaction.response.is_done():
            return
        try:
            await self.interaction.response.defer(ephemeral=self.default_ephemeral, thinking=thinking)
        except discord.HTTPException as exc:
            logger.debug("Defer failed for %s: %s", self.interaction.id, describe_http_error(exc))

    def __repr__(self) -> str:
        guild_id = getattr(self.interaction.guild, "id", None)
        return f"<InteractionResponder guild={guild_id} user={self.user_id}>"


__all__ = ["InteractionResponder", "describe_http_error", "is_unknown_message"]
