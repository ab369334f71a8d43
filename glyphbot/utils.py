"""Utility helpers for the Glyphs bot."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Iterable, Optional, Set

import discord

logger = logging.getLogger("glyphbot.utils")


def int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%s. Falling back to %s.", name, raw, default)
        return default


def bool_from_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off", ""}:
        return False
    logger.warning("Invalid boolean for %s=%s. Falling back to %s.", name, raw, default)
    return default


def path_from_env(name: str) -> Optional[Path]:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return Path(value).expanduser()


def str_from_env(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def parse_role_ids(raw: str) -> Set[str]:
    ids: Set[str] = set()
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        if not chunk.isdigit():
            logger.warning("Ignoring invalid role id %s", chunk)
            continue
        ids.add(chunk)
    return ids


def is_admin(member: discord.abc.User) -> bool:
    if isinstance(member, discord.Member):
        if member.guild_permissions.administrator:
            return True
        roles: Iterable[discord.Role] = getattr(member, "roles", [])
        return any(role.name.lower() == "admin" for role in roles)
    return False


def member_role_ids(member: discord.abc.User) -> Set[str]:
    roles: Iterable[discord.Role] = getattr(member, "roles", [])
    return {str(role.id) for role in roles}


def now_ms() -> int:
    return int(time.time() * 1000)


__all__ = [
    "bool_from_env",
    "int_from_env",
    "is_admin",
    "member_role_ids",
    "now_ms",
    "parse_role_ids",
    "path_from_env",
    "str_from_env",
]
