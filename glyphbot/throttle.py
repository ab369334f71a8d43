"""Interaction rate limiting and panel refresh throttling."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from .utils import now_ms

logger = logging.getLogger("glyphbot.throttle")

USER_COOLDOWN_MS = 750
GLOBAL_WINDOW_MS = 1000
BUTTON_MAX_PER_WINDOW = 25
SLASH_MAX_PER_WINDOW = max(10, BUTTON_MAX_PER_WINDOW // 2)
COOLDOWN_RETENTION_MS = 10 * 60 * 1000
REFRESH_MIN_INTERVAL_MS = 2000


class UserCooldown:
    """Rejects a user's second interaction inside ``cooldown_ms``."""

    def __init__(self, cooldown_ms: int = USER_COOLDOWN_MS, *, clock: Callable[[], int] = now_ms):
        self.cooldown_ms = cooldown_ms
        self._clock = clock
        self._last_seen: Dict[str, int] = {}

    def hit(self, user_id: str) -> bool:
        """Record an interaction; returns False when the user is still cooling down."""
        key = str(user_id)
        now = self._clock()
        previous = self._last_seen.get(key)
        if previous is not None and now - previous < self.cooldown_ms:
            return False
        self._last_seen[key] = now
        return True

    def prune(self, retention_ms: int = COOLDOWN_RETENTION_MS) -> int:
        cutoff = self._clock() - retention_ms
        stale = [user_id for user_id, seen in self._last_seen.items() if seen < cutoff]
        for user_id in stale:
            del self._last_seen[user_id]
        return len(stale)

    def __len__(self) -> int:
        return len(self._last_seen)


class WindowLimiter:
    """Fixed-window counter shared by every user."""

    def __init__(
        self,
        max_per_window: int,
        window_ms: int = GLOBAL_WINDOW_MS,
        *,
        clock: Callable[[], int] = now_ms,
    ):
        self.max_per_window = max_per_window
        self.window_ms = window_ms
        self._clock = clock
        self._window_start = 0
        self._count = 0

    def hit(self) -> bool:
        now = self._clock()
        if now - self._window_start > self.window_ms:
            self._window_start = now
            self._count = 0
        self._count += 1
        return self._count <= self.max_per_window


class InteractionGate:
    """Per-user cooldown plus global window, checked in that order."""

    BUSY_MESSAGE = "The bot is busy right now due to high activity. Please try again in a moment."
    COOLDOWN_MESSAGE = "You're doing that too fast. Please wait a moment."

    def __init__(self, max_per_window: int, *, clock: Callable[[], int] = now_ms):
        self.cooldowns = UserCooldown(clock=clock)
        self.window = WindowLimiter(max_per_window, clock=clock)

    def check(self, user_id: str) -> Optional[str]:
        """Return ``None`` when the interaction may proceed, else the rejection message."""
        if not self.cooldowns.hit(user_id):
            return self.COOLDOWN_MESSAGE
        if not self.window.hit():
            return self.BUSY_MESSAGE
        return None


class RefreshThrottle:
    """Runs ``refresh`` at most once per ``min_interval_ms``.

    A request inside the interval schedules one trailing refresh; further
    requests while it is pending are dropped.
    """

    def __init__(
        self,
        refresh: Callable[[], Awaitable[None]],
        *,
        min_interval_ms: int = REFRESH_MIN_INTERVAL_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self._refresh = refresh
        self.min_interval_ms = min_interval_ms
        self._clock = clock
        self._last_run = 0
        self._pending: Optional[asyncio.Task] = None
        self._running: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def request(self) -> None:
        if self.pending:
            return
        loop = asyncio.get_running_loop()
        elapsed = self._clock() - self._last_run
        if elapsed >= self.min_interval_ms:
            self._last_run = self._clock()
            self._running = loop.create_task(self._run())
            return
        delay = max(0, self.min_interval_ms - elapsed) / 1000
        self._pending = loop.create_task(self._run_later(delay))

    async def _run_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._last_run = self._clock()
        await self._run()

    async def _run(self) -> None:
        try:
            await self._refresh()
        except asyncio.CancelledError:
            raise
        except Exception:  # pylint: disable=broad-except
            logger.exception("Panel refresh failed")

    def cancel(self) -> None:
        for task in (self._pending, self._running):
            if task is not None and not task.done():
                task.cancel()
        self._pending = None
        self._running = None


__all__ = [
    "BUTTON_MAX_PER_WINDOW",
    "InteractionGate",
    "REFRESH_MIN_INTERVAL_MS",
    "RefreshThrottle",
    "SLASH_MAX_PER_WINDOW",
    "USER_COOLDOWN_MS",
    "UserCooldown",
    "WindowLimiter",
]
