"""Durable JSON persistence for round state and balances."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from .errors import PersistenceError
from .models import (
    AuctionState,
    BlockRecord,
    GrumbleBet,
    GrumbleState,
    MemberResult,
    RoundState,
)
from .utils import now_ms

logger = logging.getLogger("glyphbot.state")

STATE_SCHEMA_VERSION = 2
STATE_FILENAME = "state.json"
BALANCES_FILENAME = "balances.json"
DEFAULT_WRITE_DELAY = 0.1


def default_state_payload(now: Optional[int] = None) -> Dict[str, object]:
    now = now_ms() if now is None else now
    return {
        "currentBlock": 1,
        "totalRewardsPerBlock": 700_000,
        "baseReward": 1_000_000,
        "blockDurationSec": 30,
        "nextBlockAt": now + 30 * 1000,
        "lastBotChoice": None,
        "blockHistory": [],
        "currentChoices": {},
        "grumbleState": None,
        "marketPacks": {},
        "marketDollars": {},
        "totalClaimedDollars": 0,
        "claimLimit": 80,
        "claimButtonDisabled": False,
        "auctions": {},
        "schemaVersion": STATE_SCHEMA_VERSION,
    }


def merge_state_defaults(payload: Mapping[str, object], now: Optional[int] = None) -> Dict[str, object]:
    """Fill absent or mistyped fields with their defaults and stamp the schema version."""
    defaults = default_state_payload(now)
    merged: Dict[str, object] = dict(defaults)
    for key, default in defaults.items():
        if key not in payload:
            continue
        value = payload[key]
        if default is None:
            merged[key] = value
        elif isinstance(default, bool):
            merged[key] = value if isinstance(value, bool) else default
        elif isinstance(default, int):
            merged[key] = value if isinstance(value, int) and not isinstance(value, bool) else default
        elif isinstance(default, (dict, list)):
            merged[key] = value if isinstance(value, type(default)) else default
    previous = payload.get("schemaVersion", 0)
    if previous != STATE_SCHEMA_VERSION:
        logger.info("Upgrading state document from schema %s to %s", previous, STATE_SCHEMA_VERSION)
    merged["schemaVersion"] = STATE_SCHEMA_VERSION
    return merged


def serialize_grumble(state: GrumbleState) -> Dict[str, object]:
    data: Dict[str, object] = {
        "prizePool": state.prize_pool,
        "bets": {
            user_id: {"amount": bet.amount, "guess": bet.guess}
            for user_id, bet in state.bets.items()
        },
        "messageId": state.message_id,
        "channelId": state.channel_id,
        "blockNumber": state.block_number,
        "isActive": state.is_active,
    }
    if state.custom_timer_sec is not None:
        data["customTimerSec"] = state.custom_timer_sec
    if state.custom_timer_ends_at is not None:
        data["customTimerEndsAt"] = state.custom_timer_ends_at
    return data


def deserialize_grumble(payload: Mapping[str, object]) -> GrumbleState:
    bets: Dict[str, GrumbleBet] = {}
    raw_bets = payload.get("bets") or {}
    if isinstance(raw_bets, dict):
        for user_id, entry in raw_bets.items():
            if not isinstance(entry, dict):
                continue
            bets[str(user_id)] = GrumbleBet(amount=int(entry["amount"]), guess=str(entry["guess"]))
    timer_sec = payload.get("customTimerSec")
    timer_end = payload.get("customTimerEndsAt")
    return GrumbleState(
        prize_pool=int(payload.get("prizePool", 0)),
        bets=bets,
        message_id=_optional_str(payload.get("messageId")),
        channel_id=_optional_str(payload.get("channelId")),
        block_number=int(payload.get("blockNumber", 1)),
        is_active=bool(payload.get("isActive", False)),
        custom_timer_sec=int(timer_sec) if timer_sec is not None else None,
        custom_timer_ends_at=int(timer_end) if timer_end is not None else None,
    )


def serialize_auction(auction: AuctionState) -> Dict[str, object]:
    return {
        "id": auction.id,
        "description": auction.description,
        "rolesToTag": list(auction.roles_to_tag),
        "endTime": auction.end_time,
        "numberOfWinners": auction.number_of_winners,
        "bids": dict(auction.bids),
        "messageId": auction.message_id,
        "channelId": auction.channel_id,
        "isActive": auction.is_active,
        "ended": auction.ended,
    }


def deserialize_auction(payload: Mapping[str, object]) -> AuctionState:
    bids = payload.get("bids") or {}
    return AuctionState(
        id=str(payload["id"]),
        description=str(payload.get("description", "")),
        end_time=int(payload["endTime"]),
        number_of_winners=int(payload.get("numberOfWinners", 1)),
        roles_to_tag=[str(role) for role in payload.get("rolesToTag") or []],
        bids={str(user_id): int(amount) for user_id, amount in dict(bids).items()},
        message_id=_optional_str(payload.get("messageId")),
        channel_id=_optional_str(payload.get("channelId")),
        is_active=bool(payload.get("isActive", False)),
        ended=bool(payload.get("ended", False)),
    )


def serialize_block(record: BlockRecord) -> Dict[str, object]:
    return {
        "blockNumber": record.block_number,
        "botChoice": record.system_choice,
        "timestamp": record.timestamp,
        "memberResults": [
            {
                "userId": result.user_id,
                "choice": result.choice,
                "reward": result.reward,
                "distance": result.distance,
            }
            for result in record.member_results
        ],
    }


def deserialize_block(payload: Mapping[str, object]) -> BlockRecord:
    results = tuple(
        MemberResult(
            user_id=str(entry["userId"]),
            choice=str(entry["choice"]),
            reward=int(entry["reward"]),
            distance=int(entry["distance"]),
        )
        for entry in payload.get("memberResults") or []
    )
    return BlockRecord(
        block_number=int(payload["blockNumber"]),
        system_choice=str(payload["botChoice"]),
        timestamp=int(payload.get("timestamp", 0)),
        member_results=results,
    )


def serialize_round_state(state: RoundState) -> Dict[str, object]:
    return {
        "currentBlock": state.current_block,
        "totalRewardsPerBlock": state.total_rewards_per_block,
        "baseReward": state.base_reward,
        "blockDurationSec": state.block_duration_sec,
        "nextBlockAt": state.next_block_at,
        "lastBotChoice": state.last_system_choice,
        "blockHistory": [serialize_block(record) for record in state.block_history],
        "currentChoices": dict(state.current_choices),
        "grumbleState": serialize_grumble(state.grumble_state) if state.grumble_state else None,
        "marketPacks": dict(state.market_packs),
        "marketDollars": dict(state.market_dollars),
        "totalClaimedDollars": state.total_claimed_dollars,
        "claimLimit": state.claim_limit,
        "claimButtonDisabled": state.claim_button_disabled,
        "auctions": {key: serialize_auction(auction) for key, auction in state.auctions.items()},
        "schemaVersion": state.schema_version,
    }


def deserialize_round_state(payload: Mapping[str, object], now: Optional[int] = None) -> RoundState:
    data = merge_state_defaults(payload, now)
    history = []
    for entry in data["blockHistory"]:
        try:
            history.append(deserialize_block(entry))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed block record: %s", exc)
    auctions: Dict[str, AuctionState] = {}
    for key, entry in data["auctions"].items():
        try:
            auctions[str(key)] = deserialize_auction(entry)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed auction %s: %s", key, exc)
    grumble = None
    raw_grumble = data["grumbleState"]
    if isinstance(raw_grumble, dict):
        try:
            grumble = deserialize_grumble(raw_grumble)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding malformed grumble state: %s", exc)
    return RoundState(
        current_block=max(1, data["currentBlock"]),
        total_rewards_per_block=data["totalRewardsPerBlock"],
        base_reward=data["baseReward"],
        block_duration_sec=data["blockDurationSec"] if data["blockDurationSec"] > 0 else 30,
        next_block_at=data["nextBlockAt"],
        last_system_choice=_optional_str(data["lastBotChoice"]),
        block_history=history,
        current_choices={str(k): str(v) for k, v in data["currentChoices"].items()},
        grumble_state=grumble,
        market_packs={str(k): int(v) for k, v in data["marketPacks"].items()},
        market_dollars={str(k): int(v) for k, v in data["marketDollars"].items()},
        total_claimed_dollars=data["totalClaimedDollars"],
        claim_limit=data["claimLimit"],
        claim_button_disabled=data["claimButtonDisabled"],
        auctions=auctions,
        schema_version=data["schemaVersion"],
    )


def _optional_str(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _atomic_write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class WriteCoalescer:
    """Collapses bursts of write requests into a single delayed write."""

    def __init__(self, name: str, writer: Callable[[], None], *, delay: float = DEFAULT_WRITE_DELAY):
        self.name = name
        self._writer = writer
        self.delay = delay
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.write_count = 0

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> None:
        if self._closed:
            self._write()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (scripts, synchronous tests): write through.
            self._write()
            return
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            return
        self._task = None
        self._write()

    def _write(self) -> bool:
        try:
            self._writer()
        except PersistenceError as exc:
            logger.error("Failed to write %s; will retry on next change: %s", self.name, exc)
            return False
        self.write_count += 1
        return True

    def flush(self) -> bool:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        return self._write()

    def close(self) -> bool:
        result = self.flush()
        self._closed = True
        return result


class StateStore:
    """Owns the two persisted documents and their write coalescers."""

    def __init__(self, data_dir: Path, *, write_delay: float = DEFAULT_WRITE_DELAY):
        self.data_dir = Path(data_dir)
        self.state_file = self.data_dir / STATE_FILENAME
        self.balances_file = self.data_dir / BALANCES_FILENAME
        self.state: RoundState = RoundState(next_block_at=now_ms() + 30 * 1000, schema_version=STATE_SCHEMA_VERSION)
        self.balances: Dict[str, int] = {}
        self._state_writes = WriteCoalescer("state", self.write_state, delay=write_delay)
        self._balance_writes = WriteCoalescer("balances", self.write_balances, delay=write_delay)

    def load(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.state = self._load_state()
        self.balances = self._load_balances()
        logger.info(
            "Loaded state from %s: block %s, %s history records, %s accounts",
            self.data_dir,
            self.state.current_block,
            len(self.state.block_history),
            len(self.balances),
        )

    def _load_state(self) -> RoundState:
        payload = _read_json(self.state_file)
        if not isinstance(payload, dict):
            if payload is not None:
                logger.error("State file %s must be a JSON object; using defaults.", self.state_file)
            payload = {}
        return deserialize_round_state(payload)

    def _load_balances(self) -> Dict[str, int]:
        payload = _read_json(self.balances_file)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            logger.error("Balances file %s must be a JSON object; starting empty.", self.balances_file)
            return {}
        balances: Dict[str, int] = {}
        for user_id, amount in payload.items():
            try:
                balances[str(user_id)] = max(0, int(amount))
            except (TypeError, ValueError):
                logger.warning("Skipping malformed balance for %s: %r", user_id, amount)
        return balances

    def write_state(self) -> None:
        try:
            _atomic_write_json(self.state_file, serialize_round_state(self.state))
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Unable to write {self.state_file}: {exc}") from exc

    def write_balances(self) -> None:
        try:
            _atomic_write_json(self.balances_file, self.balances)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Unable to write {self.balances_file}: {exc}") from exc

    def schedule_state_write(self) -> None:
        self._state_writes.schedule()

    def schedule_balances_write(self) -> None:
        self._balance_writes.schedule()

    def persist_state(self) -> bool:
        """Write the state document now, logging rather than raising on failure."""
        return self._state_writes.flush()

    def persist_balances(self) -> bool:
        return self._balance_writes.flush()

    async def commit_state(self) -> bool:
        """Snapshot the state on the loop and write it from a worker thread."""
        payload = serialize_round_state(self.state)
        try:
            await asyncio.to_thread(_atomic_write_json, self.state_file, payload)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to write state; will retry on next change: %s", exc)
            return False
        return True

    def flush(self) -> bool:
        state_ok = self._state_writes.flush()
        balances_ok = self._balance_writes.flush()
        return state_ok and balances_ok

    def close(self) -> None:
        self._state_writes.close()
        self._balance_writes.close()
        logger.info("State store flushed and closed.")


def _read_json(path: Path) -> Optional[object]:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse %s: %s", path, exc)
    except OSError as exc:
        logger.error("Failed to read %s: %s", path, exc)
    return None


__all__ = [
    "BALANCES_FILENAME",
    "STATE_FILENAME",
    "STATE_SCHEMA_VERSION",
    "StateStore",
    "WriteCoalescer",
    "default_state_payload",
    "deserialize_auction",
    "deserialize_block",
    "deserialize_grumble",
    "deserialize_round_state",
    "merge_state_defaults",
    "serialize_auction",
    "serialize_block",
    "serialize_grumble",
    "serialize_round_state",
]
