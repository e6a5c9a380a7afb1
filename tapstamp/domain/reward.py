"""
Stamp and reward state machine.

Pure functions only. Callers check `is_reward_ready` and `is_cooldown_active`
before calling `next_stamp` and committing; nothing here blocks on its own.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional, Union

from tapstamp.domain.errors import (
    CooldownActive,
    InvalidGoal,
    NegativeCount,
    NoRewardAvailable,
    RewardPending,
)
from tapstamp.domain.schemas import Member

Timestamp = Union[datetime, str, None]
StampState = Literal["no-reward", "reward-pending"]


def is_reward_ready(count: int, goal: int) -> bool:
    if goal <= 0:
        raise InvalidGoal(goal)
    return count >= goal


def next_stamp(count: int, goal: int) -> int:
    """Next stamp count, capped at the goal."""
    if goal <= 0:
        raise InvalidGoal(goal)
    if count < 0:
        raise NegativeCount(count)
    return min(count + 1, goal)


def _parse_timestamp(value: Timestamp) -> Optional[datetime]:
    """Normalize a datetime or ISO-8601 string to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _now(now: Optional[datetime]) -> datetime:
    return _parse_timestamp(now) if now is not None else datetime.now(timezone.utc)


def is_cooldown_active(
    last_stamp_at: Timestamp,
    cooldown_minutes: float,
    now: Optional[datetime] = None,
) -> bool:
    """True while less than `cooldown_minutes` have passed since the last stamp."""
    last = _parse_timestamp(last_stamp_at)
    if last is None:
        return False
    return _now(now) - last < timedelta(minutes=cooldown_minutes)


def cooldown_remaining_seconds(
    last_stamp_at: Timestamp,
    cooldown_minutes: float,
    now: Optional[datetime] = None,
) -> int:
    last = _parse_timestamp(last_stamp_at)
    if last is None:
        return 0
    remaining = (last + timedelta(minutes=cooldown_minutes) - _now(now)).total_seconds()
    return max(0, math.ceil(remaining))


def stamp_state(count: int, goal: int) -> StampState:
    return "reward-pending" if is_reward_ready(count, goal) else "no-reward"


@dataclass(frozen=True)
class StampOutcome:
    stamp_count: int
    reward_available: bool
    stamped_at: datetime


def apply_stamp(
    member: Member,
    goal: int,
    cooldown_minutes: float,
    now: Optional[datetime] = None,
) -> StampOutcome:
    """Compute the member state after one stamp event.

    Raises RewardPending or CooldownActive when a precondition fails. The
    member is not modified; the caller persists the outcome.
    """
    if member.reward_available or is_reward_ready(member.stamp_count, goal):
        raise RewardPending(f"Member {member.id} has a reward waiting to be claimed")

    if is_cooldown_active(member.last_stamp_at, cooldown_minutes, now):
        raise CooldownActive(
            cooldown_remaining_seconds(member.last_stamp_at, cooldown_minutes, now)
        )

    count = next_stamp(member.stamp_count, goal)
    return StampOutcome(
        stamp_count=count,
        reward_available=is_reward_ready(count, goal),
        stamped_at=_now(now),
    )


def claim_reward(member: Member) -> tuple[int, bool]:
    """Reset state after a reward claim: (stamp_count, reward_available)."""
    if not member.reward_available:
        raise NoRewardAvailable(f"Member {member.id} has no reward to claim")
    return 0, False
