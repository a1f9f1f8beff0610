"""
Tagged records for sessions, scores, users, groups and memberships.

Each record validates itself on construction and round-trips through
``to_dict()`` / ``from_dict()`` using the camelCase document layout the
store and the HTTP boundary share.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Optional

import config
from tracking.analytics import level_for_minutes, round_half_up

# Session lifecycle states
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
SESSION_STATUSES = {STATUS_ACTIVE, STATUS_COMPLETED}

# Second commit point of a stopped session (the stats rollup)
STATS_NONE = "none"  # Session not yet stopped
STATS_PENDING = "pending"  # Rollup claimed and in flight
STATS_APPLIED = "applied"
STATS_FAILED = "failed"  # Nothing rolled up, waiting for the reconciliation sweep
STATS_PARTIAL = "partial"  # User stats applied, group rollup waiting for the sweep
STATS_GROUP_PENDING = "group_pending"  # User and member contribution applied, group totals waiting
STATS_STATUSES = {STATS_NONE, STATS_PENDING, STATS_APPLIED, STATS_FAILED, STATS_PARTIAL, STATS_GROUP_PENDING}

ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialise a datetime to ISO 8601 (None passes through)."""
    return value.isoformat() if value is not None else None


def parse_iso(value: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp from storage.

    Accepts datetimes unchanged, a trailing "Z" suffix, and naive values
    (assumed UTC).

    Raises:
        ValueError: If the value is not a valid timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def clamp_score(value: Any) -> int:
    """
    Clamp a focus score into [0, 100].

    Raises:
        ValueError: If the value is not numeric.
    """
    if isinstance(value, bool):
        raise ValueError(f"Focus score must be numeric, got {value!r}")
    try:
        score = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Focus score must be numeric, got {value!r}") from e
    if score != score:  # NaN
        raise ValueError("Focus score must not be NaN")
    return min(100, max(0, round_half_up(score)))


class _Record:
    """
    Mixin giving dataclasses a camelCase document layout.

    Subclasses declare ``_KEYS`` (attribute -> document key) and
    ``_TIME_FIELDS`` (attributes holding datetimes).
    """

    _KEYS: ClassVar[Dict[str, str]] = {}
    _TIME_FIELDS: ClassVar[frozenset] = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in self._TIME_FIELDS:
                value = to_iso(value)
            data[self._KEYS.get(f.name, f.name)] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        kwargs = {}
        for f in fields(cls):
            key = cls._KEYS.get(f.name, f.name)
            if key not in data:
                continue
            value = data[key]
            if f.name in cls._TIME_FIELDS:
                value = parse_iso(value)
            kwargs[f.name] = value
        return cls(**kwargs)


@dataclass
class Classification(_Record):
    """A single focus judgment about screen content."""

    focus_score: int
    explanation: str
    category: str
    is_productive: bool
    source: str = "keyword"  # Which path produced it: "keyword", "openai", "gemini"

    _KEYS: ClassVar[Dict[str, str]] = {
        "focus_score": "focusScore",
        "is_productive": "isProductive",
    }

    def __post_init__(self) -> None:
        self.focus_score = clamp_score(self.focus_score)
        self.is_productive = bool(self.is_productive)


@dataclass
class FocusSession(_Record):
    """A user's focus session, from start to completion."""

    session_id: str
    user_id: str
    start_time: datetime
    group_id: Optional[str] = None
    goal: str = "Focus session"
    end_time: Optional[datetime] = None
    status: str = STATUS_ACTIVE
    adjustment: int = 0
    last_focus_score: Optional[int] = None
    last_adjustment_time: Optional[datetime] = None
    score_sum: int = 0
    score_count: int = 0
    average_score: int = 0
    duration_seconds: int = 0
    minutes_credited: Optional[int] = None
    stats_status: str = STATS_NONE
    created_at: Optional[datetime] = None
    version: int = 0

    _KEYS: ClassVar[Dict[str, str]] = {
        "session_id": "sessionId",
        "user_id": "userId",
        "group_id": "groupId",
        "start_time": "startTime",
        "end_time": "endTime",
        "adjustment": "focusAdjustment",
        "last_focus_score": "lastFocusScore",
        "last_adjustment_time": "lastAdjustmentTime",
        "score_sum": "totalFocusScore",
        "score_count": "scoreCount",
        "average_score": "averageFocusScore",
        "duration_seconds": "duration",
        "minutes_credited": "minutesCredited",
        "stats_status": "statsStatus",
        "created_at": "createdAt",
    }
    _TIME_FIELDS: ClassVar[frozenset] = frozenset(
        {"start_time", "end_time", "last_adjustment_time", "created_at"}
    )

    def __post_init__(self) -> None:
        if not self.session_id:
            raise ValueError("Session ID is required")
        if not self.user_id:
            raise ValueError("Session owner is required")
        if self.status not in SESSION_STATUSES:
            raise ValueError(f"Unknown session status: {self.status}")
        if self.stats_status not in STATS_STATUSES:
            raise ValueError(f"Unknown stats status: {self.stats_status}")
        if (self.end_time is not None) != (self.status == STATUS_COMPLETED):
            raise ValueError("endTime must be set if and only if the session is completed")
        if self.score_count < 0:
            raise ValueError("scoreCount must be non-negative")
        if self.goal is None:
            self.goal = "Focus session"

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


@dataclass(frozen=True)
class FocusScoreRecord(_Record):
    """One classification event attached to a session. Immutable."""

    score_id: str
    session_id: str
    user_id: str
    focus_score: int
    explanation: str
    category: str
    is_productive: bool
    timestamp: datetime
    created_at: Optional[datetime] = None

    _KEYS: ClassVar[Dict[str, str]] = {
        "score_id": "scoreId",
        "session_id": "sessionId",
        "user_id": "userId",
        "focus_score": "focusScore",
        "is_productive": "isProductive",
        "created_at": "createdAt",
    }
    _TIME_FIELDS: ClassVar[frozenset] = frozenset({"timestamp", "created_at"})

    def __post_init__(self) -> None:
        object.__setattr__(self, "focus_score", clamp_score(self.focus_score))


@dataclass
class UserStats(_Record):
    """Rolled-up focus statistics for one user."""

    user_id: str
    name: str = ""
    total_focus_minutes: int = 0
    level: int = 1
    streak_days: int = 0
    last_active_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    version: int = 0

    _KEYS: ClassVar[Dict[str, str]] = {
        "user_id": "userId",
        "total_focus_minutes": "totalFocusTime",
        "streak_days": "streakDays",
        "last_active_at": "lastActiveAt",
        "created_at": "createdAt",
    }
    _TIME_FIELDS: ClassVar[frozenset] = frozenset({"last_active_at", "created_at"})

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("User ID is required")
        if self.total_focus_minutes is None:
            self.total_focus_minutes = 0
        if self.total_focus_minutes < 0:
            raise ValueError("totalFocusTime must be non-negative")
        # Level is never trusted from storage
        self.level = level_for_minutes(self.total_focus_minutes)


@dataclass
class GroupStats(_Record):
    """Rolled-up statistics and tree health for one group."""

    group_id: str
    name: str
    description: str = ""
    created_by: str = ""
    daily_goal_minutes: int = config.DEFAULT_GROUP_DAILY_GOAL_MINUTES
    member_count: int = 0
    total_focus_minutes: int = 0
    tree_health: int = config.INITIAL_TREE_HEALTH
    level: int = 1
    last_active_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    version: int = 0

    _KEYS: ClassVar[Dict[str, str]] = {
        "group_id": "groupId",
        "created_by": "createdBy",
        "daily_goal_minutes": "dailyGoalMinutes",
        "member_count": "memberCount",
        "total_focus_minutes": "totalFocusTime",
        "tree_health": "treeHealth",
        "last_active_at": "lastActiveAt",
        "created_at": "createdAt",
    }
    _TIME_FIELDS: ClassVar[frozenset] = frozenset({"last_active_at", "created_at"})

    def __post_init__(self) -> None:
        if not self.group_id:
            raise ValueError("Group ID is required")
        if not self.name:
            raise ValueError("Group name is required")
        if self.member_count < 0:
            raise ValueError("memberCount must be non-negative")
        self.tree_health = int(min(100, max(0, self.tree_health)))
        self.level = level_for_minutes(self.total_focus_minutes)


def membership_key(group_id: str, user_id: str) -> str:
    """Store key for a user's membership in a group."""
    return f"{group_id}:{user_id}"


@dataclass
class GroupMembership(_Record):
    """A user's membership in a group and their attributed contribution."""

    group_id: str
    user_id: str
    role: str = ROLE_MEMBER
    joined_at: Optional[datetime] = None
    total_contribution: int = 0
    daily_contribution_minutes: int = 0
    contribution_date: Optional[str] = None  # ISO day of the latest contribution
    daily_streak: int = 0
    membership_id: str = field(default="")
    version: int = 0

    _KEYS: ClassVar[Dict[str, str]] = {
        "group_id": "groupId",
        "user_id": "userId",
        "joined_at": "joinedAt",
        "total_contribution": "totalContribution",
        "daily_contribution_minutes": "dailyContribution",
        "contribution_date": "contributionDate",
        "daily_streak": "dailyStreak",
        "membership_id": "membershipId",
    }
    _TIME_FIELDS: ClassVar[frozenset] = frozenset({"joined_at"})

    def __post_init__(self) -> None:
        if not self.group_id or not self.user_id:
            raise ValueError("Membership requires a group and a user")
        if self.role not in (ROLE_ADMIN, ROLE_MEMBER):
            raise ValueError(f"Unknown membership role: {self.role}")
        if not self.membership_id:
            self.membership_id = membership_key(self.group_id, self.user_id)

    def contributed_on(self, day: str) -> bool:
        """Whether this member contributed on the given ISO day."""
        return self.contribution_date == day
