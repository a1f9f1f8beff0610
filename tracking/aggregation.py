"""
Stats rollup for completed focus sessions.

Folds credited minutes into the owner's UserStats and, for group
sessions, into the member's contribution and the group's totals and
tree health. Every write is a version-guarded conditional update that is
retried from fresh reads when another writer got there first.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import config
from core.errors import AggregationFailed, InvalidState, NotFound
from core.models import GroupMembership, GroupStats, UserStats, membership_key, to_iso, utc_now
from core.retry import retry_with_backoff
from sync.store import ConditionalCheckFailed, FocusStore
from tracking.analytics import level_for_minutes, next_streak, tree_health_after

logger = logging.getLogger(__name__)


class AggregationEngine:
    """
    Applies completed-session credit to user and group statistics.

    Construct one per store; it holds no mutable state of its own.
    """

    def __init__(
        self,
        store: FocusStore,
        clock: Callable[[], datetime] = utc_now,
        max_attempts: int = config.AGGREGATION_MAX_ATTEMPTS,
        retry_delay: float = config.AGGREGATION_RETRY_DELAY,
    ):
        """
        Initialise the aggregation engine.

        Args:
            store: Backing store holding users, groups and memberships.
            clock: Source of "now" (injectable for tests).
            max_attempts: Conditional-update attempts before giving up.
            retry_delay: Initial delay between attempts in seconds.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.clock = clock
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def _with_retries(self, func, description: str):
        return await retry_with_backoff(
            func,
            max_retries=self.max_attempts - 1,
            initial_delay=self.retry_delay,
            max_delay=1.0,
            retryable_exceptions=(ConditionalCheckFailed,),
            description=description,
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def register_user(self, user_id: str, name: str = "") -> UserStats:
        """
        Create a user's stats record with zero minutes.

        Raises:
            InvalidState: If the user is already registered.
        """
        now = self.clock()
        user = UserStats(user_id=user_id, name=name, created_at=now)
        try:
            await self.store.put(config.USERS_TABLE, user.to_dict())
        except ConditionalCheckFailed as e:
            raise InvalidState(f"User {user_id} already exists") from e
        logger.info(f"Registered user {user_id}")
        return user

    async def get_user(self, user_id: str) -> UserStats:
        """Fetch a user's stats, raising NotFound if unregistered."""
        record = await self.store.get(config.USERS_TABLE, user_id)
        if record is None:
            raise NotFound(f"User {user_id} not found")
        return UserStats.from_dict(record)

    async def _ensure_user(self, user_id: str) -> Dict[str, Any]:
        record = await self.store.get(config.USERS_TABLE, user_id)
        if record is not None:
            return record
        logger.info(f"No stats record for user {user_id}, creating one")
        user = UserStats(user_id=user_id, created_at=self.clock())
        try:
            return await self.store.put(config.USERS_TABLE, user.to_dict())
        except ConditionalCheckFailed:
            # Created concurrently by another completion
            record = await self.store.get(config.USERS_TABLE, user_id)
            if record is None:
                raise
            return record

    async def _apply_user_minutes(self, user_id: str, minutes: int) -> UserStats:
        async def attempt() -> UserStats:
            record = await self._ensure_user(user_id)
            user = UserStats.from_dict(record)
            now = self.clock()
            new_total = user.total_focus_minutes + minutes
            changes = {
                "totalFocusTime": new_total,
                "level": level_for_minutes(new_total),
                "streakDays": next_streak(user.streak_days, user.last_active_at, now),
                "lastActiveAt": to_iso(now),
            }
            updated = await self.store.update(
                config.USERS_TABLE, user_id, changes, expected={"version": record.get("version", 0)}
            )
            return UserStats.from_dict(updated)

        return await self._with_retries(attempt, f"user rollup for {user_id}")

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def _active_members_today(self, group_id: str, today: str) -> int:
        members = await self.store.query(config.GROUP_MEMBERS_TABLE, "groupId", group_id)
        return sum(1 for m in members if m.get("contributionDate") == today)

    async def _apply_member_contribution(self, group_id: str, user_id: str, minutes: int) -> GroupMembership:
        key = membership_key(group_id, user_id)

        async def attempt() -> GroupMembership:
            record = await self.store.get(config.GROUP_MEMBERS_TABLE, key)
            if record is None:
                raise NotFound(f"User {user_id} is not a member of group {group_id}")
            membership = GroupMembership.from_dict(record)
            today = self.clock().date()

            if membership.contributed_on(today.isoformat()):
                daily = membership.daily_contribution_minutes + minutes
                streak = max(membership.daily_streak, 1)
            elif membership.contributed_on((today - timedelta(days=1)).isoformat()):
                daily = minutes
                streak = membership.daily_streak + 1
            else:
                daily = minutes
                streak = 1

            changes = {
                "totalContribution": membership.total_contribution + minutes,
                "dailyContribution": daily,
                "contributionDate": today.isoformat(),
                "dailyStreak": streak,
            }
            updated = await self.store.update(
                config.GROUP_MEMBERS_TABLE, key, changes, expected={"version": record.get("version", 0)}
            )
            return GroupMembership.from_dict(updated)

        return await self._with_retries(attempt, f"member contribution {key}")

    async def _update_group(self, group_id: str, minutes: int) -> GroupStats:
        """Add minutes to a group and recompute its tree health from today's adherence."""

        async def attempt() -> GroupStats:
            record = await self.store.get(config.GROUPS_TABLE, group_id)
            if record is None:
                raise NotFound(f"Group {group_id} not found")
            group = GroupStats.from_dict(record)
            now = self.clock()
            active = await self._active_members_today(group_id, now.date().isoformat())
            new_total = group.total_focus_minutes + minutes
            changes = {
                "totalFocusTime": new_total,
                "level": level_for_minutes(new_total),
                "treeHealth": tree_health_after(group.tree_health, active, group.member_count),
            }
            if minutes > 0:
                changes["lastActiveAt"] = to_iso(now)
            updated = await self.store.update(
                config.GROUPS_TABLE, group_id, changes, expected={"version": record.get("version", 0)}
            )
            return GroupStats.from_dict(updated)

        return await self._with_retries(attempt, f"group rollup for {group_id}")

    async def apply_group_contribution(self, user_id: str, minutes: int, group_id: str) -> GroupStats:
        """
        Attribute minutes to a member and fold them into the group.

        Raises:
            ValueError: If minutes is negative.
            AggregationFailed: If the rollup could not be committed.
        """
        if minutes < 0:
            raise ValueError(f"Credited minutes must be non-negative, got {minutes}")
        try:
            await self._apply_member_contribution(group_id, user_id, minutes)
        except Exception as e:
            logger.error(f"Member contribution to {group_id} for {user_id} failed: {e}")
            raise AggregationFailed(f"Member contribution did not land: {e}", user_applied=True) from e
        return await self.apply_group_totals(group_id, minutes)

    async def apply_group_totals(self, group_id: str, minutes: int) -> GroupStats:
        """
        Fold minutes into a group's totals and tree health.

        Only the group record changes; member contributions are left alone.

        Raises:
            AggregationFailed: With ``member_applied`` set, if the group
                               update could not be committed.
        """
        try:
            return await self._update_group(group_id, minutes)
        except Exception as e:
            logger.error(f"Group rollup for {group_id} failed: {e}")
            raise AggregationFailed(
                f"Group stats update did not land: {e}", user_applied=True, member_applied=True
            ) from e

    async def refresh_group_health(self, group_id: str) -> GroupStats:
        """
        Recompute a group's tree health without adding minutes.

        Lets health decay for groups whose members have lapsed.

        Raises:
            NotFound: If the group does not exist.
            AggregationFailed: If the update kept conflicting.
        """
        try:
            return await self._update_group(group_id, 0)
        except ConditionalCheckFailed as e:
            raise AggregationFailed(f"Tree health refresh did not land: {e}") from e

    # ------------------------------------------------------------------
    # Completed sessions
    # ------------------------------------------------------------------

    async def apply_completed_session(
        self,
        user_id: str,
        minutes_credited: int,
        group_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Fold a completed session's credit into user (and group) stats.

        The user's total, level, streak and last-active time change in one
        conditional update. Group minutes and tree health follow when the
        session was tagged with a group.

        Args:
            user_id: Session owner.
            minutes_credited: Non-negative minutes to add.
            group_id: Optional group the session was attributed to.

        Returns:
            {"newTotalMinutes", "newLevel"} and, for group sessions,
            "groupTotalMinutes" and "treeHealth".

        Raises:
            ValueError: If minutes_credited is negative.
            AggregationFailed: If a rollup could not be committed after
                               bounded retries. ``user_applied`` tells
                               whether the user part already landed.
        """
        if minutes_credited < 0:
            raise ValueError(f"Credited minutes must be non-negative, got {minutes_credited}")

        try:
            user = await self._apply_user_minutes(user_id, minutes_credited)
        except ConditionalCheckFailed as e:
            logger.error(f"User rollup for {user_id} failed after {self.max_attempts} attempts: {e}")
            raise AggregationFailed(f"User stats update did not land: {e}") from e

        result: Dict[str, Any] = {"newTotalMinutes": user.total_focus_minutes, "newLevel": user.level}
        logger.info(
            f"Credited {minutes_credited} min to {user_id}: total {user.total_focus_minutes}, level {user.level}"
        )

        if group_id:
            group = await self.apply_group_contribution(user_id, minutes_credited, group_id)
            result["groupTotalMinutes"] = group.total_focus_minutes
            result["treeHealth"] = group.tree_health

        return result
