"""Group creation, membership and lookups."""

import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional

import config
from core.errors import Forbidden, InvalidState, NotFound, ValidationError
from core.models import ROLE_ADMIN, ROLE_MEMBER, GroupMembership, GroupStats, membership_key, utc_now
from sync.store import ConditionalCheckFailed, FocusStore

logger = logging.getLogger(__name__)


class GroupRegistry:
    """Creates groups and tracks who belongs to them."""

    def __init__(
        self,
        store: FocusStore,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.store = store
        self.clock = clock
        self.id_factory = id_factory

    async def create_group(
        self,
        caller_id: str,
        name: str,
        description: str = "",
        daily_goal_minutes: Optional[int] = None,
    ) -> GroupStats:
        """
        Create a group with the caller as its admin and only member.

        Args:
            caller_id: Creating user.
            name: Group name (required).
            description: Optional description.
            daily_goal_minutes: Per-member daily goal (defaults to config).

        Returns:
            The new group.

        Raises:
            ValidationError: If the name is blank or the goal is not positive.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Group name is required")
        if daily_goal_minutes is None:
            daily_goal_minutes = config.DEFAULT_GROUP_DAILY_GOAL_MINUTES
        if daily_goal_minutes <= 0:
            raise ValidationError("dailyGoalMinutes must be positive")

        now = self.clock()
        group = GroupStats(
            group_id=self.id_factory(),
            name=name,
            description=description or "",
            created_by=caller_id,
            daily_goal_minutes=daily_goal_minutes,
            member_count=1,
            created_at=now,
        )
        await self.store.put(config.GROUPS_TABLE, group.to_dict())

        admin = GroupMembership(group_id=group.group_id, user_id=caller_id, role=ROLE_ADMIN, joined_at=now)
        await self.store.put(config.GROUP_MEMBERS_TABLE, admin.to_dict())

        logger.info(f"User {caller_id} created group {group.group_id} ({name})")
        return group

    async def get_group(self, group_id: str) -> GroupStats:
        """Fetch a group, raising NotFound if it does not exist."""
        record = await self.store.get(config.GROUPS_TABLE, group_id)
        if record is None:
            raise NotFound("Group not found")
        return GroupStats.from_dict(record)

    async def get_membership(self, group_id: str, user_id: str) -> Optional[GroupMembership]:
        record = await self.store.get(config.GROUP_MEMBERS_TABLE, membership_key(group_id, user_id))
        return GroupMembership.from_dict(record) if record is not None else None

    async def require_member(self, group_id: str, user_id: str) -> GroupMembership:
        """
        Check that a group exists and the user belongs to it.

        Raises:
            NotFound: If the group does not exist.
            Forbidden: If the user is not a member.
        """
        await self.get_group(group_id)
        membership = await self.get_membership(group_id, user_id)
        if membership is None:
            raise Forbidden("Not a member of this group")
        return membership

    async def join_group(self, caller_id: str, group_id: str) -> GroupMembership:
        """
        Add the caller to a group as a regular member.

        Raises:
            NotFound: If the group does not exist.
            InvalidState: If the caller is already a member.
        """
        await self.get_group(group_id)

        membership = GroupMembership(
            group_id=group_id, user_id=caller_id, role=ROLE_MEMBER, joined_at=self.clock()
        )
        try:
            await self.store.put(config.GROUP_MEMBERS_TABLE, membership.to_dict())
        except ConditionalCheckFailed as e:
            raise InvalidState("Already a member of this group") from e

        await self.store.increment(config.GROUPS_TABLE, group_id, {"memberCount": 1})
        logger.info(f"User {caller_id} joined group {group_id}")
        return membership

    async def list_members(self, group_id: str) -> List[GroupMembership]:
        records = await self.store.query(config.GROUP_MEMBERS_TABLE, "groupId", group_id)
        return [GroupMembership.from_dict(r) for r in records]
