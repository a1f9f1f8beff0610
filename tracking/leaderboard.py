"""Leaderboard ranking over user and group-member statistics."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import config
from core.errors import Forbidden, NotFound, ValidationError
from core.models import UserStats, membership_key
from sync.store import FocusStore

logger = logging.getLogger(__name__)

SCOPE_GLOBAL = "global"
SCOPE_GROUP = "group"
SCOPES = (SCOPE_GLOBAL, SCOPE_GROUP)


class LeaderboardRanker:
    """
    Orders entries by a metric and assigns 1-based ranks.

    Pure: input entries are never mutated and the same input always gives
    the same output. Ties keep their input order.
    """

    def __init__(self, id_key: str = "id", metric_key: str = "metricValue"):
        self.id_key = id_key
        self.metric_key = metric_key

    def rank(
        self,
        entries: Sequence[Dict[str, Any]],
        caller_id: Optional[str],
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Rank entries descending by metric.

        Args:
            entries: Dicts carrying at least the id and metric keys.
            caller_id: Authenticated caller; tags ``isCurrentUser`` and
                       locates ``callerRank``.
            limit: Optional number of top entries to return. The caller's
                   rank is always computed over the full population.

        Returns:
            {"rankings": [...], "callerRank": int or None, "totalEntries": int}
        """
        # sorted() is stable, so equal metrics keep input order
        ordered = sorted(entries, key=lambda e: e.get(self.metric_key) or 0, reverse=True)

        caller_rank = None
        for position, entry in enumerate(ordered, 1):
            if caller_id is not None and entry.get(self.id_key) == caller_id:
                caller_rank = position
                break

        top = ordered if limit is None else ordered[:max(0, limit)]
        rankings = [
            dict(entry, rank=position, isCurrentUser=caller_id is not None and entry.get(self.id_key) == caller_id)
            for position, entry in enumerate(top, 1)
        ]
        return {"rankings": rankings, "callerRank": caller_rank, "totalEntries": len(ordered)}


def rank(entries: Sequence[Dict[str, Any]], caller_id: Optional[str], limit: Optional[int] = None) -> Dict[str, Any]:
    """Rank ``{"id", "metricValue"}`` entries with the default ranker."""
    return LeaderboardRanker().rank(entries, caller_id, limit)


def _user_entry(user: UserStats, metric: int) -> Dict[str, Any]:
    return {
        "id": user.user_id,
        "userId": user.user_id,
        "name": user.name,
        "totalFocusTime": user.total_focus_minutes,
        "level": user.level,
        "streakDays": user.streak_days,
        "lastActiveAt": user.to_dict()["lastActiveAt"],
        "metricValue": metric,
    }


class LeaderboardBuilder:
    """Reads a stats snapshot from the store and ranks it for a scope."""

    def __init__(self, store: FocusStore, ranker: Optional[LeaderboardRanker] = None):
        self.store = store
        self.ranker = ranker or LeaderboardRanker()

    @staticmethod
    def _resolve_limit(limit: Optional[int]) -> int:
        if limit is None:
            return config.LEADERBOARD_DEFAULT_LIMIT
        if limit < 1 or limit > config.LEADERBOARD_MAX_LIMIT:
            raise ValidationError(f"limit must be between 1 and {config.LEADERBOARD_MAX_LIMIT}")
        return limit

    async def _global_entries(self) -> List[Dict[str, Any]]:
        users = [UserStats.from_dict(r) for r in await self.store.scan(config.USERS_TABLE)]
        return [_user_entry(u, u.total_focus_minutes) for u in users]

    async def _group_entries(self, group_id: str, caller_id: str) -> List[Dict[str, Any]]:
        if await self.store.get(config.GROUPS_TABLE, group_id) is None:
            raise NotFound("Group not found")
        if await self.store.get(config.GROUP_MEMBERS_TABLE, membership_key(group_id, caller_id)) is None:
            raise Forbidden("Not a member of this group")

        entries = []
        for member in await self.store.query(config.GROUP_MEMBERS_TABLE, "groupId", group_id):
            record = await self.store.get(config.USERS_TABLE, member["userId"])
            user = UserStats.from_dict(record) if record else UserStats(user_id=member["userId"])
            entry = _user_entry(user, member.get("totalContribution") or 0)
            entry["totalContribution"] = member.get("totalContribution") or 0
            entry["dailyStreak"] = member.get("dailyStreak") or 0
            entries.append(entry)
        return entries

    async def build(
        self,
        caller_id: str,
        scope: str = SCOPE_GLOBAL,
        group_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Build a leaderboard for the caller.

        Global scope ranks every user by total focus minutes. Group scope
        ranks the group's members by the minutes they contributed to it.

        Returns:
            {"leaderboard", "callerRank", "totalUsers", "scope"} (plus
            "groupId" for group scope).

        Raises:
            ValidationError: Unknown scope, missing group id or bad limit.
            NotFound: Group scope with an unknown group.
            Forbidden: Group scope when the caller is not a member.
        """
        limit = self._resolve_limit(limit)
        if scope not in SCOPES:
            raise ValidationError(f"Unknown leaderboard scope '{scope}'. Supported scopes: {', '.join(SCOPES)}")

        if scope == SCOPE_GROUP:
            if not group_id:
                raise ValidationError("groupId is required for the group leaderboard")
            entries = await self._group_entries(group_id, caller_id)
        else:
            entries = await self._global_entries()

        ranked = self.ranker.rank(entries, caller_id, limit)
        body = {
            "leaderboard": ranked["rankings"],
            "callerRank": ranked["callerRank"],
            "totalUsers": ranked["totalEntries"],
            "scope": scope,
        }
        if scope == SCOPE_GROUP:
            body["groupId"] = group_id
        return body
