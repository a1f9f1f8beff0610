"""
FocusEngine: orchestration layer for FocusFlow.

Wires the score classifier, session state machine, adjustment policy,
aggregation engine, group registry and leaderboard together over one
backing store. Every dependency is passed in explicitly; nothing here is
a process-wide singleton.

The HTTP boundary and the CLI both talk to this class only.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import config
from ai.base_classifier import ScoreClassifierProtocol, classification_payload
from core.errors import AggregationFailed, InvalidState, NotFound, ValidationError
from core.models import utc_now
from sync.store import FocusStore
from tracking.aggregation import AggregationEngine
from tracking.analytics import level_progress, tree_stage
from tracking.groups import GroupRegistry
from tracking.leaderboard import SCOPE_GLOBAL, LeaderboardBuilder
from tracking.policy import DEFAULT_POLICY, AdjustmentPolicy
from tracking.session import SessionStateMachine

logger = logging.getLogger(__name__)


class FocusEngine:
    """
    Core focus-tracking engine.

    Handles:
    - Session lifecycle (start, analyse screen, stop, list)
    - Score -> adjustment policy between recording and adjusting
    - Stats rollup and the reconciliation sweep
    - Groups, user summaries and leaderboards
    """

    def __init__(
        self,
        store: FocusStore,
        classifier: ScoreClassifierProtocol,
        policy: AdjustmentPolicy = DEFAULT_POLICY,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Optional[Callable[[], str]] = None,
        aggregation: Optional[AggregationEngine] = None,
    ) -> None:
        """
        Initialise the engine.

        Args:
            store: Backing store shared by every component.
            classifier: Screen-content score classifier.
            policy: Score -> minute adjustment policy.
            clock: Source of "now" (injectable for tests).
            id_factory: Optional id generator for sessions, scores and groups.
            aggregation: Optional pre-built aggregation engine.
        """
        ids = {"id_factory": id_factory} if id_factory else {}
        self.store = store
        self.classifier = classifier
        self.policy = policy
        self.aggregation = aggregation or AggregationEngine(store, clock=clock)
        self.groups = GroupRegistry(store, clock=clock, **ids)
        self.sessions = SessionStateMachine(store, self.aggregation, groups=self.groups, clock=clock, **ids)
        self.leaderboards = LeaderboardBuilder(store)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_session(self, caller_id: str, group_id: Optional[str] = None, goal: Optional[str] = None) -> Dict[str, Any]:
        session = await self.sessions.start(caller_id, group_id=group_id, goal=goal)
        return {"message": "Focus session started", "session": session.to_dict()}

    async def analyze_screen(self, caller_id: str, session_id: str, screen_description: str) -> Dict[str, Any]:
        """
        Classify screen content and apply it to an active session.

        Records the score, maps it through the policy and accumulates the
        resulting adjustment. Classifier failures never reach the caller.

        Returns:
            {focusScore, explanation, category, isProductive,
             totalAdjustment, adjustment, averageFocusScore, scoreCount}

        Raises:
            ValidationError: If the session id or description is missing.
            NotFound, Forbidden, InvalidState: From the session checks.
        """
        if not session_id or not (screen_description or "").strip():
            raise ValidationError("Session ID and screen description are required")

        # Ownership and state are checked before paying for a classifier call
        session = await self.sessions.get_session(session_id, caller_id)
        if not session.is_active:
            raise InvalidState("Cannot analyse a completed session")

        classification = await self.classifier.classify(screen_description)
        snapshot = await self.sessions.record_score(session_id, caller_id, classification)
        delta = self.policy.delta_for(classification.focus_score)
        adjusted = await self.sessions.adjust(session_id, caller_id, delta, classification.focus_score)

        body = classification_payload(classification)
        body.update({
            "adjustment": delta,
            "totalAdjustment": adjusted["totalAdjustment"],
            "averageFocusScore": snapshot["averageFocusScore"],
            "scoreCount": snapshot["scoreCount"],
        })
        return body

    async def adjust_session(self, caller_id: str, session_id: str, score: int) -> Dict[str, Any]:
        """Apply the policy adjustment for an externally computed score."""
        delta = self.policy.delta_for(score)
        return await self.sessions.adjust(session_id, caller_id, delta, score)

    async def stop_session(self, caller_id: str, session_id: str) -> Dict[str, Any]:
        result = await self.sessions.stop(session_id, caller_id)
        return dict(result, message="Focus session completed")

    async def get_session(self, caller_id: str, session_id: str) -> Dict[str, Any]:
        session = await self.sessions.get_session(session_id, caller_id)
        return {"session": session.to_dict()}

    async def list_sessions(self, caller_id: str, limit: Optional[int] = None, cursor: Optional[str] = None) -> Dict[str, Any]:
        return await self.sessions.list_sessions(caller_id, limit=limit, cursor=cursor)

    async def reconcile_pending(self) -> Dict[str, int]:
        return await self.sessions.reconcile_pending()

    # ------------------------------------------------------------------
    # Users and groups
    # ------------------------------------------------------------------

    async def register_user(self, user_id: str, name: str = "") -> Dict[str, Any]:
        if not (user_id or "").strip():
            raise ValidationError("userId is required")
        user = await self.aggregation.register_user(user_id.strip(), name=(name or "").strip())
        return {"user": user.to_dict()}

    async def user_summary(self, caller_id: str) -> Dict[str, Any]:
        """
        Rolled-up stats for the caller with level progress and tree stage.

        Raises:
            NotFound: If the caller has no stats record.
        """
        user = await self.aggregation.get_user(caller_id)
        progress = level_progress(user.total_focus_minutes)
        summary = user.to_dict()
        summary.pop("version", None)
        summary.update(progress)
        summary["treeStage"] = tree_stage(user.level)
        return summary

    async def create_group(
        self,
        caller_id: str,
        name: str,
        description: str = "",
        daily_goal_minutes: Optional[int] = None,
    ) -> Dict[str, Any]:
        group = await self.groups.create_group(caller_id, name, description, daily_goal_minutes)
        return {"message": "Group created successfully", "group": group.to_dict()}

    async def join_group(self, caller_id: str, group_id: str) -> Dict[str, Any]:
        membership = await self.groups.join_group(caller_id, group_id)
        return {"message": "Successfully joined group", "membership": membership.to_dict()}

    async def get_group(self, caller_id: str, group_id: str) -> Dict[str, Any]:
        await self.groups.require_member(group_id, caller_id)
        group = await self.groups.get_group(group_id)
        members = await self.groups.list_members(group_id)
        return {"group": group.to_dict(), "members": [m.to_dict() for m in members]}

    async def refresh_group_health(self, group_id: str) -> Dict[str, Any]:
        group = await self.aggregation.refresh_group_health(group_id)
        return {"group": group.to_dict()}

    async def refresh_all_group_health(self) -> Dict[str, int]:
        """Recompute tree health for every group so lapsing groups decay."""
        refreshed = 0
        failed = 0
        for record in await self.store.scan(config.GROUPS_TABLE):
            group_id = record["groupId"]
            try:
                await self.aggregation.refresh_group_health(group_id)
            except (AggregationFailed, NotFound) as e:
                logger.warning(f"Tree health refresh for group {group_id} skipped: {e}")
                failed += 1
                continue
            refreshed += 1
        logger.info(f"Refreshed tree health for {refreshed} groups, {failed} failed")
        return {"refreshed": refreshed, "failed": failed}

    async def leaderboard(
        self,
        caller_id: str,
        scope: str = SCOPE_GLOBAL,
        group_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self.leaderboards.build(caller_id, scope=scope, group_id=group_id, limit=limit)


async def create_engine(store_backend: str = "", provider: Optional[str] = None) -> FocusEngine:
    """
    Build a FocusEngine from configuration.

    Args:
        store_backend: Override for config.STORE_BACKEND.
        provider: Override for config.SCORE_PROVIDER.
    """
    from ai import create_score_classifier
    from sync import create_store

    store = await create_store(store_backend)
    classifier = create_score_classifier(provider)
    logger.info(f"FocusEngine ready (store: {type(store).__name__}, classifier: {type(classifier).__name__})")
    return FocusEngine(store, classifier)
