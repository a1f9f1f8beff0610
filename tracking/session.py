"""Focus session lifecycle: start, score, adjust, stop."""

import base64
import binascii
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

import config
from core.errors import AggregationFailed, Forbidden, InvalidState, NotFound, Unauthenticated, ValidationError
from core.models import (
    STATS_APPLIED,
    STATS_FAILED,
    STATS_GROUP_PENDING,
    STATS_PARTIAL,
    STATS_PENDING,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    Classification,
    FocusScoreRecord,
    FocusSession,
    clamp_score,
    to_iso,
    utc_now,
)
from sync.store import ConditionalCheckFailed, FocusStore
from tracking.aggregation import AggregationEngine
from tracking.analytics import credited_minutes, elapsed_seconds, format_duration, round_half_up
from tracking.groups import GroupRegistry

logger = logging.getLogger(__name__)

_ACTIVE_GUARD = {"status": STATUS_ACTIVE}


def _average_score(record: Dict[str, Any]) -> Dict[str, Any]:
    count = record.get("scoreCount") or 0
    if count <= 0:
        return {"averageFocusScore": 0}
    return {"averageFocusScore": round_half_up(record.get("totalFocusScore", 0) / count)}


def encode_cursor(session: Dict[str, Any]) -> str:
    """Opaque pagination cursor pointing just past a session."""
    payload = json.dumps({"sessionId": session["sessionId"], "startTime": session.get("startTime")})
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Dict[str, Any]:
    """
    Decode a cursor produced by ``encode_cursor``.

    Raises:
        ValidationError: If the cursor is malformed.
    """
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ValidationError("Invalid pagination cursor") from e
    if not isinstance(data, dict) or not data.get("sessionId"):
        raise ValidationError("Invalid pagination cursor")
    return data


class SessionStateMachine:
    """
    Owns the lifecycle of focus sessions.

    States are ``active`` and ``completed``; the only transition is
    active -> completed, made once by ``stop``. Every mutation is a
    conditional write guarded on ``status == active`` so a completed
    session can never be scored, adjusted or stopped again.

    Stopping twice is rejected with InvalidState rather than treated as a
    no-op, so a retried stop can never credit the same session twice.
    """

    def __init__(
        self,
        store: FocusStore,
        aggregation: AggregationEngine,
        groups: Optional[GroupRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        max_stop_attempts: int = config.STOP_MAX_ATTEMPTS,
        pending_grace_seconds: int = config.RECONCILE_PENDING_GRACE_SECONDS,
    ):
        """
        Initialise the state machine.

        Args:
            store: Backing store for sessions and score records.
            aggregation: Receives credited minutes when a session stops.
            groups: Group lookups used to validate group-tagged sessions.
            clock: Source of "now" (injectable for tests).
            id_factory: Generates session and score ids.
            max_stop_attempts: Attempts at the completing write when
                               concurrent scores keep changing the session.
            pending_grace_seconds: Age after which a session still marked
                                   ``pending`` is swept as abandoned.
        """
        self.store = store
        self.aggregation = aggregation
        self.groups = groups or GroupRegistry(store, clock=clock, id_factory=id_factory)
        self.clock = clock
        self.id_factory = id_factory
        self.max_stop_attempts = max_stop_attempts
        self.pending_grace_seconds = pending_grace_seconds

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    def _require_caller(caller_id: Optional[str]) -> str:
        if not caller_id or not str(caller_id).strip():
            raise Unauthenticated("Caller identity is required")
        return str(caller_id).strip()

    async def _load_owned(self, session_id: str, caller_id: str) -> Tuple[Dict[str, Any], FocusSession]:
        caller_id = self._require_caller(caller_id)
        record = await self.store.get(config.FOCUS_SESSIONS_TABLE, session_id) if session_id else None
        if record is None:
            raise NotFound("Session not found")
        session = FocusSession.from_dict(record)
        if session.user_id != caller_id:
            raise Forbidden("Session belongs to another user")
        return record, session

    async def _guard_failure(self, session_id: str, action: str) -> InvalidState:
        """Explain a rejected conditional write on a session."""
        record = await self.store.get(config.FOCUS_SESSIONS_TABLE, session_id)
        status = record.get("status") if record else "missing"
        logger.info(f"Rejected {action} on session {session_id} (status: {status})")
        return InvalidState(f"Cannot {action} a session that is {status}")

    async def get_session(self, session_id: str, caller_id: str) -> FocusSession:
        """
        Fetch one of the caller's sessions.

        Raises:
            Unauthenticated, NotFound, Forbidden
        """
        _, session = await self._load_owned(session_id, caller_id)
        return session

    async def list_sessions(
        self,
        caller_id: str,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        List the caller's sessions, newest first.

        Args:
            caller_id: Session owner.
            limit: Page size (defaults to config.SESSIONS_DEFAULT_LIMIT).
            cursor: ``lastEvaluatedKey`` from the previous page.

        Returns:
            {"sessions", "lastEvaluatedKey", "count"}; ``lastEvaluatedKey``
            is None on the last page.
        """
        caller_id = self._require_caller(caller_id)
        limit = config.SESSIONS_DEFAULT_LIMIT if limit is None else limit
        if limit < 1 or limit > config.SESSIONS_MAX_LIMIT:
            raise ValidationError(f"limit must be between 1 and {config.SESSIONS_MAX_LIMIT}")

        records = await self.store.query(
            config.FOCUS_SESSIONS_TABLE, "userId", caller_id, order_by="startTime", descending=True
        )

        start = 0
        if cursor:
            after = decode_cursor(cursor)["sessionId"]
            ids = [r["sessionId"] for r in records]
            if after not in ids:
                raise ValidationError("Invalid pagination cursor")
            start = ids.index(after) + 1

        page = records[start:start + limit]
        has_more = start + limit < len(records)
        return {
            "sessions": [FocusSession.from_dict(r).to_dict() for r in page],
            "lastEvaluatedKey": encode_cursor(page[-1]) if page and has_more else None,
            "count": len(page),
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(self, caller_id: str, group_id: Optional[str] = None, goal: Optional[str] = None) -> FocusSession:
        """
        Start a new active session for the caller.

        Args:
            caller_id: Session owner.
            group_id: Optional group the session's minutes are attributed to.
            goal: Optional goal text (defaults to "Focus session").

        Raises:
            Unauthenticated: If the caller identity is missing.
            NotFound: If ``group_id`` names an unknown group.
            Forbidden: If the caller is not a member of that group.
        """
        caller_id = self._require_caller(caller_id)
        if group_id:
            await self.groups.require_member(group_id, caller_id)

        now = self.clock()
        session = FocusSession(
            session_id=self.id_factory(),
            user_id=caller_id,
            start_time=now,
            group_id=group_id or None,
            goal=(goal or "").strip() or "Focus session",
            created_at=now,
        )
        await self.store.put(config.FOCUS_SESSIONS_TABLE, session.to_dict())
        logger.info(f"Session {session.session_id} started for {caller_id}"
                    + (f" in group {group_id}" if group_id else ""))
        return session

    async def record_score(self, session_id: str, caller_id: str, classification: Classification) -> Dict[str, Any]:
        """
        Append a score record and update the session's running statistics.

        Does not touch the time adjustment; see ``adjust``.

        Returns:
            Snapshot with the new score id and the session's totals.

        Raises:
            NotFound, Forbidden: Session missing or owned by someone else.
            InvalidState: If the session is no longer active.
        """
        _, session = await self._load_owned(session_id, caller_id)
        if not session.is_active:
            raise InvalidState("Cannot score a completed session")

        score = clamp_score(classification.focus_score)
        try:
            updated = await self.store.increment(
                config.FOCUS_SESSIONS_TABLE,
                session_id,
                {"totalFocusScore": score, "scoreCount": 1},
                expected=_ACTIVE_GUARD,
                derive=_average_score,
            )
        except ConditionalCheckFailed:
            raise await self._guard_failure(session_id, "score")

        now = self.clock()
        record = FocusScoreRecord(
            score_id=self.id_factory(),
            session_id=session_id,
            user_id=session.user_id,
            focus_score=score,
            explanation=classification.explanation,
            category=classification.category,
            is_productive=classification.is_productive,
            timestamp=now,
            created_at=now,
        )
        await self.store.put(config.FOCUS_SCORES_TABLE, record.to_dict())

        return {
            "sessionId": session_id,
            "scoreId": record.score_id,
            "totalFocusScore": updated["totalFocusScore"],
            "scoreCount": updated["scoreCount"],
            "averageFocusScore": updated["averageFocusScore"],
        }

    async def adjust(self, session_id: str, caller_id: str, delta: int, score: int) -> Dict[str, Any]:
        """
        Add a signed minute delta to the session's running adjustment.

        Args:
            session_id: Session to adjust.
            caller_id: Must own the session.
            delta: Signed minutes from the adjustment policy.
            score: Focus score that produced the delta.

        Returns:
            {"sessionId", "delta", "totalAdjustment", "lastFocusScore"}

        Raises:
            NotFound, Forbidden: Session missing or owned by someone else.
            InvalidState: If the session is no longer active.
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError(f"Adjustment delta must be an integer, got {delta!r}")

        _, session = await self._load_owned(session_id, caller_id)
        if not session.is_active:
            raise InvalidState("Cannot adjust a completed session")

        score = clamp_score(score)
        try:
            updated = await self.store.increment(
                config.FOCUS_SESSIONS_TABLE,
                session_id,
                {"focusAdjustment": delta},
                changes={"lastFocusScore": score, "lastAdjustmentTime": to_iso(self.clock())},
                expected=_ACTIVE_GUARD,
            )
        except ConditionalCheckFailed:
            raise await self._guard_failure(session_id, "adjust")

        logger.debug(f"Session {session_id} adjusted by {delta:+d} min (total {updated['focusAdjustment']})")
        return {
            "sessionId": session_id,
            "delta": delta,
            "totalAdjustment": updated["focusAdjustment"],
            "lastFocusScore": score,
        }

    async def _complete(self, session_id: str, caller_id: str) -> FocusSession:
        """Make the active -> completed write, retrying if scores land concurrently."""
        for attempt in range(self.max_stop_attempts):
            record, session = await self._load_owned(session_id, caller_id)
            if not session.is_active:
                raise InvalidState("Session is already completed")

            now = self.clock()
            duration = elapsed_seconds(session.start_time, now)
            minutes = credited_minutes(duration, session.adjustment)
            changes = {
                "status": STATUS_COMPLETED,
                "endTime": to_iso(now),
                "duration": duration,
                "minutesCredited": minutes,
                "statsStatus": STATS_PENDING,
            }
            try:
                updated = await self.store.update(
                    config.FOCUS_SESSIONS_TABLE,
                    session_id,
                    changes,
                    expected={"status": STATUS_ACTIVE, "version": record.get("version", 0)},
                )
            except ConditionalCheckFailed:
                logger.debug(f"Stop of session {session_id} raced another write (attempt {attempt + 1})")
                continue
            return FocusSession.from_dict(updated)

        current = await self.store.get(config.FOCUS_SESSIONS_TABLE, session_id)
        if current is not None and current.get("status") == STATUS_COMPLETED:
            raise InvalidState("Session is already completed")
        raise InvalidState("Session kept changing while stopping; try again")

    async def _mark_stats(self, session_id: str, status: str) -> None:
        """Move a session's stats status on from ``pending``."""
        try:
            await self.store.update(
                config.FOCUS_SESSIONS_TABLE, session_id, {"statsStatus": status},
                expected={"statsStatus": STATS_PENDING},
            )
        except Exception as e:
            # Left pending; the sweep picks it up once the grace period passes
            logger.error(f"Could not mark session {session_id} stats as {status}: {e}")

    async def _roll_up(self, session: FocusSession, resume_from: str = STATS_FAILED) -> Dict[str, Any]:
        """
        Apply a completed session to stats and record the outcome on the session.

        Args:
            session: Completed session, claimed with ``statsStatus == pending``.
            resume_from: Status the rollup is resuming from. ``failed`` runs
                         everything, ``partial`` skips the user stats and
                         ``group_pending`` only folds the group totals.

        Raises:
            AggregationFailed: With the session marked failed, partial or
                               group_pending. Unexpected errors are wrapped.
        """
        minutes = session.minutes_credited or 0
        try:
            if resume_from == STATS_FAILED:
                stats = await self.aggregation.apply_completed_session(session.user_id, minutes, session.group_id)
            else:
                # User stats already landed; read them before touching the group
                user = await self.aggregation.get_user(session.user_id)
                if resume_from == STATS_PARTIAL:
                    group = await self.aggregation.apply_group_contribution(session.user_id, minutes, session.group_id)
                else:
                    group = await self.aggregation.apply_group_totals(session.group_id, minutes)
                stats = {
                    "newTotalMinutes": user.total_focus_minutes,
                    "newLevel": user.level,
                    "groupTotalMinutes": group.total_focus_minutes,
                    "treeHealth": group.tree_health,
                }
        except AggregationFailed as e:
            if e.member_applied:
                status = STATS_GROUP_PENDING
            elif e.user_applied:
                status = STATS_PARTIAL
            else:
                status = resume_from
            await self._mark_stats(session.session_id, status)
            session.stats_status = status
            logger.warning(f"Session {session.session_id} completed but stats are {status}: {e}")
            raise
        except Exception as e:
            # Unknown how far the rollup got before the error, so resume where it started
            await self._mark_stats(session.session_id, resume_from)
            session.stats_status = resume_from
            logger.error(f"Stats rollup for session {session.session_id} failed unexpectedly: {e}")
            raise AggregationFailed(f"Stats update did not land: {e}") from e

        await self._mark_stats(session.session_id, STATS_APPLIED)
        session.stats_status = STATS_APPLIED
        return stats

    async def stop(self, session_id: str, caller_id: str) -> Dict[str, Any]:
        """
        Complete a session and roll its credited minutes into stats.

        Credited minutes are whole elapsed minutes plus the accumulated
        adjustment, never below 0. Completion and the stats rollup are
        separate commits: if the rollup fails the session stays completed
        and AggregationFailed carries the finalized result.

        Returns:
            {"session", "minutesCredited", "duration", "newLevel",
             "newTotalMinutes", "statsSynced"}

        Raises:
            NotFound, Forbidden: Session missing or owned by someone else.
            InvalidState: If the session is already completed.
            AggregationFailed: If the stats rollup did not land.
        """
        session = await self._complete(session_id, caller_id)
        logger.info(
            f"Session {session_id} completed: {format_duration(session.duration_seconds)}, "
            f"adjustment {session.adjustment:+d} min, credited {session.minutes_credited} min"
        )

        result: Dict[str, Any] = {
            "minutesCredited": session.minutes_credited,
            "duration": session.duration_seconds,
        }
        try:
            stats = await self._roll_up(session)
        except AggregationFailed as e:
            result.update({"session": session.to_dict(), "newLevel": None, "newTotalMinutes": None})
            e.result = result
            raise

        result.update({
            "session": session.to_dict(),
            "newLevel": stats["newLevel"],
            "newTotalMinutes": stats["newTotalMinutes"],
            "statsSynced": True,
        })
        if "treeHealth" in stats:
            result["treeHealth"] = stats["treeHealth"]
        return result

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _stale_pending(self, record: Dict[str, Any]) -> bool:
        """A pending rollup whose stop finished longer ago than the grace period."""
        end_time = FocusSession.from_dict(record).end_time
        if end_time is None:
            return False
        return elapsed_seconds(end_time, self.clock()) >= self.pending_grace_seconds

    async def reconcile_pending(self) -> Dict[str, int]:
        """
        Re-apply stats for completed sessions whose rollup did not land.

        Each session is claimed with a conditional update (failed, partial
        or group_pending -> pending) before its rollup is retried, so two
        sweeps never credit the same session twice. Partial sessions only
        retry the member and group part; group_pending sessions only the
        group totals. Sessions left ``pending`` past the grace period are
        treated as failed and retried in full.

        Returns:
            Counts of sessions examined, applied, still failing, and
            skipped because another sweep claimed them.
        """
        counts = {"examined": 0, "applied": 0, "failed": 0, "skipped": 0}
        records = await self.store.scan(config.FOCUS_SESSIONS_TABLE)

        for record in records:
            if record.get("status") != STATUS_COMPLETED:
                continue
            previous = record.get("statsStatus")
            if previous == STATS_PENDING:
                if not self._stale_pending(record):
                    continue
                resume_from = STATS_FAILED
                expected = {"statsStatus": STATS_PENDING, "version": record.get("version", 0)}
            elif previous in (STATS_FAILED, STATS_PARTIAL, STATS_GROUP_PENDING):
                resume_from = previous
                expected = {"statsStatus": previous}
            else:
                continue
            counts["examined"] += 1
            session_id = record["sessionId"]

            try:
                claimed = await self.store.update(
                    config.FOCUS_SESSIONS_TABLE, session_id, {"statsStatus": STATS_PENDING}, expected=expected
                )
            except ConditionalCheckFailed:
                counts["skipped"] += 1
                continue

            if previous == STATS_PENDING:
                logger.warning(f"Session {session_id} was left with pending stats, retrying in full")
            try:
                await self._roll_up(FocusSession.from_dict(claimed), resume_from=resume_from)
            except AggregationFailed as e:
                logger.warning(f"Reconciliation of session {session_id} failed again: {e}")
                counts["failed"] += 1
                continue
            counts["applied"] += 1

        logger.info(
            f"Reconciliation sweep: {counts['examined']} examined, {counts['applied']} applied, "
            f"{counts['failed']} failed, {counts['skipped']} skipped"
        )
        return counts
