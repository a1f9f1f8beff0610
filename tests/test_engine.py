"""
Tests for core/engine.py, verifying the FocusEngine wires classification,
policy, sessions and stats together over a single store.
"""

import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ai.keyword_classifier import KeywordScoreClassifier
from core.engine import FocusEngine
from core.errors import AggregationFailed, Forbidden, InvalidState, NotFound, ValidationError
from core.models import Classification
from sync.store import InMemoryStore
from tracking.policy import AdjustmentPolicy


class FakeClock:
    """Manually advanced clock."""

    def __init__(self):
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def _scripted_classifier(*scores):
    """Classifier mock returning the given scores in order."""
    classifier = MagicMock()
    classifier.classify = AsyncMock(side_effect=[
        Classification(score, "scripted", "General", score >= 50, source="openai") for score in scores
    ])
    return classifier


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    """Shared engine fixture."""

    async def asyncSetUp(self):
        """Create an engine over an in-memory store."""
        self.clock = FakeClock()
        self.store = InMemoryStore()
        self.engine = FocusEngine(self.store, KeywordScoreClassifier(), clock=self.clock)
        await self.engine.register_user("alice", "Alice")


class TestAnalyzeScreen(EngineTestCase):
    """Test the classify -> record -> adjust pipeline."""

    async def test_high_then_low_focus(self):
        """Scores 85 and 30 adjust by +10 and -20 and the stop credits 15 minutes."""
        self.engine.classifier = _scripted_classifier(85, 30)
        started = await self.engine.start_session("alice")
        sid = started["session"]["sessionId"]

        first = await self.engine.analyze_screen("alice", sid, "Editing a spreadsheet")
        self.assertEqual(first["focusScore"], 85)
        self.assertEqual(first["adjustment"], 10)
        self.assertNotIn("source", first)

        second = await self.engine.analyze_screen("alice", sid, "Scrolling a social feed")
        self.assertEqual(second["adjustment"], -20)
        self.assertEqual(second["totalAdjustment"], -10)
        self.assertEqual(second["scoreCount"], 2)
        self.assertEqual(second["averageFocusScore"], 58)

        self.clock.advance(1500)
        stopped = await self.engine.stop_session("alice", sid)
        self.assertEqual(stopped["minutesCredited"], 15)
        self.assertEqual(stopped["newTotalMinutes"], 15)
        self.assertEqual(stopped["message"], "Focus session completed")

    async def test_keyword_classifier_end_to_end(self):
        """The keyword classifier drives the same pipeline."""
        started = await self.engine.start_session("alice")
        result = await self.engine.analyze_screen("alice", started["session"]["sessionId"], "Watching YouTube")
        self.assertEqual(result["focusScore"], 30)
        self.assertEqual(result["category"], "Distraction")
        self.assertEqual(result["adjustment"], -20)

    async def test_requires_description(self):
        """A blank description is a validation error."""
        started = await self.engine.start_session("alice")
        with self.assertRaises(ValidationError):
            await self.engine.analyze_screen("alice", started["session"]["sessionId"], "  ")

    async def test_foreign_session_not_classified(self):
        """Ownership is checked before the classifier is called."""
        self.engine.classifier = _scripted_classifier(90)
        started = await self.engine.start_session("alice")
        with self.assertRaises(Forbidden):
            await self.engine.analyze_screen("mallory", started["session"]["sessionId"], "code")
        self.engine.classifier.classify.assert_not_awaited()

    async def test_completed_session_rejected(self):
        """Analysing a stopped session fails with InvalidState before classification."""
        started = await self.engine.start_session("alice")
        sid = started["session"]["sessionId"]
        self.engine.classifier = _scripted_classifier(90)
        await self.engine.stop_session("alice", sid)
        with self.assertRaises(InvalidState):
            await self.engine.analyze_screen("alice", sid, "code")
        self.engine.classifier.classify.assert_not_awaited()

    async def test_custom_policy(self):
        """A custom policy changes the adjustment applied."""
        self.engine.policy = AdjustmentPolicy(high_threshold=90, low_threshold=50, bonus_minutes=5, penalty_minutes=-5)
        started = await self.engine.start_session("alice")
        result = await self.engine.adjust_session("alice", started["session"]["sessionId"], 95)
        self.assertEqual(result["delta"], 5)


class TestUsersAndGroups(EngineTestCase):
    """Test user summaries, groups and leaderboards through the engine."""

    async def test_user_summary(self):
        """Summary carries level progress and tree stage but not the version."""
        started = await self.engine.start_session("alice")
        self.clock.advance(90 * 60)
        await self.engine.stop_session("alice", started["session"]["sessionId"])

        summary = await self.engine.user_summary("alice")
        self.assertEqual(summary["totalFocusTime"], 90)
        self.assertEqual(summary["level"], 2)
        self.assertEqual(summary["minutesToNextLevel"], 30)
        self.assertEqual(summary["treeStage"], "Sapling")
        self.assertNotIn("version", summary)

    async def test_unknown_user_summary(self):
        """Unknown users are NotFound."""
        with self.assertRaises(NotFound):
            await self.engine.user_summary("ghost")

    async def test_register_requires_id(self):
        """A blank user id is rejected."""
        with self.assertRaises(ValidationError):
            await self.engine.register_user("  ")

    async def test_group_session_flow(self):
        """A group session credits the group and appears on its leaderboard."""
        created = await self.engine.create_group("alice", "Deep Work Club")
        gid = created["group"]["groupId"]
        await self.engine.register_user("bob")
        await self.engine.join_group("bob", gid)

        started = await self.engine.start_session("bob", group_id=gid)
        self.clock.advance(40 * 60)
        stopped = await self.engine.stop_session("bob", started["session"]["sessionId"])
        self.assertEqual(stopped["treeHealth"], 75)

        group = await self.engine.get_group("alice", gid)
        self.assertEqual(group["group"]["totalFocusTime"], 40)
        self.assertEqual(group["group"]["memberCount"], 2)
        members = {m["userId"]: m for m in group["members"]}
        self.assertEqual(set(members), {"alice", "bob"})
        self.assertEqual(members["bob"]["totalContribution"], 40)
        self.assertEqual(members["alice"]["totalContribution"], 0)

        board = await self.engine.leaderboard("alice", scope="group", group_id=gid)
        self.assertEqual(board["leaderboard"][0]["userId"], "bob")
        self.assertEqual(board["callerRank"], 2)

    async def test_get_group_requires_membership(self):
        """Non-members cannot read a group."""
        created = await self.engine.create_group("alice", "Private")
        with self.assertRaises(Forbidden):
            await self.engine.get_group("bob", created["group"]["groupId"])

    async def test_refresh_all_group_health(self):
        """Every group is refreshed."""
        await self.engine.create_group("alice", "One")
        await self.engine.create_group("alice", "Two")
        self.assertEqual(await self.engine.refresh_all_group_health(), {"refreshed": 2, "failed": 0})

    async def test_refresh_continues_past_conflicting_group(self):
        """A group whose refresh keeps conflicting is counted and the others still refresh."""
        first = await self.engine.create_group("alice", "One")
        await self.engine.create_group("alice", "Two")
        await self.engine.create_group("alice", "Three")
        conflicted = first["group"]["groupId"]
        real_refresh = self.engine.aggregation.refresh_group_health

        async def refresh(group_id):
            if group_id == conflicted:
                raise AggregationFailed("Tree health refresh did not land")
            return await real_refresh(group_id)

        with patch.object(self.engine.aggregation, "refresh_group_health", side_effect=refresh):
            result = await self.engine.refresh_all_group_health()
        self.assertEqual(result, {"refreshed": 2, "failed": 1})


if __name__ == "__main__":
    unittest.main()
