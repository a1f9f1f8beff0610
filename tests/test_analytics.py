"""Unit tests for analytics module."""

import unittest
from datetime import datetime, timedelta, timezone
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tracking.analytics import (
    credited_minutes,
    elapsed_seconds,
    format_duration,
    level_for_minutes,
    level_progress,
    next_streak,
    round_half_up,
    tree_health_after,
    tree_stage,
)


class TestRounding(unittest.TestCase):
    """Test half-up rounding used for averages and health."""

    def test_halves_round_up(self):
        """2.5 rounds to 3 and 57.5 to 58 (not banker's rounding)."""
        self.assertEqual(round_half_up(2.5), 3)
        self.assertEqual(round_half_up(57.5), 58)

    def test_below_half_rounds_down(self):
        """57.49 rounds to 57."""
        self.assertEqual(round_half_up(57.49), 57)


class TestCreditedMinutes(unittest.TestCase):
    """Test duration and credit arithmetic."""

    def setUp(self):
        """Set up a fixed start time."""
        self.start = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_elapsed_seconds_floors(self):
        """Fractional seconds are floored."""
        end = self.start + timedelta(seconds=90, milliseconds=999)
        self.assertEqual(elapsed_seconds(self.start, end), 90)

    def test_elapsed_seconds_never_negative(self):
        """A clock that went backwards gives 0, not a negative duration."""
        self.assertEqual(elapsed_seconds(self.start, self.start - timedelta(seconds=30)), 0)

    def test_partial_minutes_are_dropped(self):
        """119 seconds credits 1 minute."""
        self.assertEqual(credited_minutes(119, 0), 1)

    def test_adjustment_is_added(self):
        """25 minutes with a net -10 adjustment credits 15."""
        self.assertEqual(credited_minutes(1500, -10), 15)

    def test_large_penalty_clamps_to_zero(self):
        """-1000 minutes of adjustment over 5 minutes credits exactly 0."""
        self.assertEqual(credited_minutes(300, -1000), 0)


class TestLevels(unittest.TestCase):
    """Test level derivation and progress."""

    def test_level_boundaries(self):
        """Level is floor(total / 60) + 1."""
        self.assertEqual(level_for_minutes(0), 1)
        self.assertEqual(level_for_minutes(59), 1)
        self.assertEqual(level_for_minutes(60), 2)
        self.assertEqual(level_for_minutes(119), 2)
        self.assertEqual(level_for_minutes(120), 3)

    def test_level_progress(self):
        """90 minutes is halfway through level 2."""
        progress = level_progress(90)
        self.assertEqual(progress["level"], 2)
        self.assertEqual(progress["minutesIntoLevel"], 30)
        self.assertEqual(progress["minutesToNextLevel"], 30)
        self.assertEqual(progress["progressPercent"], 50)

    def test_tree_stages(self):
        """Stages grow with level."""
        self.assertEqual(tree_stage(1), "Seedling")
        self.assertEqual(tree_stage(3), "Sapling")
        self.assertEqual(tree_stage(5), "Young Tree")
        self.assertEqual(tree_stage(8), "Mature Tree")
        self.assertEqual(tree_stage(20), "Ancient Tree")


class TestTreeHealth(unittest.TestCase):
    """Test tree health recomputation."""

    def test_full_adherence_pulls_up(self):
        """All members active moves health halfway to 100."""
        self.assertEqual(tree_health_after(50, 4, 4), 75)

    def test_no_adherence_pulls_down(self):
        """No active members moves health halfway to 0."""
        self.assertEqual(tree_health_after(100, 0, 4), 50)

    def test_partial_adherence(self):
        """One of three members active: 50 -> 42."""
        self.assertEqual(tree_health_after(50, 1, 3), 42)

    def test_empty_group(self):
        """A group with no members decays towards 0."""
        self.assertEqual(tree_health_after(0, 0, 0), 0)

    def test_always_bounded(self):
        """Health stays in [0, 100] for any inputs, including bad ones."""
        for current in (-50, 0, 37, 100, 250):
            for members in (0, 1, 5):
                for active in (-1, 0, 3, 10):
                    health = tree_health_after(current, active, members)
                    self.assertGreaterEqual(health, 0)
                    self.assertLessEqual(health, 100)

    def test_monotone_in_adherence(self):
        """More active members never gives lower health."""
        for current in (0, 40, 100):
            results = [tree_health_after(current, active, 5) for active in range(6)]
            self.assertEqual(results, sorted(results))


class TestStreaks(unittest.TestCase):
    """Test daily streak rules."""

    def setUp(self):
        """Set up a reference timestamp."""
        self.now = datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)

    def test_first_activity(self):
        """No previous activity starts a streak of 1."""
        self.assertEqual(next_streak(0, None, self.now), 1)

    def test_same_day_keeps_streak(self):
        """A second session on the same day keeps the streak."""
        self.assertEqual(next_streak(4, self.now - timedelta(hours=3), self.now), 4)

    def test_next_day_extends_streak(self):
        """Activity on the following day extends the streak."""
        self.assertEqual(next_streak(4, self.now - timedelta(days=1), self.now), 5)

    def test_gap_resets_streak(self):
        """Skipping a day resets the streak to 1."""
        self.assertEqual(next_streak(4, self.now - timedelta(days=2), self.now), 1)


class TestFormatDuration(unittest.TestCase):
    """Test human-readable durations used in log lines."""

    def test_minutes_and_seconds(self):
        """90 seconds formats as minutes and seconds."""
        self.assertEqual(format_duration(90), "1m 30s")

    def test_hours(self):
        """Hours show every component."""
        self.assertEqual(format_duration(3725), "1h 2m 5s")

    def test_zero(self):
        """Zero and negative durations format as 0s."""
        self.assertEqual(format_duration(0), "0s")
        self.assertEqual(format_duration(-5), "0s")


if __name__ == "__main__":
    unittest.main()
