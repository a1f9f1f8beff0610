"""Score -> time adjustment policy for focus sessions."""

from dataclasses import dataclass

import config


@dataclass(frozen=True)
class AdjustmentPolicy:
    """
    Maps a focus score to a signed minute delta.

    A score at or above ``high_threshold`` earns ``bonus_minutes``; a score
    strictly below ``low_threshold`` costs ``penalty_minutes``; anything in
    between leaves the session unchanged.
    """

    high_threshold: int = config.HIGH_FOCUS_THRESHOLD
    low_threshold: int = config.LOW_FOCUS_THRESHOLD
    bonus_minutes: int = config.HIGH_FOCUS_BONUS_MINUTES
    penalty_minutes: int = config.LOW_FOCUS_PENALTY_MINUTES

    def __post_init__(self) -> None:
        if self.low_threshold > self.high_threshold:
            raise ValueError(
                f"low_threshold ({self.low_threshold}) must not exceed high_threshold ({self.high_threshold})"
            )

    def delta_for(self, score: int) -> int:
        """
        Adjustment in minutes for a single focus score.

        Examples:
            >>> AdjustmentPolicy(70, 40, 10, -20).delta_for(70)
            10
            >>> AdjustmentPolicy(70, 40, 10, -20).delta_for(40)
            0
        """
        if score >= self.high_threshold:
            return self.bonus_minutes
        if score < self.low_threshold:
            return self.penalty_minutes
        return 0


DEFAULT_POLICY = AdjustmentPolicy()


def score_to_adjustment(score: int, policy: AdjustmentPolicy = DEFAULT_POLICY) -> int:
    """Adjustment in minutes for a score under the given (default) policy."""
    return policy.delta_for(score)
