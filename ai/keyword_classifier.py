"""Deterministic keyword heuristic for scoring screen content."""

import logging
from typing import Sequence, Tuple

from core.models import Classification

logger = logging.getLogger(__name__)


PRODUCTIVE_KEYWORDS: Tuple[str, ...] = (
    "code", "coding", "programming", "development", "vscode", "ide",
    "document", "writing", "editor", "research", "study", "learning",
    "work", "project", "analysis", "spreadsheet", "presentation",
    "terminal", "command", "database", "api", "documentation",
)

DISTRACTION_KEYWORDS: Tuple[str, ...] = (
    "youtube", "netflix", "facebook", "instagram", "twitter", "tiktok",
    "games", "gaming", "entertainment", "shopping", "social media",
    "chat", "messaging", "news", "reddit", "memes",
)

CATEGORY_PRODUCTIVE = "Productive Work"
CATEGORY_DISTRACTION = "Distraction"
CATEGORY_GENERAL = "General"


def count_matches(text: str, keywords: Sequence[str]) -> int:
    """
    Count keywords that appear anywhere in the text.

    Matching is a case-insensitive substring test, so each keyword counts
    at most once and overlapping keywords ("code" and "coding") both count.
    """
    lowered = text.lower()
    return sum(1 for keyword in keywords if keyword in lowered)


class KeywordScoreClassifier:
    """
    Keyword-count classifier used on its own or as the AI fallback.

    More productive than distracting matches scores min(90, 60 + 10p);
    more distracting matches scores max(10, 40 - 10d). A tie, including
    no matches at all, is a neutral 50 labelled productive.
    """

    source = "keyword"

    def __init__(
        self,
        productive_keywords: Sequence[str] = PRODUCTIVE_KEYWORDS,
        distraction_keywords: Sequence[str] = DISTRACTION_KEYWORDS,
    ):
        self.productive_keywords = tuple(productive_keywords)
        self.distraction_keywords = tuple(distraction_keywords)

    def classify_text(self, screen_description: str) -> Classification:
        """
        Score a screen description synchronously.

        Args:
            screen_description: Free-text description (None is treated as empty).

        Returns:
            Classification whose explanation reports both match counts.
        """
        text = screen_description or ""
        productive = count_matches(text, self.productive_keywords)
        distracting = count_matches(text, self.distraction_keywords)

        if productive > distracting:
            score = min(90, 60 + productive * 10)
            category = CATEGORY_PRODUCTIVE
            is_productive = True
        elif distracting > productive:
            score = max(10, 40 - distracting * 10)
            category = CATEGORY_DISTRACTION
            is_productive = False
        else:
            score = 50
            category = CATEGORY_GENERAL
            is_productive = True

        return Classification(
            focus_score=score,
            explanation=(
                "Analysis based on screen content keywords. "
                f"Productive indicators: {productive}, Distraction indicators: {distracting}"
            ),
            category=category,
            is_productive=is_productive,
            source=self.source,
        )

    async def classify(self, screen_description: str) -> Classification:
        return self.classify_text(screen_description)
