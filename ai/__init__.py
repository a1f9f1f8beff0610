"""
Score classification with provider-agnostic AI scoring.

Supports OpenAI and Gemini via factory pattern, with the keyword
heuristic as fallback (or as the sole classifier).
"""

import logging
from typing import TYPE_CHECKING, Optional

import config

if TYPE_CHECKING:
    from ai.base_classifier import ScoreClassifierProtocol

logger = logging.getLogger(__name__)


def create_score_classifier(provider: Optional[str] = None) -> "ScoreClassifierProtocol":
    """
    Create a score classifier for the configured provider.

    Uses SCORE_PROVIDER from config unless ``provider`` is given.
    Supported providers: "openai" (default), "gemini", "keyword".
    An AI provider without an API key degrades to the keyword classifier.

    Args:
        provider: Override for config.SCORE_PROVIDER.

    Returns:
        ScoreClassifierProtocol: The classifier instance.
    """
    from ai.keyword_classifier import KeywordScoreClassifier

    provider = (provider or config.SCORE_PROVIDER).lower()

    if provider == "keyword":
        logger.info("Using keyword score classifier")
        return KeywordScoreClassifier()

    if provider not in ("openai", "gemini"):
        logger.warning(f"Unknown score provider '{provider}', defaulting to OpenAI. "
                       f"Supported providers: 'openai', 'gemini', 'keyword'")
        provider = "openai"

    if provider == "gemini":
        if not config.GEMINI_API_KEY:
            logger.warning("GEMINI_API_KEY not set, using keyword score classifier")
            return KeywordScoreClassifier()
        from ai.gemini_classifier import GeminiScoreClassifier
        logger.info("Using Gemini score provider")
        return GeminiScoreClassifier()

    if not config.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not set, using keyword score classifier")
        return KeywordScoreClassifier()
    from ai.openai_classifier import OpenAIScoreClassifier
    logger.info("Using OpenAI score provider")
    return OpenAIScoreClassifier()
