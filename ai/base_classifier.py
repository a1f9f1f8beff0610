"""Base protocol and shared utilities for screen-content score classifiers."""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol

import config
from ai.keyword_classifier import KeywordScoreClassifier
from core.errors import ClassificationUnavailable
from core.models import Classification, clamp_score
from core.retry import retry_with_backoff

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are an AI assistant that analyzes screen content to determine focus levels for productivity tracking.

Given a screen description, analyze how focused the user is on productive work.

Provide a focus score from 0-100 and a brief explanation:
- 90-100: Highly focused on productive work (coding, writing, research, learning)
- 70-89: Moderately focused on work-related tasks
- 50-69: Somewhat focused but with some distractions
- 30-49: Mostly distracted (social media, entertainment, shopping)
- 0-29: Completely unfocused (games, videos, non-work content)

Respond in this exact JSON format:
{
  "focusScore": 85,
  "explanation": "User is actively coding in VS Code with documentation open, showing high productivity focus.",
  "category": "Programming",
  "isProductive": true
}"""


def build_user_prompt(screen_description: str) -> str:
    """Wrap a screen description into the per-request prompt."""
    return f'Screen Description: "{screen_description}"'


def extract_json_from_response(content: str) -> str:
    """
    Extract a JSON object from model output that may contain extra text.

    Handles:
    - Pure JSON
    - JSON wrapped in ```json ... ``` or ``` ... ``` code blocks
    - JSON embedded in surrounding prose (matched by brace depth)

    Args:
        content: Raw model output.

    Returns:
        Extracted JSON string (still needs json.loads).

    Raises:
        ValueError: If the content is empty.
    """
    if not content or not content.strip():
        raise ValueError("Empty response content")

    content = content.strip()

    if "```" in content:
        fence = "```json" if "```json" in content else "```"
        parts = content.split(fence, 1)[1].split("```", 1)
        if parts[0].strip():
            content = parts[0].strip()

    if "{" in content and "}" in content:
        start = content.index("{")
        depth = 0
        for i, char in enumerate(content[start:], start):
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return content[start:i + 1]

    return content


def parse_classification_response(content: str, source: str) -> Classification:
    """
    Parse and validate a classification from model output.

    Missing fields get the same defaults the keyword path would use:
    score 50, category "General", productive unless explicitly false.

    Args:
        content: Raw model output.
        source: Provider label stored on the result.

    Returns:
        Validated Classification with a clamped score.

    Raises:
        ValueError: If no JSON object can be parsed or the score is not numeric.
    """
    json_str = extract_json_from_response(content)
    try:
        result = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise ValueError(f"Model output is not valid JSON: {e}") from e

    if not isinstance(result, dict):
        raise ValueError(f"Expected a JSON object, got {type(result).__name__}")

    raw_score = result.get("focusScore")
    score = 50 if raw_score is None else clamp_score(raw_score)

    return Classification(
        focus_score=score,
        explanation=str(result.get("explanation") or "Focus analysis completed"),
        category=str(result.get("category") or "General"),
        is_productive=result.get("isProductive") is not False,
        source=source,
    )


class ScoreClassifierProtocol(Protocol):
    """
    Interface every score classifier implements.

    ``classify`` never raises for classifier trouble: AI errors, timeouts
    and unparsable output all end in the keyword fallback.
    """

    async def classify(self, screen_description: str) -> Classification:
        """
        Judge how focused the described screen content is.

        Args:
            screen_description: Free-text description of the screen.

        Returns:
            Classification with a focus score in [0, 100].
        """
        ...


class AIScoreClassifier:
    """
    Shared machinery for AI-backed classifiers.

    Subclasses implement ``_complete(screen_description)`` returning the
    model's raw text. This class bounds the call by a timeout, retries
    transient errors, parses the result, and falls back to the keyword
    heuristic on any failure.
    """

    source = "ai"
    retryable_exceptions: tuple = (ConnectionError, TimeoutError, OSError)

    def __init__(
        self,
        fallback=None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        """
        Initialise shared classifier settings.

        Args:
            fallback: Keyword classifier used when the AI path fails.
            timeout: Hard bound in seconds on one classification.
            max_retries: Retries for transient provider errors.
            retry_delay: Initial backoff delay in seconds.
        """
        self.fallback = fallback or KeywordScoreClassifier()
        self.timeout = config.CLASSIFIER_TIMEOUT if timeout is None else timeout
        self.max_retries = config.CLASSIFIER_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = config.CLASSIFIER_RETRY_DELAY if retry_delay is None else retry_delay

    async def _complete(self, screen_description: str) -> str:
        raise NotImplementedError

    async def _classify_with_ai(self, screen_description: str) -> Classification:
        """
        Run the AI path once, bounded by the timeout.

        Raises:
            ClassificationUnavailable: On timeout, provider error or bad output.
        """
        async def make_api_call() -> str:
            return await self._complete(screen_description)

        try:
            content = await asyncio.wait_for(
                retry_with_backoff(
                    make_api_call,
                    max_retries=self.max_retries,
                    initial_delay=self.retry_delay,
                    max_delay=self.timeout,
                    retryable_exceptions=self.retryable_exceptions,
                    description=f"{self.source} classification",
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ClassificationUnavailable(f"{self.source} classifier timed out after {self.timeout}s") from e
        except Exception as e:
            raise ClassificationUnavailable(f"{self.source} classifier error: {e}") from e

        logger.debug(f"{self.source} raw response: {content[:200] if content else 'EMPTY'}")

        try:
            return parse_classification_response(content, self.source)
        except ValueError as e:
            raise ClassificationUnavailable(f"{self.source} returned unparsable output: {e}") from e

    async def classify(self, screen_description: str) -> Classification:
        """Classify with the AI provider, falling back to keywords on failure."""
        try:
            return await self._classify_with_ai(screen_description)
        except ClassificationUnavailable as e:
            logger.warning(f"Classification unavailable, using keyword fallback: {e}")
            return self.fallback.classify_text(screen_description)


def classification_payload(classification: Classification) -> Dict[str, Any]:
    """Response body fields for a classification (without the source tag)."""
    body = classification.to_dict()
    body.pop("source", None)
    return body
