"""Screen-content scoring using the OpenAI chat completions API."""

import logging
import socket
from typing import Optional

import openai
from openai import AsyncOpenAI

import config
from ai.base_classifier import SYSTEM_PROMPT, AIScoreClassifier, build_user_prompt

logger = logging.getLogger(__name__)


class OpenAIScoreClassifier(AIScoreClassifier):
    """
    Scores screen descriptions with an OpenAI chat model.

    The static system prompt is sent first on every request so OpenAI can
    cache it; only the screen description varies.
    """

    source = "openai"
    retryable_exceptions = (
        openai.APIConnectionError,
        openai.APITimeoutError,
        openai.RateLimitError,
        openai.InternalServerError,
        ConnectionError,
        TimeoutError,
        socket.gaierror,  # DNS lookup failures
    )

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        **kwargs,
    ):
        """
        Initialise the OpenAI classifier.

        Args:
            api_key: OpenAI API key (defaults to config.OPENAI_API_KEY)
            model: Chat model (defaults to config.OPENAI_MODEL)
            client: Pre-built async client, mainly for tests
            **kwargs: Timeout/retry/fallback settings for AIScoreClassifier
        """
        super().__init__(**kwargs)
        self.model = model or config.OPENAI_MODEL

        if client is None:
            api_key = api_key or config.OPENAI_API_KEY
            if not api_key:
                raise ValueError("OpenAI API key required for score classification! Set OPENAI_API_KEY in .env")
            client = AsyncOpenAI(api_key=api_key, max_retries=0)
        self.client = client

        logger.info(f"OpenAI score classifier initialized with {self.model}")

    async def _complete(self, screen_description: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(screen_description)},
            ],
            max_tokens=300,
            temperature=0.2,  # Low temperature keeps scores consistent
            timeout=self.timeout,
        )
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise ValueError("Empty response from OpenAI")
        return content
