"""Screen-content scoring using Google Gemini."""

import logging
import socket
from typing import Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

import config
from ai.base_classifier import SYSTEM_PROMPT, AIScoreClassifier, build_user_prompt

logger = logging.getLogger(__name__)


class GeminiScoreClassifier(AIScoreClassifier):
    """Scores screen descriptions with a Gemini model."""

    source = "gemini"
    retryable_exceptions = (
        ConnectionError,
        TimeoutError,
        socket.gaierror,  # DNS lookup failures
        google_exceptions.ResourceExhausted,  # Rate limit
        google_exceptions.ServiceUnavailable,
        google_exceptions.DeadlineExceeded,
        google_exceptions.InternalServerError,
    )

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        model=None,
        **kwargs,
    ):
        """
        Initialise the Gemini classifier.

        Args:
            api_key: Gemini API key (defaults to config.GEMINI_API_KEY)
            model_name: Model to use (defaults to config.GEMINI_MODEL)
            model: Pre-built GenerativeModel, mainly for tests
            **kwargs: Timeout/retry/fallback settings for AIScoreClassifier
        """
        super().__init__(**kwargs)
        self.model_name = model_name or config.GEMINI_MODEL

        if model is None:
            api_key = api_key or config.GEMINI_API_KEY
            if not api_key:
                raise ValueError("Gemini API key required for score classification! Set GEMINI_API_KEY in .env")
            genai.configure(api_key=api_key)
            model = genai.GenerativeModel(
                model_name=self.model_name,
                system_instruction=SYSTEM_PROMPT,
                generation_config=genai.GenerationConfig(
                    temperature=0.2,
                    max_output_tokens=300,
                    response_mime_type="application/json",
                ),
            )
        self.model = model

        logger.info(f"Gemini score classifier initialized with {self.model_name}")

    async def _complete(self, screen_description: str) -> str:
        response = await self.model.generate_content_async(
            build_user_prompt(screen_description),
            request_options={"timeout": self.timeout},
        )

        # Safety filters can block the prompt or the candidate
        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            raise ValueError(f"Gemini response blocked by safety filter: {feedback.block_reason}")

        # response.text raises ValueError when there is no valid candidate
        content = response.text
        if not content or not content.strip():
            raise ValueError("Empty response from Gemini")
        return content
