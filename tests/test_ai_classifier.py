"""
Tests for the AI score classifiers: response parsing, timeouts and the
keyword fallback. The OpenAI and Gemini clients are mocked; no network.
"""

import asyncio
import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ai import create_score_classifier
from ai.base_classifier import extract_json_from_response, parse_classification_response
from ai.gemini_classifier import GeminiScoreClassifier
from ai.keyword_classifier import KeywordScoreClassifier
from ai.openai_classifier import OpenAIScoreClassifier


def _openai_response(content):
    """Build a fake chat completion response."""
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    return response


def _openai_classifier(create, **kwargs):
    """Build an OpenAI classifier around a mocked completions.create."""
    client = MagicMock()
    client.chat.completions.create = create
    kwargs.setdefault("timeout", 1.0)
    kwargs.setdefault("max_retries", 0)
    kwargs.setdefault("retry_delay", 0)
    return OpenAIScoreClassifier(client=client, **kwargs)


class TestResponseParsing(unittest.TestCase):
    """Test JSON extraction and validation of model output."""

    def test_plain_json(self):
        """Pure JSON passes through."""
        self.assertEqual(extract_json_from_response('{"focusScore": 80}'), '{"focusScore": 80}')

    def test_fenced_json(self):
        """JSON inside a ```json block is extracted."""
        content = 'Here you go:\n```json\n{"focusScore": 80}\n```\nThanks'
        self.assertEqual(extract_json_from_response(content), '{"focusScore": 80}')

    def test_embedded_json(self):
        """JSON embedded in prose is matched by brace depth."""
        content = 'Result: {"focusScore": 80, "meta": {"a": 1}} done'
        self.assertEqual(extract_json_from_response(content), '{"focusScore": 80, "meta": {"a": 1}}')

    def test_empty_rejected(self):
        """Empty output is an error."""
        with self.assertRaises(ValueError):
            extract_json_from_response("   ")

    def test_defaults_for_missing_fields(self):
        """Missing fields default to 50, General and productive."""
        result = parse_classification_response("{}", "openai")
        self.assertEqual(result.focus_score, 50)
        self.assertEqual(result.category, "General")
        self.assertTrue(result.is_productive)

    def test_explicit_false_productive(self):
        """Only an explicit false marks content unproductive."""
        result = parse_classification_response('{"focusScore": 20, "isProductive": false}', "openai")
        self.assertFalse(result.is_productive)

    def test_out_of_range_clamped(self):
        """Scores outside [0, 100] are clamped."""
        self.assertEqual(parse_classification_response('{"focusScore": 150}', "openai").focus_score, 100)
        self.assertEqual(parse_classification_response('{"focusScore": -7}', "openai").focus_score, 0)

    def test_non_numeric_score_rejected(self):
        """A non-numeric score is a parse failure."""
        with self.assertRaises(ValueError):
            parse_classification_response('{"focusScore": "high"}', "openai")

    def test_garbage_rejected(self):
        """Text with no JSON object is a parse failure."""
        with self.assertRaises(ValueError):
            parse_classification_response("I cannot help with that.", "openai")


class TestOpenAIClassifier(unittest.IsolatedAsyncioTestCase):
    """Test the OpenAI classifier with a mocked client."""

    async def test_successful_classification(self):
        """A valid response is returned as-is, tagged openai."""
        create = AsyncMock(return_value=_openai_response(
            '{"focusScore": 85, "explanation": "Coding", "category": "Programming", "isProductive": true}'
        ))
        result = await _openai_classifier(create).classify("VS Code with a Python file")
        self.assertEqual(result.focus_score, 85)
        self.assertEqual(result.category, "Programming")
        self.assertEqual(result.source, "openai")
        create.assert_awaited_once()

    async def test_score_clamped(self):
        """An out-of-range AI score is clamped into [0, 100]."""
        create = AsyncMock(return_value=_openai_response('{"focusScore": 400}'))
        result = await _openai_classifier(create).classify("anything")
        self.assertEqual(result.focus_score, 100)

    async def test_error_falls_back_to_keywords(self):
        """Any API error falls back to the keyword heuristic."""
        create = AsyncMock(side_effect=RuntimeError("boom"))
        result = await _openai_classifier(create).classify("Watching YouTube")
        self.assertEqual(result.source, "keyword")
        self.assertEqual(result.focus_score, 30)

    async def test_unparsable_output_falls_back(self):
        """Free text without JSON falls back to the keyword heuristic."""
        create = AsyncMock(return_value=_openai_response("Looks productive to me!"))
        result = await _openai_classifier(create).classify("Reading a spreadsheet")
        self.assertEqual(result.source, "keyword")
        self.assertEqual(result.focus_score, 70)

    async def test_empty_output_falls_back(self):
        """An empty completion falls back to the keyword heuristic."""
        create = AsyncMock(return_value=_openai_response(""))
        result = await _openai_classifier(create).classify("code")
        self.assertEqual(result.source, "keyword")

    async def test_timeout_falls_back(self):
        """A call slower than the timeout falls back instead of hanging."""
        async def slow_create(*args, **kwargs):
            await asyncio.sleep(5)

        classifier = _openai_classifier(AsyncMock(side_effect=slow_create), timeout=0.05)
        result = await classifier.classify("Watching YouTube")
        self.assertEqual(result.source, "keyword")

    async def test_transient_error_retried(self):
        """A transient connection error is retried before giving up."""
        create = AsyncMock(side_effect=[
            ConnectionError("reset"),
            _openai_response('{"focusScore": 72, "category": "Writing"}'),
        ])
        result = await _openai_classifier(create, max_retries=1).classify("Writing a report")
        self.assertEqual(result.source, "openai")
        self.assertEqual(result.focus_score, 72)
        self.assertEqual(create.await_count, 2)

    async def test_custom_fallback(self):
        """A provided fallback classifier is used on failure."""
        fallback = MagicMock()
        fallback.classify_text.return_value = "fallback-result"
        classifier = _openai_classifier(AsyncMock(side_effect=RuntimeError("down")), fallback=fallback)
        self.assertEqual(await classifier.classify("x"), "fallback-result")
        fallback.classify_text.assert_called_once_with("x")

    def test_requires_api_key(self):
        """Without a client or key the classifier refuses to start."""
        with patch("config.OPENAI_API_KEY", ""):
            with self.assertRaises(ValueError):
                OpenAIScoreClassifier()


class TestGeminiClassifier(unittest.IsolatedAsyncioTestCase):
    """Test the Gemini classifier with a mocked model."""

    async def test_successful_classification(self):
        """A valid response is parsed and tagged gemini."""
        model = MagicMock()
        model.generate_content_async = AsyncMock(return_value=MagicMock(
            prompt_feedback=None,
            text='{"focusScore": 20, "explanation": "Video", "category": "Entertainment", "isProductive": false}',
        ))
        classifier = GeminiScoreClassifier(model=model, timeout=1.0, max_retries=0)
        result = await classifier.classify("Netflix in full screen")
        self.assertEqual(result.focus_score, 20)
        self.assertFalse(result.is_productive)
        self.assertEqual(result.source, "gemini")

    async def test_blocked_response_falls_back(self):
        """A safety-blocked response falls back to keywords."""
        model = MagicMock()
        model.generate_content_async = AsyncMock(return_value=MagicMock(
            prompt_feedback=MagicMock(block_reason="SAFETY"),
        ))
        classifier = GeminiScoreClassifier(model=model, timeout=1.0, max_retries=0)
        result = await classifier.classify("Watching YouTube")
        self.assertEqual(result.source, "keyword")


class TestClassifierFactory(unittest.TestCase):
    """Test provider selection."""

    def test_keyword_provider(self):
        """The keyword provider needs no API key."""
        self.assertIsInstance(create_score_classifier("keyword"), KeywordScoreClassifier)

    def test_missing_key_degrades_to_keywords(self):
        """An AI provider without a key falls back to the keyword classifier."""
        with patch("config.OPENAI_API_KEY", ""):
            self.assertIsInstance(create_score_classifier("openai"), KeywordScoreClassifier)
        with patch("config.GEMINI_API_KEY", ""):
            self.assertIsInstance(create_score_classifier("gemini"), KeywordScoreClassifier)

    def test_openai_provider(self):
        """With a key the OpenAI classifier is created."""
        with patch("config.OPENAI_API_KEY", "sk-test-key-1234567890"):
            self.assertIsInstance(create_score_classifier("openai"), OpenAIScoreClassifier)


if __name__ == "__main__":
    unittest.main()
