"""
Unit tests for the text provider and the retry helper. No network:
the LLM client is mocked.
"""

from unittest.mock import MagicMock, patch

import pytest

from lensroom.errors import ProviderError, ProviderInternalError, ValidationError
from lensroom.llm_client import MaxRetryErrorsException, TextProvider, call_with_retries_sync, is_openai_model
from lensroom.model_catalog import ModelCatalog


def _provider(client):
    return TextProvider(ModelCatalog().get("llm_text"), client, retries=2)


class TestTextProvider:

    def test_returns_text_and_usage(self):
        client = MagicMock(model_name="gemini-2.5-flash-lite")
        client.invoke.return_value = ("Three taglines.", {"promptTokens": 5, "completionTokens": 3, "totalTokens": 8})

        result = _provider(client).invoke("write taglines", None, {"temperature": 0.2, "max_tokens": 64})

        assert result.text == "Three taglines."
        assert result.usage["totalTokens"] == 8
        assert result.urls == []
        assert result.provider_task_id.startswith("llm_gemini-2.5-flash-lite_")
        client.invoke.assert_called_once_with("write taglines", temperature=0.2, max_tokens=64, retries=2)

    def test_exhausted_retries_is_provider_error(self):
        client = MagicMock(model_name="gemini-2.5-flash-lite")
        client.invoke.side_effect = MaxRetryErrorsException("All 2 retry attempts failed.")

        with pytest.raises(ProviderError):
            _provider(client).invoke("hi", None, {})

    def test_empty_text_is_internal_error(self):
        client = MagicMock(model_name="gemini-2.5-flash-lite")
        client.invoke.return_value = ("", {})

        with pytest.raises(ProviderInternalError):
            _provider(client).invoke("hi", None, {})

    def test_blank_prompt_is_rejected_before_calling(self):
        client = MagicMock(model_name="gemini-2.5-flash-lite")
        with pytest.raises(ValidationError):
            _provider(client).invoke("   ", None, {})
        client.invoke.assert_not_called()


class TestRetries:

    def test_retries_then_succeeds(self):
        fn = MagicMock(side_effect=[ValueError("flaky"), "ok"])
        assert call_with_retries_sync(fn, retries=3) == "ok"
        assert fn.call_count == 2

    def test_raises_after_all_attempts(self):
        fn = MagicMock(side_effect=ValueError("always"))
        log = MagicMock()

        with pytest.raises(MaxRetryErrorsException) as err:
            call_with_retries_sync(fn, retries=2, log=log)

        assert isinstance(err.value.__cause__, ValueError)
        assert fn.call_count == 2
        assert log.call_count == 2

    def test_last_attempt_does_not_register_backoff(self):
        fn = MagicMock(side_effect=TimeoutError("timed out"))
        with patch("lensroom.llm_client.time.sleep") as sleep:
            with pytest.raises(MaxRetryErrorsException):
                call_with_retries_sync(fn, retries=1)
        sleep.assert_not_called()


class TestModelRouting:

    def test_openai_prefixes(self):
        assert is_openai_model("gpt-4o-mini")
        assert not is_openai_model("gemini-2.5-flash-lite")
