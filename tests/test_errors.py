"""
Error classification tests.

Backend failures are classified into stable categories; recognition error
kinds map onto the recognition categories; user messages are French.
"""
import asyncio
import json

import aiohttp
import pytest

from command_pipeline.errors import (
    BackendError,
    BackendMalformed,
    BackendRateLimited,
    BackendTransient,
    ErrorCategory,
    ErrorHandler,
)
from command_pipeline.models import RecognitionErrorKind


class TestBackendErrorClassification:
    def test_typed_errors_carry_category(self):
        assert ErrorHandler.classify_backend_error(BackendRateLimited("HTTP 429")) == ErrorCategory.BACKEND_RATE_LIMITED
        assert ErrorHandler.classify_backend_error(BackendTransient("HTTP 503")) == ErrorCategory.BACKEND_TRANSIENT

    def test_malformed_is_retried_as_transient(self):
        error = BackendMalformed("malformed initial response")
        assert ErrorHandler.classify_backend_error(error) == ErrorCategory.BACKEND_MALFORMED
        assert isinstance(error, BackendTransient)

    def test_generic_backend_error_is_transient(self):
        assert ErrorHandler.classify_backend_error(BackendError("HTTP 400")) == ErrorCategory.BACKEND_TRANSIENT

    def test_timeouts_and_connection_errors(self):
        assert ErrorHandler.classify_backend_error(asyncio.TimeoutError()) == ErrorCategory.BACKEND_TRANSIENT
        error = aiohttp.ClientConnectionError("Connection refused")
        assert ErrorHandler.classify_backend_error(error) == ErrorCategory.BACKEND_TRANSIENT

    def test_rate_limit_in_message(self):
        assert ErrorHandler.classify_backend_error(Exception("429 Too Many Requests")) == ErrorCategory.BACKEND_RATE_LIMITED
        assert ErrorHandler.classify_backend_error(Exception("Rate limit reached")) == ErrorCategory.BACKEND_RATE_LIMITED

    def test_unknown_failures_are_transient(self):
        assert ErrorHandler.classify_backend_error(RuntimeError("boom")) == ErrorCategory.BACKEND_TRANSIENT

    def test_status_is_kept(self):
        error = BackendRateLimited("HTTP 429", status=429)
        assert error.status == 429
        assert isinstance(error, BackendError)


class TestRecognitionErrorClassification:
    @pytest.mark.parametrize("kind,category", [
        (RecognitionErrorKind.NETWORK, ErrorCategory.RECOGNITION_NETWORK),
        (RecognitionErrorKind.NOT_ALLOWED, ErrorCategory.RECOGNITION_DENIED),
        (RecognitionErrorKind.NO_SPEECH, ErrorCategory.RECOGNITION_TRANSIENT),
        (RecognitionErrorKind.OTHER, ErrorCategory.RECOGNITION_OTHER),
    ])
    def test_kinds(self, kind, category):
        assert ErrorHandler.classify_recognition_error(kind) == category

    def test_unknown_engine_kind_parses_as_other(self):
        assert RecognitionErrorKind.parse("audio-capture") is RecognitionErrorKind.OTHER
        assert RecognitionErrorKind.parse("not-allowed") is RecognitionErrorKind.NOT_ALLOWED


class TestReporting:
    def test_report_emits_ai_error(self, capsys):
        category = ErrorHandler.report_backend_error(
            BackendRateLimited("HTTP 429: slow down", status=429),
            attempt=2,
            correlation_id="cmd_1",
        )

        event = json.loads(capsys.readouterr().out.strip())

        assert category == ErrorCategory.BACKEND_RATE_LIMITED
        assert event["event_type"] == "ai.error"
        assert event["severity"] == "warn"
        assert event["category"] == "backend.rate_limited"
        assert event["attempt"] == 2
        assert event["status"] == 429
        assert event["correlation_id"] == "cmd_1"

    def test_secrets_are_redacted(self, capsys):
        ErrorHandler.report_backend_error(Exception("invalid api key sk-123"), attempt=1)

        event = json.loads(capsys.readouterr().out.strip())
        assert event["detail"] == "[redacted: potential secret]"


class TestUserMessages:
    def test_denied_mentions_microphone(self):
        assert "microphone" in ErrorHandler.get_user_message(ErrorCategory.RECOGNITION_DENIED)

    def test_connectivity_lost(self):
        assert ErrorHandler.get_user_message(ErrorCategory.CONNECTIVITY_LOST) == "Connexion Internet perdue"

    def test_unknown_category_has_generic_message(self):
        assert "réessayer" in ErrorHandler.get_user_message("something.else")
