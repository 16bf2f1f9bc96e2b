"""Tests for inference error mapping."""
import pytest

from photobatch.errors import AnalysisError, AnalysisErrorCode, map_error


class TestMapError:
    @pytest.mark.parametrize("message,code,retryable", [
        ("AI_TIMEOUT after 30s", AnalysisErrorCode.TIMEOUT, True),
        ("Request timed out", AnalysisErrorCode.TIMEOUT, True),
        ("HTTP 429 Too Many Requests", AnalysisErrorCode.RATE_LIMIT, True),
        ("503 Service Unavailable", AnalysisErrorCode.PROVIDER_DOWN, True),
        ("connect ECONNREFUSED 127.0.0.1:443", AnalysisErrorCode.NETWORK, True),
        ("fetch failed", AnalysisErrorCode.NETWORK, True),
        ("Invalid image payload", AnalysisErrorCode.BAD_INPUT, False),
    ])
    def test_classifies_by_message(self, message, code, retryable):
        error = map_error(RuntimeError(message))
        assert error.code == code
        assert error.retryable is retryable

    def test_unknown_error_keeps_truncated_message(self):
        error = map_error(RuntimeError("x" * 500))
        assert error.code == AnalysisErrorCode.UNKNOWN
        assert len(error.message) == 200
        assert error.retryable

    def test_analysis_error_passes_through(self):
        original = AnalysisError(AnalysisErrorCode.BAD_INPUT, "corrupt jpeg", retryable=False)
        assert map_error(original) is original

    def test_builtin_timeout_error(self):
        assert map_error(TimeoutError()).code == AnalysisErrorCode.TIMEOUT
