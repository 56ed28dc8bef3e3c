"""
Tests for the error hierarchy and its HTTP mapping.
"""
import unittest
import sys
import os
from fastapi import HTTPException

# Add the parent directory to the path so we can import the application modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from exceptions import (
    AppBaseError, APIConfigurationError, CircuitOpenError, ContentUnavailableError,
    CostLimitReachedError, CriticalError, FailureKind, InvalidInputError, ParseFailureError,
    QuotaExceededError, RateLimitedError, TimeoutExceededError,
    TransientError, failure_kind_for, handle_exception
)


class TestErrorDefaults(unittest.TestCase):

    # (error, error_code, status, retry_after, failure_kind, retryable)
    CASES = [
        (QuotaExceededError(), "QUOTA_EXCEEDED", 403, 3600, FailureKind.QUOTA_EXCEEDED, False),
        (CostLimitReachedError(), "COST_LIMIT_REACHED", 402, None, FailureKind.COST_LIMIT_REACHED, False),
        (ContentUnavailableError(), "CONTENT_UNAVAILABLE", 404, None, FailureKind.CONTENT_UNAVAILABLE, False),
        (RateLimitedError(), "RATE_LIMITED", 429, 30, FailureKind.RATE_LIMITED, True),
        (ParseFailureError(), "PARSE_FAILURE", 502, None, FailureKind.PARSE_FAILURE, True),
        (CircuitOpenError(), "SERVICE_UNAVAILABLE", 503, 60, FailureKind.CIRCUIT_OPEN, True),
        (TimeoutExceededError(), "TIMEOUT", 504, 10, FailureKind.TRANSIENT, True),
        (APIConfigurationError(), "API_CONFIG_ERROR", 503, None, FailureKind.TRANSIENT, False),
        (InvalidInputError(), "INVALID_INPUT", 400, None, FailureKind.TRANSIENT, False),
    ]

    def test_class_defaults(self):
        for error, code, status_code, retry_after, kind, retryable in self.CASES:
            with self.subTest(error=type(error).__name__):
                self.assertEqual(error.error_code, code)
                self.assertEqual(error.http_status_code, status_code)
                self.assertEqual(error.retry_after, retry_after)
                self.assertEqual(error.failure_kind, kind)
                self.assertEqual(isinstance(error, TransientError), retryable)
                self.assertTrue(error.message)

    def test_base_error_code_from_class_name(self):
        error = AppBaseError("boom")
        self.assertEqual(str(error), "boom")
        self.assertEqual(error.error_code, "APPBASEERROR")
        self.assertEqual(error.http_status_code, 500)
        self.assertIsNone(error.retry_after)

    def test_overrides(self):
        error = TransientError("YouTube API server error (HTTP 503)", error_code="UPSTREAM",
                               http_status_code=502, retry_after=5)
        self.assertEqual(error.error_code, "UPSTREAM")
        self.assertEqual(error.http_status_code, 502)
        self.assertEqual(error.retry_after, 5)

    def test_rate_limited_takes_retry_after(self):
        error = RateLimitedError("Access forbidden fetching abc (HTTP 403)", retry_after=120)
        self.assertEqual(error.retry_after, 120)
        self.assertEqual(error.message, "Access forbidden fetching abc (HTTP 403)")

    def test_configuration_error_is_critical(self):
        self.assertIsInstance(APIConfigurationError("openrouter API key is not configured."), CriticalError)


class TestFailureKind(unittest.TestCase):

    def test_budget_kinds(self):
        budget = {kind for kind in FailureKind if kind.is_budget}
        self.assertEqual(budget, {FailureKind.QUOTA_EXCEEDED, FailureKind.COST_LIMIT_REACHED})

    def test_failure_kind_for_foreign_exceptions(self):
        self.assertEqual(failure_kind_for(KeyError("x")), FailureKind.TRANSIENT)
        self.assertEqual(failure_kind_for(OSError("reset")), FailureKind.TRANSIENT)
        self.assertEqual(failure_kind_for(ParseFailureError()), FailureKind.PARSE_FAILURE)

    def test_values_are_wire_names(self):
        self.assertEqual(FailureKind.COST_LIMIT_REACHED.value, "CostLimitReached")
        self.assertEqual(FailureKind("ContentUnavailable"), FailureKind.CONTENT_UNAVAILABLE)


class TestHandleException(unittest.TestCase):

    def test_app_error_headers(self):
        http_exception = handle_exception(QuotaExceededError("Daily quota spent"))

        self.assertEqual(http_exception.status_code, 403)
        self.assertEqual(http_exception.detail, "Daily quota spent")
        self.assertEqual(http_exception.headers, {"X-Error-Code": "QUOTA_EXCEEDED", "Retry-After": "3600"})

    def test_no_retry_after_header_without_hint(self):
        http_exception = handle_exception(ContentUnavailableError("Video removed"))
        self.assertNotIn("Retry-After", http_exception.headers)

    def test_http_exception_passes_through(self):
        original = HTTPException(status_code=404, detail="Not found")
        self.assertIs(handle_exception(original), original)

    def test_value_error_is_invalid_input(self):
        http_exception = handle_exception(ValueError("batch_size must be greater than 0"))

        self.assertEqual(http_exception.status_code, 400)
        self.assertEqual(http_exception.detail, "batch_size must be greater than 0")
        self.assertEqual(http_exception.headers["X-Error-Code"], "INVALID_INPUT")

    def test_unknown_error_hides_details(self):
        http_exception = handle_exception(RuntimeError("db password is hunter2"))

        self.assertEqual(http_exception.status_code, 500)
        self.assertEqual(http_exception.detail, "Internal server error: RuntimeError")
        self.assertEqual(http_exception.headers["X-Error-Code"], "INTERNAL_SERVER_ERROR")


if __name__ == '__main__':
    unittest.main()
