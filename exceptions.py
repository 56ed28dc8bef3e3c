#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Errors raised by Vidrich and their mapping to enrichment failures and HTTP.

Every strategy error carries a FailureKind, so the orchestrator can decide
between falling back, stopping a strategy for the batch, or giving up on an
identifier without inspecting exception types itself. The same errors turn
into HTTP responses (status, X-Error-Code, Retry-After) at the API edge.
"""

from enum import Enum
from typing import Optional

from fastapi import HTTPException, status


class FailureKind(str, Enum):
    """Kinds of per-identifier enrichment failure."""

    QUOTA_EXCEEDED = "QuotaExceeded"
    COST_LIMIT_REACHED = "CostLimitReached"
    RATE_LIMITED = "RateLimited"
    TRANSIENT = "Transient"
    CONTENT_UNAVAILABLE = "ContentUnavailable"
    CIRCUIT_OPEN = "CircuitOpen"
    PARSE_FAILURE = "ParseFailure"

    @property
    def is_budget(self) -> bool:
        """True for the kinds that halt a strategy for the rest of a batch."""
        return self in (FailureKind.QUOTA_EXCEEDED, FailureKind.COST_LIMIT_REACHED)


class AppBaseError(Exception):
    """Root of the Vidrich error hierarchy.

    Subclasses set their defaults as class attributes; any of them can be
    overridden per instance.

    Attributes:
        message: Human-readable description.
        error_code: Value of the X-Error-Code response header.
        http_status_code: Status used when the error reaches the API.
        retry_after: Seconds a client should wait, if known.
        failure_kind: How the orchestrator classifies the error.
    """

    failure_kind: FailureKind = FailureKind.TRANSIENT
    default_message = "Application error"
    code: Optional[str] = None
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_retry_after: Optional[int] = None

    def __init__(self, message: Optional[str] = None, error_code: Optional[str] = None,
                 http_status_code: Optional[int] = None, retry_after: Optional[int] = None):
        self.message = message or self.default_message
        self.error_code = error_code or self.code or type(self).__name__.upper()
        self.http_status_code = http_status_code or self.status_code
        self.retry_after = retry_after if retry_after is not None else self.default_retry_after
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        headers = {"X-Error-Code": self.error_code}
        if self.retry_after:
            headers["Retry-After"] = str(self.retry_after)
        return HTTPException(status_code=self.http_status_code, detail=self.message, headers=headers)


class TransientError(AppBaseError):
    """A failure worth retrying or handing to the next strategy."""


class CriticalError(AppBaseError):
    """A failure that retrying cannot fix (bad setup, rejected credentials)."""


# --- Budgets ---

class QuotaExceededError(AppBaseError):
    """The YouTube Data API quota (daily or per-request budget) is spent."""

    failure_kind = FailureKind.QUOTA_EXCEEDED
    default_message = "YouTube API quota exceeded"
    code = "QUOTA_EXCEEDED"
    status_code = status.HTTP_403_FORBIDDEN
    default_retry_after = 3600


class CostLimitReachedError(AppBaseError):
    """A paid call would take spend past the cost ceiling."""

    failure_kind = FailureKind.COST_LIMIT_REACHED
    default_message = "Cost ceiling reached"
    code = "COST_LIMIT_REACHED"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


# --- Sources ---

class ContentUnavailableError(AppBaseError):
    """The video is deleted, private or region-blocked."""

    failure_kind = FailureKind.CONTENT_UNAVAILABLE
    default_message = "Content unavailable"
    code = "CONTENT_UNAVAILABLE"
    status_code = status.HTTP_404_NOT_FOUND


class RateLimitedError(TransientError):
    """The source answered 429, or 403 from a bot wall."""

    failure_kind = FailureKind.RATE_LIMITED
    default_message = "API rate limit reached"
    code = "RATE_LIMITED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_retry_after = 30

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = None):
        super().__init__(message, retry_after=retry_after)


class ParseFailureError(TransientError):
    """A page or model response held no usable metadata."""

    failure_kind = FailureKind.PARSE_FAILURE
    default_message = "Could not parse source response"
    code = "PARSE_FAILURE"
    status_code = status.HTTP_502_BAD_GATEWAY


class CircuitOpenError(TransientError):
    """The scraping circuit breaker is refusing calls."""

    failure_kind = FailureKind.CIRCUIT_OPEN
    default_message = "Service temporarily unavailable due to source failures"
    code = "SERVICE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_retry_after = 60


class TimeoutExceededError(TransientError):
    default_message = "Operation timed out"
    code = "TIMEOUT"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_retry_after = 10


class APIConfigurationError(CriticalError):
    """A provider key is missing or was rejected."""

    default_message = "API configuration error"
    code = "API_CONFIG_ERROR"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class InvalidInputError(AppBaseError):
    default_message = "Invalid input"
    code = "INVALID_INPUT"
    status_code = status.HTTP_400_BAD_REQUEST


# --- Mapping ---

def failure_kind_for(exception: Exception) -> FailureKind:
    """FailureKind for anything a strategy raised; foreign exceptions are Transient."""
    if isinstance(exception, AppBaseError):
        return exception.failure_kind
    return FailureKind.TRANSIENT


def handle_exception(exception: Exception) -> HTTPException:
    """HTTPException for any error reaching a route.

    ValueError counts as bad input; anything unknown becomes a 500 that names
    only the exception type.
    """
    if isinstance(exception, HTTPException):
        return exception
    if isinstance(exception, AppBaseError):
        return exception.to_http_exception()
    if isinstance(exception, ValueError):
        return InvalidInputError(str(exception)).to_http_exception()
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Internal server error: {type(exception).__name__}",
        headers={"X-Error-Code": "INTERNAL_SERVER_ERROR"}
    )
