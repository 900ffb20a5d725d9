"""Structured operation results — expected failures are data, not exceptions."""
from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    UNCONFIRMED = "unconfirmed"


class ErrorKind(str, Enum):
    POLICY_VIOLATION = "policy_violation"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID_INPUT = "invalid_input"
    VENUE_ERROR = "venue_error"
    TRANSIENT = "transient"
    PARTIAL_FAILURE = "partial_failure"
    UNCONFIRMED = "unconfirmed"


class PolicyViolation(str, Enum):
    LTV_EXCEEDED = "ltv_exceeded"
    TARGET_LTV_EXCEEDED = "target_ltv_exceeded"
    LEVERAGE_EXCEEDED = "leverage_exceeded"
    PRICE_IMPACT_EXCEEDED = "price_impact_exceeded"
    ALLOCATION_CAP_EXCEEDED = "allocation_cap_exceeded"


class VenueRequestError(Exception):
    """Transport-level failure after the adapter's retries are exhausted."""


class VenueResponseError(Exception):
    """The venue answered but rejected or could not serve the request."""


class VenueNotFoundError(VenueResponseError):
    """HTTP 404; readers treat this as "no position yet"."""


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one execution primitive."""

    operation: str
    status: OutcomeStatus
    venue: str = ""
    transaction_id: str | None = None
    amounts: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_kind: ErrorKind | None = None
    violation: PolicyViolation | None = None
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @property
    def unconfirmed(self) -> bool:
        return self.status is OutcomeStatus.UNCONFIRMED

    @classmethod
    def ok(
        cls,
        operation: str,
        venue: str,
        transaction_id: str | None,
        amounts: dict[str, Any] | None = None,
    ) -> OperationResult:
        return cls(
            operation=operation,
            status=OutcomeStatus.SUCCESS,
            venue=venue,
            transaction_id=transaction_id,
            amounts=amounts or {},
        )

    @classmethod
    def simulated(
        cls, operation: str, venue: str, amounts: dict[str, Any] | None = None
    ) -> OperationResult:
        return cls(
            operation=operation,
            status=OutcomeStatus.SUCCESS,
            venue=venue,
            amounts=amounts or {},
            dry_run=True,
        )

    @classmethod
    def fail(
        cls,
        operation: str,
        venue: str,
        error: str,
        kind: ErrorKind,
        violation: PolicyViolation | None = None,
        transaction_id: str | None = None,
        amounts: dict[str, Any] | None = None,
    ) -> OperationResult:
        return cls(
            operation=operation,
            status=OutcomeStatus.FAILED,
            venue=venue,
            transaction_id=transaction_id,
            amounts=amounts or {},
            error=error,
            error_kind=kind,
            violation=violation,
        )

    @classmethod
    def policy(
        cls, operation: str, venue: str, violation: PolicyViolation, error: str
    ) -> OperationResult:
        return cls.fail(
            operation, venue, error, ErrorKind.POLICY_VIOLATION, violation=violation
        )

    @classmethod
    def pending(
        cls, operation: str, venue: str, transaction_id: str | None, error: str
    ) -> OperationResult:
        return cls(
            operation=operation,
            status=OutcomeStatus.UNCONFIRMED,
            venue=venue,
            transaction_id=transaction_id,
            error=error,
            error_kind=ErrorKind.UNCONFIRMED,
        )

    def describe(self) -> str:
        if self.success:
            ref = "dry run" if self.dry_run else (self.transaction_id or "no tx")
            return f"{self.operation} on {self.venue}: ok ({ref})"
        label = self.violation.value if self.violation else (
            self.error_kind.value if self.error_kind else self.status.value
        )
        return f"{self.operation} on {self.venue}: {label}: {self.error}"


# Venue, transport and input errors; everything else is unexpected.
EXPECTED_ERRORS = (
    VenueRequestError,
    VenueResponseError,
    asyncio.TimeoutError,
    aiohttp.ClientError,
    ValueError,
)


def classify(exc: Exception) -> ErrorKind:
    if isinstance(exc, (VenueRequestError, asyncio.TimeoutError, aiohttp.ClientError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, ValueError):
        return ErrorKind.INVALID_INPUT
    return ErrorKind.VENUE_ERROR


def guarded(operation: str) -> Callable:
    """Turn any exception escaping an operation into a failed result.

    Venue and transport errors are logged as plain errors; anything else is
    unexpected and logged with its traceback before becoming ``venue_error``.
    """

    def decorator(fn: Callable[..., Awaitable[OperationResult]]) -> Callable:
        @functools.wraps(fn)
        async def wrapper(self: Any, venue: str, *args: Any, **kwargs: Any) -> OperationResult:
            try:
                return await fn(self, venue, *args, **kwargs)
            except EXPECTED_ERRORS as e:
                kind = classify(e)
                logger.error("%s on %s failed (%s): %s", operation, venue, kind.value, e)
                return OperationResult.fail(operation, venue, str(e), kind)
            except Exception as e:
                logger.exception("%s on %s raised unexpectedly", operation, venue)
                return OperationResult.fail(
                    operation, venue, f"{type(e).__name__}: {e}", ErrorKind.VENUE_ERROR
                )

        return wrapper

    return decorator
