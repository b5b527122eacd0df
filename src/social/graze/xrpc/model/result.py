"""
Result envelope returned by every XRPC operation.

Remote failures, transport failures and caller cancellation are all reported
through :class:`XrpcResult`; callers branch on :attr:`XrpcResult.succeeded` rather
than on exception types.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Mapping, Optional, TypeVar

from multidict import CIMultiDictProxy
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

T = TypeVar("T")

RATELIMIT_LIMIT = "ratelimit-limit"
RATELIMIT_REMAINING = "ratelimit-remaining"
RATELIMIT_RESET = "ratelimit-reset"
RATELIMIT_POLICY = "ratelimit-policy"


class ResultOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    TRANSPORT_ERROR = "transport_error"


class ErrorDetail(BaseModel):
    """Structured error body returned by an XRPC service.

    OAuth endpoints use ``error_description`` where XRPC uses ``message``; both
    are accepted. Unrecognized fields are kept as extra attributes.
    """

    model_config = ConfigDict(extra="allow")

    error: Optional[str] = None
    message: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("message", "error_description")
    )


class EmptyResponse(BaseModel):
    """Value type for procedures that return no body."""


class RateLimitPolicy(BaseModel):
    quota: int
    window_seconds: int

    @staticmethod
    def parse(value: Optional[str]) -> Optional["RateLimitPolicy"]:
        """Parse a ``<quota>;w=<window>`` policy value, returning None if malformed."""
        if value is None or ";w=" not in value:
            return None
        parts = value.split(";w=")
        if len(parts) != 2:
            return None
        try:
            return RateLimitPolicy(
                quota=int(parts[0].strip()), window_seconds=int(parts[1].strip())
            )
        except ValueError:
            return None


class RateLimit(BaseModel):
    limit: int
    remaining: int
    reset: datetime
    policy: Optional[RateLimitPolicy] = None

    @staticmethod
    def from_headers(headers: Optional[Mapping[str, str]]) -> Optional["RateLimit"]:
        """Build a rate-limit snapshot from response headers.

        The limit, remaining and reset headers are all required. Malformed values
        produce no snapshot.
        """
        if headers is None:
            return None

        limit = headers.get(RATELIMIT_LIMIT)
        remaining = headers.get(RATELIMIT_REMAINING)
        reset = headers.get(RATELIMIT_RESET)
        if limit is None or remaining is None or reset is None:
            return None

        try:
            return RateLimit(
                limit=int(limit),
                remaining=int(remaining),
                reset=datetime.fromtimestamp(int(reset), tz=timezone.utc),
                policy=RateLimitPolicy.parse(headers.get(RATELIMIT_POLICY)),
            )
        except (ValueError, OverflowError, OSError):
            return None


@dataclass(frozen=True)
class XrpcResult(Generic[T]):
    outcome: ResultOutcome
    status_code: Optional[int] = None
    value: Optional[T] = None
    error: Optional[ErrorDetail] = None
    rate_limit: Optional[RateLimit] = None
    headers: Optional[CIMultiDictProxy[str]] = None

    def __post_init__(self) -> None:
        if self.outcome == ResultOutcome.SUCCESS and self.value is None:
            raise ValueError("A successful result must carry a value")
        if self.outcome != ResultOutcome.SUCCESS and self.value is not None:
            raise ValueError("A failed result must not carry a value")

    @property
    def succeeded(self) -> bool:
        return self.outcome == ResultOutcome.SUCCESS

    @property
    def cancelled(self) -> bool:
        return self.outcome == ResultOutcome.CANCELLED

    @staticmethod
    def success(
        value: Any,
        status_code: int,
        headers: Optional[CIMultiDictProxy[str]] = None,
    ) -> "XrpcResult[Any]":
        return XrpcResult(
            outcome=ResultOutcome.SUCCESS,
            status_code=status_code,
            value=value,
            rate_limit=RateLimit.from_headers(headers),
            headers=headers,
        )

    @staticmethod
    def failure(
        status_code: Optional[int],
        error: Optional[ErrorDetail] = None,
        headers: Optional[CIMultiDictProxy[str]] = None,
    ) -> "XrpcResult[Any]":
        return XrpcResult(
            outcome=ResultOutcome.FAILURE,
            status_code=status_code,
            error=error,
            rate_limit=RateLimit.from_headers(headers),
            headers=headers,
        )

    @staticmethod
    def cancellation() -> "XrpcResult[Any]":
        return XrpcResult(
            outcome=ResultOutcome.CANCELLED,
            error=ErrorDetail(error="Cancelled", message="The request was cancelled"),
        )

    @staticmethod
    def transport_failure(exception: BaseException) -> "XrpcResult[Any]":
        return XrpcResult(
            outcome=ResultOutcome.TRANSPORT_ERROR,
            error=ErrorDetail(error=type(exception).__name__, message=str(exception)),
        )
