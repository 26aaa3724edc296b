# lensroom/fallback.py
"""
Degraded-mode guard for the ledger / generation-record / asset collaborators.

Every collaborator call goes through DegradedModeGuard. Failures are
classified into one of four unavailability reasons:

    missing_config | network_error | auth_error | other

STRICT (degraded_mode=False):
  - the classified failure is re-raised as CollaboratorUnavailableError (503).

DEGRADED (degraded_mode=True):
  - the failure is swallowed, the caller gets GuardedResult(value=None, reason=...)
    and the reason is recorded on the guard so the orchestrator can tag the
    response as best-effort.

Business outcomes (InferError subclasses such as InsufficientCreditsError) and
record state violations are never classified: they always propagate unchanged.

One guard instance belongs to one request; it is not shared.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, TypeVar

import requests
from google.api_core import exceptions as gapi_exceptions
from google.auth import exceptions as google_auth_exceptions
from sqlalchemy.exc import ArgumentError, DBAPIError, InterfaceError, NoSuchModuleError, OperationalError

from lensroom.errors import CollaboratorUnavailableError, GenerationStateError, InferError, MissingConfigError

logger = logging.getLogger("lensroom_infer")

T = TypeVar("T")

_MISSING_CONFIG = (
    MissingConfigError,
    ArgumentError,
    NoSuchModuleError,
    google_auth_exceptions.DefaultCredentialsError,
)
_AUTH = (
    google_auth_exceptions.RefreshError,
    gapi_exceptions.Unauthenticated,
    gapi_exceptions.Forbidden,
    gapi_exceptions.Unauthorized,
)
_NETWORK = (
    requests.ConnectionError,
    requests.Timeout,
    OperationalError,
    InterfaceError,
    gapi_exceptions.ServiceUnavailable,
    gapi_exceptions.DeadlineExceeded,
    gapi_exceptions.TooManyRequests,
    google_auth_exceptions.TransportError,
    ConnectionError,
    TimeoutError,
)


def classify_error(error: BaseException) -> str:
    """Map an infrastructure failure to an unavailability reason."""
    if isinstance(error, _MISSING_CONFIG):
        return "missing_config"
    if isinstance(error, _AUTH):
        return "auth_error"
    if isinstance(error, requests.HTTPError):
        status = getattr(error.response, "status_code", None)
        if status in (401, 403):
            return "auth_error"
        return "network_error" if status is None or status >= 500 else "other"
    if isinstance(error, _NETWORK):
        return "network_error"
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return "network_error"
    return "other"


def is_business_error(error: BaseException) -> bool:
    return isinstance(error, (InferError, GenerationStateError))


@dataclass(frozen=True)
class GuardedResult(Generic[T]):
    value: Optional[T] = None
    reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.reason is not None


class DegradedModeGuard:
    def __init__(self, degraded_mode: bool):
        self.degraded_mode = degraded_mode
        self.reasons: List[str] = []

    @property
    def degraded(self) -> bool:
        return bool(self.reasons)

    def degraded_reason(self) -> Optional[str]:
        if not self.reasons:
            return None
        # keep first-seen order, drop repeats from batch loops
        return "; ".join(dict.fromkeys(self.reasons))

    def record(self, reason: str) -> None:
        self.reasons.append(reason)

    def call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> GuardedResult[T]:
        try:
            return GuardedResult(value=fn(*args, **kwargs))
        except Exception as e:
            return self._handle(operation, e)

    async def acall(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> GuardedResult[T]:
        """Same as call(), with the blocking collaborator run in a worker thread."""
        try:
            return GuardedResult(value=await asyncio.to_thread(fn, *args, **kwargs))
        except Exception as e:
            return self._handle(operation, e)

    def guarded(self, operation: str):
        """Decorator form: @guard.guarded("ledger.adjust")"""

        def decorator(fn: Callable[..., T]) -> Callable[..., GuardedResult[T]]:
            @functools.wraps(fn)
            def wrapper(*args: Any, **kwargs: Any) -> GuardedResult[T]:
                return self.call(operation, fn, *args, **kwargs)

            return wrapper

        return decorator

    def _handle(self, operation: str, error: Exception) -> GuardedResult:
        if is_business_error(error):
            raise error

        reason = classify_error(error)
        if not self.degraded_mode:
            logger.error("[Guard] %s unavailable (%s): %s", operation, reason, error)
            raise CollaboratorUnavailableError(operation, reason, str(error)) from error

        logger.warning("[Guard] DEGRADED: %s skipped (%s): %s", operation, reason, error)
        tagged = f"{operation}: {reason}"
        self.record(tagged)
        return GuardedResult(value=None, reason=tagged)
