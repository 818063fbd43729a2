"""Error taxonomy and the tagged lookup result used by the resolution ladder."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class PlacementBridgeError(Exception):
    """Base class for every error raised by this package."""

    kind: str = "error"

    def __init__(self, message: str, kind: str | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class AuthenticationError(PlacementBridgeError):
    kind = "other"


class InteractionRequiredError(AuthenticationError):
    """No valid session; an interactive prompt can recover."""

    kind = "interaction_required"


class InteractionInProgressError(AuthenticationError):
    """Another prompt is already open; waiting can recover."""

    kind = "interaction_in_progress"


class IdentifierResolutionError(PlacementBridgeError):
    kind = "not_found_after_retries"


class SubmissionError(PlacementBridgeError):
    kind = "rejected"

    def __init__(self, message: str, kind: str | None = None, status: int | None = None) -> None:
        super().__init__(message, kind)
        self.status = status


class ForwardingError(PlacementBridgeError):
    kind = "resolution_exhausted"


class HostError(PlacementBridgeError):
    """The host item or one of its capabilities reported a failure."""

    kind = "host"


class FailureKind(str, Enum):
    NOT_FOUND = "not_found"
    PARSE_ERROR = "parse_error"
    MALFORMED_ID = "malformed_id"
    WRONG_MAILBOX = "wrong_mailbox"
    UNAUTHORIZED = "unauthorized"
    TRANSPORT = "transport"
    OTHER = "other"


@dataclass
class LookupFailure:
    """Why a mailbox lookup did not return an item."""

    kind: FailureKind
    status: Optional[int] = None
    code: Optional[str] = None
    message: str = ""

    @property
    def retryable(self) -> bool:
        return self.kind is not FailureKind.UNAUTHORIZED

    def describe(self) -> str:
        parts = [self.message or self.kind.value]
        if self.code:
            parts.append(f"code={self.code}")
        if self.status is not None:
            parts.append(f"status={self.status}")
        return " ".join(parts)


def classify_failure(status: Optional[int], code: Optional[str], message: str = "") -> LookupFailure:
    """Map a Graph error response onto a ``LookupFailure`` tag."""
    code = code or ""
    lowered = (message or "").lower()
    if status is None:
        kind = FailureKind.TRANSPORT
    elif code == "ErrorInvalidMailboxItemId" or any(
        marker in lowered for marker in ("does not belong", "doesn't belong")
    ):
        kind = FailureKind.WRONG_MAILBOX
    elif status == 404:
        kind = FailureKind.NOT_FOUND
    elif code == "RequestBroker--ParseUri" and status in (400, 500):
        kind = FailureKind.PARSE_ERROR
    elif status == 400 and code == "ErrorInvalidIdMalformed":
        kind = FailureKind.MALFORMED_ID
    elif status in (401, 403):
        kind = FailureKind.UNAUTHORIZED
    else:
        kind = FailureKind.OTHER
    return LookupFailure(kind=kind, status=status, code=code or None, message=message)
