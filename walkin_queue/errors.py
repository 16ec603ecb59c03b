"""Error taxonomy and the shared error envelope.

Every failure the queue engine surfaces is a `QueueError` subclass with a
stable `code`. The MQTT service turns them into `ErrorResponse` messages so
customer and staff clients see the same shape whatever went wrong.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ErrorResponse:
    code: str
    message: str
    retryable: bool = False
    details: tuple[str, ...] = field(default_factory=tuple)

    def to_message(self, *, corr_id: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {
            "type": "error",
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            msg["details"] = list(self.details)
        if corr_id is not None:
            msg["corr_id"] = corr_id
        return msg


class QueueError(Exception):
    """Base class for every error the queue engine raises on purpose."""

    code = "queue_error"
    retryable = False

    def __init__(self, message: str, *, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = tuple(details or ())

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(self.code, self.message, self.retryable, self.details)


class ValidationError(QueueError):
    code = "validation_error"


class NotFound(QueueError):
    code = "not_found"


class InvalidState(QueueError):
    code = "invalid_state"


class IllegalTransition(InvalidState):
    code = "illegal_transition"


class QueueEmpty(QueueError):
    code = "queue_empty"


class AlreadyServing(QueueError):
    code = "already_serving"


class DuplicateActiveCustomer(QueueError):
    code = "duplicate_active_customer"


class RateLimited(QueueError):
    code = "rate_limited"


class Unauthorized(QueueError):
    code = "unauthorized"


class StoreUnavailable(QueueError):
    code = "store_unavailable"
    retryable = True


class StoreTimeout(StoreUnavailable):
    code = "timeout"


class AtomicInsertUnsupported(QueueError):
    """The backing store cannot assign a position and insert in one step."""

    code = "atomic_insert_unsupported"
