from __future__ import annotations

# Admission: turning a join request into a waiting queue entry.
#
# Remote customers join on their own; walk-ins are typed in by staff (the
# service facade checks operator authorization before calling in here). Both
# end up as the same kind of entry; walk-ins are recognisable by the prefix of
# their customer id.

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable

from .errors import RateLimited, ValidationError
from .models import CUSTOMER_ID_PREFIX, DEFAULT_SERVICE_MINUTES, WALK_IN_ID_PREFIX, QueueEntry
from .notifier import CUSTOMER_JOINED, ChangeNotifier
from .rate_limit import SlidingWindowRateLimiter
from .sequencer import PositionSequencer
from .validation import validate_customer_id, validate_join

logger = logging.getLogger(__name__)


def generate_customer_id(*, walk_in: bool = False) -> str:
    """Millisecond timestamp plus a random suffix, e.g. `customer_1718000000000_9f2c41ab07`."""
    prefix = WALK_IN_ID_PREFIX if walk_in else CUSTOMER_ID_PREFIX
    return f"{prefix}{int(time.time() * 1000)}_{secrets.token_hex(5)}"


@dataclass(frozen=True)
class AdmissionResult:
    position: int
    customer_id: str
    entry: QueueEntry

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "joined",
            "customer_id": self.customer_id,
            "position": self.position,
            "entry": self.entry.to_message(),
        }


class AdmissionController:
    """Validates join requests and sequences them into the queue."""

    def __init__(
        self,
        sequencer: PositionSequencer,
        notifier: ChangeNotifier,
        *,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        default_service_minutes: int = DEFAULT_SERVICE_MINUTES,
        id_factory: Callable[..., str] = generate_customer_id,
    ) -> None:
        self.sequencer = sequencer
        self.notifier = notifier
        self.rate_limiter = rate_limiter
        self.default_service_minutes = default_service_minutes
        self._id_factory = id_factory

    def admit(
        self,
        name: object,
        phone: object,
        estimated_service_minutes: int | None = None,
        *,
        is_walk_in: bool = False,
        customer_id: str | None = None,
        caller: str | None = None,
    ) -> AdmissionResult:
        """Add a customer to the end of the queue.

        Args:
            customer_id: re-submitted id from an earlier attempt; rejected
                with `DuplicateActiveCustomer` while that id is still active and
                with `ValidationError` unless it carries the prefix of its kind.
            caller: identity used for rate limiting (client id, address...);
                walk-ins entered by staff are not rate limited.
        """
        clean_name, clean_phone = validate_join(
            name, phone, estimated_service_minutes, is_walk_in=is_walk_in
        )
        if customer_id is not None:
            customer_id = validate_customer_id(customer_id)
            prefix = WALK_IN_ID_PREFIX if is_walk_in else CUSTOMER_ID_PREFIX
            if not customer_id.startswith(prefix):
                raise ValidationError(f"customer id must start with {prefix!r}")

        if self.rate_limiter is not None and not is_walk_in:
            identity = caller or clean_phone
            if not self.rate_limiter.hit(identity):
                logger.warning("join rate limit exceeded for %s", identity)
                raise RateLimited("too many join requests, please wait a minute")

        entry = self.sequencer.assign_next(
            customer_id=customer_id or self._id_factory(walk_in=is_walk_in),
            name=clean_name,
            phone=clean_phone,
            estimated_service_minutes=estimated_service_minutes or self.default_service_minutes,
        )
        logger.info(
            "%s %s joined at position %d",
            "walk-in" if is_walk_in else "customer",
            entry.customer_id,
            entry.position,
        )
        self.notifier.publish(CUSTOMER_JOINED, entry)
        return AdmissionResult(position=entry.position, customer_id=entry.customer_id, entry=entry)
