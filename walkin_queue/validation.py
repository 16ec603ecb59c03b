"""Input validation and sanitization for queue joins and service completion.

Validators collect every problem they find and raise a single
`ValidationError` so a client can show all of them at once.
"""

from __future__ import annotations

import re

from .errors import ValidationError
from .models import (
    MAX_ESTIMATED_SERVICE_MINUTES,
    MAX_SERVICE_DURATION_MINUTES,
    WALK_IN_PHONE,
)

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100
PHONE_MAX_LENGTH = 20
CUSTOMER_ID_MAX_LENGTH = 100

# Letters (any script), spaces, apostrophes and hyphens; must start with a letter.
_NAME_RE = re.compile(r"^[^\W\d_](?:[^\W\d_]|[ '\-])*$")
_PHONE_RE = re.compile(r"^[+]?[(]?[0-9]{1,3}[)]?[-\s.]?[(]?[0-9]{1,4}[)]?[-\s.]?[0-9]{1,4}$")
_STRIP_RE = re.compile(r"[<>;]")


def sanitize(value: object, max_length: int = 255) -> str:
    """Trim, truncate and drop markup/statement separators."""
    if not isinstance(value, str):
        return ""
    return _STRIP_RE.sub("", value.strip()[:max_length])


def is_valid_name(name: str) -> bool:
    return NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH and bool(_NAME_RE.match(name))


def is_valid_phone(phone: str) -> bool:
    return len(phone) <= PHONE_MAX_LENGTH and bool(_PHONE_RE.match(phone))


def _is_positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def validate_join(
    name: object,
    phone: object,
    estimated_service_minutes: object = None,
    *,
    is_walk_in: bool = False,
) -> tuple[str, str]:
    """Validate a join request and return the sanitized `(name, phone)`.

    Remote joins need a real-looking phone number and a name made of letters.
    Walk-ins are entered by staff, so any printable name is accepted and an
    empty phone becomes the walk-in placeholder.
    """
    errors: list[str] = []

    clean_name = sanitize(name)
    if not clean_name:
        errors.append("name is required")
    elif not clean_name.isprintable() or not NAME_MIN_LENGTH <= len(clean_name) <= NAME_MAX_LENGTH:
        errors.append(f"name must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} printable characters")
    elif not is_walk_in and not is_valid_name(clean_name):
        errors.append("name may only contain letters, spaces, apostrophes and hyphens")

    raw_phone = phone if isinstance(phone, str) else ""
    if len(raw_phone.strip()) > PHONE_MAX_LENGTH:
        errors.append(f"phone must be at most {PHONE_MAX_LENGTH} characters")
    clean_phone = sanitize(raw_phone, PHONE_MAX_LENGTH)
    if is_walk_in:
        clean_phone = clean_phone or WALK_IN_PHONE
    elif not clean_phone:
        errors.append("phone is required")
    elif not is_valid_phone(clean_phone):
        errors.append("phone must be a valid phone number")

    if estimated_service_minutes is not None:
        if (
            not _is_positive_int(estimated_service_minutes)
            or estimated_service_minutes > MAX_ESTIMATED_SERVICE_MINUTES
        ):
            errors.append(
                f"estimated service time must be a positive integer (max {MAX_ESTIMATED_SERVICE_MINUTES} minutes)"
            )

    if errors:
        raise ValidationError("invalid join request", details=errors)
    return clean_name, clean_phone


def validate_service_duration(duration_minutes: object) -> int:
    """Validate a recorded service duration; `None` is recorded as 0."""
    if duration_minutes is None:
        return 0
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
        raise ValidationError("service duration must be an integer number of minutes")
    if duration_minutes < 0 or duration_minutes > MAX_SERVICE_DURATION_MINUTES:
        raise ValidationError(
            f"service duration must be between 0 and {MAX_SERVICE_DURATION_MINUTES} minutes"
        )
    return duration_minutes


def validate_customer_id(customer_id: object) -> str:
    if not isinstance(customer_id, str) or not customer_id or len(customer_id) > CUSTOMER_ID_MAX_LENGTH:
        raise ValidationError("invalid customer id")
    return customer_id
