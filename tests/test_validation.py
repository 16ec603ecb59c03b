import pytest

from walkin_queue.errors import ValidationError
from walkin_queue.validation import (
    sanitize,
    validate_customer_id,
    validate_join,
    validate_service_duration,
)


def test_sanitize_strips_markup_and_truncates():
    assert sanitize("  <b>Ana;</b>  ") == "bAna/b"
    assert sanitize("x" * 300) == "x" * 255
    assert sanitize(None) == ""


def test_validate_join_accepts_remote_customer():
    assert validate_join(" Ana María ", "555-0001") == ("Ana María", "555-0001")
    assert validate_join("O'Neil-Smith", "+1 555 0102", 30) == ("O'Neil-Smith", "+1 555 0102")


def test_validate_join_collects_every_problem():
    with pytest.raises(ValidationError) as exc:
        validate_join("A", "", 0)
    assert len(exc.value.details) == 3


@pytest.mark.parametrize("name", ["", "X", "R2D2", "a" * 101])
def test_validate_join_rejects_bad_names(name):
    with pytest.raises(ValidationError):
        validate_join(name, "555-0001")


def test_validate_join_rejects_bad_phone_and_estimate():
    with pytest.raises(ValidationError):
        validate_join("Ana", "call me maybe")
    with pytest.raises(ValidationError):
        validate_join("Ana", "555-0001", 121)
    with pytest.raises(ValidationError):
        validate_join("Ana", "555-0001", True)


def test_walk_in_gets_placeholder_phone_and_lenient_name():
    assert validate_join("Bob #2", None, is_walk_in=True) == ("Bob #2", "walk-in")
    with pytest.raises(ValidationError):
        validate_join("Bob", "1" * 21, is_walk_in=True)


def test_validate_service_duration():
    assert validate_service_duration(None) == 0
    assert validate_service_duration(300) == 300
    with pytest.raises(ValidationError):
        validate_service_duration(301)
    with pytest.raises(ValidationError):
        validate_service_duration(-1)


def test_validate_customer_id():
    assert validate_customer_id("customer_1_abc") == "customer_1_abc"
    with pytest.raises(ValidationError):
        validate_customer_id("")
    with pytest.raises(ValidationError):
        validate_customer_id(42)
