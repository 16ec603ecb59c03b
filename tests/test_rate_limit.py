import pytest

from walkin_queue.auth import TokenAuthorizer
from walkin_queue.rate_limit import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_limits_per_identity_within_window():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=3, window_seconds=60, clock=clock)
    assert [limiter.hit("a") for _ in range(4)] == [True, True, True, False]
    assert limiter.hit("b") is True


def test_window_slides():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)
    limiter.hit("a")
    clock.t += 30
    limiter.hit("a")
    assert limiter.hit("a") is False
    clock.t += 31
    # The first hit has aged out; the second is still inside the window.
    assert limiter.hit("a") is True
    assert limiter.hit("a") is False


def test_reset():
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
    limiter.hit("a")
    limiter.hit("b")
    limiter.reset("a")
    assert limiter.hit("a") is True
    assert limiter.hit("b") is False
    limiter.reset()
    assert limiter.hit("b") is True


@pytest.mark.parametrize("kwargs", [{"max_requests": 0}, {"window_seconds": 0}])
def test_rejects_nonsense_limits(kwargs):
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(**kwargs)


def test_token_authorizer():
    auth = TokenAuthorizer(["s3cret", "", "other"])
    assert auth.is_authorized_operator("s3cret")
    assert auth.is_authorized_operator("other")
    assert not auth.is_authorized_operator("wrong")
    assert not auth.is_authorized_operator("")
    assert not auth.is_authorized_operator(None)
    assert not TokenAuthorizer([]).is_authorized_operator("anything")


def test_expired_identities_are_forgotten():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=1, clock=clock)
    for i in range(1000):
        limiter.hit(f"customer-{i}")
    assert limiter.tracked_identities() == 1000

    clock.t += 1000
    assert limiter.hit("fresh") is True
    assert limiter.tracked_identities() == 1


def test_sweep_keeps_identities_still_inside_the_window():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)
    limiter.hit("old")
    clock.t += 30
    limiter.hit("recent")
    clock.t += 40
    limiter.hit("new")
    assert limiter.tracked_identities() == 2
    assert limiter.hit("recent") is False
