from app.services.rate_limiter import InMemoryRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_limit_within_window_and_retry_after():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)

    assert [limiter.hit("apple:1.2.3.4", 2).remaining for _ in range(2)] == [1, 0]
    clock.now += 15.2
    decision = limiter.hit("apple:1.2.3.4", 2)

    assert decision.allowed is False
    assert decision.retry_after_seconds == 45
    assert limiter.hit("apple:5.6.7.8", 2).allowed is True


def test_window_slides():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    limiter.hit("k", 1)

    clock.now += 60
    assert limiter.hit("k", 1).allowed is True


def test_idle_clients_are_forgotten():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    for i in range(100):
        limiter.hit(f"apple:10.0.0.{i}", 5)
    assert len(limiter._hits) == 100

    clock.now += 61
    limiter.hit("apple:10.0.1.1", 5)

    assert list(limiter._hits) == ["apple:10.0.1.1"]


def test_clients_inside_the_window_are_kept():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    limiter.hit("a", 5)
    clock.now += 50
    limiter.hit("b", 5)
    clock.now += 20
    limiter.hit("c", 5)

    assert set(limiter._hits) == {"b", "c"}
