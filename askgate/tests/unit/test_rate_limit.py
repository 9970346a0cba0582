import pytest
from starlette.requests import Request

from askgate.errors import RateLimitError
from askgate.rate_limit import InMemoryRateLimitStore, RateLimiter, get_client_ip, get_redis


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_request_past_ceiling_is_rejected():
    clock = FakeClock()
    limiter = RateLimiter(InMemoryRateLimitStore(), window_seconds=60, clock=clock)
    for _ in range(3):
        limiter.check("ask", "t1", limit=3)
        clock.now += 1

    with pytest.raises(RateLimitError) as info:
        limiter.check("ask", "t1", limit=3)
    assert info.value.status_code == 429
    assert "Limit: 3 requests per 60 seconds" in info.value.message
    assert info.value.retry_after == 57


def test_window_expiry_resets_count():
    clock = FakeClock()
    store = InMemoryRateLimitStore()
    limiter = RateLimiter(store, window_seconds=60, clock=clock)
    for _ in range(2):
        limiter.check("ask_text", "t1", limit=2)
    with pytest.raises(RateLimitError):
        limiter.check("ask_text", "t1", limit=2)

    clock.now += 61
    limiter.check("ask_text", "t1", limit=2)
    assert store.count("ask_text:t1") == 1


def test_counters_are_scoped_by_endpoint_and_identity():
    limiter = RateLimiter(InMemoryRateLimitStore(), clock=FakeClock())
    limiter.check("ask", "t1", limit=1)
    limiter.check("ask", "t2", limit=1)
    limiter.check("voices", "t1", limit=1)
    with pytest.raises(RateLimitError):
        limiter.check("ask", "t1", limit=1)


def _request(headers, client=("10.0.0.9", 1234)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "client": client,
    }
    return Request(scope)


def test_client_ip_prefers_forwarded_header_when_trusted():
    req = _request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
    assert get_client_ip(req, True, "X-Forwarded-For") == "203.0.113.5"
    assert get_client_ip(req, False, "X-Forwarded-For") == "10.0.0.9"
    assert get_client_ip(None, True, "X-Forwarded-For") == "unknown"


def test_idle_identities_are_dropped():
    clock = FakeClock()
    store = InMemoryRateLimitStore()
    limiter = RateLimiter(store, window_seconds=60, clock=clock)
    limiter.check("ask", "one-off", limit=5)

    clock.now += 61
    limiter.check("ask", "regular", limit=5)
    assert len(store) == 1
    assert store.count("ask:one-off") == 0


def test_redis_clients_are_cached_per_url():
    first = get_redis("redis://cache-a:6379/0")
    assert get_redis("redis://cache-a:6379/0") is first
    other = get_redis("redis://cache-b:6379/1")
    assert other is not first
    assert other.connection_pool.connection_kwargs["host"] == "cache-b"
