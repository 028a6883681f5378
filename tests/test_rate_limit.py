"""Tests for the sliding-window rate limiter and path classifier."""

import threading
from datetime import timedelta

import pytest

from trustgate.service.errors import ValidationError
from trustgate.service.rate_limit import (
    EndpointClass,
    SlidingWindowRateLimiter,
    classify_path,
)


class TestClassifyPath:
    """Pure path classification."""

    @pytest.mark.parametrize(
        "path",
        ["/v1/products", "/v1/products/42", "/categories", "/v1/auth/signin", "/v1/auth/forgot-password/verify"],
    )
    def test_public_paths(self, path):
        assert classify_path(path) == EndpointClass.PUBLIC

    @pytest.mark.parametrize("path", ["/v1/auth/signup", "/v1/admin/users", "/v1/orders", "/"])
    def test_default_paths(self, path):
        assert classify_path(path) == EndpointClass.DEFAULT


class TestSlidingWindow:
    """Admission decisions over time."""

    def test_allows_up_to_limit_then_denies(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=3, window_seconds=60, clock=clock)

        results = [limiter.allow("1.2.3.4") for _ in range(4)]

        assert results == [True, True, True, False]

    def test_allowed_again_61_seconds_after_first(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=3, window_seconds=60, clock=clock)
        assert all(limiter.allow("1.2.3.4") for _ in range(3))
        clock.advance(59)
        assert limiter.allow("1.2.3.4") is False

        clock.advance(2)

        assert limiter.allow("1.2.3.4") is True

    def test_denied_requests_do_not_consume_quota(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=10, clock=clock)
        limiter.allow("c")
        limiter.allow("c")
        for _ in range(5):
            assert limiter.allow("c") is False

        clock.advance(10)

        assert limiter.allow("c") is True

    def test_window_slides_second_by_second(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=10, clock=clock)
        assert limiter.allow("c")
        clock.advance(5)
        assert limiter.allow("c")
        assert not limiter.allow("c")

        # First request leaves the window exactly window_seconds later
        clock.advance(5)
        assert limiter.allow("c")
        assert not limiter.allow("c")

    def test_public_class_uses_higher_ceiling(self, clock):
        limiter = SlidingWindowRateLimiter(
            max_requests=1, public_max_requests=3, window_seconds=60, clock=clock
        )

        public = [limiter.allow("c", EndpointClass.PUBLIC) for _ in range(4)]

        assert public == [True, True, True, False]

    def test_plain_string_endpoint_class(self, clock):
        limiter = SlidingWindowRateLimiter(
            max_requests=1, public_max_requests=2, window_seconds=60, clock=clock
        )

        assert [limiter.allow("c", "public") for _ in range(3)] == [True, True, False]

    def test_clients_are_isolated(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)

        assert limiter.allow("a")
        assert not limiter.allow("a")
        assert limiter.allow("b")

    def test_whitelisted_keys_bypass(self, clock):
        limiter = SlidingWindowRateLimiter(
            max_requests=1, window_seconds=60, whitelist=["127.0.0.1"], clock=clock
        )

        assert all(limiter.allow("127.0.0.1") for _ in range(1000))
        assert limiter.active_clients() == 0


class TestAdministration:
    """Runtime updates to limits and whitelist."""

    def test_update_limits_applies_to_next_call(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.allow("c")
        assert not limiter.allow("c")

        limiter.update_limits(max_requests=5)

        assert limiter.allow("c")
        assert limiter.snapshot()["max_requests"] == 5

    @pytest.mark.parametrize("field", ["max_requests", "window_seconds", "public_max_requests"])
    def test_non_positive_limits_are_rejected(self, clock, field):
        limiter = SlidingWindowRateLimiter(clock=clock)

        with pytest.raises(ValidationError):
            limiter.update_limits(**{field: 0})
        assert limiter.snapshot()[field] > 0

    def test_whitelist_add_and_remove(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.add_to_whitelist("10.0.0.1")

        assert "10.0.0.1" in limiter.whitelist()
        assert limiter.allow("10.0.0.1") and limiter.allow("10.0.0.1")

        assert limiter.remove_from_whitelist("10.0.0.1") is True
        assert limiter.remove_from_whitelist("10.0.0.1") is False
        assert limiter.allow("10.0.0.1")
        assert not limiter.allow("10.0.0.1")

    def test_empty_whitelist_key_is_rejected(self, clock):
        limiter = SlidingWindowRateLimiter(clock=clock)

        with pytest.raises(ValidationError):
            limiter.add_to_whitelist("  ")


class TestIdleSweep:
    """Idle windows are dropped."""

    def test_sweep_drops_idle_windows_only(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=10, clock=clock)
        limiter.allow("idle")
        clock.advance(8)
        limiter.allow("busy")
        clock.advance(3)

        assert limiter.sweep_idle() == 1
        assert limiter.active_clients() == 1

    def test_client_can_continue_after_its_window_is_swept(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=10, clock=clock)
        limiter.allow("c")
        clock.advance(11)
        limiter.sweep_idle()

        assert limiter.allow("c")
        assert not limiter.allow("c")


class TestConcurrency:
    """The evict/sum/increment sequence is atomic per client."""

    def test_concurrent_requests_never_exceed_limit(self, clock):
        limit = 50
        limiter = SlidingWindowRateLimiter(max_requests=limit, window_seconds=60, clock=clock)
        threads_count = 16
        per_thread = 20
        barrier = threading.Barrier(threads_count)
        allowed = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            local = sum(1 for _ in range(per_thread) if limiter.allow("shared"))
            with lock:
                allowed.append(local)

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(allowed) == limit

    def test_concurrent_sweep_and_allow_keep_counts(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=1000, window_seconds=60, clock=clock)
        stop = threading.Event()

        def sweeper():
            while not stop.is_set():
                limiter.sweep_idle()

        sweep_thread = threading.Thread(target=sweeper)
        sweep_thread.start()
        try:
            results = [limiter.allow("c") for _ in range(200)]
        finally:
            stop.set()
            sweep_thread.join()

        assert all(results)
        assert limiter.active_clients() == 1
        limiter.update_limits(max_requests=200)
        assert limiter.allow("c") is False
