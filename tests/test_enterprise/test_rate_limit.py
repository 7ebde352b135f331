"""
Tests for the dual-window rate limiter and the API traffic guard.

Uses a fake millisecond clock so window arithmetic is exact.
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from orglink.enterprise.models import AuditAction
from orglink.enterprise.rate_limit import (
    BURST_WINDOW_MS,
    MINUTE_WINDOW_MS,
    ApiTrafficGuard,
    DualWindowRateLimiter,
    InMemoryRateLimitStore,
    RateLimitResult,
    RateLimitState,
    evaluate_window,
    safe_limit,
)


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return DualWindowRateLimiter(clock=clock)


def _inline_dispatch(task):
    task()


# ── Pure window evaluation ───────────────────────────────────


class TestEvaluateWindow:
    """Single fixed-window evaluation."""

    def test_first_request_opens_windows(self):
        state, result = evaluate_window(None, 100.0, 10, 5)
        assert state == RateLimitState(1, 100.0, 1, 100.0)
        assert result == RateLimitResult(True, 9, MINUTE_WINDOW_MS)

    def test_minute_window_expiry_resets_both(self):
        old = RateLimitState(50, 0.0, 5, 0.0)
        state, result = evaluate_window(old, MINUTE_WINDOW_MS, 10, 5)
        assert state == RateLimitState(1, MINUTE_WINDOW_MS, 1, MINUTE_WINDOW_MS)
        assert result.allowed

    def test_burst_rejection_reset_in(self):
        old = RateLimitState(5, 0.0, 5, 1_000.0)
        state, result = evaluate_window(old, 3_000.0, 100, 5)
        assert not result.allowed
        assert result.remaining == 0
        assert result.reset_in == BURST_WINDOW_MS - 2_000.0
        # Burst rejections do not count toward the minute window
        assert state.count == 5
        assert state.burst_count == 6

    def test_minute_rejection_reset_in(self):
        old = RateLimitState(10, 0.0, 0, 0.0)
        state, result = evaluate_window(old, 20_000.0, 10, 5)
        assert not result.allowed
        assert result.reset_in == MINUTE_WINDOW_MS - 20_000.0
        assert state.count == 11

    def test_burst_window_expiry_resets_burst_only(self):
        old = RateLimitState(7, 0.0, 5, 0.0)
        state, result = evaluate_window(old, BURST_WINDOW_MS, 100, 5)
        assert result.allowed
        assert state.burst_count == 1
        assert state.burst_window_start == BURST_WINDOW_MS
        assert state.count == 8

    def test_retry_after_rounds_up(self):
        assert RateLimitResult(False, 0, 1_001).retry_after_seconds == 2
        assert RateLimitResult(False, 0, 0).retry_after_seconds == 0


class TestSafeLimit:
    """Fallback for missing or invalid limits."""

    @pytest.mark.parametrize("value", [None, 0, -1, float("nan"), "10", True])
    def test_falls_back(self, value):
        assert safe_limit(value, 100) == 100

    def test_keeps_positive(self):
        assert safe_limit(7, 100) == 7
        assert safe_limit(2.9, 100) == 2


# ── Limiter ──────────────────────────────────────────────────


class TestDualWindowRateLimiter:
    """Minute and burst windows together."""

    def test_burst_limit(self, limiter, clock):
        for _ in range(5):
            assert limiter.check("key-1", minute_limit=100, burst_limit=5).allowed
        rejected = limiter.check("key-1", minute_limit=100, burst_limit=5)
        assert not rejected.allowed
        assert 0 < rejected.reset_in <= BURST_WINDOW_MS

        clock.advance(BURST_WINDOW_MS)
        assert limiter.check("key-1", minute_limit=100, burst_limit=5).allowed

    def test_minute_limit(self, limiter, clock):
        for i in range(3):
            clock.advance(BURST_WINDOW_MS)
            result = limiter.check("key-1", minute_limit=3, burst_limit=20)
            assert result.allowed
            assert result.remaining == 2 - i
        clock.advance(BURST_WINDOW_MS)
        rejected = limiter.check("key-1", minute_limit=3, burst_limit=20)
        assert not rejected.allowed
        # The minute window opened at the first request, 3 bursts ago
        assert rejected.reset_in == MINUTE_WINDOW_MS - 3 * BURST_WINDOW_MS

    def test_rejected_requests_still_count(self, limiter, clock):
        for _ in range(4):
            limiter.check("key-1", minute_limit=2, burst_limit=20)
        state = limiter.store.get("key-1")
        assert state.count == 4

    def test_window_expiry_allows_again(self, limiter, clock):
        for _ in range(3):
            limiter.check("key-1", minute_limit=2, burst_limit=20)
        clock.advance(MINUTE_WINDOW_MS)
        result = limiter.check("key-1", minute_limit=2, burst_limit=20)
        assert result.allowed
        assert result.remaining == 1

    def test_ids_are_isolated(self, limiter):
        limiter.check("key-1", minute_limit=1)
        assert not limiter.check("key-1", minute_limit=1).allowed
        assert limiter.check("key-2", minute_limit=1).allowed

    def test_invalid_limits_use_defaults(self, clock):
        limiter = DualWindowRateLimiter(clock=clock, default_minute_limit=2, default_burst_limit=20)
        limiter.check("key-1", minute_limit=0)
        limiter.check("key-1", minute_limit=-5)
        assert not limiter.check("key-1", minute_limit=None).allowed

    def test_never_raises_on_garbage_limits(self, limiter):
        result = limiter.check("key-1", minute_limit="lots", burst_limit=object())
        assert result.allowed

    def test_retries_lost_compare_and_swap(self, clock):
        store = InMemoryRateLimitStore()
        real_cas = store.compare_and_swap
        attempts = []

        def flaky_cas(key, expected, new):
            attempts.append(1)
            if len(attempts) == 1:
                return False
            return real_cas(key, expected, new)

        store.compare_and_swap = flaky_cas
        limiter = DualWindowRateLimiter(store=store, clock=clock)
        assert limiter.check("key-1").allowed
        assert len(attempts) == 2
        assert store.get("key-1").count == 1

    def test_no_lost_updates_under_concurrency(self, clock):
        limiter = DualWindowRateLimiter(clock=clock)
        threads_count, per_thread = 8, 50
        barrier = threading.Barrier(threads_count)
        allowed = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            for _ in range(per_thread):
                result = limiter.check("shared", minute_limit=100, burst_limit=1_000)
                if result.allowed:
                    with lock:
                        allowed.append(1)

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert limiter.store.get("shared").count == threads_count * per_thread
        assert len(allowed) == 100


class TestInMemoryRateLimitStore:
    """Counter storage and compare-and-swap."""

    def test_compare_and_swap(self):
        store = InMemoryRateLimitStore()
        first = RateLimitState(1, 0.0, 1, 0.0)
        assert store.compare_and_swap("k", None, first) is True
        assert store.compare_and_swap("k", None, first) is False
        assert store.get("k") == first

    def test_purge_expired(self):
        store = InMemoryRateLimitStore()
        store.set("old", RateLimitState(1, 0.0, 1, 0.0))
        store.set("new", RateLimitState(1, 50_000.0, 1, 50_000.0))
        assert store.purge_expired(now_ms=70_000.0) == 1
        assert store.get("old") is None
        assert len(store) == 1

    def test_reset(self):
        store = InMemoryRateLimitStore()
        store.set("a", RateLimitState(1, 0.0, 1, 0.0))
        store.set("b", RateLimitState(1, 0.0, 1, 0.0))
        store.reset("a")
        assert len(store) == 1
        store.reset()
        assert len(store) == 0


# ── Traffic guard ────────────────────────────────────────────


class TestApiTrafficGuard:
    """Key then workspace admission."""

    def _guard(self, clock, audit=None, dispatch=_inline_dispatch):
        return ApiTrafficGuard(
            key_limiter=DualWindowRateLimiter(clock=clock),
            workspace_limiter=DualWindowRateLimiter(clock=clock),
            audit=audit,
            dispatch=dispatch,
        )

    def test_allows_and_reports_limits(self, clock):
        decision = self._guard(clock).admit(api_key_id="k1", workspace_id="ws-1")
        assert decision.allowed
        assert decision.minute_limit == 100
        assert decision.result.remaining == 99
        assert decision.workspace_result.remaining == 99

    def test_key_limit_wins_over_workspace_limit(self, clock):
        decision = self._guard(clock).admit(
            api_key_id="k1", workspace_id="ws-1", key_minute_limit=5, workspace_minute_limit=50
        )
        assert decision.minute_limit == 5
        assert decision.workspace_minute_limit == 50

    def test_workspace_limit_used_when_key_has_none(self, clock):
        decision = self._guard(clock).admit(
            api_key_id="k1", workspace_id="ws-1", workspace_minute_limit=50
        )
        assert decision.minute_limit == 50

    def test_key_rejection(self, clock):
        guard = self._guard(clock)
        guard.admit(api_key_id="k1", workspace_id="ws-1", key_minute_limit=1)
        decision = guard.admit(api_key_id="k1", workspace_id="ws-1", key_minute_limit=1)
        assert not decision.allowed
        assert decision.rejected_by == "api_key"

    def test_workspace_aggregate_rejection(self, clock):
        guard = self._guard(clock)
        assert guard.admit(api_key_id="k1", workspace_id="ws-1", workspace_minute_limit=2).allowed
        assert guard.admit(api_key_id="k2", workspace_id="ws-1", workspace_minute_limit=2).allowed
        decision = guard.admit(api_key_id="k3", workspace_id="ws-1", workspace_minute_limit=2)
        assert not decision.allowed
        assert decision.rejected_by == "workspace"

    def test_key_rejection_skips_workspace_counter(self, clock):
        guard = self._guard(clock)
        guard.admit(api_key_id="k1", workspace_id="ws-1", key_minute_limit=1)
        guard.admit(api_key_id="k1", workspace_id="ws-1", key_minute_limit=1)
        assert guard.workspace_limiter.store.get("ws-1").count == 1

    def test_rejection_is_audited(self, clock):
        audit = MagicMock()
        guard = self._guard(clock, audit=audit)
        guard.admit(api_key_id="k1", workspace_id="ws-1", key_minute_limit=1)
        guard.admit(
            api_key_id="k1", workspace_id="ws-1", key_minute_limit=1,
            method="GET", endpoint="/api/v1/usage",
        )
        event = audit.log_event.call_args[0][0]
        assert event.action is AuditAction.OTHER
        assert event.entity == "ApiUsageLimit"
        assert "API_KEY_LIMIT_EXCEEDED" in event.details
        assert "endpoint=/api/v1/usage" in event.details

    def test_audit_failure_does_not_change_decision(self, clock):
        audit = MagicMock()
        audit.log_event.side_effect = RuntimeError("audit down")
        guard = self._guard(clock, audit=audit)
        guard.admit(api_key_id="k1", workspace_id="ws-1", key_minute_limit=1)
        decision = guard.admit(api_key_id="k1", workspace_id="ws-1", key_minute_limit=1)
        assert not decision.allowed
        assert decision.rejected_by == "api_key"

    def test_dispatch_failure_does_not_change_decision(self, clock):
        def broken_dispatch(task):
            raise RuntimeError("executor shut down")

        guard = self._guard(clock, audit=MagicMock(), dispatch=broken_dispatch)
        guard.admit(api_key_id="k1", workspace_id="ws-1", key_minute_limit=1)
        decision = guard.admit(api_key_id="k1", workspace_id="ws-1", key_minute_limit=1)
        assert not decision.allowed

    def test_allowed_requests_are_not_audited(self, clock):
        audit = MagicMock()
        self._guard(clock, audit=audit).admit(api_key_id="k1", workspace_id="ws-1")
        audit.log_event.assert_not_called()
