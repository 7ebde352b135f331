"""
API Rate Limiting.

Two-tier fixed-window admission control: a 60-second "minute" window
with a nested 5-second "burst" window, tracked per id (an API key id
or a workspace id).

Architecture:
    Request → key limiter → workspace limiter → route handler

State lives behind `RateLimitStore` (get / set / compare-and-swap by
id). The windowing algorithm is a pure function of the previous state
and the clock, and `DualWindowRateLimiter.check()` commits its result
with compare-and-swap, retrying on a lost race. The default store is
in-memory and mutex-guarded; it is per process, so N instances behind
a load balancer admit up to N times the configured ceiling. A shared
store (e.g. Redis with a Lua CAS) can be dropped in without touching
the algorithm.

The limiter never raises. Callers get a `RateLimitResult` and decide
what to do with a rejection.

Usage:
    guard = ApiTrafficGuard(audit=LoggingAuditLogger())
    decision = guard.admit(api_key_id=key.id, workspace_id=key.workspace_id)
    if not decision.allowed:
        # 429 with Retry-After: decision.result.retry_after_seconds
        ...
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from orglink.enterprise.audit import AuditLogger, record_best_effort
from orglink.enterprise.models import AuditAction, AuditEvent

logger = logging.getLogger(__name__)

MINUTE_WINDOW_MS = 60_000
BURST_WINDOW_MS = 5_000
DEFAULT_MINUTE_LIMIT = 100
DEFAULT_BURST_LIMIT = 20


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


# ── State & Results ──────────────────────────────────────────


@dataclass(frozen=True)
class RateLimitState:
    """Window counters for one id. Replaced wholesale on every check."""
    count: int
    window_start: float
    burst_count: int
    burst_window_start: float


@dataclass(frozen=True)
class RateLimitResult:
    """Admission decision. `reset_in` is in milliseconds."""
    allowed: bool
    remaining: int
    reset_in: float

    @property
    def retry_after_seconds(self) -> int:
        return max(0, math.ceil(self.reset_in / 1000.0))


def safe_limit(value: Any, default: int) -> int:
    """Limits below 1, missing or non-numeric fall back to `default`."""
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value) or value <= 0:
        return default
    return max(1, int(value))


def evaluate_window(
    state: Optional[RateLimitState],
    now: float,
    minute_limit: int,
    burst_limit: int,
) -> tuple[RateLimitState, RateLimitResult]:
    """
    Advance the counters for one request.

    Returns the state to store and the decision. Rejected requests still
    consume their counter increments.
    """
    if state is None or now - state.window_start >= MINUTE_WINDOW_MS:
        fresh = RateLimitState(count=1, window_start=now, burst_count=1, burst_window_start=now)
        return fresh, RateLimitResult(True, minute_limit - 1, MINUTE_WINDOW_MS)

    if now - state.burst_window_start >= BURST_WINDOW_MS:
        burst_count, burst_window_start = 1, now
    else:
        burst_count, burst_window_start = state.burst_count + 1, state.burst_window_start
        if burst_count > burst_limit:
            rejected = RateLimitState(state.count, state.window_start, burst_count, burst_window_start)
            return rejected, RateLimitResult(False, 0, BURST_WINDOW_MS - (now - burst_window_start))

    count = state.count + 1
    next_state = RateLimitState(count, state.window_start, burst_count, burst_window_start)
    reset_in = MINUTE_WINDOW_MS - (now - state.window_start)
    if count > minute_limit:
        return next_state, RateLimitResult(False, 0, reset_in)
    return next_state, RateLimitResult(True, minute_limit - count, reset_in)


# ── Stores ───────────────────────────────────────────────────


class RateLimitStore(Protocol):
    def get(self, key: str) -> Optional[RateLimitState]: ...

    def set(self, key: str, state: RateLimitState) -> None: ...

    def compare_and_swap(
        self,
        key: str,
        expected: Optional[RateLimitState],
        new: RateLimitState,
    ) -> bool: ...


class InMemoryRateLimitStore:
    """
    Process-wide, mutex-guarded window table.

    Entries are created lazily and never need explicit deletion since
    windows self-expire; `purge_expired()` reclaims memory for ids that
    went quiet.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._states: dict[str, RateLimitState] = {}

    def get(self, key: str) -> Optional[RateLimitState]:
        with self._lock:
            return self._states.get(key)

    def set(self, key: str, state: RateLimitState) -> None:
        with self._lock:
            self._states[key] = state

    def compare_and_swap(
        self,
        key: str,
        expected: Optional[RateLimitState],
        new: RateLimitState,
    ) -> bool:
        with self._lock:
            if self._states.get(key) != expected:
                return False
            self._states[key] = new
            return True

    def purge_expired(self, now_ms: float, max_age_ms: float = MINUTE_WINDOW_MS) -> int:
        """Drop ids whose minute window started more than `max_age_ms` ago."""
        with self._lock:
            stale = [
                key for key, state in self._states.items()
                if now_ms - state.window_start >= max_age_ms
            ]
            for key in stale:
                del self._states[key]
            return len(stale)

    def reset(self, key: Optional[str] = None) -> None:
        """Reset state for one id or for all ids."""
        with self._lock:
            if key:
                self._states.pop(key, None)
            else:
                self._states.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)


# ── Limiter ──────────────────────────────────────────────────


class DualWindowRateLimiter:
    """
    Per-id minute + burst limiter.

    Args:
        store: Window state backend (default: in-memory).
        clock: Returns the current time in milliseconds.
        default_minute_limit: Used when a caller passes no usable limit.
        default_burst_limit: Same, for the burst window.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Optional[Callable[[], float]] = None,
        default_minute_limit: int = DEFAULT_MINUTE_LIMIT,
        default_burst_limit: int = DEFAULT_BURST_LIMIT,
    ):
        self.store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock or _monotonic_ms
        self.default_minute_limit = safe_limit(default_minute_limit, DEFAULT_MINUTE_LIMIT)
        self.default_burst_limit = safe_limit(default_burst_limit, DEFAULT_BURST_LIMIT)

    def check(
        self,
        key: str,
        minute_limit: Optional[int] = None,
        burst_limit: Optional[int] = None,
    ) -> RateLimitResult:
        """Count one request for `key` and decide whether it may proceed."""
        minute = safe_limit(minute_limit, self.default_minute_limit)
        burst = safe_limit(burst_limit, self.default_burst_limit)

        while True:
            current = self.store.get(key)
            new_state, result = evaluate_window(current, self._clock(), minute, burst)
            if self.store.compare_and_swap(key, current, new_state):
                return result


# ── API Traffic Guard ────────────────────────────────────────


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of running both limiters for one API request."""
    allowed: bool
    result: RateLimitResult
    minute_limit: int
    workspace_minute_limit: int
    rejected_by: Optional[str] = None  # "api_key" or "workspace"
    workspace_result: Optional[RateLimitResult] = None


_audit_executor: Optional[ThreadPoolExecutor] = None
_audit_executor_lock = threading.Lock()


def _background_dispatch(task: Callable[[], None]) -> None:
    global _audit_executor
    with _audit_executor_lock:
        if _audit_executor is None:
            _audit_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="orglink-audit")
    _audit_executor.submit(task)


class ApiTrafficGuard:
    """
    Runs the API-key limiter, then the workspace aggregate limiter.

    Either rejecting blocks the request. Rejections are logged and
    audited off the request path; an audit failure never changes the
    decision.
    """

    def __init__(
        self,
        key_limiter: Optional[DualWindowRateLimiter] = None,
        workspace_limiter: Optional[DualWindowRateLimiter] = None,
        audit: Optional[AuditLogger] = None,
        dispatch: Optional[Callable[[Callable[[], None]], None]] = None,
        default_minute_limit: int = DEFAULT_MINUTE_LIMIT,
        default_burst_limit: int = DEFAULT_BURST_LIMIT,
    ):
        self.key_limiter = key_limiter or DualWindowRateLimiter(
            default_minute_limit=default_minute_limit,
            default_burst_limit=default_burst_limit,
        )
        self.workspace_limiter = workspace_limiter or DualWindowRateLimiter(
            default_minute_limit=default_minute_limit,
            default_burst_limit=default_burst_limit,
        )
        self.audit = audit
        self._dispatch = dispatch or _background_dispatch
        self.default_minute_limit = safe_limit(default_minute_limit, DEFAULT_MINUTE_LIMIT)
        self.default_burst_limit = safe_limit(default_burst_limit, DEFAULT_BURST_LIMIT)

    def admit(
        self,
        *,
        api_key_id: str,
        workspace_id: str,
        key_minute_limit: Optional[int] = None,
        workspace_minute_limit: Optional[int] = None,
        burst_limit: Optional[int] = None,
        method: str = "",
        endpoint: str = "",
    ) -> AdmissionDecision:
        """
        Decide whether one API request may run.

        The key's own minute limit wins over the workspace entitlement,
        which wins over the default. The workspace aggregate cap uses
        the workspace entitlement (or the key limit when there is none).
        """
        minute_limit = safe_limit(
            key_minute_limit,
            safe_limit(workspace_minute_limit, self.default_minute_limit),
        )
        workspace_limit = safe_limit(workspace_minute_limit, minute_limit)
        burst = safe_limit(burst_limit, self.default_burst_limit)

        key_result = self.key_limiter.check(api_key_id, minute_limit, burst)
        if not key_result.allowed:
            self._on_reject("API_KEY_LIMIT_EXCEEDED", api_key_id, workspace_id, method, endpoint, key_result)
            return AdmissionDecision(
                allowed=False,
                result=key_result,
                minute_limit=minute_limit,
                workspace_minute_limit=workspace_limit,
                rejected_by="api_key",
            )

        workspace_result = self.workspace_limiter.check(workspace_id, workspace_limit, burst)
        if not workspace_result.allowed:
            self._on_reject("WORKSPACE_LIMIT_EXCEEDED", api_key_id, workspace_id, method, endpoint, workspace_result)
            return AdmissionDecision(
                allowed=False,
                result=workspace_result,
                minute_limit=minute_limit,
                workspace_minute_limit=workspace_limit,
                rejected_by="workspace",
                workspace_result=workspace_result,
            )

        return AdmissionDecision(
            allowed=True,
            result=key_result,
            minute_limit=minute_limit,
            workspace_minute_limit=workspace_limit,
            workspace_result=workspace_result,
        )

    def _on_reject(
        self,
        reason: str,
        api_key_id: str,
        workspace_id: str,
        method: str,
        endpoint: str,
        result: RateLimitResult,
    ) -> None:
        logger.info(
            "rate_limit_rejected",
            extra={
                "scope": reason,
                "api_key_id": api_key_id,
                "workspace_id": workspace_id,
                "reset_in_ms": result.reset_in,
            },
        )
        if self.audit is None:
            return

        event = AuditEvent(
            action=AuditAction.OTHER,
            entity="ApiUsageLimit",
            target_id=api_key_id,
            details=(
                f"{reason} workspaceId={workspace_id} apiKeyId={api_key_id} "
                f"method={method} endpoint={endpoint}"
            ),
        )
        audit = self.audit
        try:
            self._dispatch(lambda: record_best_effort(audit, event))
        except Exception as e:
            logger.debug("audit_dispatch_failed", extra={"error": str(e)})
