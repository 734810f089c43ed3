"""
Adaptive rate limiting for outbound HTTP calls.

This module provides an HTTP client decorator for APIs whose rate limit
policy is only partially known in advance. The client:

- Obeys server-declared limits (X-RateLimit-Limit / -Remaining / -Reset)
- Discovers a safe cadence when the server declares nothing, ramping up
  one request-per-second at a time until throttled, then locking one step
  below the rate that triggered HTTP 429
- Backs off on HTTP 429 using Retry-After when present, a short cooldown
  once the cadence is locked, or exponential backoff otherwise

All rate state lives in a single RateState owned by the client instance and
guarded by one lock. Sleeps always happen outside the lock.

Available implementations:
    - AdaptiveRateLimitedHttpClient: Decorator with adaptive rate limiting.

Example:
    >>> from ratepilot._http import SessionHttpClient
    >>> from ratepilot._rate_limit import AdaptiveRateLimitedHttpClient
    >>> client = AdaptiveRateLimitedHttpClient(delegate=SessionHttpClient())
    >>> response = client.get(
    ...     "https://api.example.com/v1/items",
    ...     headers={"Authorization": "Bearer eyJ..."},
    ... )
"""

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, override

import requests
from requests.structures import CaseInsensitiveDict

from ratepilot._http import HttpClient
from ratepilot._retry import MaxRetriesExceededError, RetryableError, Retrying
from ratepilot._utils import parse_int_header, parse_retry_after

if TYPE_CHECKING:
    from ratepilot._config import RateLimitConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class ClientSideRateLimitError(Exception):
    """
    Base exception for waits aborted on the client side.

    Raised when a call gives up while pacing, waiting for a declared reset
    window or backing off after HTTP 429. These errors abort the whole call
    and are never retried by the rate limiter itself.

    Example:
        >>> try:
        ...     client.execute(request, max_wait_time=10.0)
        ... except ClientSideRateLimitError as e:
        ...     print(f"Gave up waiting: {e}")
    """

    pass


class WaitDeadlineExceededError(ClientSideRateLimitError):
    """
    Raised when a pending wait would exceed the call's max_wait_time.

    Attributes:
        waited: Seconds elapsed since the call started.
        max_wait_time: The configured time budget for the call.
        planned_wait: The wait that would have exceeded the budget.
    """

    def __init__(self, waited: float, max_wait_time: float, planned_wait: float = 0.0):
        self.waited = waited
        self.max_wait_time = max_wait_time
        self.planned_wait = planned_wait
        super().__init__(
            f"Rate limit wait deadline exceeded: waited {waited:.2f}s, "
            f"next wait {planned_wait:.2f}s, max_wait_time={max_wait_time:.2f}s"
        )


class WaitCancelledError(ClientSideRateLimitError):
    """
    Raised when the caller's cancel event is set at a suspension point.

    Attributes:
        reason: Which wait was cancelled ("pacing", "reset window" or "backoff").
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Rate limit wait cancelled during {reason}")


class ServerSideRateLimitError(RetryableError):
    """
    Raised internally when the server returns HTTP 429 (Too Many Requests).

    Wraps the throttled response so the Retry-After header can be used to
    compute the wait before the next attempt. Extends RetryableError so the
    Retrying loop retries it.

    Attributes:
        response: The HTTP 429 response (already closed).
        attempt_number: Zero-based attempt that was throttled.
    """

    def __init__(self, response: requests.Response, attempt_number: int = 0):
        self.response = response
        self.attempt_number = attempt_number
        super().__init__("Server rate limit exceeded (HTTP 429)")


@dataclass(frozen=True)
class ThrottledAttempt:
    """
    Record of a single throttled attempt.

    Attributes:
        attempt_number: Zero-based attempt index.
        status_code: Response status code (429).
        retry_after: Raw Retry-After header value, if any.
        wait_time: Seconds waited before the next attempt
            (None for the final attempt, which is not followed by a wait).
    """

    attempt_number: int
    status_code: int
    retry_after: str | None
    wait_time: float | None


class RateLimitRetriesExhaustedError(MaxRetriesExceededError):
    """
    Raised when every attempt of a call was throttled (HTTP 429).

    Distinct from transport failures, which propagate unchanged as
    `requests.RequestException`.

    Attributes:
        response: The last HTTP 429 response (already closed).
        attempts: History of throttled attempts, in order.
        last_exception: The internal ServerSideRateLimitError of the last attempt.

    Example:
        >>> try:
        ...     client.execute(request)
        ... except RateLimitRetriesExhaustedError as e:
        ...     print(f"Throttled {len(e.attempts)} times")
    """

    def __init__(
        self,
        response: requests.Response,
        attempts: tuple[ThrottledAttempt, ...],
        last_exception: Exception | None = None,
    ):
        self.response = response
        self.attempts = attempts
        super().__init__(
            f"Exceeded maximum retry attempts after rate limiting ({len(attempts)} attempts)",
            last_exception=last_exception,
        )


# =============================================================================
# Rate State
# =============================================================================


class CadenceMode(Enum):
    """
    How the request cadence is currently governed.

    Attributes:
        IDLE: No response observed yet.
        DISCOVERING: No declared headers seen on the last response; the
            client probes upward one request-per-second per success.
        SERVER_DECLARED: The last response declared rate limit headers;
            the declared reset window governs waiting.
        LOCKED: A safe cadence was discovered. Terminal: never left.
    """

    IDLE = "IDLE"
    DISCOVERING = "DISCOVERING"
    SERVER_DECLARED = "SERVER_DECLARED"
    LOCKED = "LOCKED"


@dataclass(frozen=True)
class RateLimitSnapshot:
    """
    Consistent, point-in-time copy of a RateState.

    Attributes:
        limit: Last declared total quota (0 = unknown).
        remaining: Last declared remaining quota.
        reset_at: Epoch seconds when the declared window resets, if known.
        mode: Current cadence mode.
        dynamic_rate: Current candidate (or locked) requests per second.
        safe_rate: Locked requests per second (0 = not discovered).
        last_request_at: Monotonic time of the last reserved dispatch slot.
    """

    limit: int
    remaining: int
    reset_at: float | None
    mode: CadenceMode
    dynamic_rate: int
    safe_rate: int
    last_request_at: float | None

    @property
    def auto_discovering(self) -> bool:
        """True while the client is probing for a safe cadence."""
        return self.mode is CadenceMode.DISCOVERING

    @property
    def is_locked(self) -> bool:
        """True once a safe cadence has been discovered."""
        return self.mode is CadenceMode.LOCKED

    @property
    def effective_rate(self) -> int:
        """Rate used for pacing: the safe rate when locked, else the dynamic rate (min 1)."""
        rate = self.safe_rate if self.safe_rate > 0 else self.dynamic_rate
        return rate if rate > 0 else 1


class RateState:
    """
    Thread-safe rate limit state shared by all callers of one client.

    Tracks server-declared limits and the self-discovered cadence. Every
    read and write goes through a single lock, held only for bookkeeping
    (never while sleeping or doing I/O).

    Example:
        >>> state = RateState()
        >>> state.observe({})            # no declared headers -> DISCOVERING
        >>> state.adjust(hit_throttle=False)
        >>> state.dynamic_rate
        2
        >>> state.adjust(hit_throttle=True)
        >>> state.safe_rate, state.mode
        (1, <CadenceMode.LOCKED: 'LOCKED'>)

    Args:
        initial_rate: Starting requests per second for discovery (default: 1).
        limit_header: Header declaring the total quota.
        remaining_header: Header declaring the remaining quota.
        reset_header: Header declaring the window reset, in epoch seconds.
        clock: Monotonic clock used for pacing.
        wall_clock: Epoch clock used for the declared reset window.
    """

    def __init__(
        self,
        initial_rate: int = 1,
        limit_header: str = "X-RateLimit-Limit",
        remaining_header: str = "X-RateLimit-Remaining",
        reset_header: str = "X-RateLimit-Reset",
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        assert initial_rate is not None, "initial_rate cannot be None."
        assert initial_rate >= 1, "initial_rate must be at least 1."
        assert limit_header, "limit_header cannot be empty."
        assert remaining_header, "remaining_header cannot be empty."
        assert reset_header, "reset_header cannot be empty."

        self.limit_header = limit_header
        self.remaining_header = remaining_header
        self.reset_header = reset_header
        self._clock = clock
        self._wall_clock = wall_clock

        self._limit = 0
        self._remaining = 0
        self._reset_at: float | None = None
        self._mode = CadenceMode.IDLE
        self._dynamic_rate = initial_rate
        self._safe_rate = 0
        self._last_request_at: float | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def mode(self) -> CadenceMode:
        with self._lock:
            return self._mode

    @property
    def auto_discovering(self) -> bool:
        with self._lock:
            return self._mode is CadenceMode.DISCOVERING

    @property
    def dynamic_rate(self) -> int:
        with self._lock:
            return self._dynamic_rate

    @property
    def safe_rate(self) -> int:
        with self._lock:
            return self._safe_rate

    def snapshot(self) -> RateLimitSnapshot:
        """Return a consistent copy of every field, taken under the lock."""
        with self._lock:
            return RateLimitSnapshot(
                limit=self._limit,
                remaining=self._remaining,
                reset_at=self._reset_at,
                mode=self._mode,
                dynamic_rate=self._dynamic_rate,
                safe_rate=self._safe_rate,
                last_request_at=self._last_request_at,
            )

    # ------------------------------------------------------------------
    # Header ingestion
    # ------------------------------------------------------------------

    def observe(self, headers: Mapping[str, str]) -> None:
        """
        Update declared limits from response headers.

        Each header is parsed independently; a malformed value only drops
        that field. If any header parsed, the server is authoritative and
        discovery stops for this cycle. If none parsed and no safe cadence
        is locked, discovery (re)starts.

        Args:
            headers: Response headers. Lookups are case-insensitive.
        """
        headers = CaseInsensitiveDict(headers or {})
        limit = parse_int_header(headers, self.limit_header)
        remaining = parse_int_header(headers, self.remaining_header)
        reset = parse_int_header(headers, self.reset_header)

        with self._lock:
            if limit is not None:
                self._limit = limit
            if remaining is not None:
                self._remaining = remaining
            if reset is not None:
                self._reset_at = float(reset)

            if self._mode is CadenceMode.LOCKED:
                return

            declared = limit is not None or remaining is not None or reset is not None
            self._mode = CadenceMode.SERVER_DECLARED if declared else CadenceMode.DISCOVERING

    # ------------------------------------------------------------------
    # Cadence adjustment
    # ------------------------------------------------------------------

    def adjust(self, hit_throttle: bool) -> None:
        """
        Adjust the discovered cadence after a response.

        - LOCKED: re-asserts dynamic_rate == safe_rate, nothing else.
        - Not discovering: no-op (declared headers govern).
        - Discovering, throttled: locks the safe rate at one below the
          current dynamic rate (minimum 1 req/s). Irreversible.
        - Discovering, not throttled: probes one req/s higher.

        Args:
            hit_throttle: True if the response was HTTP 429.
        """
        with self._lock:
            if self._mode is CadenceMode.LOCKED:
                self._dynamic_rate = self._safe_rate
                return

            if self._mode is not CadenceMode.DISCOVERING:
                return

            if hit_throttle:
                self._latch_safe_rate(max(1, self._dynamic_rate - 1))
                return

            self._dynamic_rate += 1
            logger.debug(f"⬆ Increasing discovery rate to {self._dynamic_rate} req/s")

    def _latch_safe_rate(self, rate: int) -> None:
        """Transition DISCOVERING -> LOCKED. Caller must hold the lock."""
        throttled_at = self._dynamic_rate
        self._safe_rate = rate
        self._dynamic_rate = rate
        self._mode = CadenceMode.LOCKED
        logger.warning(
            f"🔒 Safe cadence locked at {rate} req/s (throttled at {throttled_at} req/s)"
        )

    # ------------------------------------------------------------------
    # Pacing
    # ------------------------------------------------------------------

    def reserve_slot(self) -> float:
        """
        Reserve the next dispatch slot and return how long to wait for it.

        Spacing is 1 / effective_rate seconds, where effective_rate is the
        safe rate once locked, else the dynamic rate. The slot time is
        recorded immediately so concurrent callers queue behind each other.
        While the server declares limits, no cadence spacing is applied.

        Returns:
            Seconds the caller must sleep before dispatching (>= 0).
        """
        with self._lock:
            now = self._clock()

            if self._mode is CadenceMode.SERVER_DECLARED or self._last_request_at is None:
                wait = 0.0
            else:
                rate = self._safe_rate if self._safe_rate > 0 else self._dynamic_rate
                if rate <= 0:
                    rate = 1
                min_interval = 1.0 / rate
                wait = max(0.0, self._last_request_at + min_interval - now)

            self._last_request_at = now + wait
            return wait

    def reset_window_wait(self) -> float:
        """
        Return how long to wait for an exhausted declared window to reset.

        Blocks only when a limit was declared, the remaining quota is
        exhausted and the reset time is still in the future. The wait is
        at least one second.

        Returns:
            Seconds to wait, or 0.0 when no wait is needed.
        """
        with self._lock:
            if self._limit <= 0 or self._remaining > 0 or self._reset_at is None:
                return 0.0

            until_reset = self._reset_at - self._wall_clock()
            if until_reset <= 0:
                return 0.0
            return max(1.0, until_reset)


# =============================================================================
# Wait Budget
# =============================================================================


class WaitBudget:
    """
    Per-call guard applied at every suspension point.

    Checks the caller's cancel event and time budget before each sleep and
    aborts the whole call when either is triggered. When a cancel event is
    given, sleeping waits on it so cancellation interrupts the sleep.

    Args:
        max_wait_time: Seconds allowed from the start of the call. None = unlimited.
        cancel_event: Optional event that cancels the call when set.
        clock: Monotonic clock.
        sleep: Sleep function used when no cancel event is given.
    """

    def __init__(
        self,
        max_wait_time: float | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        assert max_wait_time is None or max_wait_time > 0, "max_wait_time must be > 0 or None."

        self.max_wait_time = max_wait_time
        self.cancel_event = cancel_event
        self._clock = clock
        self._sleep = sleep
        self._started_at = clock()

    @property
    def elapsed(self) -> float:
        """Seconds since the call started."""
        return self._clock() - self._started_at

    def sleep(self, seconds: float, reason: str) -> None:
        """
        Sleep for `seconds`, unless the call was cancelled or would run out of time.

        Raises:
            WaitCancelledError: If the cancel event is (or becomes) set.
            WaitDeadlineExceededError: If the wait would exceed max_wait_time.
        """
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise WaitCancelledError(reason)

        if self.max_wait_time is not None:
            waited = self.elapsed
            if waited + seconds > self.max_wait_time:
                raise WaitDeadlineExceededError(
                    waited=waited,
                    max_wait_time=self.max_wait_time,
                    planned_wait=seconds,
                )

        if seconds <= 0:
            return

        if self.cancel_event is not None:
            if self.cancel_event.wait(seconds):
                raise WaitCancelledError(reason)
            return

        self._sleep(seconds)


# =============================================================================
# Options
# =============================================================================


@dataclass(frozen=True)
class AdaptiveRateLimitOptions:
    """
    Configuration options for AdaptiveRateLimitedHttpClient.

    Fields set to None use values from global config (RATEPILOT.config.rate_limit).

    Attributes:
        max_retries: Retries after the first attempt while throttled.
        base_backoff: Base delay in seconds for exponential backoff.
        max_backoff: Cap in seconds for a single backoff wait.
        locked_cooldown: Wait after a 429 once the cadence is locked.
        initial_rate: Starting requests per second for discovery.
        max_wait_time: Default time budget per call (None = use config).
        limit_header: Header declaring the total quota.
        remaining_header: Header declaring the remaining quota.
        reset_header: Header declaring the window reset (epoch seconds).

    Example:
        >>> options = AdaptiveRateLimitOptions(max_retries=3, base_backoff=0.5)
        >>> client = AdaptiveRateLimitedHttpClient(delegate=SessionHttpClient(), options=options)
    """

    max_retries: int | None = None
    base_backoff: float | None = None
    max_backoff: float | None = None
    locked_cooldown: float | None = None
    initial_rate: int | None = None
    max_wait_time: float | None = None
    limit_header: str | None = None
    remaining_header: str | None = None
    reset_header: str | None = None

    def with_defaults_from(self, cfg: "RateLimitConfig") -> "AdaptiveRateLimitOptions":
        """
        Return new options with None values filled from config.

        Args:
            cfg: The RateLimitConfig to use for default values.

        Returns:
            A new AdaptiveRateLimitOptions (max_wait_time may stay None = unlimited).
        """
        return AdaptiveRateLimitOptions(
            max_retries=self.max_retries if self.max_retries is not None else cfg.max_retries,
            base_backoff=self.base_backoff if self.base_backoff is not None else cfg.base_backoff,
            max_backoff=self.max_backoff if self.max_backoff is not None else cfg.max_backoff,
            locked_cooldown=self.locked_cooldown if self.locked_cooldown is not None else cfg.locked_cooldown,
            initial_rate=self.initial_rate if self.initial_rate is not None else cfg.initial_rate,
            max_wait_time=self.max_wait_time if self.max_wait_time is not None else cfg.max_wait_time,
            limit_header=self.limit_header or cfg.limit_header,
            remaining_header=self.remaining_header or cfg.remaining_header,
            reset_header=self.reset_header or cfg.reset_header,
        )


# =============================================================================
# Rate-Limited Decorator
# =============================================================================


class AdaptiveRateLimitedHttpClient(HttpClient):
    """
    HTTP client decorator with adaptive, header-aware rate limiting.

    Every call goes through:
    1. Pacer: waits for the next slot of the discovered (or locked) cadence
    2. Reset-window gate (first attempt only): waits while a declared quota
       is exhausted and its reset time is in the future
    3. Delegate send
    4. Header ingestion and cadence adjustment
    5. On HTTP 429: computes the wait, closes the response, sleeps and retries

    Transport failures (requests.RequestException) propagate immediately and
    are never retried. Non-429 responses, including 4xx and 5xx, are returned
    as-is. Only throttling is handled here; general retry policy belongs to
    the caller.

    This decorator is thread-safe: all callers share one RateState.

    Example:
        >>> from ratepilot import AdaptiveRateLimitedHttpClient, SessionHttpClient
        >>> client = AdaptiveRateLimitedHttpClient(delegate=SessionHttpClient())
        >>> response = client.post(
        ...     "https://api.example.com/v1/jobs",
        ...     data={"name": "report"},
        ...     headers={"Authorization": "Bearer eyJ..."},
        ... )

    Args:
        delegate: The underlying HTTP client (transport) to send requests with.
        options: Rate limiting options. None fields use RATEPILOT.config.rate_limit.
        clock: Monotonic clock (injectable for tests).
        wall_clock: Epoch clock used for declared reset windows and HTTP-dates.
        sleep: Sleep function used when no cancel event is given.

    Raises:
        RateLimitRetriesExhaustedError: When every attempt was throttled.
        WaitDeadlineExceededError: When a wait would exceed the call's max_wait_time.
        WaitCancelledError: When the call's cancel event is set.
        requests.RequestException: When the transport fails.
    """

    def __init__(
        self,
        delegate: HttpClient,
        options: AdaptiveRateLimitOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        from ratepilot._config import RATEPILOT

        resolved = (options or AdaptiveRateLimitOptions()).with_defaults_from(RATEPILOT.config.rate_limit)

        assert delegate is not None, "Delegate HTTP client is required."
        assert resolved.max_retries is not None, "🌀 Sanity check | max_retries must be set after with_defaults_from()"
        assert resolved.max_retries >= 0, "max_retries must be >= 0."
        assert resolved.base_backoff is not None and resolved.base_backoff > 0, "base_backoff must be greater than 0."
        assert resolved.max_backoff is not None and resolved.max_backoff > 0, "max_backoff must be greater than 0."
        assert resolved.locked_cooldown is not None and resolved.locked_cooldown > 0, "locked_cooldown must be greater than 0."
        assert resolved.initial_rate is not None and resolved.initial_rate >= 1, "initial_rate must be at least 1."
        assert resolved.max_wait_time is None or resolved.max_wait_time > 0, "max_wait_time must be > 0 or None."

        self.delegate = delegate
        self.options = resolved

        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._state = RateState(
            initial_rate=resolved.initial_rate,
            limit_header=resolved.limit_header or "X-RateLimit-Limit",
            remaining_header=resolved.remaining_header or "X-RateLimit-Remaining",
            reset_header=resolved.reset_header or "X-RateLimit-Reset",
            clock=clock,
            wall_clock=wall_clock,
        )
        self._logger_prefix = type(self).__name__

    @property
    def state(self) -> RateState:
        """The rate state shared by every caller of this client."""
        return self._state

    def snapshot(self) -> RateLimitSnapshot:
        """Return a consistent copy of the current rate state."""
        return self._state.snapshot()

    # ------------------------------------------------------------------
    # Pacer and reset-window gate
    # ------------------------------------------------------------------

    def wait_for_slot(self, budget: WaitBudget | None = None) -> float:
        """
        Block until the next dispatch slot of the current cadence.

        Args:
            budget: Per-call wait guard. If None, waits without limits.

        Returns:
            Seconds waited.
        """
        budget = budget or self._new_budget()
        wait = self._state.reserve_slot()
        if wait > 0:
            logger.debug(f"{self._logger_prefix} | Pacing: waiting {wait:.3f}s before dispatch")
        budget.sleep(wait, reason="pacing")
        return wait

    def wait_for_reset_window(self, budget: WaitBudget | None = None) -> float:
        """
        Block while the declared quota is exhausted and the window has not reset.

        Args:
            budget: Per-call wait guard. If None, waits without limits.

        Returns:
            Seconds waited.
        """
        budget = budget or self._new_budget()
        wait = self._state.reset_window_wait()
        if wait > 0:
            logger.info(
                f"{self._logger_prefix} | ⏳ Declared quota exhausted. Waiting {wait:.1f}s for window reset..."
            )
        budget.sleep(wait, reason="reset window")
        return wait

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def compute_wait(self, headers: Mapping[str, str], attempt_index: int) -> float:
        """
        Compute the wait after a throttled response.

        1. Retry-After (seconds or HTTP-date): used when positive, otherwise
           base_backoff.
        2. Locked cadence: locked_cooldown (one short cooldown tick).
        3. Otherwise: base_backoff * 2^attempt_index, capped at max_backoff.

        Args:
            headers: Headers of the throttled response.
            attempt_index: Zero-based index of the throttled attempt.

        Returns:
            Seconds to wait before the next attempt.
        """
        assert self.options.base_backoff is not None
        assert self.options.max_backoff is not None
        assert self.options.locked_cooldown is not None

        headers = CaseInsensitiveDict(headers or {})
        retry_after = parse_retry_after(headers.get("Retry-After"), now=self._wall_clock())
        if retry_after is not None:
            return retry_after if retry_after > 0 else self.options.base_backoff

        if self._state.safe_rate > 0:
            return self.options.locked_cooldown

        exponent = min(max(attempt_index, 0), 32)
        return min(self.options.base_backoff * (2 ** exponent), self.options.max_backoff)

    # ------------------------------------------------------------------
    # Retry/backoff driver
    # ------------------------------------------------------------------

    @override
    def send(
        self,
        request: requests.PreparedRequest,
        timeout: float | None = None,
    ) -> requests.Response:
        """
        Send the request with adaptive rate limiting.

        Equivalent to `execute(request, timeout=timeout)`.
        """
        return self.execute(request, timeout=timeout)

    def execute(
        self,
        request: requests.PreparedRequest,
        timeout: float | None = None,
        max_wait_time: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> requests.Response:
        """
        Send a fully-formed request, pacing and retrying while throttled.

        Args:
            request: The prepared request (authentication headers included).
                It is sent as-is on every attempt and never modified.
            timeout: Transport timeout in seconds, passed to the delegate.
            max_wait_time: Time budget in seconds for this call, checked before
                every wait. None uses the client's configured max_wait_time.
            cancel_event: Event that aborts the call at the next wait when set.

        Returns:
            The first response whose status is not HTTP 429.

        Raises:
            RateLimitRetriesExhaustedError: When all max_retries + 1 attempts were throttled.
            WaitDeadlineExceededError: When a wait would exceed max_wait_time.
            WaitCancelledError: When cancel_event is set at a wait.
            requests.RequestException: When the transport fails (never retried).
        """
        assert request is not None, "Request cannot be None."
        assert self.options.max_retries is not None
        assert self.options.base_backoff is not None
        assert self.options.max_backoff is not None

        budget = self._new_budget(max_wait_time, cancel_event)
        throttled: list[ThrottledAttempt] = []

        def wait_after_throttle(exception: Exception, attempt_number: int) -> float:
            assert isinstance(exception, ServerSideRateLimitError), \
                "🌀 Sanity check | only HTTP 429 responses are retried"
            wait = self.compute_wait(exception.response.headers, attempt_number)
            throttled.append(self._to_throttled_attempt(exception, wait))
            return wait

        retrying = Retrying(
            max_retries=self.options.max_retries,
            backoff_factor=self.options.base_backoff,
            max_backoff=self.options.max_backoff,
            wait_strategy=wait_after_throttle,
            sleep=lambda seconds: budget.sleep(seconds, reason="backoff"),
            logger_prefix=self._logger_prefix,
        )

        try:
            for attempt in retrying:
                with attempt as ctx:
                    self.wait_for_slot(budget)
                    if ctx.is_first_attempt:
                        self.wait_for_reset_window(budget)

                    logger.debug(
                        f"{self._logger_prefix} | Attempt {ctx.attempt_number + 1}/{ctx.max_attempts}: "
                        f"{request.method} {request.url}"
                    )
                    response = self.delegate.send(request, timeout)
                    self._state.observe(response.headers)

                    if response.status_code != requests.codes.too_many_requests:
                        self._state.adjust(hit_throttle=False)
                        return response

                    self._state.adjust(hit_throttle=True)
                    response.close()
                    raise ServerSideRateLimitError(response, attempt_number=ctx.attempt_number)

        except MaxRetriesExceededError as e:
            last = e.last_exception
            assert isinstance(last, ServerSideRateLimitError), \
                "🌀 Sanity check | only HTTP 429 responses are retried"
            throttled.append(self._to_throttled_attempt(last, wait=None))
            raise RateLimitRetriesExhaustedError(
                response=last.response,
                attempts=tuple(throttled),
                last_exception=last,
            ) from last

        raise AssertionError("🌀 Sanity check | retry loop ended without a response")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_budget(
        self,
        max_wait_time: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> WaitBudget:
        return WaitBudget(
            max_wait_time=max_wait_time if max_wait_time is not None else self.options.max_wait_time,
            cancel_event=cancel_event,
            clock=self._clock,
            sleep=self._sleep,
        )

    @staticmethod
    def _to_throttled_attempt(error: ServerSideRateLimitError, wait: float | None) -> ThrottledAttempt:
        return ThrottledAttempt(
            attempt_number=error.attempt_number,
            status_code=error.response.status_code,
            retry_after=CaseInsensitiveDict(error.response.headers or {}).get("Retry-After"),
            wait_time=wait,
        )
