"""
ratepilot: adaptive client-side rate limiting for HTTP APIs.

Wraps an HTTP transport so that callers obey server-declared rate limits
(X-RateLimit-* headers), discover a safe cadence when the server declares
nothing, and back off on HTTP 429 (Retry-After or exponential backoff).

Quick Start:
    >>> from ratepilot import AdaptiveRateLimitedHttpClient, SessionHttpClient
    >>> client = AdaptiveRateLimitedHttpClient(delegate=SessionHttpClient())
    >>> response = client.get(
    ...     "https://api.example.com/v1/items",
    ...     headers={"Authorization": "Bearer eyJ..."},
    ... )
    >>> print(response.status_code)

Per-call deadline and cancellation:
    >>> import threading, requests
    >>> cancel = threading.Event()
    >>> request = requests.Request("GET", "https://api.example.com/v1/items").prepare()
    >>> response = client.execute(request, max_wait_time=30.0, cancel_event=cancel)

Global Configuration:
    >>> from ratepilot import RATEPILOT
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> retries = RATEPILOT.config.rate_limit.max_retries
    >>>
    >>> # Custom configuration
    >>> RATEPILOT.configure(
    ...     rate_limit={"max_retries": 3, "base_backoff": 0.5, "max_wait_time": 60},
    ...     http={"request_timeout": 10},
    ... )

Main Classes:
    - AdaptiveRateLimitedHttpClient: HTTP client decorator with adaptive rate limiting.
    - AdaptiveRateLimitOptions: Per-client options (None fields use global config).
    - RateState: Thread-safe rate limit state shared by all callers of a client.
    - RateLimitSnapshot: Point-in-time copy of a RateState.
    - CadenceMode: Enum with the cadence modes (IDLE, DISCOVERING, SERVER_DECLARED, LOCKED).
    - WaitBudget: Per-call deadline and cancellation guard.

HTTP Client:
    - HttpClient: Abstract base class for HTTP clients.
    - SessionHttpClient: HTTP client backed by requests.Session. Default transport.

Configuration:
    - RATEPILOT: Global singleton for configuration.
    - RatePilotConfig: Root configuration dataclass.
    - RateLimitConfig: Rate limiting configuration.
    - HttpConfig: HTTP configuration.
    - ConfigEnvVarError: Exception raised when env var parsing fails.
    - ConfigValidationError: Exception raised when config validation fails.

Errors:
    - ClientSideRateLimitError: Base exception for waits aborted on the client side.
    - WaitDeadlineExceededError: A wait would exceed the call's max_wait_time.
    - WaitCancelledError: The call's cancel event was set.
    - ServerSideRateLimitError: Internal signal for HTTP 429 (retried).
    - RateLimitRetriesExhaustedError: Every attempt was throttled.
    - ThrottledAttempt: Record of one throttled attempt.

Retry:
    - Retrying: Context manager for retry with exponential or custom backoff.
    - RetryableError: Base class for exceptions that trigger automatic retry.
    - MaxRetriesExceededError: Exception raised when all retry attempts are exhausted.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("ratepilot")

from ratepilot._config import (
    RATEPILOT,
    ConfigEnvVarError,
    ConfigValidationError,
    HttpConfig,
    RateLimitConfig,
    RatePilotConfig,
)
from ratepilot._http import (
    HttpClient,
    SessionHttpClient,
)
from ratepilot._rate_limit import (
    AdaptiveRateLimitedHttpClient,
    AdaptiveRateLimitOptions,
    CadenceMode,
    ClientSideRateLimitError,
    RateLimitRetriesExhaustedError,
    RateLimitSnapshot,
    RateState,
    ServerSideRateLimitError,
    ThrottledAttempt,
    WaitBudget,
    WaitCancelledError,
    WaitDeadlineExceededError,
)
from ratepilot._retry import (
    MaxRetriesExceededError,
    RetryableError,
    Retrying,
)

__all__ = [
    "__version__",
    # Configuration
    "RATEPILOT",
    "RatePilotConfig",
    "RateLimitConfig",
    "HttpConfig",
    "ConfigEnvVarError",
    "ConfigValidationError",
    # HTTP Client
    "HttpClient",
    "SessionHttpClient",
    # Rate Limiting
    "AdaptiveRateLimitedHttpClient",
    "AdaptiveRateLimitOptions",
    "RateState",
    "RateLimitSnapshot",
    "CadenceMode",
    "WaitBudget",
    # Errors
    "ClientSideRateLimitError",
    "WaitDeadlineExceededError",
    "WaitCancelledError",
    "ServerSideRateLimitError",
    "RateLimitRetriesExhaustedError",
    "ThrottledAttempt",
    # Retry
    "Retrying",
    "RetryableError",
    "MaxRetriesExceededError",
]
