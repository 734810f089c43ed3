"""
HTTP client abstraction for ratepilot.

This module provides the transport interface that rate limiting decorators
wrap. Clients receive fully-formed requests (method, URL and headers,
including authentication) and are never responsible for acquiring
credentials.

Available implementations:
    - SessionHttpClient: Sends requests through a `requests.Session`. Default transport.
    - AdaptiveRateLimitedHttpClient: Decorator with adaptive rate limiting
      (see ratepilot._rate_limit).

Example:
    >>> from ratepilot._http import SessionHttpClient
    >>> client = SessionHttpClient()
    >>> response = client.get(
    ...     "https://api.example.com/v1/resource",
    ...     headers={"Authorization": "Bearer eyJ..."},
    ... )
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, override

import requests

logger = logging.getLogger(__name__)


# =============================================================================
# Abstract Base Class
# =============================================================================


class HttpClient(ABC):
    """
    Abstract base class for HTTP clients.

    Implementations only need to provide `send()`. The convenience methods
    `request()`, `get()` and `post()` build a `requests.PreparedRequest`
    and route it through `send()`, so decorators that override `send()`
    apply to every call.

    Example:
        >>> class MyHttpClient(HttpClient):
        ...     def send(self, request, timeout=None):
        ...         return requests.Session().send(request, timeout=timeout)
    """

    @abstractmethod
    def send(
        self,
        request: requests.PreparedRequest,
        timeout: float | None = None,
    ) -> requests.Response:
        """
        Send a fully-formed request.

        Args:
            request: The prepared request (method, URL, headers and body).
            timeout: Transport timeout in seconds. If None, uses the
                implementation's default.

        Returns:
            The HTTP response, whatever its status code.

        Raises:
            requests.RequestException: If the transport fails (connection error, timeout, ...).
        """
        pass

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> requests.Response:
        """
        Build a request and send it through `send()`.

        Args:
            method: HTTP method (e.g. "GET").
            url: The full URL to request.
            headers: Headers to include (authentication included).
            params: Query string parameters.
            data: JSON-serializable data to send in the request body.
            timeout: Transport timeout in seconds.

        Returns:
            The HTTP response.
        """
        assert method, "HTTP method cannot be empty."
        assert url, "URL cannot be empty."

        prepared = requests.Request(
            method=method.upper(),
            url=url,
            headers=headers,
            params=params,
            json=data,
        ).prepare()
        return self.send(prepared, timeout)

    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> requests.Response:
        """Execute a GET request through `send()`."""
        return self.request("GET", url, headers=headers, timeout=timeout)

    def post(
        self,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> requests.Response:
        """Execute a POST request with JSON body through `send()`."""
        return self.request("POST", url, headers=headers, data=data, timeout=timeout)


# =============================================================================
# Session Implementation
# =============================================================================


class SessionHttpClient(HttpClient):
    """
    HTTP client sending requests through a `requests.Session`.

    The session provides connection pooling and is safe to share between
    threads for sending requests. Request headers are sent as given; this
    client never adds or changes authentication headers.

    Example:
        >>> from ratepilot._http import SessionHttpClient
        >>> client = SessionHttpClient(default_timeout=10)
        >>> response = client.get("https://api.example.com/items")

    Args:
        session: Session to send requests through. If None, creates a new one.
        default_timeout: Timeout in seconds used when `send()` receives None.
            If None, uses global config (RATEPILOT.config.http.request_timeout).
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        default_timeout: float | None = None,
    ):
        if default_timeout is None:
            from ratepilot._config import RATEPILOT
            default_timeout = RATEPILOT.config.http.request_timeout

        assert default_timeout > 0, "default_timeout must be greater than 0."

        self.session = session or requests.Session()
        self.default_timeout = default_timeout

    @override
    def send(
        self,
        request: requests.PreparedRequest,
        timeout: float | None = None,
    ) -> requests.Response:
        """
        Send the request through the underlying session.

        Args:
            request: The prepared request.
            timeout: Transport timeout in seconds (default: default_timeout).

        Returns:
            The HTTP response.

        Raises:
            AssertionError: If request is None or timeout is invalid.
            requests.RequestException: If the transport fails.
        """
        assert request is not None, "Request cannot be None."
        effective_timeout = timeout if timeout is not None else self.default_timeout
        assert effective_timeout > 0, "Timeout must be greater than 0."

        logger.debug(f"SessionHttpClient: {request.method} {request.url}")
        return self.session.send(request, timeout=effective_timeout)

    def close(self) -> None:
        """Close the underlying session and its pooled connections."""
        self.session.close()
