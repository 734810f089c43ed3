"""
Global configuration for ratepilot.

This module provides a simple configuration system following Convention over
Configuration (CoC). Applications may call RATEPILOT.configure() at startup to
customize defaults; otherwise sensible defaults are used.

Hierarchy of precedence (highest to lowest):
1. Options passed to client constructors
2. Values set via RATEPILOT.configure()
3. Environment variables (RATEPILOT_*) - when allow_env_override=True
4. Hardcoded defaults (in dataclass fields)

Example:
    >>> from ratepilot import RATEPILOT
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> RATEPILOT.config.rate_limit.max_retries
    5
    >>>
    >>> # Custom configuration
    >>> RATEPILOT.configure(
    ...     rate_limit={"max_retries": 3, "base_backoff": 0.5},
    ...     http={"request_timeout": 60},
    ... )
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any, Self

# Strings accepted as "no limit" for optional numeric fields
_UNLIMITED_VALUES = ("none", "null", "unlimited")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Reads environment variables with type conversion.

    Example:
        >>> EnvVars.get("RATEPILOT_RATE_LIMIT_MAX_RETRIES", type_hint=int)
        5
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Args:
            var_name: The environment variable name.
            type_hint: Type hint used to infer the converter (ignored if converter is provided).
            converter: Custom converter function (takes precedence over type_hint).

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """
        Infer converter function from type hint.

        Handles both actual types and string annotations (PEP 563).
        """
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return lambda v: v.lower() in ("true", "1", "yes")
        return str


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration dataclasses.

    Provides `.with_overrides()` for creating new instances with partial
    field updates, and `.with_env_vars()` for applying environment variables
    declared in field metadata. Unknown field names are rejected early.

    Example:
        >>> config = HttpConfig()
        >>> custom = config.with_overrides({"request_timeout": 60})
        >>> custom.request_timeout
        60
    """

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        Args:
            overrides: Dict of field names to new values.
            allow_none_fields: Field names that accept None as a value.
                By default, None values are filtered out.

        Returns:
            New instance with updated values.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        allow_none = allow_none_fields or set()
        filtered = {k: v for k, v in overrides.items() if v is not None or k in allow_none}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Reads env vars declared in field metadata. Fields with
        metadata={"skip": True} are left for subclasses to handle.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            skip = f.metadata.get("skip", False)
            if env_var and not skip:
                value = EnvVars.get(
                    var_name=env_var,
                    type_hint=f.type,
                    converter=f.metadata.get("converter"),
                )
                if value is not None:
                    overrides[f.name] = value
        return self.with_overrides(overrides)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class RateLimitConfig(OverridableConfig):
    """
    Configuration for the adaptive rate-limited HTTP client.

    These values are used as defaults when creating an
    AdaptiveRateLimitedHttpClient without explicit options.

    Attributes:
        max_retries: Retries after the first attempt while throttled (HTTP 429).
            Use 5 for 6 total attempts (1 original + 5 retries).
            Env var: RATEPILOT_RATE_LIMIT_MAX_RETRIES

        base_backoff: Base delay in seconds for exponential backoff, also used
            when the server sends a non-positive Retry-After.
            Env var: RATEPILOT_RATE_LIMIT_BASE_BACKOFF

        max_backoff: Cap in seconds for a single exponential backoff wait.
            Env var: RATEPILOT_RATE_LIMIT_MAX_BACKOFF

        locked_cooldown: Seconds to wait after a 429 once the safe cadence is
            locked and the server gave no Retry-After.
            Env var: RATEPILOT_RATE_LIMIT_LOCKED_COOLDOWN

        initial_rate: Starting requests-per-second for cadence discovery.
            Env var: RATEPILOT_RATE_LIMIT_INITIAL_RATE

        max_wait_time: Maximum seconds a single call may spend waiting
            (pacing, reset window and backoff combined). None means unlimited.
            Env var: RATEPILOT_RATE_LIMIT_MAX_WAIT_TIME

        limit_header: Response header declaring the total quota.
            Env var: RATEPILOT_RATE_LIMIT_LIMIT_HEADER

        remaining_header: Response header declaring the remaining quota.
            Env var: RATEPILOT_RATE_LIMIT_REMAINING_HEADER

        reset_header: Response header declaring the window reset (epoch seconds).
            Env var: RATEPILOT_RATE_LIMIT_RESET_HEADER

    Example:
        >>> from ratepilot import RATEPILOT
        >>> RATEPILOT.configure(rate_limit={"max_retries": 3, "max_wait_time": 90.0})
    """

    max_retries: int = field(default=5, metadata={"env": "RATEPILOT_RATE_LIMIT_MAX_RETRIES"})
    base_backoff: float = field(default=1.0, metadata={"env": "RATEPILOT_RATE_LIMIT_BASE_BACKOFF"})
    max_backoff: float = field(default=120.0, metadata={"env": "RATEPILOT_RATE_LIMIT_MAX_BACKOFF"})
    locked_cooldown: float = field(default=1.0, metadata={"env": "RATEPILOT_RATE_LIMIT_LOCKED_COOLDOWN"})
    initial_rate: int = field(default=1, metadata={"env": "RATEPILOT_RATE_LIMIT_INITIAL_RATE"})
    # Special field (processed manually - can be None for "unlimited")
    max_wait_time: float | None = field(
        default=None,
        metadata={"env": "RATEPILOT_RATE_LIMIT_MAX_WAIT_TIME", "skip": True},
    )
    limit_header: str = field(default="X-RateLimit-Limit", metadata={"env": "RATEPILOT_RATE_LIMIT_LIMIT_HEADER"})
    remaining_header: str = field(default="X-RateLimit-Remaining", metadata={"env": "RATEPILOT_RATE_LIMIT_REMAINING_HEADER"})
    reset_header: str = field(default="X-RateLimit-Reset", metadata={"env": "RATEPILOT_RATE_LIMIT_RESET_HEADER"})

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        Extends the base implementation so max_wait_time accepts None or
        "unlimited"/"none"/"null" (converted to None).
        """
        if not overrides:
            return self

        processed = dict(overrides)
        if "max_wait_time" in processed:
            value = processed["max_wait_time"]
            if isinstance(value, str) and value.lower() in _UNLIMITED_VALUES:
                processed["max_wait_time"] = None

        merged_allow_none = {"max_wait_time"} | (allow_none_fields or set())
        return super().with_overrides(processed, allow_none_fields=merged_allow_none)

    def with_env_vars(self) -> Self:
        """Override to handle max_wait_time (can be None for 'unlimited')."""
        result = super().with_env_vars()

        overrides: dict[str, Any] = {}
        if max_wait := os.environ.get("RATEPILOT_RATE_LIMIT_MAX_WAIT_TIME"):
            if max_wait.lower() in _UNLIMITED_VALUES:
                overrides["max_wait_time"] = None
            else:
                try:
                    overrides["max_wait_time"] = float(max_wait)
                except ValueError as e:
                    raise ConfigEnvVarError(
                        env_var="RATEPILOT_RATE_LIMIT_MAX_WAIT_TIME",
                        value=max_wait,
                        expected_type="float",
                        cause=e,
                    ) from e

        return result.with_overrides(overrides, allow_none_fields={"max_wait_time"})

    def validate(self) -> Self:
        """Validate rate limit configuration fields."""
        if self.max_retries < 0:
            raise ConfigValidationError(
                "max_retries", self.max_retries,
                "Must be >= 0.", section="rate_limit"
            )
        if self.base_backoff <= 0:
            raise ConfigValidationError(
                "base_backoff", self.base_backoff,
                "Must be greater than 0.", section="rate_limit"
            )
        if self.max_backoff < self.base_backoff:
            raise ConfigValidationError(
                "max_backoff", self.max_backoff,
                "Must be >= base_backoff.", section="rate_limit"
            )
        if self.locked_cooldown <= 0:
            raise ConfigValidationError(
                "locked_cooldown", self.locked_cooldown,
                "Must be greater than 0.", section="rate_limit"
            )
        if self.initial_rate < 1:
            raise ConfigValidationError(
                "initial_rate", self.initial_rate,
                "Must be >= 1.", section="rate_limit"
            )
        if self.max_wait_time is not None and self.max_wait_time <= 0:
            raise ConfigValidationError(
                "max_wait_time", self.max_wait_time,
                "Must be greater than 0 (or None for unlimited).", section="rate_limit"
            )
        for name in ("limit_header", "remaining_header", "reset_header"):
            if not getattr(self, name):
                raise ConfigValidationError(
                    name, getattr(self, name),
                    "Must not be empty.", section="rate_limit"
                )
        return self


@dataclass(frozen=True)
class HttpConfig(OverridableConfig):
    """
    Configuration for outbound HTTP requests.

    Attributes:
        request_timeout: Transport timeout in seconds for a single request.
            Env var: RATEPILOT_HTTP_REQUEST_TIMEOUT

    Example:
        >>> from ratepilot import RATEPILOT
        >>> RATEPILOT.config.http.request_timeout
        30.0
    """

    request_timeout: float = field(default=30.0, metadata={"env": "RATEPILOT_HTTP_REQUEST_TIMEOUT"})

    def validate(self) -> Self:
        """Validate HTTP configuration fields."""
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout,
                "Must be greater than 0.", section="http"
            )
        return self


@dataclass(frozen=True)
class RatePilotConfig:
    """
    Root configuration aggregating all sections.

    Access via the global `RATEPILOT.config` property.

    Attributes:
        rate_limit: Adaptive rate limiting configuration.
        http: Outbound HTTP configuration.
    """

    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    http: HttpConfig = field(default_factory=HttpConfig)

    def with_env_vars(self) -> RatePilotConfig:
        """Return a new config with RATEPILOT_* environment variables applied on top."""
        return RatePilotConfig(
            rate_limit=self.rate_limit.with_env_vars(),
            http=self.http.with_env_vars(),
        )

    def with_section_overrides(
        self,
        *,
        rate_limit: dict[str, Any] | None = None,
        http: dict[str, Any] | None = None,
    ) -> RatePilotConfig:
        """
        Return a new config with overrides applied to nested sections.

        Each section dict is merged with the existing section config,
        only overriding the specified fields.
        """
        return RatePilotConfig(
            rate_limit=self.rate_limit.with_overrides(rate_limit or {}),
            http=self.http.with_overrides(http or {}),
        )


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _RatePilot:
    """
    Singleton holding the library-wide configuration defaults.

    Only defaults live here; rate limiting state is always owned by
    individual client instances.

    Example:
        >>> from ratepilot import RATEPILOT
        >>> RATEPILOT.configure(rate_limit={"max_retries": 2})
        >>> RATEPILOT.config.rate_limit.max_retries
        2
    """

    def __init__(self) -> None:
        self._config: RatePilotConfig = RatePilotConfig().with_env_vars()

    def configure(
        self,
        *,
        rate_limit: dict[str, Any] | None = None,
        http: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> RatePilotConfig:
        """
        Configure library defaults.

        Args:
            rate_limit: Rate limiting overrides (max_retries, base_backoff, ...).
            http: HTTP overrides (request_timeout).
            allow_env_override: If True (default), env vars are used as fallback
                for fields NOT provided. If False, env vars are ignored.

        Returns:
            The configured RatePilotConfig instance.

        Raises:
            ValueError: If any dict contains unknown field names.
            ConfigValidationError: If any config value fails validation.
        """
        base = RatePilotConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(rate_limit=rate_limit, http=http)
        return self.validate()

    @property
    def config(self) -> RatePilotConfig:
        """Access current configuration (read-only)."""
        return self._config

    def reset(self) -> RatePilotConfig:
        """
        Reset configuration to defaults + env vars.

        Useful for testing to ensure clean state between tests.
        """
        self._config = RatePilotConfig().with_env_vars()
        return self.validate()

    def validate(self) -> RatePilotConfig:
        """
        Validate current configuration.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        self._config.rate_limit.validate()
        self._config.http.validate()
        return self._config

    def __repr__(self) -> str:
        return f"RATEPILOT(config={self._config!r})"


# Global singleton instance - always reflects current configuration
RATEPILOT: _RatePilot = _RatePilot()
RATEPILOT.validate()
