"""Configuration helpers for the inbound gateway.

This module centralises runtime configuration. Values are read from the
environment on demand so tests can override them before building an app.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Final


class ConfigurationError(RuntimeError):
    """Raised when required configuration is missing or invalid."""


@dataclass(frozen=True)
class SecurityConfig:
    """Security-sensitive configuration options.

    Attributes:
        max_past_skew_seconds: How old a request timestamp may be.
        max_future_skew_seconds: How far ahead of the server clock a request
            timestamp may be.
        rate_window_seconds: Length of the sliding rate-limit window.
        default_rate_limit: Requests per window for keys without a positive
            limit of their own.
        trust_proxy_headers_env_var: Enables ``X-Real-IP``/``X-Forwarded-For``
            when the gateway sits behind a reverse proxy.
    """

    max_past_skew_seconds: int = 300
    max_future_skew_seconds: int = 60
    rate_window_seconds: int = 60
    default_rate_limit: int = 100
    trust_proxy_headers_env_var: str = "INBOUND_GATEWAY_TRUST_PROXY_HEADERS"

    @property
    def nonce_ttl_seconds(self) -> int:
        return self.max_past_skew_seconds + self.max_future_skew_seconds


SECURITY_CONFIG: Final = SecurityConfig()


@dataclass(frozen=True)
class DataConfig:
    """Configuration for persistent application storage."""

    sqlite_path_env_var: str = "INBOUND_GATEWAY_DB_PATH"
    default_sqlite_path: Path = Path("var/sqlite/gateway.db")
    busy_timeout_seconds: float = 30.0


DATA_CONFIG: Final = DataConfig()


@dataclass(frozen=True)
class ProvisionConfig:
    """Port range and retry policy for inbound provisioning."""

    port_range_low: int = 10000
    port_range_high: int = 65535
    port_retry_limit: int = 5
    sweep_interval_env_var: str = "INBOUND_GATEWAY_SWEEP_INTERVAL"
    default_sweep_interval_seconds: float = 60.0


PROVISION_CONFIG: Final = ProvisionConfig()


@dataclass(frozen=True)
class LoggingConfig:
    level_env_var: str = "INBOUND_GATEWAY_LOG_LEVEL"
    json_env_var: str = "INBOUND_GATEWAY_LOG_JSON"


LOGGING_CONFIG: Final = LoggingConfig()


@dataclass(frozen=True)
class ProxySettings:
    """Settings for the relay that signs requests on behalf of mobile clients.

    Attributes:
        upstream_url: Base URL of the gateway the relay forwards to.
        api_key: Credential key used for signing. Empty means "resolve from
            the shared credential store".
        api_secret: Secret paired with ``api_key``.
        default_protocol: Protocol requested for every relayed inbound.
        timeout_seconds: Fixed timeout for each upstream call.
        cors_origins: Browser origins allowed to call the relay.
    """

    upstream_url: str = "http://localhost:54321"
    api_key: str = ""
    api_secret: str = ""
    default_protocol: str = "shadowsocks"
    timeout_seconds: float = 30.0
    cors_origins: tuple[str, ...] = ("*",)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def trust_proxy_headers() -> bool:
    """Return whether forwarded-for headers identify the client address."""

    return _env_flag(SECURITY_CONFIG.trust_proxy_headers_env_var)


def resolve_sqlite_path() -> Path:
    """Return the configured path to the SQLite database file.

    The path is resolved on demand so tests can override the environment
    variable before instantiating application components.
    """

    env_var = DATA_CONFIG.sqlite_path_env_var
    candidate = os.environ.get(env_var)
    if candidate:
        return Path(candidate).expanduser().resolve()
    return DATA_CONFIG.default_sqlite_path.expanduser().resolve()


def resolve_sweep_interval() -> float:
    """Return the expired-order sweep interval in seconds; ``0`` disables it."""

    env_var = PROVISION_CONFIG.sweep_interval_env_var
    raw = os.environ.get(env_var)
    if raw is None or raw.strip() == "":
        return PROVISION_CONFIG.default_sweep_interval_seconds
    try:
        interval = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{env_var} must be a number of seconds.") from exc
    if interval < 0:
        raise ConfigurationError(f"{env_var} cannot be negative.")
    return interval


def resolve_log_level() -> str:
    return os.environ.get(LOGGING_CONFIG.level_env_var, "INFO").upper()


def json_logs_enabled() -> bool:
    return _env_flag(LOGGING_CONFIG.json_env_var)


def load_proxy_settings() -> ProxySettings:
    """Load relay settings from the environment.

    Raises:
        ConfigurationError: If the default protocol is not one the gateway can
            provision.
    """

    from .provisioning import supported_protocols

    defaults = ProxySettings()
    protocol = os.environ.get("INBOUND_GATEWAY_DEFAULT_PROTOCOL", defaults.default_protocol)
    if protocol not in supported_protocols():
        raise ConfigurationError(f"Unsupported default protocol: {protocol}")

    return ProxySettings(
        upstream_url=os.environ.get("INBOUND_GATEWAY_UPSTREAM_URL", defaults.upstream_url),
        api_key=os.environ.get("INBOUND_GATEWAY_UPSTREAM_API_KEY", ""),
        api_secret=os.environ.get("INBOUND_GATEWAY_UPSTREAM_API_SECRET", ""),
        default_protocol=protocol,
        timeout_seconds=defaults.timeout_seconds,
        cors_origins=_env_list("INBOUND_GATEWAY_CORS_ORIGINS", defaults.cors_origins),
    )
