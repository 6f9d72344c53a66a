from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace both informers watch; empty means all namespaces.
        workers: Number of worker threads draining the work queue.
        resync_period_seconds: Watch window length; every cached object is
            redelivered to the handlers when a window closes.
        cache_sync_timeout_seconds: How long to wait for the initial cache
            sync before giving up (``0`` waits until shutdown).
        conflict_retry_limit: Retries allowed for a Deployment name conflict
            before the key is dropped (``0`` retries forever).
        retry_base_delay_seconds: First backoff step for failed syncs.
        retry_max_delay_seconds: Backoff ceiling for failed syncs.
        health_port: Port of the health and metrics HTTP server.
        log_level: Root logger level name.
    """

    namespace: str = ""
    workers: int = 2
    resync_period_seconds: int = 30
    cache_sync_timeout_seconds: int = 0
    conflict_retry_limit: int = 10
    retry_base_delay_seconds: float = 0.005
    retry_max_delay_seconds: float = 1000.0
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``             namespace to watch (all namespaces)
        ``WORKERS``                     worker threads (``2``)
        ``RESYNC_PERIOD_SECONDS``       informer resync period (``30``)
        ``CACHE_SYNC_TIMEOUT_SECONDS``  startup sync timeout, 0 = none (``0``)
        ``CONFLICT_RETRY_LIMIT``        conflict retries, 0 = unbounded (``10``)
        ``RETRY_BASE_DELAY_MS``         backoff base in milliseconds (``5``)
        ``RETRY_MAX_DELAY_SECONDS``     backoff ceiling (``1000``)
        ``HEALTH_PORT``                 health/metrics port (``8080``)
        ``LOG_LEVEL``                   log level (``INFO``)
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "").strip()

    base_delay_ms = env_int(values, "RETRY_BASE_DELAY_MS", 5, minimum=1)
    max_delay_seconds = env_int(values, "RETRY_MAX_DELAY_SECONDS", 1000, minimum=1)
    if base_delay_ms / 1000.0 > max_delay_seconds:
        raise ConfigError("RETRY_BASE_DELAY_MS must not exceed RETRY_MAX_DELAY_SECONDS")

    log_level = values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return ControllerConfig(
        namespace=namespace,
        workers=env_int(values, "WORKERS", 2, minimum=1, maximum=64),
        resync_period_seconds=env_int(values, "RESYNC_PERIOD_SECONDS", 30, minimum=1),
        cache_sync_timeout_seconds=env_int(values, "CACHE_SYNC_TIMEOUT_SECONDS", 0, minimum=0),
        conflict_retry_limit=env_int(values, "CONFLICT_RETRY_LIMIT", 10, minimum=0),
        retry_base_delay_seconds=base_delay_ms / 1000.0,
        retry_max_delay_seconds=float(max_delay_seconds),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=log_level,
    )
