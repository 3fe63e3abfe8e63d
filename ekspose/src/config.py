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
        namespace: Namespace to watch, or ``None`` for all namespaces.
        workers: Number of worker threads pulling from the shared queue.
        resync_seconds: Period of full informer re-lists; ``0`` disables.
        cache_sync_timeout_seconds: How long to wait for the initial list
            before starting workers anyway; ``0`` waits until synced.
        queue_base_delay_seconds / queue_max_delay_seconds: Per-key
            exponential backoff bounds.
        queue_qps / queue_burst: Overall retry token bucket.
        ingress_class_name: Optional ``ingressClassName`` for Ingresses.
    """

    namespace: str | None = None
    workers: int = 1
    resync_seconds: int = 600
    cache_sync_timeout_seconds: int = 60
    queue_base_delay_seconds: float = 0.005
    queue_max_delay_seconds: float = 1000.0
    queue_qps: int = 10
    queue_burst: int = 100
    ingress_class_name: str | None = None


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
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


def _optional_str(values: Mapping[str, str], name: str) -> str | None:
    raw = values.get(name)
    if raw is None:
        return None
    stripped = raw.strip()
    return stripped or None


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Unset or blank variables fall back to their defaults; malformed or
    out-of-range values raise :class:`ConfigError` naming the variable.
    """
    values = env if env is not None else os.environ

    base_delay_ms = env_int("QUEUE_BASE_DELAY_MS", 5, minimum=1, env=values)
    max_delay_seconds = env_int("QUEUE_MAX_DELAY_SECONDS", 1000, minimum=1, env=values)
    if max_delay_seconds * 1000 < base_delay_ms:
        raise ConfigError("QUEUE_MAX_DELAY_SECONDS must not be smaller than QUEUE_BASE_DELAY_MS")

    return ControllerConfig(
        namespace=_optional_str(values, "WATCH_NAMESPACE"),
        workers=env_int("WORKERS", 1, minimum=1, maximum=64, env=values),
        resync_seconds=env_int("RESYNC_SECONDS", 600, minimum=0, env=values),
        cache_sync_timeout_seconds=env_int("CACHE_SYNC_TIMEOUT_SECONDS", 60, minimum=0, env=values),
        queue_base_delay_seconds=base_delay_ms / 1000.0,
        queue_max_delay_seconds=float(max_delay_seconds),
        queue_qps=env_int("QUEUE_QPS", 10, minimum=1, env=values),
        queue_burst=env_int("QUEUE_BURST", 100, minimum=1, env=values),
        ingress_class_name=_optional_str(values, "INGRESS_CLASS_NAME"),
    )
