from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from configmap_controller.src.constants import DEFAULT_LEADER_ELECTION_ID


class ConfigError(ValueError):
    """Raised when the manager configuration is invalid."""


@dataclass(frozen=True)
class ManagerConfig:
    """Immutable manager configuration loaded at startup.

    Attributes:
        watch_namespace: Namespace to watch, or ``None`` for all namespaces.
        metrics_port: Port of the Prometheus endpoint; ``0`` disables it.
        health_probe_port: Port serving ``/healthz`` and ``/readyz``.
        leader_election_enabled: Run the controller only while holding the lease.
        leader_election_namespace: Namespace of the leader Lease.
        leader_election_id: Name of the leader Lease.
        leader_election_identity: Holder identity written to the Lease.
    """

    watch_namespace: str | None = None
    metrics_port: int = 8080
    health_probe_port: int = 8081
    leader_election_enabled: bool = True
    leader_election_namespace: str = "default"
    leader_election_id: str = DEFAULT_LEADER_ELECTION_ID
    leader_election_identity: str = "unknown"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    max_concurrent_reconciles: int = 1
    request_timeout_seconds: int = 30
    log_level: str = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


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


def default_identity(values: Mapping[str, str]) -> str:
    """Return this replica's lease identity, defaulting to the pod name.

    In Kubernetes the ``HOSTNAME`` env var is the pod name, giving each
    replica a stable identity for lease ownership.
    """
    return values.get("HOSTNAME") or values.get("POD_NAME") or "unknown"


def load_config(env: Mapping[str, str] | None = None) -> ManagerConfig:
    """Load the manager configuration from the environment.

    Raises :class:`ConfigError` on malformed values or inconsistent leader
    election timings.
    """
    values = env if env is not None else os.environ

    watch_namespace = values.get("WATCH_NAMESPACE", "").strip() or None

    leader_namespace = values.get("LEADER_ELECTION_NAMESPACE", "default").strip()
    if not leader_namespace:
        raise ConfigError("LEADER_ELECTION_NAMESPACE must be a non-empty string")
    leader_id = values.get("LEADER_ELECTION_ID", DEFAULT_LEADER_ELECTION_ID).strip()
    if not leader_id:
        raise ConfigError("LEADER_ELECTION_ID must be a non-empty string")

    lease_duration = env_int(values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1)
    renew_deadline = env_int(values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1)
    retry_period = env_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)
    if renew_deadline >= lease_duration:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    return ManagerConfig(
        watch_namespace=watch_namespace,
        metrics_port=env_int(values, "METRICS_PORT", 8080, minimum=0, maximum=65535),
        health_probe_port=env_int(values, "HEALTH_PROBE_PORT", 8081, minimum=0, maximum=65535),
        leader_election_enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        leader_election_namespace=leader_namespace,
        leader_election_id=leader_id,
        leader_election_identity=values.get("LEADER_ELECTION_IDENTITY") or default_identity(values),
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        max_concurrent_reconciles=env_int(values, "MAX_CONCURRENT_RECONCILES", 1, minimum=1),
        request_timeout_seconds=env_int(values, "REQUEST_TIMEOUT_SECONDS", 30, minimum=1),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
