from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_READINESS_GATE = "kube-readiness.io/load-balancer-healthy"


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:        Namespace to watch; empty string watches all namespaces.
        readiness_gate:   Pod condition type this controller owns.
        aws_region:       Region of the ELBv2 load balancers.
        aws_assume_role_arn: Optional role assumed through STS before any ELB call.
        max_retries:      Failed reconciles per key before the key is dropped
                          until the next watch event re-arms it.
        prune_deleted_pod_endpoints: Remove endpoint-index entries when a pod
                          is gone.  Off by default; see DESIGN.md.
    """

    namespace: str = ""
    readiness_gate: str = DEFAULT_READINESS_GATE
    aws_region: str = "eu-west-1"
    aws_assume_role_arn: str = ""
    cloud_timeout_seconds: int = 10
    kube_timeout_seconds: int = 10
    max_retries: int = 15
    retry_base_delay_ms: int = 5
    retry_max_delay_seconds: int = 300
    workers_per_kind: int = 1
    resync_period_seconds: int = 60
    ingress_recheck_seconds: int = 10
    prune_deleted_pod_endpoints: bool = False
    health_port: int = 8081


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


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
    if raw is None:
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


def _env_str(values: Mapping[str, str], name: str, default: str, *, required: bool) -> str:
    value = values.get(name, default).strip()
    if required and not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Build a :class:`ControllerConfig` from environment variables.

    Every variable is optional; defaults mirror :class:`ControllerConfig`.
    Invalid values raise :class:`ConfigError` naming the offending variable
    so a misconfigured deployment fails at startup instead of at the first
    reconcile.
    """
    values = env if env is not None else os.environ
    defaults = ControllerConfig()

    return ControllerConfig(
        namespace=_env_str(values, "WATCH_NAMESPACE", defaults.namespace, required=False),
        readiness_gate=_env_str(
            values, "READINESS_GATE", defaults.readiness_gate, required=True
        ),
        aws_region=_env_str(values, "AWS_REGION", defaults.aws_region, required=True),
        aws_assume_role_arn=_env_str(
            values, "AWS_ASSUME_ROLE_ARN", defaults.aws_assume_role_arn, required=False
        ),
        cloud_timeout_seconds=env_int(
            "CLOUD_TIMEOUT_SECONDS", defaults.cloud_timeout_seconds, minimum=1, env=values
        ),
        kube_timeout_seconds=env_int(
            "KUBE_TIMEOUT_SECONDS", defaults.kube_timeout_seconds, minimum=1, env=values
        ),
        max_retries=env_int("MAX_RETRIES", defaults.max_retries, minimum=0, env=values),
        retry_base_delay_ms=env_int(
            "RETRY_BASE_DELAY_MS", defaults.retry_base_delay_ms, minimum=1, env=values
        ),
        retry_max_delay_seconds=env_int(
            "RETRY_MAX_DELAY_SECONDS", defaults.retry_max_delay_seconds, minimum=1, env=values
        ),
        workers_per_kind=env_int(
            "WORKERS_PER_KIND", defaults.workers_per_kind, minimum=1, maximum=32, env=values
        ),
        resync_period_seconds=env_int(
            "RESYNC_PERIOD_SECONDS", defaults.resync_period_seconds, minimum=1, env=values
        ),
        ingress_recheck_seconds=env_int(
            "INGRESS_RECHECK_SECONDS", defaults.ingress_recheck_seconds, minimum=1, env=values
        ),
        prune_deleted_pod_endpoints=parse_bool(values.get("PRUNE_DELETED_POD_ENDPOINTS")),
        health_port=env_int(
            "HEALTH_PORT", defaults.health_port, minimum=1, maximum=65535, env=values
        ),
    )


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool = False
    namespace: str = "default"
    lease_name: str = "kube-readiness-leader"
    identity: str = "unknown"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    stop_timeout_seconds: int = 45


def load_leader_election_config(
    env: Mapping[str, str] | None = None,
) -> LeaderElectionConfig:
    """Read the ``LEADER_ELECTION_*`` variables.

    The lease lives in ``LEADER_ELECTION_NAMESPACE``, falling back to
    ``WATCH_NAMESPACE`` and then ``default`` when the controller watches
    every namespace.  Timings must satisfy
    ``retry period < renew deadline < lease duration``.
    """
    values = env if env is not None else os.environ
    defaults = LeaderElectionConfig()

    namespace = (
        values.get("LEADER_ELECTION_NAMESPACE", "").strip()
        or values.get("WATCH_NAMESPACE", "").strip()
        or defaults.namespace
    )
    identity = (
        values.get("LEADER_ELECTION_IDENTITY", "").strip()
        or values.get("HOSTNAME", "").strip()
        or values.get("POD_NAME", "").strip()
        or defaults.identity
    )
    lease_duration = env_int(
        "LEADER_ELECTION_LEASE_DURATION_SECONDS",
        defaults.lease_duration_seconds,
        minimum=1,
        env=values,
    )
    renew_deadline = env_int(
        "LEADER_ELECTION_RENEW_DEADLINE_SECONDS",
        defaults.renew_deadline_seconds,
        minimum=1,
        env=values,
    )
    retry_period = env_int(
        "LEADER_ELECTION_RETRY_PERIOD_SECONDS",
        defaults.retry_period_seconds,
        minimum=1,
        env=values,
    )
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

    return LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=defaults.enabled),
        namespace=namespace,
        lease_name=_env_str(
            values, "LEADER_ELECTION_LEASE_NAME", defaults.lease_name, required=True
        ),
        identity=identity,
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        stop_timeout_seconds=env_int(
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS",
            defaults.stop_timeout_seconds,
            minimum=1,
            env=values,
        ),
    )
