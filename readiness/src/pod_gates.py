from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"
CONDITION_STATUSES = frozenset({CONDITION_TRUE, CONDITION_FALSE, CONDITION_UNKNOWN})

REASONS = {
    CONDITION_TRUE: "LoadBalancerTargetHealthy",
    CONDITION_FALSE: "LoadBalancerTargetUnhealthy",
    CONDITION_UNKNOWN: "LoadBalancerTargetPending",
}


def utc_now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def format_rfc3339(value: datetime | None) -> str | None:
    """Render a timestamp the way the API server does (``2024-01-15T08:30:00Z``)."""
    if value is None:
        return None
    aware = value if value.tzinfo else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ReadinessCondition:
    """The pod condition backing the readiness gate.

    Status moves Unknown -> False/True.  ``last_transition_time`` changes
    only when ``status`` does; ``last_probe_time`` on every evaluation that
    writes the condition.
    """

    type: str
    status: str = CONDITION_UNKNOWN
    last_probe_time: datetime | None = None
    last_transition_time: datetime | None = None
    reason: str | None = None
    message: str | None = None

    def to_patch(self) -> dict[str, Any]:
        body: dict[str, Any] = {"type": self.type, "status": self.status}
        if self.last_probe_time is not None:
            body["lastProbeTime"] = format_rfc3339(self.last_probe_time)
        if self.last_transition_time is not None:
            body["lastTransitionTime"] = format_rfc3339(self.last_transition_time)
        if self.reason:
            body["reason"] = self.reason
        if self.message:
            body["message"] = self.message
        return body


def readiness_gate_enabled(pod: Any, gate: str) -> bool:
    """Return True when the pod spec lists *gate* among its readiness gates."""
    if pod is None:
        return False
    spec = getattr(pod, "spec", None)
    for readiness_gate in getattr(spec, "readiness_gates", None) or []:
        if getattr(readiness_gate, "condition_type", None) == gate:
            return True
    return False


def readiness_condition(pod: Any, gate: str) -> tuple[ReadinessCondition, bool]:
    """Return the pod's gate condition and whether it already exists.

    A missing condition is reported as ``Unknown`` with no timestamps.
    """
    empty = ReadinessCondition(type=gate)
    if pod is None:
        return empty, False
    status = getattr(pod, "status", None)
    for condition in getattr(status, "conditions", None) or []:
        if getattr(condition, "type", None) != gate:
            continue
        raw_status = getattr(condition, "status", None)
        return (
            ReadinessCondition(
                type=gate,
                status=raw_status if raw_status in CONDITION_STATUSES else CONDITION_UNKNOWN,
                last_probe_time=getattr(condition, "last_probe_time", None),
                last_transition_time=getattr(condition, "last_transition_time", None),
                reason=getattr(condition, "reason", None),
                message=getattr(condition, "message", None),
            ),
            True,
        )
    return empty, False


def transition(
    current: ReadinessCondition,
    status: str,
    now: datetime,
    message: str | None = None,
) -> ReadinessCondition:
    if status not in CONDITION_STATUSES:
        raise ValueError(f"invalid condition status: {status!r}")
    transition_time = current.last_transition_time
    if current.status != status or transition_time is None:
        transition_time = now
    return replace(
        current,
        status=status,
        last_probe_time=now,
        last_transition_time=transition_time,
        reason=REASONS[status],
        message=message,
    )


def container_ports(pod: Any) -> list[int]:
    """Return every declared container port of the pod, in spec order, without duplicates."""
    ports: list[int] = []
    spec = getattr(pod, "spec", None)
    for container in getattr(spec, "containers", None) or []:
        for port in getattr(container, "ports", None) or []:
            value = getattr(port, "container_port", None)
            if value is not None and int(value) not in ports:
                ports.append(int(value))
    return ports


def pod_ip(pod: Any) -> str:
    return getattr(getattr(pod, "status", None), "pod_ip", None) or ""


def is_terminating(pod: Any) -> bool:
    return getattr(getattr(pod, "metadata", None), "deletion_timestamp", None) is not None
