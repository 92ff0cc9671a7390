from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from readiness.src.cloud import CloudProvider
from readiness.src.errors import CloudAPIError, NotReadyError, TransientAPIError, UnhealthyError
from readiness.src.kube import is_conflict, is_not_found, patch_pod_condition
from readiness.src.metrics import METRICS
from readiness.src.pod_gates import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    ReadinessCondition,
    container_ports,
    is_terminating,
    pod_ip,
    readiness_condition,
    readiness_gate_enabled,
    transition,
    utc_now,
)
from readiness.src.store import CorrelationStore, EndpointIndex, PodRef, ServiceInfo

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of one successful pod evaluation.

    ``action`` is one of ``deleted`` (pod no longer exists), ``skipped``
    (no readiness gate), ``deregistered`` (terminating pod removed from
    its target groups) or ``evaluated``.  ``status`` is the condition
    status after the evaluation and ``patched`` whether it was written.
    """

    pod: PodRef
    action: str
    status: str | None = None
    patched: bool = False


class PodReadinessEvaluator:
    """Decides a pod's readiness-gate condition from load-balancer health and persists it.

    Successful outcomes return an :class:`EvaluationResult`; anything that
    needs another look later raises a :class:`ReadinessError`:

    * no correlation yet -> condition ``Unknown``, :class:`NotReadyError`
    * target unhealthy   -> condition ``False``, :class:`UnhealthyError`
    * cloud API failure  -> condition untouched, :class:`CloudAPIError`

    A condition is only patched when its status changes, so evaluating an
    unchanged pod twice writes nothing.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        cloud: CloudProvider,
        endpoint_index: EndpointIndex,
        store: CorrelationStore,
        readiness_gate: str,
        timeout_seconds: int | None = None,
        patch_attempts: int = 3,
        now_fn: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        if patch_attempts < 1:
            raise ValueError("patch_attempts must be >= 1")
        self.core_api = core_api
        self.cloud = cloud
        self.endpoint_index = endpoint_index
        self.store = store
        self.readiness_gate = readiness_gate
        self.timeout_seconds = timeout_seconds
        self.patch_attempts = patch_attempts
        self.now_fn = now_fn
        self.logger = logger or LOGGER

    def _read_pod(self, pod_ref: PodRef) -> Any:
        kwargs: dict[str, Any] = {}
        if self.timeout_seconds is not None:
            kwargs["_request_timeout"] = self.timeout_seconds
        return self.core_api.read_namespaced_pod(
            name=pod_ref.name, namespace=pod_ref.namespace, **kwargs
        )

    def evaluate(self, pod_ref: PodRef) -> EvaluationResult:
        try:
            pod = self._read_pod(pod_ref)
        except ApiException as exc:
            if is_not_found(exc):
                return EvaluationResult(pod=pod_ref, action="deleted")
            raise TransientAPIError(f"reading pod {pod_ref} failed: {exc.status}") from exc
        return self.evaluate_pod(pod)

    def evaluate_pod(self, pod: Any) -> EvaluationResult:
        pod_ref = PodRef.from_object(pod)
        ip = pod_ip(pod)
        ports = container_ports(pod)
        if ip and ports:
            self.endpoint_index.record_pod_endpoints(pod_ref, ip, ports)

        if not readiness_gate_enabled(pod, self.readiness_gate):
            return EvaluationResult(pod=pod_ref, action="skipped")

        if is_terminating(pod):
            self._deregister(pod_ref, ip, ports)
            return EvaluationResult(pod=pod_ref, action="deregistered")

        current, exists = readiness_condition(pod, self.readiness_gate)

        if not ip:
            self._write(pod, current, exists, CONDITION_UNKNOWN, "Pod has no IP address yet")
            raise NotReadyError(f"pod {pod_ref} has no IP address yet")

        match = self.store.find_service_for_pod(pod_ref)
        if match is None:
            self._write(pod, current, exists, CONDITION_UNKNOWN, "No load balancer correlation yet")
            raise NotReadyError(f"pod {pod_ref} is not correlated with a load balancer yet")

        service_ref, info = match
        if not info.endpoint_groups or not info.endpoints:
            self._write(
                pod,
                current,
                exists,
                CONDITION_UNKNOWN,
                f"Service {service_ref} has no load balancer targets yet",
            )
            raise NotReadyError(f"service {service_ref} has no load balancer targets yet")

        probe_ports = ports or self._ports_from_service(info, ip)
        try:
            healthy = self.cloud.is_target_healthy(info.endpoint_groups, ip, probe_ports)
        except CloudAPIError:
            self.logger.warning(
                "Health check for pod %s failed; keeping condition %s",
                pod_ref,
                current.status,
            )
            raise

        if healthy:
            patched = self._write(
                pod, current, exists, CONDITION_TRUE, f"Target healthy behind {info.hostname}"
            )
            if patched:
                self.logger.info("Pod %s transitioned to ready", pod_ref)
            return EvaluationResult(
                pod=pod_ref, action="evaluated", status=CONDITION_TRUE, patched=patched
            )

        self._write(
            pod, current, exists, CONDITION_FALSE, f"Target not healthy behind {info.hostname}"
        )
        raise UnhealthyError(f"pod {pod_ref} is not healthy on {info.hostname} yet")

    @staticmethod
    def _ports_from_service(info: ServiceInfo, ip: str) -> list[int]:
        return sorted({endpoint.port for endpoint in info.endpoints if endpoint.ip == ip})

    def _deregister(self, pod_ref: PodRef, ip: str, ports: list[int]) -> None:
        """Remove a terminating pod's targets from its load balancer.

        Nothing to do without an IP or a correlation.  Cloud failures
        propagate so the key is retried while the pod still exists.
        """
        match = self.store.find_service_for_pod(pod_ref)
        if not ip or match is None:
            self.logger.info("Pod %s is terminating with no load balancer targets", pod_ref)
            return
        service_ref, info = match
        if not info.endpoint_groups:
            return
        for port in ports or self._ports_from_service(info, ip):
            self.cloud.deregister_target(info.endpoint_groups, ip, port)
        self.logger.info(
            "Deregistered terminating pod %s (%s) from service %s target groups",
            pod_ref,
            ip,
            service_ref,
        )

    def _write(
        self,
        pod: Any,
        current: ReadinessCondition,
        exists: bool,
        status: str,
        message: str,
    ) -> bool:
        """Patch the gate condition to *status* unless it already has it.

        A ``409 Conflict`` means someone else updated the pod status since
        it was read: re-read, recompute from the fresh condition and try
        again, up to ``patch_attempts`` times.
        """
        pod_ref = PodRef.from_object(pod)
        for attempt in range(1, self.patch_attempts + 1):
            if exists and current.status == status:
                return False
            condition = transition(current, status, self.now_fn(), message=message)
            try:
                patch_pod_condition(self.core_api, pod, condition, self.timeout_seconds)
            except ApiException as exc:
                if is_not_found(exc):
                    self.logger.info("Pod %s disappeared before its condition was written", pod_ref)
                    return False
                if not is_conflict(exc):
                    raise TransientAPIError(
                        f"patching pod {pod_ref} status failed: {exc.status}"
                    ) from exc
                if attempt == self.patch_attempts:
                    break
                self.logger.info(
                    "Conflict writing condition for pod %s (attempt %d); re-reading",
                    pod_ref,
                    attempt,
                )
                try:
                    pod = self._read_pod(pod_ref)
                except ApiException as read_exc:
                    if is_not_found(read_exc):
                        return False
                    raise TransientAPIError(
                        f"re-reading pod {pod_ref} failed: {read_exc.status}"
                    ) from read_exc
                current, exists = readiness_condition(pod, self.readiness_gate)
                continue

            METRICS.condition_transitions_total.labels(status=status).inc()
            self.logger.info(
                "Set %s=%s on pod %s (was %s)",
                self.readiness_gate,
                status,
                pod_ref,
                current.status if exists else "absent",
            )
            return True

        raise TransientAPIError(
            f"gave up writing condition for pod {pod_ref} after {self.patch_attempts} conflicts"
        )
