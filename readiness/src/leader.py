from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from readiness.src.config import LeaderElectionConfig
from readiness.src.kube import is_conflict, is_not_found
from readiness.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class LeaseLeaderElector:
    """Single-active-replica election on a ``coordination.k8s.io/v1`` Lease.

    Every ``retry_period_seconds`` the elector reads the lease and either
    creates it, renews it (we hold it), takes it over (the holder let it
    expire) or backs off (someone else holds a live lease).  A leader that
    cannot renew keeps leading until ``renew_deadline_seconds`` have passed
    since its last successful renewal, then steps down.

    Only one readiness controller may write pod conditions at a time: two
    replicas would race each other on the same status patches.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        now_fn: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self.logger = logger or LOGGER
        self._is_leader = False

    @classmethod
    def from_config(
        cls, coordination_api: CoordinationV1Api, config: LeaderElectionConfig
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=config.namespace,
            lease_name=config.lease_name,
            identity=config.identity,
            lease_duration_seconds=config.lease_duration_seconds,
            renew_deadline_seconds=config.renew_deadline_seconds,
            retry_period_seconds=config.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _lease_expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        if spec.renew_time is None:
            return True
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - _as_utc(spec.renew_time)).total_seconds() >= duration

    def try_acquire_or_renew(self) -> bool:
        """Run one election round; True when we hold the lease afterwards."""
        now = self._now_fn()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if is_not_found(exc):
                return self._create_lease(now)
            self.logger.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is not None and spec.holder_identity and spec.holder_identity != self.identity:
            if not self._lease_expired(spec, now):
                return False
            self.logger.info(
                "Lease %s held by %s expired; taking over", self.lease_name, spec.holder_identity
            )
        return self._write_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if is_conflict(exc):
                self.logger.debug("Lease %s was created concurrently", self.lease_name)
            else:
                self.logger.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        self.logger.info("Created leader lease %s", self.lease_name)
        return True

    def _write_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Renew the lease we hold or claim one whose holder is gone.

        ``acquireTime`` and ``leaseTransitions`` only move on a change of
        holder.  The replace carries the read ``resourceVersion`` so a
        concurrent claim by another replica answers ``409``.
        """
        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity != self.identity:
            spec.acquire_time = now
            spec.lease_transitions = (spec.lease_transitions or 0) + 1
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        lease.spec = spec
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
        except ApiException as exc:
            if is_conflict(exc):
                self.logger.debug("Lease %s update conflict", self.lease_name)
            else:
                self.logger.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Give the lease up so a standby replica can take over without waiting for expiry."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            lease.spec.renew_time = None
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
            self.logger.info("Released leader lease %s", self.lease_name)
        except ApiException as exc:
            self.logger.warning("Failed to release leader lease %s: %s", self.lease_name, exc.reason)

    def _became_leader(self, on_started_leading: Callable[[], None]) -> None:
        self._is_leader = True
        self.logger.info("Became leader (identity=%s)", self.identity)
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        on_started_leading()

    def _stepped_down(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign for the lease until *stop_event* is set.

        *on_started_leading* runs on every acquisition and
        *on_stopped_leading* on every loss, including the final release on
        shutdown.
        """
        self.logger.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        METRICS.leader_state.set(0)
        last_renewal = time.monotonic()

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                self.logger.exception("Unexpected error in leader election round")
                held = False

            if held:
                last_renewal = time.monotonic()
                if not self._is_leader:
                    self._became_leader(on_started_leading)
            elif self._is_leader:
                since_renewal = time.monotonic() - last_renewal
                if since_renewal >= self.renew_deadline_seconds:
                    self.logger.warning(
                        "Lost leader lease after %.2fs without a successful renewal",
                        since_renewal,
                    )
                    self._stepped_down(on_stopped_leading)
                else:
                    self.logger.warning(
                        "Lease renewal failed; still leading for up to %ss (%.2fs elapsed)",
                        self.renew_deadline_seconds,
                        since_renewal,
                    )
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._stepped_down(on_stopped_leading)
