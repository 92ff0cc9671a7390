from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from readiness.src.cloud import EndpointGroup
from readiness.src.errors import NotReadyError
from readiness.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ObjectRef:
    """Namespace/name identity of a Kubernetes object (pod, service or ingress)."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_object(cls, obj: Any) -> ObjectRef:
        metadata = obj.metadata
        return cls(namespace=metadata.namespace or "", name=metadata.name)


PodRef = ObjectRef


@dataclass(frozen=True, order=True)
class Endpoint:
    """One reachable pod container port.

    ``node`` is informational only and does not take part in equality, so an
    address seen through Endpoints (which carries ``nodeName``) matches the
    same address recorded from the pod spec.
    """

    ip: str
    port: int
    node: str | None = field(default=None, compare=False)


@dataclass
class ServiceInfo:
    """Everything currently believed about the load-balancer side of one Service.

    ``hostname`` is the external name the owning ingress was assigned,
    ``endpoint_groups`` the cloud target groups behind it, ``endpoints`` the
    (ip, port) pairs the ingress routes to and ``pods`` the member pods
    resolved from the service's Endpoints object.  ``ingresses`` tracks which
    ingresses published into this entry.
    """

    hostname: str = ""
    endpoint_groups: list[EndpointGroup] = field(default_factory=list)
    endpoints: set[Endpoint] = field(default_factory=set)
    pods: set[PodRef] = field(default_factory=set)
    ingresses: set[ObjectRef] = field(default_factory=set)

    def copy(self) -> ServiceInfo:
        return ServiceInfo(
            hostname=self.hostname,
            endpoint_groups=list(self.endpoint_groups),
            endpoints=set(self.endpoints),
            pods=set(self.pods),
            ingresses=set(self.ingresses),
        )


class ReadWriteLock:
    """Many concurrent readers or a single writer; writers are not starved."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class EndpointIndex:
    """Maps ``Endpoint(ip, container port)`` to the pod that owns it.

    Entries are written when a pod reports an IP and declared container
    ports.  They are not removed when the pod goes away unless the caller
    opts in through :meth:`remove_pod`; a recycled IP simply overwrites
    the stale entry on the next pod event.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._entries: dict[Endpoint, PodRef] = {}

    def record_pod_endpoints(self, pod_ref: PodRef, ip: str, ports: Iterable[int]) -> int:
        """Insert one entry per port; returns how many entries were new or changed."""
        if not ip:
            return 0
        changed = 0
        with self._lock.write():
            for port in ports:
                endpoint = Endpoint(ip=ip, port=int(port))
                if self._entries.get(endpoint) != pod_ref:
                    self._entries[endpoint] = pod_ref
                    changed += 1
        return changed

    def lookup(self, endpoint: Endpoint) -> PodRef | None:
        with self._lock.read():
            return self._entries.get(endpoint)

    def remove_pod(self, pod_ref: PodRef) -> int:
        with self._lock.write():
            stale = [endpoint for endpoint, owner in self._entries.items() if owner == pod_ref]
            for endpoint in stale:
                del self._entries[endpoint]
        return len(stale)

    def snapshot(self) -> dict[Endpoint, PodRef]:
        with self._lock.read():
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)


class CorrelationStore:
    """Maps a Service's ``ObjectRef`` to its :class:`ServiceInfo`.

    Every operation that reads and then writes runs under the writer lock so
    the ingress path and the pod path never observe a half-updated entry.
    Callers only ever receive copies.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._lock = ReadWriteLock()
        self._services: dict[ObjectRef, ServiceInfo] = {}
        self.logger = logger or LOGGER

    def ensure(self, service_ref: ObjectRef) -> ServiceInfo:
        with self._lock.write():
            return self._services.setdefault(service_ref, ServiceInfo()).copy()

    def get(self, service_ref: ObjectRef) -> ServiceInfo | None:
        with self._lock.read():
            info = self._services.get(service_ref)
            return info.copy() if info is not None else None

    def set_members(self, service_ref: ObjectRef, pods: Iterable[PodRef]) -> ServiceInfo:
        """Replace the member pods of a known service.

        Raises :class:`NotReadyError` when no ingress has published the
        service yet; the caller retries once the ingress side catches up.
        """
        with self._lock.write():
            info = self._services.get(service_ref)
            if info is None:
                raise NotReadyError(f"service {service_ref} is not correlated with an ingress yet")
            info.pods = set(pods)
            return info.copy()

    def set_cloud_targets(
        self,
        service_ref: ObjectRef,
        hostname: str,
        groups: Iterable[EndpointGroup],
        endpoints: Iterable[Endpoint],
        ingress_ref: ObjectRef | None = None,
    ) -> ServiceInfo:
        with self._lock.write():
            info = self._services.setdefault(service_ref, ServiceInfo())
            info.hostname = hostname
            info.endpoint_groups = list(dict.fromkeys(groups))
            info.endpoints = set(endpoints)
            if ingress_ref is not None:
                info.ingresses.add(ingress_ref)
            return info.copy()

    def replace_ingress_targets(
        self,
        ingress_ref: ObjectRef,
        hostname: str,
        groups: Iterable[EndpointGroup],
        services: Mapping[ObjectRef, Iterable[Endpoint]],
    ) -> dict[ObjectRef, set[PodRef]]:
        """Publish one ingress resolution in a single write.

        Every service in *services* gets the hostname, groups and endpoints;
        services this ingress published before but no longer references are
        detached from it (and deleted when no other ingress owns them).
        Returns the detached services mapped to the pods they had, so the
        caller can re-evaluate those pods.
        """
        group_list = list(dict.fromkeys(groups))
        detached: dict[ObjectRef, set[PodRef]] = {}
        with self._lock.write():
            for service_ref, endpoints in services.items():
                info = self._services.setdefault(service_ref, ServiceInfo())
                info.hostname = hostname
                info.endpoint_groups = list(group_list)
                info.endpoints = set(endpoints)
                info.ingresses.add(ingress_ref)
            for service_ref, info in list(self._services.items()):
                if service_ref in services or ingress_ref not in info.ingresses:
                    continue
                info.ingresses.discard(ingress_ref)
                detached[service_ref] = set(info.pods)
                if not info.ingresses:
                    del self._services[service_ref]
        return detached

    def remove(self, service_ref: ObjectRef) -> ServiceInfo | None:
        with self._lock.write():
            return self._services.pop(service_ref, None)

    def remove_ingress(self, ingress_ref: ObjectRef) -> dict[ObjectRef, set[PodRef]]:
        """Forget everything an ingress published.

        A service entry is deleted once no remaining ingress references it.
        Returns the services the ingress was detached from, mapped to their
        member pods, so callers can re-evaluate those pods.
        """
        detached: dict[ObjectRef, set[PodRef]] = {}
        with self._lock.write():
            for service_ref, info in list(self._services.items()):
                if ingress_ref not in info.ingresses:
                    continue
                info.ingresses.discard(ingress_ref)
                detached[service_ref] = set(info.pods)
                if not info.ingresses:
                    del self._services[service_ref]
        return detached

    def services_for_ingress(self, ingress_ref: ObjectRef) -> list[ObjectRef]:
        with self._lock.read():
            return sorted(ref for ref, info in self._services.items() if ingress_ref in info.ingresses)

    def find_service_for_pod(self, pod_ref: PodRef) -> tuple[ObjectRef, ServiceInfo] | None:
        """Return the service whose member set contains *pod_ref*.

        Services are scanned in sorted namespace/name order so the first
        match is deterministic when a pod belongs to several services; that
        case is logged and counted.
        """
        with self._lock.write():
            matches = sorted(ref for ref, info in self._services.items() if pod_ref in info.pods)
            if not matches:
                return None
            if len(matches) > 1:
                METRICS.ambiguous_pod_matches_total.inc()
                self.logger.warning(
                    "Pod %s is a member of %d services (%s); using %s",
                    pod_ref,
                    len(matches),
                    ", ".join(str(ref) for ref in matches),
                    matches[0],
                )
            return matches[0], self._services[matches[0]].copy()

    def keys(self) -> list[ObjectRef]:
        with self._lock.read():
            return sorted(self._services)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._services)
