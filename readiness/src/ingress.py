from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from readiness.src.cloud import CloudProvider, EndpointGroup, resolve_endpoint_groups
from readiness.src.errors import NotReadyError, TransientAPIError
from readiness.src.kube import is_not_found
from readiness.src.store import CorrelationStore, Endpoint, ObjectRef, PodRef

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServicePortID:
    """A backend reference: the service plus the port the ingress routes to (number or name)."""

    service: ObjectRef
    port: int | str | None

    def __str__(self) -> str:
        return f"{self.service}/{self.port}"


@dataclass
class ResolvedIngress:
    hostname: str
    endpoint_groups: list[EndpointGroup]
    services: dict[ObjectRef, set[Endpoint]] = field(default_factory=dict)
    detached: dict[ObjectRef, set[PodRef]] = field(default_factory=dict)


def extract_hostname(ingress: Any) -> str:
    """Return the hostname the load-balancer controller assigned to *ingress*.

    Raises :class:`NotReadyError` while the status has no load-balancer entry
    yet.  Only the first entry is used; an entry with an IP but no hostname
    falls back to the IP.
    """
    status = getattr(ingress, "status", None)
    load_balancer = getattr(status, "load_balancer", None)
    entries = getattr(load_balancer, "ingress", None) or []
    if not entries:
        raise NotReadyError("ingress has no load balancer status yet")
    first = entries[0]
    hostname = getattr(first, "hostname", None) or getattr(first, "ip", None)
    if not hostname:
        raise NotReadyError("ingress load balancer status has no hostname yet")
    return hostname


def _backend_port(service_backend: Any) -> int | str | None:
    port = getattr(service_backend, "port", None)
    if port is None:
        return None
    number = getattr(port, "number", None)
    if number is not None:
        return int(number)
    return getattr(port, "name", None)


def traverse_ingress_backends(ingress: Any, process: Callable[[ServicePortID], bool]) -> None:
    """Call *process* for the default backend and then every path backend, in declaration order.

    Traversal stops as soon as *process* returns True.  Backends that are
    not services (``resource`` backends) are skipped.
    """
    if ingress is None:
        return
    namespace = ingress.metadata.namespace or ""
    spec = getattr(ingress, "spec", None)

    def _visit(backend: Any) -> bool:
        service_backend = getattr(backend, "service", None)
        if service_backend is None or not getattr(service_backend, "name", None):
            return False
        port_id = ServicePortID(
            service=ObjectRef(namespace=namespace, name=service_backend.name),
            port=_backend_port(service_backend),
        )
        return bool(process(port_id))

    default_backend = getattr(spec, "default_backend", None)
    if default_backend is not None and _visit(default_backend):
        return

    for rule in getattr(spec, "rules", None) or []:
        http = getattr(rule, "http", None)
        if http is None:
            continue
        for path in getattr(http, "paths", None) or []:
            if _visit(getattr(path, "backend", None)):
                return


def ingress_backends(ingress: Any, stop_at_first: bool = False) -> list[ServicePortID]:
    backends: list[ServicePortID] = []

    def _collect(port_id: ServicePortID) -> bool:
        if port_id not in backends:
            backends.append(port_id)
        return stop_at_first

    traverse_ingress_backends(ingress, _collect)
    return backends


def _matching_port_names(service: Any, port: int | str | None) -> set[str | None] | None:
    """Map an ingress backend port to the Endpoints port name(s) it selects.

    Returns ``None`` when the backend port cannot be matched against the
    service spec, meaning every Endpoints port is accepted.
    """
    service_ports = getattr(getattr(service, "spec", None), "ports", None) or []
    if port is None:
        return None
    for service_port in service_ports:
        if isinstance(port, int) and service_port.port == port:
            return {service_port.name}
        if isinstance(port, str) and service_port.name == port:
            return {service_port.name}
    return None


def endpoints_for_backend(endpoints: Any, port_names: set[str | None] | None) -> set[Endpoint]:
    """Collect (ip, port) pairs from every subset, ready and not-ready addresses alike.

    Not-ready addresses are included on purpose: the gate has to observe a
    pod becoming healthy on the load balancer before Kubernetes marks it
    ready.
    """
    collected: set[Endpoint] = set()
    for subset in getattr(endpoints, "subsets", None) or []:
        ports = [
            p
            for p in (getattr(subset, "ports", None) or [])
            if port_names is None or p.name in port_names
        ]
        addresses = list(getattr(subset, "addresses", None) or []) + list(
            getattr(subset, "not_ready_addresses", None) or []
        )
        for address in addresses:
            for port in ports:
                collected.add(
                    Endpoint(
                        ip=address.ip,
                        port=int(port.port),
                        node=getattr(address, "node_name", None),
                    )
                )
    return collected


class IngressResolver:
    """Turns one Ingress into resolved :class:`ServiceInfo` entries, one per backend service.

    Every failure is raised as a retryable :class:`ReadinessError`; nothing
    is published to the store unless every backend service and the cloud
    lookup succeeded, so a partial failure never overwrites good data.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        cloud: CloudProvider,
        store: CorrelationStore,
        timeout_seconds: int | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.cloud = cloud
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.logger = logger or LOGGER

    def _request_kwargs(self) -> dict[str, Any]:
        if self.timeout_seconds is None:
            return {}
        return {"_request_timeout": self.timeout_seconds}

    def _read(self, kind: str, reader: Callable[..., Any], ref: ObjectRef) -> Any:
        try:
            return reader(name=ref.name, namespace=ref.namespace, **self._request_kwargs())
        except ApiException as exc:
            if is_not_found(exc):
                raise NotReadyError(f"{kind} {ref} does not exist yet") from exc
            raise TransientAPIError(f"reading {kind} {ref} failed: {exc.status}") from exc

    def collect_service_endpoints(self, backend: ServicePortID) -> set[Endpoint]:
        service = self._read("service", self.core_api.read_namespaced_service, backend.service)
        endpoints = self._read(
            "endpoints", self.core_api.read_namespaced_endpoints, backend.service
        )
        return endpoints_for_backend(endpoints, _matching_port_names(service, backend.port))

    def resolve(self, ingress: Any, stop_at_first: bool = False) -> ResolvedIngress:
        ingress_ref = ObjectRef.from_object(ingress)
        hostname = extract_hostname(ingress)

        backends = ingress_backends(ingress, stop_at_first=stop_at_first)
        if not backends:
            self.logger.info("Ingress %s has no service backends", ingress_ref)

        services: dict[ObjectRef, set[Endpoint]] = {}
        for backend in backends:
            collected = self.collect_service_endpoints(backend)
            services.setdefault(backend.service, set()).update(collected)

        groups = resolve_endpoint_groups(self.cloud, hostname) if services else []

        detached = self.store.replace_ingress_targets(
            ingress_ref=ingress_ref,
            hostname=hostname,
            groups=groups,
            services=services,
        )
        self.logger.info(
            "Resolved ingress %s (hostname=%s): %d target group(s), services: %s",
            ingress_ref,
            hostname,
            len(groups),
            ", ".join(
                f"{ref} ({len(endpoints)} endpoint(s))" for ref, endpoints in sorted(services.items())
            )
            or "none",
        )
        return ResolvedIngress(
            hostname=hostname,
            endpoint_groups=groups,
            services=services,
            detached=detached,
        )
