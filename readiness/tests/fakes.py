from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

from kubernetes.client import ApiException

from readiness.src.cloud import EndpointGroup, LoadBalancer
from readiness.src.errors import CloudAPIError, LoadBalancerNotFoundError
from readiness.src.store import ObjectRef

GATE = "kube-readiness.io/load-balancer-healthy"
HOSTNAME = "k8s-shop-web-1a2b3c-1234567890.eu-west-1.elb.amazonaws.com"
LB_ARN = "arn:aws:elasticloadbalancing:eu-west-1:123456789012:loadbalancer/app/k8s-shop-web-1a2b3c/abc"
TG_ARN = "arn:aws:elasticloadbalancing:eu-west-1:123456789012:targetgroup/k8s-shop-web/def"


def fixed_now() -> datetime:
    return datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


def _parse_time(value: Any) -> Any:
    if isinstance(value, str):
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=UTC)
    return value


def make_condition(
    status: str,
    gate: str = GATE,
    last_transition_time: datetime | None = None,
    last_probe_time: datetime | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        type=gate,
        status=status,
        last_transition_time=last_transition_time,
        last_probe_time=last_probe_time,
        reason=None,
        message=None,
    )


def make_pod(
    name: str,
    ip: str | None = "10.0.0.1",
    ports: Sequence[int] = (8080,),
    namespace: str = "shop",
    gate: str | None = GATE,
    conditions: list[SimpleNamespace] | None = None,
    terminating: bool = False,
    resource_version: str = "1",
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            resource_version=resource_version,
            deletion_timestamp=fixed_now() if terminating else None,
        ),
        spec=SimpleNamespace(
            readiness_gates=[SimpleNamespace(condition_type=gate)] if gate else [],
            containers=[
                SimpleNamespace(
                    name="app",
                    ports=[SimpleNamespace(container_port=port) for port in ports],
                )
            ],
        ),
        status=SimpleNamespace(pod_ip=ip, conditions=list(conditions or [])),
    )


def make_service(
    name: str,
    namespace: str = "shop",
    ports: Sequence[tuple[str | None, int]] = (("http", 80),),
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, resource_version="1"),
        spec=SimpleNamespace(
            ports=[SimpleNamespace(name=port_name, port=port) for port_name, port in ports]
        ),
    )


def make_address(ip: str, pod_name: str | None = None, namespace: str | None = None) -> SimpleNamespace:
    target_ref = None
    if pod_name is not None:
        target_ref = SimpleNamespace(kind="Pod", name=pod_name, namespace=namespace)
    return SimpleNamespace(ip=ip, node_name="node-a", target_ref=target_ref)


def make_endpoints(
    name: str,
    namespace: str = "shop",
    addresses: Sequence[SimpleNamespace | str] = (),
    not_ready: Sequence[SimpleNamespace | str] = (),
    ports: Sequence[tuple[str | None, int]] = (("http", 8080),),
) -> SimpleNamespace:
    def _address(value: SimpleNamespace | str) -> SimpleNamespace:
        return make_address(value) if isinstance(value, str) else value

    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, resource_version="1"),
        subsets=[
            SimpleNamespace(
                addresses=[_address(a) for a in addresses],
                not_ready_addresses=[_address(a) for a in not_ready],
                ports=[SimpleNamespace(name=port_name, port=port) for port_name, port in ports],
            )
        ],
    )


def _service_backend(service: str, port: int | str | None) -> SimpleNamespace:
    if isinstance(port, str):
        port_ref = SimpleNamespace(number=None, name=port)
    elif port is None:
        port_ref = None
    else:
        port_ref = SimpleNamespace(number=port, name=None)
    return SimpleNamespace(service=SimpleNamespace(name=service, port=port_ref), resource=None)


def make_ingress(
    name: str,
    namespace: str = "shop",
    hostname: str | None = HOSTNAME,
    backends: Sequence[tuple[str, int | str | None]] = (("web", 80),),
    default_backend: tuple[str, int | str | None] | None = None,
) -> SimpleNamespace:
    paths = [
        SimpleNamespace(path=f"/{service}", backend=_service_backend(service, port))
        for service, port in backends
    ]
    lb_entries = [SimpleNamespace(hostname=hostname, ip=None)] if hostname else []
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, resource_version="1"),
        spec=SimpleNamespace(
            default_backend=_service_backend(*default_backend) if default_backend else None,
            rules=[SimpleNamespace(host="shop.example.com", http=SimpleNamespace(paths=paths))],
        ),
        status=SimpleNamespace(load_balancer=SimpleNamespace(ingress=lb_entries)),
    )


def not_found() -> ApiException:
    return ApiException(status=404, reason="Not Found")


class FakeCoreApi:
    """In-memory stand-in for the parts of ``CoreV1Api`` the controller uses.

    Status patches are applied to the stored pod the way a strategic merge
    on ``status.conditions`` would: merged by condition type.
    """

    def __init__(self) -> None:
        self.pods: dict[ObjectRef, SimpleNamespace] = {}
        self.services: dict[ObjectRef, SimpleNamespace] = {}
        self.endpoints: dict[ObjectRef, SimpleNamespace] = {}
        self.patches: list[tuple[str, str, dict[str, Any]]] = []
        self.conflicts_remaining = 0
        self.patch_error: ApiException | None = None
        self.read_error: ApiException | None = None

    def add_pod(self, pod: SimpleNamespace) -> SimpleNamespace:
        self.pods[ObjectRef.from_object(pod)] = pod
        return pod

    def add_service(self, service: SimpleNamespace) -> SimpleNamespace:
        self.services[ObjectRef.from_object(service)] = service
        return service

    def add_endpoints(self, endpoints: SimpleNamespace) -> SimpleNamespace:
        self.endpoints[ObjectRef.from_object(endpoints)] = endpoints
        return endpoints

    @staticmethod
    def _get(store: dict[ObjectRef, SimpleNamespace], name: str, namespace: str) -> SimpleNamespace:
        try:
            return store[ObjectRef(namespace=namespace, name=name)]
        except KeyError:
            raise not_found() from None

    def read_namespaced_pod(self, name: str, namespace: str, **kwargs: Any) -> SimpleNamespace:
        if self.read_error is not None:
            raise self.read_error
        return self._get(self.pods, name, namespace)

    def read_namespaced_service(self, name: str, namespace: str, **kwargs: Any) -> SimpleNamespace:
        return self._get(self.services, name, namespace)

    def read_namespaced_endpoints(self, name: str, namespace: str, **kwargs: Any) -> SimpleNamespace:
        return self._get(self.endpoints, name, namespace)

    def condition(self, name: str, namespace: str = "shop", gate: str = GATE) -> Any:
        pod = self._get(self.pods, name, namespace)
        for condition in pod.status.conditions:
            if condition.type == gate:
                return condition
        return None

    def patch_namespaced_pod_status(
        self, name: str, namespace: str, body: dict[str, Any], **kwargs: Any
    ) -> SimpleNamespace:
        if self.patch_error is not None:
            raise self.patch_error
        pod = self._get(self.pods, name, namespace)
        if self.conflicts_remaining > 0:
            self.conflicts_remaining -= 1
            pod.metadata.resource_version = str(int(pod.metadata.resource_version) + 1)
            raise ApiException(status=409, reason="Conflict")
        self.patches.append((name, namespace, body))
        for patch in body["status"]["conditions"]:
            condition = SimpleNamespace(
                type=patch["type"],
                status=patch["status"],
                last_probe_time=_parse_time(patch.get("lastProbeTime")),
                last_transition_time=_parse_time(patch.get("lastTransitionTime")),
                reason=patch.get("reason"),
                message=patch.get("message"),
            )
            pod.status.conditions = [
                c for c in pod.status.conditions if c.type != condition.type
            ] + [condition]
        pod.metadata.resource_version = str(int(pod.metadata.resource_version) + 1)
        return pod


class FakeNetworkingApi:
    def __init__(self) -> None:
        self.ingresses: dict[ObjectRef, SimpleNamespace] = {}

    def add_ingress(self, ingress: SimpleNamespace) -> SimpleNamespace:
        self.ingresses[ObjectRef.from_object(ingress)] = ingress
        return ingress

    def read_namespaced_ingress(self, name: str, namespace: str, **kwargs: Any) -> SimpleNamespace:
        try:
            return self.ingresses[ObjectRef(namespace=namespace, name=name)]
        except KeyError:
            raise not_found() from None


class FakeCloud:
    """Scriptable :class:`CloudProvider`: health is looked up per (ip, port)."""

    def __init__(self) -> None:
        self.load_balancers: dict[str, LoadBalancer] = {
            HOSTNAME: LoadBalancer(provider_id=LB_ARN, dns_name=HOSTNAME)
        }
        self.target_groups: dict[str, list[EndpointGroup]] = {LB_ARN: [EndpointGroup(TG_ARN)]}
        self.healthy: set[tuple[str, int]] = set()
        self.health_error: Exception | None = None
        self.deregister_error: Exception | None = None
        self.health_calls: list[tuple[tuple[EndpointGroup, ...], str, tuple[int, ...]]] = []
        self.deregistered: list[tuple[str, str, int]] = []

    def resolve_load_balancer(self, hostname: str) -> LoadBalancer:
        try:
            return self.load_balancers[hostname]
        except KeyError:
            raise LoadBalancerNotFoundError(f"no load balancer for {hostname}") from None

    def list_target_groups(self, load_balancer_id: str) -> list[EndpointGroup]:
        return list(self.target_groups.get(load_balancer_id, []))

    def is_target_healthy(
        self, groups: Sequence[EndpointGroup], ip: str, ports: Sequence[int]
    ) -> bool:
        self.health_calls.append((tuple(groups), ip, tuple(ports)))
        if self.health_error is not None:
            raise self.health_error
        return any((ip, port) in self.healthy for port in ports)

    def deregister_target(self, groups: Sequence[EndpointGroup], ip: str, port: int) -> None:
        if self.deregister_error is not None:
            raise self.deregister_error
        for group in groups:
            self.deregistered.append((group.name, ip, port))


def cloud_failure(message: str = "describe_target_health failed: Throttling") -> CloudAPIError:
    return CloudAPIError(message)
