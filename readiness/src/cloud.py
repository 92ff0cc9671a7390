from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True, order=True)
class EndpointGroup:
    """One cloud target group; ``name`` is the provider identifier (an ARN on AWS)."""

    name: str


@dataclass(frozen=True)
class LoadBalancer:
    provider_id: str
    dns_name: str


class CloudProvider(Protocol):
    """Operations the readiness engine needs from a cloud load-balancer backend.

    Implementations raise :class:`~readiness.src.errors.CloudAPIError` for SDK
    failures, :class:`~readiness.src.errors.LoadBalancerNotFoundError` when a
    hostname matches nothing and :class:`~readiness.src.errors.AmbiguousError`
    when a lookup that must be unique is not.
    """

    def resolve_load_balancer(self, hostname: str) -> LoadBalancer: ...

    def list_target_groups(self, load_balancer_id: str) -> list[EndpointGroup]: ...

    def is_target_healthy(
        self, groups: Sequence[EndpointGroup], ip: str, ports: Sequence[int]
    ) -> bool: ...

    def deregister_target(self, groups: Sequence[EndpointGroup], ip: str, port: int) -> None: ...


def resolve_endpoint_groups(provider: CloudProvider, hostname: str) -> list[EndpointGroup]:
    """Resolve an ingress hostname to the target groups of its load balancer."""
    load_balancer = provider.resolve_load_balancer(hostname)
    return provider.list_target_groups(load_balancer.provider_id)
