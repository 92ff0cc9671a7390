from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException

from readiness.src.pod_gates import ReadinessCondition

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    networking: NetworkingV1Api


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the Core and Networking API clients using the active kube configuration."""
    return KubeClients(core=client.CoreV1Api(), networking=client.NetworkingV1Api())


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def is_access_denied(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status in {401, 403}


def patch_pod_condition(
    core_api: CoreV1Api,
    pod: Any,
    condition: ReadinessCondition,
    timeout_seconds: int | None = None,
) -> Any:
    """Write one readiness condition to the pod's status sub-resource.

    The body is a strategic merge patch, so conditions owned by other
    writers (kubelet's ``Ready``, ``ContainersReady``...) merge by ``type``
    and are left alone.  The pod's ``resourceVersion`` is included so a
    concurrent status update makes the API server answer ``409 Conflict``
    instead of silently interleaving; callers re-read and retry.
    """
    metadata = pod.metadata
    body: dict[str, Any] = {"status": {"conditions": [condition.to_patch()]}}
    resource_version = getattr(metadata, "resource_version", None)
    if resource_version:
        body["metadata"] = {"resourceVersion": resource_version}

    kwargs: dict[str, Any] = {}
    if timeout_seconds is not None:
        kwargs["_request_timeout"] = timeout_seconds
    return core_api.patch_namespaced_pod_status(
        name=metadata.name,
        namespace=metadata.namespace,
        body=body,
        **kwargs,
    )
