from __future__ import annotations

import logging
from collections import Counter as TallyCounter
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

import boto3
from botocore.config import Config
from botocore.credentials import CredentialProvider, CredentialResolver, RefreshableCredentials
from botocore.exceptions import BotoCoreError, ClientError
from botocore.session import get_session as get_botocore_session

from readiness.src.cloud import EndpointGroup, LoadBalancer
from readiness.src.errors import AmbiguousError, CloudAPIError, LoadBalancerNotFoundError
from readiness.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_THROTTLING_CODES = frozenset(
    {"Throttling", "ThrottlingException", "LimitExceededException", "RequestLimitExceeded"}
)
_ABSENT_TARGET_CODES = frozenset({"InvalidTarget", "TargetGroupNotFound"})


def load_balancer_name_from_hostname(hostname: str) -> str:
    """Derive the ELBv2 load balancer name from its DNS hostname.

    ``internal-k8s-app-d4e5-1883083075.eu-west-1.elb.amazonaws.com`` becomes
    ``k8s-app-d4e5``: the first DNS label minus the ``internal-`` prefix and
    the trailing AWS-generated id.
    """
    label = hostname.split(".", 1)[0]
    if label.startswith("internal-"):
        label = label[len("internal-") :]
    name, separator, _generated_id = label.rpartition("-")
    return name if separator else label


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class AWSCloud:
    """ELBv2 (ALB/NLB) implementation of :class:`~readiness.src.cloud.CloudProvider`.

    Every SDK call goes through :meth:`_call`, which counts it in
    ``cloud_api_requests_total`` and converts SDK exceptions into
    :class:`CloudAPIError` so the work queue retries them with backoff.
    """

    def __init__(self, elbv2_client: Any, logger: logging.Logger | None = None) -> None:
        self.elbv2 = elbv2_client
        self.logger = logger or LOGGER

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            result = fn()
        except ClientError as exc:
            code = _error_code(exc)
            outcome = "throttled" if code in _THROTTLING_CODES else "failed"
            METRICS.cloud_api_requests_total.labels(operation=operation, result=outcome).inc()
            raise CloudAPIError(f"{operation} failed: {code or exc}") from exc
        except BotoCoreError as exc:
            METRICS.cloud_api_requests_total.labels(operation=operation, result="failed").inc()
            raise CloudAPIError(f"{operation} failed: {exc}") from exc
        METRICS.cloud_api_requests_total.labels(operation=operation, result="success").inc()
        self.logger.debug("AWS %s succeeded", operation)
        return result

    def _paginate(self, operation: str, result_key: str, **params: Any) -> list[dict[str, Any]]:
        def _collect() -> list[dict[str, Any]]:
            items: list[dict[str, Any]] = []
            for page in self.elbv2.get_paginator(operation).paginate(**params):
                items.extend(page.get(result_key, []))
            return items

        return self._call(operation, _collect)

    def resolve_load_balancer(self, hostname: str) -> LoadBalancer:
        name = load_balancer_name_from_hostname(hostname)
        try:
            load_balancers = self._paginate(
                "describe_load_balancers", "LoadBalancers", Names=[name]
            )
        except CloudAPIError as exc:
            cause = exc.__cause__
            if isinstance(cause, ClientError) and _error_code(cause) == "LoadBalancerNotFound":
                raise LoadBalancerNotFoundError(
                    f"no load balancer named {name} for hostname {hostname}"
                ) from cause
            raise

        if not load_balancers:
            raise LoadBalancerNotFoundError(f"no load balancer named {name} for hostname {hostname}")
        if len(load_balancers) > 1:
            raise AmbiguousError(
                f"{len(load_balancers)} load balancers match hostname {hostname}; "
                "cannot determine which one to use"
            )
        balancer = load_balancers[0]
        return LoadBalancer(
            provider_id=balancer["LoadBalancerArn"],
            dns_name=balancer.get("DNSName", ""),
        )

    def list_target_groups(self, load_balancer_id: str) -> list[EndpointGroup]:
        groups = self._paginate(
            "describe_target_groups", "TargetGroups", LoadBalancerArn=load_balancer_id
        )
        return [EndpointGroup(name=group["TargetGroupArn"]) for group in groups]

    def is_target_healthy(
        self, groups: Sequence[EndpointGroup], ip: str, ports: Sequence[int]
    ) -> bool:
        """Return True when any probed (ip, port) target is ``healthy`` in any group.

        Each group is asked about one target per declared container port.
        A group answering with more than one description for the same target
        raises :class:`AmbiguousError` rather than guessing.
        """
        if not ports:
            return False
        targets = [{"Id": ip, "Port": int(port)} for port in ports]
        healthy = False
        for group in groups:
            response = self._call(
                "describe_target_health",
                lambda group=group: self.elbv2.describe_target_health(
                    TargetGroupArn=group.name, Targets=targets
                ),
            )
            descriptions = response.get("TargetHealthDescriptions", [])
            seen = TallyCounter(
                (d.get("Target", {}).get("Id"), d.get("Target", {}).get("Port"))
                for d in descriptions
            )
            duplicated = [target for target, count in seen.items() if count > 1]
            if duplicated:
                raise AmbiguousError(
                    f"expected one health result per target in {group.name}, "
                    f"got duplicates for {duplicated}"
                )
            for description in descriptions:
                state = description.get("TargetHealth", {}).get("State")
                if state == "healthy":
                    healthy = True
        return healthy

    def deregister_target(self, groups: Sequence[EndpointGroup], ip: str, port: int) -> None:
        """Remove the (ip, port) target from every group; an absent target counts as success."""
        for group in groups:
            try:
                self._call(
                    "deregister_targets",
                    lambda group=group: self.elbv2.deregister_targets(
                        TargetGroupArn=group.name,
                        Targets=[{"Id": ip, "Port": int(port)}],
                    ),
                )
            except CloudAPIError as exc:
                cause = exc.__cause__
                if isinstance(cause, ClientError) and _error_code(cause) in _ABSENT_TARGET_CODES:
                    self.logger.info(
                        "Target %s:%d already absent from %s", ip, port, group.name
                    )
                    continue
                raise
            self.logger.info("Deregistered target %s:%d from %s", ip, port, group.name)


class _AssumedRoleProvider(CredentialProvider):
    """Hands botocore the refreshable STS credentials for the configured role."""

    METHOD = "sts-assume-role"

    def __init__(self, credentials: RefreshableCredentials) -> None:
        super().__init__()
        self._credentials = credentials

    def load(self) -> RefreshableCredentials:
        return self._credentials


def build_aws_cloud(
    region: str,
    assume_role_arn: str = "",
    timeout_seconds: int = 10,
    session_factory: Callable[..., Any] = boto3.Session,
) -> AWSCloud:
    """Construct an :class:`AWSCloud` for *region*.

    When *assume_role_arn* is set the session is built from temporary STS
    credentials for that role.  Connect and read timeouts are bounded so a
    hung ELB call surfaces as a retryable error instead of wedging a worker.
    """
    session = session_factory(region_name=region)
    if assume_role_arn:
        sts = session.client("sts")

        def _assume_role() -> dict[str, str]:
            credentials = sts.assume_role(
                RoleArn=assume_role_arn,
                RoleSessionName="kube-readiness",
            )["Credentials"]
            return {
                "access_key": credentials["AccessKeyId"],
                "secret_key": credentials["SecretAccessKey"],
                "token": credentials["SessionToken"],
                "expiry_time": credentials["Expiration"].isoformat(),
            }

        refreshable = RefreshableCredentials.create_from_metadata(
            metadata=_assume_role(),
            refresh_using=_assume_role,
            method=_AssumedRoleProvider.METHOD,
        )
        botocore_session = get_botocore_session()
        botocore_session.register_component(
            "credential_provider",
            CredentialResolver(providers=[_AssumedRoleProvider(refreshable)]),
        )
        session = session_factory(botocore_session=botocore_session, region_name=region)
        LOGGER.info("Assumed AWS role %s", assume_role_arn)

    client_config = Config(
        connect_timeout=timeout_seconds,
        read_timeout=timeout_seconds,
        retries={"max_attempts": 3, "mode": "standard"},
    )
    return AWSCloud(elbv2_client=session.client("elbv2", config=client_config))
