from __future__ import annotations


class ReadinessError(Exception):
    """Base class for every failure a reconcile can report to its work queue.

    ``retryable`` tells the worker whether the key should be re-added with
    backoff.  Deleted objects are never reported through this hierarchy:
    they surface as a Kubernetes ``ApiException`` with status 404 and are
    handled as cleanup by the reconcile itself.
    """

    retryable = True


class NotReadyError(ReadinessError):
    """Required upstream data is missing (no hostname yet, service not correlated, ...)."""


class UnhealthyError(ReadinessError):
    """The cloud load balancer reports the pod's target as not healthy (yet)."""


class TransientAPIError(ReadinessError):
    """A Kubernetes or cloud API call failed or timed out."""


class AmbiguousError(ReadinessError):
    """More than one candidate where exactly one is required.

    Raised when a hostname matches several load balancers, or when a
    single probed target returns more than one health description.
    """


class CloudAPIError(TransientAPIError):
    """The cloud provider SDK returned an error."""


class LoadBalancerNotFoundError(NotReadyError):
    """No load balancer matched the ingress hostname."""
