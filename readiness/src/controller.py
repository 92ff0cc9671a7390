from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, NetworkingV1Api

from readiness.src.cloud import CloudProvider
from readiness.src.config import DEFAULT_READINESS_GATE, ControllerConfig
from readiness.src.errors import (
    AmbiguousError,
    NotReadyError,
    ReadinessError,
    TransientAPIError,
    UnhealthyError,
)
from readiness.src.evaluator import PodReadinessEvaluator
from readiness.src.ingress import IngressResolver
from readiness.src.kube import KubeClients, is_access_denied, is_not_found
from readiness.src.metrics import METRICS
from readiness.src.store import CorrelationStore, Endpoint, EndpointIndex, ObjectRef, PodRef
from readiness.src.workqueue import ExponentialBackoff, RateLimitingQueue

LOGGER = logging.getLogger(__name__)

POD = "pod"
SERVICE = "service"
ENDPOINTS = "endpoints"
INGRESS = "ingress"
KINDS = (POD, SERVICE, ENDPOINTS, INGRESS)

WATCH_TIMEOUT_SECONDS = 30
THREAD_JOIN_TIMEOUT_SECONDS = 30.0

_LIST_CALLS = {
    POD: ("core_api", "list_namespaced_pod", "list_pod_for_all_namespaces"),
    SERVICE: ("core_api", "list_namespaced_service", "list_service_for_all_namespaces"),
    ENDPOINTS: ("core_api", "list_namespaced_endpoints", "list_endpoints_for_all_namespaces"),
    INGRESS: ("networking_api", "list_namespaced_ingress", "list_ingress_for_all_namespaces"),
}


def _result_label(error: BaseException | None) -> str:
    if error is None:
        return "success"
    if isinstance(error, UnhealthyError):
        return "unhealthy"
    if isinstance(error, NotReadyError):
        return "not_ready"
    if isinstance(error, AmbiguousError):
        return "ambiguous"
    if isinstance(error, TransientAPIError):
        return "api_error"
    return "error"


class ReadinessController:
    """Keeps pod readiness-gate conditions in sync with load-balancer target health.

    Four independent pipelines (pods, services, endpoints, ingresses) each
    have their own deduplicating work queue and worker threads.  Watch
    threads translate Kubernetes events into queue keys; workers run the
    per-kind reconcile and report the outcome through :meth:`handle_result`,
    which forgets the key on success, re-adds it with per-key exponential
    backoff on failure and drops it once ``max_retries`` is exceeded.

    Data flows ingress -> service -> pod: an ingress reconcile publishes
    its hostname, target groups and endpoints into the correlation store
    and enqueues the backend services; a service reconcile resolves member
    pods through the endpoint index and enqueues them; a pod reconcile asks
    the cloud whether the pod's target is healthy and writes the condition.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        networking_api: NetworkingV1Api,
        cloud: CloudProvider,
        namespace: str = "",
        readiness_gate: str = DEFAULT_READINESS_GATE,
        max_retries: int = 15,
        retry_base_delay_seconds: float = 0.005,
        retry_max_delay_seconds: float = 300.0,
        workers_per_kind: int = 1,
        resync_period_seconds: float = 60.0,
        ingress_recheck_seconds: float = 10.0,
        kube_timeout_seconds: int | None = 10,
        prune_deleted_pod_endpoints: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers_per_kind < 1:
            raise ValueError("workers_per_kind must be >= 1")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.core_api = core_api
        self.networking_api = networking_api
        self.cloud = cloud
        self.namespace = namespace
        self.readiness_gate = readiness_gate
        self.max_retries = max_retries
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.retry_max_delay_seconds = retry_max_delay_seconds
        self.workers_per_kind = workers_per_kind
        self.resync_period_seconds = resync_period_seconds
        self.ingress_recheck_seconds = ingress_recheck_seconds
        self.kube_timeout_seconds = kube_timeout_seconds
        self.prune_deleted_pod_endpoints = prune_deleted_pod_endpoints
        self.logger = logger or LOGGER

        self.endpoint_index = EndpointIndex()
        self.store = CorrelationStore(logger=self.logger)
        self.resolver = IngressResolver(
            core_api=core_api,
            cloud=cloud,
            store=self.store,
            timeout_seconds=kube_timeout_seconds,
            logger=self.logger,
        )
        self.evaluator = PodReadinessEvaluator(
            core_api=core_api,
            cloud=cloud,
            endpoint_index=self.endpoint_index,
            store=self.store,
            readiness_gate=readiness_gate,
            timeout_seconds=kube_timeout_seconds,
            logger=self.logger,
        )
        self._reconcilers: dict[str, Callable[[ObjectRef], float | None]] = {
            POD: self.reconcile_pod,
            SERVICE: self.reconcile_service,
            ENDPOINTS: self.reconcile_endpoints,
            INGRESS: self.reconcile_ingress,
        }

        self.queues: dict[str, RateLimitingQueue] = self._new_queues()
        self.ready_events = {kind: threading.Event() for kind in KINDS}
        self._known: dict[str, set[ObjectRef]] = {POD: set(), INGRESS: set()}
        self._known_lock = threading.Lock()
        self._external_stop = threading.Event()
        self._halt: threading.Event | None = None
        self._active_watchers: dict[str, watch.Watch] = {}
        self._watcher_lock = threading.Lock()

    def _new_queues(self) -> dict[str, RateLimitingQueue]:
        def _depth_reporter(kind: str) -> Callable[[int], None]:
            return lambda depth: METRICS.queue_depth.labels(kind=kind).set(depth)

        return {
            kind: RateLimitingQueue(
                rate_limiter=ExponentialBackoff(
                    base_seconds=self.retry_base_delay_seconds,
                    max_seconds=self.retry_max_delay_seconds,
                ),
                on_depth_change=_depth_reporter(kind),
            )
            for kind in KINDS
        }

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def notify_pod_changed(self, pod_ref: PodRef) -> None:
        self.queues[POD].add(pod_ref)

    def notify_service_changed(self, service_ref: ObjectRef) -> None:
        self.queues[SERVICE].add(service_ref)

    def notify_endpoints_changed(self, endpoints_ref: ObjectRef) -> None:
        self.queues[ENDPOINTS].add(endpoints_ref)

    def notify_ingress_changed(self, ingress_ref: ObjectRef) -> None:
        self.queues[INGRESS].add(ingress_ref)

    def _notify(self, kind: str, ref: ObjectRef) -> None:
        self.queues[kind].add(ref)

    def _notify_pods(self, pods: Iterable[PodRef]) -> None:
        for pod_ref in sorted(set(pods)):
            self.notify_pod_changed(pod_ref)

    def readiness_state(self) -> dict[str, bool]:
        """Whether each watch loop has completed its initial list."""
        return {kind: event.is_set() for kind, event in self.ready_events.items()}

    def is_ready(self) -> bool:
        return all(self.readiness_state().values())

    # ------------------------------------------------------------------
    # Retry scheduling
    # ------------------------------------------------------------------

    def handle_result(
        self,
        kind: str,
        key: ObjectRef,
        error: BaseException | None,
        requeue_after: float | None = None,
    ) -> None:
        """Turn one reconcile outcome into a queue decision.

        Success forgets the key's failure history (and schedules a recheck
        when *requeue_after* is given).  A failure re-adds the key with
        backoff until it has been requeued ``max_retries`` times; after
        that the key is dropped until the next watch event or resync.
        """
        queue = self.queues[kind]
        result = _result_label(error)
        METRICS.reconcile_total.labels(kind=kind, result=result).inc()

        if error is None:
            queue.forget(key)
            if requeue_after:
                queue.add_after(key, requeue_after)
            return

        retryable = not isinstance(error, ReadinessError) or error.retryable
        requeues = queue.num_requeues(key)
        if retryable and requeues < self.max_retries:
            if isinstance(error, (NotReadyError, UnhealthyError)):
                self.logger.info("Requeueing %s %s: %s", kind, key, error)
            else:
                self.logger.warning(
                    "Requeueing %s %s after error (attempt %d): %s",
                    kind,
                    key,
                    requeues + 1,
                    error,
                )
            METRICS.retries_total.labels(kind=kind).inc()
            queue.add_rate_limited(key)
            return

        queue.forget(key)
        METRICS.dropped_total.labels(kind=kind).inc()
        self.logger.error(
            "Dropping %s %s out of the queue after %d retries: %s",
            kind,
            key,
            requeues,
            error,
        )

    def process_next(self, kind: str, timeout: float | None = None) -> bool:
        """Reconcile one key from the *kind* queue.

        Returns False once the queue has been shut down, True otherwise
        (including when *timeout* elapsed with nothing to do).
        """
        queue = self.queues[kind]
        key, shutdown = queue.get(timeout=timeout)
        if key is None:
            return not shutdown

        started = time.monotonic()
        error: BaseException | None = None
        requeue_after: float | None = None
        try:
            requeue_after = self._reconcilers[kind](key)
        except ReadinessError as exc:
            error = exc
        except Exception as exc:
            self.logger.exception("Unexpected error reconciling %s %s", kind, key)
            error = exc
        finally:
            METRICS.reconcile_duration_seconds.labels(kind=kind).observe(
                time.monotonic() - started
            )
        try:
            self.handle_result(kind, key, error, requeue_after=requeue_after)
        finally:
            queue.done(key)
        return True

    # ------------------------------------------------------------------
    # Reconcilers
    # ------------------------------------------------------------------

    def _request_kwargs(self) -> dict[str, Any]:
        if self.kube_timeout_seconds is None:
            return {}
        return {"_request_timeout": self.kube_timeout_seconds}

    def reconcile_pod(self, pod_ref: PodRef) -> None:
        result = self.evaluator.evaluate(pod_ref)
        if result.action != "deleted":
            return None
        if self.prune_deleted_pod_endpoints:
            removed = self.endpoint_index.remove_pod(pod_ref)
            if removed:
                self.logger.info("Pruned %d endpoint(s) of deleted pod %s", removed, pod_ref)
        return None

    def _member_pods(self, service_ref: ObjectRef, endpoints: Any) -> set[PodRef]:
        """Resolve every address of an Endpoints object to the pod that owns it.

        The endpoint index is consulted first; an address whose ``targetRef``
        names a Pod is used when the index has no entry for it.
        """
        members: set[PodRef] = set()
        for subset in getattr(endpoints, "subsets", None) or []:
            ports = [int(p.port) for p in (getattr(subset, "ports", None) or [])]
            addresses = list(getattr(subset, "addresses", None) or []) + list(
                getattr(subset, "not_ready_addresses", None) or []
            )
            for address in addresses:
                owner = None
                for port in ports:
                    owner = self.endpoint_index.lookup(Endpoint(ip=address.ip, port=port))
                    if owner is not None:
                        break
                if owner is None:
                    target_ref = getattr(address, "target_ref", None)
                    if target_ref is not None and target_ref.kind == "Pod" and target_ref.name:
                        owner = PodRef(
                            namespace=target_ref.namespace or service_ref.namespace,
                            name=target_ref.name,
                        )
                if owner is None:
                    self.logger.debug(
                        "No pod known for address %s of service %s", address.ip, service_ref
                    )
                    continue
                members.add(owner)
        return members

    def reconcile_service(self, service_ref: ObjectRef) -> None:
        try:
            self.core_api.read_namespaced_service(
                name=service_ref.name, namespace=service_ref.namespace, **self._request_kwargs()
            )
        except ApiException as exc:
            if is_not_found(exc):
                removed = self.store.remove(service_ref)
                if removed is not None:
                    self.logger.info("Service %s deleted; dropped its correlation", service_ref)
                    self._notify_pods(removed.pods)
                return None
            raise TransientAPIError(f"reading service {service_ref} failed: {exc.status}") from exc

        try:
            endpoints = self.core_api.read_namespaced_endpoints(
                name=service_ref.name, namespace=service_ref.namespace, **self._request_kwargs()
            )
        except ApiException as exc:
            if is_not_found(exc):
                raise NotReadyError(f"endpoints for service {service_ref} do not exist yet") from exc
            raise TransientAPIError(
                f"reading endpoints {service_ref} failed: {exc.status}"
            ) from exc

        previous = self.store.get(service_ref)
        info = self.store.set_members(service_ref, self._member_pods(service_ref, endpoints))
        former = previous.pods if previous is not None else set()
        self.logger.info(
            "Service %s has %d member pod(s) behind %s",
            service_ref,
            len(info.pods),
            info.hostname or "no hostname",
        )
        self._notify_pods(info.pods | former)
        return None

    def reconcile_endpoints(self, endpoints_ref: ObjectRef) -> None:
        self.notify_service_changed(endpoints_ref)
        return None

    def reconcile_ingress(self, ingress_ref: ObjectRef) -> float | None:
        try:
            ingress = self.networking_api.read_namespaced_ingress(
                name=ingress_ref.name, namespace=ingress_ref.namespace, **self._request_kwargs()
            )
        except ApiException as exc:
            if is_not_found(exc):
                detached = self.store.remove_ingress(ingress_ref)
                if detached:
                    self.logger.info(
                        "Ingress %s deleted; detached from %d service(s)",
                        ingress_ref,
                        len(detached),
                    )
                for pods in detached.values():
                    self._notify_pods(pods)
                return None
            raise TransientAPIError(f"reading ingress {ingress_ref} failed: {exc.status}") from exc

        resolved = self.resolver.resolve(ingress)
        for service_ref in sorted(resolved.services):
            self.notify_service_changed(service_ref)
        for pods in resolved.detached.values():
            self._notify_pods(pods)
        return self.ingress_recheck_seconds

    # ------------------------------------------------------------------
    # Resync
    # ------------------------------------------------------------------

    def _track(self, kind: str, ref: ObjectRef, deleted: bool) -> None:
        known = self._known.get(kind)
        if known is None:
            return
        with self._known_lock:
            if deleted:
                known.discard(ref)
            else:
                known.add(ref)

    def resync(self) -> None:
        """Re-enqueue every known pod and ingress so drift is eventually corrected."""
        with self._known_lock:
            pods = sorted(self._known[POD])
            ingresses = sorted(self._known[INGRESS])
        for ingress_ref in ingresses:
            self.notify_ingress_changed(ingress_ref)
        for pod_ref in pods:
            self.notify_pod_changed(pod_ref)
        self.logger.debug("Resync enqueued %d ingress(es) and %d pod(s)", len(ingresses), len(pods))

    def _resync_loop(self, halt: threading.Event) -> None:
        while not halt.wait(timeout=self.resync_period_seconds):
            self.resync()

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def _list_call(self, kind: str) -> tuple[Callable[..., Any], tuple[str, ...]]:
        """Return the list function for *kind* and its positional arguments.

        The bound API method is passed to ``watch.Watch().stream`` as is: the
        watch reads its docstring to find the model type to deserialize into.
        """
        try:
            api_name, namespaced, cluster = _LIST_CALLS[kind]
        except KeyError:
            raise ValueError(f"unknown kind: {kind}") from None
        api = getattr(self, api_name)
        if self.namespace:
            return getattr(api, namespaced), (self.namespace,)
        return getattr(api, cluster), ()

    def _list_and_enqueue(
        self, kind: str, list_fn: Callable[..., Any], args: tuple[str, ...]
    ) -> str | None:
        """List every object of *kind*, enqueue each one and return the list's resourceVersion."""
        listing = list_fn(*args, **self._request_kwargs())
        for item in getattr(listing, "items", None) or []:
            if getattr(item, "metadata", None) is None:
                continue
            ref = ObjectRef.from_object(item)
            self._track(kind, ref, deleted=False)
            self._notify(kind, ref)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _handle_watch_event(self, kind: str, event: dict[str, Any]) -> str | None:
        event_type = str(event.get("type", ""))
        obj = event.get("object")
        if event_type == "ERROR":
            code = obj.get("code") if isinstance(obj, dict) else None
            message = obj.get("message") if isinstance(obj, dict) else None
            raise ApiException(status=code or 500, reason=message or "watch error event")
        if obj is None or getattr(obj, "metadata", None) is None:
            return None
        ref = ObjectRef.from_object(obj)
        self._track(kind, ref, deleted=event_type == "DELETED")
        self._notify(kind, ref)
        return obj.metadata.resource_version

    def _access_denied(self, kind: str, exc: ApiException, during: str) -> None:
        self.logger.error(
            "Kubernetes API access denied for %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            kind,
            during,
            exc.status,
        )
        METRICS.watch_errors_total.labels(kind=kind).inc()
        self.ready_events[kind].clear()
        self.request_stop()

    def _watch_kind(self, kind: str, halt: threading.Event) -> None:
        """List-then-watch one kind until *halt* is set.

        The initial list is retried with jittered exponential backoff; the
        watch resumes from the last seen ``resourceVersion`` and re-lists on
        ``410 Gone``.  ``401``/``403`` stop the whole controller since no
        amount of retrying fixes missing RBAC.
        """
        list_fn, args = self._list_call(kind)
        resource_version: str | None = None
        backoff_seconds = 1
        while not halt.is_set():
            try:
                resource_version = self._list_and_enqueue(kind, list_fn, args)
                self.ready_events[kind].set()
                self.logger.info(
                    "Initial %s list complete; watching from resourceVersion %s",
                    kind,
                    resource_version,
                )
                break
            except ApiException as exc:
                if is_access_denied(exc):
                    self._access_denied(kind, exc, "initial list")
                    return
                self.logger.exception("Initial %s list failed", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
            halt.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        stream_count = 0
        while not halt.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers[kind] = watcher
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=kind).inc()
                stream_count += 1
                if resource_version is None:
                    resource_version = self._list_and_enqueue(kind, list_fn, args)
                for event in watcher.stream(
                    list_fn,
                    *args,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                ):
                    if halt.is_set():
                        break
                    resource_version = self._handle_watch_event(kind, event) or resource_version
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", kind)
                    try:
                        resource_version = self._list_and_enqueue(kind, list_fn, args)
                    except ApiException as relist_exc:
                        if is_access_denied(relist_exc):
                            self._access_denied(kind, relist_exc, "410 re-list")
                            return
                        self.logger.exception("Failed to re-list %s after 410", kind)
                        METRICS.watch_errors_total.labels(kind=kind).inc()
                        resource_version = None
                    continue
                if is_access_denied(exc):
                    self._access_denied(kind, exc, "watch")
                    return
                self.logger.exception("Kubernetes API %s watch error", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                halt.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                halt.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watchers.get(kind) is watcher:
                        del self._active_watchers[kind]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _run_worker(self, kind: str) -> None:
        while self.process_next(kind):
            pass

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt every open watch stream."""
        self._external_stop.set()
        halt = self._halt
        if halt is not None:
            halt.set()
        with self._watcher_lock:
            watchers = list(self._active_watchers.values())
        for active_watcher in watchers:
            active_watcher.stop()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start watches, workers and resync; block until shutdown, then tear everything down.

        Safe to call again after it returned (for example when leadership is
        re-acquired): queues are rebuilt, while the endpoint index and the
        correlation store are kept and refreshed by the initial lists.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        halt = threading.Event()
        self._halt = halt
        if any(queue.shutting_down for queue in self.queues.values()):
            self.queues = self._new_queues()

        threads: list[threading.Thread] = []
        for kind in KINDS:
            for index in range(self.workers_per_kind):
                threads.append(
                    threading.Thread(
                        target=self._run_worker,
                        args=(kind,),
                        name=f"{kind}-worker-{index}",
                        daemon=True,
                    )
                )
        for kind in KINDS:
            threads.append(
                threading.Thread(
                    target=self._watch_kind, args=(kind, halt), name=f"{kind}-watch", daemon=True
                )
            )
        threads.append(
            threading.Thread(target=self._resync_loop, args=(halt,), name="resync", daemon=True)
        )
        for thread in threads:
            thread.start()
        self.logger.info(
            "Readiness controller started (namespace=%s, gate=%s, workers per kind=%d)",
            self.namespace or "<all>",
            self.readiness_gate,
            self.workers_per_kind,
        )

        while not halt.is_set() and not self._external_stop.is_set():
            if stop.wait(timeout=1.0):
                break

        self.request_stop()
        for queue in self.queues.values():
            queue.shutdown()
        deadline = time.monotonic() + THREAD_JOIN_TIMEOUT_SECONDS
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                self.logger.warning("Thread %s did not stop in time", thread.name)
        for event in self.ready_events.values():
            event.clear()
        self._halt = None
        self.logger.info("Readiness controller stopped")


def build_controller(
    config: ControllerConfig, clients: KubeClients, cloud: CloudProvider
) -> ReadinessController:
    """Construct a :class:`ReadinessController` from a loaded :class:`ControllerConfig`."""
    return ReadinessController(
        core_api=clients.core,
        networking_api=clients.networking,
        cloud=cloud,
        namespace=config.namespace,
        readiness_gate=config.readiness_gate,
        max_retries=config.max_retries,
        retry_base_delay_seconds=config.retry_base_delay_ms / 1000.0,
        retry_max_delay_seconds=float(config.retry_max_delay_seconds),
        workers_per_kind=config.workers_per_kind,
        resync_period_seconds=float(config.resync_period_seconds),
        ingress_recheck_seconds=float(config.ingress_recheck_seconds),
        kube_timeout_seconds=config.kube_timeout_seconds,
        prune_deleted_pod_endpoints=config.prune_deleted_pod_endpoints,
    )
