from __future__ import annotations

import threading
import time
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from readiness.src.cloud import EndpointGroup, LoadBalancer
from readiness.src.config import ControllerConfig
from readiness.src.controller import (
    ENDPOINTS,
    INGRESS,
    KINDS,
    POD,
    SERVICE,
    ReadinessController,
    build_controller,
)
from readiness.src.errors import NotReadyError, TransientAPIError, UnhealthyError
from readiness.src.kube import KubeClients
from readiness.src.pod_gates import CONDITION_FALSE, CONDITION_TRUE, CONDITION_UNKNOWN
from readiness.src.store import Endpoint, ObjectRef, PodRef
from readiness.tests.fakes import (
    HOSTNAME,
    LB_ARN,
    TG_ARN,
    FakeCloud,
    FakeCoreApi,
    FakeNetworkingApi,
    make_address,
    make_endpoints,
    make_ingress,
    make_pod,
    make_service,
)

WEB = ObjectRef("shop", "web")
PUBLIC = ObjectRef("shop", "public")
POD_A = PodRef("shop", "web-0")
POD_B = PodRef("shop", "web-1")


def _make_controller(
    core_api: Any = None,
    networking_api: Any = None,
    cloud: Any = None,
    **kwargs: Any,
) -> ReadinessController:
    return ReadinessController(
        core_api=core_api or FakeCoreApi(),
        networking_api=networking_api or FakeNetworkingApi(),
        cloud=cloud or FakeCloud(),
        namespace=kwargs.pop("namespace", "shop"),
        kube_timeout_seconds=None,
        **kwargs,
    )


def _drain(controller: ReadinessController, kind: str) -> list[ObjectRef]:
    queue = controller.queues[kind]
    keys: list[ObjectRef] = []
    while True:
        key, _ = queue.get(timeout=0)
        if key is None:
            return keys
        keys.append(key)
        queue.done(key)


def _run_until_idle(controller: ReadinessController, limit: int = 100) -> None:
    for _ in range(limit):
        pending = [kind for kind in KINDS if len(controller.queues[kind])]
        if not pending:
            return
        for kind in pending:
            controller.process_next(kind, timeout=0)
    raise AssertionError("queues did not settle")


# ---------------------------------------------------------------------------
# Retry scheduling
# ---------------------------------------------------------------------------


def test_handle_result_success_forgets_key() -> None:
    controller = _make_controller()
    queue = controller.queues[POD]
    queue.rate_limiter.when(POD_A)

    controller.handle_result(POD, POD_A, None)

    assert queue.num_requeues(POD_A) == 0
    assert queue.pending_delayed() == 0


def test_handle_result_success_with_recheck_schedules_delayed_add() -> None:
    controller = _make_controller()

    controller.handle_result(INGRESS, PUBLIC, None, requeue_after=10)

    assert controller.queues[INGRESS].pending_delayed() == 1
    assert len(controller.queues[INGRESS]) == 0


def test_handle_result_failure_requeues_with_backoff() -> None:
    controller = _make_controller()

    with patch("readiness.src.controller.METRICS") as metrics:
        controller.handle_result(POD, POD_A, UnhealthyError("not yet"))

    assert controller.queues[POD].num_requeues(POD_A) == 1
    assert controller.queues[POD].pending_delayed() == 1
    metrics.retries_total.labels.assert_called_once_with(kind=POD)
    metrics.reconcile_total.labels.assert_called_once_with(kind=POD, result="unhealthy")


def test_handle_result_drops_key_after_retry_ceiling() -> None:
    controller = _make_controller(max_retries=3)
    queue = controller.queues[SERVICE]

    for _ in range(3):
        controller.handle_result(SERVICE, WEB, NotReadyError("not correlated"))
    assert queue.num_requeues(WEB) == 3

    with patch("readiness.src.controller.METRICS") as metrics:
        controller.handle_result(SERVICE, WEB, NotReadyError("not correlated"))

    assert queue.num_requeues(WEB) == 0
    assert queue.pending_delayed() == 1
    metrics.dropped_total.labels.assert_called_once_with(kind=SERVICE)


def test_dropped_key_is_rearmed_by_the_next_event() -> None:
    controller = _make_controller(max_retries=0)
    controller.handle_result(POD, POD_A, TransientAPIError("boom"))

    controller.notify_pod_changed(POD_A)

    assert _drain(controller, POD) == [POD_A]


def test_process_next_converts_unexpected_exceptions_into_retries() -> None:
    controller = _make_controller()
    controller.reconcile_pod = MagicMock(side_effect=RuntimeError("bug"))  # type: ignore[method-assign]
    controller._reconcilers[POD] = controller.reconcile_pod
    controller.notify_pod_changed(POD_A)

    assert controller.process_next(POD, timeout=0)

    assert controller.queues[POD].num_requeues(POD_A) == 1
    assert not controller.queues[POD].is_processing(POD_A)


def test_process_next_returns_false_after_shutdown() -> None:
    controller = _make_controller()
    controller.queues[POD].shutdown()

    assert not controller.process_next(POD, timeout=0)


def test_notify_entry_points_enqueue_per_kind() -> None:
    controller = _make_controller()

    controller.notify_pod_changed(POD_A)
    controller.notify_pod_changed(POD_A)
    controller.notify_service_changed(WEB)
    controller.notify_endpoints_changed(WEB)
    controller.notify_ingress_changed(PUBLIC)

    assert {kind: len(controller.queues[kind]) for kind in KINDS} == {
        POD: 1,
        SERVICE: 1,
        ENDPOINTS: 1,
        INGRESS: 1,
    }


# ---------------------------------------------------------------------------
# Per-kind reconcilers
# ---------------------------------------------------------------------------


def test_reconcile_service_maps_addresses_to_member_pods() -> None:
    core_api = FakeCoreApi()
    core_api.add_service(make_service("web"))
    core_api.add_endpoints(
        make_endpoints(
            "web",
            addresses=["10.0.0.1"],
            not_ready=[make_address("10.0.0.2", pod_name="web-1")],
            ports=[("http", 8080)],
        )
    )
    controller = _make_controller(core_api=core_api)
    controller.endpoint_index.record_pod_endpoints(POD_A, "10.0.0.1", [8080])
    controller.store.replace_ingress_targets(PUBLIC, HOSTNAME, [EndpointGroup(TG_ARN)], {WEB: []})

    controller.reconcile_service(WEB)

    info = controller.store.get(WEB)
    assert info is not None
    assert info.pods == {POD_A, POD_B}
    assert _drain(controller, POD) == [POD_A, POD_B]


def test_reconcile_service_not_yet_correlated_is_not_ready() -> None:
    core_api = FakeCoreApi()
    core_api.add_service(make_service("web"))
    core_api.add_endpoints(make_endpoints("web", addresses=["10.0.0.1"]))
    controller = _make_controller(core_api=core_api)

    with pytest.raises(NotReadyError):
        controller.reconcile_service(WEB)


def test_reconcile_service_without_endpoints_object_is_not_ready() -> None:
    core_api = FakeCoreApi()
    core_api.add_service(make_service("web"))
    controller = _make_controller(core_api=core_api)

    with pytest.raises(NotReadyError):
        controller.reconcile_service(WEB)


def test_reconcile_deleted_service_drops_entry_and_requeues_members() -> None:
    controller = _make_controller()
    controller.store.replace_ingress_targets(PUBLIC, HOSTNAME, [EndpointGroup(TG_ARN)], {WEB: []})
    controller.store.set_members(WEB, [POD_A])

    controller.reconcile_service(WEB)

    assert controller.store.get(WEB) is None
    assert _drain(controller, POD) == [POD_A]


def test_reconcile_service_requeues_pods_that_left_the_service() -> None:
    core_api = FakeCoreApi()
    core_api.add_service(make_service("web"))
    core_api.add_endpoints(make_endpoints("web", addresses=[]))
    controller = _make_controller(core_api=core_api)
    controller.store.replace_ingress_targets(PUBLIC, HOSTNAME, [EndpointGroup(TG_ARN)], {WEB: []})
    controller.store.set_members(WEB, [POD_A])

    controller.reconcile_service(WEB)

    assert _drain(controller, POD) == [POD_A]


def test_reconcile_endpoints_forwards_to_service_queue() -> None:
    controller = _make_controller()

    controller.reconcile_endpoints(WEB)

    assert _drain(controller, SERVICE) == [WEB]


def test_reconcile_ingress_publishes_and_enqueues_services() -> None:
    core_api = FakeCoreApi()
    core_api.add_service(make_service("web"))
    core_api.add_endpoints(make_endpoints("web", addresses=["10.0.0.1"]))
    networking_api = FakeNetworkingApi()
    networking_api.add_ingress(make_ingress("public"))
    controller = _make_controller(core_api=core_api, networking_api=networking_api)

    recheck = controller.reconcile_ingress(PUBLIC)

    assert recheck == controller.ingress_recheck_seconds
    assert controller.store.services_for_ingress(PUBLIC) == [WEB]
    assert _drain(controller, SERVICE) == [WEB]


def test_repeated_ingress_events_keep_a_single_pending_recheck() -> None:
    core_api = FakeCoreApi()
    core_api.add_service(make_service("web"))
    core_api.add_endpoints(make_endpoints("web", addresses=["10.0.0.1"]))
    networking_api = FakeNetworkingApi()
    networking_api.add_ingress(make_ingress("public"))
    controller = _make_controller(core_api=core_api, networking_api=networking_api)
    queue = controller.queues[INGRESS]

    for _ in range(5):
        controller.notify_ingress_changed(PUBLIC)
        assert controller.process_next(INGRESS, timeout=0)

    assert queue.pending_delayed() == 1
    assert len(queue) == 0


def test_reconcile_deleted_ingress_detaches_and_requeues_pods() -> None:
    controller = _make_controller()
    controller.store.replace_ingress_targets(PUBLIC, HOSTNAME, [EndpointGroup(TG_ARN)], {WEB: []})
    controller.store.set_members(WEB, [POD_A, POD_B])

    assert controller.reconcile_ingress(PUBLIC) is None

    assert len(controller.store) == 0
    assert _drain(controller, POD) == [POD_A, POD_B]


def test_reconcile_ingress_api_error_is_transient() -> None:
    networking_api = FakeNetworkingApi()
    networking_api.read_namespaced_ingress = MagicMock(  # type: ignore[method-assign]
        side_effect=ApiException(status=500, reason="boom")
    )
    controller = _make_controller(networking_api=networking_api)

    with pytest.raises(TransientAPIError):
        controller.reconcile_ingress(PUBLIC)


@pytest.mark.parametrize(("prune", "remaining"), [(False, 1), (True, 0)])
def test_reconcile_deleted_pod_prunes_index_only_when_enabled(prune: bool, remaining: int) -> None:
    controller = _make_controller(prune_deleted_pod_endpoints=prune)
    controller.endpoint_index.record_pod_endpoints(POD_A, "10.0.0.1", [8080])

    controller.reconcile_pod(POD_A)

    assert len(controller.endpoint_index) == remaining


def test_resync_enqueues_known_pods_and_ingresses() -> None:
    controller = _make_controller()
    controller._track(POD, POD_A, deleted=False)
    controller._track(POD, POD_B, deleted=False)
    controller._track(POD, POD_B, deleted=True)
    controller._track(INGRESS, PUBLIC, deleted=False)
    controller._track(SERVICE, WEB, deleted=False)

    controller.resync()

    assert _drain(controller, POD) == [POD_A]
    assert _drain(controller, INGRESS) == [PUBLIC]
    assert _drain(controller, SERVICE) == []


# ---------------------------------------------------------------------------
# End-to-end correlation scenario
# ---------------------------------------------------------------------------


def test_ingress_to_pod_scenario() -> None:
    hostname = "app.example.com"
    core_api = FakeCoreApi()
    core_api.add_pod(make_pod("pod-a", ip="10.0.0.5", ports=(80,), namespace="default"))
    core_api.add_service(make_service("svc", namespace="default", ports=[("http", 80)]))
    core_api.add_endpoints(
        make_endpoints("svc", namespace="default", not_ready=["10.0.0.5"], ports=[("http", 80)])
    )
    networking_api = FakeNetworkingApi()
    networking_api.add_ingress(
        make_ingress("app", namespace="default", hostname=hostname, backends=[("svc", 80)])
    )
    cloud = FakeCloud()
    cloud.load_balancers[hostname] = LoadBalancer(provider_id=LB_ARN, dns_name=hostname)
    controller = _make_controller(
        core_api=core_api, networking_api=networking_api, cloud=cloud, namespace=""
    )
    pod_ref = PodRef("default", "pod-a")
    svc_ref = ObjectRef("default", "svc")

    controller.notify_pod_changed(pod_ref)
    _run_until_idle(controller)
    assert core_api.condition("pod-a", "default").status == CONDITION_UNKNOWN

    controller.notify_ingress_changed(ObjectRef("default", "app"))
    _run_until_idle(controller)
    info = controller.store.get(svc_ref)
    assert info is not None
    assert info.endpoints == {Endpoint("10.0.0.5", 80)}
    assert info.pods == {pod_ref}
    assert core_api.condition("pod-a", "default").status == CONDITION_FALSE

    cloud.healthy.add(("10.0.0.5", 80))
    controller.notify_pod_changed(pod_ref)
    _run_until_idle(controller)
    condition = core_api.condition("pod-a", "default")
    assert condition.status == CONDITION_TRUE
    assert condition.last_transition_time is not None
    assert controller.queues[POD].num_requeues(pod_ref) == 0

    networking_api.ingresses.clear()
    controller.notify_ingress_changed(ObjectRef("default", "app"))
    _run_until_idle(controller)
    assert controller.store.get(svc_ref) is None
    assert core_api.condition("pod-a", "default").status == CONDITION_UNKNOWN


# ---------------------------------------------------------------------------
# Watch loop
# ---------------------------------------------------------------------------


def _listing(resource_version: str, items: list[Any]) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(resource_version=resource_version), items=items)


def _pod_list_api(*listings: SimpleNamespace) -> tuple[SimpleNamespace, list[tuple[Any, ...]]]:
    calls: list[tuple[Any, ...]] = []
    remaining = list(listings)

    def list_namespaced_pod(namespace: str, **kwargs: Any) -> SimpleNamespace:
        calls.append((namespace, kwargs))
        if len(remaining) > 1:
            return remaining.pop(0)
        return remaining[0]

    return SimpleNamespace(list_namespaced_pod=list_namespaced_pod), calls


def test_watch_lists_then_streams_and_tracks_resource_version() -> None:
    core_api, _ = _pod_list_api(_listing("100", [make_pod("web-0")]))
    controller = _make_controller(core_api=core_api)
    halt = threading.Event()
    seen_versions: list[Any] = []
    mock_watcher = MagicMock()

    def patched_stream(fn: Any, *args: Any, **kwargs: Any) -> Any:
        seen_versions.append(kwargs.get("resource_version"))
        if len(seen_versions) == 1:
            pod = make_pod("web-1", resource_version="101")
            return iter([{"type": "ADDED", "object": pod}])
        halt.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("readiness.src.controller.watch.Watch", return_value=mock_watcher):
        controller._watch_kind(POD, halt)

    assert seen_versions == ["100", "101"]
    assert controller.ready_events[POD].is_set()
    assert _drain(controller, POD) == [POD_A, POD_B]
    assert mock_watcher.stop.call_count >= 1
    args, _ = mock_watcher.stream.call_args
    assert args[1] == "shop"


def test_watch_relists_after_410() -> None:
    core_api, calls = _pod_list_api(_listing("100", []), _listing("200", [make_pod("web-0")]))
    controller = _make_controller(core_api=core_api)
    halt = threading.Event()
    seen_versions: list[Any] = []
    mock_watcher = MagicMock()

    def patched_stream(fn: Any, *args: Any, **kwargs: Any) -> Any:
        seen_versions.append(kwargs.get("resource_version"))
        if len(seen_versions) == 1:
            raise ApiException(status=410, reason="Gone")
        halt.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("readiness.src.controller.watch.Watch", return_value=mock_watcher):
        controller._watch_kind(POD, halt)

    assert seen_versions == ["100", "200"]
    assert len(calls) == 2
    assert _drain(controller, POD) == [POD_A]


def test_watch_error_event_with_410_triggers_relist() -> None:
    core_api, calls = _pod_list_api(_listing("100", []), _listing("300", []))
    controller = _make_controller(core_api=core_api)
    halt = threading.Event()
    seen_versions: list[Any] = []
    mock_watcher = MagicMock()

    def patched_stream(fn: Any, *args: Any, **kwargs: Any) -> Any:
        seen_versions.append(kwargs.get("resource_version"))
        if len(seen_versions) == 1:
            return iter([{"type": "ERROR", "object": {"code": 410, "message": "too old"}}])
        halt.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("readiness.src.controller.watch.Watch", return_value=mock_watcher):
        controller._watch_kind(POD, halt)

    assert seen_versions == ["100", "300"]


def test_watch_rbac_denied_stops_controller() -> None:
    def denied(namespace: str, **kwargs: Any) -> None:
        raise ApiException(status=403, reason="Forbidden")

    controller = _make_controller(core_api=SimpleNamespace(list_namespaced_pod=denied))
    halt = threading.Event()
    controller._halt = halt

    controller._watch_kind(POD, halt)

    assert halt.is_set()
    assert not controller.ready_events[POD].is_set()


def test_watch_applies_jittered_exponential_backoff_on_api_errors() -> None:
    core_api, _ = _pod_list_api(_listing("100", []))
    controller = _make_controller(core_api=core_api)
    halt = threading.Event()
    waits: list[float] = []
    calls = 0
    mock_watcher = MagicMock()

    def patched_stream(fn: Any, *args: Any, **kwargs: Any) -> Any:
        nonlocal calls
        calls += 1
        if calls <= 3:
            raise ApiException(status=500, reason="boom")
        halt.set()
        return iter([])

    def fake_wait(timeout: float | None = None) -> bool:
        waits.append(timeout or 0.0)
        return halt.is_set()

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("readiness.src.controller.watch.Watch", return_value=mock_watcher),
        patch("readiness.src.controller.random.random", return_value=0.5),
        patch.object(halt, "wait", side_effect=fake_wait),
    ):
        controller._watch_kind(POD, halt)

    assert waits == [1.0, 2.0, 4.0]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _empty_list_api() -> tuple[SimpleNamespace, SimpleNamespace]:
    empty = _listing("1", [])
    core_api = SimpleNamespace(
        list_namespaced_pod=lambda namespace, **kwargs: empty,
        list_namespaced_service=lambda namespace, **kwargs: empty,
        list_namespaced_endpoints=lambda namespace, **kwargs: empty,
    )
    networking_api = SimpleNamespace(list_namespaced_ingress=lambda namespace, **kwargs: empty)
    return core_api, networking_api


def test_run_forever_stops_on_shutdown_event_and_clears_readiness() -> None:
    core_api, networking_api = _empty_list_api()
    controller = _make_controller(core_api=core_api, networking_api=networking_api)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(fn: Any, *args: Any, **kwargs: Any) -> Any:
        if controller.is_ready():
            shutdown_event.set()
        halt = controller._halt
        if halt is not None:
            halt.wait(timeout=0.05)
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("readiness.src.controller.watch.Watch", return_value=mock_watcher):
        controller.run_forever(shutdown_event=shutdown_event)

    assert all(not ready for ready in controller.readiness_state().values())
    assert all(queue.shutting_down for queue in controller.queues.values())


def test_run_forever_can_restart_after_stop() -> None:
    core_api, networking_api = _empty_list_api()
    controller = _make_controller(core_api=core_api, networking_api=networking_api)
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = lambda *args, **kwargs: iter([])

    for _ in range(2):
        shutdown_event = threading.Event()
        shutdown_event.set()
        with patch("readiness.src.controller.watch.Watch", return_value=mock_watcher):
            controller.run_forever(shutdown_event=shutdown_event)

    assert controller.queues[POD].shutting_down
    controller.queues = controller._new_queues()
    controller.notify_pod_changed(POD_A)
    assert _drain(controller, POD) == [POD_A]


def test_request_stop_interrupts_run_forever_from_another_thread() -> None:
    core_api, networking_api = _empty_list_api()
    controller = _make_controller(core_api=core_api, networking_api=networking_api)
    mock_watcher = MagicMock()

    def patched_stream(fn: Any, *args: Any, **kwargs: Any) -> Any:
        halt = controller._halt
        if halt is not None:
            halt.wait(timeout=0.05)
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("readiness.src.controller.watch.Watch", return_value=mock_watcher):
        runner = threading.Thread(target=controller.run_forever)
        runner.start()
        for _ in range(100):
            if controller.is_ready():
                break
            time.sleep(0.02)
        controller.request_stop()
        runner.join(timeout=10)

    assert not runner.is_alive()


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_build_controller_applies_config() -> None:
    config = ControllerConfig(
        namespace="shop",
        max_retries=4,
        retry_base_delay_ms=20,
        retry_max_delay_seconds=60,
        workers_per_kind=3,
        ingress_recheck_seconds=30,
        prune_deleted_pod_endpoints=True,
    )
    clients = KubeClients(core=FakeCoreApi(), networking=FakeNetworkingApi())  # type: ignore[arg-type]

    controller = build_controller(config, clients, FakeCloud())

    assert controller.namespace == "shop"
    assert controller.max_retries == 4
    assert controller.workers_per_kind == 3
    assert controller.ingress_recheck_seconds == 30.0
    assert controller.prune_deleted_pod_endpoints
    assert controller.queues[POD].rate_limiter.base_seconds == pytest.approx(0.02)
    assert controller.queues[POD].rate_limiter.max_seconds == 60.0


@pytest.mark.parametrize("kwargs", [{"workers_per_kind": 0}, {"max_retries": -1}])
def test_controller_rejects_invalid_settings(kwargs: dict[str, int]) -> None:
    with pytest.raises(ValueError):
        _make_controller(**kwargs)
