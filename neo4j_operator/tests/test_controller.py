from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

from kubernetes.client import ApiException

from neo4j_operator.src.controller import ShardedDatabaseController, WorkQueue, resource_key
from neo4j_operator.src.sharded_database import ReconcileResult


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeReconciler:
    def __init__(self, result: ReconcileResult | None = None, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, str]] = []
        self.result = result or ReconcileResult(phase="Ready", requeue_after=300)
        self.error = error
        self.called = threading.Event()

    def reconcile(
        self, namespace: str, name: str, cancel_event: threading.Event | None = None
    ) -> ReconcileResult:
        self.calls.append((namespace, name))
        self.called.set()
        if self.error is not None:
            raise self.error
        return self.result


def make_item(name: str = "products", generation: int = 1, resource_version: str = "1") -> dict[str, Any]:
    return {
        "metadata": {
            "name": name,
            "namespace": "neo4j",
            "generation": generation,
            "resourceVersion": resource_version,
        }
    }


def _fake_custom_api(
    resource_versions: list[str] | None = None,
    item_sets: list[list[dict[str, Any]]] | None = None,
) -> SimpleNamespace:
    versions = list(resource_versions or ["100"])
    items = list(item_sets or [[]])

    def fake_list(**kwargs: Any) -> dict[str, Any]:
        version = versions.pop(0) if len(versions) > 1 else versions[0]
        listed = items.pop(0) if len(items) > 1 else items[0]
        return {"metadata": {"resourceVersion": version}, "items": listed}

    return SimpleNamespace(list_namespaced_custom_object=fake_list)


def _make_controller(
    custom_api: Any = None,
    reconciler: FakeReconciler | None = None,
    queue: WorkQueue | None = None,
) -> ShardedDatabaseController:
    return ShardedDatabaseController(
        custom_api=custom_api or _fake_custom_api(),
        reconciler=reconciler or FakeReconciler(),
        namespace="neo4j",
        max_workers=2,
        queue=queue,
    )


# ---------------------------------------------------------------------------
# WorkQueue
# ---------------------------------------------------------------------------


def test_queue_returns_due_keys_in_due_order() -> None:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    queue.add("neo4j/b", delay_seconds=5)
    queue.add("neo4j/a")

    assert queue.get(timeout=0) == "neo4j/a"
    assert queue.get(timeout=0) is None

    clock.advance(5)
    assert queue.get(timeout=0) == "neo4j/b"


def test_queue_duplicate_add_keeps_sooner_due_time() -> None:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    queue.add("neo4j/a", delay_seconds=30)
    queue.add("neo4j/a", delay_seconds=1)

    assert len(queue) == 1
    clock.advance(1)
    assert queue.get(timeout=0) == "neo4j/a"


def test_queue_in_flight_key_is_not_handed_out_twice() -> None:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    queue.add("neo4j/a")
    assert queue.get(timeout=0) == "neo4j/a"

    queue.add("neo4j/a")

    assert queue.in_flight("neo4j/a") is True
    assert queue.get(timeout=0) is None

    queue.done("neo4j/a")
    assert queue.get(timeout=0) == "neo4j/a"


def test_queue_done_schedules_requeue() -> None:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    queue.add("neo4j/a")
    queue.get(timeout=0)

    queue.done("neo4j/a", requeue_after=30)

    assert queue.get(timeout=0) is None
    clock.advance(30)
    assert queue.get(timeout=0) == "neo4j/a"


def test_queue_forget_and_shutdown() -> None:
    queue = WorkQueue(clock=FakeClock())
    queue.add("neo4j/a")
    queue.forget("neo4j/a")
    assert len(queue) == 0

    queue.add("neo4j/b")
    queue.shutdown()
    queue.add("neo4j/c")

    assert len(queue) == 0
    assert queue.get(timeout=0) is None

    queue.reopen()
    queue.add("neo4j/d")
    assert queue.get(timeout=0) == "neo4j/d"


# ---------------------------------------------------------------------------
# Event handling
# ---------------------------------------------------------------------------


def test_resource_key_requires_namespace_and_name() -> None:
    assert resource_key(make_item()) == "neo4j/products"
    assert resource_key({"metadata": {"name": "x"}}) is None


def test_added_event_queues_resource() -> None:
    controller = _make_controller(queue=WorkQueue(clock=FakeClock()))

    assert controller.handle_event("ADDED", make_item()) is True
    assert controller.queue.get(timeout=0) == "neo4j/products"


def test_status_only_modification_is_ignored() -> None:
    controller = _make_controller(queue=WorkQueue(clock=FakeClock()))
    controller.handle_event("ADDED", make_item(generation=1))
    controller.queue.get(timeout=0)
    controller.queue.done("neo4j/products")
    controller.queue.forget("neo4j/products")

    queued = controller.handle_event("MODIFIED", make_item(generation=1, resource_version="2"))

    assert queued is False
    assert len(controller.queue) == 0


def test_spec_change_is_queued() -> None:
    controller = _make_controller(queue=WorkQueue(clock=FakeClock()))
    controller.handle_event("ADDED", make_item(generation=1))

    assert controller.handle_event("MODIFIED", make_item(generation=2)) is True


def test_deleted_event_forgets_resource() -> None:
    controller = _make_controller(queue=WorkQueue(clock=FakeClock()))
    controller.handle_event("ADDED", make_item())

    assert controller.handle_event("DELETED", make_item()) is False
    assert len(controller.queue) == 0


def test_process_requeues_with_result_delay() -> None:
    clock = FakeClock()
    reconciler = FakeReconciler(ReconcileResult(phase="Failed", requeue_after=30, error="x"))
    controller = _make_controller(reconciler=reconciler, queue=WorkQueue(clock=clock))
    controller.queue.add("neo4j/products")
    key = controller.queue.get(timeout=0)
    controller._slots.acquire()

    controller._process(key)

    assert reconciler.calls == [("neo4j", "products")]
    clock.advance(30)
    assert controller.queue.get(timeout=0) == "neo4j/products"


def test_process_survives_crashing_reconciler() -> None:
    clock = FakeClock()
    controller = _make_controller(
        reconciler=FakeReconciler(error=RuntimeError("boom")), queue=WorkQueue(clock=clock)
    )
    controller.queue.add("neo4j/products")
    key = controller.queue.get(timeout=0)
    controller._slots.acquire()

    controller._process(key)

    assert controller.queue.in_flight("neo4j/products") is False
    clock.advance(controller.failure_requeue_seconds)
    assert controller.queue.get(timeout=0) == "neo4j/products"


# ---------------------------------------------------------------------------
# run_forever
# ---------------------------------------------------------------------------


def test_run_forever_reconciles_listed_resources() -> None:
    reconciler = FakeReconciler()
    controller = _make_controller(
        custom_api=_fake_custom_api(item_sets=[[make_item()]]), reconciler=reconciler
    )
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        reconciler.called.wait(timeout=5)
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("neo4j_operator.src.controller.watch.Watch", return_value=mock_watcher):
        controller.run_forever(shutdown_event=shutdown_event)

    assert ("neo4j", "products") in reconciler.calls
    assert not controller.ready.is_set()
    assert mock_watcher.stop.call_count >= 1


def test_run_forever_relists_on_410() -> None:
    custom_api = _fake_custom_api(resource_versions=["100", "200"], item_sets=[[], []])
    controller = _make_controller(custom_api=custom_api)
    shutdown_event = threading.Event()
    resource_versions_seen: list[Any] = []
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        resource_versions_seen.append(kwargs.get("resource_version"))
        if call_count == 1:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("neo4j_operator.src.controller.watch.Watch", return_value=mock_watcher):
        controller.run_forever(shutdown_event=shutdown_event)

    assert resource_versions_seen == ["100", "200"]


def test_run_forever_tracks_resource_version_from_events() -> None:
    controller = _make_controller()
    shutdown_event = threading.Event()
    resource_versions_seen: list[Any] = []
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        resource_versions_seen.append(kwargs.get("resource_version"))
        if call_count == 1:
            return iter([{"type": "ADDED", "object": make_item(resource_version="150")}])
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("neo4j_operator.src.controller.watch.Watch", return_value=mock_watcher):
        controller.run_forever(shutdown_event=shutdown_event)

    assert resource_versions_seen == ["100", "150"]


def test_run_forever_exits_fast_on_startup_rbac_denied() -> None:
    def fake_list(**kwargs: Any) -> dict[str, Any]:
        raise ApiException(status=403, reason="forbidden")

    controller = _make_controller(custom_api=SimpleNamespace(list_namespaced_custom_object=fake_list))
    watch_factory = MagicMock()

    with patch("neo4j_operator.src.controller.watch.Watch", watch_factory):
        controller.run_forever(shutdown_event=threading.Event())

    watch_factory.assert_not_called()
    assert not controller.ready.is_set()


def test_run_forever_exits_fast_on_watch_rbac_denied() -> None:
    controller = _make_controller()
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=401, reason="unauthorized")

    with patch("neo4j_operator.src.controller.watch.Watch", return_value=mock_watcher):
        controller.run_forever(shutdown_event=threading.Event())

    assert mock_watcher.stream.call_count == 1
    assert not controller.ready.is_set()


def test_run_forever_backs_off_on_api_error() -> None:
    controller = _make_controller()
    shutdown_event = threading.Event()
    waits: list[float] = []
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count <= 3:
            raise ApiException(status=500, reason="boom")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream
    original_wait = threading.Event.wait

    def fake_wait(self: threading.Event, timeout: float | None = None) -> bool:
        if self is shutdown_event:
            waits.append(timeout or 0.0)
            return False
        return original_wait(self, timeout)

    with (
        patch("neo4j_operator.src.controller.watch.Watch", return_value=mock_watcher),
        patch.object(threading.Event, "wait", fake_wait),
        patch("neo4j_operator.src.controller.random.random", return_value=0.5),
    ):
        controller.run_forever(shutdown_event=shutdown_event)

    assert waits == [1.0, 2.0, 4.0]
