from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import (
    ApiException,
    V1Deployment,
    V1DeploymentSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodTemplateSpec,
)

from controller.src.informer import Informer, Lister, NotFoundError, Store, wait_for_cache_sync
from controller.src.meta import DeletedFinalStateUnknown
from controller.src.resources import InferenceJob


def _deployment(name: str, resource_version: str, namespace: str = "default") -> V1Deployment:
    return V1Deployment(
        metadata=V1ObjectMeta(name=name, namespace=namespace, resource_version=resource_version),
        spec=V1DeploymentSpec(
            selector=V1LabelSelector(match_labels={"app": name}),
            template=V1PodTemplateSpec(),
        ),
    )


def _list_result(resource_version: str, *items: Any) -> SimpleNamespace:
    return SimpleNamespace(items=list(items), metadata=SimpleNamespace(resource_version=resource_version))


class FakeLister:
    """Stands in for an API list method; returns (or raises) scripted results in order."""

    def __init__(self, *results: Any) -> None:
        self.results = list(results)
        self.calls: list[dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeWatch:
    def __init__(self, owner: ScriptedWatches) -> None:
        self.owner = owner
        self.stopped = False

    def stream(self, func: Any, **kwargs: Any) -> Iterator[dict[str, Any]]:
        self.owner.calls.append(kwargs)
        if not self.owner.streams:
            self.owner.stop_event.set()
            return iter(())
        step = self.owner.streams.pop(0)
        if isinstance(step, Exception):
            raise step
        return iter(step)

    def stop(self) -> None:
        self.stopped = True


class ScriptedWatches:
    """Watch factory handing out one scripted stream per reconnect.

    Each stream is a list of events or an exception to raise.  Once the
    script runs out the stop event is set so ``Informer.run`` returns.
    """

    def __init__(self, stop_event: threading.Event, *streams: Any) -> None:
        self.stop_event = stop_event
        self.streams = list(streams)
        self.calls: list[dict[str, Any]] = []
        self.watchers: list[FakeWatch] = []

    def __call__(self) -> FakeWatch:
        watcher = FakeWatch(self)
        self.watchers.append(watcher)
        return watcher


class RecordingHandler:
    def __init__(self) -> None:
        self.events: list[tuple[str, ...]] = []
        self.tombstones: list[DeletedFinalStateUnknown] = []

    def on_add(self, obj: Any) -> None:
        self.events.append(("add", obj.metadata.resource_version))

    def on_update(self, old: Any, new: Any) -> None:
        self.events.append(("update", old.metadata.resource_version, new.metadata.resource_version))

    def on_delete(self, obj: Any) -> None:
        if isinstance(obj, DeletedFinalStateUnknown):
            self.tombstones.append(obj)
            self.events.append(("delete", obj.key))
            return
        self.events.append(("delete", obj.metadata.resource_version))


def _informer(list_func: FakeLister, watches: ScriptedWatches, **kwargs: Any) -> tuple[Informer, RecordingHandler]:
    informer = Informer(
        name="deployments",
        list_func=list_func,
        list_kwargs={"namespace": "default"},
        resync_period_seconds=15,
        watch_factory=watches,
        **kwargs,
    )
    handler = RecordingHandler()
    informer.add_event_handler(
        on_add=handler.on_add,
        on_update=handler.on_update,
        on_delete=handler.on_delete,
    )
    return informer, handler


@pytest.fixture
def no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    # jitter factor is 0.5 + random(); this makes every backoff wait ~10 ms.
    monkeypatch.setattr("controller.src.informer.random.random", lambda: -0.49)


class TestStoreAndLister:
    def test_add_returns_previous_object(self) -> None:
        store = Store()
        first = _deployment("web", "1")
        second = _deployment("web", "2")

        assert store.add(first) is None
        assert store.add(second) is first
        assert store.get_by_key("default/web") is second
        assert store.list_keys() == ["default/web"]

    def test_delete(self) -> None:
        store = Store()
        store.add(_deployment("web", "1"))

        store.delete(_deployment("web", "2"))

        assert store.list() == []

    def test_lister_get_and_not_found(self) -> None:
        store = Store()
        web = _deployment("web", "1")
        store.add(web)
        lister = Lister(store, resource="deployments")

        assert lister.get("default", "web") is web
        with pytest.raises(NotFoundError, match='deployments "default/api" not found'):
            lister.get("default", "api")

    def test_lister_filters_by_namespace(self) -> None:
        store = Store()
        store.add(_deployment("web", "1", namespace="a"))
        store.add(_deployment("web", "2", namespace="b"))
        lister = Lister(store, resource="deployments")

        assert len(lister.list()) == 2
        assert [obj.metadata.namespace for obj in lister.list(namespace="b")] == ["b"]


class TestInformerRun:
    def test_lists_watches_and_resyncs(self) -> None:
        stop = threading.Event()
        list_func = FakeLister(_list_result("10", _deployment("a", "1"), _deployment("b", "2")))
        watches = ScriptedWatches(
            stop,
            [
                {"type": "ADDED", "object": _deployment("c", "11")},
                {"type": "MODIFIED", "object": _deployment("a", "12")},
                {"type": "DELETED", "object": _deployment("b", "13")},
            ],
        )
        informer, handler = _informer(list_func, watches)

        informer.run(stop_event=stop)

        assert informer.has_synced()
        assert list_func.calls == [{"namespace": "default"}]
        assert handler.events == [
            ("add", "1"),
            ("add", "2"),
            ("add", "11"),
            ("update", "1", "12"),
            ("delete", "13"),
            ("update", "12", "12"),
            ("update", "11", "11"),
        ]
        assert watches.calls[0] == {
            "resource_version": "10",
            "timeout_seconds": 15,
            "namespace": "default",
        }
        assert watches.calls[1]["resource_version"] == "13"
        assert all(watcher.stopped for watcher in watches.watchers)
        assert sorted(informer.store.list_keys()) == ["default/a", "default/c"]

    def test_expired_resource_version_relists_and_tombstones_vanished_objects(self) -> None:
        stop = threading.Event()
        b = _deployment("b", "2")
        list_func = FakeLister(
            _list_result("10", _deployment("a", "1"), b),
            _list_result("20", _deployment("a", "5")),
        )
        watches = ScriptedWatches(stop, ApiException(status=410, reason="Gone"))
        informer, handler = _informer(list_func, watches)

        informer.run(stop_event=stop)

        assert handler.events == [
            ("add", "1"),
            ("add", "2"),
            ("update", "1", "5"),
            ("delete", "default/b"),
        ]
        assert handler.tombstones[0].obj is b
        assert watches.calls[1]["resource_version"] == "20"

    @pytest.mark.usefixtures("no_backoff")
    def test_initial_list_is_retried(self) -> None:
        stop = threading.Event()
        list_func = FakeLister(
            ApiException(status=500, reason="boom"),
            ApiException(status=403, reason="Forbidden"),
            _list_result("3", _deployment("a", "1")),
        )
        informer, handler = _informer(list_func, ScriptedWatches(stop))

        informer.run(stop_event=stop)

        assert len(list_func.calls) == 3
        assert informer.has_synced()
        assert handler.events == [("add", "1")]

    @pytest.mark.usefixtures("no_backoff")
    def test_watch_errors_back_off_and_reconnect(self) -> None:
        stop = threading.Event()
        list_func = FakeLister(_list_result("3"))
        watches = ScriptedWatches(
            stop,
            ApiException(status=500, reason="boom"),
            RuntimeError("connection reset"),
        )
        informer, _ = _informer(list_func, watches)

        informer.run(stop_event=stop)

        assert len(watches.calls) == 3
        assert all(call["resource_version"] == "3" for call in watches.calls)

    def test_request_stop_interrupts_open_stream(self) -> None:
        stop = threading.Event()
        list_func = FakeLister(_list_result("3"))
        informer_ref: list[Informer] = []

        def events() -> Iterator[dict[str, Any]]:
            yield {"type": "ADDED", "object": _deployment("a", "4")}
            informer_ref[0].request_stop()
            yield {"type": "ADDED", "object": _deployment("b", "5")}

        watches = ScriptedWatches(stop, events())
        informer, handler = _informer(list_func, watches)
        informer_ref.append(informer)

        informer.run(stop_event=stop)

        assert handler.events == [("add", "4")]
        assert len(watches.calls) == 1
        assert watches.watchers[0].stopped
        assert not stop.is_set()

    def test_custom_objects_are_transformed(self) -> None:
        stop = threading.Event()
        raw = {
            "metadata": {"name": "job-1", "namespace": "ml", "resourceVersion": "8"},
            "spec": {"deploymentName": "web", "replicas": 1, "imageToDeploy": "nginx"},
        }
        list_func = FakeLister({"items": [raw], "metadata": {"resourceVersion": "9"}})
        watches = ScriptedWatches(stop)
        informer = Informer(
            name="inferencejobs",
            list_func=list_func,
            transform=InferenceJob.from_dict,
            watch_factory=watches,
        )

        informer.run(stop_event=stop)

        job = informer.lister().get("ml", "job-1")
        assert isinstance(job, InferenceJob)
        assert job.spec.deployment_name == "web"
        assert watches.calls[0]["resource_version"] == "9"


class TestInformerHandlers:
    def test_failing_handler_does_not_block_others(self) -> None:
        informer = Informer(name="deployments", list_func=FakeLister())
        seen: list[str] = []

        def broken(obj: Any) -> None:
            raise RuntimeError("handler bug")

        informer.add_event_handler(on_add=broken)
        informer.add_event_handler(on_add=lambda obj: seen.append(obj.metadata.name))

        resource_version = informer.handle_watch_event("ADDED", _deployment("web", "7"))

        assert resource_version == "7"
        assert seen == ["web"]

    def test_handlers_without_callback_are_skipped(self) -> None:
        informer = Informer(name="deployments", list_func=FakeLister())
        informer.add_event_handler(on_add=lambda obj: None)

        informer.handle_watch_event("DELETED", _deployment("web", "7"))

        assert informer.store.list() == []

    def test_rejects_non_positive_resync(self) -> None:
        with pytest.raises(ValueError, match="resync_period_seconds"):
            Informer(name="deployments", list_func=FakeLister(), resync_period_seconds=0)


class TestWaitForCacheSync:
    def test_returns_true_when_synced(self) -> None:
        assert wait_for_cache_sync(threading.Event(), lambda: True, lambda: True) is True

    def test_returns_false_when_stopped(self) -> None:
        stop = threading.Event()
        stop.set()

        assert wait_for_cache_sync(stop, lambda: False) is False

    def test_returns_false_on_timeout(self) -> None:
        started = time.monotonic()

        assert wait_for_cache_sync(threading.Event(), lambda: False, timeout=0.05, poll_interval=0.01) is False
        assert time.monotonic() - started < 1

    def test_waits_for_late_sync(self) -> None:
        synced = threading.Event()
        timer = threading.Timer(0.05, synced.set)
        timer.start()
        try:
            assert wait_for_cache_sync(
                threading.Event(), synced.is_set, timeout=2, poll_interval=0.01
            ) is True
        finally:
            timer.cancel()
