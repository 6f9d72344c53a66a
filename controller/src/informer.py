from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from controller.src.meta import DeletedFinalStateUnknown, meta_namespace_key
from controller.src.metrics import METRICS


class NotFoundError(LookupError):
    """Raised by :meth:`Lister.get` when the object is not in the cache."""


class Store:
    """Thread-safe object cache keyed by ``namespace/name``."""

    def __init__(self, key_func: Callable[[Any], str] = meta_namespace_key) -> None:
        self.key_func = key_func
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def add(self, obj: Any) -> Any | None:
        """Insert or overwrite *obj*, returning the previous object for its key."""
        key = self.key_func(obj)
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    def delete(self, obj: Any) -> Any | None:
        key = self.key_func(obj)
        with self._lock:
            return self._items.pop(key, None)

    def get_by_key(self, key: str) -> Any | None:
        with self._lock:
            return self._items.get(key)

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def list_keys(self) -> list[str]:
        with self._lock:
            return list(self._items.keys())

    def replace(self, items: dict[str, Any]) -> dict[str, Any]:
        """Swap in a full snapshot and return the one it replaced."""
        with self._lock:
            previous = self._items
            self._items = dict(items)
        return previous


class Lister:
    """Read-only accessor over an informer cache."""

    def __init__(self, store: Store, resource: str) -> None:
        self._store = store
        self.resource = resource

    def get(self, namespace: str, name: str) -> Any:
        key = f"{namespace}/{name}" if namespace else name
        obj = self._store.get_by_key(key)
        if obj is None:
            raise NotFoundError(f'{self.resource} "{key}" not found')
        return obj

    def list(self, namespace: str | None = None) -> list[Any]:
        items = self._store.list()
        if namespace is None:
            return items
        return [
            obj
            for obj in items
            if getattr(getattr(obj, "metadata", None), "namespace", None) == namespace
        ]


@dataclass(frozen=True)
class ResourceEventHandler:
    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


def _list_items(result: Any) -> list[Any]:
    if isinstance(result, dict):
        return list(result.get("items") or [])
    return list(getattr(result, "items", None) or [])


def _list_resource_version(result: Any) -> str | None:
    if isinstance(result, dict):
        return (result.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(result, "metadata", None), "resource_version", None)


class Informer:
    """List-then-watch cache for one resource type, fanning changes out to handlers.

    ``list_func`` is an unbound-looking API method such as
    ``AppsV1Api.list_namespaced_deployment`` and ``list_kwargs`` its
    arguments; the same callable drives both the list and the watch stream
    (``kubernetes.watch`` needs the real API method to find the return type).
    ``transform`` turns raw items, e.g. custom object dicts, into the typed
    objects kept in the cache.

    Each watch window lasts ``resync_period_seconds``.  When a window closes
    cleanly every cached object is redelivered as ``on_update(obj, obj)`` so
    handlers get a periodic level-triggered nudge.  After ``410 Gone`` the
    informer re-lists; objects that disappeared in the meantime are delivered
    to ``on_delete`` as :class:`DeletedFinalStateUnknown` tombstones.
    """

    def __init__(
        self,
        name: str,
        list_func: Callable[..., Any],
        list_kwargs: dict[str, Any] | None = None,
        transform: Callable[[Any], Any] | None = None,
        resync_period_seconds: int = 30,
        logger: logging.Logger | None = None,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ) -> None:
        if resync_period_seconds < 1:
            raise ValueError("resync_period_seconds must be >= 1")
        self.name = name
        self.list_func = list_func
        self.list_kwargs = dict(list_kwargs or {})
        self.transform = transform
        self.resync_period_seconds = resync_period_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.watch_factory = watch_factory

        self.store = Store()
        self._handlers: list[ResourceEventHandler] = []
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def lister(self) -> Lister:
        return Lister(self.store, resource=self.name)

    def add_event_handler(
        self,
        on_add: Callable[[Any], None] | None = None,
        on_update: Callable[[Any, Any], None] | None = None,
        on_delete: Callable[[Any], None] | None = None,
    ) -> None:
        self._handlers.append(
            ResourceEventHandler(on_add=on_add, on_update=on_update, on_delete=on_delete)
        )

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _convert(self, raw: Any) -> Any:
        return self.transform(raw) if self.transform is not None else raw

    def _dispatch(self, kind: str, *args: Any) -> None:
        for handler in self._handlers:
            callback = getattr(handler, f"on_{kind}")
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                self.logger.exception("%s informer %s handler failed", self.name, kind)

    def _replace(self, raw_items: list[Any]) -> None:
        """Install a fresh listing and notify handlers of the differences."""
        objects = [self._convert(raw) for raw in raw_items]
        snapshot = {self.store.key_func(obj): obj for obj in objects}
        previous = self.store.replace(snapshot)

        for key, obj in snapshot.items():
            old = previous.get(key)
            if old is None:
                self._dispatch("add", obj)
            else:
                self._dispatch("update", old, obj)

        for key, old in previous.items():
            if key not in snapshot:
                self._dispatch("delete", DeletedFinalStateUnknown(key=key, obj=old))

    def _list(self) -> str | None:
        result = self.list_func(**self.list_kwargs)
        self._replace(_list_items(result))
        return _list_resource_version(result)

    def _resync(self) -> None:
        for obj in self.store.list():
            self._dispatch("update", obj, obj)

    def handle_watch_event(self, event_type: str, raw_object: Any) -> str | None:
        """Apply one watch event to the cache and notify handlers.

        Returns the object's ``resourceVersion`` so the caller can resume the
        watch from it.
        """
        obj = self._convert(raw_object)
        resource_version = getattr(getattr(obj, "metadata", None), "resource_version", None)

        if event_type in {"ADDED", "MODIFIED"}:
            old = self.store.add(obj)
            if old is None:
                self._dispatch("add", obj)
            else:
                self._dispatch("update", old, obj)
        elif event_type == "DELETED":
            self.store.delete(obj)
            self._dispatch("delete", obj)

        return resource_version

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, mark synced, then watch until stopped.

        1. Retries the initial list with jittered exponential backoff
           (capped at 30 s) so API startup hiccups do not crash the process.
        2. Opens a watch from the list's ``resourceVersion`` with a timeout
           of one resync period, resyncing handlers when it closes cleanly.
        3. On ``410 Gone`` re-lists and resumes from the new version.
        4. On other errors backs off with jitter and reconnects.

        ``401`` / ``403`` are logged as RBAC problems but retried like any
        other error, since permissions can be fixed without a restart.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self._synced.set()
                self.logger.info(
                    "%s informer synced %d object(s) at resourceVersion %s",
                    self.name,
                    len(self.store.list_keys()),
                    resource_version,
                )
                break
            except ApiException as exc:
                self._log_api_error(exc, "initial list")
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = self.watch_factory()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(informer=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_func,
                    resource_version=resource_version,
                    timeout_seconds=self.resync_period_seconds,
                    **self.list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    raw_object = event.get("object")
                    if raw_object is None:
                        continue
                    latest = self.handle_watch_event(str(event.get("type", "")), raw_object)
                    if latest:
                        resource_version = latest

                backoff_seconds = 1
                if not self._should_stop(stop):
                    self._resync()
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", self.name
                    )
                    try:
                        resource_version = self._list()
                    except ApiException as relist_exc:
                        self._log_api_error(relist_exc, "re-list after 410")
                        resource_version = None
                    except Exception:
                        self.logger.exception("Unexpected error re-listing %s after 410", self.name)
                        METRICS.watch_errors_total.labels(informer=self.name).inc()
                        resource_version = None
                    continue

                self._log_api_error(exc, "watch")
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.logger.info("%s informer stopped", self.name)

    def _log_api_error(self, exc: ApiException, operation: str) -> None:
        METRICS.watch_errors_total.labels(informer=self.name).inc()
        if exc.status in {401, 403}:
            self.logger.error(
                "Kubernetes API access denied during %s %s (status=%s). "
                "Check controller RBAC and service account permissions.",
                self.name,
                operation,
                exc.status,
            )
            return
        self.logger.exception("Kubernetes API error during %s %s", self.name, operation)


def wait_for_cache_sync(
    stop_event: threading.Event,
    *has_synced: Callable[[], bool],
    timeout: float | None = None,
    poll_interval: float = 0.1,
) -> bool:
    """Block until every ``has_synced`` callable is true.

    Returns ``False`` if *stop_event* is set first or *timeout* seconds pass.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if all(synced() for synced in has_synced):
            return True
        if stop_event.is_set():
            return False
        if deadline is not None and time.monotonic() >= deadline:
            return False
        stop_event.wait(timeout=poll_interval)
