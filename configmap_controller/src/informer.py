from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from configmap_controller.src.events import EventType, ResourceEvent
from configmap_controller.src.kube import NamespacedName
from configmap_controller.src.metrics import METRICS

WATCH_TIMEOUT_SECONDS = 300


class ConfigMapInformer:
    """List-then-watch ConfigMaps and emit typed events with the previous state.

    The last observed version of every ConfigMap is kept in ``_store`` so
    ``MODIFIED`` notifications can be delivered as ``UPDATE(old, new)``
    pairs. The store is only touched from the thread running
    :meth:`run_forever`.

    Watch handling:

    1. The initial list seeds the store (one ``CREATE`` per object) and sets
       ``synced``. Failures are retried with jittered exponential backoff.
    2. The watch resumes from the list's ``resourceVersion``.
    3. ``410 Gone`` triggers a re-list; differences against the store are
       emitted as ``CREATE``/``UPDATE``/``DELETE`` events.
    4. ``401``/``403`` stop the informer: RBAC is misconfigured and retrying
       would not help.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        on_event: Callable[[ResourceEvent], None],
        namespace: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.on_event = on_event
        self.namespace = namespace or None
        self.logger = logger or logging.getLogger(__name__)
        self.synced = threading.Event()
        self._store: dict[NamespacedName, Any] = {}
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _list_func(self) -> Callable[..., Any]:
        if self.namespace:
            return self.core_api.list_namespaced_config_map
        return self.core_api.list_config_map_for_all_namespaces

    def _list_kwargs(self) -> dict[str, Any]:
        return {"namespace": self.namespace} if self.namespace else {}

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _emit(self, event: ResourceEvent) -> None:
        try:
            self.on_event(event)
        except Exception:
            self.logger.exception("ConfigMap event handler failed for %s event", event.type.value)

    def _replace(self, config_maps: Any) -> str | None:
        """Replace the store with a fresh listing, emitting the differences.

        Returns the listing's ``resourceVersion``.
        """
        fresh: dict[NamespacedName, Any] = {}
        for config_map in getattr(config_maps, "items", None) or []:
            key = NamespacedName.of(config_map)
            if key is not None:
                fresh[key] = config_map

        previous = self._store
        self._store = fresh
        for key, config_map in fresh.items():
            old = previous.get(key)
            if old is None:
                self._emit(ResourceEvent(EventType.CREATE, config_map))
            else:
                self._emit(ResourceEvent(EventType.UPDATE, config_map, old=old))
        for key, config_map in previous.items():
            if key not in fresh:
                self._emit(ResourceEvent(EventType.DELETE, config_map))

        return getattr(getattr(config_maps, "metadata", None), "resource_version", None)

    def handle_watch_event(self, event_type: str, config_map: Any) -> None:
        """Translate one raw watch event into a typed event and update the store."""
        key = NamespacedName.of(config_map)
        if key is None:
            return

        if event_type == "DELETED":
            self._store.pop(key, None)
            self._emit(ResourceEvent(EventType.DELETE, config_map))
            return

        if event_type not in {"ADDED", "MODIFIED"}:
            return

        old = self._store.get(key)
        self._store[key] = config_map
        if old is None:
            self._emit(ResourceEvent(EventType.CREATE, config_map))
        else:
            self._emit(ResourceEvent(EventType.UPDATE, config_map, old=old))

    def _initial_list(self, stop: threading.Event) -> str | None:
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self._list_func()(**self._list_kwargs())
                resource_version = self._replace(initial)
                self.synced.set()
                self.logger.info(
                    "ConfigMap cache synced (%d objects), watching from resourceVersion %s",
                    len(self._store),
                    resource_version,
                )
                return resource_version
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    raise
                self.logger.exception("Initial ConfigMap list failed")
                METRICS.watch_errors_total.inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return None

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        try:
            resource_version = self._initial_list(stop)
        except ApiException:
            self.synced.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_func(),
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **self._list_kwargs(),
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and metadata.resource_version:
                        resource_version = metadata.resource_version
                    self.handle_watch_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        fresh = self._list_func()(**self._list_kwargs())
                        resource_version = self._replace(fresh)
                    except ApiException:
                        self.logger.exception("Failed to re-list ConfigMaps after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self.synced.clear()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()
