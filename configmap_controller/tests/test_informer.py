from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

from kubernetes.client import ApiException

from configmap_controller.src.events import EventType, ResourceEvent
from configmap_controller.src.informer import ConfigMapInformer
from configmap_controller.tests.fakes import make_config_map


def _listing(*config_maps: Any, resource_version: str = "100") -> SimpleNamespace:
    return SimpleNamespace(
        items=list(config_maps),
        metadata=SimpleNamespace(resource_version=resource_version),
    )


def _make_informer(core_api: Any = None, namespace: str | None = None) -> tuple[ConfigMapInformer, list[ResourceEvent]]:
    events: list[ResourceEvent] = []
    informer = ConfigMapInformer(core_api=core_api or MagicMock(), on_event=events.append, namespace=namespace)
    return informer, events


def test_modified_event_carries_previous_state() -> None:
    informer, events = _make_informer()
    old = make_config_map(data={"k": "v1"}, resource_version="1")
    new = make_config_map(data={"k": "v2"}, resource_version="2")

    informer.handle_watch_event("ADDED", old)
    informer.handle_watch_event("MODIFIED", new)

    assert [e.type for e in events] == [EventType.CREATE, EventType.UPDATE]
    assert events[1].old is old
    assert events[1].obj is new


def test_modified_for_unknown_key_is_create() -> None:
    informer, events = _make_informer()

    informer.handle_watch_event("MODIFIED", make_config_map())

    assert [e.type for e in events] == [EventType.CREATE]


def test_deleted_event_drops_object_from_store() -> None:
    informer, events = _make_informer()
    cm = make_config_map()
    informer.handle_watch_event("ADDED", cm)

    informer.handle_watch_event("DELETED", cm)
    informer.handle_watch_event("MODIFIED", make_config_map(data={"k": "new"}))

    assert [e.type for e in events] == [EventType.CREATE, EventType.DELETE, EventType.CREATE]


def test_bookmark_and_incomplete_objects_are_ignored() -> None:
    informer, events = _make_informer()

    informer.handle_watch_event("BOOKMARK", make_config_map())
    informer.handle_watch_event("ADDED", SimpleNamespace(metadata=SimpleNamespace(name="x", namespace=None)))

    assert events == []


def test_relist_emits_differences() -> None:
    informer, events = _make_informer()
    kept = make_config_map(name="kept", data={"k": "v1"})
    gone = make_config_map(name="gone")
    informer._replace(_listing(kept, gone))
    events.clear()

    changed = make_config_map(name="kept", data={"k": "v2"})
    added = make_config_map(name="added")
    informer._replace(_listing(changed, added))

    by_type = {(e.type, e.obj.metadata.name) for e in events}
    assert by_type == {
        (EventType.UPDATE, "kept"),
        (EventType.CREATE, "added"),
        (EventType.DELETE, "gone"),
    }
    update = next(e for e in events if e.type is EventType.UPDATE)
    assert update.old is kept


def test_handler_errors_do_not_break_the_informer() -> None:
    handler = MagicMock(side_effect=[RuntimeError("boom"), None])
    informer = ConfigMapInformer(core_api=MagicMock(), on_event=handler)

    informer.handle_watch_event("ADDED", make_config_map(name="a"))
    informer.handle_watch_event("ADDED", make_config_map(name="b"))

    assert handler.call_count == 2


def test_uses_cluster_wide_list_without_namespace() -> None:
    core_api = MagicMock()
    informer, _ = _make_informer(core_api)

    assert informer._list_func() is core_api.list_config_map_for_all_namespaces
    assert informer._list_kwargs() == {}


def test_uses_namespaced_list_with_namespace() -> None:
    core_api = MagicMock()
    informer, _ = _make_informer(core_api, namespace="ns1")

    assert informer._list_func() is core_api.list_namespaced_config_map
    assert informer._list_kwargs() == {"namespace": "ns1"}


def test_run_forever_lists_then_watches_from_resource_version() -> None:
    core_api = MagicMock()
    core_api.list_config_map_for_all_namespaces.return_value = _listing(
        make_config_map(data={"k": "v1"}, resource_version="5"), resource_version="5"
    )
    informer, events = _make_informer(core_api)
    stop = threading.Event()
    stream_kwargs: dict[str, Any] = {}

    def fake_stream(func: Any, **kwargs: Any) -> Any:
        stream_kwargs.update(kwargs)
        assert informer.synced.is_set()
        yield {"type": "MODIFIED", "object": make_config_map(data={"k": "v2"}, resource_version="6")}
        stop.set()

    with patch("configmap_controller.src.informer.watch.Watch") as mock_watch_cls:
        mock_watch_cls.return_value.stream.side_effect = fake_stream
        informer.run_forever(stop_event=stop)

    assert stream_kwargs["resource_version"] == "5"
    assert [e.type for e in events] == [EventType.CREATE, EventType.UPDATE]
    assert events[1].old.data == {"k": "v1"}
    assert not informer.synced.is_set()


def test_run_forever_stops_on_forbidden_initial_list() -> None:
    core_api = MagicMock()
    core_api.list_config_map_for_all_namespaces.side_effect = ApiException(status=403, reason="Forbidden")
    informer, events = _make_informer(core_api)

    with patch("configmap_controller.src.informer.watch.Watch") as mock_watch_cls:
        informer.run_forever(stop_event=threading.Event())

    mock_watch_cls.assert_not_called()
    assert events == []
    assert not informer.synced.is_set()


def test_run_forever_relists_after_gone() -> None:
    core_api = MagicMock()
    core_api.list_config_map_for_all_namespaces.side_effect = [
        _listing(make_config_map(data={"k": "v1"}), resource_version="5"),
        _listing(make_config_map(data={"k": "v2"}), resource_version="9"),
    ]
    informer, events = _make_informer(core_api)
    stop = threading.Event()
    seen_versions: list[str | None] = []

    def fake_stream(func: Any, **kwargs: Any) -> Any:
        seen_versions.append(kwargs["resource_version"])
        if len(seen_versions) == 1:
            raise ApiException(status=410, reason="Gone")
        stop.set()
        return iter(())

    with patch("configmap_controller.src.informer.watch.Watch") as mock_watch_cls:
        mock_watch_cls.return_value.stream.side_effect = fake_stream
        informer.run_forever(stop_event=stop)

    assert seen_versions == ["5", "9"]
    assert [e.type for e in events] == [EventType.CREATE, EventType.UPDATE]
