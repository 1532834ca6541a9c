from __future__ import annotations

import pytest
from kubernetes.client import V1ConfigMap, V1ObjectMeta

from configmap_controller.src.constants import LEADER_ANNOTATION, RESTART_LABEL_KEY
from configmap_controller.src.events import EventType, ResourceEvent
from configmap_controller.src.predicates import ConfigMapChangedPredicate, data_equal

ENABLED = {RESTART_LABEL_KEY: "enable"}


def make_config_map(
    data: dict[str, str] | None = None,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    name: str = "cm1",
    namespace: str = "ns1",
) -> V1ConfigMap:
    return V1ConfigMap(
        metadata=V1ObjectMeta(name=name, namespace=namespace, labels=labels, annotations=annotations),
        data=data,
    )


@pytest.fixture
def predicate() -> ConfigMapChangedPredicate:
    return ConfigMapChangedPredicate()


def test_update_with_changed_data_and_label_is_accepted(predicate: ConfigMapChangedPredicate) -> None:
    old = make_config_map({"k": "v1"}, labels=ENABLED)
    new = make_config_map({"k": "v2"}, labels=ENABLED)

    assert predicate.update(old, new) is True


def test_update_with_added_key_is_accepted(predicate: ConfigMapChangedPredicate) -> None:
    old = make_config_map({"k": "v"}, labels=ENABLED)
    new = make_config_map({"k": "v", "extra": "x"}, labels=ENABLED)

    assert predicate.update(old, new) is True


def test_update_from_empty_data_is_accepted(predicate: ConfigMapChangedPredicate) -> None:
    old = make_config_map(None, labels=ENABLED)
    new = make_config_map({"k": "v"}, labels=ENABLED)

    assert predicate.update(old, new) is True


def test_label_only_change_is_ignored(predicate: ConfigMapChangedPredicate) -> None:
    old = make_config_map({"k": "v"}, labels={"team": "a", **ENABLED})
    new = make_config_map({"k": "v"}, labels={"team": "b", **ENABLED})

    assert predicate.update(old, new) is False


def test_annotation_only_change_is_ignored(predicate: ConfigMapChangedPredicate) -> None:
    old = make_config_map({"k": "v"}, labels=ENABLED)
    new = make_config_map({"k": "v"}, labels=ENABLED, annotations={"note": "edited"})

    assert predicate.update(old, new) is False


def test_equal_data_in_distinct_objects_is_ignored(predicate: ConfigMapChangedPredicate) -> None:
    old = make_config_map(dict(a="1", b="2"), labels=ENABLED)
    new = make_config_map(dict(b="2", a="1"), labels=ENABLED)

    assert old.data is not new.data
    assert predicate.update(old, new) is False


def test_none_and_empty_data_are_equal(predicate: ConfigMapChangedPredicate) -> None:
    old = make_config_map(None, labels=ENABLED)
    new = make_config_map({}, labels=ENABLED)

    assert predicate.update(old, new) is False


def test_leader_election_configmap_is_ignored(predicate: ConfigMapChangedPredicate) -> None:
    old = make_config_map({"k": "v1"}, labels=ENABLED)
    new = make_config_map(
        {"k": "v2"},
        labels=ENABLED,
        annotations={LEADER_ANNOTATION: '{"holderIdentity":"pod-1"}'},
    )

    assert predicate.update(old, new) is False


@pytest.mark.parametrize(
    "labels",
    [None, {}, {"app": "web"}, {RESTART_LABEL_KEY: "disable"}, {RESTART_LABEL_KEY: ""}],
)
def test_missing_or_wrong_label_is_ignored(
    predicate: ConfigMapChangedPredicate, labels: dict[str, str] | None
) -> None:
    old = make_config_map({"k": "v1"}, labels=ENABLED)
    new = make_config_map({"k": "v2"}, labels=labels)

    assert predicate.update(old, new) is False


def test_label_is_read_from_new_object(predicate: ConfigMapChangedPredicate) -> None:
    old = make_config_map({"k": "v1"}, labels=None)
    new = make_config_map({"k": "v2"}, labels=ENABLED)

    assert predicate.update(old, new) is True


def test_create_delete_generic_are_always_rejected(predicate: ConfigMapChangedPredicate) -> None:
    cm = make_config_map({"k": "v"}, labels=ENABLED)

    assert predicate.create(cm) is False
    assert predicate.delete(cm) is False
    assert predicate.generic(cm) is False


@pytest.mark.parametrize("event_type", [EventType.CREATE, EventType.DELETE, EventType.GENERIC])
def test_accepts_rejects_non_update_events(
    predicate: ConfigMapChangedPredicate, event_type: EventType
) -> None:
    cm = make_config_map({"k": "v"}, labels=ENABLED)

    assert predicate.accepts(ResourceEvent(event_type, cm)) is False


def test_accepts_dispatches_update_events(predicate: ConfigMapChangedPredicate) -> None:
    old = make_config_map({"k": "v1"}, labels=ENABLED)
    new = make_config_map({"k": "v2"}, labels=ENABLED)

    assert predicate.accepts(ResourceEvent(EventType.UPDATE, new, old=old)) is True


def test_data_equal_compares_values() -> None:
    assert data_equal({}, {}) is True
    assert data_equal({"a": "1"}, {"a": "1"}) is True
    assert data_equal({"a": "1"}, {"a": "2"}) is False
    assert data_equal({"a": "1"}, {"b": "1"}) is False
    assert data_equal({"a": "1"}, {"a": "1", "b": "2"}) is False
