"""Event filter deciding which ConfigMap changes are worth a reconciliation.

Only edits of existing objects count: a restart is meaningful for a data
*change*, never for a ConfigMap appearing or disappearing.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from configmap_controller.src.constants import (
    LEADER_ANNOTATION,
    RESTART_LABEL_KEY,
    RESTART_LABEL_VALUE,
)
from configmap_controller.src.events import EventType, ResourceEvent
from configmap_controller.src.kube import object_annotations, object_labels


def has_restart_label(labels: Mapping[str, str] | None) -> bool:
    return (labels or {}).get(RESTART_LABEL_KEY) == RESTART_LABEL_VALUE


def config_map_data(config_map: Any) -> dict[str, str]:
    data = getattr(config_map, "data", None)
    return data if isinstance(data, dict) else {}


def data_equal(old: Mapping[str, str], new: Mapping[str, str]) -> bool:
    """Value-wise mapping comparison: same size, then every pair equal."""
    if len(old) != len(new):
        return False
    for key, value in old.items():
        if key not in new or new[key] != value:
            return False
    return True


class ConfigMapChangedPredicate:
    """Accepts update events of opted-in ConfigMaps whose ``data`` changed.

    Stateless; every method is a pure function of its arguments so the
    informer and worker threads may call it concurrently.
    """

    def create(self, obj: Any) -> bool:
        return False

    def delete(self, obj: Any) -> bool:
        return False

    def generic(self, obj: Any) -> bool:
        return False

    def update(self, old: Any, new: Any) -> bool:
        if LEADER_ANNOTATION in object_annotations(new):
            return False
        if not has_restart_label(object_labels(new)):
            return False
        return not data_equal(config_map_data(old), config_map_data(new))

    def accepts(self, event: ResourceEvent) -> bool:
        if event.type is EventType.UPDATE:
            return self.update(event.old, event.obj)
        if event.type is EventType.CREATE:
            return self.create(event.obj)
        if event.type is EventType.DELETE:
            return self.delete(event.obj)
        return self.generic(event.obj)
