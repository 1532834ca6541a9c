from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class EventType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    GENERIC = "generic"


@dataclass(frozen=True)
class ResourceEvent:
    """A typed change notification delivered by the informer.

    ``old`` is only set for ``UPDATE`` events.
    """

    type: EventType
    obj: Any
    old: Any = None
