from __future__ import annotations

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError

# Failures below the API layer: timeouts, refused connections, dropped streams.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (HTTPError, OSError)


class ReconcileCancelled(RuntimeError):
    """Raised when the controller is stopping before a blocking call is issued."""


class ResourceError(RuntimeError):
    """A Kubernetes API call failed for a specific object.

    The original client error stays available as ``__cause__``; ``kind``,
    ``namespace``, ``name`` and ``operation`` identify the object for logs.
    """

    def __init__(self, kind: str, operation: str, namespace: str, name: str | None = None) -> None:
        target = f"{namespace}/{name}" if name else namespace
        super().__init__(f"{operation} {kind} {target} failed")
        self.kind = kind
        self.operation = operation
        self.namespace = namespace
        self.name = name

    @property
    def status(self) -> int | None:
        cause = self.__cause__
        if isinstance(cause, ApiException):
            return cause.status
        return None

    def log_fields(self) -> dict[str, str]:
        fields = {"kind": self.kind, "namespace": self.namespace}
        if self.name:
            fields["resource_name"] = self.name
        return fields


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409
