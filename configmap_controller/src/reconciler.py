from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from configmap_controller.src.errors import TRANSPORT_ERRORS, ReconcileCancelled, ResourceError, is_not_found
from configmap_controller.src.kube import NamespacedName, object_labels
from configmap_controller.src.predicates import has_restart_label
from configmap_controller.src.restart import DeploymentRestarter

CONFIG_MAP_KIND = "ConfigMap"


@dataclass(frozen=True)
class Result:
    """Outcome of one reconciliation, interpreted by the work queue.

    ``requeue=True`` re-adds the key with rate-limited backoff; an ``error``
    with ``requeue=False`` is reported but never retried.
    """

    requeue: bool = False
    error: BaseException | None = None


class ConfigMapReconciler:
    """Restarts the Deployments mounting a ConfigMap once its data changed.

    Each call fetches the ConfigMap fresh; the object is never cached here.
    Invocations for different keys may run concurrently, the work queue
    guarantees a single in-flight call per key.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        restarter: DeploymentRestarter,
        request_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.restarter = restarter
        self.request_timeout = request_timeout
        self.logger = logger or logging.getLogger(__name__)

    def _fetch(self, key: NamespacedName) -> Any:
        kwargs: dict[str, Any] = {}
        if self.request_timeout is not None:
            kwargs["_request_timeout"] = self.request_timeout
        return self.core_api.read_namespaced_config_map(name=key.name, namespace=key.namespace, **kwargs)

    def reconcile(self, key: NamespacedName, stop_event: threading.Event | None = None) -> Result:
        fields = {"kind": CONFIG_MAP_KIND, "namespace": key.namespace, "resource_name": key.name}
        self.logger.info("Start reconcile of ConfigMap %s", key, extra=fields)

        if stop_event is not None and stop_event.is_set():
            return Result(error=ReconcileCancelled("controller is stopping"))

        try:
            config_map = self._fetch(key)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.warning("ConfigMap %s not found, nothing to restart", key, extra=fields)
                return Result()
            self.logger.error("Failed to get ConfigMap %s (status=%s)", key, exc.status, extra=fields)
            error = ResourceError(CONFIG_MAP_KIND, "get", key.namespace, key.name)
            error.__cause__ = exc
            return Result(requeue=True, error=error)
        except TRANSPORT_ERRORS as exc:
            self.logger.error("Failed to get ConfigMap %s: %s", key, exc, extra=fields)
            error = ResourceError(CONFIG_MAP_KIND, "get", key.namespace, key.name)
            error.__cause__ = exc
            return Result(requeue=True, error=error)

        if not has_restart_label(object_labels(config_map)):
            self.logger.debug("ConfigMap %s is not labelled for restarts", key, extra=fields)
            return Result()

        try:
            result = self.restarter.restart(key.namespace, key.name, stop_event=stop_event)
        except ReconcileCancelled as exc:
            self.logger.info("Reconcile of ConfigMap %s cancelled", key, extra=fields)
            return Result(error=exc)
        except ResourceError as exc:
            # Fields name the Deployment that failed, the message names the ConfigMap.
            self.logger.error(
                "Restart of deployments for ConfigMap %s failed, not requeued: %s",
                key,
                exc,
                extra=exc.log_fields(),
            )
            return Result(requeue=False, error=exc)

        self.logger.info(
            "Restarted %d deployment(s) for ConfigMap %s",
            len(result.restarted),
            key,
            extra=fields,
        )
        return Result()
