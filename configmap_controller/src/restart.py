from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException, AppsV1Api

from configmap_controller.src.constants import FIELD_MANAGER, RESTART_ANNOTATION
from configmap_controller.src.errors import (
    TRANSPORT_ERRORS,
    ReconcileCancelled,
    ResourceError,
    is_conflict,
    is_not_found,
)
from configmap_controller.src.kube import set_pod_template_annotation
from configmap_controller.src.metrics import METRICS

DEPLOYMENT_KIND = "Deployment"


@dataclass(frozen=True)
class RestartResult:
    """Record of one restart batch for a ConfigMap.

    ``matched`` lists every Deployment that mounted the ConfigMap at listing
    time; ``skipped`` the ones that disappeared before they could be updated.
    """

    namespace: str
    config_map_name: str
    matched: tuple[str, ...] = ()
    restarted: tuple[str, ...] = ()
    skipped: tuple[str, ...] = field(default=())


def utc_now_rfc3339() -> str:
    """Return the current UTC time as RFC 3339 with microseconds (``2024-01-15T08:30:00.000000Z``).

    The fixed-width fraction keeps values lexically sortable and makes
    back-to-back restarts write distinct annotation values.
    """
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def references_config_map(deployment: Any, config_map_name: str) -> bool:
    """Return True if any pod template volume mounts ``config_map_name``."""
    pod_spec = getattr(getattr(getattr(deployment, "spec", None), "template", None), "spec", None)
    for volume in getattr(pod_spec, "volumes", None) or []:
        source = getattr(volume, "config_map", None)
        if source is not None and source.name == config_map_name:
            return True
    return False


class DeploymentRestarter:
    """Rolls every Deployment in a namespace that mounts a given ConfigMap.

    The restart is a single write of ``configmap-controller/restart`` on the
    pod template, sent as a full ``replace`` so the API server enforces the
    ``resourceVersion`` read just before. A Deployment deleted between list
    and update is skipped; any other failure aborts the remaining
    Deployments and is raised as :class:`ResourceError`. Updates already
    made stay applied.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        annotation_key: str = RESTART_ANNOTATION,
        field_manager: str = FIELD_MANAGER,
        request_timeout: float | None = None,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.apps_api = apps_api
        self.annotation_key = annotation_key
        self.field_manager = field_manager
        self.request_timeout = request_timeout
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def _call_kwargs(self) -> dict[str, Any]:
        if self.request_timeout is None:
            return {}
        return {"_request_timeout": self.request_timeout}

    @staticmethod
    def _check_stop(stop_event: threading.Event | None) -> None:
        if stop_event is not None and stop_event.is_set():
            raise ReconcileCancelled("controller is stopping")

    def matching_deployments(
        self,
        namespace: str,
        config_map_name: str,
        stop_event: threading.Event | None = None,
    ) -> list[str]:
        """List Deployments in ``namespace`` that mount ``config_map_name``, in listing order."""
        self._check_stop(stop_event)
        try:
            deployments = self.apps_api.list_namespaced_deployment(
                namespace=namespace, **self._call_kwargs()
            )
        except ApiException as exc:
            self.logger.error(
                "Failed to list deployments in namespace %s",
                namespace,
                extra={"kind": DEPLOYMENT_KIND, "namespace": namespace},
            )
            raise ResourceError(DEPLOYMENT_KIND, "list", namespace) from exc
        except TRANSPORT_ERRORS as exc:
            self.logger.error(
                "Failed to list deployments in namespace %s: %s",
                namespace,
                exc,
                extra={"kind": DEPLOYMENT_KIND, "namespace": namespace},
            )
            raise ResourceError(DEPLOYMENT_KIND, "list", namespace) from exc

        matched: list[str] = []
        for deployment in deployments.items or []:
            name = getattr(getattr(deployment, "metadata", None), "name", None)
            if name and references_config_map(deployment, config_map_name):
                matched.append(name)
        return matched

    def restart_deployment(
        self,
        namespace: str,
        name: str,
        timestamp: str,
        stop_event: threading.Event | None = None,
    ) -> bool:
        """Write the restart annotation on one Deployment.

        Returns False when the Deployment no longer exists.
        """
        fields = {"kind": DEPLOYMENT_KIND, "namespace": namespace, "resource_name": name}
        self._check_stop(stop_event)
        try:
            deployment = self.apps_api.read_namespaced_deployment(
                name=name, namespace=namespace, **self._call_kwargs()
            )
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.info("Deployment %s/%s not found, skip restart", namespace, name, extra=fields)
                return False
            self.logger.error("Failed to read deployment %s/%s", namespace, name, extra=fields)
            raise ResourceError(DEPLOYMENT_KIND, "get", namespace, name) from exc
        except TRANSPORT_ERRORS as exc:
            self.logger.error("Failed to read deployment %s/%s: %s", namespace, name, exc, extra=fields)
            raise ResourceError(DEPLOYMENT_KIND, "get", namespace, name) from exc

        set_pod_template_annotation(deployment, self.annotation_key, timestamp)

        self._check_stop(stop_event)
        try:
            self.apps_api.replace_namespaced_deployment(
                name=name,
                namespace=namespace,
                body=deployment,
                field_manager=self.field_manager,
                **self._call_kwargs(),
            )
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.info("Deployment %s/%s deleted before update, skip restart", namespace, name, extra=fields)
                return False
            if is_conflict(exc):
                self.logger.error(
                    "Deployment %s/%s was modified concurrently, restart not applied", namespace, name, extra=fields
                )
            else:
                self.logger.error(
                    "Failed to update deployment %s/%s (status=%s)", namespace, name, exc.status, extra=fields
                )
            raise ResourceError(DEPLOYMENT_KIND, "update", namespace, name) from exc
        except TRANSPORT_ERRORS as exc:
            # The write may or may not have reached the API server.
            self.logger.error("Failed to update deployment %s/%s: %s", namespace, name, exc, extra=fields)
            raise ResourceError(DEPLOYMENT_KIND, "update", namespace, name) from exc

        self.logger.info("Triggered rolling restart for deployment %s/%s", namespace, name, extra=fields)
        return True

    def restart(
        self,
        namespace: str,
        config_map_name: str,
        stop_event: threading.Event | None = None,
    ) -> RestartResult:
        matched = self.matching_deployments(namespace, config_map_name, stop_event=stop_event)
        if not matched:
            self.logger.info(
                "No deployments in namespace %s mount ConfigMap %s",
                namespace,
                config_map_name,
                extra={"kind": "ConfigMap", "namespace": namespace, "resource_name": config_map_name},
            )
            return RestartResult(namespace=namespace, config_map_name=config_map_name)

        restarted: list[str] = []
        skipped: list[str] = []
        for name in matched:
            try:
                done = self.restart_deployment(namespace, name, self.now_fn(), stop_event=stop_event)
            except ResourceError:
                METRICS.restart_errors_total.labels(namespace=namespace).inc()
                raise
            if done:
                restarted.append(name)
                METRICS.restarts_total.labels(namespace=namespace).inc()
            else:
                skipped.append(name)

        return RestartResult(
            namespace=namespace,
            config_map_name=config_map_name,
            matched=tuple(matched),
            restarted=tuple(restarted),
            skipped=tuple(skipped),
        )
