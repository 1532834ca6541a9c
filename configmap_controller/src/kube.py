from __future__ import annotations

import logging
from typing import Any, NamedTuple

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoordinationV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


class NamespacedName(NamedTuple):
    """Identity of a namespaced object; the work queue key."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def of(cls, obj: Any) -> NamespacedName | None:
        """Return the key of a Kubernetes object, or None when its metadata is incomplete."""
        metadata = getattr(obj, "metadata", None)
        namespace = getattr(metadata, "namespace", None)
        name = getattr(metadata, "name", None)
        if not namespace or not name:
            return None
        return cls(namespace=namespace, name=name)


class KubeClients(NamedTuple):
    core: CoreV1Api
    apps: AppsV1Api
    coordination: CoordinationV1Api


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the API clients used by the manager, bound to the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        coordination=client.CoordinationV1Api(),
    )


def object_labels(obj: Any) -> dict[str, str]:
    labels = getattr(getattr(obj, "metadata", None), "labels", None)
    return labels if isinstance(labels, dict) else {}


def object_annotations(obj: Any) -> dict[str, str]:
    annotations = getattr(getattr(obj, "metadata", None), "annotations", None)
    return annotations if isinstance(annotations, dict) else {}


def set_pod_template_annotation(deployment: Any, key: str, value: str) -> None:
    """Write one pod template annotation in place, keeping every other annotation.

    Changing a pod template annotation is the mechanism behind
    ``kubectl rollout restart``: the Deployment controller rolls new pods.
    """
    template = deployment.spec.template
    if template.metadata is None:
        template.metadata = client.V1ObjectMeta()
    if template.metadata.annotations is None:
        template.metadata.annotations = {}
    template.metadata.annotations[key] = value
