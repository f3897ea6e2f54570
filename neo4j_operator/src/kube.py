from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

LOGGER = logging.getLogger(__name__)

API_GROUP = "neo4j.neo4j.com"
API_VERSION = "v1alpha1"
CLUSTER_PLURAL = "neo4jenterpriseclusters"
SHARDED_DATABASE_PLURAL = "neo4jshardeddatabases"

# An API server answer, or a transport failure before one arrived.
API_ERRORS = (ApiException, HTTPError)


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    apps: AppsV1Api
    custom: CustomObjectsApi


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


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
    """Return the API clients the operator needs using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        custom=client.CustomObjectsApi(),
    )


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: ApiException) -> bool:
    return exc.status == 409


def describe_api_error(exc: BaseException) -> str:
    if isinstance(exc, ApiException):
        return str(exc.reason)
    return f"{type(exc).__name__}: {exc}"


def patch_pod_template_annotations(
    apps_api: AppsV1Api,
    namespace: str,
    statefulset_name: str,
    annotations: dict[str, str],
    request_timeout: float | None = None,
) -> None:
    """Patch a StatefulSet's pod template annotations to trigger a rolling restart.

    This is the same mechanism used by ``kubectl rollout restart``: changing a
    pod template annotation makes the StatefulSet controller replace its pods
    one ordinal at a time.
    """
    body = {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": dict(annotations)
                }
            }
        }
    }

    kwargs: dict[str, Any] = {}
    if request_timeout is not None:
        kwargs["_request_timeout"] = request_timeout
    apps_api.patch_namespaced_stateful_set(
        name=statefulset_name,
        namespace=namespace,
        body=body,
        **kwargs,
    )


def pod_template_annotations(workload: Any) -> dict[str, str]:
    """Extract pod template annotations from a workload object safely."""
    spec = getattr(workload, "spec", None)
    template = getattr(spec, "template", None)
    metadata = getattr(template, "metadata", None)
    annotations = getattr(metadata, "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in annotations.items()
        if isinstance(k, str)
    }


def get_custom_resource(
    custom_api: CustomObjectsApi,
    namespace: str,
    plural: str,
    name: str,
    request_timeout: float | None = None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    if request_timeout is not None:
        kwargs["_request_timeout"] = request_timeout
    return custom_api.get_namespaced_custom_object(
        group=API_GROUP,
        version=API_VERSION,
        namespace=namespace,
        plural=plural,
        name=name,
        **kwargs,
    )


def replace_custom_resource_status(
    custom_api: CustomObjectsApi,
    namespace: str,
    plural: str,
    name: str,
    body: dict[str, Any],
    request_timeout: float | None = None,
) -> dict[str, Any]:
    """Write ``body.status`` through the ``/status`` subresource.

    ``body`` must carry the ``metadata.resourceVersion`` it was read at; the
    API server answers ``409 Conflict`` when another writer got there first.
    """
    kwargs: dict[str, Any] = {}
    if request_timeout is not None:
        kwargs["_request_timeout"] = request_timeout
    return custom_api.replace_namespaced_custom_object_status(
        group=API_GROUP,
        version=API_VERSION,
        namespace=namespace,
        plural=plural,
        name=name,
        body=body,
        **kwargs,
    )
