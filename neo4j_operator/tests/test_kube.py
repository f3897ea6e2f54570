from __future__ import annotations

import re
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from neo4j_operator.src.kube import (
    API_GROUP,
    API_VERSION,
    build_clients,
    get_custom_resource,
    load_kube_configuration,
    patch_pod_template_annotations,
    pod_template_annotations,
    replace_custom_resource_status,
    utc_now_rfc3339,
)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("neo4j_operator.src.kube.config.load_incluster_config") as mock_incluster,
        patch("neo4j_operator.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "neo4j_operator.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("neo4j_operator.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients() -> None:
    with patch("neo4j_operator.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        clients = build_clients()

    assert clients.core.name == "core"
    assert clients.apps.name == "apps"
    assert clients.custom.name == "custom"


def test_utc_now_is_compact_rfc3339() -> None:
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z", utc_now_rfc3339())


def test_patch_pod_template_annotations_body() -> None:
    apps_api = MagicMock()

    patch_pod_template_annotations(
        apps_api=apps_api,
        namespace="neo4j",
        statefulset_name="graph-server",
        annotations={"neo4j.neo4j.com/config-hash": "abc"},
        request_timeout=5.0,
    )

    call = apps_api.patch_namespaced_stateful_set.call_args
    assert call.kwargs["name"] == "graph-server"
    assert call.kwargs["namespace"] == "neo4j"
    assert call.kwargs["_request_timeout"] == 5.0
    assert call.kwargs["body"] == {
        "spec": {"template": {"metadata": {"annotations": {"neo4j.neo4j.com/config-hash": "abc"}}}}
    }


def test_pod_template_annotations_tolerates_missing_fields() -> None:
    assert pod_template_annotations(SimpleNamespace(spec=None)) == {}
    workload = SimpleNamespace(
        spec=SimpleNamespace(
            template=SimpleNamespace(metadata=SimpleNamespace(annotations={"a": None, "b": 1}))
        )
    )
    assert pod_template_annotations(workload) == {"a": "", "b": "1"}


def test_custom_resource_helpers_use_operator_group() -> None:
    custom_api = MagicMock()

    get_custom_resource(custom_api, "neo4j", "neo4jshardeddatabases", "products")
    replace_custom_resource_status(
        custom_api, "neo4j", "neo4jshardeddatabases", "products", {"status": {}}
    )

    get_kwargs = custom_api.get_namespaced_custom_object.call_args.kwargs
    assert get_kwargs["group"] == API_GROUP
    assert get_kwargs["version"] == API_VERSION
    assert "_request_timeout" not in get_kwargs
    status_kwargs = custom_api.replace_namespaced_custom_object_status.call_args.kwargs
    assert status_kwargs["body"] == {"status": {}}
