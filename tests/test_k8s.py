from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from velero_migrator.config import ControllerSettings
from velero_migrator.k8s import (
    ClusterClients,
    KubernetesAuthenticationError,
    ResourceNotFoundError,
    discover_controller_namespace,
    find_controller_pod,
    format_api_exception_message,
    get_controller_object,
    list_backups,
    list_controller_objects,
    load_cluster_clients,
    nested_value,
)


def _clients(*, core_api: Mock | None = None, custom_api: Mock | None = None) -> ClusterClients:
    return ClusterClients(
        api_client=Mock(),
        core_api=core_api or Mock(),
        storage_api=Mock(),
        custom_api=custom_api or Mock(),
    )


def _pod(*, namespace: str, name: str = "velero-7d9f") -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(namespace=namespace, name=name), spec=SimpleNamespace(volumes=[]))


def test_get_controller_object_with_missing_object_raises_resource_not_found() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")
    clients = _clients(custom_api=custom_api)

    with pytest.raises(ResourceNotFoundError, match="backups 'velero/nightly' not found") as raised:
        get_controller_object(clients, ControllerSettings(), plural="backups", namespace="velero", name="nightly")

    assert raised.value.kind == "backups"
    assert raised.value.namespace == "velero"


def test_get_controller_object_with_permission_error_propagates_api_exception() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.side_effect = ApiException(status=403, reason="Forbidden")
    clients = _clients(custom_api=custom_api)

    with pytest.raises(ApiException):
        get_controller_object(clients, ControllerSettings(), plural="backups", namespace="velero", name="nightly")


def test_list_controller_objects_with_field_selector_passes_group_version_and_selector() -> None:
    custom_api = Mock()
    custom_api.list_namespaced_custom_object.return_value = {"items": [{"metadata": {"name": "nightly"}}]}
    clients = _clients(custom_api=custom_api)

    items = list_controller_objects(
        clients,
        ControllerSettings(),
        plural="backups",
        namespace="velero",
        field_selector="metadata.name=nightly",
    )

    assert items == [{"metadata": {"name": "nightly"}}]
    custom_api.list_namespaced_custom_object.assert_called_once_with(
        group="velero.io",
        version="v1",
        namespace="velero",
        plural="backups",
        field_selector="metadata.name=nightly",
    )


def test_list_backups_with_unsorted_items_returns_sorted_names() -> None:
    custom_api = Mock()
    custom_api.list_namespaced_custom_object.return_value = {
        "items": [{"metadata": {"name": "weekly"}}, {"metadata": {"name": "daily"}}]
    }

    assert list_backups(_clients(custom_api=custom_api), ControllerSettings(), "velero") == ["daily", "weekly"]


def test_find_controller_pod_with_no_matching_pods_raises_resource_not_found() -> None:
    core_api = Mock()
    core_api.list_pod_for_all_namespaces.return_value = SimpleNamespace(items=[])

    with pytest.raises(ResourceNotFoundError):
        find_controller_pod(_clients(core_api=core_api), ControllerSettings())

    core_api.list_pod_for_all_namespaces.assert_called_once_with(label_selector="name=velero")


def test_find_controller_pod_with_several_matches_returns_first() -> None:
    core_api = Mock()
    core_api.list_pod_for_all_namespaces.return_value = SimpleNamespace(
        items=[_pod(namespace="velero", name="first"), _pod(namespace="backup", name="second")]
    )

    pod = find_controller_pod(_clients(core_api=core_api), ControllerSettings())

    assert pod.metadata.name == "first"


def test_find_controller_pod_with_narrowed_namespace_lists_only_that_namespace() -> None:
    core_api = Mock()
    core_api.list_namespaced_pod.return_value = SimpleNamespace(items=[_pod(namespace="backup")])
    settings = ControllerSettings(controller_pod_namespace="backup")

    find_controller_pod(_clients(core_api=core_api), settings)

    core_api.list_namespaced_pod.assert_called_once_with(namespace="backup", label_selector="name=velero")
    core_api.list_pod_for_all_namespaces.assert_not_called()


def test_discover_controller_namespace_with_running_controller_returns_pod_namespace() -> None:
    core_api = Mock()
    core_api.list_pod_for_all_namespaces.return_value = SimpleNamespace(items=[_pod(namespace="velero-system")])

    assert discover_controller_namespace(_clients(core_api=core_api), ControllerSettings()) == "velero-system"


def test_nested_value_with_missing_intermediate_key_returns_none() -> None:
    assert nested_value({"spec": {"objectStorage": {"bucket": "b1"}}}, "spec", "objectStorage", "bucket") == "b1"
    assert nested_value({"spec": None}, "spec", "objectStorage", "bucket") is None


def test_format_api_exception_message_with_status_and_reason_includes_both() -> None:
    message = format_api_exception_message(
        operation="list secrets",
        error=ApiException(status=403, reason="Forbidden"),
    )

    assert message == "Kubernetes API call failed while trying to list secrets: API status 403 (Forbidden)"


def test_load_cluster_clients_with_kubeconfig_mode_expands_path_and_context(monkeypatch: pytest.MonkeyPatch) -> None:
    new_client_from_config = Mock(return_value=Mock())
    load_incluster_config = Mock()

    monkeypatch.setenv("HOME", "/tmp/vmig-home")
    monkeypatch.setattr("velero_migrator.k8s.config.new_client_from_config", new_client_from_config)
    monkeypatch.setattr("velero_migrator.k8s.config.load_incluster_config", load_incluster_config)
    monkeypatch.setattr("velero_migrator.k8s.client.CoreV1Api", Mock(return_value=Mock()))
    monkeypatch.setattr("velero_migrator.k8s.client.StorageV1Api", Mock(return_value=Mock()))
    monkeypatch.setattr("velero_migrator.k8s.client.CustomObjectsApi", Mock(return_value=Mock()))

    clients = load_cluster_clients(kubeconfig_path="~/.kube/source", context="source-cluster")

    load_incluster_config.assert_not_called()
    new_client_from_config.assert_called_once_with(
        config_file="/tmp/vmig-home/.kube/source",
        context="source-cluster",
    )
    assert clients.api_client is new_client_from_config.return_value


def test_load_cluster_clients_with_in_cluster_mode_uses_incluster_auth(monkeypatch: pytest.MonkeyPatch) -> None:
    load_incluster_config = Mock()
    new_client_from_config = Mock()
    api_client = Mock()

    monkeypatch.setattr("velero_migrator.k8s.config.load_incluster_config", load_incluster_config)
    monkeypatch.setattr("velero_migrator.k8s.config.new_client_from_config", new_client_from_config)
    monkeypatch.setattr("velero_migrator.k8s.client.ApiClient", Mock(return_value=api_client))

    clients = load_cluster_clients(kubeconfig_path=None, context=None, in_cluster=True)

    load_incluster_config.assert_called_once()
    new_client_from_config.assert_not_called()
    assert clients.api_client is api_client


def test_load_cluster_clients_with_invalid_context_raises_authentication_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "velero_migrator.k8s.config.new_client_from_config",
        Mock(side_effect=RuntimeError("context does not exist")),
    )

    with pytest.raises(KubernetesAuthenticationError, match="with context 'missing-context'"):
        load_cluster_clients(kubeconfig_path="/etc/vmig/destination", context="missing-context")
