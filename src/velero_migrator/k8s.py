from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException

from .config import ControllerSettings

BACKUPS = "backups"
BACKUP_STORAGE_LOCATIONS = "backupstoragelocations"
RESTORES = "restores"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusterClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    storage_api: client.StorageV1Api
    custom_api: client.CustomObjectsApi


class ResourceNotFoundError(LookupError):
    """Raised when a resource the migration depends on does not exist."""

    def __init__(self, *, kind: str, name: str, namespace: str | None = None) -> None:
        location = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} '{location}' not found")
        self.kind = kind
        self.name = name
        self.namespace = namespace


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_cluster_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool = False,
) -> ClusterClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            configuration = client.Configuration()
            config.load_incluster_config(client_configuration=configuration)
            api_client = client.ApiClient(configuration)
        else:
            # Each cluster gets its own ApiClient so source and destination never share globals.
            api_client = config.new_client_from_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    return ClusterClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        storage_api=client.StorageV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


def get_controller_object(
    clients: ClusterClients,
    settings: ControllerSettings,
    *,
    plural: str,
    namespace: str,
    name: str,
) -> dict[str, Any]:
    try:
        return clients.custom_api.get_namespaced_custom_object(
            group=settings.api_group,
            version=settings.api_version,
            namespace=namespace,
            plural=plural,
            name=name,
        )
    except ApiException as error:
        if error.status == 404:
            raise ResourceNotFoundError(kind=plural, name=name, namespace=namespace) from error
        raise


def list_controller_objects(
    clients: ClusterClients,
    settings: ControllerSettings,
    *,
    plural: str,
    namespace: str,
    field_selector: str | None = None,
) -> list[dict[str, Any]]:
    kwargs: dict[str, Any] = {}
    if field_selector:
        kwargs["field_selector"] = field_selector
    response = clients.custom_api.list_namespaced_custom_object(
        group=settings.api_group,
        version=settings.api_version,
        namespace=namespace,
        plural=plural,
        **kwargs,
    )
    return list(response.get("items") or [])


def create_controller_object(
    clients: ClusterClients,
    settings: ControllerSettings,
    *,
    plural: str,
    namespace: str,
    body: dict[str, Any],
) -> dict[str, Any]:
    return clients.custom_api.create_namespaced_custom_object(
        group=settings.api_group,
        version=settings.api_version,
        namespace=namespace,
        plural=plural,
        body=body,
    )


def list_backups(clients: ClusterClients, settings: ControllerSettings, namespace: str) -> list[str]:
    backups = list_controller_objects(clients, settings, plural=BACKUPS, namespace=namespace)
    return sorted(object_name(backup) for backup in backups)


def find_controller_pod(clients: ClusterClients, settings: ControllerSettings) -> client.V1Pod:
    label_selector = settings.controller_label_selector
    namespace = settings.controller_pod_namespace
    if namespace:
        pods = clients.core_api.list_namespaced_pod(namespace=namespace, label_selector=label_selector).items
    else:
        pods = clients.core_api.list_pod_for_all_namespaces(label_selector=label_selector).items

    if not pods:
        raise ResourceNotFoundError(kind="Pod", name=label_selector, namespace=namespace)
    return pods[0]


def discover_controller_namespace(clients: ClusterClients, settings: ControllerSettings) -> str:
    pod = find_controller_pod(clients, settings)
    namespace = pod.metadata.namespace if pod.metadata else None
    if not namespace:
        raise RuntimeError(f"{settings.controller_name} pod has no namespace in its metadata")
    logger.info("Discovered %s in namespace %s", settings.controller_name, namespace)
    return namespace


def object_name(resource: dict[str, Any]) -> str:
    return str((resource.get("metadata") or {}).get("name") or "")


def nested_value(resource: dict[str, Any], *path: str) -> Any:
    current: Any = resource
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def name_field_selector(name: str) -> str:
    return f"metadata.name={name}"


def format_api_exception_message(*, operation: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes API call failed while trying to {operation}: API status {status} ({reason})"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
