from __future__ import annotations

import logging
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException

from .config import ControllerSettings
from .k8s import ClusterClients, ResourceNotFoundError, find_controller_pod, nested_value

logger = logging.getLogger(__name__)


class CredentialPropagator:
    """Copies the secret a storage location authenticates with into the destination cluster."""

    def __init__(
        self,
        *,
        source: ClusterClients,
        destination: ClusterClients,
        settings: ControllerSettings,
    ) -> None:
        self.source = source
        self.destination = destination
        self.settings = settings

    def propagate(
        self,
        location: dict[str, Any],
        *,
        destination_namespace: str,
        secret_name: str,
    ) -> dict[str, str]:
        """Materialize ``secret_name`` in the destination and point ``location`` at it.

        ``location`` is mutated in place: its ``spec.credential`` is replaced
        with the destination secret reference, which is also returned.
        """
        credential = nested_value(location, "spec", "credential")
        if credential:
            data, key = self._explicit_credential(location, credential)
        else:
            data, key = self._controller_credential()

        ensure_secret(self.destination, namespace=destination_namespace, name=secret_name, data=data)

        reference = {"name": secret_name, "key": key}
        location.setdefault("spec", {})["credential"] = reference
        return reference

    def _explicit_credential(
        self,
        location: dict[str, Any],
        credential: dict[str, Any],
    ) -> tuple[dict[str, str], str]:
        source_secret = credential.get("name")
        if not source_secret:
            raise ValueError("storage location credential does not name a secret")
        namespace = nested_value(location, "metadata", "namespace") or ""
        logger.info("Copying explicit storage location credential %s/%s", namespace, source_secret)
        data = read_secret_data(self.source, namespace=namespace, name=source_secret)
        return data, str(credential.get("key") or "")

    def _controller_credential(self) -> tuple[dict[str, str], str]:
        pod = find_controller_pod(self.source, self.settings)
        namespace = pod.metadata.namespace
        source_secret = controller_credentials_secret_name(pod, self.settings)
        logger.info("Copying %s global credential %s/%s", self.settings.controller_name, namespace, source_secret)
        data = read_secret_data(self.source, namespace=namespace, name=source_secret)
        return data, self.settings.implicit_credential_key


def controller_credentials_secret_name(pod: client.V1Pod, settings: ControllerSettings) -> str:
    volumes = pod.spec.volumes if pod.spec and pod.spec.volumes else []
    for volume in volumes:
        if volume.name != settings.credentials_volume_name:
            continue
        if volume.secret is None or not volume.secret.secret_name:
            break
        return volume.secret.secret_name

    raise ResourceNotFoundError(
        kind="Volume",
        name=settings.credentials_volume_name,
        namespace=pod.metadata.namespace if pod.metadata else None,
    )


def read_secret_data(clients: ClusterClients, *, namespace: str, name: str) -> dict[str, str]:
    try:
        secret = clients.core_api.read_namespaced_secret(name=name, namespace=namespace)
    except ApiException as error:
        if error.status == 404:
            raise ResourceNotFoundError(kind="Secret", name=name, namespace=namespace) from error
        raise
    if not secret.data:
        raise ValueError(f"secret {namespace}/{name} has no data")
    return dict(secret.data)


def ensure_secret(clients: ClusterClients, *, namespace: str, name: str, data: dict[str, str]) -> bool:
    """Create an opaque secret unless one with ``name`` already exists; returns whether it was created."""
    existing = clients.core_api.list_namespaced_secret(namespace=namespace).items
    if any(secret.metadata and secret.metadata.name == name for secret in existing):
        logger.info("Secret %s/%s already exists, reusing it", namespace, name)
        return False

    body = client.V1Secret(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        type="Opaque",
        data=dict(data),
    )
    clients.core_api.create_namespaced_secret(namespace=namespace, body=body)
    logger.info("Created secret %s/%s", namespace, name)
    return True
