from __future__ import annotations

import logging

from kubernetes import client

from .config import ControllerSettings
from .k8s import ClusterClients
from .models import StorageClassMapping

DEFAULT_CLASS_ANNOTATION = "storageclass.kubernetes.io/is-default-class"
PLUGIN_LABELS = {
    "velero.io/plugin-config": "",
    "velero.io/change-storage-class": "RestoreItemAction",
}

logger = logging.getLogger(__name__)


class StorageClassRemapPublisher:
    """Maps every source storage class onto the destination default for the change-storage-class plugin."""

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

    def publish(self, *, namespace: str) -> StorageClassMapping | None:
        source_classes = storage_class_names(self.source)
        destination_default = default_storage_class_name(self.destination)
        if not destination_default:
            logger.warning(
                "Destination cluster has no default storage class; skipping storage class remapping for %s",
                ", ".join(source_classes) or "no source classes",
            )
            return None

        mapping = {name: destination_default for name in source_classes}
        config_map_name = self.settings.storage_class_config_map_name
        existing = self._find_config_map(namespace)

        if existing is None:
            body = client.V1ConfigMap(
                metadata=client.V1ObjectMeta(
                    name=config_map_name,
                    namespace=namespace,
                    labels=dict(PLUGIN_LABELS),
                ),
                data=mapping,
            )
            self.destination.core_api.create_namespaced_config_map(namespace=namespace, body=body)
            logger.info("Created storage class mapping %s/%s -> %s", namespace, config_map_name, destination_default)
            return StorageClassMapping(
                config_map_name=config_map_name,
                namespace=namespace,
                destination_default=destination_default,
                mapping=dict(mapping),
                created=True,
            )

        merged = dict(existing.data or {})
        merged.update(mapping)
        existing.data = merged
        self.destination.core_api.replace_namespaced_config_map(
            name=config_map_name,
            namespace=namespace,
            body=existing,
        )
        logger.info("Updated storage class mapping %s/%s", namespace, config_map_name)
        return StorageClassMapping(
            config_map_name=config_map_name,
            namespace=namespace,
            destination_default=destination_default,
            mapping=dict(merged),
            created=False,
        )

    def _find_config_map(self, namespace: str) -> client.V1ConfigMap | None:
        name = self.settings.storage_class_config_map_name
        for config_map in self.destination.core_api.list_namespaced_config_map(namespace=namespace).items:
            if config_map.metadata and config_map.metadata.name == name:
                return config_map
        return None


def storage_class_names(clients: ClusterClients) -> list[str]:
    items = clients.storage_api.list_storage_class().items
    return [item.metadata.name for item in items if item.metadata and item.metadata.name]


def default_storage_class_name(clients: ClusterClients) -> str:
    """Returns an empty string when no storage class carries the default annotation."""
    for item in clients.storage_api.list_storage_class().items:
        annotations = (item.metadata.annotations if item.metadata else None) or {}
        if annotations.get(DEFAULT_CLASS_ANNOTATION) == "true":
            return item.metadata.name
    return ""
