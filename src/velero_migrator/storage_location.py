from __future__ import annotations

import logging
import threading
from typing import Any, Iterable

from .config import ControllerSettings
from .credentials import CredentialPropagator
from .k8s import (
    BACKUP_STORAGE_LOCATIONS,
    BACKUPS,
    ClusterClients,
    create_controller_object,
    get_controller_object,
    list_controller_objects,
    name_field_selector,
    nested_value,
    object_name,
)
from .models import BackupRef, ReconcileResult
from .waiting import wait_for

AVAILABLE_PHASE = "Available"
READ_ONLY_ACCESS_MODE = "ReadOnly"
DEFAULT_BACKUP_WAIT_TIMEOUT_SECONDS = 5 * 60
DEFAULT_BACKUP_POLL_INTERVAL_SECONDS = 5.0

logger = logging.getLogger(__name__)


class StorageLocationReconciler:
    def __init__(
        self,
        *,
        source: ClusterClients,
        destination: ClusterClients,
        settings: ControllerSettings,
        credential_propagator: CredentialPropagator | None = None,
    ) -> None:
        self.source = source
        self.destination = destination
        self.settings = settings
        self.credential_propagator = credential_propagator or CredentialPropagator(
            source=source,
            destination=destination,
            settings=settings,
        )

    def reconcile(
        self,
        backup: BackupRef,
        *,
        destination_namespace: str,
        wait_timeout_seconds: float = DEFAULT_BACKUP_WAIT_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_BACKUP_POLL_INTERVAL_SECONDS,
        cancel_event: threading.Event | None = None,
    ) -> ReconcileResult:
        source_location = self._source_location(backup)
        source_name = object_name(source_location)

        destination_locations = list_controller_objects(
            self.destination,
            self.settings,
            plural=BACKUP_STORAGE_LOCATIONS,
            namespace=destination_namespace,
        )
        equivalent = find_equivalent_location(source_location, destination_locations)
        if equivalent is not None:
            logger.info(
                "Destination storage location %s already serves source location %s",
                object_name(equivalent),
                source_name,
            )
            return ReconcileResult(
                source_location=source_name,
                destination_location=object_name(equivalent),
                created=False,
            )

        bucket = nested_value(source_location, "spec", "objectStorage", "bucket")
        if not bucket:
            raise ValueError(f"storage location {source_name} has no objectStorage.bucket")

        logger.info(
            "No destination storage location matches %s, creating a read-only clone for bucket %s",
            source_name,
            bucket,
        )
        make_read_only(source_location)
        secret_name = f"{bucket}-readonly-credentials"
        self.credential_propagator.propagate(
            source_location,
            destination_namespace=destination_namespace,
            secret_name=secret_name,
        )

        clone_name = f"{bucket}-readonly"
        create_controller_object(
            self.destination,
            self.settings,
            plural=BACKUP_STORAGE_LOCATIONS,
            namespace=destination_namespace,
            body=self._clone_body(source_location, name=clone_name, namespace=destination_namespace),
        )
        logger.info("Created storage location %s/%s", destination_namespace, clone_name)

        visible = wait_for_backup(
            self.destination,
            self.settings,
            namespace=destination_namespace,
            name=backup.name,
            timeout_seconds=wait_timeout_seconds,
            interval_seconds=poll_interval_seconds,
            cancel_event=cancel_event,
        )
        if not visible:
            raise TimeoutError(
                f"backup {backup.name} did not appear in destination namespace {destination_namespace} "
                f"within {wait_timeout_seconds:g}s"
            )

        return ReconcileResult(
            source_location=source_name,
            destination_location=clone_name,
            created=True,
            credential_secret=secret_name,
        )

    def _source_location(self, backup: BackupRef) -> dict[str, Any]:
        backup_object = get_controller_object(
            self.source,
            self.settings,
            plural=BACKUPS,
            namespace=backup.namespace,
            name=backup.name,
        )
        location_name = nested_value(backup_object, "spec", "storageLocation")
        if not location_name:
            raise ValueError(f"backup {backup.namespace}/{backup.name} does not reference a storage location")
        return get_controller_object(
            self.source,
            self.settings,
            plural=BACKUP_STORAGE_LOCATIONS,
            namespace=backup.namespace,
            name=location_name,
        )

    def _clone_body(self, location: dict[str, Any], *, name: str, namespace: str) -> dict[str, Any]:
        return {
            "apiVersion": self.settings.api_version_string,
            "kind": "BackupStorageLocation",
            "metadata": {"name": name, "namespace": namespace},
            "spec": location.get("spec") or {},
        }


def is_equivalent_location(source: dict[str, Any], candidate: dict[str, Any]) -> bool:
    """Only the source phase is checked; the candidate may still be syncing."""
    if nested_value(source, "status", "phase") != AVAILABLE_PHASE:
        return False
    source_spec = source.get("spec") or {}
    candidate_spec = candidate.get("spec") or {}
    return (source_spec.get("config") or {}) == (candidate_spec.get("config") or {}) and (
        source_spec.get("objectStorage") or {}
    ) == (candidate_spec.get("objectStorage") or {})


def find_equivalent_location(
    source: dict[str, Any],
    candidates: Iterable[dict[str, Any]],
) -> dict[str, Any] | None:
    for candidate in candidates:
        if is_equivalent_location(source, candidate):
            return candidate
    return None


def make_read_only(location: dict[str, Any]) -> None:
    spec = location.setdefault("spec", {})
    spec["accessMode"] = READ_ONLY_ACCESS_MODE
    spec["default"] = False


def wait_for_backup(
    clients: ClusterClients,
    settings: ControllerSettings,
    *,
    namespace: str,
    name: str,
    timeout_seconds: float = DEFAULT_BACKUP_WAIT_TIMEOUT_SECONDS,
    interval_seconds: float = DEFAULT_BACKUP_POLL_INTERVAL_SECONDS,
    cancel_event: threading.Event | None = None,
) -> bool:
    """Poll until backup ``name`` is listed in ``namespace``; ``False`` means it never showed up."""
    logger.info("Waiting up to %gs for backup %s in namespace %s", timeout_seconds, name, namespace)

    def _backup_listed() -> bool:
        backups = list_controller_objects(
            clients,
            settings,
            plural=BACKUPS,
            namespace=namespace,
            field_selector=name_field_selector(name),
        )
        return any(object_name(backup) == name for backup in backups)

    found = wait_for(
        _backup_listed,
        interval_seconds=interval_seconds,
        timeout_seconds=timeout_seconds,
        cancel_event=cancel_event,
    )
    if found:
        logger.info("Backup %s is available in namespace %s", name, namespace)
    else:
        logger.warning("Timed out after %gs waiting for backup %s", timeout_seconds, name)
    return found
