from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
import logging
import threading
from typing import Iterator

from kubernetes.client import ApiException

from .config import MigrationConfig
from .helm import ChartCloner, HelmCli
from .k8s import (
    ClusterClients,
    ResourceNotFoundError,
    discover_controller_namespace,
    find_controller_pod,
    format_api_exception_message,
)
from .models import BackupRef, MigrationReport
from .restore import RestoreRunner
from .storage_class import StorageClassRemapPublisher
from .storage_location import StorageLocationReconciler

_STAGE_OPERATIONS = {
    "controller": "locate the backup controller",
    "chart": "clone the backup controller chart",
    "storage-location": "reconcile the backup storage location",
    "storage-class": "publish the storage class mapping",
    "restore": "run the restore",
}

logger = logging.getLogger(__name__)


class MigrationStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class MigrationRunner:
    """Drives one backup from the source cluster into the destination, one stage at a time.

    Stages run strictly in order because each depends on the side effects of
    the previous one. Nothing is rolled back on failure; every stage checks
    for existing objects first, so re-running after a failure converges.
    """

    def __init__(
        self,
        *,
        source: ClusterClients,
        destination: ClusterClients,
        config: MigrationConfig,
        chart_cloner: ChartCloner | None = None,
        reconciler: StorageLocationReconciler | None = None,
        publisher: StorageClassRemapPublisher | None = None,
        restore_runner: RestoreRunner | None = None,
    ) -> None:
        self.source = source
        self.destination = destination
        self.config = config
        settings = config.controller
        self.chart_cloner = chart_cloner or ChartCloner(
            source=HelmCli(kubeconfig_path=config.source_kubeconfig_path, context=config.source_context),
            destination=HelmCli(kubeconfig_path=config.destination_kubeconfig_path, context=config.destination_context),
            settings=settings,
        )
        self.reconciler = reconciler or StorageLocationReconciler(
            source=source,
            destination=destination,
            settings=settings,
        )
        self.publisher = publisher or StorageClassRemapPublisher(
            source=source,
            destination=destination,
            settings=settings,
        )
        self.restore_runner = restore_runner or RestoreRunner(clients=destination, settings=settings)

    def run(self, *, cancel_event: threading.Event | None = None) -> MigrationReport:
        self.config.validate()
        source_namespace = self.resolve_source_namespace()
        destination_namespace = self.resolve_destination_namespace()
        backup = BackupRef(namespace=source_namespace, name=self.config.restore_options.backup_name)

        with _stage("storage-location"):
            location = self.reconciler.reconcile(
                backup,
                destination_namespace=destination_namespace,
                wait_timeout_seconds=self.config.backup_wait_timeout_seconds,
                poll_interval_seconds=self.config.backup_poll_interval_seconds,
                cancel_event=cancel_event,
            )

        with _stage("storage-class"):
            mapping = self.publisher.publish(namespace=destination_namespace)
        if mapping is None:
            logger.warning(
                "Continuing without a storage class mapping in %s; restored volumes keep their source storage classes",
                destination_namespace,
            )

        with _stage("restore"):
            restore = self.restore_runner.run(
                name=self.config.restore_name,
                namespace=destination_namespace,
                options=self.config.restore_options,
                timeout_seconds=self.config.restore_timeout_seconds,
                watch_timeout_seconds=self.config.watch_timeout_seconds,
                cancel_event=cancel_event,
            )
        if not restore.succeeded:
            raise MigrationStageError(stage="restore", reason=restore.message)

        logger.info("Restore %s/%s completed", destination_namespace, restore.name)
        return MigrationReport(
            source_namespace=source_namespace,
            destination_namespace=destination_namespace,
            storage_location=location,
            storage_class_mapping=mapping,
            restore=restore,
        )

    def resolve_source_namespace(self) -> str:
        if self.config.source_namespace:
            return self.config.source_namespace
        with _stage("controller"):
            return discover_controller_namespace(self.source, self.config.controller)

    def resolve_destination_namespace(self) -> str:
        configured = self.config.destination_namespace
        settings = self.config.controller
        try:
            with _stage("controller"):
                if not configured:
                    return discover_controller_namespace(self.destination, settings)
                if self.config.clone_chart_if_missing:
                    find_controller_pod(self.destination, replace(settings, controller_pod_namespace=configured))
                return configured
        except MigrationStageError as error:
            if not isinstance(error.__cause__, ResourceNotFoundError) or not self.config.clone_chart_if_missing:
                raise

        namespace = configured or settings.controller_name
        logger.info("No %s installation found in the destination, cloning it into %s", settings.controller_name, namespace)
        with _stage("chart"):
            self.chart_cloner.clone(
                destination_namespace=namespace,
                release_name=self.config.source_helm_release_name,
                timeout_seconds=self.config.chart_install_timeout_seconds,
            )
        return namespace


@contextmanager
def _stage(stage: str) -> Iterator[None]:
    try:
        yield
    except MigrationStageError:
        raise
    except ApiException as error:
        raise MigrationStageError(
            stage=stage,
            reason=format_api_exception_message(operation=_STAGE_OPERATIONS[stage], error=error),
        ) from error
    except Exception as error:  # pylint: disable=broad-except
        raise MigrationStageError(stage=stage, reason=_error_message(error)) from error


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
