from __future__ import annotations

from enum import Enum
import logging
import threading
from typing import Any, Callable

from kubernetes import watch
from kubernetes.client import ApiException

from .config import ControllerSettings, RestoreOptions
from .k8s import (
    RESTORES,
    ClusterClients,
    ResourceNotFoundError,
    create_controller_object,
    get_controller_object,
    name_field_selector,
    nested_value,
)
from .models import RestoreResult
from .waiting import wait_for

COMPLETED_PHASE = "Completed"
SIGNAL_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_WATCH_TIMEOUT_SECONDS = 300
WATCH_REQUEST_GRACE_SECONDS = 30
READER_JOIN_TIMEOUT_SECONDS = 5.0

logger = logging.getLogger(__name__)


class PhaseOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


def classify_phase(phase: str | None) -> PhaseOutcome:
    if phase == COMPLETED_PHASE:
        return PhaseOutcome.SUCCEEDED
    if phase and "failed" in phase.lower():
        return PhaseOutcome.FAILED
    return PhaseOutcome.PENDING


def parse_or_label_selectors(selectors: dict[str, str]) -> list[dict[str, dict[str, str]]]:
    # One clause per pair: the controller ORs clauses, so a single clause would AND them.
    return [{"matchLabels": {key: value}} for key, value in selectors.items()]


def format_go_duration(seconds: int) -> str:
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def build_restore_body(
    *,
    name: str,
    namespace: str,
    options: RestoreOptions,
    settings: ControllerSettings,
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "backupName": options.backup_name,
        "itemOperationTimeout": format_go_duration(options.item_operation_timeout_seconds),
        "includedNamespaces": list(options.included_namespaces),
        "excludedNamespaces": list(options.excluded_namespaces),
        "includedResources": list(options.included_resources),
        "excludedResources": list(options.excluded_resources),
        "namespaceMapping": dict(options.namespace_mapping),
        "restorePVs": options.restore_pvs,
        "preserveNodePorts": options.preserve_node_ports,
        "existingResourcePolicy": options.existing_resource_policy,
    }
    if options.include_cluster_resources is not None:
        spec["includeClusterResources"] = options.include_cluster_resources
    if options.label_selector:
        spec["labelSelector"] = {"matchLabels": dict(options.label_selector)}
    if options.or_label_selectors:
        spec["orLabelSelectors"] = parse_or_label_selectors(options.or_label_selectors)

    return {
        "apiVersion": settings.api_version_string,
        "kind": "Restore",
        "metadata": {"name": name, "namespace": namespace},
        "spec": spec,
    }


class RestoreRunner:
    """Submits a Restore and blocks until the controller reports a terminal phase."""

    def __init__(
        self,
        *,
        clients: ClusterClients,
        settings: ControllerSettings,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        self.clients = clients
        self.settings = settings
        self.watch_factory = watch_factory

    def run(
        self,
        *,
        name: str,
        namespace: str,
        options: RestoreOptions,
        timeout_seconds: float | None = None,
        watch_timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS,
        cancel_event: threading.Event | None = None,
    ) -> RestoreResult:
        self.submit(name=name, namespace=namespace, options=options)
        return self.observe(
            name=name,
            namespace=namespace,
            timeout_seconds=timeout_seconds,
            watch_timeout_seconds=watch_timeout_seconds,
            cancel_event=cancel_event,
        )

    def submit(self, *, name: str, namespace: str, options: RestoreOptions) -> dict[str, Any]:
        body = build_restore_body(name=name, namespace=namespace, options=options, settings=self.settings)
        created = create_controller_object(
            self.clients,
            self.settings,
            plural=RESTORES,
            namespace=namespace,
            body=body,
        )
        logger.info("Submitted restore %s/%s for backup %s", namespace, name, options.backup_name)
        return created

    def observe(
        self,
        *,
        name: str,
        namespace: str,
        timeout_seconds: float | None = None,
        watch_timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS,
        cancel_event: threading.Event | None = None,
    ) -> RestoreResult:
        """Wait for the watch reader's terminal signal, then decide from a fresh read."""
        terminal = threading.Event()
        stop = threading.Event()
        failures: list[BaseException] = []
        active_watchers: list[Any] = []

        reader = threading.Thread(
            target=self._watch_until_terminal,
            kwargs={
                "name": name,
                "namespace": namespace,
                "terminal": terminal,
                "stop": stop,
                "failures": failures,
                "active_watchers": active_watchers,
                "watch_timeout_seconds": watch_timeout_seconds,
            },
            name=f"restore-watch-{name}",
            daemon=True,
        )
        logger.info("Watching restore %s/%s", namespace, name)
        reader.start()
        try:
            signalled = wait_for(
                terminal.is_set,
                interval_seconds=SIGNAL_POLL_INTERVAL_SECONDS,
                timeout_seconds=timeout_seconds,
                cancel_event=cancel_event,
            )
        finally:
            stop.set()
            # Watch.stop() also shuts down the socket of a blocked read.
            for watcher in list(active_watchers):
                watcher.stop()
            reader.join(READER_JOIN_TIMEOUT_SECONDS)
            if reader.is_alive():
                logger.warning("Restore watch reader for %s/%s did not exit after stop", namespace, name)

        if failures:
            raise failures[0]

        result = self._final_result(name=name, namespace=namespace)
        if not signalled and not result.succeeded:
            logger.warning("Restore %s/%s did not reach a terminal phase in time", namespace, name)
            return RestoreResult(
                name=name,
                namespace=namespace,
                phase=result.phase,
                succeeded=False,
                message=f"restore did not reach a terminal phase within {timeout_seconds:g}s "
                f"(last phase: {result.phase or 'unreadable'})",
            )
        return result

    def _watch_until_terminal(
        self,
        *,
        name: str,
        namespace: str,
        terminal: threading.Event,
        stop: threading.Event,
        failures: list[BaseException],
        active_watchers: list[Any],
        watch_timeout_seconds: int,
    ) -> None:
        try:
            # The server closes each watch after watch_timeout_seconds; reopen until signalled.
            while not terminal.is_set() and not stop.is_set():
                watcher = self.watch_factory()
                active_watchers.append(watcher)
                try:
                    if stop.is_set():
                        return
                    for event in watcher.stream(
                        self.clients.custom_api.list_namespaced_custom_object,
                        group=self.settings.api_group,
                        version=self.settings.api_version,
                        namespace=namespace,
                        plural=RESTORES,
                        field_selector=name_field_selector(name),
                        timeout_seconds=watch_timeout_seconds,
                        _request_timeout=watch_timeout_seconds + WATCH_REQUEST_GRACE_SECONDS,
                    ):
                        if stop.is_set():
                            return
                        phase = nested_value(event.get("object") or {}, "status", "phase")
                        if not isinstance(phase, str) or not phase:
                            continue
                        logger.info("Restore %s status: %s", name, phase)
                        if classify_phase(phase) is not PhaseOutcome.PENDING:
                            terminal.set()
                            return
                finally:
                    watcher.stop()
                    active_watchers.remove(watcher)
        except Exception as error:  # pylint: disable=broad-except
            # Reads interrupted by observe() shutting the socket down are expected.
            if not stop.is_set():
                failures.append(error)
            terminal.set()

    def _final_result(self, *, name: str, namespace: str) -> RestoreResult:
        try:
            restore = get_controller_object(
                self.clients,
                self.settings,
                plural=RESTORES,
                namespace=namespace,
                name=name,
            )
        except (ApiException, ResourceNotFoundError) as error:
            return RestoreResult(
                name=name,
                namespace=namespace,
                phase=None,
                succeeded=False,
                message=f"restore phase unreadable: {_error_message(error)}",
            )

        phase = nested_value(restore, "status", "phase")
        if not isinstance(phase, str) or not phase:
            return RestoreResult(
                name=name,
                namespace=namespace,
                phase=None,
                succeeded=False,
                message="restore phase unreadable",
            )

        logger.info("Final restore status: %s", phase)
        if phase == COMPLETED_PHASE:
            return RestoreResult(name=name, namespace=namespace, phase=phase, succeeded=True)
        return RestoreResult(
            name=name,
            namespace=namespace,
            phase=phase,
            succeeded=False,
            message=f"restore finished in phase {phase}",
        )


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
