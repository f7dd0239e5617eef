from __future__ import annotations

from dataclasses import dataclass, field
import os

DEFAULT_ITEM_OPERATION_TIMEOUT_SECONDS = 4 * 60 * 60


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_optional_float(name: str) -> float | None:
    value = _env_optional(name)
    return float(value) if value is not None else None


@dataclass(frozen=True)
class ControllerSettings:
    api_group: str = "velero.io"
    api_version: str = "v1"
    controller_name: str = os.getenv("VMIG_CONTROLLER_NAME", "velero")
    credentials_volume_name: str = "cloud-credentials"
    implicit_credential_key: str = "cloud"
    storage_class_config_map_name: str = "change-storage-class-config"
    chart_repository_name: str = "vmware-tanzu"
    chart_repository_url: str = os.getenv(
        "VMIG_CHART_REPOSITORY_URL",
        "https://vmware-tanzu.github.io/helm-charts",
    )
    controller_pod_namespace: str | None = _env_optional("VMIG_CONTROLLER_POD_NAMESPACE")

    @property
    def api_version_string(self) -> str:
        return f"{self.api_group}/{self.api_version}"

    @property
    def controller_label_selector(self) -> str:
        return f"name={self.controller_name}"


@dataclass(frozen=True)
class RestoreOptions:
    backup_name: str
    included_namespaces: tuple[str, ...] = ()
    excluded_namespaces: tuple[str, ...] = ()
    included_resources: tuple[str, ...] = ("*",)
    excluded_resources: tuple[str, ...] = ()
    include_cluster_resources: bool | None = None
    label_selector: dict[str, str] = field(default_factory=dict)
    or_label_selectors: dict[str, str] = field(default_factory=dict)
    namespace_mapping: dict[str, str] = field(default_factory=dict)
    restore_pvs: bool = True
    preserve_node_ports: bool = True
    existing_resource_policy: str = "none"
    item_operation_timeout_seconds: int = DEFAULT_ITEM_OPERATION_TIMEOUT_SECONDS

    def validate(self) -> None:
        if not self.backup_name.strip():
            raise ValueError("backup_name must not be empty")
        if self.item_operation_timeout_seconds <= 0:
            raise ValueError("item_operation_timeout_seconds must be positive")
        if self.label_selector and self.or_label_selectors:
            raise ValueError("label_selector and or_label_selectors cannot be combined in one restore")


@dataclass(frozen=True)
class MigrationConfig:
    restore_name: str
    restore_options: RestoreOptions
    source_namespace: str | None = None
    destination_namespace: str | None = None
    source_kubeconfig_path: str | None = _env_optional("VMIG_SOURCE_KUBECONFIG")
    source_context: str | None = _env_optional("VMIG_SOURCE_CONTEXT")
    destination_kubeconfig_path: str | None = _env_optional("VMIG_DESTINATION_KUBECONFIG")
    destination_context: str | None = _env_optional("VMIG_DESTINATION_CONTEXT")
    backup_wait_timeout_seconds: float = float(os.getenv("VMIG_BACKUP_WAIT_TIMEOUT_SECONDS", "300"))
    backup_poll_interval_seconds: float = 5.0
    restore_timeout_seconds: float | None = _env_optional_float("VMIG_RESTORE_TIMEOUT_SECONDS")
    watch_timeout_seconds: int = int(os.getenv("VMIG_WATCH_TIMEOUT_SECONDS", "300"))
    chart_install_timeout_seconds: int = int(os.getenv("VMIG_CHART_INSTALL_TIMEOUT_SECONDS", "900"))
    clone_chart_if_missing: bool = False
    source_helm_release_name: str | None = None
    controller: ControllerSettings = field(default_factory=ControllerSettings)

    def validate(self) -> None:
        if not self.restore_name.strip():
            raise ValueError("restore_name must not be empty")
        if self.backup_wait_timeout_seconds <= 0:
            raise ValueError("backup_wait_timeout_seconds must be positive")
        if self.backup_poll_interval_seconds <= 0:
            raise ValueError("backup_poll_interval_seconds must be positive")
        if self.restore_timeout_seconds is not None and self.restore_timeout_seconds <= 0:
            raise ValueError("restore_timeout_seconds must be positive when set")
        if self.watch_timeout_seconds <= 0:
            raise ValueError("watch_timeout_seconds must be positive")
        if self.chart_install_timeout_seconds <= 0:
            raise ValueError("chart_install_timeout_seconds must be positive")
        self.restore_options.validate()
