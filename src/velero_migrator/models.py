from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackupRef:
    namespace: str
    name: str


@dataclass(frozen=True)
class ReconcileResult:
    source_location: str
    destination_location: str
    created: bool
    credential_secret: str | None = None


@dataclass(frozen=True)
class StorageClassMapping:
    config_map_name: str
    namespace: str
    destination_default: str
    mapping: dict[str, str]
    created: bool


@dataclass(frozen=True)
class RestoreResult:
    name: str
    namespace: str
    phase: str | None
    succeeded: bool
    message: str = ""


@dataclass(frozen=True)
class HelmRelease:
    name: str
    namespace: str
    chart: str
    version: str


@dataclass(frozen=True)
class MigrationReport:
    source_namespace: str
    destination_namespace: str
    storage_location: ReconcileResult
    storage_class_mapping: StorageClassMapping | None
    restore: RestoreResult
