from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import json
import logging
import os
import shutil
import subprocess
import tempfile
from typing import Any

import yaml

from .config import ControllerSettings
from .models import HelmRelease

DEFAULT_CHART_INSTALL_TIMEOUT_SECONDS = 15 * 60
HELM_QUERY_TIMEOUT_SECONDS = 120

logger = logging.getLogger(__name__)


class HelmCommandError(RuntimeError):
    """Raised when the helm binary is missing or exits with an error."""


class HelmReleaseLookupError(RuntimeError):
    """Raised when the controller release cannot be identified unambiguously."""


@dataclass(frozen=True)
class HelmCli:
    kubeconfig_path: str | None = None
    context: str | None = None

    def run(self, *args: str, timeout_seconds: int = HELM_QUERY_TIMEOUT_SECONDS) -> str:
        helm = shutil.which("helm")
        if helm is None:
            raise HelmCommandError("helm is required for chart cloning but was not found in PATH")

        command = [helm, *self._connection_args(), *args]
        try:
            completed = subprocess.run(
                command,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired as error:
            raise HelmCommandError(f"helm {' '.join(args[:2])} timed out after {timeout_seconds}s") from error
        if completed.returncode != 0:
            raise HelmCommandError(completed.stderr.strip() or completed.stdout.strip() or "helm command failed")
        return completed.stdout

    def run_json(self, *args: str) -> Any:
        output = self.run(*args, "--output", "json")
        try:
            return json.loads(output) if output.strip() else None
        except json.JSONDecodeError as error:
            raise HelmCommandError(f"helm {' '.join(args[:2])} returned invalid JSON: {error}") from error

    def _connection_args(self) -> list[str]:
        connection: list[str] = []
        kubeconfig_path = self.kubeconfig_path.strip() if self.kubeconfig_path else None
        if kubeconfig_path:
            kubeconfig_file = Path(kubeconfig_path).expanduser()
            if not kubeconfig_file.is_file():
                raise HelmCommandError(f"kubeconfig path is not a file: {kubeconfig_file}")
            if not os.access(kubeconfig_file, os.R_OK):
                raise HelmCommandError(f"kubeconfig path is not readable: {kubeconfig_file}")
            connection.extend(["--kubeconfig", str(kubeconfig_file)])
        if self.context:
            connection.extend(["--kube-context", self.context])
        return connection


class ChartCloner:
    """Installs the controller's Helm release from the source cluster into the destination."""

    def __init__(self, *, source: HelmCli, destination: HelmCli, settings: ControllerSettings) -> None:
        self.source = source
        self.destination = destination
        self.settings = settings

    def clone(
        self,
        *,
        destination_namespace: str,
        release_name: str | None = None,
        timeout_seconds: int = DEFAULT_CHART_INSTALL_TIMEOUT_SECONDS,
    ) -> HelmRelease:
        release = self.find_release(release_name)
        values = self.release_values(release)
        chart_reference = f"{self.settings.chart_repository_name}/{release.chart}"

        self.destination.run(
            "repo",
            "add",
            self.settings.chart_repository_name,
            self.settings.chart_repository_url,
            "--force-update",
        )
        self.destination.run("repo", "update", self.settings.chart_repository_name)

        values_path = _write_values_file(values)
        try:
            logger.info(
                "Installing %s %s as release %s in namespace %s",
                chart_reference,
                release.version,
                release.name,
                destination_namespace,
            )
            self.destination.run(
                "upgrade",
                "--install",
                release.name,
                chart_reference,
                "--namespace",
                destination_namespace,
                "--create-namespace",
                "--version",
                release.version,
                "--values",
                str(values_path),
                "--wait",
                "--wait-for-jobs",
                "--timeout",
                f"{timeout_seconds}s",
                timeout_seconds=timeout_seconds + HELM_QUERY_TIMEOUT_SECONDS,
            )
        finally:
            values_path.unlink(missing_ok=True)

        return HelmRelease(
            name=release.name,
            namespace=destination_namespace,
            chart=release.chart,
            version=release.version,
        )

    def find_release(self, release_name: str | None = None) -> HelmRelease:
        entries = self.source.run_json("list", "--all-namespaces", "--deployed") or []
        if release_name:
            matches = [entry for entry in entries if entry.get("name") == release_name]
            if not matches:
                raise HelmReleaseLookupError(f"Helm release {release_name} was not found in the source cluster")
        else:
            short_name = self.settings.controller_name
            matches = [entry for entry in entries if short_name in str(entry.get("chart") or "")]
            if not matches:
                raise HelmReleaseLookupError(
                    f"no deployed Helm release with a {short_name} chart was found in the source cluster; "
                    "specify the release name explicitly"
                )
            if len(matches) > 1:
                names = ", ".join(sorted(f"{entry.get('namespace')}/{entry.get('name')}" for entry in matches))
                raise HelmReleaseLookupError(
                    f"found multiple Helm releases with a {short_name} chart ({names}); "
                    "specify the release name explicitly"
                )

        entry = matches[0]
        metadata = self.source.run_json("get", "metadata", entry["name"], "--namespace", entry["namespace"]) or {}
        chart = metadata.get("chart")
        version = metadata.get("version")
        if not chart or not version:
            raise HelmReleaseLookupError(f"Helm release {entry['name']} metadata is missing chart name or version")
        return HelmRelease(name=entry["name"], namespace=entry["namespace"], chart=chart, version=version)

    def release_values(self, release: HelmRelease) -> dict[str, Any]:
        values = self.source.run_json("get", "values", release.name, "--namespace", release.namespace, "--all")
        return values or {}


def _write_values_file(values: dict[str, Any]) -> Path:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        yaml.safe_dump(values, handle, default_flow_style=False)
        path = Path(handle.name)
    # Values may carry cloud credentials.
    os.chmod(path, 0o600)
    return path
