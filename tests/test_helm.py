from __future__ import annotations

import json
from pathlib import Path
import subprocess

import pytest
import yaml

from velero_migrator.config import ControllerSettings
from velero_migrator.helm import ChartCloner, HelmCli, HelmCommandError, HelmReleaseLookupError


class _FakeHelm:
    """Replays canned helm output and records every command line."""

    def __init__(self, releases: list[dict], *, values: dict | None = None) -> None:
        self.releases = releases
        self.values = values or {}
        self.commands: list[list[str]] = []
        self.values_file_content: dict | None = None
        self.values_file_mode: int | None = None

    def run(self, command: list[str], **_kwargs) -> subprocess.CompletedProcess[str]:
        self.commands.append(command)
        args = command[1:]
        stdout = ""
        if "list" in args:
            stdout = json.dumps(self.releases)
        elif args[:2] == ["get", "metadata"] or "metadata" in args:
            name = args[args.index("metadata") + 1]
            release = next(entry for entry in self.releases if entry["name"] == name)
            stdout = json.dumps({"name": name, "chart": release["chart"].rsplit("-", 1)[0], "version": "5.1.0"})
        elif "values" in args and "get" in args:
            stdout = json.dumps(self.values)
        elif "upgrade" in args:
            values_path = Path(args[args.index("--values") + 1])
            self.values_file_content = yaml.safe_load(values_path.read_text(encoding="utf-8"))
            self.values_file_mode = values_path.stat().st_mode & 0o777
        return subprocess.CompletedProcess(args=command, returncode=0, stdout=stdout, stderr="")


def _release(name: str, chart: str, namespace: str = "velero") -> dict:
    return {"name": name, "namespace": namespace, "chart": chart, "status": "deployed"}


def _cloner() -> ChartCloner:
    return ChartCloner(
        source=HelmCli(context="source"),
        destination=HelmCli(context="destination"),
        settings=ControllerSettings(),
    )


@pytest.fixture
def helm_on_path(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("velero_migrator.helm.shutil.which", lambda _: "/usr/local/bin/helm")


def test_helm_cli_with_missing_binary_raises_helm_command_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("velero_migrator.helm.shutil.which", lambda _: None)

    with pytest.raises(HelmCommandError, match="helm is required"):
        HelmCli().run("list")


def test_helm_cli_with_nonzero_exit_raises_helm_command_error(
    monkeypatch: pytest.MonkeyPatch,
    helm_on_path: None,
) -> None:
    monkeypatch.setattr(
        "velero_migrator.helm.subprocess.run",
        lambda *_args, **_kwargs: subprocess.CompletedProcess(
            args=["helm"],
            returncode=1,
            stdout="",
            stderr="Error: Kubernetes cluster unreachable",
        ),
    )

    with pytest.raises(HelmCommandError, match="cluster unreachable"):
        HelmCli().run("list")


def test_helm_cli_with_kubeconfig_and_context_passes_connection_flags(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    helm_on_path: None,
) -> None:
    kubeconfig = tmp_path / "config"
    kubeconfig.write_text("apiVersion: v1\nkind: Config\n", encoding="utf-8")
    commands: list[list[str]] = []

    def _run(command: list[str], **_kwargs) -> subprocess.CompletedProcess[str]:
        commands.append(command)
        return subprocess.CompletedProcess(args=command, returncode=0, stdout="[]", stderr="")

    monkeypatch.setattr("velero_migrator.helm.subprocess.run", _run)

    HelmCli(kubeconfig_path=str(kubeconfig), context="dst").run_json("list")

    assert commands == [
        [
            "/usr/local/bin/helm",
            "--kubeconfig",
            str(kubeconfig),
            "--kube-context",
            "dst",
            "list",
            "--output",
            "json",
        ]
    ]


def test_helm_cli_with_missing_kubeconfig_file_raises_helm_command_error(helm_on_path: None, tmp_path: Path) -> None:
    with pytest.raises(HelmCommandError, match="not a file"):
        HelmCli(kubeconfig_path=str(tmp_path / "missing")).run("list")


def test_find_release_with_single_matching_chart_returns_release(
    monkeypatch: pytest.MonkeyPatch,
    helm_on_path: None,
) -> None:
    helm = _FakeHelm([_release("ingress", "ingress-nginx-4.8.0"), _release("backup", "velero-5.1.0")])
    monkeypatch.setattr("velero_migrator.helm.subprocess.run", helm.run)

    release = _cloner().find_release()

    assert (release.name, release.namespace, release.chart, release.version) == ("backup", "velero", "velero", "5.1.0")


def test_find_release_without_matching_chart_raises_lookup_error(
    monkeypatch: pytest.MonkeyPatch,
    helm_on_path: None,
) -> None:
    helm = _FakeHelm([_release("ingress", "ingress-nginx-4.8.0")])
    monkeypatch.setattr("velero_migrator.helm.subprocess.run", helm.run)

    with pytest.raises(HelmReleaseLookupError, match="no deployed Helm release"):
        _cloner().find_release()


def test_find_release_with_ambiguous_matches_raises_lookup_error(
    monkeypatch: pytest.MonkeyPatch,
    helm_on_path: None,
) -> None:
    helm = _FakeHelm([_release("velero-a", "velero-5.1.0"), _release("velero-b", "velero-5.0.2", namespace="ops")])
    monkeypatch.setattr("velero_migrator.helm.subprocess.run", helm.run)

    with pytest.raises(HelmReleaseLookupError, match="multiple Helm releases"):
        _cloner().find_release()


def test_find_release_with_explicit_name_skips_chart_search(
    monkeypatch: pytest.MonkeyPatch,
    helm_on_path: None,
) -> None:
    helm = _FakeHelm([_release("velero-a", "velero-5.1.0"), _release("velero-b", "velero-5.0.2", namespace="ops")])
    monkeypatch.setattr("velero_migrator.helm.subprocess.run", helm.run)

    release = _cloner().find_release("velero-b")

    assert (release.name, release.namespace) == ("velero-b", "ops")


def test_clone_installs_same_chart_version_with_source_values_and_waits(
    monkeypatch: pytest.MonkeyPatch,
    helm_on_path: None,
) -> None:
    helm = _FakeHelm(
        [_release("backup", "velero-5.1.0")],
        values={"configuration": {"backupStorageLocation": [{"bucket": "b1"}]}, "snapshotsEnabled": False},
    )
    monkeypatch.setattr("velero_migrator.helm.subprocess.run", helm.run)

    installed = _cloner().clone(destination_namespace="velero-dst")

    assert installed.namespace == "velero-dst"
    assert installed.version == "5.1.0"
    upgrade = next(command for command in helm.commands if "upgrade" in command)
    assert upgrade[upgrade.index("--kube-context") + 1] == "destination"
    assert upgrade[upgrade.index("upgrade") :][:4] == ["upgrade", "--install", "backup", "vmware-tanzu/velero"]
    assert upgrade[upgrade.index("--version") + 1] == "5.1.0"
    assert upgrade[upgrade.index("--namespace") + 1] == "velero-dst"
    assert upgrade[upgrade.index("--timeout") + 1] == "900s"
    assert "--wait" in upgrade
    assert "--wait-for-jobs" in upgrade
    assert "--create-namespace" in upgrade
    assert helm.values_file_content == {
        "configuration": {"backupStorageLocation": [{"bucket": "b1"}]},
        "snapshotsEnabled": False,
    }
    assert helm.values_file_mode == 0o600
    values_path = Path(upgrade[upgrade.index("--values") + 1])
    assert not values_path.exists()
    repo_add = next(command for command in helm.commands if "add" in command)
    assert "https://vmware-tanzu.github.io/helm-charts" in repo_add
    get_values = next(command for command in helm.commands if "values" in command and "get" in command)
    assert "--all" in get_values
    assert get_values[get_values.index("--kube-context") + 1] == "source"
