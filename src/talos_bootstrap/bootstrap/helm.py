"""helm wrapper for the bootstrap pipeline.

Every release goes through ``helm upgrade --install`` so re-running the
pipeline converges instead of failing on existing releases. Values are
written to a temporary YAML file rather than flattened into --set flags.
"""

from __future__ import annotations

import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .tools import CommandRunner

DEFAULT_RELEASE_TIMEOUT_SECONDS = 600


@dataclass
class ReleaseSpec:
    """A Helm release to install or upgrade."""

    name: str
    chart: str
    namespace: str
    version: str | None = None
    create_namespace: bool = False
    values: Mapping[str, Any] = field(default_factory=dict)
    wait: bool = True
    wait_for_jobs: bool = True
    timeout_seconds: int = DEFAULT_RELEASE_TIMEOUT_SECONDS


class HelmClient:
    """Manage Helm repositories and releases."""

    def __init__(self, kubeconfig: Path | str | None = None, runner: CommandRunner | None = None):
        """Initialize client.

        Args:
            kubeconfig: Path to kubeconfig file.
            runner: Command runner (default: a new CommandRunner).
        """
        self.kubeconfig = kubeconfig
        self.runner = runner or CommandRunner()

    def _helm_cmd(self) -> list[str]:
        """Build base helm command."""
        cmd = ["helm"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", str(self.kubeconfig)])
        return cmd

    def add_repo(self, name: str, url: str) -> None:
        """Add a chart repository, updating it if it already exists."""
        self.runner.run(
            self._helm_cmd() + ["repo", "add", name, url, "--force-update"],
            operation="helm repo add",
            target=name,
        )

    def update_repos(self) -> None:
        self.runner.run(self._helm_cmd() + ["repo", "update"], operation="helm repo update")

    def upgrade_install(self, release: ReleaseSpec) -> None:
        """Install a release, or upgrade it in place if it exists."""
        argv = self._helm_cmd() + [
            "upgrade",
            "--install",
            release.name,
            release.chart,
            "--namespace",
            release.namespace,
        ]
        if release.version:
            argv.extend(["--version", release.version])
        if release.create_namespace:
            argv.append("--create-namespace")
        if release.wait:
            argv.extend(["--wait", "--timeout", f"{release.timeout_seconds}s"])
        if release.wait_for_jobs:
            argv.append("--wait-for-jobs")

        with tempfile.TemporaryDirectory(prefix="talos-bootstrap-helm-") as tmpdir:
            if release.values:
                values_file = Path(tmpdir) / "values.yaml"
                with open(values_file, "w") as f:
                    yaml.safe_dump(dict(release.values), f, default_flow_style=False)
                argv.extend(["--values", str(values_file)])

            self.runner.run(argv, operation="helm upgrade --install", target=release.name)
