"""talosctl wrapper for the bootstrap pipeline.

Implements the ClusterTool interface on top of the talosctl binary. Every
command after secret generation runs against the generated talosconfig.
"""

from __future__ import annotations

from pathlib import Path

from .tools import CommandRunner

# Per-call timeout for quick status queries (version, etcd members)
QUERY_TIMEOUT_SECONDS = 15


class TalosctlClient:
    """Drive a Talos node with talosctl."""

    def __init__(self, talosconfig: Path, runner: CommandRunner | None = None):
        """Initialize client.

        Args:
            talosconfig: Path to the talosconfig written by ``gen config``.
            runner: Command runner (default: a new CommandRunner).
        """
        self.talosconfig = talosconfig
        self.runner = runner or CommandRunner()

    def _talosctl_cmd(self) -> list[str]:
        """Build base talosctl command."""
        return ["talosctl", "--talosconfig", str(self.talosconfig)]

    def gen_secrets(self, secrets_path: Path) -> None:
        """Generate cluster secrets, overwriting any existing bundle."""
        self.runner.run(
            ["talosctl", "gen", "secrets", "--force", "--output-file", str(secrets_path)],
            operation="talosctl gen secrets",
            target=str(secrets_path),
        )

    def gen_config(
        self,
        cluster_name: str,
        endpoint: str,
        secrets_path: Path,
        output_dir: Path,
        patch: Path,
        controlplane_patch: Path,
        kubernetes_version: str,
    ) -> None:
        """Generate machine configs and talosconfig from secrets and patches."""
        argv = [
            "talosctl",
            "gen",
            "config",
            cluster_name,
            endpoint,
            "--with-secrets",
            str(secrets_path),
            "--output-dir",
            str(output_dir),
            "--config-patch-control-plane",
            f"@{controlplane_patch}",
            "--config-patch",
            f"@{patch}",
            "--force",
        ]
        if kubernetes_version:
            argv.extend(["--kubernetes-version", kubernetes_version])
        self.runner.run(argv, operation="talosctl gen config", target=endpoint)

    def configure_endpoint(self, node: str) -> None:
        """Point the talosconfig context at the node."""
        self.runner.run(
            self._talosctl_cmd() + ["config", "endpoint", node],
            operation="talosctl config endpoint",
            target=node,
        )
        self.runner.run(
            self._talosctl_cmd() + ["config", "node", node],
            operation="talosctl config node",
            target=node,
        )

    def apply_config(self, node: str, config_file: Path) -> None:
        """Apply a machine config to a node in maintenance mode."""
        self.runner.run(
            self._talosctl_cmd()
            + ["apply-config", "--insecure", "--nodes", node, "--file", str(config_file)],
            operation="talosctl apply-config",
            target=node,
        )

    def version(self, node: str) -> bool:
        """Whether the node's apid answers a version query."""
        return self.runner.succeeds(
            self._talosctl_cmd() + ["--nodes", node, "version"],
            timeout=QUERY_TIMEOUT_SECONDS,
        )

    def is_bootstrapped(self, node: str) -> bool:
        """Whether etcd on the node already has members.

        A freshly configured control-plane node has no running etcd until
        bootstrap is called, so the query fails.
        """
        return self.runner.succeeds(
            self._talosctl_cmd() + ["--nodes", node, "etcd", "members"],
            timeout=QUERY_TIMEOUT_SECONDS,
        )

    def bootstrap(self, node: str) -> None:
        """Bootstrap etcd on the node. Must run once per cluster lifetime."""
        self.runner.run(
            self._talosctl_cmd() + ["bootstrap", "--nodes", node],
            operation="talosctl bootstrap",
            target=node,
        )

    def kubeconfig(self, node: str, output_dir: Path) -> None:
        """Fetch the admin kubeconfig into output_dir, overwriting it."""
        self.runner.run(
            self._talosctl_cmd() + ["--nodes", node, "kubeconfig", str(output_dir), "--force"],
            operation="talosctl kubeconfig",
            target=node,
        )
