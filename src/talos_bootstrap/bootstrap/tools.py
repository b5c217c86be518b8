"""External tool seam for the bootstrap pipeline.

The pipeline never calls subprocess directly. It talks to talosctl, kubectl,
helm and git through the capability interfaces declared here; the real
clients shell out through CommandRunner and tests substitute fakes.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from ..errors import tool_error
from ..shared.logging import get_logger

if TYPE_CHECKING:
    from .helm import ReleaseSpec

logger = get_logger(__name__)


class CommandRunner:
    """Run external commands and turn failures into ToolInvocationError."""

    def __init__(self, env: Mapping[str, str] | None = None, timeout: float | None = None):
        """Initialize runner.

        Args:
            env: Extra environment for every command, layered over os.environ.
            timeout: Default per-command timeout in seconds (None = no limit).
        """
        self.env = {**os.environ, **env} if env else None
        self.timeout = timeout

    def run(
        self,
        argv: Sequence[str],
        operation: str,
        target: str | None = None,
        input: str | None = None,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess:
        """Run a command, raising on non-zero exit.

        Args:
            argv: Command and arguments.
            operation: Operation name for error messages.
            target: What the operation acts on, for error messages.
            input: Optional text fed to stdin.
            cwd: Working directory.
            timeout: Per-call timeout override.

        Returns:
            The completed process (stdout/stderr captured as text).

        Raises:
            ToolInvocationError: If the tool is missing, times out or fails.
        """
        logger.debug("running command", operation=operation, target=target, argv=list(argv))
        try:
            result = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                input=input,
                cwd=cwd,
                env=self.env,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError as e:
            raise tool_error(operation, target, None, f"{argv[0]} not found") from e
        except subprocess.TimeoutExpired as e:
            raise tool_error(operation, target, None, f"timed out after {e.timeout}s") from e

        if result.returncode != 0:
            raise tool_error(operation, target, result.returncode, result.stderr or result.stdout)
        return result

    def succeeds(self, argv: Sequence[str], timeout: float | None = None) -> bool:
        """Run a command and report only whether it exited zero."""
        try:
            result = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                env=self.env,
                timeout=timeout or self.timeout,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0


class ClusterTool(Protocol):
    """Talos OS and control-plane operations."""

    def gen_secrets(self, secrets_path: Path) -> None: ...

    def gen_config(
        self,
        cluster_name: str,
        endpoint: str,
        secrets_path: Path,
        output_dir: Path,
        patch: Path,
        controlplane_patch: Path,
        kubernetes_version: str,
    ) -> None: ...

    def configure_endpoint(self, node: str) -> None: ...

    def apply_config(self, node: str, config_file: Path) -> None: ...

    def version(self, node: str) -> bool: ...

    def is_bootstrapped(self, node: str) -> bool: ...

    def bootstrap(self, node: str) -> None: ...

    def kubeconfig(self, node: str, output_dir: Path) -> None: ...


class KubeTool(Protocol):
    """Kubernetes API operations."""

    def list_nodes(self) -> bool: ...

    def running_pod_count(self, namespace: str, selector: str) -> int: ...

    def has_api_resource(self, resource: str, api_group: str = "") -> bool: ...

    def wait_all_pods_ready(self, timeout_seconds: int) -> None: ...

    def wait_deployment_available(
        self, name: str, namespace: str, timeout_seconds: int
    ) -> None: ...

    def apply_manifests(self, manifests: list[dict[str, Any]], label: str) -> None: ...

    def delete_manifests(self, manifests: list[dict[str, Any]], label: str) -> None: ...

    def get(self, *args: str) -> str: ...

    def api_resources(self) -> str: ...


class PackageInstaller(Protocol):
    """Helm release operations."""

    def add_repo(self, name: str, url: str) -> None: ...

    def update_repos(self) -> None: ...

    def upgrade_install(self, release: ReleaseSpec) -> None: ...


class SourceFetcher(Protocol):
    """Fetch chart sources that are not published to a Helm repository."""

    def clone(self, url: str, ref: str, dest: Path) -> Path: ...


class GitClient:
    """Shallow-clone repositories with git."""

    def __init__(self, runner: CommandRunner | None = None):
        self.runner = runner or CommandRunner()

    def clone(self, url: str, ref: str, dest: Path) -> Path:
        """Clone ``url`` at branch or tag ``ref`` into ``dest``.

        Returns:
            The checkout directory.
        """
        self.runner.run(
            ["git", "clone", "--depth", "1", "--branch", ref, url, str(dest)],
            operation="git clone",
            target=f"{url}@{ref}",
        )
        return dest
