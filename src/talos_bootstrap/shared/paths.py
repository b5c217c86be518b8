"""Artifact paths for talos-bootstrap.

Generated files keep the names talosctl and kubectl expect so an operator
can pick up where a failed run stopped.
"""

import tempfile
from dataclasses import dataclass
from pathlib import Path

# Generated artifact file names
SECRETS_FILE = "secrets.yaml"
TALOSCONFIG_FILE = "talosconfig"
KUBECONFIG_FILE = "kubeconfig"
CONTROLPLANE_FILE = "controlplane.yaml"

# Bundled machine-config patch templates
TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
PATCH_TEMPLATE = "patch.yaml"
CONTROLPLANE_PATCH_TEMPLATE = "patch_controlplane.yaml"


@dataclass(frozen=True)
class ArtifactPaths:
    """Locations of every file the pipeline writes into its work directory."""

    workdir: Path

    @property
    def secrets(self) -> Path:
        return self.workdir / SECRETS_FILE

    @property
    def talosconfig(self) -> Path:
        return self.workdir / TALOSCONFIG_FILE

    @property
    def kubeconfig(self) -> Path:
        return self.workdir / KUBECONFIG_FILE

    @property
    def controlplane(self) -> Path:
        return self.workdir / CONTROLPLANE_FILE


def make_scratch_dir(prefix: str = "talos-bootstrap-") -> Path:
    """Create a process-local scratch directory.

    Rendered patches and temporary manifests go here, never into the work
    directory, so a failed render cannot clobber a previous good config.
    """
    return Path(tempfile.mkdtemp(prefix=prefix))
