"""Shared modules for talos-bootstrap.

Logging setup and artifact path management used by the CLI and the
bootstrap pipeline.
"""

from .logging import configure_logging, get_logger
from .paths import (
    CONTROLPLANE_PATCH_TEMPLATE,
    KUBECONFIG_FILE,
    PATCH_TEMPLATE,
    SECRETS_FILE,
    TALOSCONFIG_FILE,
    TEMPLATES_DIR,
    ArtifactPaths,
    make_scratch_dir,
)

__all__ = [
    # Paths
    "ArtifactPaths",
    "SECRETS_FILE",
    "TALOSCONFIG_FILE",
    "KUBECONFIG_FILE",
    "TEMPLATES_DIR",
    "PATCH_TEMPLATE",
    "CONTROLPLANE_PATCH_TEMPLATE",
    "make_scratch_dir",
    # Logging
    "configure_logging",
    "get_logger",
]
