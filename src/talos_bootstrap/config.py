"""Deployment configuration.

The deployment is described by a fixed set of named parameters read once at
startup. Values come from an optional YAML file and are overridden by
environment variables; the resulting DeploymentConfig is immutable and
passed explicitly to every component.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from .errors import ValidationError

# Add-on identifiers, in installation priority order
ADDON_TALOS_CCM = "talos-ccm"
ADDON_CILIUM = "cilium"
ADDON_LOCAL_PATH = "local-path-provisioner"
ADDON_METALLB = "metallb"

ADDON_PRIORITY = (ADDON_TALOS_CCM, ADDON_CILIUM, ADDON_LOCAL_PATH, ADDON_METALLB)

DEFAULT_CLUSTER_NAME = "talos1"

# Environment variable mappings for scalar fields
ENV_VARS = {
    "node_address": "MASTER_IP",
    "kubernetes_version": "KUBERNETES_VERSION",
    "registry_username": "HARBOR_CONTAINERD_USERNAME",
    "registry_password": "HARBOR_CONTAINERD_PASSWORD",
    "registry_host": "HARBOR_REGISTRY_HOST",
    "install_image": "TALOS_INSTALL_IMAGE",
    "local_cidr": "LOCAL_CIDR",
    "cluster_name": "CLUSTER_NAME",
    "lb_pool": "METALLB_DEFAULT_IP_POOL",
}

# Environment variable mappings for add-on versions
ADDON_ENV_VARS = {
    ADDON_TALOS_CCM: "TALOS_CCM_VERSION",
    ADDON_CILIUM: "CILIUM_VERSION",
    ADDON_LOCAL_PATH: "LOCAL_PATH_PROVISIONER_VERSION",
    ADDON_METALLB: "METALLB_VERSION",
}


@dataclass(frozen=True)
class DeploymentConfig:
    """Immutable record of every deployment input."""

    node_address: str = ""
    kubernetes_version: str = ""
    registry_username: str = ""
    registry_password: str = ""
    registry_host: str = ""
    install_image: str = ""
    local_cidr: str = ""
    cluster_name: str = DEFAULT_CLUSTER_NAME
    lb_pool: str = ""
    addons: Mapping[str, str] = field(default_factory=dict)

    # Track where each value came from
    sources: Mapping[str, str] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "addons", MappingProxyType(dict(self.addons)))
        object.__setattr__(self, "sources", MappingProxyType(dict(self.sources)))

    def addon_version(self, name: str) -> str:
        """Version configured for an add-on, or "" to skip it."""
        return self.addons.get(name, "")

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self.sources.get(key, "default")

    @property
    def cluster_endpoint(self) -> str:
        return f"https://{self.node_address}:6443"

    def template_values(self) -> dict[str, str]:
        """Placeholder values available to machine-config templates.

        Names match the environment variables so existing envsubst-style
        patches render unchanged.
        """
        values = {env: getattr(self, attr) for attr, env in ENV_VARS.items()}
        values["NLB_PUBLIC_IP"] = self.node_address
        for name, env in ADDON_ENV_VARS.items():
            values[env] = self.addon_version(name)
        return values

    def redacted(self) -> dict[str, Any]:
        """Plain dict of the config with secrets masked, for display."""
        data = {attr: getattr(self, attr) for attr in ENV_VARS}
        if data["registry_password"]:
            data["registry_password"] = "********"
        data["addons"] = dict(self.addons)
        return data


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> DeploymentConfig:
    """Load the deployment configuration.

    Precedence (highest to lowest):
    1. Environment variables
    2. Config file (YAML, optional)
    3. Defaults

    Args:
        path: Optional YAML config file
        environ: Environment mapping (default: os.environ)

    Returns:
        DeploymentConfig with values and sources

    Raises:
        ValidationError: If the config file is unreadable or malformed.
    """
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    addons: dict[str, str] = {}
    sources: dict[str, str] = {}

    if path is not None:
        file_config = _read_config_file(Path(path))
        for key in ENV_VARS:
            if file_config.get(key) not in (None, ""):
                values[key] = str(file_config[key])
                sources[key] = "config file"
        file_addons = file_config.get("addons") or {}
        if not isinstance(file_addons, dict):
            raise ValidationError(message=f"'addons' in {path} must be a mapping")
        for name, version in file_addons.items():
            if name not in ADDON_ENV_VARS:
                raise ValidationError(message=f"Unknown add-on '{name}' in {path}")
            if version not in (None, ""):
                addons[name] = str(version)
                sources[name] = "config file"

    for key, env in ENV_VARS.items():
        if environ.get(env):
            values[key] = environ[env]
            sources[key] = "environment"
    for name, env in ADDON_ENV_VARS.items():
        if environ.get(env):
            addons[name] = environ[env]
            sources[name] = "environment"

    return DeploymentConfig(**values, addons=addons, sources=sources)


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ValidationError(message=f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ValidationError(message=f"Invalid YAML in config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError(message=f"Config file {path} must contain a mapping")
    return data
