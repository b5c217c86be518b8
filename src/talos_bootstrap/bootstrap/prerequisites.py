"""Preflight checks for the bootstrap pipeline.

Nothing here mutates the node or cluster. All checks run before the first
mutating operation so a trivially avoidable misconfiguration never leaves a
half-applied cluster behind.
"""

from __future__ import annotations

import re
import shutil
import subprocess
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from ..config import ADDON_LOCAL_PATH, DeploymentConfig
from ..errors import ValidationError
from .render import RawTemplate, placeholders

BASE_TOOLS = ("talosctl", "kubectl", "helm")

_IPV4_RE = re.compile(r"([0-9]{1,3})\.([0-9]{1,3})\.([0-9]{1,3})\.([0-9]{1,3})")

# Version flags per tool, for the preflight report
_VERSION_ARGS = {
    "talosctl": ["version", "--client", "--short"],
    "kubectl": ["version", "--client"],
    "helm": ["version", "--short"],
    "git": ["--version"],
}


@dataclass
class ToolInfo:
    """External tool detection result."""

    name: str
    available: bool
    path: str | None = None
    version: str | None = None
    error: str | None = None


class ToolDetector:
    """Detect external command-line tools."""

    def __init__(self, which: Callable[[str], str | None] | None = None):
        self.which = which or shutil.which

    def detect(self, name: str, with_version: bool = False) -> ToolInfo:
        """Check whether a tool is on PATH, optionally reading its version."""
        path = self.which(name)
        if not path:
            return ToolInfo(name=name, available=False, error=f"{name} not found on PATH")

        if not with_version or name not in _VERSION_ARGS:
            return ToolInfo(name=name, available=True, path=path)

        try:
            result = subprocess.run(
                [name, *_VERSION_ARGS[name]],
                capture_output=True,
                text=True,
                timeout=10,
            )
        except subprocess.TimeoutExpired:
            return ToolInfo(name=name, available=True, path=path, error="version query timed out")
        except OSError as e:
            return ToolInfo(name=name, available=False, path=path, error=str(e))

        version = result.stdout.strip().splitlines()[0] if result.stdout.strip() else None
        return ToolInfo(name=name, available=True, path=path, version=version)


def required_tools(config: DeploymentConfig) -> set[str]:
    """Tools the pipeline will invoke for this configuration."""
    tools = set(BASE_TOOLS)
    if config.addon_version(ADDON_LOCAL_PATH):
        tools.add("git")
    return tools


def is_ipv4(address: str) -> bool:
    """Whether address is an IPv4 dotted quad. No DNS lookup is attempted."""
    match = _IPV4_RE.fullmatch(address)
    return bool(match) and all(int(octet) <= 255 for octet in match.groups())


class PreflightValidator:
    """Validate the environment before any mutating operation."""

    def __init__(self, detector: ToolDetector | None = None):
        self.detector = detector or ToolDetector()

    def validate(
        self,
        config: DeploymentConfig,
        tools: Iterable[str],
        templates: Sequence[RawTemplate] = (),
    ) -> None:
        """Run every preflight check, stopping at the first failure.

        Args:
            config: Deployment configuration.
            tools: Names of external tools that must be invocable.
            templates: Patch templates whose placeholders must all have a
                       non-empty value.

        Raises:
            ValidationError: Describing the first violated check.
        """
        for name in sorted(tools):
            info = self.detector.detect(name)
            if not info.available:
                raise ValidationError(
                    message=f"{name} is not installed. Please install it first.",
                    data={"tool": name},
                )

        if not config.node_address:
            raise ValidationError(message="MASTER_IP is not set", data={"field": "node_address"})
        if not is_ipv4(config.node_address):
            raise ValidationError(
                message=f"Invalid IP address: {config.node_address}",
                data={"field": "node_address"},
            )

        if not config.registry_password:
            raise ValidationError(
                message="HARBOR_CONTAINERD_PASSWORD is not set",
                data={"field": "registry_password"},
            )

        values = config.template_values()
        for template in templates:
            missing = sorted(name for name in placeholders(template) if not values.get(name))
            if missing:
                raise ValidationError(
                    message=f"{template.name} needs values for: {', '.join(missing)}",
                    data={"template": template.name, "missing": missing},
                )
