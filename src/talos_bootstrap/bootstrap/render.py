"""Machine-config patch rendering.

Patch templates use envsubst-style placeholders (``$NAME`` / ``${NAME}``).
Rendering substitutes values from the DeploymentConfig, parses the result
as YAML and, for the generic machine patch, appends the local CIDR to the
kubelet node-IP subnet allow-list. Rendered patches are written to a
scratch directory, never over previously generated configuration.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any

import yaml

from ..config import DeploymentConfig
from ..errors import RenderError
from ..shared.logging import get_logger
from ..shared.paths import (
    CONTROLPLANE_PATCH_TEMPLATE,
    PATCH_TEMPLATE,
    TEMPLATES_DIR,
    make_scratch_dir,
)

logger = get_logger(__name__)

# Location of the kubelet node-IP allow-list inside a machine patch
VALID_SUBNETS_PATH = ("machine", "kubelet", "nodeIP", "validSubnets")


@dataclass(frozen=True)
class RawTemplate:
    """A patch template before substitution."""

    name: str
    text: str

    @classmethod
    def from_file(cls, path: Path) -> RawTemplate:
        try:
            return cls(name=path.name, text=path.read_text())
        except OSError as e:
            raise RenderError(message=f"Cannot read template {path}: {e}", template=path.name) from e


@dataclass
class RenderedDocument:
    """A rendered patch and where it was written."""

    name: str
    data: dict[str, Any]
    path: Path | None = None


def load_templates(template_dir: Path | None = None) -> list[RawTemplate]:
    """Load the generic and control-plane patch templates.

    Args:
        template_dir: Directory holding patch.yaml and patch_controlplane.yaml
                      (default: the templates bundled with the package).
    """
    template_dir = template_dir or TEMPLATES_DIR
    return [
        RawTemplate.from_file(template_dir / PATCH_TEMPLATE),
        RawTemplate.from_file(template_dir / CONTROLPLANE_PATCH_TEMPLATE),
    ]


def placeholders(template: RawTemplate) -> set[str]:
    """Names of every placeholder referenced by a template."""
    names = set()
    for match in Template.pattern.finditer(template.text):
        name = match.group("named") or match.group("braced")
        if name:
            names.add(name)
    return names


def substitute(template: RawTemplate, values: dict[str, str]) -> str:
    """Substitute placeholders, failing on unknown or empty values."""
    missing = sorted(name for name in placeholders(template) if not values.get(name))
    if missing:
        raise RenderError(
            message=f"Unresolved placeholders in {template.name}: {', '.join(missing)}",
            template=template.name,
        )
    try:
        return Template(template.text).substitute(values)
    except (KeyError, ValueError) as e:
        raise RenderError(
            message=f"Invalid placeholder in {template.name}: {e}",
            template=template.name,
        ) from e


def append_unique(document: dict[str, Any], path: Sequence[str], value: str) -> dict[str, Any]:
    """Append value to the list at path unless it is already present.

    Missing intermediate mappings and the list itself are created. Existing
    entries keep their order.

    Raises:
        RenderError: If something other than a mapping or list is in the way.
    """
    node = document
    for key in path[:-1]:
        child = node.get(key)
        if child is None:
            child = node[key] = {}
        if not isinstance(child, dict):
            raise RenderError(message=f"Expected a mapping at '{key}' in {'.'.join(path)}")
        node = child

    leaf = path[-1]
    entries = node.get(leaf)
    if entries is None:
        entries = node[leaf] = []
    if not isinstance(entries, list):
        raise RenderError(message=f"Expected a list at {'.'.join(path)}")
    if value not in entries:
        entries.append(value)
    return document


class ConfigRenderer:
    """Render patch templates for a deployment."""

    def __init__(self, scratch_dir: Path | None = None):
        """Initialize renderer.

        Args:
            scratch_dir: Where rendered patches are written (default: a new
                         temporary directory, created on first render).
        """
        self.scratch_dir = scratch_dir

    def render(
        self,
        templates: Sequence[RawTemplate],
        config: DeploymentConfig,
    ) -> list[RenderedDocument]:
        """Render every template against the config.

        Args:
            templates: Raw templates; the one named patch.yaml receives the
                       local CIDR in its kubelet validSubnets list.
            config: Deployment configuration.

        Returns:
            Rendered documents, each written to the scratch directory.

        Raises:
            RenderError: On unresolved placeholders or invalid YAML.
        """
        values = config.template_values()
        documents = []

        for template in templates:
            text = substitute(template, values)
            try:
                data = yaml.safe_load(text) or {}
            except yaml.YAMLError as e:
                raise RenderError(
                    message=f"{template.name} is not valid YAML after substitution: {e}",
                    template=template.name,
                ) from e
            if not isinstance(data, dict):
                raise RenderError(
                    message=f"{template.name} must render to a mapping",
                    template=template.name,
                )

            if template.name == PATCH_TEMPLATE and config.local_cidr:
                append_unique(data, VALID_SUBNETS_PATH, config.local_cidr)

            documents.append(RenderedDocument(name=template.name, data=data))

        # Write only after every template rendered cleanly
        if self.scratch_dir is None:
            self.scratch_dir = make_scratch_dir()
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        for doc in documents:
            doc.path = self.scratch_dir / doc.name
            with open(doc.path, "w") as f:
                yaml.safe_dump(doc.data, f, default_flow_style=False, sort_keys=False)
            logger.debug("rendered template", template=doc.name, path=str(doc.path))

        return documents
