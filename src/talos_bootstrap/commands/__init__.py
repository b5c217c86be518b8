"""CLI commands for talos-bootstrap."""

from .deploy import deploy, preflight, render

__all__ = ["deploy", "preflight", "render"]
