"""Error taxonomy for the bootstrap pipeline.

Every fatal failure raised by the pipeline is a BootstrapError subclass. The
sequencer fills in ``stage`` when an error escapes a transition so the CLI
can print which stage failed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Process exit codes
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


@dataclass
class BootstrapError(Exception):
    """Base error class for bootstrap failures."""

    message: str
    stage: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    def describe(self) -> str:
        """Human-readable one-line description including the failed stage."""
        if self.stage:
            return f"Stage '{self.stage}' failed: {self.message}"
        return self.message


@dataclass
class ValidationError(BootstrapError):
    """Preflight check failed before any mutating operation."""

    message: str = "Preflight validation failed"


@dataclass
class RenderError(BootstrapError):
    """Template substitution or parsing failed."""

    message: str = "Template rendering failed"
    template: str | None = None


@dataclass
class ToolInvocationError(BootstrapError):
    """An external tool returned non-success."""

    message: str = "External tool invocation failed"
    operation: str = ""
    target: str | None = None
    returncode: int | None = None
    stderr: str = ""


@dataclass
class TimeoutError(BootstrapError):
    """A readiness wait exhausted its retry policy."""

    message: str = "Timed out waiting for condition"
    attempts: int = 0
    policy: str = ""


@dataclass
class CancelledError(BootstrapError):
    """A readiness wait was aborted by a cancellation signal."""

    message: str = "Cancelled"
    attempts: int = 0


@dataclass
class AddonError(BootstrapError):
    """An add-on failed to install."""

    message: str = "Add-on installation failed"
    addon: str = ""


def tool_error(
    operation: str,
    target: str | None,
    returncode: int | None,
    stderr: str,
) -> ToolInvocationError:
    """Build a ToolInvocationError naming the operation and its target.

    Args:
        operation: Short operation name (e.g. "talosctl apply-config")
        target: What the operation acted on (node address, release, file)
        returncode: Process return code, or None if the tool never ran
        stderr: Captured error output

    Returns:
        ToolInvocationError with a message suitable for the operator
    """
    detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
    where = f" on {target}" if target else ""
    rc = f" (rc={returncode})" if returncode is not None else ""
    return ToolInvocationError(
        message=f"{operation}{where} failed{rc}: {detail}",
        operation=operation,
        target=target,
        returncode=returncode,
        stderr=stderr,
    )
