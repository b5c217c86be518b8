"""Commands for bootstrapping a Talos node.

This module provides `talos-bootstrap deploy`, which drives a node from an
unconfigured Talos install to a verified single-node cluster, plus the
read-only `preflight` and `render` commands for checking a configuration
before anything is touched.
"""

from __future__ import annotations

import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import NoReturn

import click
import yaml
from rich.console import Console
from rich.table import Table

from ..bootstrap import (
    STAGE_DESCRIPTIONS,
    BootstrapResult,
    BootstrapSequencer,
    BootstrapStage,
    CommandRunner,
    ConfigRenderer,
    GitClient,
    HelmAddons,
    HelmClient,
    KubectlClient,
    PreflightValidator,
    ReadinessPoller,
    TalosctlClient,
    ToolDetector,
    load_templates,
    required_tools,
)
from ..config import ADDON_PRIORITY, ENV_VARS, DeploymentConfig, load_config
from ..errors import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    BootstrapError,
    CancelledError,
)
from ..shared.logging import get_logger
from ..shared.paths import ArtifactPaths

logger = get_logger(__name__)


def config_option(func):
    return click.option(
        "-c",
        "--config",
        "config_path",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="YAML config file (environment variables take precedence)",
    )(func)


def templates_option(func):
    return click.option(
        "--templates",
        "templates_dir",
        type=click.Path(exists=True, file_okay=False, path_type=Path),
        default=None,
        help="Directory with patch.yaml and patch_controlplane.yaml",
    )(func)


def _fail(error: BootstrapError, cancelled: bool = False) -> NoReturn:
    click.echo(f"\n✗ {error.describe()}", err=True)
    if cancelled or isinstance(error, CancelledError):
        sys.exit(EXIT_CANCELLED)
    sys.exit(EXIT_FAILURE)


def _load(config_path: Path | None) -> DeploymentConfig:
    try:
        return load_config(config_path)
    except BootstrapError as e:
        e.stage = e.stage or BootstrapStage.PREFLIGHT.value
        _fail(e)


class Progress:
    """Operator-facing progress lines for a running pipeline."""

    def __init__(self):
        self._dots = False

    def _end_dots(self) -> None:
        if self._dots:
            click.echo("")
            self._dots = False

    def on_attempt(self, attempt: int, max_attempts: int, error: str | None) -> None:
        click.echo(".", nl=False)
        self._dots = True

    def on_stage(self, stage: BootstrapStage) -> None:
        self._end_dots()
        click.echo(f"  ✓ {STAGE_DESCRIPTIONS[stage]}")

    def finish(self) -> None:
        self._end_dots()


@contextmanager
def cancel_on_signals(poller: ReadinessPoller):
    """Route SIGINT/SIGTERM to the poller's cancel event for the duration."""

    def handle_signal(signum, frame):
        logger.warning("cancellation requested", signal=signal.Signals(signum).name)
        poller.cancel()

    previous = {
        sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield poller
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def build_sequencer(
    config: DeploymentConfig,
    workdir: Path,
    templates_dir: Path | None = None,
    force_bootstrap: bool = False,
    poller: ReadinessPoller | None = None,
    progress: Progress | None = None,
) -> BootstrapSequencer:
    """Wire the real tool adapters into a sequencer."""
    paths = ArtifactPaths(workdir)
    runner = CommandRunner()
    helm = HelmClient(paths.kubeconfig, runner)
    kube = KubectlClient(paths.kubeconfig, runner)

    return BootstrapSequencer(
        config=config,
        cluster=TalosctlClient(paths.talosconfig, runner),
        kube=kube,
        paths=paths,
        templates=load_templates(templates_dir),
        addons=HelmAddons(helm, GitClient(runner)).specs(config),
        poller=poller,
        force_bootstrap=force_bootstrap,
        on_stage=progress.on_stage if progress else None,
        on_attempt=progress.on_attempt if progress else None,
    )


def print_summary(result: BootstrapResult, console: Console | None = None) -> None:
    """Print the final add-on and verification report."""
    console = console or Console()

    table = Table(title="Bootstrap summary")
    table.add_column("Component")
    table.add_column("Result")

    addons = result.addons
    if addons:
        for name in addons.installed:
            table.add_row(name, "[green]installed[/green]")
        for name in addons.skipped:
            table.add_row(name, "[dim]skipped[/dim]")
        if addons.lb_pool_applied:
            table.add_row("load-balancer pool", "[green]applied[/green]")

    verification = result.verification
    if verification:
        status = "[green]passed[/green]" if verification.success else "[yellow]incomplete[/yellow]"
        table.add_row("verification", status)

    console.print(table)
    for warning in result.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")


@click.command()
@config_option
@templates_option
@click.option(
    "--workdir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Where secrets.yaml, talosconfig and kubeconfig are written",
)
@click.option(
    "--force-bootstrap",
    is_flag=True,
    help="Run talosctl bootstrap even if etcd already has members",
)
def deploy(config_path, templates_dir, workdir, force_bootstrap):
    """Bootstrap a single-node Talos cluster.

    Generates secrets and machine config, applies it to the node, bootstraps
    etcd, waits for the control plane, installs the configured add-ons and
    verifies the result with a disposable workload.

    Examples:

        # Configure through the environment
        MASTER_IP=10.0.0.5 HARBOR_CONTAINERD_PASSWORD=... talos-bootstrap deploy

        # Use a config file and keep artifacts in ./cluster
        talos-bootstrap deploy --config cluster.yaml --workdir ./cluster
    """
    config = _load(config_path)
    click.echo(f"\n🚀 Talos bootstrap: {config.node_address or '<no node>'}\n")

    progress = Progress()
    poller = ReadinessPoller()

    with cancel_on_signals(poller):
        try:
            sequencer = build_sequencer(
                config,
                workdir,
                templates_dir=templates_dir,
                force_bootstrap=force_bootstrap,
                poller=poller,
                progress=progress,
            )
        except BootstrapError as e:
            e.stage = e.stage or BootstrapStage.PREFLIGHT.value
            _fail(e)

        try:
            result = sequencer.run()
        except BootstrapError as e:
            progress.finish()
            # A signal also kills the running tool, which surfaces as a tool error
            _fail(e, cancelled=poller.cancelled)

    progress.finish()
    click.echo("")
    print_summary(result)
    click.echo(f"\n✓ Cluster ready. Kubeconfig: {ArtifactPaths(workdir).kubeconfig}")


@click.command()
@config_option
@templates_option
def preflight(config_path, templates_dir):
    """Check tools, configuration and template values without touching the node."""
    config = _load(config_path)
    detector = ToolDetector()
    tools = required_tools(config)

    console = Console()
    table = Table(title="Configuration")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_column("Source")
    redacted = config.redacted()
    for key in ENV_VARS:
        table.add_row(ENV_VARS[key], str(redacted[key]) or "-", config.get_source(key))
    for name in ADDON_PRIORITY:
        version = config.addon_version(name)
        table.add_row(name, version or "[dim]skip[/dim]", config.get_source(name))
    console.print(table)

    click.echo("\n📋 Tools\n")
    for name in sorted(tools):
        info = detector.detect(name, with_version=True)
        if info.available:
            click.echo(f"  ✓ {name}: {info.version or info.path}")
        else:
            click.echo(f"  ✗ {name}: {info.error}")

    try:
        PreflightValidator(detector).validate(config, tools, load_templates(templates_dir))
    except BootstrapError as e:
        e.stage = BootstrapStage.PREFLIGHT.value
        _fail(e)
    click.echo("\n✓ Preflight checks passed")


@click.command()
@config_option
@templates_option
@click.option(
    "-o",
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Write rendered patches here (default: a temporary directory)",
)
@click.option("--show", is_flag=True, help="Print the rendered patches")
def render(config_path, templates_dir, output_dir, show):
    """Render the machine-config patches for inspection."""
    config = _load(config_path)
    try:
        documents = ConfigRenderer(output_dir).render(load_templates(templates_dir), config)
    except BootstrapError as e:
        e.stage = BootstrapStage.CONFIG_RENDERED.value
        _fail(e)

    for doc in documents:
        click.echo(f"✓ {doc.name}: {doc.path}")
        if show:
            click.echo(yaml.safe_dump(doc.data, default_flow_style=False, sort_keys=False))
