"""CLI main entry point."""

import click

from . import __version__
from .commands import deploy, preflight, render
from .shared.logging import configure_logging


@click.group()
@click.version_option(__version__, prog_name="talos-bootstrap")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    show_default=True,
    help="Log level",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Write logs to this file instead of stderr",
)
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
def cli(log_level: str, log_file: str | None, json_logs: bool) -> None:
    """Bootstrap a single-node Talos Kubernetes cluster."""
    configure_logging(level=log_level, log_file=log_file, json_output=json_logs)


cli.add_command(deploy)
cli.add_command(preflight)
cli.add_command(render)


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
