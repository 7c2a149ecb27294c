"""CLI entry point for Shipyard."""

from __future__ import annotations

import click

from shipyard.cli.auto import auto
from shipyard.version import get_shipyard_version


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Unattended draft-to-publish pipelines over a queue of work items."""
    if version:
        click.echo(f"shipyard {get_shipyard_version()}")
        ctx.exit(0)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


cli.add_command(auto)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
