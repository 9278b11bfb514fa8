"""laneguard CLI entry point."""

import logging

import click


@click.group()
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log engine decisions to stderr.")
def cli(verbose: bool):
    """laneguard: field and row access control CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


# Register subcommand groups
from laneguard.cli.metadata_cmd import metadata  # noqa: E402
from laneguard.cli.check_cmd import check  # noqa: E402

cli.add_command(metadata)
cli.add_command(check)
