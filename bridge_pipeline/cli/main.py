"""CLI interface for Bridge Pipeline."""

import logging

import click

from ..core.config import settings
from .pipeline import pipeline


@click.group()
@click.option("--log-level", default=None, help="Logging level (defaults to LOG_LEVEL)")
def main(log_level):
    """Bridge Pipeline CLI."""
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )


main.add_command(pipeline)


if __name__ == "__main__":
    main()
