"""
SeedGuard CLI — seed phrase, keys, and backups from the command line.

The main Click group is defined here and all subcommands are
registered via register functions from their own modules.

Entry point: seedguard.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="seedguard")
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr.")
def main(verbose: bool):
    """SeedGuard — seed-derived PGP identity.

    One phrase. Every key. Any device.
    """
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .seed_cmd import register_seed_commands
from .keys import register_keys_commands
from .backup import register_backup_commands

register_seed_commands(main)
register_keys_commands(main)
register_backup_commands(main)
