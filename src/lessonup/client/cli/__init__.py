"""Command-line interface for lessonup.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Store the backend connection settings
- upload: Upload files to a lesson
- queue: Show the persisted upload queue
- clear: Wipe the persisted upload queue
"""

from __future__ import annotations

import click

from lessonup.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_log_file,
    get_state_db,
    load_config,
    save_config,
    setup_logging,
)
from lessonup.client.cli.configure import configure
from lessonup.client.cli.queue import clear, queue
from lessonup.client.cli.upload import upload


@click.group()
@click.version_option(package_name="lessonup")
def cli() -> None:
    """lessonup - Resumable lesson material uploads."""


cli.add_command(configure)
cli.add_command(upload)
cli.add_command(queue)
cli.add_command(clear)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "get_log_file",
    "get_state_db",
    "load_config",
    "save_config",
    "setup_logging",
]
