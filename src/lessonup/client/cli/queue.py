"""Queue inspection commands for the lessonup CLI.

Commands:
- queue: Show the persisted upload queue
- clear: Wipe the persisted upload queue and sessions
"""

from __future__ import annotations

import click

from lessonup.client.cli.config import get_state_db


@click.command()
def queue() -> None:
    """Show uploads persisted from earlier runs."""
    from lessonup.client.state import UploadStore

    store = UploadStore(get_state_db())
    try:
        descriptors = store.load_queue()
        sessions = store.list_sessions()
    finally:
        store.close()

    if not descriptors:
        click.echo("Upload queue is empty.")
    for data in descriptors:
        status = str(data.get("status", "?"))
        progress = int(data.get("progress") or 0)
        click.echo(
            f"  {status:<10} {progress:>3}%  {data.get('file_name')}"
            f"  ({data.get('lesson_id')}/{data.get('category')})"
        )
        if data.get("error"):
            click.echo(f"             {data['error']}")

    click.echo(f"Resumable sessions: {len(sessions)}")


@click.command()
@click.confirmation_option(prompt="Clear the persisted upload queue and sessions?")
def clear() -> None:
    """Wipe the persisted upload queue and resumable sessions."""
    from lessonup.client.state import UploadStore

    store = UploadStore(get_state_db())
    try:
        store.clear()
    finally:
        store.close()
    click.echo("Upload queue cleared.")
