"""Upload command for the lessonup CLI.

Commands:
- upload: Upload files to a lesson and wait until the queue is idle
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from lessonup.client.cli.config import (
    build_server_config,
    build_upload_settings,
    get_log_file,
    get_state_db,
    load_config,
    setup_logging,
)
from lessonup.client.upload.types import TaskEvent, TaskEventType


@click.command()
@click.argument(
    "files",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--lesson", "lesson_id", required=True, help="Destination lesson id.")
@click.option("--category", required=True, help="Destination category (e.g., slides).")
@click.option("--no-progress", is_flag=True, help="Disable progress output.")
@click.option("--verbose", "-v", is_flag=True, help="Show informational log messages.")
def upload(
    files: tuple[Path, ...],
    lesson_id: str,
    category: str,
    no_progress: bool,
    verbose: bool,
) -> None:
    """Upload FILES to a lesson.

    Interrupted uploads resume where they stopped when the same files are
    uploaded again.
    """
    config = load_config()
    if not config.get("api_url") or not config.get("token"):
        click.echo("Error: Not configured. Run 'lessonup configure' first.", err=True)
        sys.exit(1)

    setup_logging(get_log_file(), verbose=verbose)

    failed = asyncio.run(_run_uploads(config, list(files), lesson_id, category, no_progress))
    if failed:
        click.echo(f"{failed} upload(s) failed.", err=True)
        sys.exit(1)


async def _run_uploads(
    config: dict[str, str],
    paths: list[Path],
    lesson_id: str,
    category: str,
    no_progress: bool,
) -> int:
    """Run the queue until idle.

    Returns:
        Number of failed tasks.
    """
    from lessonup.client.api import UploadAPIClient
    from lessonup.client.state import UploadStore
    from lessonup.client.upload import QueueScheduler, SourceFile, TusTransport

    server_config = build_server_config(config)
    api = UploadAPIClient(server_config)
    transport = TusTransport(server_config)
    store = UploadStore(get_state_db())

    completed: list[str] = []
    failed: list[str] = []
    last_stage: dict[str, str | None] = {}

    def on_event(event: TaskEvent) -> None:
        task = event.task
        if task is None:
            return
        if event.type == TaskEventType.COMPLETED:
            completed.append(task.id)
            click.echo(f"  ✓ {task.file_name}")
        elif event.type == TaskEventType.FAILED:
            failed.append(task.id)
            click.echo(f"  ✗ {task.file_name}: {event.message}", err=True)
        elif event.type == TaskEventType.DUPLICATE_SKIPPED:
            click.echo(f"  = {task.file_name} (already queued)")
        elif event.type == TaskEventType.PREFLIGHT_WARNING:
            click.echo(f"  ! {task.file_name}: {event.message}")
        elif event.type == TaskEventType.TASK_UPDATED and not no_progress:
            if last_stage.get(task.id) != task.stage:
                last_stage[task.id] = task.stage
                click.echo(f"  → {task.file_name}: {task.stage}")

    try:
        scheduler = QueueScheduler(
            api,
            api,
            transport,
            store=store,
            settings=build_upload_settings(config),
        )
        scheduler.subscribe(on_event)
        try:
            sources = [SourceFile.from_path(path) for path in paths]
            scheduler.enqueue(sources, lesson_id, category)
            await scheduler.join()
        finally:
            await scheduler.close()

        waiting = scheduler.pending_rehydration()
        if waiting:
            names = ", ".join(task.file_name for task in waiting)
            click.echo(f"{len(waiting)} earlier upload(s) still waiting for their file: {names}")
    finally:
        await api.aclose()
        await transport.aclose()
        store.close()

    click.echo(f"Uploaded {len(completed)} file(s).")
    return len(failed)
