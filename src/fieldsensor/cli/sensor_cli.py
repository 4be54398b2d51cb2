"""Command-line tool for inspecting and maintaining a field sensor.

Provides:
- Device and queue status
- Manual upload of pending detections
- Clearing the pending upload queue
- Listing recent detections stored in the backend
"""

import asyncio
from typing import Any, NoReturn

import click

from fieldsensor.config import ConfigManager, FieldSensorConfig
from fieldsensor.system.file_manager import FileManager
from fieldsensor.system.path_resolver import PathResolver
from fieldsensor.uploads.backend import SupabaseBackend, UploadError
from fieldsensor.uploads.queue import UploadQueue
from fieldsensor.uploads.store import PersistenceError, QueueStateStore


def build_upload_queue(config: FieldSensorConfig, path_resolver: PathResolver) -> UploadQueue:
    """Open the persisted upload queue with the configured backend."""
    file_manager = FileManager(path_resolver)
    store = QueueStateStore(path_resolver.get_upload_queue_path())
    backend = SupabaseBackend(config.backend)
    return UploadQueue(store, backend, file_manager, config.uploads.max_retries)


def _fail(message: str) -> NoReturn:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    raise SystemExit(1)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Field Sensor maintenance.

    Examples:
      # Show device settings and pending uploads
      fieldsensor status

      # Upload queued detections now
      fieldsensor sync

      # Show the latest detections stored remotely
      fieldsensor recent --limit 10
    """
    ctx.ensure_object(dict)
    path_resolver = PathResolver()
    ctx.obj["path_resolver"] = path_resolver
    ctx.obj["config"] = ConfigManager(path_resolver).load()


@cli.command()
@click.pass_obj
def status(obj: dict[str, Any]) -> None:
    """Show device configuration and pending uploads."""
    config: FieldSensorConfig = obj["config"]
    try:
        queue = build_upload_queue(config, obj["path_resolver"])
    except PersistenceError as e:
        _fail(f"Cannot read upload queue: {e}")

    click.echo(f"Device ID:          {config.device_id}")
    click.echo(f"Site:               {config.site_name}")
    location = (
        f"{config.latitude:.5f}, {config.longitude:.5f}"
        if config.latitude is not None and config.longitude is not None
        else "not set"
    )
    click.echo(f"Location:           {location}")
    click.echo(f"Threshold:          {config.detection_threshold:.2f}")
    click.echo(f"Target species:     {', '.join(config.target_species)}")
    click.echo(f"Classifier server:  {config.classifier.server_url or 'not set'}")
    backend = "configured" if config.backend.is_configured else "not configured"
    click.echo(f"Backend:            {backend}")
    click.echo(f"Auto sync:          {'on' if config.uploads.auto_sync else 'off'}")
    click.echo(f"Pending uploads:    {queue.pending_count()}")

    for job in queue.jobs:
        click.echo(
            f"  {job.id}  {job.metadata.timestamp.isoformat()}  "
            f"confidence={job.metadata.confidence:.3f}  retries={job.retry_count}"
        )


@cli.command()
@click.pass_obj
def sync(obj: dict[str, Any]) -> None:
    """Upload pending detections now."""
    config: FieldSensorConfig = obj["config"]
    if not config.backend.is_configured:
        _fail("Backend is not configured")

    try:
        queue = build_upload_queue(config, obj["path_resolver"])
        result = asyncio.run(queue.drain())
    except PersistenceError as e:
        _fail(f"Cannot update upload queue: {e}")

    click.echo(f"Uploaded: {result.uploaded}")
    if result.evicted:
        click.echo(click.style(f"Evicted after too many failures: {result.evicted}", fg="yellow"))
    if result.failed:
        click.echo(
            click.style(
                f"Upload failed; {queue.pending_count()} detections remain queued", fg="red"
            )
        )
        raise SystemExit(1)
    click.echo(click.style("✓ Upload queue is empty", fg="green"))


@cli.command("clear-queue")
@click.confirmation_option(prompt="Delete all pending detections and their audio?")
@click.pass_obj
def clear_queue(obj: dict[str, Any]) -> None:
    """Drop every pending upload."""
    try:
        queue = build_upload_queue(obj["config"], obj["path_resolver"])
        removed = asyncio.run(queue.clear())
    except PersistenceError as e:
        _fail(f"Cannot update upload queue: {e}")

    click.echo(f"Removed {removed} pending detections")


@cli.command()
@click.option("--limit", default=20, show_default=True, help="Number of detections to list")
@click.pass_obj
def recent(obj: dict[str, Any], limit: int) -> None:
    """List the most recent detections stored in the backend."""
    config: FieldSensorConfig = obj["config"]
    if not config.backend.is_configured:
        _fail("Backend is not configured")

    backend = SupabaseBackend(config.backend)
    try:
        detections = asyncio.run(backend.get_detections(limit))
    except UploadError as e:
        _fail(f"Cannot fetch detections: {e}")

    if not detections:
        click.echo("No detections stored yet.")
        return

    click.echo(f"{'Timestamp':<28} {'Confidence':<12} {'Device':<32}")
    click.echo("-" * 72)
    for detection in detections:
        click.echo(
            f"{str(detection.get('timestamp', '')):<28} "
            f"{float(detection.get('confidence', 0.0)):<12.3f} "
            f"{str(detection.get('device_id', '')):<32}"
        )


def main() -> None:
    """Entry point for the field sensor CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
