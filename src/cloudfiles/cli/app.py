"""Command line interface for Cloudfiles."""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
import pathlib
import signal
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

import httpx
import typer
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn

from cloudfiles import get_version
from cloudfiles.config import Config, load_config
from cloudfiles.core import DirectUploads, HostEvents, SyncEngine, ThumbnailQueue, UrlRewriter
from cloudfiles.core.engine import (
    FAILED,
    GENERATED,
    PENDING_FLAG,
    SYNCED,
    SyncResult,
)
from cloudfiles.core.queue import QUEUE_OPTION
from cloudfiles.logging import configure_logging
from cloudfiles.media import formats
from cloudfiles.storage import Database
from cloudfiles.stores import ObjectStore, ObjectStoreError, S3ObjectStore


@dataclass(slots=True)
class Services:
    """Components wired once per invocation."""

    database: Database
    store: ObjectStore
    engine: SyncEngine
    queue: ThumbnailQueue
    events: HostEvents
    uploads: DirectUploads
    rewriter: UrlRewriter


@dataclass(slots=True)
class Tally:
    success: int = 0
    failed: int = 0
    skipped: int = 0

    def __str__(self) -> str:
        return f"success={self.success} failed={self.failed} skipped={self.skipped}"


def _load_environment(env_file: Optional[pathlib.Path]) -> None:
    """Load environment variables from .env files."""

    if env_file is not None:
        load_dotenv(dotenv_path=env_file, override=True)
    else:
        load_dotenv(override=False)


def _prepare_logging(
    config: Config,
    override_path: Optional[pathlib.Path],
    override_level: Optional[str],
) -> tuple[logging.Logger, pathlib.Path]:
    configured_path = override_path or config.logging.path
    configured_level = (override_level or config.logging.level).upper()
    try:
        logger = configure_logging(
            log_path=configured_path, level=configured_level, mirror_to_console=False
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--log-level") from exc
    file_handler = next((h for h in logger.handlers if hasattr(h, "baseFilename")), None)
    if file_handler is not None:
        return logger, pathlib.Path(file_handler.baseFilename)
    return logger, pathlib.Path.cwd() / "cloudfiles.log"


def _build_store(config: Config, logger: logging.Logger) -> ObjectStore:
    return S3ObjectStore.from_settings(config.object_store, logger=logger)


def _services(ctx: typer.Context) -> Services:
    cached = ctx.obj.get("services")
    if cached is not None:
        return cached

    config: Config = ctx.obj["config"]
    logger: logging.Logger = ctx.obj["logger"]
    try:
        store = _build_store(config, logger)
    except ValueError as exc:
        typer.echo(f"Object store is not configured: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    database: Database = ctx.obj["database"]
    engine = SyncEngine.from_config(config, database=database, store=store, logger=logger)
    queue = ThumbnailQueue(database, engine, config.queue, logger)
    events = HostEvents(database, engine, logger)
    uploads = DirectUploads(
        database=database,
        store=store,
        queue=queue,
        events=events,
        base_dir=engine.base_dir,
        temp_dir=config.uploads.temp_path,
        presign_minutes=config.object_store.presign_minutes,
        logger=logger,
    )
    rewriter = UrlRewriter(store, config.uploads.base_url, store.public_url(""))
    services = Services(database, store, engine, queue, events, uploads, rewriter)
    ctx.obj["services"] = services
    return services


def _batched(values: list[int], size: int) -> Iterator[list[int]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


app = typer.Typer(
    name="cloudfiles",
    help="Offload media artifacts to an S3-compatible object store.",
    no_args_is_help=True,
    add_completion=False,
)

config_app = typer.Typer(help="Configuration utilities.", no_args_is_help=True)
app.add_typer(config_app, name="config")


def _version_callback(value: bool) -> None:
    """Print the package version and exit when requested."""

    if value:
        typer.echo(get_version())
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[pathlib.Path] = typer.Option(
        None,
        "--config",
        metavar="PATH",
        help="Path to YAML configuration file (used exclusively).",
    ),
    env_file: Optional[pathlib.Path] = typer.Option(
        None,
        "--env-file",
        metavar="PATH",
        help="Load environment variables from .env-style file before execution.",
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        metavar="LEVEL",
        help="Override the configured log level (debug, info, warn, error).",
    ),
    log_path: Optional[pathlib.Path] = typer.Option(
        None,
        "--log-path",
        metavar="PATH",
        help="Override the base directory or file for log output.",
    ),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show Cloudfiles version and exit.",
    ),
) -> None:
    """CLI root; loads configuration, logging, and shared context."""

    ctx.ensure_object(dict)
    _load_environment(env_file)

    try:
        config_obj = load_config(config)
    except (FileNotFoundError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc

    logger, log_file = _prepare_logging(config_obj, log_path, log_level)
    database = Database(config_obj.storage.path)
    database.initialize()

    ctx.obj.update(
        {
            "config": config_obj,
            "config_path": config,
            "logger": logger,
            "log_file": log_file,
            "database": database,
        }
    )


@app.command()
def version() -> None:
    """Print the package version."""

    typer.echo(get_version())


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    format: str = typer.Option("yaml", "--format", help="Output format (yaml or json)."),
    paths: bool = typer.Option(
        False, "--paths", help="List the configuration files that were merged."
    ),
) -> None:
    """Show the effective configuration for this invocation."""

    config: Config = ctx.obj["config"]
    normalized_format = format.strip().lower()
    if normalized_format not in {"yaml", "json"}:
        raise typer.BadParameter("Format must be 'yaml' or 'json'.", param_hint="--format")

    if paths and config.loaded_from:
        typer.echo("Loaded configuration from:", err=True)
        for entry in config.loaded_from:
            typer.echo(f"- {entry}", err=True)

    data = config.model.model_dump(mode="json")
    if normalized_format == "json":
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(yaml.safe_dump(data, sort_keys=False))


@app.command()
def migrate(
    ctx: typer.Context,
    limit: int = typer.Option(0, "--limit", min=0, help="Migrate at most N items (0 = all)."),
    offset: int = typer.Option(0, "--offset", min=0, help="Skip the first N items."),
    batch_size: int = typer.Option(20, "--batch-size", min=1, help="Items per batch."),
    keep_local: bool = typer.Option(False, "--keep-local", help="Keep local copies after upload."),
    force: bool = typer.Option(False, "--force", help="Upload even when already in the store."),
) -> None:
    """Upload existing local items and their artifacts to the object store."""

    logger: logging.Logger = ctx.obj["logger"]
    database: Database = ctx.obj["database"]
    item_ids = database.list_item_ids(limit=limit or None, offset=offset)
    if not item_ids:
        logger.warning("No items found to migrate.")
        typer.secho("Warning: No items found to migrate.", fg=typer.colors.YELLOW, err=True)
        return

    services = _services(ctx)
    typer.echo(f"Preparing to migrate {len(item_ids)} item(s)...")
    tally = Tally()
    progress = Progress(
        TextColumn("[bold]Migrating"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=Console(stderr=True),
        transient=True,
    )
    with progress:
        task = progress.add_task("migrate", total=len(item_ids))
        for batch in _batched(item_ids, batch_size):
            for item_id in batch:
                try:
                    result = services.engine.migrate_item(item_id, keep_local=keep_local, force=force)
                except ObjectStoreError as exc:
                    logger.warning("Item %s: %s", item_id, exc)
                    tally.failed += 1
                except Exception:  # pylint: disable=broad-except
                    logger.exception("Item %s: migration failed.", item_id)
                    tally.failed += 1
                else:
                    _count(tally, result, success={SYNCED})
                progress.advance(task)
            logger.debug("Finished batch of %d item(s).", len(batch))

    logger.info("Migration complete: %s", tally)
    typer.echo(f"Migration complete: {tally}")


@app.command()
def regenerate(
    ctx: typer.Context,
    item_id: Optional[list[int]] = typer.Option(
        None, "--id", metavar="ID", help="Item to regenerate. May be provided multiple times."
    ),
    mime_type: Optional[str] = typer.Option(
        None, "--type", metavar="MIME", help="MIME type or prefix ending in '/' (e.g. image/)."
    ),
    force: bool = typer.Option(False, "--force", help="Regenerate sizes that already exist."),
) -> None:
    """Re-run background artifact generation for matching items."""

    logger: logging.Logger = ctx.obj["logger"]
    database: Database = ctx.obj["database"]
    if item_id:
        candidates = list(dict.fromkeys(item_id))
    else:
        candidates = database.list_item_ids(mime_type=mime_type)
    targets = _generatable(database, candidates)
    if not targets:
        logger.warning("No items matched for regeneration.")
        typer.secho("Warning: No matching items to regenerate.", fg=typer.colors.YELLOW, err=True)
        return

    services = _services(ctx)
    tally = Tally()
    for target in targets:
        try:
            result = services.engine.fetch_generate_upload(target, force=force)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Item %s: regeneration failed.", target)
            tally.failed += 1
            continue
        _count(tally, result, success={GENERATED})
        typer.echo(f"Item {target}: {result.status}")

    logger.info("Regeneration complete: %s", tally)
    typer.echo(f"Regeneration complete: {tally}")


@app.command()
def drain(
    ctx: typer.Context,
    limit: int = typer.Option(0, "--limit", min=0, help="Process at most N items (0 = all)."),
) -> None:
    """Process queued items inline until the queue is empty."""

    logger: logging.Logger = ctx.obj["logger"]
    database: Database = ctx.obj["database"]
    pending = database.get_option(QUEUE_OPTION, []) or []
    if not pending:
        logger.warning("Thumbnail queue is empty.")
        typer.secho("Warning: The queue is empty.", fg=typer.colors.YELLOW, err=True)
        return

    services = _services(ctx)
    results = services.queue.drain(limit or None)
    if not results and services.queue.pending():
        typer.secho(
            "Warning: Another worker holds the queue lock.", fg=typer.colors.YELLOW, err=True
        )
        return

    tally = Tally()
    for outcome in results:
        if outcome.result is None:
            tally.failed += 1
            continue
        _count(tally, outcome.result, success={GENERATED})
    typer.echo(f"Processed {len(results)} item(s): {tally}; {len(services.queue.pending())} left.")


@app.command()
def enqueue(
    ctx: typer.Context,
    item_ids: list[int] = typer.Argument(..., metavar="ID...", help="Items to queue."),
) -> None:
    """Queue items for background artifact generation."""

    services = _services(ctx)
    for item_id in item_ids:
        if services.database.get_item(item_id) is None:
            typer.echo(f"Item {item_id} does not exist.", err=True)
            continue
        added = services.queue.enqueue(item_id)
        services.database.set_flag(item_id, PENDING_FLAG)
        typer.echo(f"Item {item_id}: {'queued' if added else 'already queued'}")


@app.command()
def worker(ctx: typer.Context) -> None:
    """Run scheduled queue passes until interrupted."""

    logger: logging.Logger = ctx.obj["logger"]
    services = _services(ctx)
    stop_event = asyncio.Event()

    def _install_signal_handlers(loop: asyncio.AbstractEventLoop) -> list[tuple[str, int, object]]:
        installed: list[tuple[str, int, object]] = []

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
                installed.append(("loop", sig, None))
            except NotImplementedError:
                previous = signal.getsignal(sig)

                def _handler(*_args):  # type: ignore[no-untyped-def]
                    loop.call_soon_threadsafe(stop_event.set)

                signal.signal(sig, _handler)
                installed.append(("signal", sig, previous))
        return installed

    def _restore_signal_handlers(
        loop: asyncio.AbstractEventLoop, installed: list[tuple[str, int, object]]
    ) -> None:
        for kind, sig, previous in installed:
            if kind == "loop":
                loop.remove_signal_handler(sig)
            else:
                signal.signal(sig, previous)  # type: ignore[arg-type]

    async def _run() -> int:
        loop = asyncio.get_running_loop()
        installed = _install_signal_handlers(loop)
        try:
            return await services.queue.serve(stop_event)
        finally:
            _restore_signal_handlers(loop, installed)

    typer.echo(f"Worker running; log={ctx.obj['log_file']}. Press Ctrl+C to stop.")
    processed = asyncio.run(_run())
    logger.info("Worker exited after processing %d item(s).", processed)
    typer.echo(f"Worker stopped after processing {processed} item(s).")


@app.command()
def register(
    ctx: typer.Context,
    path: pathlib.Path = typer.Argument(..., exists=True, dir_okay=False, help="File to import."),
    mime_type: Optional[str] = typer.Option(None, "--mime-type", help="Override the MIME type."),
) -> None:
    """Import a file under the upload directory as a new item and sync it."""

    services = _services(ctx)
    try:
        item = services.events.register_file(path, mime_type=mime_type)
    except (ValueError, FileNotFoundError) as exc:
        raise typer.BadParameter(str(exc), param_hint="PATH") from exc
    outcome = services.events.last_result
    status = outcome.status if outcome is not None else "unknown"
    typer.echo(f"Registered item {item.id} ({item.mime_type}): {status}")


@app.command("direct-upload")
def direct_upload(
    ctx: typer.Context,
    path: pathlib.Path = typer.Argument(..., exists=True, dir_okay=False, help="File to upload."),
    content_type: Optional[str] = typer.Option(
        None, "--content-type", help="Override the detected content type."
    ),
) -> None:
    """Upload a file straight to the store with a presigned URL, then register it."""

    config: Config = ctx.obj["config"]
    services = _services(ctx)
    content_type = content_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    try:
        prepared = services.uploads.prepare(path.name, content_type)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="PATH") from exc

    try:
        with path.open("rb") as handle:
            response = httpx.put(
                prepared.upload_url,
                content=handle.read(),
                headers={"Content-Type": content_type},
                timeout=config.object_store.timeout_seconds,
            )
        response.raise_for_status()
    except httpx.HTTPError as exc:
        typer.echo(f"Upload failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    item = services.uploads.register(
        filename=prepared.filename,
        key=prepared.key,
        content_type=content_type,
        file_size=path.stat().st_size,
    )
    typer.echo(f"Uploaded {prepared.key} as item {item.id}: {prepared.public_url}")


@app.command()
def delete(
    ctx: typer.Context,
    item_id: int = typer.Argument(..., metavar="ID", help="Item to delete."),
) -> None:
    """Delete an item and every artifact it names in the store."""

    services = _services(ctx)
    if services.database.get_item(item_id) is None:
        typer.echo(f"Item {item_id} does not exist.", err=True)
        raise typer.Exit(code=1)
    result = services.events.item_deleted(item_id)
    typer.echo(
        f"Deleted item {item_id}: removed={len(result.deleted)} failed={len(result.failed)}"
    )
    if result.failed:
        raise typer.Exit(code=1)


@app.command()
def presign(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Relative key to upload to."),
    content_type: str = typer.Option(..., "--content-type", help="Content type of the upload."),
    minutes: Optional[int] = typer.Option(None, "--minutes", help="URL lifetime (5-1440)."),
) -> None:
    """Print a presigned PUT URL and the matching public URL."""

    config: Config = ctx.obj["config"]
    services = _services(ctx)
    ttl = minutes if minutes is not None else config.object_store.presign_minutes
    typer.echo(
        json.dumps(
            {
                "upload_url": services.store.presigned_upload_url(key, content_type, ttl),
                "public_url": services.store.public_url(key),
                "key": key,
            },
            indent=2,
        )
    )


@app.command()
def url(
    ctx: typer.Context,
    item_id: int = typer.Argument(..., metavar="ID", help="Item to describe."),
) -> None:
    """Print the public URL of an item and, for documents, its preview sizes."""

    services = _services(ctx)
    item = services.database.get_item(item_id)
    if item is None:
        typer.echo(f"Item {item_id} does not exist.", err=True)
        raise typer.Exit(code=1)
    payload = {"id": item.id, "url": services.rewriter.item_url(item)}
    payload.update(services.rewriter.preview_sizes(item))
    typer.echo(json.dumps(payload, indent=2))


@app.command()
def rewrite(
    ctx: typer.Context,
    source: typer.FileText = typer.Argument("-", metavar="FILE", help="Markup to rewrite (- for stdin)."),
) -> None:
    """Rewrite upload URLs in markup to their object-store equivalents."""

    services = _services(ctx)
    typer.echo(services.rewriter.rewrite_content(source.read()), nl=False)


def _generatable(database: Database, item_ids: Iterable[int]) -> list[int]:
    targets: list[int] = []
    for item_id in item_ids:
        item = database.get_item(item_id)
        if item is None:
            continue
        if formats.classify(item.mime_type) in {formats.IMAGE, formats.DOCUMENT}:
            targets.append(item_id)
    return targets


def _count(tally: Tally, result: SyncResult, *, success: set[str]) -> None:
    if result.status in success:
        tally.success += 1
    elif result.status == FAILED:
        tally.failed += 1
    else:
        tally.skipped += 1
