"""Command-line entry point for the channel transcript indexer."""

from __future__ import annotations

import logging
from functools import partial
from pathlib import Path

import typer
from rich.console import Console
from typing_extensions import Annotated

from src.config_utils import ConfigError, Settings, load_settings
from src.discover_videos import gather_videos
from src.logging_utils import (
    attach_run_log,
    configure_logging,
    detach_run_log,
    get_logger,
)
from src.media_tools import ToolError, fetch_video_details, list_channel_videos
from src.pipeline import INTERRUPTED_EXIT_CODE, Pipeline, ShutdownCoordinator
from src.reporting import print_summary
from src.search_index import SearchIndexClient
from src.state_store import (
    DataLayout,
    StateLoadError,
    VideoStore,
    backup_state,
    init_data_dir,
    load_state,
    remove_partial_artifacts,
    save_state,
)

EXIT_OK = 0
EXIT_FATAL = 1

app = typer.Typer(add_completion=False)
console = Console()
run_logger = get_logger("run")


def _open_store(layout: DataLayout) -> VideoStore:
    init_data_dir(layout)
    records = load_state(layout)
    run_logger.info("Loaded %d videos from %s", len(records), layout.state_file)
    return VideoStore(records)


def run_indexer(
    settings: Settings,
    *,
    refresh: bool = False,
    index_client: SearchIndexClient | None = None,
    install_signals: bool = True,
) -> int:
    """Discover, process and index the videos of a channel; returns an exit code."""
    layout = DataLayout(settings.data_path)
    run_logger.info("Setting project directory to %s", layout.root)
    run_logger.info("Downloading and processing videos for %s", settings.channel_url)

    try:
        store = _open_store(layout)
    except (StateLoadError, OSError) as exc:
        run_logger.error("Unable to load state: %s", exc)
        console.print(f"[red]Unable to load state:[/red] {exc}")
        return EXIT_FATAL

    backup_state(layout)
    removed = remove_partial_artifacts(layout)
    if removed:
        run_logger.info("Removed %d partial artifacts from a previous run", removed)

    shutdown = ShutdownCoordinator(store, layout)
    if install_signals:
        shutdown.install()

    try:
        gather_videos(
            settings.channel_url,
            store,
            refresh=refresh,
            max_workers=settings.metadata_workers,
            list_videos=partial(list_channel_videos, timeout=settings.tool_timeout),
            fetch_details=partial(fetch_video_details, timeout=settings.tool_timeout),
            shutdown_event=shutdown.event,
        )
    except ToolError as exc:
        run_logger.warning("Unable to gather videos: %s", exc)

    if shutdown.requested:
        print_summary(shutdown.snapshot or store.snapshot(), console)
        return INTERRUPTED_EXIT_CODE

    print_summary(store.snapshot(), console)

    client = index_client or SearchIndexClient(
        settings.meilisearch_url,
        settings.index_name,
        api_key=settings.meilisearch_api_key,
        max_batch_size=settings.index_batch_size,
    )
    pipeline = Pipeline(
        store,
        layout,
        client,
        shutdown,
        model_path=settings.whisper_model_path,
        download_workers=settings.download_workers,
        transcribe_workers=settings.transcribe_workers,
        batch_size=settings.index_batch_size,
        flush_interval=settings.index_flush_interval,
        tool_timeout=settings.tool_timeout,
    )
    try:
        result = pipeline.run()
    finally:
        if index_client is None:
            client.close()

    if result.interrupted:
        print_summary(shutdown.snapshot or store.snapshot(), console)
        return INTERRUPTED_EXIT_CODE

    save_state(layout, store.snapshot())
    print_summary(store.snapshot(), console)
    return EXIT_OK


@app.command()
def run(
    update: Annotated[
        bool,
        typer.Option(
            "--update",
            "-u",
            help="Update details/metadata of known videos and set them to be reindexed.",
        ),
    ] = False,
    config: Annotated[
        Path,
        typer.Option(help="Path to the YAML configuration file."),
    ] = Path("config.yaml"),
    debug: Annotated[bool, typer.Option(help="Enable debug logging.")] = False,
) -> None:
    """Run discovery and the processing pipeline."""
    configure_logging(logging.DEBUG if debug else None)

    try:
        settings = load_settings(config)
    except ConfigError as exc:
        run_logger.error("%s", exc)
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(EXIT_FATAL)

    log_file = attach_run_log(settings.data_path)
    run_logger.info("Writing run log to %s", log_file)
    try:
        code = run_indexer(settings, refresh=update)
    finally:
        detach_run_log()
    raise typer.Exit(code)


@app.command()
def summary(
    data_path: Annotated[
        Path,
        typer.Option(envvar="DATA_PATH", help="Data directory holding videos.json."),
    ],
) -> None:
    """Print the status summary of an existing data directory."""
    layout = DataLayout(data_path)
    if not layout.state_file.exists():
        console.print(f"[red]No state file found at {layout.state_file}[/red]")
        raise typer.Exit(EXIT_FATAL)
    try:
        records = load_state(layout)
    except StateLoadError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(EXIT_FATAL)
    print_summary(records, console)


if __name__ == "__main__":
    app()
