#!/usr/bin/env python
# scripts/query_videos.py
"""A script to query the videos.json state file."""

import json
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console

# Add project root to path to allow importing from src
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.schema import VideoRecord, VideoStatus  # noqa: E402

app = typer.Typer()
console = Console()
error_console = Console(stderr=True)


def filter_records(
    records: list[VideoRecord],
    status: Optional[VideoStatus] = None,
    reindex: bool = False,
    missing_title: bool = False,
) -> list[VideoRecord]:
    """Return the records matching every active filter."""

    def matches_criteria(record: VideoRecord) -> bool:
        passes_status_filter = status is None or record.status is status
        passes_reindex_filter = not reindex or record.reindex
        passes_title_filter = not missing_title or not record.title
        return passes_status_filter and passes_reindex_filter and passes_title_filter

    return [record for record in records if matches_criteria(record)]


@app.command()
def query(
    state_path: Path = typer.Option(
        "data/videos.json",
        "--state-path",
        "-p",
        help="Path to the videos.json file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
    status: Optional[VideoStatus] = typer.Option(
        None, "--status", "-s", help="Only list videos with this status."
    ),
    reindex: bool = typer.Option(
        False, "--reindex", help="Only list videos waiting to be re-indexed."
    ),
    missing_title: bool = typer.Option(
        False, "--missing-title", help="Only list videos whose details failed to load."
    ),
    ids_only: bool = typer.Option(
        False, "--ids-only", help="Print one video id per line instead of JSON."
    ),
):
    """
    Query the state file for videos matching specific criteria.
    """
    try:
        with state_path.open("r", encoding="utf-8") as f:
            state_data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        console.print(f"[bold red]Error reading state file: {e}[/bold red]")
        raise typer.Exit(code=1)

    records = [VideoRecord.model_validate(entry) for entry in state_data.values()]
    filtered_records = filter_records(records, status, reindex, missing_title)

    error_console.print(
        f"[green]Filtered to {len(filtered_records)} of {len(records)} videos.[/green]"
    )

    if ids_only:
        for record in filtered_records:
            console.print(record.id, highlight=False)
        return

    output_data: list[dict[str, Any]] = [
        record.to_json() for record in filtered_records
    ]
    console.print_json(json.dumps(output_data))


if __name__ == "__main__":
    app()
