"""Status summaries for the console."""

from __future__ import annotations

from typing import Mapping

from rich.console import Console
from rich.table import Table

from src.schema import VideoRecord, VideoStatus


def status_counts(records: Mapping[str, VideoRecord]) -> dict[VideoStatus, int]:
    counts = {status: 0 for status in VideoStatus}
    for record in records.values():
        counts[record.status] += 1
    return counts


def reindex_count(records: Mapping[str, VideoRecord]) -> int:
    return sum(1 for record in records.values() if record.reindex)


def build_summary_table(records: Mapping[str, VideoRecord]) -> Table:
    table = Table(title="Video status", show_footer=True)
    table.add_column("Status", footer="total")
    table.add_column("Videos", justify="right", footer=str(len(records)))
    for status, count in status_counts(records).items():
        table.add_row(status.value, str(count))
    table.add_row("pending re-index", str(reindex_count(records)), style="dim")
    return table


def print_summary(
    records: Mapping[str, VideoRecord], console: Console | None = None
) -> None:
    (console or Console()).print(build_summary_table(records))
