"""Lock-guarded video state and the persisted ``videos.json`` file."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from shutil import copy2
from typing import Iterator, Mapping

from pydantic import ValidationError

from src.logging_utils import get_logger
from src.schema import VideoRecord, VideoStatus

STATE_FILE_NAME = "videos.json"
BACKUP_DIR_NAME = "state_backups"
STATE_BACKUP_LIMIT = 20
MAX_BACKUP_SUFFIX_ATTEMPTS = 100
PARTIAL_SUFFIX = ".partial"

logger = get_logger("state")


class StateLoadError(RuntimeError):
    """Raised when the persisted state cannot be read safely."""


@dataclass(frozen=True)
class DataLayout:
    """Locations of the state file and stage artifacts under the data path."""

    root: Path

    @property
    def state_file(self) -> Path:
        return self.root / STATE_FILE_NAME

    @property
    def backup_dir(self) -> Path:
        return self.root / BACKUP_DIR_NAME

    @property
    def downloads(self) -> Path:
        return self.root / "downloads"

    @property
    def processed(self) -> Path:
        return self.root / "processed"

    @property
    def transcripts(self) -> Path:
        return self.root / "transcripts"

    def download_path(self, video_id: str) -> Path:
        return self.downloads / f"{video_id}.mp3"

    def processed_path(self, video_id: str) -> Path:
        return self.processed / f"{video_id}.wav"

    def transcript_path(self, video_id: str) -> Path:
        return self.transcripts / f"{video_id}.srt"

    def artifact_dirs(self) -> tuple[Path, ...]:
        return (self.downloads, self.processed, self.transcripts)


class VideoStore:
    """Thread-safe mapping of video id to its record.

    Every operation holds a single lock for the duration of one read or
    write; stages only ever touch one record at a time.
    """

    def __init__(self, records: Mapping[str, VideoRecord] | None = None):
        self._records: dict[str, VideoRecord] = dict(records or {})
        # re-entrant: the shutdown signal handler snapshots on the main thread,
        # which may already hold the lock
        self._lock = threading.RLock()

    def get(self, video_id: str) -> VideoRecord | None:
        with self._lock:
            return self._records.get(video_id)

    def set(self, video_id: str, record: VideoRecord) -> None:
        with self._lock:
            self._records[video_id] = record

    def advance(self, video_id: str, status: VideoStatus) -> VideoRecord:
        """Move a record one step forward and return the stored result."""
        with self._lock:
            record = self._records.get(video_id)
            if record is None:
                raise KeyError(video_id)
            updated = record.advanced(status)
            self._records[video_id] = updated
            return updated

    def snapshot(self) -> dict[str, VideoRecord]:
        with self._lock:
            return dict(self._records)

    def status_counts(self) -> Counter[VideoStatus]:
        with self._lock:
            return Counter(record.status for record in self._records.values())

    def __contains__(self, video_id: object) -> bool:
        with self._lock:
            return video_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())


def init_data_dir(layout: DataLayout) -> None:
    """Create the state file and artifact directories when they are missing."""
    layout.root.mkdir(parents=True, exist_ok=True)
    if not layout.state_file.exists():
        logger.info("%s not found, creating it", layout.state_file.name)
        layout.state_file.write_text("{}", encoding="utf-8")

    for directory in layout.artifact_dirs():
        if not directory.exists():
            logger.info("%s directory not found, creating it", directory.name)
            directory.mkdir(parents=True, exist_ok=True)


def remove_partial_artifacts(layout: DataLayout) -> int:
    """Delete half-written artifacts left behind by an interrupted run."""
    removed = 0
    for directory in layout.artifact_dirs():
        if not directory.exists():
            continue
        for candidate in directory.glob(f"*{PARTIAL_SUFFIX}*"):
            try:
                candidate.unlink()
            except OSError as exc:
                logger.warning("Error removing file %s: %s", candidate, exc)
                continue
            logger.info("Cleanup: removed file %s", candidate)
            removed += 1
    return removed


def _read_state(path: Path) -> dict[str, VideoRecord]:
    with path.open(encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    records: dict[str, VideoRecord] = {}
    for video_id, entry in data.items():
        record = VideoRecord.model_validate(entry)
        if not record.id:
            record = record.model_copy(update={"id": video_id})
        records[video_id] = record
    return records


def load_state(layout: DataLayout) -> dict[str, VideoRecord]:
    """Load the persisted records, restoring from a backup if the file is corrupt."""
    path = layout.state_file
    if not path.exists():
        return {}

    try:
        return _read_state(path)
    except OSError as exc:
        raise StateLoadError(f"Unable to read {path}: {exc}") from exc
    except (json.JSONDecodeError, ValidationError, ValueError) as exc:
        logger.error("State file %s is corrupted: %s", path, exc)
        original_error = exc

    backups: list[tuple[float, Path]] = []
    if layout.backup_dir.exists():
        for candidate in layout.backup_dir.glob("videos-*.json.bak"):
            try:
                backups.append((candidate.stat().st_mtime, candidate))
            except OSError:
                continue
        backups.sort(key=lambda item: item[0], reverse=True)

    for _, backup_path in backups:
        try:
            records = _read_state(backup_path)
        except (json.JSONDecodeError, ValidationError, ValueError):
            logger.warning("Skipping corrupted state backup %s", backup_path)
            continue
        except OSError as backup_exc:  # pragma: no cover - rare filesystem issue
            logger.warning(
                "Unable to load state backup %s: %s", backup_path, backup_exc
            )
            continue
        copy2(backup_path, path)
        logger.warning("Restored state from backup %s", backup_path)
        return records

    raise StateLoadError(
        f"State file {path} is corrupted and no valid backup was found."
    ) from original_error


def backup_state(layout: DataLayout, limit: int = STATE_BACKUP_LIMIT) -> Path | None:
    """Create a timestamped copy of the state file, trimming old copies."""
    if not layout.state_file.exists():
        return None

    backup_logger = logger.getChild("backup")
    try:
        layout.backup_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        backup_logger.warning("Unable to create state backup directory: %s", exc)
        return None

    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    backup_path = layout.backup_dir / f"videos-{timestamp}.json.bak"
    suffix = 1
    while backup_path.exists():
        if suffix > MAX_BACKUP_SUFFIX_ATTEMPTS:
            backup_logger.warning(
                "Unable to determine unique state backup name after %d attempts",
                MAX_BACKUP_SUFFIX_ATTEMPTS,
            )
            return None
        backup_path = layout.backup_dir / f"videos-{timestamp}-{suffix:02d}.json.bak"
        suffix += 1

    try:
        copy2(layout.state_file, backup_path)
    except OSError as exc:
        backup_logger.warning("Failed to create state backup: %s", exc)
        return None
    backup_logger.debug("Created state backup at %s", backup_path)

    entries: list[tuple[float, Path]] = []
    for candidate in layout.backup_dir.glob("videos-*.json.bak"):
        try:
            entries.append((candidate.stat().st_mtime, candidate))
        except OSError:  # pragma: no cover
            continue
    entries.sort(key=lambda item: item[0], reverse=True)

    for _, stale in entries[limit:]:
        try:
            stale.unlink()
            backup_logger.debug("Removed old state backup %s", stale)
        except OSError as exc:
            backup_logger.debug("Unable to remove backup %s: %s", stale, exc)

    return backup_path


# re-entrant: a signal handler may save while the main thread is mid-save
_write_lock = threading.RLock()


def save_state(layout: DataLayout, records: Mapping[str, VideoRecord]) -> None:
    """Write the full collection to the state file, pretty-printed and atomically."""
    path = layout.state_file
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {video_id: record.to_json() for video_id, record in records.items()}

    with _write_lock:
        temp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f"{path.stem}-",
                suffix=".tmp",
                delete=False,
            ) as tmp_file:
                temp_path = Path(tmp_file.name)
                json.dump(data, tmp_file, indent=2)
                tmp_file.write("\n")
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.replace(temp_path, path)
            temp_path = None
        finally:
            if temp_path and temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
    logger.debug("Saved %d records to %s", len(data), path)
