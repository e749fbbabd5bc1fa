from __future__ import annotations

import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable

from src.logging_utils import get_logger
from src.media_tools import ToolError, fetch_video_details, list_channel_videos
from src.schema import VideoDetails, VideoRecord, VideoStatus
from src.state_store import VideoStore

logger = get_logger("discovery")

DetailsFetcher = Callable[[str], VideoDetails]

# statuses whose record may be flagged for re-submission to the index
REINDEXABLE = {VideoStatus.TRANSCRIBED, VideoStatus.INDEXED}


def parse_listing(listing: str) -> list[str]:
    """Return the unique video ids of a listing, in first-seen order."""
    seen: dict[str, None] = {}
    for video_id in listing.split():
        seen.setdefault(video_id, None)
    return list(seen)


def _fetch_or_empty(
    fetch_details: DetailsFetcher, video_id: str
) -> VideoDetails | None:
    try:
        return fetch_details(video_id)
    except (ToolError, ValueError) as exc:
        logger.warning("Unable to fetch details for video %s: %s", video_id, exc)
        return None


def _stopping(shutdown_event: threading.Event | None) -> bool:
    return shutdown_event is not None and shutdown_event.is_set()


def _fetch_all(
    video_ids: list[str],
    fetch_details: DetailsFetcher,
    max_workers: int,
    shutdown_event: threading.Event | None = None,
) -> dict[str, VideoDetails | None]:
    """Fetch details with at most ``max_workers`` calls in flight.

    Ids are submitted only as slots free up, so once a shutdown is requested
    no further fetch starts; ids that were never fetched are absent from the
    result.
    """
    results: dict[str, VideoDetails | None] = {}
    workers = max(1, max_workers)
    remaining = deque(video_ids)
    in_flight: dict[Future, str] = {}

    with ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix="DetailsFetch"
    ) as executor:
        while remaining or in_flight:
            while (
                remaining
                and len(in_flight) < workers
                and not _stopping(shutdown_event)
            ):
                video_id = remaining.popleft()
                future = executor.submit(_fetch_or_empty, fetch_details, video_id)
                in_flight[future] = video_id
            if not in_flight:
                break
            done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
            for future in done:
                results[in_flight.pop(future)] = future.result()

    if remaining:
        logger.info(
            "Shutdown requested, skipped details for %d videos", len(remaining)
        )
    return results


def add_new_videos(
    video_ids: list[str],
    store: VideoStore,
    fetch_details: DetailsFetcher,
    max_workers: int,
    shutdown_event: threading.Event | None = None,
) -> int:
    """Insert a pending record for every id the store has not seen yet.

    Nothing is inserted once a shutdown has been requested.
    """
    new_ids = [video_id for video_id in video_ids if video_id not in store]
    fetched = _fetch_all(new_ids, fetch_details, max_workers, shutdown_event)
    if _stopping(shutdown_event):
        logger.info("Shutdown requested, not adding %d new videos", len(new_ids))
        return 0

    for video_id in new_ids:
        details = fetched.get(video_id) or VideoDetails(id=video_id)
        store.set(
            video_id,
            VideoRecord(
                id=video_id,
                title=details.title,
                upload_date=details.upload_date,
                duration=details.duration,
                status=VideoStatus.PENDING,
                reindex=False,
            ),
        )

    logger.info(
        "%d new videos have been added to the queue and are pending download",
        len(new_ids),
    )
    return len(new_ids)


def refresh_known_videos(
    video_ids: list[str],
    store: VideoStore,
    fetch_details: DetailsFetcher,
    max_workers: int,
    shutdown_event: threading.Event | None = None,
) -> int:
    """Re-fetch details for known videos and flag indexed content for re-submission.

    Every refreshed record gets the new title, upload date and duration, but
    only records at ``transcribed`` or ``indexed`` have ``reindex`` set: a
    document exists (or is about to) only for those, while earlier records
    will reach the index with their fresh details anyway. Status is never
    changed. A failed fetch keeps the stored details.
    """
    fetched = _fetch_all(video_ids, fetch_details, max_workers, shutdown_event)
    if _stopping(shutdown_event):
        logger.info("Shutdown requested, not refreshing known videos")
        return 0

    refreshed = 0
    for video_id in video_ids:
        details = fetched.get(video_id)
        record = store.get(video_id)
        if details is None or record is None:
            continue
        updated = record.with_details(details)
        if updated.status in REINDEXABLE:
            updated = updated.model_copy(update={"reindex": True})
        store.set(video_id, updated)
        refreshed += 1

    logger.info("Refreshed details for %d known videos", refreshed)
    return refreshed


def gather_videos(
    channel_url: str,
    store: VideoStore,
    *,
    refresh: bool = False,
    max_workers: int = 8,
    list_videos: Callable[[str], str] | None = None,
    fetch_details: DetailsFetcher | None = None,
    shutdown_event: threading.Event | None = None,
) -> int:
    """Reconcile the store with the channel listing and return the new count.

    Raises ``ToolError`` when the listing itself cannot be retrieved. Once
    ``shutdown_event`` is set no further details are fetched and the store is
    left untouched.
    """
    list_videos = list_videos or list_channel_videos
    fetch_details = fetch_details or fetch_video_details

    logger.info("Checking channel for new videos")
    start_time = time.time()
    known_ids = list(store)
    video_ids = parse_listing(list_videos(channel_url))
    logger.info("Channel lists %d videos", len(video_ids))

    added = add_new_videos(
        video_ids, store, fetch_details, max_workers, shutdown_event
    )

    if refresh and not _stopping(shutdown_event):
        logger.info("Refreshing details of %d known videos", len(known_ids))
        refresh_known_videos(
            known_ids, store, fetch_details, max_workers, shutdown_event
        )

    logger.info("Discovery finished in %.2f seconds", time.time() - start_time)
    return added
