"""Threaded acquire → transform → transcribe → index pipeline.

Stages are pools of worker threads connected by small bounded queues, so a
slow transcriber throttles the downloads feeding it. Every video admitted by
the dispatch sweep registers one completion credit; the run is over once each
credit is either redeemed (the video reached ``indexed``) or written off (the
video was dropped and stays at its last status for the next run).
"""

from __future__ import annotations

import os
import queue
import signal
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping

from src.logging_utils import get_logger
from src.media_tools import (
    ToolError,
    download_audio,
    transcode_audio,
    transcribe_audio,
)
from src.schema import Document, InvalidTransition, VideoRecord, VideoStatus
from src.search_index import IndexUploadError, SearchIndexClient
from src.state_store import DataLayout, VideoStore, save_state

pipeline_logger = get_logger("pipeline")

STAGE_QUEUE_SIZE = 1
QUEUE_POLL_INTERVAL = 1.0
WAIT_POLL_INTERVAL = 1.0
SHUTDOWN_JOIN_TIMEOUT = 2.0
NORMAL_JOIN_TIMEOUT = 5.0
INTERRUPTED_EXIT_CODE = 130


class ShutdownRequested(Exception):
    """Raised to abort a blocking hand-off when a shutdown has been requested."""


def put_until_shutdown(
    target: queue.Queue, video_id: str, shutdown_event: threading.Event
) -> None:
    """Block until ``target`` accepts the id, giving up once shutdown starts."""
    while True:
        if shutdown_event.is_set():
            raise ShutdownRequested
        try:
            target.put(video_id, timeout=QUEUE_POLL_INTERVAL)
            return
        except queue.Full:
            continue


@dataclass(frozen=True)
class CompletionCounts:
    registered: int
    redeemed: int
    written_off: int

    @property
    def outstanding(self) -> int:
        return self.registered - self.redeemed - self.written_off


class CompletionTracker:
    """Counts outstanding work units and signals when the run has drained."""

    def __init__(self):
        self._condition = threading.Condition()
        self._registered = 0
        self._redeemed = 0
        self._written_off = 0
        self._sealed = False

    def register(self, count: int = 1) -> None:
        with self._condition:
            if self._sealed:
                raise RuntimeError("Cannot register work after the tracker is sealed")
            self._registered += count

    def _settle(self, count: int) -> None:
        outstanding = self._registered - self._redeemed - self._written_off
        if count > outstanding:
            raise RuntimeError(
                f"Settling {count} credits with only {outstanding} outstanding"
            )

    def redeem(self, count: int = 1) -> None:
        with self._condition:
            self._settle(count)
            self._redeemed += count
            self._condition.notify_all()

    def write_off(self, count: int = 1) -> None:
        with self._condition:
            self._settle(count)
            self._written_off += count
            self._condition.notify_all()

    def seal(self) -> None:
        """Mark registration finished; ``wait`` can only return after this."""
        with self._condition:
            self._sealed = True
            self._condition.notify_all()

    def _drained(self) -> bool:
        return self._sealed and (
            self._registered == self._redeemed + self._written_off
        )

    def wait(self, timeout: float | None = None) -> bool:
        with self._condition:
            return self._condition.wait_for(self._drained, timeout)

    def counts(self) -> CompletionCounts:
        with self._condition:
            return CompletionCounts(
                self._registered, self._redeemed, self._written_off
            )


class MediaStage:
    """One artifact-producing step of the pipeline.

    Subclasses name the artifact they produce, the artifact they consume and
    how to invoke the external tool between the two.
    """

    name = "stage"
    target: VideoStatus

    def __init__(
        self, layout: DataLayout, store: VideoStore, timeout: float | None = None
    ):
        self.layout = layout
        self.store = store
        self.timeout = timeout
        self.logger = pipeline_logger.getChild(self.name)

    def output_path(self, video_id: str) -> Path:
        raise NotImplementedError

    def input_path(self, video_id: str) -> Path | None:
        return None

    def invoke(self, video_id: str, output: Path) -> None:
        raise NotImplementedError

    def advance(self, video_id: str) -> VideoRecord:
        """Produce this stage's artifact (unless present) and move the record on."""
        output = self.output_path(video_id)
        if output.exists():
            self.logger.info(
                "%s already exists for video %s, skipping %s",
                output.name,
                video_id,
                self.name,
            )
        else:
            start_time = time.time()
            self.invoke(video_id, output)
            self.logger.info(
                "Finished %s of video %s in %.1fs",
                self.name,
                video_id,
                time.time() - start_time,
            )

        record = self.store.advance(video_id, self.target)

        upstream = self.input_path(video_id)
        if upstream is not None:
            try:
                upstream.unlink(missing_ok=True)
            except OSError as exc:
                self.logger.warning("Unable to remove %s: %s", upstream, exc)
        return record


class AcquireStage(MediaStage):
    name = "acquire"
    target = VideoStatus.DOWNLOADED

    def output_path(self, video_id: str) -> Path:
        return self.layout.download_path(video_id)

    def invoke(self, video_id: str, output: Path) -> None:
        self.logger.info("Downloading video %s", video_id)
        download_audio(video_id, output, timeout=self.timeout)


class TransformStage(MediaStage):
    name = "transform"
    target = VideoStatus.PROCESSED

    def output_path(self, video_id: str) -> Path:
        return self.layout.processed_path(video_id)

    def input_path(self, video_id: str) -> Path | None:
        return self.layout.download_path(video_id)

    def invoke(self, video_id: str, output: Path) -> None:
        self.logger.info("Processing video %s", video_id)
        transcode_audio(
            self.layout.download_path(video_id), output, timeout=self.timeout
        )


class TranscribeStage(MediaStage):
    name = "transcribe"
    target = VideoStatus.TRANSCRIBED

    def __init__(
        self,
        layout: DataLayout,
        store: VideoStore,
        model_path: Path,
        timeout: float | None = None,
    ):
        super().__init__(layout, store, timeout)
        self.model_path = model_path

    def output_path(self, video_id: str) -> Path:
        return self.layout.transcript_path(video_id)

    def input_path(self, video_id: str) -> Path | None:
        return self.layout.processed_path(video_id)

    def invoke(self, video_id: str, output: Path) -> None:
        self.logger.info("Transcribing video %s", video_id)
        transcribe_audio(
            self.layout.processed_path(video_id),
            output,
            self.model_path,
            timeout=self.timeout,
        )


class StageWorkers:
    """A pool of threads feeding one stage from its inbox and forwarding on success."""

    def __init__(
        self,
        stage: MediaStage,
        inbox: queue.Queue,
        outbox: queue.Queue,
        tracker: CompletionTracker,
        shutdown_event: threading.Event,
        workers: int = 1,
    ):
        self.stage = stage
        self.inbox = inbox
        self.outbox = outbox
        self.tracker = tracker
        self.shutdown_event = shutdown_event
        self.workers = workers
        self.logger = stage.logger
        self.threads: list[threading.Thread] = []

    def process(self, video_id: str) -> bool:
        """Run the stage for one video; returns True when it was forwarded."""
        if self.shutdown_event.is_set():
            self.tracker.write_off()
            return False

        try:
            self.stage.advance(video_id)
        except ToolError as exc:
            self.logger.error(
                "Unable to %s video %s: %s", self.stage.name, video_id, exc
            )
            self.tracker.write_off()
            return False
        except Exception:
            self.logger.exception(
                "Unexpected error during %s of video %s", self.stage.name, video_id
            )
            self.tracker.write_off()
            return False

        try:
            put_until_shutdown(self.outbox, video_id, self.shutdown_event)
        except ShutdownRequested:
            self.logger.info(
                "Not forwarding video %s after %s due to shutdown",
                video_id,
                self.stage.name,
            )
            self.tracker.write_off()
            return False
        return True

    def _worker(self, worker_id: int) -> None:
        worker_logger = self.logger.getChild(f"worker-{worker_id}")
        worker_logger.debug("%s worker %d started", self.stage.name, worker_id)

        while True:
            try:
                video_id = self.inbox.get(timeout=QUEUE_POLL_INTERVAL)
            except queue.Empty:
                if self.shutdown_event.is_set():
                    break
                continue

            try:
                if video_id is None:  # Poison pill
                    break
                self.process(video_id)
            finally:
                self.inbox.task_done()

        worker_logger.debug("%s worker %d stopped", self.stage.name, worker_id)

    def start(self) -> list[threading.Thread]:
        for i in range(self.workers):
            thread = threading.Thread(
                target=self._worker,
                args=(i,),
                name=f"{self.stage.name.title()}Worker-{i}",
                daemon=True,
            )
            thread.start()
            self.threads.append(thread)
        return self.threads

    def stop(self) -> None:
        for _ in self.threads:
            try:
                self.inbox.put(None, timeout=NORMAL_JOIN_TIMEOUT)
            except queue.Full:
                self.logger.warning(
                    "Unable to deliver stop signal to %s", self.stage.name
                )


class BatchIndexer:
    """Buffers transcripts and submits them to the index on a fixed interval."""

    def __init__(
        self,
        store: VideoStore,
        layout: DataLayout,
        client: SearchIndexClient,
        tracker: CompletionTracker,
        inbox: queue.Queue,
        shutdown_event: threading.Event,
        *,
        batch_size: int = 100,
        flush_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.layout = layout
        self.client = client
        self.tracker = tracker
        self.inbox = inbox
        self.shutdown_event = shutdown_event
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self._clock = clock
        self.buffer: list[Document] = []
        self.logger = pipeline_logger.getChild("index")
        self.thread: threading.Thread | None = None

    def add(self, video_id: str) -> bool:
        """Read the transcript of a video and buffer its document."""
        record = self.store.get(video_id)
        if record is None:
            self.logger.error("Video %s is not in the state store", video_id)
            self.tracker.write_off()
            return False

        transcript_path = self.layout.transcript_path(video_id)
        try:
            transcript = transcript_path.read_text(encoding="utf-8")
        except OSError as exc:
            self.logger.error("Unable to read transcript of %s: %s", video_id, exc)
            self.tracker.write_off()
            return False

        self.buffer.append(Document.from_record(record, transcript))
        return True

    def flush(self) -> int:
        """Submit up to ``batch_size`` buffered documents; return the indexed count."""
        if not self.buffer:
            return 0

        batch = self.buffer[: self.batch_size]
        del self.buffer[: self.batch_size]

        self.logger.info("Uploading %d documents to search index", len(batch))
        try:
            self.client.upsert_documents(batch)
        except IndexUploadError as exc:
            # dropped videos keep their status and are re-admitted next run
            self.logger.error("Unable to upload to index: %s", exc)
            self.tracker.write_off(len(batch))
            return 0

        indexed = 0
        for document in batch:
            try:
                self.store.advance(document.id, VideoStatus.INDEXED)
            except (KeyError, InvalidTransition) as exc:
                self.logger.error("Unable to mark %s indexed: %s", document.id, exc)
                self.tracker.write_off()
                continue
            self.tracker.redeem()
            indexed += 1

        self.logger.info("Uploaded %d documents to search index", indexed)
        return indexed

    def run(self) -> None:
        next_flush = self._clock() + self.flush_interval
        while not self.shutdown_event.is_set():
            timeout = max(0.0, next_flush - self._clock())
            try:
                video_id = self.inbox.get(timeout=timeout)
            except queue.Empty:
                pass
            else:
                self.inbox.task_done()
                if video_id is None:
                    break
                self.add(video_id)

            if self._clock() >= next_flush:
                self.flush()
                next_flush = self._clock() + self.flush_interval

        self.logger.debug("Index loop stopped with %d buffered", len(self.buffer))

    def start(self) -> threading.Thread:
        self.thread = threading.Thread(target=self.run, name="IndexWorker", daemon=True)
        self.thread.start()
        return self.thread

    def stop(self) -> None:
        try:
            self.inbox.put(None, timeout=NORMAL_JOIN_TIMEOUT)
        except queue.Full:
            self.logger.warning("Unable to deliver stop signal to the indexer")


def dispatch_sweep(
    records: Mapping[str, VideoRecord],
    queues: Mapping[VideoStatus, queue.Queue],
    tracker: CompletionTracker,
    shutdown_event: threading.Event,
) -> int:
    """Admit every record into the queue matching its status.

    ``queues`` maps a status to the inbox of the stage that consumes it.
    Indexed records flagged for re-index are sent to the index inbox as well.
    """
    dispatch_logger = pipeline_logger.getChild("dispatch")
    dispatched = 0
    for video_id, record in records.items():
        targets: list[queue.Queue] = []
        if record.status in queues:
            targets.append(queues[record.status])
        if record.status is VideoStatus.INDEXED and record.reindex:
            targets.append(queues[VideoStatus.TRANSCRIBED])

        for target in targets:
            tracker.register()
            try:
                put_until_shutdown(target, video_id, shutdown_event)
            except ShutdownRequested:
                tracker.write_off()
                dispatch_logger.info(
                    "Dispatch halted by shutdown after %d videos", dispatched
                )
                return dispatched
            dispatch_logger.debug(
                "Queued %s (status: %s)", video_id, record.status.value
            )
            dispatched += 1

    dispatch_logger.info("Queued %d videos for processing", dispatched)
    return dispatched


class ShutdownCoordinator:
    """Persists a snapshot of the store when an interrupt arrives."""

    def __init__(self, store: VideoStore, layout: DataLayout):
        self.store = store
        self.layout = layout
        self.event = threading.Event()
        self.snapshot: dict[str, VideoRecord] | None = None
        self.logger = pipeline_logger.getChild("shutdown")

    @property
    def requested(self) -> bool:
        return self.event.is_set()

    def request_shutdown(self, reason: str) -> bool:
        """Stop admitting work and persist a snapshot; False if already requested."""
        if self.event.is_set():
            self.logger.warning("Additional shutdown request received (%s)", reason)
            return False

        self.logger.info("Shutdown requested: %s", reason)
        self.event.set()
        self.snapshot = self.store.snapshot()
        try:
            save_state(self.layout, self.snapshot)
            self.logger.info("State saved during shutdown request")
        except OSError as exc:
            self.logger.error("Failed to save state during shutdown: %s", exc)
        return True

    def handle_signal(self, signum, frame) -> None:
        try:
            signal_name = signal.Signals(signum).name
        except ValueError:
            signal_name = str(signum)

        if not self.request_shutdown(f"signal {signal_name}"):
            self.logger.warning("Forcing termination")
            os._exit(INTERRUPTED_EXIT_CODE)

    def install(self, signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)) -> None:
        for signum in signals:
            signal.signal(signum, self.handle_signal)


@dataclass(frozen=True)
class RunResult:
    interrupted: bool
    counts: CompletionCounts


def _join_threads_with_timeout(
    threads: Iterable[threading.Thread], timeout: float
) -> list[str]:
    deadline = time.monotonic() + timeout
    lingering = []
    for thread in threads:
        thread.join(max(0.0, deadline - time.monotonic()))
        if thread.is_alive():
            lingering.append(thread.name)
    return lingering


class Pipeline:
    """Wires the stage pools, the indexer and the dispatch sweep together."""

    def __init__(
        self,
        store: VideoStore,
        layout: DataLayout,
        client: SearchIndexClient,
        shutdown: ShutdownCoordinator,
        *,
        model_path: Path,
        download_workers: int = 3,
        transcribe_workers: int = 2,
        batch_size: int = 100,
        flush_interval: float = 5.0,
        tool_timeout: float | None = None,
    ):
        self.store = store
        self.layout = layout
        self.shutdown = shutdown
        self.tracker = CompletionTracker()
        event = shutdown.event

        self.queues: dict[VideoStatus, queue.Queue] = {
            status: queue.Queue(maxsize=STAGE_QUEUE_SIZE)
            for status in (
                VideoStatus.PENDING,
                VideoStatus.DOWNLOADED,
                VideoStatus.PROCESSED,
                VideoStatus.TRANSCRIBED,
            )
        }
        self.stages = [
            StageWorkers(
                AcquireStage(layout, store, tool_timeout),
                self.queues[VideoStatus.PENDING],
                self.queues[VideoStatus.DOWNLOADED],
                self.tracker,
                event,
                download_workers,
            ),
            StageWorkers(
                TransformStage(layout, store, tool_timeout),
                self.queues[VideoStatus.DOWNLOADED],
                self.queues[VideoStatus.PROCESSED],
                self.tracker,
                event,
                download_workers,
            ),
            StageWorkers(
                TranscribeStage(layout, store, model_path, tool_timeout),
                self.queues[VideoStatus.PROCESSED],
                self.queues[VideoStatus.TRANSCRIBED],
                self.tracker,
                event,
                transcribe_workers,
            ),
        ]
        self.indexer = BatchIndexer(
            store,
            layout,
            client,
            self.tracker,
            self.queues[VideoStatus.TRANSCRIBED],
            event,
            batch_size=batch_size,
            flush_interval=flush_interval,
        )

    def _sweep(self) -> None:
        try:
            dispatch_sweep(
                self.store.snapshot(), self.queues, self.tracker, self.shutdown.event
            )
        finally:
            self.tracker.seal()

    def run(self) -> RunResult:
        run_logger = pipeline_logger.getChild("run")
        threads: list[threading.Thread] = []
        for stage in self.stages:
            threads.extend(stage.start())
        threads.append(self.indexer.start())
        run_logger.info("All worker threads started")

        sweeper = threading.Thread(
            target=self._sweep, name="DispatchSweep", daemon=True
        )
        sweeper.start()

        # poll so the main thread stays responsive to signal handlers
        while not self.tracker.wait(timeout=WAIT_POLL_INTERVAL):
            if self.shutdown.requested:
                break

        if self.shutdown.requested:
            run_logger.info(
                "Shutdown requested before completion; not waiting for running tools."
            )
            return RunResult(interrupted=True, counts=self.tracker.counts())

        run_logger.debug("Sending stop signals to workers...")
        for stage in self.stages:
            stage.stop()
        self.indexer.stop()

        lingering = _join_threads_with_timeout(
            threads + [sweeper], timeout=NORMAL_JOIN_TIMEOUT
        )
        if lingering:
            run_logger.warning(
                "Threads still running after shutdown: %s", ", ".join(lingering)
            )

        counts = self.tracker.counts()
        run_logger.info(
            "Pipeline complete: %d indexed, %d left for a later run",
            counts.redeemed,
            counts.written_off,
        )
        return RunResult(interrupted=False, counts=counts)
