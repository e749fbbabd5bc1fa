import queue
import threading
from unittest.mock import MagicMock

from conftest import write_artifact
from src.pipeline import BatchIndexer, CompletionTracker
from src.schema import VideoRecord, VideoStatus
from src.search_index import IndexUploadError
from src.state_store import VideoStore


def _indexer(layout, store, client=None, tracker=None, **kwargs) -> BatchIndexer:
    return BatchIndexer(
        store,
        layout,
        client or MagicMock(),
        tracker or CompletionTracker(),
        queue.Queue(),
        threading.Event(),
        **kwargs,
    )


def _transcribed(layout, *video_ids: str, **fields) -> VideoStore:
    records = {}
    for video_id in video_ids:
        status = fields.get("status", VideoStatus.TRANSCRIBED)
        records[video_id] = VideoRecord(
            id=video_id,
            title=f"Title {video_id}",
            status=status,
            reindex=fields.get("reindex", False),
        )
        write_artifact(layout.transcript_path(video_id), f"transcript of {video_id}")
    return VideoStore(records)


def test_flush_indexes_transcribed_video_and_redeems_credit(layout):
    store = _transcribed(layout, "abc")
    tracker = CompletionTracker()
    tracker.register()
    client = MagicMock()
    indexer = _indexer(layout, store, client, tracker)

    assert indexer.add("abc") is True
    assert indexer.flush() == 1

    (batch,), _ = client.upsert_documents.call_args
    assert batch[0].id == "abc"
    assert batch[0].title == "Title abc"
    assert batch[0].transcript == "transcript of abc"
    assert store.get("abc").status is VideoStatus.INDEXED
    assert tracker.counts().redeemed == 1
    tracker.seal()
    assert tracker.wait(timeout=0) is True


def test_flush_never_exceeds_batch_size(layout):
    store = _transcribed(layout, "a", "b", "c")
    tracker = CompletionTracker()
    tracker.register(3)
    client = MagicMock()
    indexer = _indexer(layout, store, client, tracker, batch_size=2)
    for video_id in "abc":
        indexer.add(video_id)

    assert indexer.flush() == 2
    assert len(client.upsert_documents.call_args.args[0]) == 2
    assert [document.id for document in indexer.buffer] == ["c"]
    assert store.get("c").status is VideoStatus.TRANSCRIBED

    assert indexer.flush() == 1
    assert indexer.buffer == []
    assert tracker.counts().redeemed == 3


def test_failed_flush_writes_off_batch_and_keeps_status(layout):
    store = _transcribed(layout, "a", "b")
    tracker = CompletionTracker()
    tracker.register(2)
    client = MagicMock()
    client.upsert_documents.side_effect = IndexUploadError("HTTP 503")
    indexer = _indexer(layout, store, client, tracker)
    indexer.add("a")
    indexer.add("b")

    assert indexer.flush() == 0

    assert indexer.buffer == []
    assert store.get("a").status is VideoStatus.TRANSCRIBED
    assert tracker.counts().written_off == 2


def test_missing_transcript_is_written_off(layout):
    store = VideoStore({"abc": VideoRecord(id="abc", status=VideoStatus.TRANSCRIBED)})
    tracker = CompletionTracker()
    tracker.register()
    indexer = _indexer(layout, store, tracker=tracker)

    assert indexer.add("abc") is False
    assert indexer.buffer == []
    assert tracker.counts().written_off == 1


def test_reindexed_video_clears_flag(layout):
    store = _transcribed(layout, "abc", status=VideoStatus.INDEXED, reindex=True)
    tracker = CompletionTracker()
    tracker.register()
    indexer = _indexer(layout, store, tracker=tracker)

    indexer.add("abc")
    indexer.flush()

    record = store.get("abc")
    assert record.status is VideoStatus.INDEXED
    assert record.reindex is False


def test_empty_flush_does_not_call_client(layout):
    client = MagicMock()
    assert _indexer(layout, VideoStore(), client).flush() == 0
    client.upsert_documents.assert_not_called()


def test_run_loop_flushes_on_interval(layout):
    store = _transcribed(layout, "abc")
    tracker = CompletionTracker()
    tracker.register()
    tracker.seal()
    indexer = _indexer(layout, store, tracker=tracker, flush_interval=0.05)

    thread = indexer.start()
    indexer.inbox.put("abc")
    assert tracker.wait(timeout=5) is True
    indexer.stop()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert store.get("abc").status is VideoStatus.INDEXED
