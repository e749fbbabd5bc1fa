import pytest

from src.schema import (
    STATUS_ORDER,
    Document,
    InvalidTransition,
    VideoDetails,
    VideoRecord,
    VideoStatus,
)


def test_video_record_defaults():
    """A record created from an id alone is pending and not flagged for re-index."""
    record = VideoRecord(id="abc123")
    assert record.status is VideoStatus.PENDING
    assert record.reindex is False
    assert record.title == ""
    assert record.upload_date == ""
    assert record.duration == ""


def test_video_record_serializes_with_state_file_keys():
    record = VideoRecord(
        id="abc123",
        title="Intro",
        upload_date="20240101",
        duration="3:15",
        status=VideoStatus.TRANSCRIBED,
        reindex=True,
    )
    assert record.to_json() == {
        "id": "abc123",
        "title": "Intro",
        "uploadDate": "20240101",
        "duration": "3:15",
        "status": "transcribed",
        "reIndex": True,
    }


def test_video_record_loads_state_file_keys():
    record = VideoRecord.model_validate(
        {
            "status": "downloaded",
            "reIndex": False,
            "id": "xyz",
            "title": "Talk",
            "uploadDate": "20231231",
            "duration": "1:02:03",
        }
    )
    assert record.status is VideoStatus.DOWNLOADED
    assert record.upload_date == "20231231"


def test_video_record_rejects_unknown_status():
    with pytest.raises(ValueError):
        VideoRecord.model_validate({"id": "xyz", "status": "archived"})


@pytest.mark.parametrize("current, target", list(zip(STATUS_ORDER, STATUS_ORDER[1:])))
def test_advanced_moves_one_step_forward(current, target):
    record = VideoRecord(id="abc", status=current)
    assert record.advanced(target).status is target
    # the original is left untouched
    assert record.status is current


@pytest.mark.parametrize(
    "current, target",
    [
        (VideoStatus.PENDING, VideoStatus.PROCESSED),
        (VideoStatus.PENDING, VideoStatus.INDEXED),
        (VideoStatus.TRANSCRIBED, VideoStatus.DOWNLOADED),
        (VideoStatus.INDEXED, VideoStatus.PENDING),
        (VideoStatus.DOWNLOADED, VideoStatus.DOWNLOADED),
    ],
)
def test_advanced_rejects_skips_and_regressions(current, target):
    record = VideoRecord(id="abc", status=current)
    with pytest.raises(InvalidTransition):
        record.advanced(target)


def test_reaching_indexed_clears_reindex():
    record = VideoRecord(id="abc", status=VideoStatus.TRANSCRIBED, reindex=True)
    assert record.advanced(VideoStatus.INDEXED).reindex is False


def test_indexed_self_loop_clears_reindex():
    record = VideoRecord(id="abc", status=VideoStatus.INDEXED, reindex=True)
    updated = record.advanced(VideoStatus.INDEXED)
    assert updated.status is VideoStatus.INDEXED
    assert updated.reindex is False


def test_with_details_keeps_status_and_flag():
    record = VideoRecord(id="abc", status=VideoStatus.PROCESSED, title="Old")
    details = VideoDetails(id="abc", title="New", upload_date="20240202", duration="9")
    updated = record.with_details(details)
    assert updated.title == "New"
    assert updated.upload_date == "20240202"
    assert updated.duration == "9"
    assert updated.status is VideoStatus.PROCESSED
    assert updated.reindex is False


def test_document_from_record():
    record = VideoRecord(id="abc", title="Intro", upload_date="20240101", duration="5")
    document = Document.from_record(record, "1\n00:00:00,000 --> 00:00:01,000\nHi\n")
    assert document.to_json() == {
        "id": "abc",
        "title": "Intro",
        "uploadDate": "20240101",
        "duration": "5",
        "transcript": "1\n00:00:00,000 --> 00:00:01,000\nHi\n",
    }
