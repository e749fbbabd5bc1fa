from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class VideoStatus(str, Enum):
    """Pipeline status of a video, in processing order."""

    PENDING = "pending"
    DOWNLOADED = "downloaded"
    PROCESSED = "processed"
    TRANSCRIBED = "transcribed"
    INDEXED = "indexed"


STATUS_ORDER: tuple[VideoStatus, ...] = tuple(VideoStatus)


class InvalidTransition(ValueError):
    """Raised when a record would move backwards or skip a status."""


class VideoDetails(BaseModel):
    """Metadata fetched for a single video."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    upload_date: str = Field(default="", alias="uploadDate")
    duration: str = ""


class VideoRecord(VideoDetails):
    """Schema for a video entry in the persisted state file."""

    status: VideoStatus = VideoStatus.PENDING
    reindex: bool = Field(default=False, alias="reIndex")

    def can_advance_to(self, target: VideoStatus) -> bool:
        current = STATUS_ORDER.index(self.status)
        wanted = STATUS_ORDER.index(target)
        if wanted == current + 1:
            return True
        # re-submission of an already indexed video
        return target is VideoStatus.INDEXED and self.status is VideoStatus.INDEXED

    def advanced(self, target: VideoStatus) -> VideoRecord:
        """Return a copy moved to ``target``; reaching INDEXED clears ``reindex``."""
        if not self.can_advance_to(target):
            raise InvalidTransition(
                f"Video {self.id} cannot move from {self.status.value} "
                f"to {target.value}"
            )
        update: dict[str, object] = {"status": target}
        if target is VideoStatus.INDEXED:
            update["reindex"] = False
        return self.model_copy(update=update)

    def with_details(self, details: VideoDetails) -> VideoRecord:
        """Return a copy carrying refreshed metadata; status is left alone."""
        return self.model_copy(
            update={
                "title": details.title,
                "upload_date": details.upload_date,
                "duration": details.duration,
            }
        )

    def to_json(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


class Document(VideoDetails):
    """Searchable document uploaded to the index."""

    transcript: str

    @classmethod
    def from_record(cls, record: VideoRecord, transcript: str) -> Document:
        return cls(
            id=record.id,
            title=record.title,
            upload_date=record.upload_date,
            duration=record.duration,
            transcript=transcript,
        )

    def to_json(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)
