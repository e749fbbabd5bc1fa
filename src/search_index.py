"""Client for the Meilisearch index that stores video transcripts."""

from __future__ import annotations

from typing import Any, Sequence

import httpx

from src.logging_utils import get_logger
from src.schema import Document

DEFAULT_TIMEOUT = 30.0
PRIMARY_KEY = "id"

logger = get_logger("search_index")


class IndexUploadError(RuntimeError):
    """Raised when a batch of documents could not be submitted."""


class BatchTooLargeError(IndexUploadError):
    """Raised before any request when a batch exceeds the accepted size."""


class SearchIndexClient:
    """Submit document batches to one Meilisearch index."""

    def __init__(
        self,
        base_url: str,
        index_name: str,
        *,
        api_key: str | None = None,
        max_batch_size: int = 100,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.index_name = index_name
        self.max_batch_size = max_batch_size
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def upsert_documents(self, documents: Sequence[Document]) -> dict[str, Any]:
        """Add or update ``documents`` keyed by video id; returns the enqueued task."""
        if len(documents) > self.max_batch_size:
            raise BatchTooLargeError(
                f"Batch of {len(documents)} documents exceeds the maximum of "
                f"{self.max_batch_size}"
            )
        if not documents:
            return {}

        payload = [document.to_json() for document in documents]
        try:
            response = self._client.put(
                f"/indexes/{self.index_name}/documents",
                params={"primaryKey": PRIMARY_KEY},
                json=payload,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise IndexUploadError(
                f"Index rejected {len(payload)} documents "
                f"(HTTP {exc.response.status_code}): {exc.response.text[:300]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise IndexUploadError(f"Unable to reach index: {exc}") from exc

        try:
            task = response.json() if response.content else {}
        except ValueError:
            task = {}
        logger.debug(
            "Index accepted %d documents (task %s)", len(payload), task.get("taskUid")
        )
        return task

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> SearchIndexClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
