import json

import httpx
import pytest

from src.schema import Document
from src.search_index import BatchTooLargeError, IndexUploadError, SearchIndexClient


def _document(video_id: str) -> Document:
    return Document(
        id=video_id,
        title="A title",
        upload_date="20240102",
        duration="3:00",
        transcript="1\n00:00:00,000 --> 00:00:01,000\nhello\n",
    )


def _client(handler, **kwargs) -> SearchIndexClient:
    return SearchIndexClient(
        "http://search.local:7700",
        "videos",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_upsert_documents_puts_json_batch():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(202, json={"taskUid": 7, "status": "enqueued"})

    with _client(handler, api_key="secret") as client:
        task = client.upsert_documents([_document("a"), _document("b")])

    assert task["taskUid"] == 7
    assert seen["method"] == "PUT"
    assert seen["path"] == "/indexes/videos/documents"
    assert seen["params"] == {"primaryKey": "id"}
    assert seen["auth"] == "Bearer secret"
    assert [doc["id"] for doc in seen["body"]] == ["a", "b"]
    assert seen["body"][0]["uploadDate"] == "20240102"
    assert "hello" in seen["body"][0]["transcript"]


def test_no_authorization_header_without_key():
    def handler(request: httpx.Request) -> httpx.Response:
        assert "Authorization" not in request.headers
        return httpx.Response(202, json={})

    with _client(handler) as client:
        client.upsert_documents([_document("a")])


def test_empty_batch_sends_nothing():
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("no request expected")

    with _client(handler) as client:
        assert client.upsert_documents([]) == {}


def test_oversized_batch_rejected_before_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(202, json={})

    with _client(handler, max_batch_size=2) as client:
        with pytest.raises(BatchTooLargeError):
            client.upsert_documents([_document(str(n)) for n in range(3)])

    assert calls == []


def test_http_error_status_raises_upload_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "invalid api key"})

    with _client(handler) as client:
        with pytest.raises(IndexUploadError, match="HTTP 401"):
            client.upsert_documents([_document("a")])


def test_connection_error_raises_upload_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _client(handler) as client:
        with pytest.raises(IndexUploadError, match="Unable to reach index"):
            client.upsert_documents([_document("a")])
