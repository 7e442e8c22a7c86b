import asyncio
import json
from collections.abc import Callable
from datetime import datetime, timezone

import httpx
import pytest

from blog_api.domain.models import PageRequest, SearchDocument, SearchQuery
from blog_api.services.errors import SearchIndexError, StaleWriteRejected, TransientIndexError
from blog_api.services.search_index import AUTHOR_PAGE_SIZE, ElasticsearchIndex

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


ALREADY_EXISTS = {"error": {"type": "resource_already_exists_exception"}, "status": 400}


def _index(
    handler: Callable[[httpx.Request], httpx.Response],
    requests: list[httpx.Request] | None = None,
    *,
    existing_index: bool = True,
) -> ElasticsearchIndex:
    def recording_handler(request: httpx.Request) -> httpx.Response:
        if existing_index and request.method == "PUT" and request.url.path == "/blog-articles":
            return httpx.Response(400, json=ALREADY_EXISTS)
        if requests is not None:
            requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording_handler), base_url="http://search.local:9200")
    return ElasticsearchIndex("http://search.local:9200", "blog-articles", client=client)


def _document(version: int = 3) -> SearchDocument:
    return SearchDocument(
        id=12,
        author_id=7,
        title="Async Python",
        tags=["python", "asyncio"],
        text="async python tips",
        version=version,
        publish_time=NOW,
    )


def test_upsert_uses_external_versioning() -> None:
    requests: list[httpx.Request] = []
    index = _index(lambda request: httpx.Response(201, json={"result": "created"}), requests)

    asyncio.run(index.upsert(_document(version=3)))

    request = requests[0]
    assert request.method == "PUT"
    assert request.url.path == "/blog-articles/_doc/12"
    assert request.url.params["version"] == "3"
    assert request.url.params["version_type"] == "external_gte"
    body = json.loads(request.content)
    assert body["article_id"] == 12
    assert body["tags"] == ["python", "asyncio"]
    assert body["publish_time"] == NOW.isoformat()


def test_upsert_conflict_is_stale_write() -> None:
    index = _index(lambda request: httpx.Response(409, json={"error": {"type": "version_conflict_engine_exception"}}))
    with pytest.raises(StaleWriteRejected) as excinfo:
        asyncio.run(index.upsert(_document(version=2)))
    assert excinfo.value.article_id == 12
    assert excinfo.value.version == 2


def test_delete_tolerates_missing_document_and_maps_conflict() -> None:
    requests: list[httpx.Request] = []
    index = _index(lambda request: httpx.Response(404, json={"result": "not_found"}), requests)
    asyncio.run(index.delete(12, version=5))
    assert requests[0].method == "DELETE"
    assert requests[0].url.params["version"] == "5"

    conflicting = _index(lambda request: httpx.Response(409, json={}))
    with pytest.raises(StaleWriteRejected):
        asyncio.run(conflicting.delete(12, version=4))


def test_unversioned_delete_sends_no_version_params() -> None:
    requests: list[httpx.Request] = []
    index = _index(lambda request: httpx.Response(200, json={"result": "deleted"}), requests)
    asyncio.run(index.delete(12))
    assert "version" not in requests[0].url.params


@pytest.mark.parametrize("status_code", [429, 500, 502, 503, 504])
def test_overload_and_server_errors_are_transient(status_code: int) -> None:
    index = _index(lambda request: httpx.Response(status_code, text="busy"))
    with pytest.raises(TransientIndexError):
        asyncio.run(index.upsert(_document()))


def test_client_errors_are_not_retryable() -> None:
    index = _index(lambda request: httpx.Response(400, json={"error": {"type": "mapper_parsing_exception"}}))
    with pytest.raises(SearchIndexError) as excinfo:
        asyncio.run(index.upsert(_document()))
    assert not isinstance(excinfo.value, TransientIndexError)


def test_connection_failures_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientIndexError):
        asyncio.run(_index(handler).get(12))


def test_get_versions_reads_mget_payload() -> None:
    requests: list[httpx.Request] = []
    payload = {
        "docs": [
            {"_id": "1", "found": True, "_version": 4},
            {"_id": "2", "found": False},
            {"_id": "3", "found": True, "_version": 9},
        ]
    }
    index = _index(lambda request: httpx.Response(200, json=payload), requests)

    assert asyncio.run(index.get_versions([1, 2, 3])) == {1: 4, 3: 9}
    assert json.loads(requests[0].content) == {"ids": ["1", "2", "3"]}
    assert asyncio.run(index.get_versions([])) == {}
    assert len(requests) == 1


def test_get_parses_document() -> None:
    hit = {
        "_id": "12",
        "_version": 3,
        "found": True,
        "_source": {
            "article_id": 12,
            "author_id": 7,
            "title": "Async Python",
            "tags": ["python"],
            "text": "async python tips",
            "publish_time": "2024-05-01T12:00:00Z",
        },
    }
    index = _index(lambda request: httpx.Response(200, json=hit))
    document = asyncio.run(index.get(12))
    assert document is not None
    assert document.version == 3
    assert document.publish_time == NOW
    assert document.tags == ["python"]

    missing = _index(lambda request: httpx.Response(404, json={"found": False}))
    assert asyncio.run(missing.get(12)) is None


def test_search_builds_bool_query_and_returns_ids() -> None:
    requests: list[httpx.Request] = []
    payload = {"hits": {"hits": [{"_id": "5"}, {"_id": "2"}]}}
    index = _index(lambda request: httpx.Response(200, json=payload), requests)

    ids = asyncio.run(index.search(SearchQuery(text="asyncio", tags=["python"], author_id=7), PageRequest(offset=10, limit=5)))

    assert ids == [5, 2]
    body = json.loads(requests[0].content)
    assert body["from"] == 10
    assert body["size"] == 5
    assert body["query"]["bool"]["must"][0]["multi_match"]["query"] == "asyncio"
    assert {"term": {"author_id": 7}} in body["query"]["bool"]["filter"]
    assert {"term": {"tags": "python"}} in body["query"]["bool"]["filter"]


def test_scan_pages_by_article_id() -> None:
    requests: list[httpx.Request] = []
    payload = {"hits": {"hits": [{"_id": "4", "_version": 2}, {"_id": "8", "_version": 1}]}}
    index = _index(lambda request: httpx.Response(200, json=payload), requests)

    assert asyncio.run(index.scan(after_id=3, limit=2)) == [(4, 2), (8, 1)]
    body = json.loads(requests[0].content)
    assert body["search_after"] == [3]
    assert body["sort"] == [{"article_id": "asc"}]


def test_ensure_index_tolerates_existing_index() -> None:
    asyncio.run(_index(lambda request: httpx.Response(400, json=ALREADY_EXISTS), existing_index=False).ensure_index())

    rejected = _index(lambda request: httpx.Response(400, json={"error": {"type": "illegal_argument"}}), existing_index=False)
    with pytest.raises(SearchIndexError):
        asyncio.run(rejected.ensure_index())


def test_index_is_created_before_first_write_after_failed_startup() -> None:
    requests: list[httpx.Request] = []
    outage = {"down": True}

    def handler(request: httpx.Request) -> httpx.Response:
        if outage["down"]:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path == "/blog-articles":
            return httpx.Response(200, json={"acknowledged": True})
        return httpx.Response(201, json={"result": "created"})

    index = _index(handler, requests, existing_index=False)

    async def scenario() -> None:
        with pytest.raises(TransientIndexError):
            await index.ensure_index()
        outage["down"] = False
        await index.upsert(_document(version=1))
        await index.upsert(_document(version=2))

    asyncio.run(scenario())

    assert [(request.method, request.url.path) for request in requests] == [
        ("PUT", "/blog-articles"),
        ("PUT", "/blog-articles"),
        ("PUT", "/blog-articles/_doc/12"),
        ("PUT", "/blog-articles/_doc/12"),
    ]
    assert json.loads(requests[1].content)["mappings"]["properties"]["tags"]["type"] == "keyword"


def test_find_by_author_pages_past_one_response() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        start = body.get("search_after", [AUTHOR_PAGE_SIZE + 3])[0]
        ids = [article_id for article_id in range(start - 1, 0, -1)][:AUTHOR_PAGE_SIZE]
        return httpx.Response(200, json={"hits": {"hits": [_author_hit(article_id) for article_id in ids]}})

    documents = asyncio.run(_index(handler, requests).find_by_author(7))

    assert len(documents) == AUTHOR_PAGE_SIZE + 2
    assert documents[0].id == AUTHOR_PAGE_SIZE + 2
    assert documents[-1].id == 1
    assert len(requests) == 2
    assert json.loads(requests[1].content)["search_after"] == [3]


def _author_hit(article_id: int) -> dict:
    return {
        "_id": str(article_id),
        "_version": 1,
        "_source": {"article_id": article_id, "author_id": 7, "title": "t", "tags": [], "text": "t"},
    }


def test_missing_index_reads_as_empty() -> None:
    index = _index(lambda request: httpx.Response(404, json={"error": {"type": "index_not_found_exception"}}))
    assert asyncio.run(index.search(SearchQuery(text="x"), PageRequest())) == []
    assert asyncio.run(index.find_by_author(7)) == []
