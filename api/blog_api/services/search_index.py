"""Elasticsearch-backed search index.

Documents are written with external versioning (``version_type=external_gte``)
using the article's ``sync_version``, so Elasticsearch itself rejects a write
that would move a document backwards: re-applying the same version is allowed
and idempotent, a lower version is answered with HTTP 409.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import httpx

from blog_api.domain.models import PageRequest, SearchDocument, SearchQuery
from blog_api.services.errors import SearchIndexError, StaleWriteRejected, TransientIndexError

logger = logging.getLogger(__name__)

AUTHOR_PAGE_SIZE = 500
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}

INDEX_SETTINGS: dict[str, Any] = {
    "settings": {
        "analysis": {
            "normalizer": {
                "lowercase_keyword": {"type": "custom", "filter": ["lowercase"]},
            }
        }
    },
    "mappings": {
        "dynamic": "strict",
        "properties": {
            "article_id": {"type": "long"},
            "author_id": {"type": "long"},
            "title": {"type": "text"},
            "tags": {"type": "keyword", "normalizer": "lowercase_keyword"},
            "text": {"type": "text"},
            "publish_time": {"type": "date"},
        },
    },
}


class ElasticsearchIndex:
    def __init__(
        self,
        base_url: str,
        index_name: str,
        *,
        timeout_seconds: float = 5.0,
        username: str | None = None,
        password: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.index_name = index_name
        self.timeout_seconds = timeout_seconds
        self._auth = (username, password) if username and password else None
        self._client = client
        self._owns_client = client is None
        self._index_ready = False

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def ensure_index(self) -> None:
        response = await self._request("PUT", f"/{self.index_name}", json=INDEX_SETTINGS)
        if response.status_code == 400 and _error_type(response) == "resource_already_exists_exception":
            self._index_ready = True
            return
        self._raise_for_status(response)
        self._index_ready = True
        logger.info("created search index name=%s", self.index_name)

    async def upsert(self, document: SearchDocument) -> None:
        # A document write against a missing index would create it with a dynamic mapping.
        if not self._index_ready:
            await self.ensure_index()
        response = await self._request(
            "PUT",
            f"/{self.index_name}/_doc/{document.id}",
            params={"version": document.version, "version_type": "external_gte"},
            json=self._document_to_source(document),
        )
        if response.status_code == 409:
            raise StaleWriteRejected(document.id, document.version, None)
        self._raise_for_status(response)

    async def delete(self, article_id: int, *, version: int | None = None) -> None:
        params: dict[str, Any] = {}
        if version is not None:
            params = {"version": version, "version_type": "external_gte"}
        response = await self._request("DELETE", f"/{self.index_name}/_doc/{article_id}", params=params)
        if response.status_code == 404:
            return
        if response.status_code == 409:
            raise StaleWriteRejected(article_id, version or 0, None)
        self._raise_for_status(response)

    async def get(self, article_id: int) -> SearchDocument | None:
        response = await self._request("GET", f"/{self.index_name}/_doc/{article_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        payload = response.json()
        if not payload.get("found"):
            return None
        return self._hit_to_document(payload)

    async def get_versions(self, article_ids: Iterable[int]) -> dict[int, int]:
        ids = [str(article_id) for article_id in article_ids]
        if not ids:
            return {}
        response = await self._request(
            "POST",
            f"/{self.index_name}/_mget",
            params={"_source": "false"},
            json={"ids": ids},
        )
        if response.status_code == 404:
            return {}
        self._raise_for_status(response)
        versions: dict[int, int] = {}
        for doc in response.json().get("docs", []):
            if doc.get("found"):
                versions[int(doc["_id"])] = int(doc["_version"])
        return versions

    async def scan(self, *, after_id: int, limit: int) -> list[tuple[int, int]]:
        body: dict[str, Any] = {
            "size": limit,
            "_source": False,
            "version": True,
            "query": {"match_all": {}},
            "sort": [{"article_id": "asc"}],
            "search_after": [after_id],
        }
        payload = await self._search(body)
        return [(int(hit["_id"]), int(hit["_version"])) for hit in payload["hits"]["hits"]]

    async def search(self, query: SearchQuery, page: PageRequest) -> list[int]:
        must: list[dict[str, Any]] = []
        filters: list[dict[str, Any]] = []
        text = (query.text or "").strip()
        if text:
            must.append(
                {
                    "multi_match": {
                        "query": text,
                        "fields": ["title^3", "tags^2", "text"],
                        "operator": "and",
                    }
                }
            )
        if query.author_id is not None:
            filters.append({"term": {"author_id": query.author_id}})
        for tag in query.tags:
            filters.append({"term": {"tags": tag}})

        body: dict[str, Any] = {
            "from": page.offset,
            "size": page.limit,
            "_source": False,
            "query": {"bool": {"must": must or [{"match_all": {}}], "filter": filters}},
            "sort": ["_score", {"publish_time": {"order": "desc", "missing": "_last"}}, {"article_id": "desc"}],
        }
        payload = await self._search(body)
        return [int(hit["_id"]) for hit in payload["hits"]["hits"]]

    async def find_by_author(self, author_id: int) -> list[SearchDocument]:
        documents: list[SearchDocument] = []
        body: dict[str, Any] = {
            "size": AUTHOR_PAGE_SIZE,
            "version": True,
            "query": {"term": {"author_id": author_id}},
            "sort": [{"article_id": "desc"}],
        }
        while True:
            hits = (await self._search(body))["hits"]["hits"]
            documents.extend(self._hit_to_document(hit) for hit in hits)
            if len(hits) < AUTHOR_PAGE_SIZE:
                return documents
            body["search_after"] = [int(hits[-1]["_id"])]

    async def _search(self, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", f"/{self.index_name}/_search", json=body)
        if response.status_code == 404:
            return {"hits": {"hits": []}}
        self._raise_for_status(response)
        return response.json()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = self._get_client()
        try:
            return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientIndexError(f"search index timeout: {method} {path}") from exc
        except httpx.TransportError as exc:
            raise TransientIndexError(f"search index unavailable: {method} {path}: {exc}") from exc

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                auth=self._auth,
            )
        return self._client

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        detail = f"search index responded {response.status_code}: {response.text[:300]}"
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientIndexError(detail)
        raise SearchIndexError(detail)

    @staticmethod
    def _document_to_source(document: SearchDocument) -> dict[str, Any]:
        return {
            "article_id": document.id,
            "author_id": document.author_id,
            "title": document.title,
            "tags": list(document.tags),
            "text": document.text,
            "publish_time": document.publish_time.isoformat() if document.publish_time else None,
        }

    @staticmethod
    def _hit_to_document(hit: dict[str, Any]) -> SearchDocument:
        source = hit.get("_source") or {}
        raw_publish_time = source.get("publish_time")
        publish_time = None
        if isinstance(raw_publish_time, str) and raw_publish_time:
            publish_time = datetime.fromisoformat(raw_publish_time.replace("Z", "+00:00"))
        tags = source.get("tags")
        return SearchDocument(
            id=int(hit["_id"]),
            author_id=int(source.get("author_id", 0)),
            title=str(source.get("title", "")),
            tags=[tag for tag in tags if isinstance(tag, str)] if isinstance(tags, list) else [],
            text=str(source.get("text", "")),
            version=int(hit.get("_version", 0)),
            publish_time=publish_time,
        )


def _error_type(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("type")
    return None
