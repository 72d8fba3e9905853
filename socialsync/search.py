"""Search index implementations.

- MeilisearchIndex: async httpx client for the Meilisearch REST API
- InMemorySearchIndex: process-local index for development and tests

Both key documents by the store-of-record id in the ``id`` field.

Example:
    >>> index = MeilisearchIndex("http://localhost:7700", api_key="masterKey")
    >>> await index.upsert_documents("posts", [{"id": "p1", "content": "hello"}])
    >>> hits = await index.search("posts", "hello", filters={"user_id": "u1"})
"""

import asyncio
import json
from typing import Any

import httpx

from socialsync.errors import SearchIndexError, TransientNetworkError
from socialsync.logging import logger

POSTS_INDEX = "posts"
PROFILES_INDEX = "profiles"

FILTERABLE_ATTRIBUTES: dict[str, list[str]] = {
    POSTS_INDEX: ["user_id", "platform", "author_handle"],
    PROFILES_INDEX: ["user_id", "platform"],
}
SORTABLE_ATTRIBUTES: dict[str, list[str]] = {
    POSTS_INDEX: ["published_at", "likes"],
    PROFILES_INDEX: [],
}


# =============================================================================
# Meilisearch
# =============================================================================


class MeilisearchIndex:
    """Meilisearch REST client.

    Writes are asynchronous tasks on the Meilisearch side; ``wait_for_tasks``
    makes each write block until its task has been processed.

    Args:
        url: Meilisearch base URL
        api_key: Master or admin API key
        client: Preconfigured httpx.AsyncClient (tests pass a MockTransport client)
        wait_for_tasks: Poll each enqueued task until it finishes
        task_timeout: Seconds to wait for a task
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        wait_for_tasks: bool = False,
        task_timeout: float = 30.0,
    ) -> None:
        self.url = url.rstrip("/")
        self._api_key = api_key
        self._client = client
        self._owns_client = client is None
        self.wait_for_tasks = wait_for_tasks
        self.task_timeout = task_timeout
        self._configured: set[str] = set()

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.url,
                timeout=httpx.Timeout(timeout=30.0, connect=5.0),
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        allow_404: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Perform a request; 429/5xx/network errors are TransientNetworkError."""
        client = await self._ensure_client()
        try:
            resp = await client.request(method, path, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise TransientNetworkError(f"Search index unreachable: {exc}") from exc

        if resp.status_code == 429 or 500 <= resp.status_code < 600:
            raise TransientNetworkError(f"Search index HTTP {resp.status_code}")
        if resp.status_code == 404 and allow_404:
            return None
        if not resp.is_success:
            raise SearchIndexError(
                f"Search index HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return resp.json() if resp.content else None

    async def _wait(self, task: Any) -> None:
        if not self.wait_for_tasks or not isinstance(task, dict) or "taskUid" not in task:
            return
        uid = task["taskUid"]
        deadline = asyncio.get_running_loop().time() + self.task_timeout
        delay = 0.05
        while True:
            body = await self._request("GET", f"/tasks/{uid}")
            status = body.get("status") if isinstance(body, dict) else None
            if status == "succeeded":
                return
            if status in ("failed", "canceled"):
                raise SearchIndexError(f"Search task {uid} {status}: {body.get('error')}")
            if asyncio.get_running_loop().time() > deadline:
                raise TransientNetworkError(f"Search task {uid} still {status} after {self.task_timeout}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, 1.0)

    async def _ensure_index(self, index: str) -> None:
        if index in self._configured:
            return
        task = await self._request(
            "PATCH",
            f"/indexes/{index}/settings",
            json={
                "filterableAttributes": FILTERABLE_ATTRIBUTES.get(index, ["user_id"]),
                "sortableAttributes": SORTABLE_ATTRIBUTES.get(index, []),
            },
        )
        await self._wait(task)
        self._configured.add(index)

    async def upsert_documents(self, index: str, documents: list[dict[str, Any]]) -> None:
        if not documents:
            return
        await self._ensure_index(index)
        task = await self._request(
            "POST",
            f"/indexes/{index}/documents",
            params={"primaryKey": "id"},
            content=json.dumps(documents, default=str),
            headers={"Content-Type": "application/json"},
        )
        await self._wait(task)

    async def delete_documents(self, index: str, document_ids: list[str]) -> None:
        if not document_ids:
            return
        task = await self._request(
            "POST",
            f"/indexes/{index}/documents/delete-batch",
            json=list(document_ids),
            allow_404=True,
        )
        await self._wait(task)

    async def delete_index(self, index: str) -> None:
        task = await self._request("DELETE", f"/indexes/{index}", allow_404=True)
        await self._wait(task)
        self._configured.discard(index)
        logger.info(f"🗑️ Deleted search index '{index}'")

    async def search(
        self,
        index: str,
        query: str,
        filters: dict[str, Any] | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"q": query, "limit": limit}
        if filters:
            payload["filter"] = [f"{key} = {json.dumps(str(value))}" for key, value in filters.items()]
        body = await self._request("POST", f"/indexes/{index}/search", json=payload, allow_404=True)
        if not body:
            return []
        return list(body.get("hits", []))


# =============================================================================
# In-Memory
# =============================================================================


class InMemorySearchIndex:
    """Dictionary-backed index with case-insensitive substring search.

    Setting ``available = False`` makes every call raise TransientNetworkError,
    which simulates an index outage.
    """

    def __init__(self) -> None:
        self.indexes: dict[str, dict[str, dict[str, Any]]] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise TransientNetworkError("Search index unavailable")

    def documents(self, index: str) -> dict[str, dict[str, Any]]:
        """Current documents of an index, keyed by id."""
        return dict(self.indexes.get(index, {}))

    async def upsert_documents(self, index: str, documents: list[dict[str, Any]]) -> None:
        self._check()
        store = self.indexes.setdefault(index, {})
        for doc in documents:
            store[str(doc["id"])] = dict(doc)

    async def delete_documents(self, index: str, document_ids: list[str]) -> None:
        self._check()
        store = self.indexes.get(index, {})
        for doc_id in document_ids:
            store.pop(str(doc_id), None)

    async def delete_index(self, index: str) -> None:
        self._check()
        self.indexes.pop(index, None)

    async def search(
        self,
        index: str,
        query: str,
        filters: dict[str, Any] | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        self._check()
        needle = query.lower()
        hits = []
        for doc in self.indexes.get(index, {}).values():
            if filters and any(doc.get(k) != v for k, v in filters.items()):
                continue
            if needle and not any(
                needle in str(value).lower() for value in doc.values() if isinstance(value, str)
            ):
                continue
            hits.append(dict(doc))
            if len(hits) >= limit:
                break
        return hits

    async def close(self) -> None:
        return None


__all__ = [
    "POSTS_INDEX",
    "PROFILES_INDEX",
    "MeilisearchIndex",
    "InMemorySearchIndex",
]
