"""Document store REST client: point get, structured query, partial update.

Every call takes the bearer token explicitly so one token can be reused
across a reconciliation chain without the client holding credentials.
No retries: a failed call raises and aborts the caller's chain.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from autodelivery.errors import NotFoundError, StoreError, UpdateError
from autodelivery.store.codec import decode_fields, encode_fields, encode_value

logger = logging.getLogger(__name__)

ASCENDING = "ASCENDING"
DESCENDING = "DESCENDING"


@dataclass
class Document:
    """A decoded document."""

    name: str
    fields: dict[str, Any]
    create_time: str = ""
    update_time: str = ""

    @property
    def id(self) -> str:
        return self.name.rsplit("/", 1)[-1]

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> Document:
        return cls(
            name=raw.get("name", ""),
            fields=decode_fields(raw.get("fields")),
            create_time=raw.get("createTime", ""),
            update_time=raw.get("updateTime", ""),
        )


@dataclass
class StructuredQuery:
    """Single-collection query: optional equality filter, ordering and limit."""

    collection: str
    where_equal: tuple[str, Any] | None = None
    order_by: list[tuple[str, str]] = field(default_factory=list)
    limit: int | None = None

    def to_wire(self) -> dict[str, Any]:
        query: dict[str, Any] = {"from": [{"collectionId": self.collection}]}
        if self.where_equal is not None:
            path, value = self.where_equal
            query["where"] = {
                "fieldFilter": {
                    "field": {"fieldPath": path},
                    "op": "EQUAL",
                    "value": encode_value(value),
                }
            }
        if self.order_by:
            query["orderBy"] = [
                {"field": {"fieldPath": path}, "direction": direction}
                for path, direction in self.order_by
            ]
        if self.limit is not None:
            query["limit"] = self.limit
        return query

    def unordered(self, limit: int | None = None) -> StructuredQuery:
        """Same query without ``orderBy`` (needs no composite index)."""
        return StructuredQuery(
            collection=self.collection,
            where_equal=self.where_equal,
            limit=self.limit if limit is None else limit,
        )


class DocumentStoreClient:
    """Async client for the documents root of one database."""

    def __init__(self, base_url: str | Callable[[], str], http: httpx.AsyncClient) -> None:
        # A callable is resolved per call, so missing config surfaces as
        # ConfigError inside the chain instead of at startup
        self._base_url = base_url
        self._http = http

    @property
    def base_url(self) -> str:
        base = self._base_url() if callable(self._base_url) else self._base_url
        return base.rstrip("/")

    def _doc_url(self, collection: str, doc_id: str) -> str:
        return f"{self.base_url}/{collection}/{doc_id}"

    @staticmethod
    def _auth(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        label: str,
        error: type[StoreError] = StoreError,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await self._http.request(method, url, headers=self._auth(token), **kwargs)
        except httpx.HTTPError as e:
            raise error(f"{label} unreachable: {type(e).__name__}") from e

    async def get(self, collection: str, doc_id: str, token: str) -> Document:
        """Read one document. Raises NotFoundError on 404, StoreError otherwise."""
        response = await self._send("GET", self._doc_url(collection, doc_id), token, f"GET {collection}/{doc_id}")
        if response.status_code == 404:
            raise NotFoundError(
                f"GET {collection}/{doc_id} not found", status_code=404, body=response.text
            )
        if not response.is_success:
            raise StoreError(
                f"GET {collection}/{doc_id} failed: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return Document.from_wire(response.json())

    async def query(self, query: StructuredQuery, token: str) -> list[Document]:
        """Run a structured query against the documents root."""
        # runQuery lives on the parent path; the collection is named in "from"
        response = await self._send(
            "POST",
            f"{self.base_url}:runQuery",
            token,
            f"QUERY {query.collection}",
            json={"structuredQuery": query.to_wire()},
        )
        if not response.is_success:
            raise StoreError(
                f"QUERY {query.collection} failed: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        rows = response.json()
        if not isinstance(rows, list):
            return []
        documents = [Document.from_wire(row["document"]) for row in rows if row.get("document")]
        logger.debug("Query on %s returned %d documents", query.collection, len(documents))
        return documents

    async def query_sorted(
        self,
        query: StructuredQuery,
        token: str,
        key: Callable[[Document], Any],
        fallback_limit: int | None = None,
    ) -> list[Document]:
        """Run an ordered query; if the store rejects it, sort in memory instead.

        The fallback covers a missing composite index: the same query is
        re-run without ``orderBy`` and sorted by ``key``, descending.
        """
        try:
            return await self.query(query, token)
        except StoreError as e:
            logger.info(
                "Ordered query on %s rejected (%s), falling back to in-memory sort",
                query.collection,
                e.status_code,
            )
        documents = await self.query(query.unordered(fallback_limit), token)
        documents.sort(key=key, reverse=True)
        return documents

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        token: str,
        field_mask: list[str] | None = None,
    ) -> Document:
        """Write ``fields`` to a document.

        With a ``field_mask`` only the named fields are touched; without one
        the document is written whole (created if missing).
        """
        params = [("updateMask.fieldPaths", path) for path in field_mask or []]
        response = await self._send(
            "PATCH",
            self._doc_url(collection, doc_id),
            token,
            f"UPDATE {collection}/{doc_id}",
            UpdateError,
            params=params,
            json={"fields": encode_fields(fields)},
        )
        if not response.is_success:
            raise UpdateError(
                f"UPDATE {collection}/{doc_id} failed: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return Document.from_wire(response.json())
