from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from docgraph_ingest.errors import ResolverError
from docgraph_ingest.http import chain_client
from docgraph_ingest.models import HASH_ALGORITHM, Document, Reference, parse_content_hash

logger = logging.getLogger(__name__)

GET_TABLE_ROWS = "/v1/chain/get_table_rows"


class DocumentResolver:
    """Looks up documents by content hash in a contract's `documents` table.

    Read-only. One lookup is a single `get_table_rows` point query on the
    secondary hash index with ``lower_bound == upper_bound == hash`` and
    ``limit = 1``. Optionally follows up with a query on the `edges` table to
    collect outgoing edges of the document.

    Safe for concurrent use: the underlying httpx client is shared.
    """

    def __init__(
        self,
        endpoint: str,
        contract: str,
        *,
        scope: str | None = None,
        table: str = "documents",
        index_position: int = 2,
        edges_table: str = "edges",
        edges_index_position: int = 2,
        edges_limit: int = 1000,
        fetch_edges: bool = True,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.contract = contract
        self.scope = scope or contract
        self.table = table
        self.index_position = index_position
        self.edges_table = edges_table
        self.edges_index_position = edges_index_position
        self.edges_limit = edges_limit
        self.fetch_edges = fetch_edges
        self._client = client or chain_client(self.endpoint, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "DocumentResolver":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def resolve(self, content_hash: str) -> Document | None:
        """Return the document with `content_hash`, or None if there is none yet.

        Raises ResolverError on transport failures and malformed responses.
        """
        h = parse_content_hash(content_hash)
        rows = await self._table_rows(self.table, self.index_position, h, limit=1)
        if not rows:
            logger.debug("no document with hash %s in %s/%s", h, self.contract, self.table)
            return None

        try:
            doc = Document.from_row(rows[0], contract=self.contract, scope=self.scope)
        except (ValueError, ValidationError) as e:
            raise ResolverError(f"malformed document row for {h}: {e}") from e

        if doc.hash != h:
            raise ResolverError(f"hash index returned {doc.hash} for lookup of {h}")

        if self.fetch_edges:
            doc = doc.with_references(await self.edges_from(h))
        return doc

    async def edges_from(self, content_hash: str) -> list[Reference]:
        """Outgoing edges recorded for a document in the contract's edges table."""
        h = parse_content_hash(content_hash)
        rows = await self._table_rows(
            self.edges_table, self.edges_index_position, h, limit=self.edges_limit
        )
        if len(rows) >= self.edges_limit:
            logger.warning("edge lookup for %s hit the limit of %d rows", h, self.edges_limit)

        refs = []
        for row in rows:
            try:
                target = parse_content_hash(row.get("to_node"))
            except (AttributeError, ValueError) as e:
                raise ResolverError(f"malformed edge row for {h}: {row!r}") from e
            refs.append(Reference(name=str(row.get("edge_name") or "edge"), target=target))
        return refs

    async def _table_rows(
        self, table: str, index_position: int, key: str, *, limit: int
    ) -> list[dict[str, Any]]:
        body = {
            "code": self.contract,
            "scope": self.scope,
            "table": table,
            "index_position": index_position,
            "key_type": HASH_ALGORITHM,
            "lower_bound": key,
            "upper_bound": key,
            "limit": limit,
            "json": True,
        }
        try:
            r = await self._client.post(GET_TABLE_ROWS, json=body)
            r.raise_for_status()
            payload = r.json()
        except httpx.HTTPStatusError as e:
            raise ResolverError(
                f"chain query returned HTTP {e.response.status_code} for {table}/{key}"
            ) from e
        except httpx.HTTPError as e:
            raise ResolverError(f"chain query to {self.endpoint} failed: {e!r}") from e
        except ValueError as e:
            raise ResolverError(f"chain query returned invalid JSON for {table}/{key}") from e

        rows = payload.get("rows") if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            raise ResolverError(f"chain query response has no rows list for {table}/{key}")
        return rows
