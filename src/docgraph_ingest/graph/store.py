from __future__ import annotations

from typing import Protocol

from docgraph_ingest.models import Document


class DocumentStore(Protocol):
    """Abstraction for the backing graph database.

    `upsert` keys the node on the document hash and returns True when the
    store changed, False when the document was already persisted.
    Implementations must be safe for concurrent calls.
    """

    async def ensure_schema(self) -> None: ...

    async def upsert(self, doc: Document) -> bool: ...

    async def close(self) -> None: ...
