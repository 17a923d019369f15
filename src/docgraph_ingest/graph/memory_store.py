from __future__ import annotations

import asyncio
import logging
from typing import Any

from docgraph_ingest.models import Document

logger = logging.getLogger(__name__)


class MemoryDocumentStore:
    """In-process document graph, used for dry runs.

    Mirrors the Neo4j store's semantics: nodes keyed by hash, placeholder
    nodes for unseen reference targets, and a no-op on re-upsert.
    """

    def __init__(self):
        self.nodes: dict[str, dict[str, Any]] = {}
        self.edges: set[tuple[str, str, str]] = set()
        self._lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def upsert(self, doc: Document) -> bool:
        async with self._lock:
            existing = self.nodes.get(doc.hash)
            if existing is not None and existing.get("resolved"):
                return False

            node = dict(existing or {})
            node.update(doc.properties())
            node["resolved"] = True
            self.nodes[doc.hash] = node

            for ref in doc.references:
                self.nodes.setdefault(ref.target, {"resolved": False})
                self.edges.add((doc.hash, ref.name, ref.target))

        logger.info("stored document %s (%d references)", doc.hash, len(doc.references))
        return True
