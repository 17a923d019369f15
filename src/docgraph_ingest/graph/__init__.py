"""Graph persistence for resolved documents.

- `DocumentStore`: the protocol the pipeline writes through
- `Neo4jDocumentStore`: production store
- `MemoryDocumentStore`: dry-run store
"""

from .memory_store import MemoryDocumentStore
from .neo4j_store import Neo4jConfig, Neo4jDocumentStore
from .store import DocumentStore

__all__ = ["DocumentStore", "MemoryDocumentStore", "Neo4jConfig", "Neo4jDocumentStore"]
