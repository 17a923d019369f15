from __future__ import annotations

import logging
from dataclasses import dataclass

from neo4j import AsyncGraphDatabase
from neo4j.exceptions import (
    AuthError,
    ClientError,
    DatabaseError,
    DriverError,
    Forbidden,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)

from docgraph_ingest.errors import MutationRejectedError, StoreUnavailableError
from docgraph_ingest.models import Document

logger = logging.getLogger(__name__)

# Client errors that mean the store cannot be reached as configured, not that
# the mutation itself is invalid.
_UNAVAILABLE_CODES = frozenset(
    {
        "Neo.ClientError.Database.DatabaseNotFound",
        "Neo.ClientError.General.DatabaseUnavailable",
    }
)

SCHEMA = [
    "CREATE CONSTRAINT document_hash IF NOT EXISTS FOR (d:Document) REQUIRE d.hash IS UNIQUE",
]

EXISTING_Q = """
MATCH (d:Document {hash: $hash})
RETURN coalesce(d.resolved, false) AS resolved
"""

UPSERT_NODE_Q = """
MERGE (d:Document {hash: $hash})
SET d += $props
SET d.resolved = true
"""

# Referenced documents may not have been seen yet; they get a placeholder node
# (resolved = false) that is filled in when their own event arrives.
UPSERT_EDGES_Q = """
MATCH (d:Document {hash: $hash})
UNWIND $refs AS ref
MERGE (t:Document {hash: ref.target})
ON CREATE SET t.resolved = false
MERGE (d)-[r:REFERENCES {name: ref.name}]->(t)
"""


@dataclass(slots=True)
class Neo4jConfig:
    uri: str
    user: str | None = None
    password: str | None = None
    database: str = "neo4j"
    # Retries belong to the ingestion pipeline, not the driver.
    max_transaction_retry_time: float = 0.0


class Neo4jDocumentStore:
    """Neo4j-backed document graph.

    Each document is one `(:Document {hash})` node; references become
    `[:REFERENCES {name}]` relationships. A document is written in a single
    write transaction, so readers never see a partial upsert.

    The async driver is safe to share between tasks; sessions are per call.
    """

    def __init__(self, cfg: Neo4jConfig):
        self.cfg = cfg
        auth = (cfg.user, cfg.password) if cfg.user else None
        self._driver = AsyncGraphDatabase.driver(
            cfg.uri,
            auth=auth,
            max_transaction_retry_time=cfg.max_transaction_retry_time,
        )

    async def close(self) -> None:
        await self._driver.close()

    async def ensure_schema(self) -> None:
        try:
            async with self._driver.session(database=self.cfg.database) as s:
                for q in SCHEMA:
                    await s.run(q)
        except (ServiceUnavailable, SessionExpired, AuthError, Forbidden, OSError) as e:
            raise StoreUnavailableError(f"neo4j unavailable at {self.cfg.uri}: {e}") from e
        except ClientError as e:
            if getattr(e, "code", None) in _UNAVAILABLE_CODES:
                raise StoreUnavailableError(f"neo4j unavailable at {self.cfg.uri}: {e}") from e
            raise
        logger.info("neo4j schema ensured on %s/%s", self.cfg.uri, self.cfg.database)

    async def upsert(self, doc: Document) -> bool:
        try:
            async with self._driver.session(database=self.cfg.database) as s:
                return await s.execute_write(self._upsert_tx, doc)
        except (ServiceUnavailable, SessionExpired, TransientError) as e:
            raise StoreUnavailableError(f"neo4j unavailable upserting {doc.hash}: {e}") from e
        except (AuthError, Forbidden) as e:
            raise StoreUnavailableError(f"neo4j refused credentials for {self.cfg.uri}: {e}") from e
        except ClientError as e:
            if getattr(e, "code", None) in _UNAVAILABLE_CODES:
                raise StoreUnavailableError(f"neo4j unavailable upserting {doc.hash}: {e}") from e
            raise MutationRejectedError(f"neo4j rejected {doc.hash}: {e}") from e
        except (DatabaseError, DriverError, OSError) as e:
            raise StoreUnavailableError(f"neo4j error upserting {doc.hash}: {e}") from e

    @staticmethod
    async def _upsert_tx(tx, doc: Document) -> bool:
        result = await tx.run(EXISTING_Q, hash=doc.hash)
        record = await result.single()
        if record is not None and record["resolved"]:
            return False

        await tx.run(UPSERT_NODE_Q, hash=doc.hash, props=doc.properties())
        if doc.references:
            refs = [{"name": r.name, "target": r.target} for r in doc.references]
            await tx.run(UPSERT_EDGES_Q, hash=doc.hash, refs=refs)
        return True
