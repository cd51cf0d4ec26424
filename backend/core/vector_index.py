"""Qdrant vector index.

Holds one collection of embedded documents keyed by a logical string id
(e.g. "context-3"). Qdrant only accepts ints/UUIDs as point ids, so the point
id is the UUID5 of the logical id and the logical id travels in the payload.
Every operation degrades gracefully if the database is unreachable.
"""

import os
import uuid
from dataclasses import dataclass, field

import structlog
from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models

from backend.core.embeddings import DEFAULT_DIM

logger = structlog.get_logger(__name__)

CONTEXT_COLLECTION = "ycc-ai-context"


@dataclass
class VectorMatch:
    """One nearest-neighbour hit.

    Attributes:
        id: Logical id the vector was upserted under.
        score: Cosine similarity to the query vector.
        metadata: Stored payload (without the id key).
    """
    id: str
    score: float
    metadata: dict = field(default_factory=dict)


def point_id(logical_id: str) -> str:
    """Stable Qdrant point id for a logical id."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, logical_id))


class VectorIndex:
    """Wraps AsyncQdrantClient for a single collection."""

    def __init__(self, collection: str | None = None, client=None, vector_size: int | None = None):
        self.collection = collection or os.environ.get("CONTEXT_COLLECTION", CONTEXT_COLLECTION)
        self.vector_size = vector_size or int(os.environ.get("EMBEDDING_DIM", str(DEFAULT_DIM)))
        self._client = client

        if self._client is not None:
            return

        url = os.environ.get("QDRANT_URL")
        if not url:
            logger.warning("qdrant.no_url")
            return

        try:
            if url == ":memory:":
                self._client = AsyncQdrantClient(location=":memory:")
            else:
                self._client = AsyncQdrantClient(
                    url=url, api_key=os.environ.get("QDRANT_API_KEY"), timeout=10,
                )
        except Exception as e:
            logger.error("qdrant.init_failed", error=str(e))
            self._client = None

    def is_healthy(self) -> bool:
        """Check if the Qdrant client was successfully initialized."""
        return self._client is not None

    async def setup(self) -> None:
        """Create the collection if it is missing."""
        if not self._client:
            return

        try:
            if not await self._client.collection_exists(self.collection):
                logger.info("qdrant.create_collection", name=self.collection, size=self.vector_size)
                await self._client.create_collection(
                    collection_name=self.collection,
                    vectors_config=models.VectorParams(
                        size=self.vector_size,
                        distance=models.Distance.COSINE,
                    ),
                )
        except Exception as e:
            logger.error("qdrant.setup_failed", collection=self.collection, error=str(e))

    async def upsert(self, id: str, vector: list[float], metadata: dict) -> bool:
        """Store or overwrite the vector for a logical id.

        Args:
            id: Logical id, e.g. "context-0".
            vector: Embedding of the document.
            metadata: JSON-serializable payload stored alongside.

        Returns:
            True on success.
        """
        if not self._client:
            return False

        try:
            await self._client.upsert(
                collection_name=self.collection,
                points=[
                    models.PointStruct(
                        id=point_id(id), vector=vector, payload={**metadata, "id": id},
                    )
                ],
            )
            return True
        except Exception as e:
            logger.error("qdrant.upsert_err", collection=self.collection, id=id, error=str(e))
            return False

    async def query(self, vector: list[float], top_k: int) -> list[VectorMatch]:
        """Nearest neighbours by cosine similarity, best first.

        Returns:
            Up to top_k matches; empty list on any failure.
        """
        if not self._client:
            return []

        try:
            response = await self._client.query_points(
                collection_name=self.collection,
                query=vector,
                limit=top_k,
                with_payload=True,
            )
            points = response.points if response else []
        except Exception as e:
            logger.error("qdrant.query_err", collection=self.collection, error=str(e))
            return []

        matches = []
        for p in points:
            payload = dict(p.payload or {})
            logical_id = payload.pop("id", str(p.id))
            matches.append(VectorMatch(id=logical_id, score=p.score, metadata=payload))
        return matches

    async def delete_all(self) -> bool:
        """Drop every vector by recreating the collection."""
        if not self._client:
            return False

        try:
            if await self._client.collection_exists(self.collection):
                await self._client.delete_collection(self.collection)
                logger.info("qdrant.collection_deleted", name=self.collection)
        except Exception as e:
            logger.error("qdrant.delete_all_err", collection=self.collection, error=str(e))
            return False

        await self.setup()
        return True
