"""Knowledge-base indexing and retrieval for the chat assistant.

The static knowledge document (ai-context.md) is packed into paragraph-aligned
chunks of at most 1000 characters, embedded, and upserted as context-{i}.
A forced reindex wipes the collection first: chunk ids are positional, so
merging with an old build would leave stale chunks behind.
"""

import asyncio
import os
from pathlib import Path

import structlog

from backend.core.embeddings import EmbeddingProvider
from backend.core.vector_index import VectorIndex

logger = structlog.get_logger(__name__)

MAX_CHUNK_CHARS = 1000
DEFAULT_CONTEXT_PATH = "ai-context.md"


def chunk_text(text: str, max_length: int = MAX_CHUNK_CHARS) -> list[str]:
    """Pack paragraphs into chunks no longer than max_length.

    Paragraphs are never split. A single paragraph longer than max_length
    becomes a chunk of its own and exceeds the bound.

    Args:
        text: Source document.
        max_length: Character budget per chunk.

    Returns:
        Non-empty, stripped chunks in document order.
    """
    chunks = []
    current = ""

    for para in text.split("\n\n"):
        if current and len(current) + 2 + len(para) > max_length:
            chunks.append(current.strip())
            current = para
        else:
            current = f"{current}\n\n{para}" if current else para

    if current:
        chunks.append(current.strip())

    return [c for c in chunks if c]


def chunk_id(index: int) -> str:
    return f"context-{index}"


class ContextIndexer:
    """Keeps the context collection in sync with the knowledge document."""

    def __init__(self, embedder: EmbeddingProvider, index: VectorIndex, path: str | None = None):
        self.embedder = embedder
        self.index = index
        self.path = Path(path or os.environ.get("AI_CONTEXT_PATH", DEFAULT_CONTEXT_PATH))
        self.initialized = False
        self._lock = asyncio.Lock()

    async def index_context(self, force_reindex: bool = False) -> int | None:
        """Build the context collection once, or rebuild it when forced.

        Args:
            force_reindex: Delete every stored chunk and re-embed the document.

        Returns:
            Number of chunks upserted, or None when nothing was (re)built.
        """
        if self.initialized and not force_reindex:
            return None

        async with self._lock:
            # Another turn may have finished the build while we waited
            if self.initialized and not force_reindex:
                return None
            return await self._build(force_reindex)

    async def _build(self, force_reindex: bool) -> int | None:
        if not self.index.is_healthy():
            logger.warning("context.index_unavailable")
            return None

        if not self.path.exists():
            logger.error("context.source_missing", path=str(self.path))
            return None

        chunks = chunk_text(self.path.read_text(encoding="utf-8"))

        if force_reindex:
            logger.info("context.deleting_old_vectors", collection=self.index.collection)
            if not await self.index.delete_all():
                logger.error("context.delete_failed", collection=self.index.collection)
        else:
            await self.index.setup()

        upserted = 0
        for i, chunk in enumerate(chunks):
            embedding = await self.embedder.embed(chunk)
            if embedding is None:
                logger.warning("context.chunk_skipped", chunk=i, reason="embedding_failed")
                continue

            if await self.index.upsert(chunk_id(i), embedding, {"text": chunk, "chunk": i}):
                upserted += 1
            else:
                logger.warning("context.chunk_skipped", chunk=i, reason="upsert_failed")

        self.initialized = True
        logger.info("context.indexed", chunks=len(chunks), upserted=upserted, reindexed=force_reindex)
        return upserted

    async def retrieve(self, query: str, top_k: int = 3) -> str:
        """Concatenate the text of the top_k chunks closest to the query.

        Returns:
            Chunk texts joined by blank lines, or "" if nothing could be retrieved.
        """
        embedding = await self.embedder.embed(query)
        if embedding is None:
            return ""

        matches = await self.index.query(embedding, top_k)
        texts = [m.metadata.get("text") for m in matches]
        context = "\n\n".join(t for t in texts if t)

        logger.debug("context.retrieved", matches=len(matches), chars=len(context))
        return context
