"""Gemini embedding provider.

Wraps the google-genai SDK to turn text into fixed-length vectors for context
retrieval. Failures never propagate: embed() returns None and callers treat
that as "no context available".
"""

import asyncio
import os

import structlog
from google import genai
from google.genai import types

logger = structlog.get_logger(__name__)

DEFAULT_DIM = 3072


class EmbeddingProvider:
    """Async Gemini embeddings with graceful degradation."""

    def __init__(self, client=None):
        self.model_name = os.environ.get("EMBEDDING_MODEL", "gemini-embedding-001")
        self.dimensions = int(os.environ.get("EMBEDDING_DIM", str(DEFAULT_DIM)))
        self.timeout = float(os.environ.get("EMBEDDING_TIMEOUT", "15"))
        self._client = client

        if self._client is not None:
            return

        api_key = os.environ.get("GEMINI_API_KEY")
        if not api_key:
            logger.warning("embed.no_api_key")
            return

        try:
            self._client = genai.Client(api_key=api_key)
        except Exception as e:
            logger.error("embed.init_failed", error=str(e))
            self._client = None

    def is_healthy(self) -> bool:
        return self._client is not None

    async def embed(self, text: str) -> list[float] | None:
        """Generate an embedding via Gemini (SEMANTIC_SIMILARITY task type).

        Args:
            text: The text to embed.

        Returns:
            List of floats, or None if the provider is unconfigured or the call failed.
        """
        if not self._client or not text or not text.strip():
            return None

        try:
            response = await asyncio.wait_for(
                self._client.aio.models.embed_content(
                    model=self.model_name,
                    contents=text,
                    config=types.EmbedContentConfig(
                        task_type="SEMANTIC_SIMILARITY",
                        output_dimensionality=self.dimensions,
                    ),
                ),
                timeout=self.timeout,
            )
            embedding = list(response.embeddings[0].values)

            logger.debug("embed.ok", model=self.model_name, dims=len(embedding))
            return embedding

        except Exception as e:
            logger.error("embed.failed", error=str(e) or type(e).__name__)
            return None
