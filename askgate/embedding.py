"""Embedding utilities wrapping OpenAI's embeddings API.

Provides:
- OpenAIEmbedder.embed_texts: Batch embedding for a list of strings.
- OpenAIEmbedder.embed_query: Convenience helper to embed a single query string.

SDK failures are re-raised as UpstreamError so callers see one error type per provider.
"""
import logging
from typing import List, Optional

from openai import OpenAI, OpenAIError

from askgate.errors import UpstreamError

logger = logging.getLogger(__name__)


class OpenAIEmbedder:
    """Embedding provider bound to one API key and model.

    Args:
        api_key: OpenAI key used for embeddings.
        model: Embedding model name.
        client: Pre-built client (tests inject stand-ins here).
    """

    def __init__(self, api_key: str, model: str, client: Optional[OpenAI] = None):
        self.model = model
        self._client = client or OpenAI(api_key=api_key)

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch of texts using the configured OpenAI embedding model.

        Args:
            texts: List of input strings to embed.

        Returns:
            List[List[float]]: One embedding vector per input text.
        """
        if not texts:
            return []
        try:
            resp = self._client.embeddings.create(model=self.model, input=texts)
        except OpenAIError as exc:
            raise UpstreamError(f"Embedding request failed: {exc}") from exc
        return [d.embedding for d in resp.data]

    def embed_query(self, text: str) -> List[float]:
        """Embed a single query string and return its embedding vector."""
        logger.debug("Creating embedding: text_length=%d", len(text))
        vectors = self.embed_texts([text])
        if not vectors:
            raise UpstreamError("Embedding provider returned no vectors")
        return vectors[0]
