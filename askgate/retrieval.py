"""Retrieval of product context for a tenant's question.

Pipeline for one call to DocumentRetriever.retrieve:
1) Resolve the tenant datastore and embed the question concurrently
   (an embedding computed upstream is reused, never recomputed).
2) pgvector similarity search scoped to the product code (top 10, similarity > 0.1).
3) If nothing matched, exact lookup on the product code (top 10). The two result
   sets are never merged; the fallback only answers when the primary is empty.

Errors from the embedding provider or the datastore surface as UpstreamError;
no retries happen here.
"""
import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from askgate.config import ProviderConfig
from askgate.directory import TenantDirectory
from askgate.embedding import OpenAIEmbedder
from askgate.errors import NotFoundError, UpstreamError
from askgate.store import DocumentStore, DocumentStoreFactory

logger = logging.getLogger(__name__)


class DocumentRetriever:
    """Find the records that ground an answer about one product.

    Args:
        directory: Resolves customer ids to datastore credentials.
        stores: Turns credentials into DocumentStore instances.
        embedder: Embedding provider (anything with embed_query).
        config: Provider credentials; supplies the default datastore.
        match_count: Row cap for both the vector and the exact-match query.
        match_threshold: Minimum cosine similarity for vector matches.
        allow_default_store: Serve the default datastore when a tenant is unresolved.
    """

    def __init__(
        self,
        directory: TenantDirectory,
        stores: DocumentStoreFactory,
        embedder: OpenAIEmbedder,
        config: ProviderConfig,
        match_count: int = 10,
        match_threshold: float = 0.1,
        allow_default_store: bool = False,
    ):
        self.directory = directory
        self.stores = stores
        self.embedder = embedder
        self.config = config
        self.match_count = match_count
        self.match_threshold = match_threshold
        self.allow_default_store = allow_default_store

    def store_for(self, customer_id: str) -> DocumentStore:
        """Return the tenant's store, or the default one in degraded mode.

        Raises:
            NotFoundError: Tenant unresolved and the default store is disabled or unset.
            UpstreamError: An engine cannot be built for the datastore URL.
        """
        try:
            credentials = self.directory.resolve_tenant(customer_id)
        except NotFoundError:
            if not self.allow_default_store:
                raise
            store = self._open(
                customer_id, self.stores.for_default,
                self.config.datastore_default_url, self.config.datastore_default_key,
            )
            if store is None:
                raise
            logger.warning("Using default datastore (degraded mode): customer_id=%s", customer_id)
            return store
        return self._open(customer_id, self.stores.for_credentials, credentials)

    def _open(self, customer_id: str, factory, *args) -> Optional[DocumentStore]:
        try:
            return factory(*args)
        except SQLAlchemyError as exc:
            raise UpstreamError(f"Datastore unavailable: {exc}", customer_id=customer_id) from exc

    async def embed(self, question: str) -> List[float]:
        return await run_in_threadpool(self.embedder.embed_query, question)

    async def retrieve(
        self,
        customer_id: str,
        product_code: str,
        question: str,
        embedding: Optional[Sequence[float]] = None,
    ) -> List[Dict]:
        """Return ranked records for a product question (possibly empty).

        Args:
            customer_id: Tenant whose datastore is searched.
            product_code: Product scope for both queries.
            question: Natural-language question to embed.
            embedding: Precomputed question embedding, if any.

        Returns:
            List[Dict]: Vector matches, or exact matches when there were none.
        """
        records, _ = await self.search(customer_id, product_code, question, embedding)
        return records

    async def search(
        self,
        customer_id: str,
        product_code: str,
        question: str,
        embedding: Optional[Sequence[float]] = None,
    ) -> Tuple[List[Dict], List[float]]:
        """Same as retrieve, also returning the embedding so the caller can share it."""
        t0 = time.time()
        if embedding is None:
            store, vector = await asyncio.gather(
                run_in_threadpool(self.store_for, customer_id),
                self.embed(question),
            )
        else:
            store = await run_in_threadpool(self.store_for, customer_id)
            vector = list(embedding)
        logger.info(
            "Store and embedding ready: customer_id=%s reused_embedding=%s elapsed_ms=%d",
            customer_id, embedding is not None, int((time.time() - t0) * 1000),
        )

        try:
            rows = await run_in_threadpool(
                store.similarity_search, product_code, vector, self.match_count, self.match_threshold
            )
            if rows:
                logger.info("Vector search hit: customer_id=%s product_code=%s rows=%d", customer_id, product_code, len(rows))
                return rows, vector

            logger.warning(
                "Vector search returned no rows, falling back to exact match: customer_id=%s product_code=%s",
                customer_id, product_code,
            )
            rows = await run_in_threadpool(store.find_by_product_code, product_code, self.match_count)
        except SQLAlchemyError as exc:
            raise UpstreamError(
                f"Datastore query failed: {exc}", customer_id=customer_id, product_code=product_code
            ) from exc
        logger.info("Exact match lookup: customer_id=%s product_code=%s rows=%d", customer_id, product_code, len(rows))
        return rows, vector
