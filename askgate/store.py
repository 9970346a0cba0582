"""Per-tenant document stores backed by PostgreSQL + pgvector.

Provides:
- DocumentStore: the query contract the retriever depends on.
- PgVectorDocumentStore: cosine similarity and exact-match queries over `products`.
- DocumentStoreFactory: builds and caches one engine per tenant datastore.
- init_store: ensures the vector extension, products table and ivfflat index exist.

Vector search uses pgvector cosine distance (similarity = 1 - distance).
"""
import logging
import threading
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url

from askgate.db import StoreBase
from askgate.directory import TenantCredentials

logger = logging.getLogger(__name__)

RECORD_COLUMNS = "id, product_code, name, description, category, attributes, content"


class DocumentStore(Protocol):
    def similarity_search(
        self, product_code: str, embedding: Sequence[float], match_count: int, threshold: float
    ) -> List[Dict]:
        ...

    def find_by_product_code(self, product_code: str, limit: int) -> List[Dict]:
        ...

    def ping(self) -> bool:
        ...


def _vector_literal(vec: Sequence[float]) -> str:
    return "[" + ",".join(f"{x:.6f}" for x in vec) + "]"


class PgVectorDocumentStore:
    """Query a tenant's `products` table.

    Args:
        engine: Engine connected to the tenant datastore.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def similarity_search(
        self, product_code: str, embedding: Sequence[float], match_count: int, threshold: float
    ) -> List[Dict]:
        """Nearest products for a query vector, restricted to one product code.

        Args:
            product_code: Only rows with this code are considered.
            embedding: Query embedding.
            match_count: Maximum rows returned.
            threshold: Rows must have similarity strictly above this value.

        Returns:
            List[Dict]: Records ordered nearest-first, each with a `similarity` field.
        """
        sql = text(
            f"""
            SELECT {RECORD_COLUMNS},
                1 - (embedding <=> CAST(:qvec AS vector)) AS similarity
            FROM products
            WHERE product_code = :product_code
              AND embedding IS NOT NULL
              AND 1 - (embedding <=> CAST(:qvec AS vector)) > :threshold
            ORDER BY embedding <=> CAST(:qvec AS vector)
            LIMIT :limit
            """
        )
        params = {
            "qvec": _vector_literal(embedding),
            "product_code": product_code,
            "threshold": threshold,
            "limit": match_count,
        }
        with self.engine.connect() as conn:
            rows = conn.execute(sql, params).mappings().all()
        out = []
        for r in rows:
            item = dict(r)
            item["similarity"] = float(item["similarity"])
            out.append(item)
        return out

    def find_by_product_code(self, product_code: str, limit: int) -> List[Dict]:
        sql = text(
            f"""
            SELECT {RECORD_COLUMNS}
            FROM products
            WHERE product_code = :product_code
            ORDER BY id
            LIMIT :limit
            """
        )
        with self.engine.connect() as conn:
            rows = conn.execute(sql, {"product_code": product_code, "limit": limit}).mappings().all()
        return [dict(r) for r in rows]

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True


class DocumentStoreFactory:
    """Build document stores from tenant credentials.

    The tenant's datastore key is applied as the password of its datastore URL.
    Engines are cached per (url, key) so connection pools survive across requests.
    """

    def __init__(self):
        self._engines: Dict[Tuple[str, str], Engine] = {}
        self._lock = threading.Lock()

    def _engine(self, url: str, key: str) -> Engine:
        cache_key = (url, key)
        with self._lock:
            engine = self._engines.get(cache_key)
            if engine is None:
                sa_url = make_url(url)
                if key:
                    sa_url = sa_url.set(password=key)
                engine = create_engine(sa_url, pool_pre_ping=True, future=True)
                self._engines[cache_key] = engine
                logger.info("Datastore engine created: host=%s db=%s", sa_url.host, sa_url.database)
        return engine

    def for_credentials(self, credentials: TenantCredentials) -> DocumentStore:
        return PgVectorDocumentStore(self._engine(credentials.datastore_url, credentials.datastore_key))

    def for_default(self, url: str, key: str) -> Optional[DocumentStore]:
        if not url:
            return None
        return PgVectorDocumentStore(self._engine(url, key))

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()


def init_store(engine: Engine) -> None:
    """Initialize pgvector, the products table and its vector index.

    This function is idempotent and safe to run multiple times.
    """
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()

    from askgate import models  # noqa: F401

    StoreBase.metadata.create_all(bind=engine)

    with engine.connect() as conn:
        # Switch to IVF index (requires ANALYZE after populate for optimal perf)
        conn.execute(
            text(
                """
                DO $$
                BEGIN
                    IF NOT EXISTS (
                        SELECT 1 FROM pg_indexes WHERE indexname = 'idx_products_embedding_ivfflat'
                    ) THEN
                        CREATE INDEX idx_products_embedding_ivfflat
                        ON products USING ivfflat (embedding vector_cosine_ops)
                        WITH (lists = 100);
                    END IF;
                END$$;
                """
            )
        )
        conn.commit()
