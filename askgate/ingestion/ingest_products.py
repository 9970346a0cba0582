"""Product catalogue ingestor.

Loads a JSON array of products from a file or URL, embeds each product's
"name description category" text with OpenAI embeddings, and inserts Product
rows into a tenant's datastore.

Accepted item shape (camelCase or snake_case keys):
  {"productCode": "P1", "name": "...", "description": "...", "category": "...", ...}
Keys other than the known columns are kept in the attributes JSON column and
rendered into the stored content text.

Target datastore:
- --customer-id: credentials are resolved through the tenant directory
  (DATABASE_URL), exactly as the ask pipeline does.
- --datastore-url/--datastore-key: explicit connection, e.g. before registering.

Usage:
  python -m askgate.ingestion.ingest_products --customer-id t1 --file products.json --init-store
  python -m askgate.ingestion.ingest_products --datastore-url postgresql+psycopg2://u@h/db \
      --datastore-key secret --url https://example.com/products.json
"""
from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Dict, List, Optional

import requests
from sqlalchemy.engine import Engine

from askgate.config import ProviderConfig, settings
from askgate.db import create_directory_engine, init_db, make_sessionmaker, session_scope
from askgate.directory import TenantCredentials, TenantDirectory
from askgate.embedding import OpenAIEmbedder
from askgate.errors import ValidationError
from askgate.models import Product
from askgate.store import DocumentStoreFactory, init_store

logger = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": "AskGate-Ingestor/1.0",
    "Accept": "application/json",
}
KNOWN_FIELDS = {"product_code", "productCode", "code", "name", "description", "category"}
BATCH_SIZE = 64


def fetch_json(url: str, timeout: int = 30) -> Any:
    """Fetch JSON from a URL with basic headers and timeout."""
    logger.info("Fetching JSON: %s", url)
    resp = requests.get(url, headers=HEADERS, timeout=timeout)
    logger.info("HTTP %d from %s (bytes=%d)", resp.status_code, url, len(resp.content or b""))
    resp.raise_for_status()
    return resp.json()


def load_file(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


def normalize_product(item: Dict[str, Any]) -> Dict[str, Any]:
    """Map one catalogue item onto Product columns.

    Raises:
        ValidationError: The item is not an object or has no product code.
    """
    if not isinstance(item, dict):
        raise ValidationError(f"Product entries must be objects, got {type(item).__name__}")
    code = item.get("product_code") or item.get("productCode") or item.get("code")
    if not code:
        raise ValidationError("Product entry without productCode", item=json.dumps(item)[:200])
    attributes = {k: v for k, v in item.items() if k not in KNOWN_FIELDS}
    return {
        "product_code": str(code).strip(),
        "name": item.get("name"),
        "description": item.get("description"),
        "category": item.get("category"),
        "attributes": attributes or None,
    }


def embedding_text(product: Dict[str, Any]) -> str:
    return " ".join(str(product[k]) for k in ("name", "description", "category") if product.get(k))


def render_content(product: Dict[str, Any]) -> str:
    lines = [f"{k}: {product[k]}" for k in ("product_code", "name", "category", "description") if product.get(k)]
    for k, v in (product.get("attributes") or {}).items():
        lines.append(f"{k}: {json.dumps(v, ensure_ascii=False) if isinstance(v, (dict, list)) else v}")
    return "\n".join(lines)


def ingest_products(engine: Engine, items: List[Any], embedder: OpenAIEmbedder) -> int:
    """Normalize, embed in batches and insert products; returns the row count."""
    products = [normalize_product(i) for i in items]
    logger.info("Normalized %d products", len(products))
    created = 0
    with session_scope(make_sessionmaker(engine)) as db:
        for start in range(0, len(products), BATCH_SIZE):
            batch = products[start:start + BATCH_SIZE]
            texts = [embedding_text(p) or p["product_code"] for p in batch]
            vectors = embedder.embed_texts(texts)
            logger.debug("Embedded batch: start=%d size=%d", start, len(batch))
            for product, vector in zip(batch, vectors):
                db.add(Product(content=render_content(product), embedding=vector, **product))
                created += 1
    return created


def resolve_engine(customer_id: Optional[str], datastore_url: Optional[str], datastore_key: Optional[str]) -> Engine:
    if customer_id:
        directory = TenantDirectory(make_sessionmaker(create_directory_engine(settings.DATABASE_URL)))
        credentials = directory.resolve_tenant(customer_id)
    else:
        credentials = TenantCredentials("", datastore_url or "", datastore_key or "")
    return DocumentStoreFactory().for_credentials(credentials).engine


def main():
    parser = argparse.ArgumentParser(description="Ingest a JSON product catalogue into a tenant datastore.")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--customer-id", help="Registered customer whose datastore receives the products")
    target.add_argument("--datastore-url", help="SQLAlchemy URL of the target datastore")
    parser.add_argument("--datastore-key", default="", help="Password applied to --datastore-url")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", help="Path to a JSON file holding a product array")
    source.add_argument("--url", help="URL returning a JSON product array")
    parser.add_argument("--init-store", action="store_true", help="Create the vector extension, table and index first")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: INFO)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    source_name = args.file or args.url
    logger.info("Starting product ingestion from %s", source_name)

    if args.customer_id:
        init_db(create_directory_engine(settings.DATABASE_URL))
    engine = resolve_engine(args.customer_id, args.datastore_url, args.datastore_key)
    if args.init_store:
        init_store(engine)

    data = load_file(args.file) if args.file else fetch_json(args.url)
    if isinstance(data, dict):
        data = data.get("products", [data])
    config = ProviderConfig.from_settings(settings)
    embedder = OpenAIEmbedder(config.embedding_provider_key, settings.OPENAI_EMBEDDING_MODEL)
    try:
        total = ingest_products(engine, data, embedder)
        logger.info("Completed ingestion: products=%d, source=%s", total, source_name)
        print(f"[INGEST-PRODUCTS] {source_name} -> {total} products")
    except Exception:
        logger.exception("Ingestion failed for %s", source_name)
        raise
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
