"""Database ORM models.

Directory entities (DirectoryBase):
- Customer: a registered tenant and the credentials of its own datastore.
- ApiKey: opaque access tokens; at most one active row per customer.

Tenant store entity (StoreBase):
- Product: a product document with a pgvector embedding, owned by the tenant's
  datastore and only ever read by this service (and written by the ingestion CLI).
"""
from datetime import datetime, timezone

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import relationship

from askgate.config import settings
from askgate.db import DirectoryBase, StoreBase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Customer(DirectoryBase):
    """A tenant of the gateway.

    customer_id is the immutable public identifier. Deleting a customer only flips
    status to 'inactive' so the row and its key history remain for audit.
    """
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(128), nullable=False, unique=True)
    name = Column(String(256), nullable=True)
    email = Column(String(320), nullable=True)
    datastore_url = Column(String(1024), nullable=False)
    datastore_key = Column(String(1024), nullable=False)
    status = Column(String(16), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    api_keys = relationship("ApiKey", back_populates="customer", order_by="ApiKey.created_at.desc()")


class ApiKey(DirectoryBase):
    """Access token issued to a customer.

    Keys are deactivated on rotation or customer deletion, never removed.

    Indexes:
        - uq_api_keys_one_active: partial unique index, one active key per customer
    """
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(128), nullable=False, unique=True)
    customer_id = Column(String(128), ForeignKey("customers.customer_id"), nullable=False)
    name = Column(String(128), nullable=False, default="Default API Key")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    customer = relationship("Customer", back_populates="api_keys")

    __table_args__ = (
        Index("idx_api_keys_customer", "customer_id"),
        Index(
            "uq_api_keys_one_active",
            "customer_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )


class Product(StoreBase):
    """Embedded product document living in a tenant's own datastore.

    Indexes:
        - idx_products_code: exact-match fallback lookups by product code

    Notes:
        The embedding dimension is derived from settings.EMBEDDING_DIM and should
        match the embedding model configured in askgate.config.Settings.
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_code = Column(String(128), nullable=False)
    name = Column(String(512), nullable=True)
    description = Column(Text, nullable=True)
    category = Column(String(256), nullable=True)
    attributes = Column(JSON, nullable=True)
    content = Column(Text, nullable=True)

    # Rows imported without embeddings are still reachable through the exact-match path
    embedding = Column(Vector(dim=settings.EMBEDDING_DIM), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("idx_products_code", "product_code"),)
