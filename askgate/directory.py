"""Tenant directory: customer records, datastore credentials and API-key lifecycle.

The directory is the only component that touches the customers/api_keys tables.
It raises typed errors from askgate.errors and lets SQLAlchemy failures propagate
unchanged; the one exception is the last-used timestamp, which is best-effort.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from askgate.db import session_scope
from askgate.errors import AuthError, ConflictError, NotFoundError, ValidationError
from askgate.models import ApiKey, Customer, utcnow

logger = logging.getLogger(__name__)

KEY_PREFIX = "ak_"
REDACTED_LENGTH = 12
STATUSES = ("active", "inactive")
MUTABLE_FIELDS = ("name", "email", "datastore_url", "datastore_key", "status")


@dataclass(frozen=True)
class TenantCredentials:
    """Connection parameters of a tenant's own datastore."""
    customer_id: str
    datastore_url: str
    datastore_key: str


def generate_api_key() -> str:
    # Opaque random token; carries no customer data
    return f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"


def redact_key(key: str) -> str:
    return key[:REDACTED_LENGTH] + "..."


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def check_datastore_url(url: str) -> None:
    """Reject URLs that SQLAlchemy cannot build an engine for.

    Raises:
        ValidationError: Unparseable URL or unknown dialect (e.g. https://...).
    """
    try:
        make_url(url).get_dialect()
    except (ArgumentError, ValueError) as exc:
        raise ValidationError(f"datastoreUrl is not a supported database URL: {exc}") from exc


def _is_usable(row: ApiKey, now: Optional[datetime] = None) -> bool:
    if not row.is_active:
        return False
    expires_at = _as_utc(row.expires_at)
    return expires_at is None or expires_at > (now or utcnow())


class TenantDirectory:
    """Resolve tenants and manage their API keys.

    Args:
        session_factory: sessionmaker bound to the directory database.
    """

    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    # -- tenants ---------------------------------------------------------

    def _get(self, db: Session, customer_id: str) -> Customer:
        row = db.execute(select(Customer).where(Customer.customer_id == customer_id)).scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"Customer {customer_id} not found", customer_id=customer_id)
        return row

    def resolve_tenant(self, customer_id: str) -> TenantCredentials:
        """Return the datastore credentials of an active tenant.

        Raises:
            NotFoundError: Unknown customer, or the customer was deactivated.
        """
        with session_scope(self._sessions) as db:
            row = self._get(db, customer_id)
            if row.status != "active":
                raise NotFoundError(f"Customer {customer_id} is inactive", customer_id=customer_id)
            return TenantCredentials(row.customer_id, row.datastore_url, row.datastore_key)

    def register(
        self,
        customer_id: str,
        datastore_url: str,
        datastore_key: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Tuple[Customer, str]:
        """Create a tenant and its first API key in one transaction.

        Returns:
            Tuple[Customer, str]: The stored customer and the issued key.

        Raises:
            ValidationError: customer_id, datastore_url or datastore_key missing.
            ConflictError: customer_id already registered (active or not).
        """
        customer_id = (customer_id or "").strip()
        if not customer_id or not datastore_url or not datastore_key:
            raise ValidationError("customerId, datastoreUrl and datastoreKey are required")
        check_datastore_url(datastore_url)

        with session_scope(self._sessions) as db:
            exists = db.execute(
                select(Customer.id).where(Customer.customer_id == customer_id)
            ).first()
            if exists is not None:
                raise ConflictError(f"Customer {customer_id} already exists", customer_id=customer_id)
            customer = Customer(
                customer_id=customer_id,
                name=name,
                email=email,
                datastore_url=datastore_url,
                datastore_key=datastore_key,
                status="active",
            )
            db.add(customer)
            try:
                db.flush()
            except IntegrityError as exc:
                raise ConflictError(f"Customer {customer_id} already exists", customer_id=customer_id) from exc
            key = self._insert_key(db, customer_id)
        logger.info("Customer registered: customer_id=%s", customer_id)
        return customer, key

    def get_customer(self, customer_id: str) -> Customer:
        with session_scope(self._sessions) as db:
            return self._get(db, customer_id)

    def update_customer(self, customer_id: str, changes: Dict[str, Any]) -> Customer:
        """Apply a partial update; unknown and immutable fields are rejected."""
        unknown = set(changes) - set(MUTABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        if "status" in changes and changes["status"] not in STATUSES:
            raise ValidationError(f"status must be one of {', '.join(STATUSES)}")
        for field in ("datastore_url", "datastore_key"):
            if field in changes and not changes[field]:
                raise ValidationError(f"{field} cannot be empty")
        if changes.get("datastore_url"):
            check_datastore_url(changes["datastore_url"])

        with session_scope(self._sessions) as db:
            row = self._get(db, customer_id)
            for field, value in changes.items():
                setattr(row, field, value)
            if changes.get("status") == "inactive":
                self._deactivate_keys(db, customer_id)
            db.flush()
        logger.info("Customer updated: customer_id=%s fields=%s", customer_id, sorted(changes))
        return row

    def delete_customer(self, customer_id: str) -> Customer:
        """Soft-delete: mark the tenant inactive and deactivate all of its keys."""
        with session_scope(self._sessions) as db:
            row = self._get(db, customer_id)
            row.status = "inactive"
            self._deactivate_keys(db, customer_id)
            db.flush()
        logger.info("Customer deactivated: customer_id=%s", customer_id)
        return row

    def list_customers(self) -> List[Customer]:
        with session_scope(self._sessions) as db:
            stmt = select(Customer).order_by(Customer.created_at.desc(), Customer.id.desc())
            return list(db.execute(stmt).scalars().all())

    def stats(self) -> Dict[str, int]:
        with session_scope(self._sessions) as db:
            total = db.execute(select(func.count(Customer.id))).scalar_one()
            active = db.execute(
                select(func.count(Customer.id)).where(Customer.status == "active")
            ).scalar_one()
        return {"total": int(total), "active": int(active), "inactive": int(total - active)}

    # -- api keys --------------------------------------------------------

    def _insert_key(self, db: Session, customer_id: str, expires_at: Optional[datetime] = None) -> str:
        key = generate_api_key()
        db.add(ApiKey(key=key, customer_id=customer_id, is_active=True, expires_at=expires_at))
        db.flush()
        return key

    def _deactivate_keys(self, db: Session, customer_id: str) -> int:
        res = db.execute(
            update(ApiKey)
            .where(ApiKey.customer_id == customer_id, ApiKey.is_active.is_(True))
            .values(is_active=False)
        )
        return res.rowcount or 0

    def _find_key(self, db: Session, key: str) -> Optional[ApiKey]:
        return db.execute(select(ApiKey).where(ApiKey.key == key)).scalar_one_or_none()

    def validate_api_key(self, key: str) -> bool:
        """True iff the key exists, is active and has not expired."""
        if not key:
            return False
        with session_scope(self._sessions) as db:
            row = self._find_key(db, key)
            return row is not None and _is_usable(row)

    def customer_id_for_key(self, key: str) -> str:
        """Resolve the owner of a usable key and record its use.

        Raises:
            AuthError: Unknown, inactive or expired key.
        """
        with session_scope(self._sessions) as db:
            row = self._find_key(db, key) if key else None
            if row is None or not _is_usable(row):
                raise AuthError("Invalid API key")
            customer_id = row.customer_id
        self._touch(key, customer_id)
        return customer_id

    def _touch(self, key: str, customer_id: str) -> None:
        try:
            with session_scope(self._sessions) as db:
                db.execute(update(ApiKey).where(ApiKey.key == key).values(last_used_at=utcnow()))
        except SQLAlchemyError as exc:
            logger.warning("Failed to update API key usage: customer_id=%s error=%s", customer_id, exc)

    def issue_key(self, customer_id: str, expires_at: Optional[datetime] = None) -> str:
        """Issue an additional key for an existing customer.

        Prior active keys are deactivated in the same transaction so the
        one-active-key invariant holds; use rotate_key for the explicit flow.
        """
        return self.rotate_key(customer_id, expires_at=expires_at)

    def rotate_key(self, customer_id: str, expires_at: Optional[datetime] = None) -> str:
        """Deactivate every active key of the customer and issue a new one atomically."""
        with session_scope(self._sessions) as db:
            row = db.execute(
                select(Customer).where(Customer.customer_id == customer_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"Customer {customer_id} not found", customer_id=customer_id)
            revoked = self._deactivate_keys(db, customer_id)
            key = self._insert_key(db, customer_id, expires_at=expires_at)
        logger.info("API key rotated: customer_id=%s deactivated=%d", customer_id, revoked)
        return key

    def revoke_key(self, key: str) -> str:
        """Deactivate one key; returns its owner."""
        with session_scope(self._sessions) as db:
            row = self._find_key(db, key)
            if row is None:
                raise NotFoundError("API key not found")
            row.is_active = False
            customer_id = row.customer_id
        logger.info("API key revoked: customer_id=%s", customer_id)
        return customer_id

    def active_key(self, customer_id: str) -> str:
        with session_scope(self._sessions) as db:
            self._get(db, customer_id)
            row = db.execute(
                select(ApiKey)
                .where(ApiKey.customer_id == customer_id, ApiKey.is_active.is_(True))
                .order_by(ApiKey.created_at.desc(), ApiKey.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"No active API key found for customer {customer_id}", customer_id=customer_id)
            return row.key

    def list_keys(self) -> List[Dict[str, Any]]:
        """All keys, newest first, with the secret reduced to a short prefix."""
        with session_scope(self._sessions) as db:
            rows = db.execute(
                select(ApiKey, Customer.name)
                .join(Customer, Customer.customer_id == ApiKey.customer_id)
                .order_by(ApiKey.created_at.desc(), ApiKey.id.desc())
            ).all()
            return [
                {
                    "customerId": key.customer_id,
                    "customerName": name,
                    "apiKey": redact_key(key.key),
                    "name": key.name,
                    "isActive": key.is_active,
                    "createdAt": key.created_at,
                    "lastUsedAt": key.last_used_at,
                    "expiresAt": key.expires_at,
                }
                for key, name in rows
            ]
