from datetime import datetime, timedelta, timezone

import pytest

from askgate.directory import REDACTED_LENGTH, TenantCredentials
from askgate.errors import AuthError, ConflictError, NotFoundError, ValidationError


def test_register_then_resolve_round_trips_datastore_fields(directory):
    url = "postgresql+psycopg2://tenant@db.example.com:5432/products?sslmode=require"
    customer, api_key = directory.register("acme", url, "s3cr3t/+=", name="Acme", email="ops@acme.test")

    assert customer.status == "active"
    assert api_key.startswith("ak_")
    assert directory.resolve_tenant("acme") == TenantCredentials("acme", url, "s3cr3t/+=")
    assert directory.validate_api_key(api_key)
    assert directory.customer_id_for_key(api_key) == "acme"


def test_register_rejects_duplicates_and_missing_fields(directory):
    directory.register("acme", "postgresql://h/db", "k")
    with pytest.raises(ConflictError):
        directory.register("acme", "postgresql://h/other", "k2")
    with pytest.raises(ValidationError):
        directory.register("", "postgresql://h/db", "k")
    with pytest.raises(ValidationError):
        directory.register("beta", "postgresql://h/db", "")


def test_rotate_twice_leaves_exactly_one_valid_key(directory, registered):
    customer_id, first = registered
    second = directory.rotate_key(customer_id)
    third = directory.rotate_key(customer_id)

    assert not directory.validate_api_key(first)
    assert not directory.validate_api_key(second)
    assert directory.validate_api_key(third)
    assert directory.active_key(customer_id) == third
    active = [k for k in directory.list_keys() if k["customerId"] == customer_id and k["isActive"]]
    assert len(active) == 1


def test_expired_key_is_rejected(directory, registered):
    customer_id, _ = registered
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    expired = directory.rotate_key(customer_id, expires_at=past)

    assert not directory.validate_api_key(expired)
    with pytest.raises(AuthError):
        directory.customer_id_for_key(expired)


def test_unknown_key_fails_validation(directory):
    assert not directory.validate_api_key("ak_nope")
    assert not directory.validate_api_key("")
    with pytest.raises(AuthError):
        directory.customer_id_for_key("ak_nope")


def test_customer_id_for_key_records_last_use(directory, registered):
    customer_id, api_key = registered
    directory.customer_id_for_key(api_key)
    [entry] = [k for k in directory.list_keys() if k["customerId"] == customer_id]
    assert entry["lastUsedAt"] is not None


def test_delete_is_soft_and_disables_keys(directory, registered):
    customer_id, api_key = registered
    directory.delete_customer(customer_id)

    assert directory.get_customer(customer_id).status == "inactive"
    assert not directory.validate_api_key(api_key)
    with pytest.raises(NotFoundError):
        directory.resolve_tenant(customer_id)
    assert directory.stats() == {"total": 1, "active": 0, "inactive": 1}


def test_update_customer_validates_fields(directory, registered):
    customer_id, _ = registered
    row = directory.update_customer(customer_id, {"name": "Renamed", "datastore_key": "new-key"})
    assert row.name == "Renamed"
    assert directory.resolve_tenant(customer_id).datastore_key == "new-key"

    with pytest.raises(ValidationError):
        directory.update_customer(customer_id, {"customer_id": "other"})
    with pytest.raises(ValidationError):
        directory.update_customer(customer_id, {"status": "paused"})
    with pytest.raises(NotFoundError):
        directory.update_customer("ghost", {"name": "x"})


def test_revoke_key(directory, registered):
    customer_id, api_key = registered
    assert directory.revoke_key(api_key) == customer_id
    assert not directory.validate_api_key(api_key)
    with pytest.raises(NotFoundError):
        directory.active_key(customer_id)
    with pytest.raises(NotFoundError):
        directory.revoke_key("ak_missing")


def test_list_keys_redacts_secret(directory, registered):
    _, api_key = registered
    [entry] = directory.list_keys()
    assert entry["apiKey"] == api_key[:REDACTED_LENGTH] + "..."
    assert entry["customerName"] == "Tenant One"
    assert entry["name"] == "Default API Key"


def test_rotate_unknown_customer(directory):
    with pytest.raises(NotFoundError):
        directory.rotate_key("ghost")


def test_register_rejects_urls_without_a_database_dialect(directory):
    with pytest.raises(ValidationError):
        directory.register("sb", "https://abc.supabase.co", "k")
    with pytest.raises(ValidationError):
        directory.register("sb", "not a url", "k")
    assert directory.stats()["total"] == 0


def test_update_rejects_unsupported_datastore_url(directory, registered):
    customer_id, _ = registered
    with pytest.raises(ValidationError):
        directory.update_customer(customer_id, {"datastore_url": "https://abc.supabase.co"})
    assert directory.resolve_tenant(customer_id).datastore_url.startswith("postgresql+psycopg2://")
