"""Customer (tenant) management and API-key administration routes.

All routes here are guarded by require_admin, which is a no-op unless
ADMIN_API_KEY is configured. Literal paths (/stats/overview, /api-keys/list) are
declared before /{customer_id} so they are not captured by it.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from askgate.deps import Services, get_directory, get_services, require_admin
from askgate.directory import TenantCredentials, TenantDirectory
from askgate.errors import DatastoreConnectionError
from askgate.schemas import CustomerOut, RegisterRequest, UpdateCustomerRequest, dump, dump_all, envelope

router = APIRouter(prefix="/customers", tags=["customers"], dependencies=[Depends(require_admin)])


@router.post("/register", status_code=201)
def register_customer(req: RegisterRequest, directory: TenantDirectory = Depends(get_directory)):
    """Register a tenant and return it together with its first API key."""
    customer, api_key = directory.register(
        req.customer_id, req.datastore_url, req.datastore_key, name=req.name, email=req.email
    )
    data = dump(CustomerOut.from_row(customer))
    data["apiKey"] = api_key
    return envelope(data, message="Customer registered successfully")


@router.get("")
def list_customers(directory: TenantDirectory = Depends(get_directory)):
    rows = directory.list_customers()
    return envelope(dump_all([CustomerOut.from_row(r) for r in rows]), count=len(rows))


@router.get("/stats/overview")
def customer_stats(directory: TenantDirectory = Depends(get_directory)):
    return envelope(directory.stats())


@router.get("/api-keys/list")
def list_api_keys(directory: TenantDirectory = Depends(get_directory)):
    keys = directory.list_keys()
    return envelope(keys, count=len(keys))


@router.get("/{customer_id}")
def get_customer(customer_id: str, directory: TenantDirectory = Depends(get_directory)):
    return envelope(dump(CustomerOut.from_row(directory.get_customer(customer_id))))


@router.put("/{customer_id}")
def update_customer(
    customer_id: str,
    req: UpdateCustomerRequest,
    directory: TenantDirectory = Depends(get_directory),
):
    changes = req.model_dump(exclude_unset=True)
    row = directory.update_customer(customer_id, changes)
    return envelope(dump(CustomerOut.from_row(row)), message="Customer updated successfully")


@router.delete("/{customer_id}")
def delete_customer(customer_id: str, directory: TenantDirectory = Depends(get_directory)):
    """Soft delete: the customer is kept as inactive and its keys stop working."""
    row = directory.delete_customer(customer_id)
    return envelope(dump(CustomerOut.from_row(row)), message="Customer deactivated successfully")


@router.get("/{customer_id}/test-connection")
def test_connection(customer_id: str, services: Services = Depends(get_services)):
    """Open a connection to the tenant datastore and run SELECT 1."""
    row = services.directory.get_customer(customer_id)
    credentials = TenantCredentials(row.customer_id, row.datastore_url, row.datastore_key)
    try:
        services.stores.for_credentials(credentials).ping()
    except SQLAlchemyError as exc:
        raise DatastoreConnectionError(
            "Datastore connection failed", customer_id=customer_id, detail=str(exc)
        ) from exc
    return envelope(
        {"customerId": customer_id, "connectionStatus": "active"},
        message="Datastore connection successful",
    )


@router.get("/{customer_id}/api-key")
def get_api_key(customer_id: str, directory: TenantDirectory = Depends(get_directory)):
    return envelope({"customerId": customer_id, "apiKey": directory.active_key(customer_id)})


@router.post("/{customer_id}/regenerate-api-key")
def regenerate_api_key(customer_id: str, directory: TenantDirectory = Depends(get_directory)):
    """Rotate: every prior key of the customer stops working immediately."""
    api_key = directory.rotate_key(customer_id)
    return envelope({"customerId": customer_id, "apiKey": api_key}, message="API key regenerated successfully")
