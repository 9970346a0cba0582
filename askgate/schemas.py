"""Pydantic request/response schemas for the API.

Wire format is camelCase (customerId, productCode, ...); Python attributes are
snake_case. Models populate from either form.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class AskRequest(CamelModel):
    """Request body for /ask and /ask/text.

    Attributes:
        product_code: Product the question is about.
        question: The customer question to answer.
        voice: Optional voice id override (audio endpoint only).
        language_code: Optional language override (audio endpoint only).
        gender: Optional voice gender override (audio endpoint only).
        speaking_rate: Optional speaking rate override (audio endpoint only).
    """
    product_code: str = Field(..., min_length=1, description="Product code")
    question: str = Field(..., min_length=1, description="Customer question")
    voice: Optional[str] = None
    language_code: Optional[str] = None
    gender: Optional[str] = None
    speaking_rate: Optional[float] = Field(default=None, ge=0.25, le=4.0)


class AskTextData(CamelModel):
    question: str
    answer: str
    product_code: str
    customer_id: str
    timestamp: datetime


class RegisterRequest(CamelModel):
    customer_id: str = Field(..., min_length=1)
    name: Optional[str] = None
    datastore_url: str = Field(..., min_length=1)
    datastore_key: str = Field(..., min_length=1)
    email: Optional[str] = None


class UpdateCustomerRequest(CamelModel):
    """Partial update; customerId is immutable and not accepted here."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True, extra="forbid")

    name: Optional[str] = None
    email: Optional[str] = None
    datastore_url: Optional[str] = None
    datastore_key: Optional[str] = None
    status: Optional[str] = None


class CustomerOut(CamelModel):
    """Customer as returned by the management endpoints.

    The datastore key is masked; only resolve_tenant hands out the full value.
    """
    customer_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    datastore_url: str
    datastore_key: str
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "CustomerOut":
        return cls(
            customer_id=row.customer_id,
            name=row.name,
            email=row.email,
            datastore_url=row.datastore_url,
            datastore_key=mask_secret(row.datastore_key),
            status=row.status,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


def mask_secret(value: str, visible: int = 4) -> str:
    if not value:
        return ""
    return value[:visible] + "..." if len(value) > visible else "..."


def envelope(data: Any, message: Optional[str] = None, count: Optional[int] = None) -> Dict[str, Any]:
    """Build the {success, data[, message][, count]} body in wire format."""
    body: Dict[str, Any] = {"success": True, "data": data}
    if message is not None:
        body["message"] = message
    if count is not None:
        body["count"] = count
    return body


def dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def dump_all(models: List[BaseModel]) -> List[Dict[str, Any]]:
    return [dump(m) for m in models]
