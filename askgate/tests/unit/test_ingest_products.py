import pytest

from askgate.errors import ValidationError
from askgate.ingestion.ingest_products import embedding_text, normalize_product, render_content


def test_normalize_accepts_camel_case_and_keeps_extra_fields():
    product = normalize_product(
        {"productCode": " P1 ", "name": "Kettle", "description": "Steel", "category": "Kitchen", "price": 25}
    )
    assert product == {
        "product_code": "P1",
        "name": "Kettle",
        "description": "Steel",
        "category": "Kitchen",
        "attributes": {"price": 25},
    }
    assert embedding_text(product) == "Kettle Steel Kitchen"
    assert "price: 25" in render_content(product)


def test_normalize_rejects_entries_without_code():
    with pytest.raises(ValidationError):
        normalize_product({"name": "Nameless"})
    with pytest.raises(ValidationError):
        normalize_product(["not", "an", "object"])
