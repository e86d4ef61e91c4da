"""Downloadable CSV skeleton for operators preparing a batch."""

from __future__ import annotations

import csv
import io
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from catalog_importer.core.config import get_settings
from catalog_importer.db.models.attribute import Attribute, CatalogAttribute
from catalog_importer.db.models.catalog import Catalog

logger = logging.getLogger(__name__)

TEMPLATE_COLUMNS = [
    "supplier_id",
    "supplier_name",
    "catalog_id",
    "catalog_name",
    "category_id",
    "category_name",
    "category_parent_name",
    "product_name",
    "product_description",
    "product_sku",
    "cost_price",
    "regular_price",
    "sale_price",
    "discount_percentage",
    "discount_label",
    "minimum_price",
    "wholesale_minimum_qty",
    "wholesale_discount_percentage",
    "short_description",
    "tags",
    "status",
    "featured",
    "weight",
    "dimensions",
    "brand",
]

GENERIC_EXAMPLES = [
    {
        "supplier_name": "Acme Audio",
        "catalog_name": "Electronics",
        "category_name": "Headphones",
        "category_parent_name": "Audio",
        "product_name": "Wireless Headphones",
        "product_description": "High-quality wireless headphones with noise cancellation.",
        "product_sku": "WH-1000",
        "cost_price": "200.00",
        "regular_price": "399.99",
        "sale_price": "299.99",
        "discount_percentage": "25",
        "discount_label": "Limited Offer",
        "minimum_price": "250.00",
        "wholesale_minimum_qty": "3",
        "wholesale_discount_percentage": "15",
        "short_description": "Premium wireless headphones",
        "tags": "headphones,wireless,audio",
        "status": "active",
        "featured": "true",
        "weight": "0.3",
        "dimensions": "18x20x8",
        "brand": "Acme",
    },
    {
        "supplier_name": "Threadworks",
        "catalog_name": "Clothing",
        "category_name": "T-Shirts",
        "category_parent_name": "Fashion",
        "product_name": "Cotton T-Shirt",
        "product_description": "Comfortable cotton t-shirt for everyday wear.",
        "product_sku": "TS-2000",
        "cost_price": "50.00",
        "regular_price": "149.99",
        "sale_price": "99.99",
        "discount_percentage": "33",
        "discount_label": "Flash Sale",
        "minimum_price": "80.00",
        "wholesale_minimum_qty": "10",
        "wholesale_discount_percentage": "20",
        "short_description": "Essential cotton t-shirt",
        "tags": "clothing,t-shirt,cotton",
        "status": "active",
        "featured": "false",
        "weight": "0.2",
        "dimensions": "30x40x2",
        "brand": "Threadworks",
    },
]

# Example attribute values per generic row
EXAMPLE_ATTRIBUTE_VALUES = {
    "color": ["Black,Silver,White", "Red,Blue,Green,Yellow"],
    "size": ["One Size", "S,M,L,XL"],
    "material": ["Plastic,Metal", "Cotton"],
}


def _attribute_names(session: Session, catalog_id: int | None) -> list[str]:
    names = list(session.scalars(select(Attribute.name).order_by(Attribute.id)))
    if catalog_id is not None:
        scoped = session.scalars(
            select(Attribute.name)
            .join(CatalogAttribute, CatalogAttribute.attribute_id == Attribute.id)
            .where(CatalogAttribute.catalog_id == catalog_id)
            .order_by(Attribute.id)
        )
        names.extend(name for name in scoped if name not in names)
    return names


def generate_template_csv(session: Session, catalog_id: int | None = None) -> tuple[str, str | None]:
    """Return ``(csv_content, catalog_name)``.

    With an existing catalog the single example row is pre-filled with that
    catalog; otherwise two generic examples are emitted. An unknown catalog id
    falls back to the generic template.
    """
    prefix = get_settings().attribute_prefix
    catalog = session.get(Catalog, catalog_id) if catalog_id else None
    if catalog_id and catalog is None:
        logger.warning(f"Catalog {catalog_id} not found, generating generic template")

    attribute_names = _attribute_names(session, catalog.id if catalog else None)
    attribute_columns = [f"{prefix}{name}" for name in attribute_names]

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(TEMPLATE_COLUMNS + attribute_columns)

    if catalog is not None:
        example = dict(GENERIC_EXAMPLES[0])
        example.update(
            supplier_name="",
            supplier_id=str(catalog.supplier_id or ""),
            catalog_id=str(catalog.id),
            catalog_name=catalog.name,
            product_name="Example Product",
            product_sku="SKU-12345",
        )
        row = [example.get(column, "") for column in TEMPLATE_COLUMNS]
        row.extend("Value1,Value2,Value3" for _ in attribute_names)
        writer.writerow(row)
    else:
        for position, example in enumerate(GENERIC_EXAMPLES):
            row = [example.get(column, "") for column in TEMPLATE_COLUMNS]
            for name in attribute_names:
                samples = EXAMPLE_ATTRIBUTE_VALUES.get(name.lower())
                row.append(samples[position] if samples else "")
            writer.writerow(row)

    return buffer.getvalue(), catalog.name if catalog else None
