"""Build and insert the product for an accepted row."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from sqlalchemy.orm import Session

from catalog_importer.db.models.product import Product
from catalog_importer.services.entity_resolver import ResolvedRefs
from catalog_importer.utils.text import parse_number, slugify, split_values


def _decimal(value: str | None) -> Decimal | None:
    if value is None or not value.strip():
        return None
    try:
        return Decimal(value.strip())
    except InvalidOperation:
        return None


def _int(value: str | None) -> int | None:
    number = parse_number(value)
    return int(number) if number is not None else None


def _text(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


def build_product(row: dict[str, str], refs: ResolvedRefs, batch_id: str | None = None) -> Product:
    """Map a validated CSV row onto a new Product (no update-by-SKU path exists)."""
    sku = row["product_sku"].strip()
    return Product(
        name=row["product_name"].strip(),
        slug=slugify(sku),
        sku=sku,
        description=_text(row.get("product_description")),
        short_description=_text(row.get("short_description")),
        category_id=refs.category_id,
        catalog_id=refs.catalog_id,
        supplier_id=refs.supplier_id,
        batch_id=batch_id,
        price=_decimal(row.get("regular_price")) or Decimal("0"),
        cost_price=_decimal(row.get("cost_price")) or Decimal("0"),
        sale_price=_decimal(row.get("sale_price")),
        minimum_price=_decimal(row.get("minimum_price")),
        discount=_decimal(row.get("discount_percentage")),
        discount_label=_text(row.get("discount_label")),
        wholesale_minimum_qty=_int(row.get("wholesale_minimum_qty")),
        wholesale_discount=_decimal(row.get("wholesale_discount_percentage")),
        is_active=(row.get("status") or "").strip().lower() != "draft",
        is_featured=(row.get("featured") or "").strip().lower() == "true",
        weight=_decimal(row.get("weight")),
        dimensions=_text(row.get("dimensions")),
        tags=split_values(row.get("tags")),
        supplier=_text(row.get("supplier_name")),
        brand=_text(row.get("brand")),
    )


def insert_product(session: Session, product: Product) -> Product:
    """Add the product and flush so its id is available to attribute links."""
    session.add(product)
    session.flush()
    return product
