"""Multi-value attribute columns: parse, resolve dictionaries, link to products."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from catalog_importer.db.models.attribute import Attribute, AttributeOption
from catalog_importer.db.models.product import ProductAttribute
from catalog_importer.db.upsert import insert_for
from catalog_importer.utils.text import split_values

logger = logging.getLogger(__name__)

DEFAULT_ATTRIBUTE_TYPE = "select"
ATTRIBUTE_TYPES_BY_NAME = {
    "color": "color",
    "size": "size",
    "material": "select",
    "bed_size": "size",
    "weight": "number",
    "length": "number",
    "width": "number",
    "height": "number",
}
# Types whose first value is also kept as a free-text value
TEXT_ATTRIBUTE_TYPES = frozenset({"text", "textarea"})


@dataclass(frozen=True)
class AttributeValues:
    name: str
    values: list[str]


def infer_attribute_type(name: str) -> str:
    return ATTRIBUTE_TYPES_BY_NAME.get(name.strip().lower(), DEFAULT_ATTRIBUTE_TYPE)


def extract_attribute_values(row: dict[str, str], prefix: str = "attr_") -> list[AttributeValues]:
    """Collect prefixed columns with at least one non-empty comma-separated value."""
    extracted = []
    for column, raw in row.items():
        if not column.startswith(prefix):
            continue
        name = column[len(prefix):].strip()
        values = split_values(raw)
        if name and values:
            extracted.append(AttributeValues(name=name, values=values))
    return extracted


class AttributeProcessor:
    def __init__(self, session: Session):
        self.session = session

    def resolve_attribute(self, name: str) -> Attribute:
        """Match on name or display name; create with an inferred type when absent."""
        attribute = self.session.scalar(
            select(Attribute)
            .where(or_(Attribute.name == name, Attribute.display_name == name))
            .order_by(Attribute.id)
            .limit(1)
        )
        if attribute is not None:
            return attribute

        stmt = insert_for(self.session, Attribute).values(
            name=name,
            display_name=name,
            attribute_type=infer_attribute_type(name),
            is_filterable=True,
        )
        self.session.execute(stmt.on_conflict_do_nothing(index_elements=["name"]))
        logger.debug(f"Resolved attribute '{name}' by insert")
        return self.session.scalar(select(Attribute).where(Attribute.name == name))

    def resolve_option_ids(self, attribute_id: int, values: list[str]) -> list[int]:
        """Return option ids for ``values`` in first-seen order, one per distinct value."""
        option_ids: list[int] = []
        for value in values:
            stmt = insert_for(self.session, AttributeOption).values(
                attribute_id=attribute_id, value=value, display_value=value
            )
            self.session.execute(
                stmt.on_conflict_do_nothing(index_elements=["attribute_id", "value"])
            )
            option_id = self.session.scalar(
                select(AttributeOption.id).where(
                    AttributeOption.attribute_id == attribute_id,
                    AttributeOption.value == value,
                )
            )
            if option_id not in option_ids:
                option_ids.append(option_id)
        return option_ids

    def link(self, product_id: int, attribute_id: int, option_ids: list[int], text_value: str | None) -> None:
        """Replace the product's selection for one attribute."""
        stmt = insert_for(self.session, ProductAttribute).values(
            product_id=product_id,
            attribute_id=attribute_id,
            selected_options=option_ids,
            text_value=text_value,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["product_id", "attribute_id"],
            set_={
                "selected_options": stmt.excluded.selected_options,
                "text_value": stmt.excluded.text_value,
                "updated_at": func.now(),
            },
        )
        self.session.execute(stmt)

    def apply(self, product_id: int, row: dict[str, str], prefix: str = "attr_") -> int:
        """Process every attribute column of ``row`` for ``product_id``; return how many were linked."""
        linked = 0
        for item in extract_attribute_values(row, prefix):
            attribute = self.resolve_attribute(item.name)
            option_ids = self.resolve_option_ids(attribute.id, item.values)
            text_value = item.values[0] if attribute.attribute_type in TEXT_ATTRIBUTE_TYPES else None
            self.link(product_id, attribute.id, option_ids, text_value)
            linked += 1
        return linked
