"""Find-or-create resolution of supplier, catalog and category references.

Each lookup is an atomic insert-on-conflict against a unique ``name_key``
so two rows (or two batches) naming the same dictionary entry converge on a
single record. The writes are committed by the caller before the product
write begins: reference dictionaries outlive the row that created them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from catalog_importer.db.models.catalog import Catalog, Category, Supplier
from catalog_importer.db.upsert import insert_for
from catalog_importer.utils.text import name_key, parse_int, slugify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedRefs:
    category_id: int | None = None
    catalog_id: int | None = None
    supplier_id: int | None = None


def _clean(value: str | None) -> str:
    return (value or "").strip()


class EntityResolver:
    def __init__(self, session: Session):
        self.session = session

    def _upsert(self, model, name: str, *, overwrite: dict | None = None, **values) -> int:
        """Insert ``name`` unless its key exists, optionally overwriting columns on conflict."""
        key = name_key(name)
        stmt = insert_for(self.session, model).values(name=name.strip(), name_key=key, **values)
        if overwrite:
            stmt = stmt.on_conflict_do_update(
                index_elements=["name_key"],
                set_={column: stmt.excluded[column] for column in overwrite},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=["name_key"])
        self.session.execute(stmt)
        return self.session.scalar(select(model.id).where(model.name_key == key))

    def resolve_supplier(self, supplier_id: str | None, supplier_name: str | None) -> int | None:
        numeric_id = parse_int(_clean(supplier_id)) if _clean(supplier_id) else None
        if numeric_id is not None:
            return numeric_id
        if _clean(supplier_name):
            return self._upsert(Supplier, _clean(supplier_name))
        return None

    def resolve_category(self, category_id: str | None, category_name: str | None, parent_name: str | None = None) -> int | None:
        """Resolve a category, creating it (and its parent) by name when needed.

        When a parent is named, it replaces whatever parent the existing
        category had; the last row to name a parent wins.
        """
        numeric_id = parse_int(_clean(category_id)) if _clean(category_id) else None
        if numeric_id is not None:
            return numeric_id
        name = _clean(category_name)
        if not name:
            return None

        parent = _clean(parent_name)
        if parent and name_key(parent) != name_key(name):
            parent_id = self._upsert(Category, parent, slug=slugify(parent))
            return self._upsert(
                Category,
                name,
                slug=slugify(name),
                parent_id=parent_id,
                overwrite={"parent_id": parent_id},
            )
        return self._upsert(Category, name, slug=slugify(name))

    def resolve_catalog(self, catalog_id: str | None, catalog_name: str | None, supplier_id: int | None = None) -> int | None:
        numeric_id = parse_int(_clean(catalog_id)) if _clean(catalog_id) else None
        if numeric_id is not None:
            return numeric_id
        name = _clean(catalog_name)
        if not name:
            return None
        if supplier_id is not None:
            return self._upsert(
                Catalog, name, supplier_id=supplier_id, overwrite={"supplier_id": supplier_id}
            )
        return self._upsert(Catalog, name)

    def resolve_row(self, row: dict[str, str], default_catalog_id: int | None = None) -> ResolvedRefs:
        """Resolve every reference a product row needs.

        A batch-level default catalog takes precedence over the row's own
        catalog columns.
        """
        supplier_id = self.resolve_supplier(row.get("supplier_id"), row.get("supplier_name"))
        category_id = self.resolve_category(
            row.get("category_id"), row.get("category_name"), row.get("category_parent_name")
        )
        if default_catalog_id:
            catalog_id = default_catalog_id
        else:
            catalog_id = self.resolve_catalog(row.get("catalog_id"), row.get("catalog_name"), supplier_id)
        return ResolvedRefs(category_id=category_id, catalog_id=catalog_id, supplier_id=supplier_id)
