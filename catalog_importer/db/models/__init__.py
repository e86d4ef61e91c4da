"""Database models package."""
from catalog_importer.db.models.attribute import Attribute, AttributeOption, CatalogAttribute
from catalog_importer.db.models.batch_job import BatchJob
from catalog_importer.db.models.batch_row_error import BatchRowError
from catalog_importer.db.models.catalog import Catalog, Category, Supplier
from catalog_importer.db.models.product import Product, ProductAttribute

__all__ = [
    "Attribute",
    "AttributeOption",
    "BatchJob",
    "BatchRowError",
    "Catalog",
    "CatalogAttribute",
    "Category",
    "Product",
    "ProductAttribute",
    "Supplier",
]
