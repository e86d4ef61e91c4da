"""Reference dictionaries: suppliers, catalogs and categories.

Each carries a ``name_key`` (trimmed, lower-cased name) with a unique
constraint so find-or-create can be an atomic insert-on-conflict.
"""

from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from catalog_importer.db.base import Base


class Supplier(Base):
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    name_key = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Catalog(Base):
    __tablename__ = "catalogs"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    name_key = Column(String(255), nullable=False, unique=True)
    description = Column(Text)
    supplier_id = Column(Integer, ForeignKey("suppliers.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    name_key = Column(String(255), nullable=False, unique=True)
    slug = Column(String(255), nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
