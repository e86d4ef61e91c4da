"""Global attribute dictionaries and their catalog scoping."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from catalog_importer.db.base import Base


class Attribute(Base):
    __tablename__ = "attributes"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    display_name = Column(String(255), nullable=False)
    attribute_type = Column(String(32), nullable=False, default="select")
    is_filterable = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AttributeOption(Base):
    __tablename__ = "attribute_options"

    id = Column(Integer, primary_key=True)
    attribute_id = Column(
        Integer, ForeignKey("attributes.id", ondelete="CASCADE"), nullable=False
    )
    value = Column(String(255), nullable=False)
    display_value = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("attribute_id", "value", name="uq_attribute_options_attribute_value"),
    )


class CatalogAttribute(Base):
    __tablename__ = "catalog_attributes"

    id = Column(Integer, primary_key=True)
    catalog_id = Column(Integer, ForeignKey("catalogs.id", ondelete="CASCADE"), nullable=False)
    attribute_id = Column(
        Integer, ForeignKey("attributes.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("catalog_id", "attribute_id", name="uq_catalog_attributes_pair"),
    )
