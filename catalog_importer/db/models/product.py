"""SQLAlchemy models for product records and their attribute selections."""

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.types import DateTime

from catalog_importer.db.base import Base, JSONType


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    sku = Column(String(255), nullable=False)
    description = Column(Text)
    short_description = Column(Text)

    category_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"))
    catalog_id = Column(Integer, ForeignKey("catalogs.id", ondelete="SET NULL"))
    supplier_id = Column(Integer, ForeignKey("suppliers.id", ondelete="SET NULL"))
    batch_id = Column(String(36), ForeignKey("batch_jobs.id", ondelete="SET NULL"), index=True)

    price = Column(Numeric(12, 2), nullable=False)
    cost_price = Column(Numeric(12, 2), nullable=False)
    sale_price = Column(Numeric(12, 2))
    minimum_price = Column(Numeric(12, 2))
    discount = Column(Numeric(5, 2))
    discount_label = Column(String(255))
    wholesale_minimum_qty = Column(Integer)
    wholesale_discount = Column(Numeric(5, 2))

    is_active = Column(Boolean, nullable=False, default=True)
    is_featured = Column(Boolean, nullable=False, default=False)
    weight = Column(Numeric(10, 3))
    dimensions = Column(String(64))
    tags = Column(JSONType)
    supplier = Column(String(255))
    brand = Column(String(255))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class ProductAttribute(Base):
    """Selected options of one attribute for one product (replaced, never appended)."""

    __tablename__ = "product_attributes"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    attribute_id = Column(
        Integer, ForeignKey("attributes.id", ondelete="CASCADE"), nullable=False
    )
    selected_options = Column(JSONType, nullable=False)
    text_value = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("product_id", "attribute_id", name="uq_product_attributes_pair"),
    )
