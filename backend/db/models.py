"""
StockRoute Database Models

Tables:
  1. stores                  - Storefronts owned by an account
  2. warehouses              - Fulfillment locations per store
  3. channel_integrations    - Sales channel / carrier connections
  4. orders                  - Orders imported from sales channels
  5. products                - Products imported from sales channels
  6. shipping_services       - Carrier services per warehouse
  7. shipping_boxes          - Carrier and custom boxes per warehouse
  8. integration_sync_logs   - One row per sync pipeline run

Rows imported from a platform carry ``external_id``/``platform``; the
remaining columns of each such row split into platform-owned fields
(overwritten on every sync) and locally-owned ones (see sync.pipeline).
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# ─── 1. Stores ──────────────────────────────────────────────────────────────


class Store(Base):
    __tablename__ = "stores"

    store_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    account_id = Column(GUID(), nullable=False)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_stores_account", "account_id"),
        CheckConstraint("status IN ('active', 'inactive')", name="ck_store_status"),
    )

    warehouses = relationship("Warehouse", back_populates="store", cascade="all, delete-orphan")
    integrations = relationship("ChannelIntegrationRow", back_populates="store")


# ─── 2. Warehouses ──────────────────────────────────────────────────────────


class Warehouse(Base):
    __tablename__ = "warehouses"

    warehouse_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    name = Column(String(255), nullable=False)
    address = Column(Text)
    city = Column(String(100))
    state = Column(String(2))  # US state code, drives region proximity
    zip_code = Column(String(10))
    country_code = Column(String(2), nullable=False, default="US")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("ix_warehouses_store", "store_id"),)

    store = relationship("Store", back_populates="warehouses")


# ─── 3. Channel Integrations ────────────────────────────────────────────────


class ChannelIntegrationRow(Base):
    __tablename__ = "channel_integrations"

    integration_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    account_id = Column(GUID(), nullable=False)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    platform_kind = Column(String(20), nullable=False, default="ecommerce")
    provider = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    shop_domain = Column(String(255))
    status = Column(String(20), nullable=False, default="disconnected")
    enabled = Column(Boolean, nullable=False, default=False)
    credentials_encrypted = Column(Text)  # opaque Fernet blob, never inspected by the sync core
    routing_config = Column(JSON, default=dict)
    product_sync_config = Column(JSON, default=dict)
    shipping_config = Column(JSON, default=dict)
    inventory_sync_enabled = Column(Boolean, nullable=False, default=False)
    sync_direction = Column(String(30), nullable=False, default="manual")
    connected_at = Column(DateTime)
    last_sync_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_channel_integrations_account", "account_id"),
        Index("ix_channel_integrations_store", "store_id"),
        CheckConstraint("platform_kind IN ('ecommerce', 'shipping')", name="ck_channel_platform_kind"),
        CheckConstraint("status IN ('connected', 'disconnected', 'error')", name="ck_channel_status"),
        CheckConstraint(
            "sync_direction IN ('platform_to_warehouses', 'warehouses_to_platform', 'manual')",
            name="ck_channel_sync_direction",
        ),
        CheckConstraint(
            "inventory_sync_enabled OR sync_direction = 'manual'",
            name="ck_channel_direction_requires_sync",
        ),
    )

    store = relationship("Store", back_populates="integrations")
    sync_logs = relationship("IntegrationSyncLog", back_populates="integration", cascade="all, delete-orphan")


# ─── 4. Orders ──────────────────────────────────────────────────────────────


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    external_id = Column(String(64), nullable=False)
    platform = Column(String(50), nullable=False)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=True)
    notes = Column(Text)

    order_number = Column(String(50))
    customer_name = Column(String(255))
    customer_email = Column(String(255))
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    subtotal_amount = Column(Numeric(12, 2))
    tax_amount = Column(Numeric(12, 2))
    shipping_amount = Column(Numeric(12, 2))
    currency = Column(String(3), nullable=False, default="USD")
    financial_status = Column(String(30), nullable=False, default="pending")
    fulfillment_status = Column(String(30), nullable=False, default="unfulfilled")
    order_date = Column(DateTime(timezone=True))
    external_updated_at = Column(DateTime(timezone=True))

    shipping_name = Column(String(255))
    shipping_address1 = Column(String(255))
    shipping_address2 = Column(String(255))
    shipping_city = Column(String(100))
    shipping_province = Column(String(100))
    shipping_region_code = Column(String(10))
    shipping_zip = Column(String(20))
    shipping_country = Column(String(100))
    shipping_country_code = Column(String(2))
    shipping_phone = Column(String(50))
    requested_shipping = Column(String(255))

    line_items = Column(JSON, default=list)
    item_count = Column(Integer, nullable=False, default=0)
    total_weight_oz = Column(Float, default=0.0)
    tracking_number = Column(String(100))
    customer_note = Column(Text)
    tags = Column(JSON, default=list)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("store_id", "platform", "external_id", name="uq_order_external_per_store"),
        Index("ix_orders_warehouse", "warehouse_id"),
    )


# ─── 5. Products ────────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    external_id = Column(String(64), nullable=False)
    platform = Column(String(50), nullable=False)
    warehouse_ids = Column(JSON, default=list)

    sku = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    product_type = Column(String(20), nullable=False, default="simple")
    category = Column(String(100))
    vendor = Column(String(255))
    price = Column(Numeric(12, 2), nullable=False, default=0)
    compare_price = Column(Numeric(12, 2))
    currency = Column(String(3), nullable=False, default="USD")
    quantity = Column(Integer, nullable=False, default=0)
    stock_status = Column(String(20), nullable=False, default="out_of_stock")
    weight_oz = Column(Float, default=0.0)
    barcode = Column(String(64))
    status = Column(String(20), nullable=False, default="active")
    tags = Column(JSON, default=list)
    images = Column(JSON, default=list)
    variants = Column(JSON, default=list)
    published_at = Column(DateTime(timezone=True))
    external_updated_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("store_id", "platform", "external_id", name="uq_product_external_per_store"),
        Index("ix_products_store_sku", "store_id", "sku"),
        CheckConstraint("status IN ('active', 'draft', 'archived', 'inactive')", name="ck_product_status"),
        CheckConstraint(
            "stock_status IN ('in_stock', 'low_stock', 'out_of_stock', 'backorder')",
            name="ck_product_stock_status",
        ),
    )


# ─── 6. Shipping Services ───────────────────────────────────────────────────


class ShippingService(Base):
    __tablename__ = "shipping_services"

    service_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=False)
    carrier = Column(String(20), nullable=False)
    service_code = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    delivery_days = Column(String(20))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("warehouse_id", "carrier", "service_code", name="uq_service_per_warehouse"),
    )


# ─── 7. Shipping Boxes ──────────────────────────────────────────────────────


class ShippingBox(Base):
    __tablename__ = "shipping_boxes"

    box_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=False)
    carrier = Column(String(20), nullable=False)
    box_code = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    box_type = Column(String(20), nullable=False, default="carrier")
    is_variable = Column(Boolean, nullable=False, default=False)
    length = Column(Float, default=0.0)
    width = Column(Float, default=0.0)
    height = Column(Float, default=0.0)
    max_weight_oz = Column(Float)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("warehouse_id", "carrier", "box_code", name="uq_box_per_warehouse"),
        CheckConstraint("box_type IN ('carrier', 'custom')", name="ck_box_type"),
    )


# ─── 8. Integration Sync Logs ───────────────────────────────────────────────


class IntegrationSyncLog(Base):
    __tablename__ = "integration_sync_logs"

    sync_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    integration_id = Column(GUID(), ForeignKey("channel_integrations.integration_id"), nullable=False)
    entity_kind = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    records_processed = Column(Integer, nullable=False, default=0)
    pages = Column(Integer, nullable=False, default=0)
    warnings = Column(Integer, nullable=False, default=0)
    end_cursor = Column(String(255))
    error = Column(Text)
    error_origin = Column(String(20))
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_sync_logs_integration", "integration_id", "started_at"),
        CheckConstraint("entity_kind IN ('orders', 'products')", name="ck_sync_log_entity_kind"),
        CheckConstraint("status IN ('done', 'error', 'cancelled')", name="ck_sync_log_status"),
    )

    integration = relationship("ChannelIntegrationRow", back_populates="sync_logs")
