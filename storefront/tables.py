"""
Storefront — テーブル定義

PostgreSQL (asyncpg) と SQLite (aiosqlite) の両方で動くように
SQLAlchemy Core の型でスキーマを定義する。

在庫と価格は CHECK 制約でも 0 未満を拒否する。
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
)

metadata = MetaData()

Money = Numeric(10, 2)


bags = Table(
    "bags",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("name", String(200), nullable=False),
    Column("description", Text, nullable=False),
    Column("category", String(50), nullable=False),
    Column("brand", String(100), nullable=False),
    Column("featured", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

bag_variants = Table(
    "bag_variants",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("bag_id", Uuid, ForeignKey("bags.id"), nullable=False, index=True),
    Column("size", String(20), nullable=False),
    Column("color", String(50), nullable=False),
    Column("price", Money, nullable=False),
    Column("stock", Integer, nullable=False),
    Column("sku", String(64), nullable=False, unique=True),
    UniqueConstraint("bag_id", "size", "color", name="uq_variant_size_color"),
    CheckConstraint("stock >= 0", name="ck_variant_stock_non_negative"),
    CheckConstraint("price >= 0", name="ck_variant_price_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("contact_email", String(320), nullable=False),
    Column("shipping_address", JSON, nullable=False),
    Column("total_amount", Money, nullable=False),
    Column("currency", String(3), nullable=False),
    # 決済
    Column("payment_provider", String(20), nullable=False),
    Column("payment_id", String(255), nullable=True, index=True),
    Column("payment_reference", String(255), nullable=True, index=True),
    Column("payment_status", String(20), nullable=False, index=True),
    Column("amount_paid", Money, nullable=True),
    Column("payment_date", DateTime(timezone=True), nullable=True),
    Column("payment_metadata", JSON, nullable=True),
    # 配送
    Column("order_status", String(20), nullable=False, index=True),
    Column("tracking_carrier", String(100), nullable=True),
    Column("tracking_number", String(100), nullable=True),
    Column("tracking_url", String(500), nullable=True),
    Column("estimated_delivery", DateTime(timezone=True), nullable=True),
    Column("delivered_at", DateTime(timezone=True), nullable=True),
    # 返金
    Column("refund_status", String(20), nullable=False),
    Column("refund_reason", Text, nullable=True),
    Column("refund_amount", Money, nullable=True),
    Column("refund_date", DateTime(timezone=True), nullable=True),
    # 決済完了後の在庫引き落としの進捗マーカー
    Column("stock_adjustment", String(20), nullable=False, index=True),
    Column("notes", Text, nullable=True),
    Column("is_gift", Boolean, nullable=False, default=False),
    Column("gift_message", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("order_id", Uuid, ForeignKey("orders.id"), primary_key=True),
    Column("position", Integer, primary_key=True),
    Column("bag_id", Uuid, nullable=False),
    Column("bag_name", String(200), nullable=False),
    Column("size", String(20), nullable=False),
    Column("color", String(50), nullable=False),
    Column("price", Money, nullable=False),
    Column("sku", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("subtotal", Money, nullable=False),
    CheckConstraint("quantity >= 1", name="ck_item_quantity_positive"),
)

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", Uuid, nullable=False, index=True),
    Column("aggregate_type", String(50), nullable=False),
    Column("event_type", String(100), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("aggregate_id", "version", name="uq_event_version"),
)

reconciliation_issues = Table(
    "reconciliation_issues",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(50), nullable=False, index=True),
    Column("provider", String(20), nullable=True),
    Column("reference", String(255), nullable=True),
    Column("order_id", Uuid, nullable=True),
    Column("detail", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
