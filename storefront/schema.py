"""
テーブル定義

orders / order_lines はこのサービスが所有する。
products / carts / cart_items は外部(管理画面・ストアフロント)が所有し、
ここでは参照・ベストエフォート削除のみ行う。

order_lines は products への外部キーを持たない。
商品が削除・価格変更されても購入時の価格スナップショットは残る。
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

# ── このサービスが所有するテーブル ─────────────────

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("account_id", String(64), nullable=False, index=True),
    Column("total_amount", BigInteger, nullable=False),
    Column("status", String(16), nullable=False, default="pending"),
    Column("payment_method", String(64)),
    Column("gateway_reference", String(128)),
    Column("paid_at", DateTime(timezone=True)),
    Column("buyer_name", String(255), nullable=False),
    Column("buyer_email", String(255), nullable=False),
    Column("buyer_phone", String(64)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("status IN ('pending', 'success', 'failed')", name="ck_orders_status"),
    CheckConstraint("total_amount >= 0", name="ck_orders_total_amount"),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column(
        "order_code",
        String(64),
        ForeignKey("orders.code", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("line_index", Integer, primary_key=True),
    Column("product_id", String(64), nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price_at_purchase", BigInteger, nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_lines_quantity"),
)

# ── 外部コラボレーター ─────────────────────────────

products = Table(
    "products",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("price", BigInteger, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
)

carts = Table(
    "carts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(64), nullable=False, unique=True),
)

cart_items = Table(
    "cart_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("cart_id", Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False),
    Column("product_id", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    """起動時にテーブルを作成する(既存テーブルはそのまま)。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
