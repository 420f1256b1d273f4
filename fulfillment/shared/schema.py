"""
Shared — テーブル定義

4 サービスは同じリレーショナル DB を共有する。
クエリは各サービスの commands / queries で text() SQL として書き、
ここではスキーマ (DDL) だけを宣言する。
"""

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    # 残高は非負。DB 制約ではなく Payment の条件付き UPDATE で守る
    Column("balance", Float, nullable=False, default=0),
)

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("price", Float, nullable=False),
    Column("stock", Integer, nullable=False, default=0),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    # 再配送されたイベントで二重引き落とし / 二重減算しないためのガード
    Column("paid_at", DateTime(timezone=True), nullable=True),
    Column("stock_committed_at", DateTime(timezone=True), nullable=True),
)

order_products = Table(
    "order_products",
    metadata,
    Column("order_id", String(36), ForeignKey("orders.id"), primary_key=True),
    Column("product_id", String(36), ForeignKey("products.id"), primary_key=True),
    Column("quantity", Integer, nullable=False, default=1),
)

order_tracks = Table(
    "order_tracks",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, unique=True),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
