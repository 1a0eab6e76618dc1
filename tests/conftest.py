import pytest

from config.settings import ToolsmithSettings
from core_logic.data_models import (
    ColumnSchema, DbFunction, DiscoverySnapshot, ForeignKey, FunctionArg, PolicySchema, TableSchema,
)
from fakes import PAT, InMemoryConfigStore


@pytest.fixture
def orders_table():
    """orders(pk id; id, email, total, secret_note[sensitive]); RLS on with owner_select."""
    return TableSchema(
        schema="public",
        name="orders",
        columns=[
            ColumnSchema(name="id", type="bigint", nullable=False, default="nextval('orders_id_seq'::regclass)"),
            ColumnSchema(name="email", type="text", nullable=False),
            ColumnSchema(name="total", type="numeric", nullable=False),
            ColumnSchema(name="secret_note", type="text", nullable=True, sensitive=True),
        ],
        primary_key=["id"],
        rls_enabled=True,
        policies=[PolicySchema(name="owner_select", command="SELECT", using="email = auth.email()")],
    )


@pytest.fixture
def orders_snapshot(orders_table):
    return DiscoverySnapshot(tables=[orders_table])


@pytest.fixture
def shop_snapshot():
    """customers <- orders <- order_products -> products, plus an unkeyed audit_log and one RPC."""
    customers = TableSchema(
        schema="public", name="customers",
        columns=[
            ColumnSchema(name="id", type="uuid", nullable=False, default="gen_random_uuid()"),
            ColumnSchema(name="email", type="text", nullable=False, sensitive=True),
            ColumnSchema(name="display_name", type="text", nullable=True, sensitive=True),
            ColumnSchema(name="tier", type="text", nullable=True),
        ],
        primary_key=["id"],
        rls_enabled=True,
        policies=[
            PolicySchema(name="customers_read_own", command="SELECT"),
            PolicySchema(name="customers_update_own", command="UPDATE"),
        ],
    )
    orders = TableSchema(
        schema="public", name="orders",
        columns=[
            ColumnSchema(name="id", type="bigint", nullable=False, default="nextval('orders_id_seq'::regclass)"),
            ColumnSchema(name="customer_id", type="uuid", nullable=False),
            ColumnSchema(name="total", type="numeric", nullable=False),
            ColumnSchema(name="placed_at", type="timestamptz", nullable=False, default="now()"),
        ],
        primary_key=["id"],
        foreign_keys=[ForeignKey(constraint="orders_customer_id_fkey", columns=["customer_id"], ref_schema="public", ref_table="customers", ref_columns=["id"])],
        rls_enabled=True,
        policies=[PolicySchema(name="orders_owner_all", command="ALL")],
    )
    products = TableSchema(
        schema="public", name="products",
        columns=[
            ColumnSchema(name="id", type="bigint", nullable=False),
            ColumnSchema(name="title", type="text", nullable=False),
            ColumnSchema(name="tags", type="text[]", nullable=True),
        ],
        primary_key=["id"],
        rls_enabled=False,
    )
    order_products = TableSchema(
        schema="public", name="order_products",
        columns=[
            ColumnSchema(name="order_id", type="bigint", nullable=False),
            ColumnSchema(name="product_id", type="bigint", nullable=False),
            ColumnSchema(name="quantity", type="integer", nullable=False, default="1"),
        ],
        primary_key=["order_id", "product_id"],
        foreign_keys=[
            ForeignKey(constraint="order_products_order_id_fkey", columns=["order_id"], ref_schema="public", ref_table="orders", ref_columns=["id"]),
            ForeignKey(constraint="order_products_product_id_fkey", columns=["product_id"], ref_schema="public", ref_table="products", ref_columns=["id"]),
        ],
        rls_enabled=True,
        policies=[PolicySchema(name="order_products_select", command="SELECT")],
    )
    audit_log = TableSchema(
        schema="public", name="audit_log",
        columns=[
            ColumnSchema(name="event", type="text", nullable=False),
            ColumnSchema(name="payload", type="jsonb", nullable=True),
        ],
        primary_key=None,
        rls_enabled=False,
    )
    order_total = DbFunction(
        schema="public", name="order_total",
        args=[FunctionArg(name="order_id", type="bigint")],
        returns="numeric", volatility="stable",
    )
    return DiscoverySnapshot(tables=[customers, orders, products, order_products, audit_log], db_functions=[order_total])


@pytest.fixture
def settings():
    return ToolsmithSettings(access_tokens=(PAT,), max_tools=100, default_page_limit=50, max_prompt_rounds=3)


@pytest.fixture
def store():
    return InMemoryConfigStore()
