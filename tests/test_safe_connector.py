import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import event, text

from core_logic.provisioning import ProvisioningPlanner, Statement, StatementPlan
from core_logic.safe_connector import ALLOWED_RELATIONS, SafeSqlExecutor, referenced_relations
from core_logic.tool_compiler import ToolCompiler

CREATE_SQL = "create table if not exists tool_configurations (id integer primary key, email text not null, version integer not null)"


@pytest.fixture
def executor(tmp_path):
    return SafeSqlExecutor(f"sqlite:///{tmp_path / 'admin.db'}")


def _plan(*statements):
    return StatementPlan(purpose="test", statements=list(statements), execute_requested=True)


def test_planner_statements_pass_the_relation_guard():
    planner = ProvisioningPlanner()
    plans = [planner.plan_setup(), planner.plan_versioned_insert("a@x.com", [])]

    for statement in (s for plan in plans for s in plan.statements):
        assert referenced_relations(statement.sql) <= ALLOWED_RELATIONS


@pytest.mark.parametrize("sql", [
    "drop table public.users",
    "insert into public.audit_log (event) values ('x')",
    "update auth.users set email = 'x' where true",
    "create index if not exists idx on public.orders (id)",
    "delete from public.orders",
])
def test_guard_refuses_other_relations(executor, sql):
    with pytest.raises(PermissionError):
        executor.execute(_plan(Statement(kind="create_table", object_name="x", sql=sql)))


def test_guard_refuses_retargeted_statement(executor):
    retargeted = Statement(kind="create_table", object_name="x", sql=CREATE_SQL, relation="public.orders")
    with pytest.raises(PermissionError):
        executor.execute(_plan(retargeted))


def test_plan_runs_in_one_transaction(executor):
    result = executor.execute(_plan(
        Statement(kind="create_table", object_name="tool_configurations", sql=CREATE_SQL),
        Statement(kind="insert_version", object_name="tool_configurations",
                  sql="insert into tool_configurations (email, version) values (:email, 1)", params={"email": "a@x.com"}),
    ))

    assert result.succeeded
    assert result.statements_run == 2
    with executor.engine.connect() as connection:
        assert connection.execute(text("select email from tool_configurations")).scalars().all() == ["a@x.com"]


def test_sql_error_text_is_returned_verbatim(executor):
    executor.execute(_plan(Statement(kind="create_table", object_name="tool_configurations", sql=CREATE_SQL)))

    result = executor.execute(_plan(
        Statement(kind="insert_version", object_name="tool_configurations",
                  sql="insert into tool_configurations (email, version) values (:email, 1)", params={"email": "first@x.com"}),
        Statement(kind="insert_version", object_name="tool_configurations",
                  sql="insert into tool_configurations (missing_col) values (:v)", params={"v": 1}),
    ))

    assert result.succeeded is False
    assert result.statements_run == 1
    assert "no column named missing_col" in result.error
    # The first insert was rolled back with the failed one.
    with executor.engine.connect() as connection:
        assert connection.execute(text("select count(*) from tool_configurations")).scalar() == 0


def test_empty_plan_is_a_successful_no_op(executor):
    result = executor.execute(_plan())
    assert result.succeeded
    assert result.statements_run == 0


# --- Versioning SQL against a real engine ---

VERSIONED_TABLE_SQL = (
    "create table public.tool_configurations (id integer primary key, email text not null, project_name text, "
    "version integer not null, tools text not null, is_active boolean not null default true, updated_at text)"
)
ACTIVE_INDEX_SQL = "create unique index public.uq_tool_config_active_per_email on tool_configurations (email) where is_active"


@pytest.fixture
def versioned_executor(tmp_path):
    """SQLite with the config table in an attached 'public' schema and the Postgres builtins the plan calls."""
    executor = SafeSqlExecutor(f"sqlite:///{tmp_path / 'admin.db'}")

    def attach_public(dbapi_connection, connection_record):
        dbapi_connection.execute("attach database ? as public", (str(tmp_path / "public.db"),))
        dbapi_connection.create_function("pg_advisory_xact_lock", 1, lambda key: None)
        dbapi_connection.create_function("hashtext", 1, len)
        dbapi_connection.create_function("now", 0, lambda: datetime.now(timezone.utc).isoformat())

    event.listen(executor.engine, "connect", attach_public)
    with executor.engine.begin() as connection:
        connection.exec_driver_sql(VERSIONED_TABLE_SQL)
        connection.exec_driver_sql(ACTIVE_INDEX_SQL)
    return executor


def _versioned_insert(email, label, tools=()):
    """The planner's own statements; only the jsonb cast is Postgres-specific."""
    plan = ProvisioningPlanner().plan_versioned_insert(email, list(tools), label)
    statements = [s.model_copy(update={"sql": s.sql.replace("cast(:tools as jsonb)", ":tools")}) for s in plan.statements]
    return plan.model_copy(update={"statements": statements, "execute_requested": True})


def _rows(executor, email):
    with executor.engine.connect() as connection:
        rows = connection.execute(
            text("select version, is_active, project_name from public.tool_configurations where email = :email order by version"),
            {"email": email},
        ).all()
    return [(version, bool(active), label) for version, active, label in rows]


def test_planned_insert_sql_versions_per_email(versioned_executor, orders_snapshot):
    tools = ToolCompiler().compile(orders_snapshot, ["select"]).tools

    for label in ("shop-v1", "shop-v2", "shop-v3"):
        result = versioned_executor.execute(_versioned_insert("a@x.com", label, tools))
        assert result.succeeded, result.error
        assert result.statements_run == 3
    assert versioned_executor.execute(_versioned_insert("b@x.com", "other")).succeeded

    assert _rows(versioned_executor, "a@x.com") == [(1, False, "shop-v1"), (2, False, "shop-v2"), (3, True, "shop-v3")]
    assert _rows(versioned_executor, "b@x.com") == [(1, True, "other")]
    with versioned_executor.engine.connect() as connection:
        stored = connection.execute(text("select tools from public.tool_configurations where version = 3")).scalar()
    assert [tool["name"] for tool in json.loads(stored)] == ["select_orders"]


def test_active_row_index_rejects_insert_without_deactivate(versioned_executor):
    versioned_executor.execute(_versioned_insert("a@x.com", "shop"))
    plan = _versioned_insert("a@x.com", "shop")
    insert_only = plan.model_copy(update={"statements": [s for s in plan.statements if s.kind == "insert_version"]})

    result = versioned_executor.execute(insert_only)

    assert result.succeeded is False
    assert "UNIQUE constraint failed" in result.error
    assert _rows(versioned_executor, "a@x.com") == [(1, True, "shop")]
