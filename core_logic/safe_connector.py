# Toolsmith/core_logic/safe_connector.py
import logging
import re
from typing import Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from config.settings import MAX_STATEMENT_TIMEOUT_SECONDS
from core_logic.provisioning import (
    CONFIG_RELATION, CONFIG_SCHEMA, CONFIG_TABLE, ConfigurationRow, ExecutionResult,
    ProvisionedState, StatementPlan,
)

security_logger = logging.getLogger('Toolsmith.Security')
security_logger.setLevel(logging.WARNING)
executor_logger = logging.getLogger('Toolsmith.Executor')
executor_logger.setLevel(logging.INFO)

# Relation names a statement may mention. pg_policies is read inside the idempotent policy guards.
ALLOWED_RELATIONS = {CONFIG_RELATION, CONFIG_TABLE, "pg_policies", "pg_catalog.pg_policies"}

_RELATION_PATTERNS = (
    r"\btable\s+(?:if\s+(?:not\s+)?exists\s+)?([\w\.\"]+)",
    r"\binto\s+([\w\.\"]+)",
    r"\bupdate\s+([\w\.\"]+)\s+set\b",
    r"\bon\s+([\w\.\"]+)",
    r"\bfrom\s+([\w\.\"]+)",
)

RLS_STATE_SQL = """
select c.relrowsecurity
from pg_class c join pg_namespace n on n.oid = c.relnamespace
where n.nspname = :schema and c.relname = :table
"""
POLICY_STATE_SQL = "select policyname from pg_policies where schemaname = :schema and tablename = :table"
ACTIVE_ROW_SQL = f"""
select id, email, project_name, version, tools, is_active, created_at, updated_at
from {CONFIG_RELATION} where email = :email and is_active = true
"""


def referenced_relations(sql: str) -> set:
    found = set()
    for pattern in _RELATION_PATTERNS:
        for match in re.finditer(pattern, sql, re.IGNORECASE):
            found.add(match.group(1).replace('"', "").lower())
    return found


def _set_pg_statement_timeout(dbapi_connection, connection_record):
    """Sets a statement-level timeout on PostgreSQL connections upon creation."""
    cursor = dbapi_connection.cursor()
    # Timeout is set in milliseconds in PostgreSQL
    cursor.execute(f"SET statement_timeout = {MAX_STATEMENT_TIMEOUT_SECONDS * 1000}")
    cursor.close()


class SafeSqlExecutor:
    """
    Executes provisioning plans against the tool_configurations relation only.
    Each plan runs inside a single transaction; SQL errors come back verbatim.
    """
    def __init__(self, db_uri: str):
        # NOTE: The URI needs rights to create tables and policies in the public schema.
        self.engine = create_engine(db_uri)
        if self.engine.dialect.name == "postgresql":
            event.listen(self.engine, "connect", _set_pg_statement_timeout)

    def _assert_config_relation(self, plan: StatementPlan):
        """Hard stop: refuses any statement that could touch another relation."""
        for statement in plan.statements:
            foreign = referenced_relations(statement.sql) - ALLOWED_RELATIONS
            if statement.relation != CONFIG_RELATION or foreign:
                security_logger.error(f"SECURITY ALERT: statement outside {CONFIG_RELATION}: {statement.sql}")
                raise PermissionError(f"Statement '{statement.kind}' targets relations outside {CONFIG_RELATION}: {sorted(foreign) or statement.relation}")

    def execute(self, plan: StatementPlan) -> ExecutionResult:
        self._assert_config_relation(plan)
        if not plan.statements:
            return ExecutionResult(succeeded=True, output="Nothing to execute; target already provisioned.")

        run = 0
        try:
            with self.engine.begin() as connection:
                for statement in plan.statements:
                    if statement.params:
                        connection.execute(text(statement.sql), statement.params)
                    else:
                        connection.exec_driver_sql(statement.sql)
                    run += 1
        except SQLAlchemyError as e:
            error = str(getattr(e, "orig", None) or e)
            executor_logger.error(f"Plan '{plan.purpose}' failed after {run} statement(s): {error}")
            return ExecutionResult(succeeded=False, error=error, statements_run=run)

        executor_logger.info(f"Plan '{plan.purpose}' executed: {run} statement(s).")
        return ExecutionResult(succeeded=True, output=f"{plan.purpose}: {run} statement(s) executed.", statements_run=run)

    def current_state(self) -> ProvisionedState:
        """Inspects what already exists so setup can skip it."""
        inspector = inspect(self.engine)
        if not inspector.has_table(CONFIG_TABLE, schema=CONFIG_SCHEMA):
            return ProvisionedState()

        indexes = frozenset(ix["name"] for ix in inspector.get_indexes(CONFIG_TABLE, schema=CONFIG_SCHEMA))
        params = {"schema": CONFIG_SCHEMA, "table": CONFIG_TABLE}
        with self.engine.connect() as connection:
            rls_enabled = bool(connection.execute(text(RLS_STATE_SQL), params).scalar())
            policies = frozenset(connection.execute(text(POLICY_STATE_SQL), params).scalars().all())
        return ProvisionedState(table_exists=True, rls_enabled=rls_enabled, indexes=indexes, policies=policies)

    def active_configuration(self, email: str) -> Optional[ConfigurationRow]:
        with self.engine.connect() as connection:
            row = connection.execute(text(ACTIVE_ROW_SQL), {"email": email}).mappings().first()
        return ConfigurationRow(**row) if row else None
