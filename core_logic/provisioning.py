# Toolsmith/core_logic/provisioning.py
import json
import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field

from core_logic.data_models import ToolDescriptor
from core_logic.errors import ProvisioningBlocked

provisioning_logger = logging.getLogger('Toolsmith.Provisioning')
provisioning_logger.setLevel(logging.INFO)

# The only relation this system may create or modify. Not caller-configurable.
CONFIG_SCHEMA = "public"
CONFIG_TABLE = "tool_configurations"
CONFIG_RELATION = f"{CONFIG_SCHEMA}.{CONFIG_TABLE}"

CREATE_TABLE_SQL = f"""create table if not exists {CONFIG_RELATION} (
  id bigint generated always as identity primary key,
  email text not null,
  project_name text,
  version int not null default 1,
  tools jsonb not null,
  is_active boolean not null default true,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
)"""

INDEXES = (
    ("idx_tool_configurations_email", f"create index if not exists idx_tool_configurations_email on {CONFIG_RELATION} (email)"),
    ("idx_tool_configurations_is_active", f"create index if not exists idx_tool_configurations_is_active on {CONFIG_RELATION} (is_active)"),
    # Database-level guarantee of one active row per email.
    ("uq_tool_config_active_per_email", f"create unique index if not exists uq_tool_config_active_per_email on {CONFIG_RELATION} (email) where is_active"),
)

ENABLE_RLS_SQL = f"alter table {CONFIG_RELATION} enable row level security"

POLICIES = (
    ("select_own_active", "for select using (email = auth.email())"),
    ("insert_own", "for insert with check (email = auth.email())"),
    ("update_own", "for update using (email = auth.email()) with check (email = auth.email())"),
    ("deactivate_own", "for update using (email = auth.email() and is_active) with check (email = auth.email() and is_active = false)"),
)

POLICY_SQL_TEMPLATE = """do $$
begin
  if not exists (
    select 1 from pg_policies
    where schemaname = '{schema}' and tablename = '{table}' and policyname = '{policy}'
  ) then
    create policy {policy} on {relation} {clause};
  end if;
end
$$"""

LOCK_SQL = "select pg_advisory_xact_lock(hashtext(:email))"
DEACTIVATE_SQL = f"update {CONFIG_RELATION} set is_active = false, updated_at = now() where email = :email and is_active = true"
INSERT_VERSION_SQL = (
    f"insert into {CONFIG_RELATION} (email, project_name, version, tools, is_active) "
    f"select :email, :project_name, coalesce(max(version), 0) + 1, cast(:tools as jsonb), true "
    f"from {CONFIG_RELATION} where email = :email"
)

SETUP_NOTES = [
    "Policies rely on auth.email(); service-role connections bypass RLS and see every row.",
    "uq_tool_config_active_per_email enforces one active configuration per email at the database level.",
]


class Statement(BaseModel):
    """One SQL statement against the configuration relation."""
    kind: str = Field(description="create_table | create_index | enable_rls | create_policy | lock | deactivate | insert_version")
    object_name: str
    sql: str
    params: Dict[str, Any] = Field(default_factory=dict)
    relation: str = CONFIG_RELATION


class StatementPlan(BaseModel):
    """Statements plus whether execution was requested. Always run as one transaction."""
    purpose: str
    statements: List[Statement] = Field(default_factory=list)
    execute_requested: bool = False
    transactional: bool = True

    def render(self) -> str:
        return ";\n\n".join(s.sql for s in self.statements) + (";" if self.statements else "")

    def display_params(self) -> Dict[str, Any]:
        """Bind parameters, minus the tools payload (already rendered in the TOOLS block)."""
        merged: Dict[str, Any] = {}
        for statement in self.statements:
            merged.update({k: v for k, v in statement.params.items() if k != "tools"})
        return merged


class ExecutionResult(BaseModel):
    succeeded: bool
    output: Optional[str] = None
    error: Optional[str] = Field(default=None, description="Executor error text, verbatim.")
    statements_run: int = 0

    def as_text(self) -> str:
        if self.succeeded:
            return self.output or ""
        return self.error or "execution failed without error text"


class ProvisionedState(BaseModel):
    """What already exists on the target; used to make re-planning a no-op."""
    table_exists: bool = False
    rls_enabled: bool = False
    indexes: FrozenSet[str] = frozenset()
    policies: FrozenSet[str] = frozenset()


class ConfigurationRow(BaseModel):
    id: Optional[int] = None
    email: str
    project_name: Optional[str] = None
    version: int
    tools: List[Dict[str, Any]]
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProvisioningPlanner:
    """
    Builds idempotent statement sets for the tool_configurations relation.
    Never executes anything itself; execution belongs to the SQL executor.
    """
    relation = CONFIG_RELATION

    def plan_setup(self, execute: bool = False, existing: Optional[ProvisionedState] = None) -> StatementPlan:
        state = existing or ProvisionedState()
        statements: List[Statement] = []

        if not state.table_exists:
            statements.append(Statement(kind="create_table", object_name=CONFIG_TABLE, sql=CREATE_TABLE_SQL))
        for name, sql in INDEXES:
            if name not in state.indexes:
                statements.append(Statement(kind="create_index", object_name=name, sql=sql))
        if not state.rls_enabled:
            statements.append(Statement(kind="enable_rls", object_name=CONFIG_TABLE, sql=ENABLE_RLS_SQL))
        for name, clause in POLICIES:
            if name not in state.policies:
                sql = POLICY_SQL_TEMPLATE.format(schema=CONFIG_SCHEMA, table=CONFIG_TABLE, policy=name, relation=CONFIG_RELATION, clause=clause)
                statements.append(Statement(kind="create_policy", object_name=name, sql=sql))

        provisioning_logger.info(f"Setup plan for {CONFIG_RELATION}: {len(statements)} statement(s), execute={execute}.")
        return StatementPlan(purpose="setup", statements=statements, execute_requested=execute)

    def plan_versioned_insert(
        self,
        owner_email: str,
        tools: List[ToolDescriptor],
        project_label: Optional[str] = None,
        setup_result: Optional[ExecutionResult] = None,
        execute: bool = False,
    ) -> StatementPlan:
        """Deactivate-then-insert as one unit; the new version is max(version) + 1 for the email."""
        if setup_result is not None and not setup_result.succeeded:
            raise ProvisioningBlocked(f"Table setup failed; configuration insert not planned: {setup_result.error}")
        if execute and setup_result is None:
            raise ProvisioningBlocked("Configuration insert cannot execute before table setup has succeeded.")
        if not owner_email:
            raise ProvisioningBlocked("Configuration insert needs an owner email.")

        params = {
            "email": owner_email,
            "project_name": project_label,
            "tools": json.dumps([tool.to_wire() for tool in tools]),
        }
        statements = [
            Statement(kind="lock", object_name=CONFIG_TABLE, sql=LOCK_SQL, params={"email": owner_email}),
            Statement(kind="deactivate", object_name=CONFIG_TABLE, sql=DEACTIVATE_SQL, params={"email": owner_email}),
            Statement(kind="insert_version", object_name=CONFIG_TABLE, sql=INSERT_VERSION_SQL, params=params),
        ]
        provisioning_logger.info(f"Versioned insert planned for {owner_email} ({len(tools)} tools), execute={execute}.")
        return StatementPlan(purpose="versioned_insert", statements=statements, execute_requested=execute)
