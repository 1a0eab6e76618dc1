# Toolsmith/core_logic/data_models.py
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from core_logic.errors import MalformedDiscoveryError

Operation = Literal["select", "insert", "update", "delete", "rpc"]
OPERATIONS: Tuple[str, ...] = ("select", "insert", "update", "delete", "rpc")
TABLE_OPERATIONS: Tuple[str, ...] = ("select", "insert", "update", "delete")

PolicyCommand = Literal["ALL", "SELECT", "INSERT", "UPDATE", "DELETE"]
FilterOp = Literal["eq", "neq", "lt", "lte", "gt", "gte", "like", "ilike", "in", "is", "contains", "containedBy"]
NullsPlacement = Literal["first", "last", "auto"]


class FrozenModel(BaseModel):
    """Immutable once built; wire names are the aliases (e.g. `schema`)."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)


# --- Schema Model (discovered capabilities) ---

class ColumnSchema(FrozenModel):
    """Defines metadata for a single discovered column."""
    name: str = Field(description="The exact column name (e.g., customer_id).")
    type: str = Field(description="The declared SQL type, verbatim from discovery.")
    nullable: bool = True
    default: Optional[str] = Field(default=None, description="Default expression, or null when the column has none.")
    sensitive: bool = Field(default=False, description="Flagged by discovery as PII or otherwise protected.")


class ForeignKey(FrozenModel):
    """A discovered FK constraint; the only source of relationships."""
    constraint: str
    columns: List[str]
    ref_schema: str = "public"
    ref_table: str
    ref_columns: List[str]


class UniqueIndex(FrozenModel):
    name: str
    columns: List[str]


class PolicySchema(FrozenModel):
    """An RLS policy, referenced by name only; its expressions are never re-derived."""
    name: str
    command: PolicyCommand
    using: Optional[str] = None
    with_check: Optional[str] = None


class TableSchema(FrozenModel):
    """The complete discovered unit for a single table."""
    schema_name: str = Field(default="public", alias="schema")
    name: str
    columns: List[ColumnSchema]
    primary_key: Optional[List[str]] = None
    foreign_keys: List[ForeignKey] = Field(default_factory=list)
    unique_indexes: List[UniqueIndex] = Field(default_factory=list)
    rls_enabled: bool = False
    policies: List[PolicySchema] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _fold_sensitive_columns(cls, data: Any) -> Any:
        """Accepts the discovery shape, where sensitivity is a per-table name list."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("primary_key") == []:
            data["primary_key"] = None
        if "sensitive_columns" not in data:
            return data

        flagged = set(data.pop("sensitive_columns") or [])
        columns = []
        known = set()
        for col in data.get("columns") or []:
            if isinstance(col, ColumnSchema):
                known.add(col.name)
                if col.name in flagged and not col.sensitive:
                    col = col.model_copy(update={"sensitive": True})
            elif isinstance(col, dict):
                known.add(col.get("name"))
                if col.get("name") in flagged:
                    col = {**col, "sensitive": True}
            columns.append(col)

        unknown = sorted(flagged - known)
        if unknown:
            raise MalformedDiscoveryError(f"Table '{data.get('name')}' flags unknown sensitive columns: {unknown}")
        data["columns"] = columns
        return data

    @model_validator(mode="after")
    def _check_structure(self) -> "TableSchema":
        names = [c.name for c in self.columns]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise MalformedDiscoveryError(f"Table '{self.qualified_name}' repeats columns: {duplicates}")

        known = set(names)
        if self.primary_key is not None:
            missing = [c for c in self.primary_key if c not in known]
            if missing:
                raise MalformedDiscoveryError(f"Primary key of '{self.qualified_name}' references absent columns: {missing}")

        for fk in self.foreign_keys:
            missing = [c for c in fk.columns if c not in known]
            if missing or not fk.columns or len(fk.columns) != len(fk.ref_columns):
                raise MalformedDiscoveryError(f"Foreign key '{fk.constraint}' on '{self.qualified_name}' is inconsistent with its columns.")

        for index in self.unique_indexes:
            missing = [c for c in index.columns if c not in known]
            if missing:
                raise MalformedDiscoveryError(f"Unique index '{index.name}' on '{self.qualified_name}' references absent columns: {missing}")
        return self

    @computed_field
    @property
    def sensitive_columns(self) -> List[str]:
        return [c.name for c in self.columns if c.sensitive]

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.name}"

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def key_columns(self) -> List[str]:
        return list(self.primary_key or [])

    def get_column(self, name: str) -> Optional[ColumnSchema]:
        for column in self.columns:
            if column.name == name:
                return column
        return None


class FunctionArg(FrozenModel):
    name: str
    type: str


class DbFunction(FrozenModel):
    """A discovered RPC function. The return type stays text; no schema is inferred from it."""
    schema_name: str = Field(default="public", alias="schema")
    name: str
    args: List[FunctionArg] = Field(default_factory=list)
    returns: Optional[str] = None
    volatility: Optional[str] = None
    required_role: Optional[str] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.name}"


class EdgeFunction(FrozenModel):
    name: str
    status: Literal["deployed", "unknown"] = "unknown"


class Extension(FrozenModel):
    name: str
    version: Optional[str] = None


class Limitation(FrozenModel):
    """Partial-failure record: which discovery tool failed and its exact error text."""
    tool: str
    error: str


class DiscoverySnapshot(FrozenModel):
    """Immutable capture of one discovery run. Superseded, never mutated."""
    edge_functions: List[EdgeFunction] = Field(default_factory=list)
    db_functions: List[DbFunction] = Field(default_factory=list)
    tables: List[TableSchema] = Field(default_factory=list)
    extensions: List[Extension] = Field(default_factory=list)
    limitations: List[Limitation] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "DiscoverySnapshot":
        seen = set()
        for table in self.tables:
            key = (table.schema_name, table.name)
            if key in seen:
                raise MalformedDiscoveryError(f"Table '{table.qualified_name}' was discovered twice.")
            seen.add(key)

        for table in self.tables:
            for fk in table.foreign_keys:
                target = self.get_table(fk.ref_schema, fk.ref_table)
                if target is None:
                    raise MalformedDiscoveryError(
                        f"Foreign key '{fk.constraint}' on '{table.qualified_name}' references undiscovered table '{fk.ref_schema}.{fk.ref_table}'."
                    )
                missing = [c for c in fk.ref_columns if target.get_column(c) is None]
                if missing:
                    raise MalformedDiscoveryError(f"Foreign key '{fk.constraint}' references absent columns {missing} on '{target.qualified_name}'.")
        return self

    def get_table(self, schema: str, name: str) -> Optional[TableSchema]:
        for table in self.tables:
            if table.schema_name == schema and table.name == name:
                return table
        return None

    def get_function(self, schema: str, name: str) -> Optional[DbFunction]:
        for function in self.db_functions:
            if function.schema_name == schema and function.name == name:
                return function
        return None

    def inbound_foreign_keys(self, table: TableSchema) -> List[Tuple[TableSchema, ForeignKey]]:
        """FKs on other tables (or self-references) that point at `table`."""
        inbound = []
        for source in self.tables:
            for fk in source.foreign_keys:
                if fk.ref_schema == table.schema_name and fk.ref_table == table.name:
                    inbound.append((source, fk))
        return inbound

    def fk_degree(self, table: TableSchema) -> int:
        """Distinct FK edges touching `table`; a self-reference counts once."""
        inbound = [source for source, _ in self.inbound_foreign_keys(table) if source.qualified_name != table.qualified_name]
        return len(table.foreign_keys) + len(inbound)

    def with_limitations(self, extra: List[Limitation]) -> "DiscoverySnapshot":
        """Returns a superseding snapshot carrying additional limitations."""
        return self.model_copy(update={"limitations": [*self.limitations, *extra]})


# --- Tool Descriptors (compiler output; stable wire contract) ---

class ResourceRef(FrozenModel):
    schema_name: str = Field(alias="schema")
    table: Optional[str] = None
    function: Optional[str] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table or self.function}"


class InputParam(FrozenModel):
    type: str
    required: bool = True


class FilterSpec(FrozenModel):
    column: str
    op: FilterOp


class OrderSpec(FrozenModel):
    by: str
    ascending: bool = True
    nulls: NullsPlacement = "auto"


class Pagination(FrozenModel):
    limit: int
    offset: int = 0


class Relationship(FrozenModel):
    """A nested-select path backed by a discovered FK (or a discovered join table's two FKs)."""
    constraint: str
    from_columns: List[str]
    to_schema: str
    to_table: str
    to_columns: List[str]
    via: Optional[str] = Field(default=None, description="Qualified join table for many-to-many paths.")


class ToolDescriptor(FrozenModel):
    """One permitted, safety-constrained operation."""
    name: str
    description: str
    operation: Operation
    resource: ResourceRef
    inputs: Dict[str, InputParam] = Field(default_factory=dict)
    filters: List[FilterSpec] = Field(default_factory=list)
    select: List[str] = Field(default_factory=list)
    available_columns: List[str] = Field(default_factory=list)
    order: Optional[OrderSpec] = None
    pagination: Optional[Pagination] = None
    relationships: List[Relationship] = Field(default_factory=list)
    requires_service_role: bool = False
    caveats: List[str] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class SkippedTool(FrozenModel):
    """An omission recorded instead of a fabricated descriptor."""
    resource: str
    operation: str
    reason: str


class CompileResult(FrozenModel):
    tools: List[ToolDescriptor] = Field(default_factory=list)
    skipped: List[SkippedTool] = Field(default_factory=list)

    def tools_payload(self) -> List[Dict[str, Any]]:
        return [tool.to_wire() for tool in self.tools]
