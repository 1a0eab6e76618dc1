# Toolsmith/core_logic/tool_compiler.py
import logging
import re
from functools import cmp_to_key
from typing import Dict, Iterable, List, Optional, Set, Tuple

from config.settings import DEFAULT_PAGE_LIMIT, MAX_TOOLS
from core_logic.data_models import (
    OPERATIONS, TABLE_OPERATIONS, CompileResult, DbFunction, DiscoverySnapshot, FilterSpec,
    InputParam, OrderSpec, Pagination, Relationship, ResourceRef, SkippedTool, TableSchema,
    ToolDescriptor,
)
from core_logic.errors import UnsafeOperationRejected

compiler_logger = logging.getLogger('Toolsmith.Compiler')
compiler_logger.setLevel(logging.INFO)

# Policy commands that govern each table operation.
POLICY_COMMANDS = {
    "select": ("SELECT", "ALL"),
    "insert": ("INSERT", "ALL"),
    "update": ("UPDATE", "ALL"),
    "delete": ("DELETE", "ALL"),
}
# Policies that make a scoped delete plausible.
DELETE_SCOPE_COMMANDS = ("UPDATE", "DELETE", "ALL")

# Filter operators offered per column type family.
FILTER_OPS_BY_FAMILY = {
    "numeric": ("eq", "neq", "lt", "lte", "gt", "gte", "in", "is"),
    "temporal": ("eq", "neq", "lt", "lte", "gt", "gte", "is"),
    "text": ("eq", "neq", "like", "ilike", "in", "is"),
    "document": ("contains", "containedBy", "is"),
    "other": ("eq", "neq", "in", "is"),
}

_TYPE_FAMILY_PATTERNS = (
    ("document", r"\[\]|^_|\barray\b|\bjsonb?\b"),
    ("temporal", r"\b(date|time|timestamp|timestamptz|interval)\b"),
    ("numeric", r"\b(int|int2|int4|int8|integer|smallint|bigint|numeric|decimal|real|float\d*|double precision|serial|bigserial|money)\b"),
    ("text", r"\b(text|varchar|character varying|char|character|citext|uuid|name)\b"),
)


def type_family(declared_type: str) -> str:
    lowered = declared_type.lower()
    for family, pattern in _TYPE_FAMILY_PATTERNS:
        if re.search(pattern, lowered):
            return family
    return "other"


# --- Deterministic cap ordering ---
# Explicit total order: RLS enabled desc, FK degree desc, resource name asc, emission order asc.

def compare_ranked(a: Tuple, b: Tuple) -> int:
    a_rls, a_degree, a_name, a_seq = a[0]
    b_rls, b_degree, b_name, b_seq = b[0]
    if a_rls != b_rls:
        return -1 if a_rls else 1
    if a_degree != b_degree:
        return -1 if a_degree > b_degree else 1
    if a_name != b_name:
        return -1 if a_name < b_name else 1
    if a_seq != b_seq:
        return -1 if a_seq < b_seq else 1
    return 0


class ToolCompiler:
    """
    Compiles a DiscoverySnapshot into safety-constrained ToolDescriptors.
    Pure: no I/O, and the same snapshot and request always yield the same output.
    """
    def __init__(self, max_tools: int = MAX_TOOLS, default_limit: int = DEFAULT_PAGE_LIMIT, allow_sensitive_writes: bool = False):
        self.max_tools = max_tools
        self.default_limit = default_limit
        # Explicit risk acknowledgement; sensitive columns stay out of write inputs otherwise.
        self.allow_sensitive_writes = allow_sensitive_writes
        self._builders = {
            "select": self._build_select,
            "insert": self._build_insert,
            "update": self._build_updates,
            "delete": self._build_delete,
        }

    # --- Security annotations ---

    def _annotate(self, table: TableSchema, operation: str) -> Tuple[bool, List[str]]:
        """Service role when RLS is off; otherwise the governing policy names."""
        if not table.rls_enabled:
            return True, []
        commands = POLICY_COMMANDS[operation]
        names = [p.name for p in table.policies if p.command in commands]
        if not names:
            return False, [f"no matching {operation.upper()} policy found"]
        return False, names

    def _writable(self, table: TableSchema, operation: str, column_names: Iterable[str], skipped: List[SkippedTool]) -> List[str]:
        """Filters sensitive columns out of a write's input set unless the override is set."""
        writable = []
        for name in column_names:
            column = table.get_column(name)
            if column.sensitive and not self.allow_sensitive_writes:
                skipped.append(SkippedTool(resource=table.qualified_name, operation=operation, reason=f"sensitive column '{name}' excluded from write inputs"))
                continue
            writable.append(name)
        return writable

    def _sensitive_caveats(self, table: TableSchema, column_names: Iterable[str]) -> List[str]:
        return [
            f"writes sensitive column '{name}' (override acknowledged)"
            for name in column_names if table.get_column(name).sensitive
        ]

    def _key_filters(self, table: TableSchema) -> List[FilterSpec]:
        return [FilterSpec(column=name, op="eq") for name in table.key_columns]

    def _key_inputs(self, table: TableSchema) -> Dict[str, InputParam]:
        return {name: InputParam(type=table.get_column(name).type) for name in table.key_columns}

    def _resource(self, table: TableSchema) -> ResourceRef:
        return ResourceRef(schema=table.schema_name, table=table.name)

    def _tool_name(self, operation: str, table: TableSchema, suffix: str = "") -> str:
        base = table.name if table.schema_name == "public" else f"{table.schema_name}_{table.name}"
        return f"{operation}_{base}{'_' + suffix if suffix else ''}"

    # --- Relationship derivation (discovered FKs only) ---

    def _relationships(self, table: TableSchema, snapshot: DiscoverySnapshot) -> List[Relationship]:
        relationships = []
        for fk in table.foreign_keys:
            relationships.append(Relationship(
                constraint=fk.constraint, from_columns=list(fk.columns),
                to_schema=fk.ref_schema, to_table=fk.ref_table, to_columns=list(fk.ref_columns),
            ))

        for source, fk in snapshot.inbound_foreign_keys(table):
            if source.schema_name == table.schema_name and source.name == table.name:
                continue  # self-reference already emitted as outbound
            relationships.append(Relationship(
                constraint=fk.constraint, from_columns=list(fk.ref_columns),
                to_schema=source.schema_name, to_table=source.name, to_columns=list(fk.columns),
            ))

            # Many-to-many only through a discovered join table holding exactly two FKs.
            if len(source.foreign_keys) != 2:
                continue
            other = next(f for f in source.foreign_keys if f is not fk)
            if (other.ref_schema, other.ref_table) == (table.schema_name, table.name):
                continue
            relationships.append(Relationship(
                constraint=other.constraint, from_columns=list(other.columns),
                to_schema=other.ref_schema, to_table=other.ref_table, to_columns=list(other.ref_columns),
                via=source.qualified_name,
            ))
        return relationships

    # --- Per-operation builders ---

    def _build_select(self, table: TableSchema, snapshot: DiscoverySnapshot, skipped: List[SkippedTool]) -> List[ToolDescriptor]:
        if not table.columns:
            raise UnsafeOperationRejected(table.qualified_name, "select", "no discovered columns")
        default_columns = [c.name for c in table.columns if not c.sensitive]
        if not default_columns:
            skipped.append(SkippedTool(resource=table.qualified_name, operation="select", reason="every column is sensitive; default select list is empty"))

        filters = [
            FilterSpec(column=c.name, op=op)
            for c in table.columns if not c.sensitive
            for op in FILTER_OPS_BY_FAMILY[type_family(c.type)]
        ]
        order = OrderSpec(by=table.key_columns[0]) if table.key_columns else None
        service_role, caveats = self._annotate(table, "select")
        return [ToolDescriptor(
            name=self._tool_name("select", table),
            description=f"Read rows from {table.qualified_name} with pagination.",
            operation="select",
            resource=self._resource(table),
            filters=filters,
            select=default_columns,
            available_columns=table.column_names,
            order=order,
            pagination=Pagination(limit=self.default_limit, offset=0),
            relationships=self._relationships(table, snapshot),
            requires_service_role=service_role,
            caveats=caveats,
        )]

    def _build_insert(self, table: TableSchema, snapshot: DiscoverySnapshot, skipped: List[SkippedTool]) -> List[ToolDescriptor]:
        if not self.allow_sensitive_writes:
            blocking = [c.name for c in table.columns if c.sensitive and not c.nullable and c.default is None]
            if blocking:
                raise UnsafeOperationRejected(table.qualified_name, "insert", f"sensitive columns {blocking} are required and cannot be excluded")

        # Server-managed (defaulted) columns are never inputs.
        candidates = [c.name for c in table.columns if c.default is None]
        columns = self._writable(table, "insert", candidates, skipped)
        service_role, caveats = self._annotate(table, "insert")
        return [ToolDescriptor(
            name=self._tool_name("insert", table),
            description=f"Insert a row into {table.qualified_name}.",
            operation="insert",
            resource=self._resource(table),
            inputs={name: InputParam(type=table.get_column(name).type, required=not table.get_column(name).nullable) for name in columns},
            requires_service_role=service_role,
            caveats=caveats + self._sensitive_caveats(table, columns),
        )]

    def _build_updates(self, table: TableSchema, snapshot: DiscoverySnapshot, skipped: List[SkippedTool]) -> List[ToolDescriptor]:
        if not table.key_columns:
            raise UnsafeOperationRejected(table.qualified_name, "update", "table has no primary key")
        non_key = [c.name for c in table.columns if c.name not in table.key_columns]
        targets = self._writable(table, "update", non_key, skipped)
        if not targets:
            raise UnsafeOperationRejected(table.qualified_name, "update", "no updatable non-key columns")

        service_role, caveats = self._annotate(table, "update")
        descriptors = []
        for name in targets:
            inputs = self._key_inputs(table)
            inputs[name] = InputParam(type=table.get_column(name).type)
            descriptors.append(ToolDescriptor(
                name=self._tool_name("update", table, name),
                description=f"Set {name} on one {table.qualified_name} row identified by its primary key.",
                operation="update",
                resource=self._resource(table),
                inputs=inputs,
                filters=self._key_filters(table),
                select=[name],
                requires_service_role=service_role,
                caveats=caveats + self._sensitive_caveats(table, [name]),
            ))
        return descriptors

    def _build_delete(self, table: TableSchema, snapshot: DiscoverySnapshot, skipped: List[SkippedTool]) -> List[ToolDescriptor]:
        if not table.key_columns:
            raise UnsafeOperationRejected(table.qualified_name, "delete", "table has no primary key")
        if not table.rls_enabled or not any(p.command in DELETE_SCOPE_COMMANDS for p in table.policies):
            raise UnsafeOperationRejected(table.qualified_name, "delete", "no RLS policy scopes deletes (needs UPDATE, DELETE or ALL)")

        service_role, caveats = self._annotate(table, "delete")
        return [ToolDescriptor(
            name=self._tool_name("delete", table),
            description=f"Delete one {table.qualified_name} row by primary key.",
            operation="delete",
            resource=self._resource(table),
            inputs=self._key_inputs(table),
            filters=self._key_filters(table),
            requires_service_role=service_role,
            caveats=caveats,
        )]

    def _build_rpc(self, function: DbFunction) -> ToolDescriptor:
        unnamed = [i for i, arg in enumerate(function.args) if not arg.name]
        if unnamed:
            raise UnsafeOperationRejected(function.qualified_name, "rpc", f"arguments at positions {unnamed} have no discovered name")
        caveats = [f"requires role '{function.required_role}'"] if function.required_role else []
        prefix = "rpc" if function.schema_name == "public" else f"rpc_{function.schema_name}"
        return ToolDescriptor(
            name=f"{prefix}_{function.name}",
            description=f"Call {function.qualified_name}; returns {function.returns or 'an undiscovered type'}.",
            operation="rpc",
            resource=ResourceRef(schema=function.schema_name, function=function.name),
            inputs={arg.name: InputParam(type=arg.type) for arg in function.args},
            requires_service_role=function.required_role == "service_role",
            caveats=caveats,
        )

    # --- No-speculation verification ---

    @staticmethod
    def _has_fk(table: TableSchema, constraint: str, columns: List[str], ref_schema: str, ref_table: str, ref_columns: List[str]) -> bool:
        return any(
            fk.constraint == constraint and fk.columns == list(columns) and fk.ref_schema == ref_schema
            and fk.ref_table == ref_table and fk.ref_columns == list(ref_columns)
            for fk in table.foreign_keys
        )

    def _relationship_discovered(self, rel: Relationship, table: TableSchema, snapshot: DiscoverySnapshot) -> bool:
        if rel.via is not None:
            join_schema, _, join_name = rel.via.partition(".")
            join = snapshot.get_table(join_schema, join_name)
            if join is None:
                return False
            links_back = any((fk.ref_schema, fk.ref_table) == (table.schema_name, table.name) for fk in join.foreign_keys)
            return links_back and self._has_fk(join, rel.constraint, rel.from_columns, rel.to_schema, rel.to_table, rel.to_columns)

        # Outbound: the FK lives on this table.
        if self._has_fk(table, rel.constraint, rel.from_columns, rel.to_schema, rel.to_table, rel.to_columns):
            return True
        # Inbound: the FK lives on the other table and points back here.
        source = snapshot.get_table(rel.to_schema, rel.to_table)
        return source is not None and self._has_fk(source, rel.constraint, rel.to_columns, table.schema_name, table.name, rel.from_columns)

    def verify(self, tool: ToolDescriptor, snapshot: DiscoverySnapshot):
        """Raises UnsafeOperationRejected unless every reference in `tool` exists in `snapshot`."""
        resource = tool.resource
        label = resource.qualified_name

        if tool.operation == "rpc":
            function = snapshot.get_function(resource.schema_name, resource.function or "")
            if function is None:
                raise UnsafeOperationRejected(label, "rpc", "function not in discovery snapshot")
            if list(tool.inputs) != [arg.name for arg in function.args]:
                raise UnsafeOperationRejected(label, "rpc", "inputs do not mirror discovered arguments")
            return

        table = snapshot.get_table(resource.schema_name, resource.table or "")
        if table is None:
            raise UnsafeOperationRejected(label, tool.operation, "table not in discovery snapshot")

        referenced = set(tool.inputs) | {f.column for f in tool.filters} | set(tool.select) | set(tool.available_columns)
        if tool.order is not None:
            referenced.add(tool.order.by)
        absent = sorted(c for c in referenced if table.get_column(c) is None)
        if absent:
            raise UnsafeOperationRejected(label, tool.operation, f"references undiscovered columns {absent}")

        for rel in tool.relationships:
            if not self._relationship_discovered(rel, table, snapshot):
                raise UnsafeOperationRejected(label, tool.operation, f"relationship '{rel.constraint}' is not a discovered foreign key path")

        if tool.operation in ("insert", "update", "delete"):
            if tool.operation in ("update", "delete") and not table.key_columns:
                raise UnsafeOperationRejected(label, tool.operation, "table has no primary key")
            if not self.allow_sensitive_writes:
                exposed = sorted(c for c in tool.inputs if table.get_column(c).sensitive)
                if exposed:
                    raise UnsafeOperationRejected(label, tool.operation, f"sensitive columns {exposed} in write inputs")

        if not table.rls_enabled and not tool.requires_service_role:
            raise UnsafeOperationRejected(label, tool.operation, "RLS disabled but service role not required")

    # --- Main entry point ---

    def _normalize_categories(self, categories: Iterable[str]) -> Set[str]:
        requested = set(categories)
        unknown = requested - set(OPERATIONS)
        if unknown:
            raise ValueError(f"Unknown operation categories: {sorted(unknown)}")
        return requested

    def _selected_tables(self, snapshot: DiscoverySnapshot, tables: Optional[Iterable[str]], skipped: List[SkippedTool]) -> List[TableSchema]:
        if tables is None:
            return list(snapshot.tables)
        wanted = set(tables)
        matched = set()
        selected = []
        for table in snapshot.tables:
            hits = wanted & {table.name, table.qualified_name}
            if hits:
                matched |= hits
                selected.append(table)
        for name in sorted(wanted - matched):
            skipped.append(SkippedTool(resource=name, operation="*", reason="table not in discovery snapshot"))
        return selected

    def compile(self, snapshot: DiscoverySnapshot, categories: Iterable[str], tables: Optional[Iterable[str]] = None) -> CompileResult:
        requested = self._normalize_categories(categories)
        skipped: List[SkippedTool] = []
        ranked: List[Tuple[Tuple[bool, int, str, int], ToolDescriptor]] = []
        claimed: Dict[str, str] = {}
        seq = 0

        def accept(tool: ToolDescriptor, rank_base: Tuple[bool, int, str]):
            nonlocal seq
            try:
                self.verify(tool, snapshot)
            except UnsafeOperationRejected as e:
                compiler_logger.warning(f"Rejected descriptor '{tool.name}': {e}")
                skipped.append(SkippedTool(resource=e.resource, operation=e.operation, reason=e.reason))
                return
            # Names are joined with '_', which identifiers may contain; the first resource keeps the name.
            owner = claimed.get(tool.name)
            if owner is not None:
                compiler_logger.warning(f"Tool name '{tool.name}' for {tool.resource.qualified_name} collides with {owner}; skipped.")
                skipped.append(SkippedTool(
                    resource=tool.resource.qualified_name, operation=tool.operation,
                    reason=f"tool name '{tool.name}' already emitted for {owner}",
                ))
                return
            claimed[tool.name] = tool.resource.qualified_name
            ranked.append(((*rank_base, seq), tool))
            seq += 1

        for table in self._selected_tables(snapshot, tables, skipped):
            rank_base = (table.rls_enabled, snapshot.fk_degree(table), table.qualified_name)
            for operation in TABLE_OPERATIONS:
                if operation not in requested:
                    continue
                try:
                    descriptors = self._builders[operation](table, snapshot, skipped)
                except UnsafeOperationRejected as e:
                    compiler_logger.info(f"Skipped {operation} on {table.qualified_name}: {e.reason}")
                    skipped.append(SkippedTool(resource=e.resource, operation=e.operation, reason=e.reason))
                    continue
                for tool in descriptors:
                    accept(tool, rank_base)

        if "rpc" in requested:
            emitted_names = set()
            for function in snapshot.db_functions:
                try:
                    tool = self._build_rpc(function)
                except UnsafeOperationRejected as e:
                    skipped.append(SkippedTool(resource=e.resource, operation=e.operation, reason=e.reason))
                    continue
                if tool.name in emitted_names:
                    skipped.append(SkippedTool(resource=function.qualified_name, operation="rpc", reason="overloaded function name already emitted"))
                    continue
                emitted_names.add(tool.name)
                accept(tool, (False, 0, function.qualified_name))

        ranked.sort(key=cmp_to_key(compare_ranked))
        kept = [tool for _, tool in ranked[:self.max_tools]]
        for _, tool in ranked[self.max_tools:]:
            skipped.append(SkippedTool(resource=tool.resource.qualified_name, operation=tool.operation, reason=f"dropped by tool cap of {self.max_tools}"))
        if len(ranked) > self.max_tools:
            compiler_logger.warning(f"Tool cap reached: kept {self.max_tools} of {len(ranked)} descriptors.")

        compiler_logger.info(f"Compiled {len(kept)} tools ({len(skipped)} omissions) for categories {sorted(requested)}.")
        return CompileResult(tools=kept, skipped=skipped)


def compile_tools(snapshot: DiscoverySnapshot, categories: Iterable[str], tables: Optional[Iterable[str]] = None, **options) -> CompileResult:
    """Convenience wrapper: one-shot compilation with default limits."""
    return ToolCompiler(**options).compile(snapshot, categories, tables)
