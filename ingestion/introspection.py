# Toolsmith/ingestion/introspection.py
import json
import logging
from pathlib import Path
from typing import Callable, Dict, List, Sequence, Tuple

from sqlalchemy import bindparam, create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from config.settings import DISCOVERY_DB_URI, DISCOVERY_LIST_LIMIT, DISCOVERY_SCHEMAS
from core_logic.data_models import DiscoverySnapshot, Limitation
from ingestion.sensitivity import is_sensitive_column
from ingestion.snapshot_loader import load_snapshot

ingestion_logger = logging.getLogger('Toolsmith.Introspection')
ingestion_logger.setLevel(logging.INFO)

RLS_FLAGS_SQL = text("""
select n.nspname as schema, c.relname as name, c.relrowsecurity as rls_enabled
from pg_class c join pg_namespace n on n.oid = c.relnamespace
where c.relkind in ('r', 'p') and n.nspname in :schemas
""").bindparams(bindparam("schemas", expanding=True))

POLICIES_SQL = text("""
select schemaname as schema, tablename as name, policyname, cmd, qual, with_check
from pg_policies where schemaname in :schemas
order by schemaname, tablename, policyname
""").bindparams(bindparam("schemas", expanding=True))

FUNCTIONS_SQL = text("""
select n.nspname as schema, p.proname as name,
       p.proargnames as arg_names, p.proargmodes as arg_modes,
       array(select format_type(t, null) from unnest(p.proargtypes::oid[]) as t) as arg_types,
       pg_get_function_result(p.oid) as returns,
       case p.provolatile when 'i' then 'immutable' when 's' then 'stable' when 'v' then 'volatile' end as volatility
from pg_proc p join pg_namespace n on n.oid = p.pronamespace
where n.nspname in :schemas and p.prokind = 'f'
order by n.nspname, p.proname
""").bindparams(bindparam("schemas", expanding=True))

EXTENSIONS_SQL = text("select extname as name, extversion as version from pg_extension order by extname")

# IN, INOUT and VARIADIC arguments are callable inputs; OUT and TABLE are not.
INPUT_ARG_MODES = {"i", "b", "v"}


class PostgresDiscoveryProvider:
    """
    Read-only discovery of tables, relationships, RLS, functions and extensions.
    Each section is fetched independently; a failing section becomes a limitation.
    """
    def __init__(self, db_uri: str = DISCOVERY_DB_URI, schemas: Sequence[str] = DISCOVERY_SCHEMAS, list_limit: int = DISCOVERY_LIST_LIMIT):
        self.engine = create_engine(db_uri)
        self.schemas = list(schemas)
        self.list_limit = list_limit

    def _guarded(self, section: str, fetch: Callable, limitations: List[Limitation], default):
        try:
            return fetch()
        except SQLAlchemyError as e:
            error = str(getattr(e, "orig", None) or e)
            ingestion_logger.warning(f"Discovery section '{section}' failed: {error}")
            limitations.append(Limitation(tool=section, error=error))
            return default

    def _truncate(self, section: str, items: List, limitations: List[Limitation]) -> List:
        if len(items) > self.list_limit:
            limitations.append(Limitation(tool=section, error=f"truncated after {self.list_limit} of {len(items)} items"))
            return items[:self.list_limit]
        return items

    def _fk_entry(self, table_name: str, schema: str, fk: Dict) -> Dict:
        columns = fk["constrained_columns"]
        return {
            # Postgres' default naming convention when the dialect reports no name.
            "constraint": fk.get("name") or f"{table_name}_{'_'.join(columns)}_fkey",
            "columns": columns,
            "ref_schema": fk.get("referred_schema") or schema,
            "ref_table": fk["referred_table"],
            "ref_columns": fk["referred_columns"],
        }

    def _discover_tables(self) -> List[Dict]:
        inspector = inspect(self.engine)
        tables = []
        for schema in self.schemas:
            table_names = inspector.get_table_names(schema=schema)
            ingestion_logger.info(f"Found {len(table_names)} tables in schema '{schema}'.")
            for table_name in table_names:
                columns = [
                    {
                        "name": col["name"],
                        "type": str(col["type"]),
                        "nullable": bool(col.get("nullable", True)),
                        "default": None if col.get("default") is None else str(col["default"]),
                        "sensitive": is_sensitive_column(col["name"], col.get("comment")),
                    }
                    for col in inspector.get_columns(table_name, schema=schema)
                ]
                pk = inspector.get_pk_constraint(table_name, schema=schema).get("constrained_columns") or None
                unique = [
                    {"name": ix["name"], "columns": ix["column_names"]}
                    for ix in inspector.get_indexes(table_name, schema=schema)
                    if ix.get("unique") and ix.get("name")
                ]
                tables.append({
                    "schema": schema,
                    "name": table_name,
                    "columns": columns,
                    "primary_key": pk,
                    "foreign_keys": [self._fk_entry(table_name, schema, fk) for fk in inspector.get_foreign_keys(table_name, schema=schema)],
                    "unique_indexes": unique,
                    "rls_enabled": False,
                    "policies": [],
                })
        return tables

    def _discover_rls_flags(self) -> Dict[Tuple[str, str], bool]:
        with self.engine.connect() as connection:
            rows = connection.execute(RLS_FLAGS_SQL, {"schemas": self.schemas}).mappings().all()
        return {(r["schema"], r["name"]): bool(r["rls_enabled"]) for r in rows}

    def _discover_policies(self) -> Dict[Tuple[str, str], List[Dict]]:
        with self.engine.connect() as connection:
            rows = connection.execute(POLICIES_SQL, {"schemas": self.schemas}).mappings().all()
        policies: Dict[Tuple[str, str], List[Dict]] = {}
        for r in rows:
            policies.setdefault((r["schema"], r["name"]), []).append(
                {"name": r["policyname"], "command": r["cmd"], "using": r["qual"], "with_check": r["with_check"]}
            )
        return policies

    def _discover_functions(self) -> List[Dict]:
        with self.engine.connect() as connection:
            rows = connection.execute(FUNCTIONS_SQL, {"schemas": self.schemas}).mappings().all()
        functions = []
        for r in rows:
            names = list(r["arg_names"] or [])
            modes = list(r["arg_modes"] or [])
            if modes:
                names = [n for n, m in zip(names, modes) if m in INPUT_ARG_MODES]
            types = list(r["arg_types"] or [])
            # Unnamed arguments stay unnamed; the compiler refuses them rather than inventing names.
            args = [{"name": names[i] if i < len(names) else "", "type": t} for i, t in enumerate(types)]
            functions.append({
                "schema": r["schema"], "name": r["name"], "args": args,
                "returns": r["returns"], "volatility": r["volatility"],
            })
        return functions

    def _discover_extensions(self) -> List[Dict]:
        with self.engine.connect() as connection:
            rows = connection.execute(EXTENSIONS_SQL).mappings().all()
        return [{"name": r["name"], "version": r["version"]} for r in rows]

    def discover(self, project_ref: str) -> DiscoverySnapshot:
        """Introspects the configured schemas and returns an immutable snapshot."""
        ingestion_logger.info(f"Starting discovery for project '{project_ref}' (schemas: {self.schemas}).")
        limitations: List[Limitation] = []

        tables = self._truncate("tables", self._guarded("tables", self._discover_tables, limitations, []), limitations)
        rls_flags = self._guarded("rls", self._discover_rls_flags, limitations, {})
        policies = self._guarded("policies", self._discover_policies, limitations, {})
        for table in tables:
            key = (table["schema"], table["name"])
            table["rls_enabled"] = rls_flags.get(key, False)
            table["policies"] = policies.get(key, [])

        functions = self._truncate("db_functions", self._guarded("db_functions", self._discover_functions, limitations, []), limitations)
        extensions = self._guarded("extensions", self._discover_extensions, limitations, [])
        limitations.append(Limitation(tool="edge_functions", error="Edge functions are not discoverable through a database connection."))

        payload = {
            "edge_functions": [],
            "db_functions": functions,
            "tables": tables,
            "extensions": extensions,
        }
        return load_snapshot(payload, limitations)


class JsonDiscoveryProvider:
    """
    Loads discovery JSON captured by a read-only MCP server.
    `path` is either one file or a directory holding `<project_ref>.json` files.
    """
    def __init__(self, path: str):
        self.path = Path(path)

    def discover(self, project_ref: str) -> DiscoverySnapshot:
        source = self.path / f"{project_ref}.json" if self.path.is_dir() else self.path
        ingestion_logger.info(f"Loading discovery for project '{project_ref}' from {source}.")
        with source.open(encoding="utf-8") as handle:
            payload = json.load(handle)
        return load_snapshot(payload)
