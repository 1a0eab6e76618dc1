# Toolsmith/ingestion/snapshot_loader.py
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from core_logic.data_models import (
    DbFunction, DiscoverySnapshot, EdgeFunction, Extension, Limitation, TableSchema,
)
from core_logic.errors import MalformedDiscoveryError

loader_logger = logging.getLogger('Toolsmith.SnapshotLoader')
loader_logger.setLevel(logging.INFO)

VALIDATION_TOOL = "snapshot_validation"


class SnapshotLoader:
    """
    Turns raw discovery JSON into a strict DiscoverySnapshot.
    Anything the strict model would reject is dropped and recorded as a limitation;
    nothing missing is ever filled in.
    """
    def __init__(self):
        self.limitations: List[Limitation] = []

    def _note(self, error: str):
        loader_logger.warning(f"Discovery repair: {error}")
        self.limitations.append(Limitation(tool=VALIDATION_TOOL, error=error))

    def _clean_columns(self, table_label: str, raw_columns: List[Dict]) -> List[Dict]:
        columns, seen = [], set()
        for raw in raw_columns:
            name = raw.get("name")
            if not name or name in seen:
                self._note(f"{table_label}: dropped duplicate or unnamed column {name!r}.")
                continue
            seen.add(name)
            column = dict(raw)
            if column.get("default") is not None and not isinstance(column["default"], str):
                column["default"] = str(column["default"])
            columns.append(column)
        return columns

    def _clean_table(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        table = dict(raw)
        schema = table.get("schema") or table.get("schema_name") or "public"
        table["schema"] = schema
        table.pop("schema_name", None)
        label = f"{schema}.{table.get('name')}"

        table["columns"] = self._clean_columns(label, table.get("columns") or [])
        known = {c["name"] for c in table["columns"]}

        flagged = table.get("sensitive_columns") or []
        unknown = [c for c in flagged if c not in known]
        if unknown:
            self._note(f"{label}: ignored sensitive flags on absent columns {unknown}.")
        table["sensitive_columns"] = [c for c in flagged if c in known]

        pk = table.get("primary_key") or None
        if pk and any(c not in known for c in pk):
            self._note(f"{label}: dropped primary key {pk} referencing absent columns.")
            pk = None
        table["primary_key"] = pk

        foreign_keys = []
        for fk in table.get("foreign_keys") or []:
            fk = dict(fk)
            ref_table = fk.get("ref_table") or ""
            if not fk.get("ref_schema"):
                # Discovery may qualify the referenced table inline ("schema.table").
                if "." in ref_table:
                    fk["ref_schema"], fk["ref_table"] = ref_table.split(".", 1)
                else:
                    fk["ref_schema"] = schema
            local = fk.get("columns") or []
            if not local or any(c not in known for c in local) or len(local) != len(fk.get("ref_columns") or []):
                self._note(f"{label}: dropped foreign key {fk.get('constraint')!r} with inconsistent columns.")
                continue
            foreign_keys.append(fk)
        table["foreign_keys"] = foreign_keys

        indexes = []
        for index in table.get("unique_indexes") or []:
            if any(c not in known for c in index.get("columns") or []):
                self._note(f"{label}: dropped unique index {index.get('name')!r} referencing absent columns.")
                continue
            indexes.append(index)
        table["unique_indexes"] = indexes
        return table

    def _build_tables(self, raw_tables: List[Dict]) -> List[TableSchema]:
        tables: List[TableSchema] = []
        seen: Set[Tuple[str, str]] = set()
        for raw in raw_tables:
            cleaned = self._clean_table(raw)
            key = (cleaned["schema"], cleaned.get("name"))
            if key in seen:
                self._note(f"{key[0]}.{key[1]}: dropped duplicate table entry.")
                continue
            try:
                table = TableSchema.model_validate(cleaned)
            except (ValidationError, MalformedDiscoveryError) as e:
                self._note(f"{key[0]}.{key[1]}: table skipped, {e}")
                continue
            seen.add(key)
            tables.append(table)
        return self._drop_dangling_relationships(tables)

    def _drop_dangling_relationships(self, tables: List[TableSchema]) -> List[TableSchema]:
        """FKs whose target is not in this snapshot are dropped, never guessed."""
        by_key = {(t.schema_name, t.name): t for t in tables}
        result = []
        for table in tables:
            kept = []
            for fk in table.foreign_keys:
                target = by_key.get((fk.ref_schema, fk.ref_table))
                if target is None or any(target.get_column(c) is None for c in fk.ref_columns):
                    self._note(
                        f"{table.qualified_name}: relationship {fk.constraint!r} to "
                        f"{fk.ref_schema}.{fk.ref_table} dropped, target not discovered."
                    )
                    continue
                kept.append(fk)
            if len(kept) != len(table.foreign_keys):
                table = table.model_copy(update={"foreign_keys": kept})
            result.append(table)
        return result

    def _build_entries(self, model, raw_entries: List[Dict], section: str) -> List:
        entries = []
        for raw in raw_entries:
            try:
                entries.append(model.model_validate(raw))
            except (ValidationError, MalformedDiscoveryError) as e:
                self._note(f"{section}: entry {raw.get('name') if isinstance(raw, dict) else raw!r} skipped, {e}")
        return entries

    def load(self, payload: Dict[str, Any]) -> DiscoverySnapshot:
        if "discovery" in payload and isinstance(payload["discovery"], dict):
            payload = payload["discovery"]

        existing = self._build_entries(Limitation, payload.get("limitations") or [], "limitations")
        tables = self._build_tables(payload.get("tables") or [])
        snapshot = DiscoverySnapshot(
            edge_functions=self._build_entries(EdgeFunction, payload.get("edge_functions") or [], "edge_functions"),
            db_functions=self._build_entries(DbFunction, payload.get("db_functions") or [], "db_functions"),
            tables=tables,
            extensions=self._build_entries(Extension, payload.get("extensions") or [], "extensions"),
            limitations=existing + self.limitations,
        )
        loader_logger.info(
            f"Snapshot loaded: {len(snapshot.tables)} tables, {len(snapshot.db_functions)} functions, "
            f"{len(snapshot.limitations)} limitations."
        )
        return snapshot


def load_snapshot(payload: Dict[str, Any], limitations: Optional[List[Limitation]] = None) -> DiscoverySnapshot:
    """Builds a snapshot from discovery JSON, recording every repair as a limitation."""
    loader = SnapshotLoader()
    if limitations:
        loader.limitations.extend(limitations)
    return loader.load(payload)
