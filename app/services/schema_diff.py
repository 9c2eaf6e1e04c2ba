"""
Schema differ.

Pure functions comparing two snapshots. Every level (tables, columns,
indexes, foreign keys) is matched by name, so a renamed table shows up as
one removal plus one addition. Name lists in the result are sorted, which
makes the output independent of the input ordering.
"""

from typing import Callable, Dict, List, Sequence, Tuple, TypeVar

from pydantic import BaseModel

from app.schemas.schema_snapshot import (
    ColumnChange,
    ForeignKeyChange,
    IndexChange,
    SchemaDiff,
    SchemaSnapshot,
    TableDiff,
    TableSchema,
)


M = TypeVar("M", bound=BaseModel)

COLUMN_FIELDS = ("data_type", "nullable", "default", "comment", "extra")
INDEX_FIELDS = ("unique", "type", "columns")
FOREIGN_KEY_FIELDS = ("column", "reference_table", "reference_column")


def _by_name(items: Sequence[M]) -> Dict[str, M]:
    return {item.name: item for item in items}


def _field_changes(old: BaseModel, new: BaseModel, fields: Tuple[str, ...]) -> Dict[str, bool]:
    return {name: getattr(old, name) != getattr(new, name) for name in fields}


def _diff_members(
    old_items: Sequence[M],
    new_items: Sequence[M],
    fields: Tuple[str, ...],
    change_type: Callable[..., BaseModel],
) -> Tuple[List[str], List[str], Dict[str, BaseModel]]:
    old_map, new_map = _by_name(old_items), _by_name(new_items)

    added = sorted(set(new_map) - set(old_map))
    removed = sorted(set(old_map) - set(new_map))
    modified = {}
    for name in sorted(set(old_map) & set(new_map)):
        changes = _field_changes(old_map[name], new_map[name], fields)
        if any(changes.values()):
            modified[name] = change_type(old=old_map[name], new=new_map[name], changes=changes)
    return added, removed, modified


def diff_tables(old: TableSchema, new: TableSchema) -> TableDiff:
    """Compare two versions of the same table."""
    added_cols, removed_cols, modified_cols = _diff_members(
        old.columns, new.columns, COLUMN_FIELDS, ColumnChange
    )
    added_idx, removed_idx, modified_idx = _diff_members(
        old.indexes, new.indexes, INDEX_FIELDS, IndexChange
    )
    added_fks, removed_fks, modified_fks = _diff_members(
        old.foreign_keys, new.foreign_keys, FOREIGN_KEY_FIELDS, ForeignKeyChange
    )

    table_diff = TableDiff(
        added_columns=added_cols,
        removed_columns=removed_cols,
        modified_columns=modified_cols,
        added_indexes=added_idx,
        removed_indexes=removed_idx,
        modified_indexes=modified_idx,
        added_foreign_keys=added_fks,
        removed_foreign_keys=removed_fks,
        modified_foreign_keys=modified_fks,
    )
    if (old.comment or "") != (new.comment or ""):
        table_diff.comment_changed = True
        table_diff.old_comment = old.comment
        table_diff.new_comment = new.comment
    return table_diff


def diff_snapshots(old: SchemaSnapshot, new: SchemaSnapshot) -> SchemaDiff:
    """
    Compare two snapshots.

    Tables present in both snapshots are listed under ``modified_tables``
    only when at least one of their members changed.

    Args:
        old: Previous snapshot (table name -> table)
        new: Current snapshot

    Returns:
        SchemaDiff; ``diff_snapshots(a, a).is_empty()`` is always True
    """
    modified = {}
    for name in sorted(set(old) & set(new)):
        table_diff = diff_tables(old[name], new[name])
        if not table_diff.is_empty():
            modified[name] = table_diff

    return SchemaDiff(
        added_tables=sorted(set(new) - set(old)),
        removed_tables=sorted(set(old) - set(new)),
        modified_tables=modified,
    )


def paginate_snapshot(snapshot: SchemaSnapshot, page: int, page_size: int) -> Tuple[SchemaSnapshot, int, int]:
    """
    Slice a snapshot by table position.

    Returns:
        (page of tables, total pages, total tables)
    """
    names = list(snapshot)
    total_tables = len(names)
    total_pages = (total_tables + page_size - 1) // page_size
    start = (page - 1) * page_size
    page_names = names[start:start + page_size]
    return {name: snapshot[name] for name in page_names}, total_pages, total_tables
