"""Schema snapshot and schema diff models"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class ColumnSchema(BaseModel):
    name: str
    data_type: str
    nullable: bool = True
    default: Optional[Any] = None
    comment: Optional[str] = ""
    extra: Optional[str] = ""
    key: Optional[str] = ""


class IndexSchema(BaseModel):
    name: str
    columns: List[str] = Field(default_factory=list, description="Columns in SEQ_IN_INDEX order")
    unique: bool = False
    type: Optional[str] = None


class ForeignKeySchema(BaseModel):
    name: str
    column: str
    reference_table: str
    reference_column: str


class TableSchema(BaseModel):
    name: str
    type: Optional[str] = "BASE TABLE"
    comment: Optional[str] = ""
    columns: List[ColumnSchema] = Field(default_factory=list)
    primary_key: List[str] = Field(default_factory=list)
    foreign_keys: List[ForeignKeySchema] = Field(default_factory=list)
    indexes: List[IndexSchema] = Field(default_factory=list)


# Ordered table name -> table
SchemaSnapshot = Dict[str, TableSchema]


class SchemaPage(BaseModel):
    """One page of a snapshot"""
    tables: Dict[str, TableSchema]
    page: int
    page_size: int
    total_pages: int
    total_tables: int
    from_cache: bool = False
    updated_at: Optional[datetime] = None
    version_id: Optional[str] = None


class CachedSchema(BaseModel):
    """Current snapshot for an (owner, connection) pair"""
    tables: Dict[str, TableSchema] = Field(default_factory=dict)
    updated_at: datetime
    version_id: str


class SchemaVersionInfo(BaseModel):
    version_id: str
    created_at: datetime


# ============================================================================
# Diff
# ============================================================================

class ColumnChange(BaseModel):
    old: ColumnSchema
    new: ColumnSchema
    changes: Dict[str, bool]


class IndexChange(BaseModel):
    old: IndexSchema
    new: IndexSchema
    changes: Dict[str, bool]


class ForeignKeyChange(BaseModel):
    old: ForeignKeySchema
    new: ForeignKeySchema
    changes: Dict[str, bool]


class TableDiff(BaseModel):
    added_columns: List[str] = Field(default_factory=list)
    removed_columns: List[str] = Field(default_factory=list)
    modified_columns: Dict[str, ColumnChange] = Field(default_factory=dict)
    added_indexes: List[str] = Field(default_factory=list)
    removed_indexes: List[str] = Field(default_factory=list)
    modified_indexes: Dict[str, IndexChange] = Field(default_factory=dict)
    added_foreign_keys: List[str] = Field(default_factory=list)
    removed_foreign_keys: List[str] = Field(default_factory=list)
    modified_foreign_keys: Dict[str, ForeignKeyChange] = Field(default_factory=dict)
    comment_changed: bool = False
    old_comment: Optional[str] = None
    new_comment: Optional[str] = None

    def is_empty(self) -> bool:
        return not any([
            self.added_columns, self.removed_columns, self.modified_columns,
            self.added_indexes, self.removed_indexes, self.modified_indexes,
            self.added_foreign_keys, self.removed_foreign_keys, self.modified_foreign_keys,
            self.comment_changed,
        ])


class SchemaDiff(BaseModel):
    added_tables: List[str] = Field(default_factory=list)
    removed_tables: List[str] = Field(default_factory=list)
    modified_tables: Dict[str, TableDiff] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.added_tables or self.removed_tables or self.modified_tables)


class SchemaChangesResponse(BaseModel):
    old_version_id: str
    new_version_id: str
    changes: SchemaDiff
