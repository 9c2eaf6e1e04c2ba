"""Table data browsing and row editing schemas"""

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field


FilterOperator = Literal["equals", "contains", "startswith", "endswith", "gt", "gte", "lt", "lte"]


class TableFilter(BaseModel):
    column: str = Field(..., min_length=1)
    operator: FilterOperator
    value: Any = None


class TableDataQuery(BaseModel):
    """Page of rows request"""
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=1000)
    sort_column: Optional[str] = None
    sort_direction: Literal["asc", "desc"] = "asc"
    filters: List[TableFilter] = Field(default_factory=list)


class TableDataPage(BaseModel):
    rows: List[Dict[str, Any]]
    page: int
    page_size: int
    total: int
    total_pages: int


class RowUpdateRequest(BaseModel):
    primary_key_column: str = Field(..., min_length=1)
    primary_key_value: Any
    updated_data: Dict[str, Any] = Field(..., min_length=1)


class RowInsertRequest(BaseModel):
    row_data: Dict[str, Any] = Field(..., min_length=1)


class RowDeleteRequest(BaseModel):
    primary_key_column: str = Field(..., min_length=1)
    primary_key_value: Any


class RowMutationResult(BaseModel):
    success: bool
    message: str
    affected_rows: int = 0
    insert_id: Optional[int] = None
