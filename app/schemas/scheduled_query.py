"""Scheduled query, alert condition and execution record schemas"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ScheduleFrequency(str, Enum):
    ONCE = "ONCE"
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    CUSTOM = "CUSTOM"


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    PUSH = "PUSH"
    WEBHOOK = "WEBHOOK"


class AlertConditionType(str, Enum):
    ALWAYS = "ALWAYS"
    ROWS_COUNT = "ROWS_COUNT"
    NO_RESULTS = "NO_RESULTS"
    ERROR = "ERROR"
    CUSTOM_CONDITION = "CUSTOM_CONDITION"


class ComparisonOperator(str, Enum):
    EQUAL = "="
    NOT_EQUAL = "!="
    GREATER_THAN = ">"
    LESS_THAN = "<"
    GREATER_THAN_OR_EQUAL = ">="
    LESS_THAN_OR_EQUAL = "<="


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class NotificationDeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# Timing variants (tagged by frequency)
# ============================================================================

class _TimingBase(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    start_time: datetime = Field(..., description="Schedule is never due before this instant")
    end_time: Optional[datetime] = Field(None, description="Schedule is never due after this instant")
    timezone: str = Field(default="UTC", description="IANA zone used to read wall-clock fields")

    @field_validator("start_time", "end_time")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive datetimes are taken as UTC"""
        return _as_utc(v)


class OnceTiming(_TimingBase):
    frequency: Literal["ONCE"] = "ONCE"


class HourlyTiming(_TimingBase):
    frequency: Literal["HOURLY"] = "HOURLY"
    minute: int = Field(default=0, ge=0, le=59)


class DailyTiming(_TimingBase):
    frequency: Literal["DAILY"] = "DAILY"
    hour: int = Field(default=0, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)


class WeeklyTiming(_TimingBase):
    frequency: Literal["WEEKLY"] = "WEEKLY"
    days_of_week: List[Annotated[int, Field(ge=0, le=6)]] = Field(
        ..., min_length=1, description="0 = Sunday ... 6 = Saturday"
    )
    hour: int = Field(default=0, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)


class MonthlyTiming(_TimingBase):
    frequency: Literal["MONTHLY"] = "MONTHLY"
    day_of_month: int = Field(default=1, ge=1, le=31)
    hour: int = Field(default=0, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)


class CustomTiming(_TimingBase):
    frequency: Literal["CUSTOM"] = "CUSTOM"
    cron_expression: str = Field(..., min_length=1, description="5-field CRON expression")


ScheduleTiming = Annotated[
    Union[OnceTiming, HourlyTiming, DailyTiming, WeeklyTiming, MonthlyTiming, CustomTiming],
    Field(discriminator="frequency"),
]


# ============================================================================
# Alert conditions (tagged by type)
# ============================================================================

ConditionValue = Union[int, float, str]


class _ConditionBase(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)


class AlwaysCondition(_ConditionBase):
    type: Literal["ALWAYS"] = "ALWAYS"


class NoResultsCondition(_ConditionBase):
    type: Literal["NO_RESULTS"] = "NO_RESULTS"


class ErrorCondition(_ConditionBase):
    type: Literal["ERROR"] = "ERROR"


class RowsCountCondition(_ConditionBase):
    type: Literal["ROWS_COUNT"] = "ROWS_COUNT"
    operator: ComparisonOperator
    value: float


class CustomColumnCondition(_ConditionBase):
    """Triggers when any row's ``column_name`` value satisfies the comparison."""
    type: Literal["CUSTOM_CONDITION"] = "CUSTOM_CONDITION"
    column_name: str = Field(..., min_length=1)
    operator: ComparisonOperator
    value: ConditionValue


AlertCondition = Annotated[
    Union[AlwaysCondition, NoResultsCondition, ErrorCondition, RowsCountCondition, CustomColumnCondition],
    Field(discriminator="type"),
]


# ============================================================================
# Schedule definition
# ============================================================================

class QueryParameter(BaseModel):
    """Declared bind parameter"""
    name: str = Field(..., min_length=1)
    type: str = Field(default="string", description="string, number, integer, boolean, date or datetime")
    value: Any = None


class WebhookConfig(BaseModel):
    """Outgoing webhook target"""
    url: str = Field(..., description="http(s) URL")
    method: Literal["GET", "POST", "PUT"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    include_results: bool = False

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Only http and https targets are accepted"""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Webhook URL must start with http:// or https://")
        return v


class NotificationSettings(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    enabled: bool = False
    channels: List[NotificationChannel] = Field(default_factory=list)
    recipients: List[str] = Field(default_factory=list, description="Extra e-mail recipients")
    webhook_config: Optional[WebhookConfig] = None
    alert_conditions: List[AlertCondition] = Field(default_factory=list)


class ScheduledQuery(BaseModel):
    """A stored schedule definition"""

    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    connection_id: str = Field(..., min_length=1)
    sql: str = Field(..., min_length=1)
    parameters: List[QueryParameter] = Field(default_factory=list)
    schedule: ScheduleTiming
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    max_history_retention: int = Field(default=30, ge=1, description="Days of execution history to keep")
    active: bool = True
    created_by: str = Field(..., min_length=1)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_execution_at: Optional[datetime] = None
    last_execution_status: Optional[Literal["SUCCESS", "ERROR"]] = None
    template_id: Optional[str] = None

    @field_validator("created_at", "updated_at", "last_execution_at")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @property
    def frequency(self) -> str:
        return self.schedule.frequency

    def to_document(self) -> Dict[str, Any]:
        """Store representation; ``frequency`` is duplicated at top level for filtering."""
        document = self.model_dump(exclude={"id"})
        document["frequency"] = self.frequency
        return document


class ExecutionRecord(BaseModel):
    """One firing of a schedule"""

    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    id: Optional[str] = None
    scheduled_query_id: str
    connection_id: str
    execution_time: datetime
    completion_time: Optional[datetime] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    sql: str
    parameters: List[QueryParameter] = Field(default_factory=list)
    results: Optional[List[Dict[str, Any]]] = None
    result_count: Optional[int] = None
    results_truncated: bool = False
    error: Optional[str] = None
    notification_sent: bool = False
    notification_status: Optional[NotificationDeliveryStatus] = None
    alert_triggered: bool = False
    alert_reason: Optional[str] = None
    execution_time_ms: Optional[int] = None
    created_at: Optional[datetime] = None

    @field_validator("execution_time", "completion_time", "created_at")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


# ============================================================================
# API request / response models
# ============================================================================

class ScheduledQueryCreateRequest(BaseModel):
    """Request schema for creating a scheduled query"""
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    connection_id: str = Field(..., min_length=1)
    sql: str = Field(..., min_length=1)
    parameters: List[QueryParameter] = Field(default_factory=list)
    schedule: ScheduleTiming
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    max_history_retention: int = Field(default=30, ge=1)
    active: bool = True
    template_id: Optional[str] = None


class ScheduledQueryUpdateRequest(BaseModel):
    """Request schema for updating a scheduled query; omitted fields are kept"""
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    connection_id: Optional[str] = Field(None, min_length=1)
    sql: Optional[str] = Field(None, min_length=1)
    parameters: Optional[List[QueryParameter]] = None
    schedule: Optional[ScheduleTiming] = None
    notifications: Optional[NotificationSettings] = None
    max_history_retention: Optional[int] = Field(None, ge=1)
    active: Optional[bool] = None


class ScheduledQueryListResponse(BaseModel):
    scheduled_queries: List[ScheduledQuery]
    total: int


class ExecutionListResponse(BaseModel):
    executions: List[ExecutionRecord]
    total: int


class ExecutionSummary(BaseModel):
    """Outcome of one firing, as reported by the executor"""
    scheduled_query_id: str
    execution_id: Optional[str] = None
    status: str
    alert_triggered: bool = False
    notification_status: Optional[str] = None
    error: Optional[str] = None
