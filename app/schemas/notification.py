"""Notification schemas"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.scheduled_query import NotificationChannel, WebhookConfig


class NotificationType(str, Enum):
    QUERY_EXECUTION_SUCCESS = "QUERY_EXECUTION_SUCCESS"
    QUERY_EXECUTION_ALERT = "QUERY_EXECUTION_ALERT"
    QUERY_EXECUTION_ERROR = "QUERY_EXECUTION_ERROR"


class NotificationPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class SummaryFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    NEVER = "NEVER"


class Notification(BaseModel):
    """Outgoing notification as built by the executor"""

    model_config = ConfigDict(use_enum_values=True)

    type: str
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.MEDIUM
    channels: List[NotificationChannel] = Field(default_factory=list)
    recipients: List[str] = Field(default_factory=list)
    webhook_config: Optional[WebhookConfig] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class EmailPreferences(BaseModel):
    enabled: bool = True
    address: Optional[str] = None


class PushPreferences(BaseModel):
    enabled: bool = True
    device_tokens: List[str] = Field(default_factory=list)


class NotificationPreferences(BaseModel):
    """Per-user delivery preferences"""

    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    email: EmailPreferences = Field(default_factory=EmailPreferences)
    push: PushPreferences = Field(default_factory=PushPreferences)
    schedule_notifications: bool = True
    alert_notifications: bool = True
    error_notifications: bool = True
    summary_email_frequency: SummaryFrequency = SummaryFrequency.DAILY

    def allows(self, notification_type: str) -> bool:
        """Whether the user accepts this class of notification"""
        if notification_type == NotificationType.QUERY_EXECUTION_SUCCESS.value:
            return self.schedule_notifications
        if notification_type == NotificationType.QUERY_EXECUTION_ALERT.value:
            return self.alert_notifications
        if notification_type == NotificationType.QUERY_EXECUTION_ERROR.value:
            return self.error_notifications
        return True


class ChannelOutcome(BaseModel):
    channel: str
    success: bool
    error: Optional[str] = None


class DeliveryReport(BaseModel):
    """Result of one send: stored notification id plus per-channel outcomes"""
    notification_id: Optional[str] = None
    skipped: bool = False
    reason: Optional[str] = None
    outcomes: List[ChannelOutcome] = Field(default_factory=list)

    @property
    def any_sent(self) -> bool:
        return any(outcome.success for outcome in self.outcomes)
