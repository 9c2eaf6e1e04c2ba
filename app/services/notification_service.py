"""Notification Service - stores notifications and delivers them over EMAIL, PUSH and WEBHOOK"""

import asyncio
import html
import smtplib
import time
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import NotificationDeliveryError
from app.core.logging_config import get_logger
from app.core.monitoring import MetricsCollector
from app.core.store import (
    NOTIFICATION_PREFERENCES,
    NOTIFICATIONS,
    USERS,
    DocumentStore,
    QueryFilter,
)
from app.schemas.notification import (
    ChannelOutcome,
    DeliveryReport,
    Notification,
    NotificationPreferences,
    NotificationType,
    SummaryFrequency,
)
from app.schemas.scheduled_query import NotificationChannel

logger = get_logger(__name__)


SUMMARY_LIST_LIMITS = {"alerts": 10, "errors": 10, "success": 5, "other": 5}
SUMMARY_HEADINGS = {
    "alerts": "Alerts",
    "errors": "Errors",
    "success": "Successful Executions",
    "other": "Other Notifications",
}


def _render_email_html(notification: Notification) -> str:
    data = notification.data or {}
    parts = [
        f"<h2>{html.escape(notification.title)}</h2>",
        f"<p>{html.escape(notification.message)}</p>",
    ]
    if data.get("scheduled_query_id"):
        parts.append("<p><strong>Execution Details:</strong></p>")
        parts.append(f"<p>Execution ID: {html.escape(str(data.get('execution_id') or 'N/A'))}</p>")
        results = data.get("results")
        if results is not None:
            parts.append(f"<p>Results: {len(results)} rows</p>")
            if results:
                columns = list(results[0].keys())
                header = "".join(f"<th>{html.escape(str(c))}</th>" for c in columns)
                body = "".join(
                    "<tr>" + "".join(
                        f"<td>{html.escape('NULL' if row.get(c) is None else str(row.get(c)))}</td>"
                        for c in columns
                    ) + "</tr>"
                    for row in results[:5]
                )
                if len(results) > 5:
                    body += f'<tr><td colspan="{len(columns)}">... {len(results) - 5} more rows</td></tr>'
                parts.append(f"<table><thead><tr>{header}</tr></thead><tbody>{body}</tbody></table>")
        if data.get("error"):
            parts.append(f"<p>Error: {html.escape(str(data['error']))}</p>")
    parts.append(
        "<p><small>This is an automated notification from DB Master. "
        "Please do not reply to this email.</small></p>"
    )
    return "\n".join(parts)


def group_for_summary(notifications: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Split notifications into alerts, errors, success and other"""
    groups: Dict[str, List[Dict[str, Any]]] = {"alerts": [], "errors": [], "success": [], "other": []}
    for item in notifications:
        kind = item.get("type")
        if kind == NotificationType.QUERY_EXECUTION_ALERT.value:
            groups["alerts"].append(item)
        elif kind == NotificationType.QUERY_EXECUTION_ERROR.value:
            groups["errors"].append(item)
        elif kind == NotificationType.QUERY_EXECUTION_SUCCESS.value:
            groups["success"].append(item)
        else:
            groups["other"].append(item)
    return groups


def render_summary_html(groups: Dict[str, List[Dict[str, Any]]], frequency: str) -> str:
    period = "day" if frequency == SummaryFrequency.DAILY.value else "week"
    label = "Daily" if frequency == SummaryFrequency.DAILY.value else "Weekly"
    total = sum(len(items) for items in groups.values())

    parts = [
        f"<h2>DB Master: {label} Notification Summary</h2>",
        f"<p>You received {total} notifications in the past {period}.</p>",
        "<p>"
        f"Alerts: {len(groups['alerts'])} | Errors: {len(groups['errors'])} | "
        f"Successful: {len(groups['success'])} | Other: {len(groups['other'])}"
        "</p>",
    ]
    for key, items in groups.items():
        if not items:
            continue
        limit = SUMMARY_LIST_LIMITS[key]
        parts.append(f"<h3>{SUMMARY_HEADINGS[key]}</h3><ul>")
        for item in items[:limit]:
            created = item.get("created_at")
            stamp = created.isoformat() if isinstance(created, datetime) else ""
            parts.append(
                f"<li><strong>{html.escape(str(item.get('title', '')))}</strong><br>"
                f"{html.escape(str(item.get('message', '')))}<br><small>{stamp}</small></li>"
            )
        if len(items) > limit:
            parts.append(f"<li>And {len(items) - limit} more...</li>")
        parts.append("</ul>")
    return "\n".join(parts)


class NotificationService:
    """
    Delivers scheduled-query notifications.

    A send loads the owner's preferences (falling back to defaults built
    from the user record), honours the per-type opt-outs, stores the
    notification and then delivers it on every requested channel
    concurrently. ``sent_via`` lists the channels that succeeded.
    """

    def __init__(
        self,
        store: DocumentStore,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
        smtp_ssl_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP_SSL,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the service.

        Args:
            store: Document store
            smtp_factory: Plain/STARTTLS SMTP client constructor
            smtp_ssl_factory: Implicit TLS SMTP client constructor (port 465)
            http_transport: Optional httpx transport for push and webhook calls
        """
        self.store = store
        self._smtp_factory = smtp_factory
        self._smtp_ssl_factory = smtp_ssl_factory
        self._http_transport = http_transport

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
            transport=self._http_transport,
        )

    # ========================================================================
    # Preferences
    # ========================================================================

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        """Stored preferences, or defaults addressed to the user's e-mail"""
        stored = await self.store.get(NOTIFICATION_PREFERENCES, user_id)
        if stored is not None:
            return NotificationPreferences(**stored)

        user = await self.store.get(USERS, user_id)
        preferences = NotificationPreferences()
        preferences.email.address = (user or {}).get("email")
        return preferences

    async def save_preferences(self, user_id: str, preferences: NotificationPreferences) -> None:
        await self.store.put(NOTIFICATION_PREFERENCES, user_id, preferences.model_dump())

    # ========================================================================
    # Sending
    # ========================================================================

    async def send(self, notification: Notification, owner_id: str) -> DeliveryReport:
        """
        Store and deliver a notification for ``owner_id``.

        Channel failures are captured in the returned report; they are
        never raised.

        Args:
            notification: Notification to deliver (no channels means EMAIL)
            owner_id: Recipient user id

        Returns:
            DeliveryReport with one outcome per attempted channel
        """
        channels = list(notification.channels) or [NotificationChannel.EMAIL.value]
        preferences = await self.get_preferences(owner_id)

        if not preferences.allows(notification.type):
            logger.info(
                "notification_disabled_by_preferences",
                user_id=owner_id,
                notification_type=notification.type,
            )
            return DeliveryReport(skipped=True, reason="disabled by user preferences")

        now = datetime.now(timezone.utc)
        document = {
            "user_id": owner_id,
            "type": notification.type,
            "title": notification.title,
            "message": notification.message,
            "priority": notification.priority,
            "status": "UNREAD",
            "sent_via": [],
            "scheduled_query_id": notification.data.get("scheduled_query_id"),
            "execution_id": notification.data.get("execution_id"),
            "data": notification.data,
            "created_at": now,
            "updated_at": now,
        }
        notification_id = await self.store.add(NOTIFICATIONS, document)

        attempts = []
        if NotificationChannel.EMAIL.value in channels and preferences.email.enabled:
            attempts.append((
                NotificationChannel.EMAIL.value,
                self._send_email(notification, preferences.email.address, notification.recipients),
            ))
        if (
            NotificationChannel.PUSH.value in channels
            and preferences.push.enabled
            and preferences.push.device_tokens
        ):
            attempts.append((
                NotificationChannel.PUSH.value,
                self._send_push(notification, preferences.push.device_tokens),
            ))
        if NotificationChannel.WEBHOOK.value in channels and notification.webhook_config is not None:
            attempts.append((NotificationChannel.WEBHOOK.value, self._send_webhook(notification)))

        results = await asyncio.gather(*(coro for _, coro in attempts), return_exceptions=True)

        outcomes = []
        for (channel, _), result in zip(attempts, results):
            if isinstance(result, BaseException):
                logger.error(
                    "notification_channel_failed",
                    notification_id=notification_id,
                    channel=channel,
                    error=str(result),
                )
                outcomes.append(ChannelOutcome(channel=channel, success=False, error=str(result)))
                MetricsCollector.record_notification(channel, "failure")
            else:
                outcomes.append(ChannelOutcome(channel=channel, success=True))
                MetricsCollector.record_notification(channel, "success")

        sent_via = [outcome.channel for outcome in outcomes if outcome.success]
        if sent_via:
            await self.store.update(
                NOTIFICATIONS,
                notification_id,
                {"sent_via": sent_via, "updated_at": datetime.now(timezone.utc)},
            )

        logger.info(
            "notification_processed",
            notification_id=notification_id,
            user_id=owner_id,
            notification_type=notification.type,
            sent_via=sent_via,
            attempted=[channel for channel, _ in attempts],
        )
        return DeliveryReport(notification_id=notification_id, outcomes=outcomes)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def _send_email(
        self,
        notification: Notification,
        primary: Optional[str],
        additional: List[str],
    ) -> None:
        recipients = [address for address in [primary, *additional] if address]
        if not recipients:
            raise NotificationDeliveryError("No e-mail recipients", channel="EMAIL")

        message = EmailMessage()
        message["Subject"] = notification.title
        message["From"] = settings.SMTP_FROM
        message["To"] = ", ".join(recipients)
        message.set_content(notification.message)
        message.add_alternative(_render_email_html(notification), subtype="html")

        await asyncio.to_thread(self._deliver_email, message)
        logger.info("email_notification_sent", recipients=len(recipients))

    def _deliver_email(self, message: EmailMessage) -> None:
        """Blocking SMTP send, run in a worker thread"""
        if not settings.SMTP_HOST:
            raise NotificationDeliveryError("SMTP host not configured", channel="EMAIL")

        try:
            if settings.SMTP_PORT == 465:
                server = self._smtp_ssl_factory(settings.SMTP_HOST, settings.SMTP_PORT)
            else:
                server = self._smtp_factory(settings.SMTP_HOST, settings.SMTP_PORT)
                if settings.SMTP_USE_TLS:
                    server.starttls()
            try:
                if settings.SMTP_USER and settings.SMTP_PASSWORD:
                    server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
                server.send_message(message)
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationDeliveryError(f"SMTP delivery failed: {e}", channel="EMAIL") from e

    async def _send_push(self, notification: Notification, device_tokens: List[str]) -> None:
        if not settings.FCM_SERVER_KEY:
            raise NotificationDeliveryError("FCM server key not configured", channel="PUSH")

        payload = {
            "registration_ids": device_tokens,
            "notification": {"title": notification.title, "body": notification.message},
            "data": {
                "type": notification.type,
                "priority": notification.priority,
                "scheduled_query_id": notification.data.get("scheduled_query_id") or "",
                "execution_id": notification.data.get("execution_id") or "",
                "timestamp": str(int(time.time() * 1000)),
            },
        }
        async with self._http_client() as client:
            response = await client.post(
                settings.FCM_ENDPOINT,
                json=payload,
                headers={"Authorization": f"key={settings.FCM_SERVER_KEY}"},
            )
        if response.status_code >= 400:
            raise NotificationDeliveryError(
                f"FCM returned HTTP {response.status_code}", channel="PUSH"
            )

        body = response.json()
        failures = body.get("failure", 0)
        if failures:
            failed_tokens = [
                token
                for token, result in zip(device_tokens, body.get("results", []))
                if "error" in result
            ]
            logger.warning("push_notification_partial_failure", failed=failures, failed_tokens=len(failed_tokens))
        if body.get("success", 0) == 0:
            raise NotificationDeliveryError("Push delivery failed for every device", channel="PUSH")

    async def _send_webhook(self, notification: Notification) -> None:
        config = notification.webhook_config
        payload: Dict[str, Any] = {
            "type": notification.type,
            "title": notification.title,
            "message": notification.message,
            "priority": notification.priority,
            "scheduled_query_id": notification.data.get("scheduled_query_id"),
            "execution_id": notification.data.get("execution_id"),
            "timestamp": int(time.time() * 1000),
        }
        if config.include_results and notification.data:
            payload["data"] = notification.data

        async with self._http_client() as client:
            if config.method == "GET":
                params = {k: str(v) for k, v in payload.items() if v is not None and k != "data"}
                response = await client.get(config.url, params=params, headers=config.headers)
            else:
                response = await client.request(
                    config.method, config.url, json=payload, headers=config.headers
                )

        if response.status_code >= 400:
            raise NotificationDeliveryError(
                f"Webhook returned HTTP {response.status_code}",
                channel="WEBHOOK",
                details={"url": config.url},
            )
        logger.info("webhook_notification_sent", status_code=response.status_code)

    # ========================================================================
    # Summaries
    # ========================================================================

    async def send_notification_summaries(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Send the daily or weekly digest to every user that asked for one.

        Weekly digests go out on Mondays only.

        Returns:
            One entry per user a digest was attempted for
        """
        now = now or datetime.now(timezone.utc)
        results = []

        for document in await self.store.list(NOTIFICATION_PREFERENCES):
            user_id = document["id"]
            preferences = NotificationPreferences(**document)
            frequency = preferences.summary_email_frequency

            if frequency == SummaryFrequency.NEVER.value:
                continue
            if frequency == SummaryFrequency.WEEKLY.value and now.weekday() != 0:
                continue
            if not preferences.email.enabled or not preferences.email.address:
                continue

            days = 1 if frequency == SummaryFrequency.DAILY.value else 7
            notifications = await self.store.list(
                NOTIFICATIONS,
                filters=[
                    QueryFilter("user_id", "==", user_id),
                    QueryFilter("created_at", ">=", now - timedelta(days=days)),
                ],
                order_by="created_at",
                descending=True,
            )
            if not notifications:
                continue

            label = "Daily" if frequency == SummaryFrequency.DAILY.value else "Weekly"
            message = EmailMessage()
            message["Subject"] = f"DB Master: {label} Notification Summary"
            message["From"] = settings.SMTP_FROM
            message["To"] = preferences.email.address
            message.set_content(f"You received {len(notifications)} notifications.")
            message.add_alternative(
                render_summary_html(group_for_summary(notifications), frequency),
                subtype="html",
            )

            try:
                await asyncio.to_thread(self._deliver_email, message)
            except NotificationDeliveryError as e:
                logger.error("summary_email_failed", user_id=user_id, error=e.message)
                results.append({"user_id": user_id, "success": False, "error": e.message})
                continue

            logger.info("summary_email_sent", user_id=user_id, notifications=len(notifications))
            results.append({"user_id": user_id, "success": True})

        return results
