"""Operational alerting for the billing engine.

Alerts are named conditions (a forged webhook, a failed payout, a lost
audit record) raised by the code path that observed them. Repeated alerts
for the same key are suppressed for the definition's cooldown.
"""

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from academy_billing.core.config import settings

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    """Alert status."""
    FIRING = "firing"
    RESOLVED = "resolved"


class AlertName(str, Enum):
    """Alerts raised by the billing engine."""
    WEBHOOK_VERIFICATION_FAILED = "webhook_verification_failed"
    PAYOUT_FAILED = "payout_failed"
    WEBHOOK_AUDIT_LOG_FAILED = "webhook_audit_log_failed"
    REFUND_RECONCILIATION_REQUIRED = "refund_reconciliation_required"
    BILLING_RECONCILIATION_REQUIRED = "billing_reconciliation_required"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"


@dataclass
class AlertDefinition:
    """Configuration for a named alert."""
    name: str
    severity: AlertSeverity
    description: str
    cooldown_seconds: int = 300  # Minimum time between alerts per key


@dataclass
class Alert:
    """Represents a fired or resolved alert."""
    id: str
    name: str
    severity: AlertSeverity
    status: AlertStatus
    message: str
    key: str
    context: dict
    started_at: datetime
    resolved_at: Optional[datetime] = None


AlertHandler = Callable[[Alert], Union[None, Awaitable[None]]]


class AlertManager:
    """Fires named alerts, applies cooldowns and fans out to handlers."""

    def __init__(self, history_size: int = 500, max_tracked_keys: Optional[int] = None):
        self._definitions: dict[str, AlertDefinition] = {}
        self._active_alerts: dict[str, Alert] = {}
        self._alert_history: list[Alert] = []
        # alert key -> end of its cooldown, oldest first
        self._cooldown_until: dict[str, datetime] = {}
        self._suppressed_counts: dict[str, int] = defaultdict(int)
        self._alert_handlers: list[AlertHandler] = []
        self._history_size = history_size
        self._max_tracked_keys = max_tracked_keys or history_size

    def register_definition(self, definition: AlertDefinition) -> None:
        self._definitions[definition.name] = definition
        logger.info(f"Registered alert definition: {definition.name}")

    def register_handler(self, handler: AlertHandler) -> None:
        """Register an alert handler callback (sync or async)."""
        self._alert_handlers.append(handler)

    async def fire(
        self,
        name: Union[str, AlertName],
        message: str,
        key: str = "",
        now: Optional[datetime] = None,
        **context: Any,
    ) -> Optional[Alert]:
        """Fire an alert unless the same name and key is cooling down.

        Args:
            name: Registered alert name
            message: Human readable description of what happened
            key: Deduplication key within the alert name (e.g. a payout id)
            now: Override of the current time
            **context: Structured context attached to the alert

        Returns:
            The fired alert, or None if suppressed
        """
        name = name.value if isinstance(name, AlertName) else name
        definition = self._definitions.get(name)
        if definition is None:
            definition = AlertDefinition(
                name=name,
                severity=AlertSeverity.WARNING,
                description=name,
                cooldown_seconds=settings.ALERT_COOLDOWN_SECONDS,
            )
            self._definitions[name] = definition

        now = now or datetime.utcnow()
        alert_key = f"{name}:{key}"

        self._prune(now)
        cooldown_until = self._cooldown_until.get(alert_key)
        if cooldown_until and now < cooldown_until:
            self._suppressed_counts[alert_key] += 1
            logger.debug(f"Alert suppressed by cooldown: {alert_key}")
            return None

        alert = Alert(
            id=f"{alert_key}:{now.timestamp()}",
            name=name,
            severity=definition.severity,
            status=AlertStatus.FIRING,
            message=message,
            key=key,
            context=dict(context, suppressed=self._suppressed_counts.pop(alert_key, 0)),
            started_at=now,
        )

        self._track(alert_key, alert, now + timedelta(seconds=definition.cooldown_seconds))
        self._remember(alert)

        log = logger.critical if definition.severity == AlertSeverity.CRITICAL else logger.warning
        log(
            f"Alert triggered: {alert.name} - {alert.message}",
            extra={
                "alert_id": alert.id,
                "severity": alert.severity.value,
                "alert_key": key,
            },
        )

        await self._notify_handlers(alert)
        return alert

    async def resolve(self, name: Union[str, AlertName], key: str = "") -> Optional[Alert]:
        name = name.value if isinstance(name, AlertName) else name
        alert = self._active_alerts.pop(f"{name}:{key}", None)
        if alert is None:
            return None
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = datetime.utcnow()
        logger.info(f"Alert resolved: {alert.name}", extra={"alert_id": alert.id})
        await self._notify_handlers(alert)
        return alert

    def _track(self, alert_key: str, alert: Alert, cooldown_until: datetime) -> None:
        """Record the alert as active and start its cooldown.

        Both maps keep insertion order, so re-inserting moves the key to
        the newest end and the oldest keys are evicted past the cap.
        """
        self._active_alerts.pop(alert_key, None)
        self._active_alerts[alert_key] = alert
        self._cooldown_until.pop(alert_key, None)
        if cooldown_until > alert.started_at:
            self._cooldown_until[alert_key] = cooldown_until

        while len(self._active_alerts) > self._max_tracked_keys:
            del self._active_alerts[next(iter(self._active_alerts))]
        while len(self._cooldown_until) > self._max_tracked_keys:
            oldest = next(iter(self._cooldown_until))
            del self._cooldown_until[oldest]
            self._suppressed_counts.pop(oldest, None)

    def _prune(self, now: datetime) -> None:
        """Forget ended cooldowns that have no suppressed count to report."""
        expired = [
            k for k, until in self._cooldown_until.items()
            if until <= now and k not in self._suppressed_counts
        ]
        for alert_key in expired:
            del self._cooldown_until[alert_key]

    def _remember(self, alert: Alert) -> None:
        self._alert_history.append(alert)
        if len(self._alert_history) > self._history_size:
            del self._alert_history[: len(self._alert_history) - self._history_size]

    async def _notify_handlers(self, alert: Alert) -> None:
        """Notify all registered handlers of an alert.

        Handler failures are logged and never propagate to the code path
        that fired the alert.
        """
        for handler in self._alert_handlers:
            try:
                result = handler(alert)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Alert handler error: {e}", exc_info=True)

    def get_active_alerts(self) -> list[Alert]:
        return list(self._active_alerts.values())

    def get_alert_history(
        self,
        limit: int = 100,
        severity: Optional[AlertSeverity] = None,
        name: Optional[str] = None,
    ) -> list[Alert]:
        """Get alert history, newest first.

        Args:
            limit: Maximum number of alerts to return
            severity: Filter by severity
            name: Filter by alert name
        """
        alerts = self._alert_history
        if severity:
            alerts = [a for a in alerts if a.severity == severity]
        if name:
            alerts = [a for a in alerts if a.name == name]
        return sorted(alerts, key=lambda a: a.started_at, reverse=True)[:limit]

    def clear(self) -> None:
        """Reset all state (for testing)."""
        self._active_alerts.clear()
        self._alert_history.clear()
        self._cooldown_until.clear()
        self._suppressed_counts.clear()


class SlackAlertHandler:
    """Posts alerts to a Slack incoming webhook."""

    SEVERITY_EMOJI = {
        AlertSeverity.INFO: ":information_source:",
        AlertSeverity.WARNING: ":warning:",
        AlertSeverity.CRITICAL: ":rotating_light:",
    }

    def __init__(self, webhook_url: str, timeout: float = 5.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    async def __call__(self, alert: Alert) -> None:
        if alert.status != AlertStatus.FIRING:
            return
        payload = {
            "text": f"{self.SEVERITY_EMOJI[alert.severity]} [{alert.severity.value.upper()}] "
                    f"{alert.name}: {alert.message}",
            "attachments": [
                {
                    "fields": [
                        {"title": k, "value": str(v), "short": True}
                        for k, v in alert.context.items()
                    ],
                }
            ],
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.webhook_url, json=payload)
            response.raise_for_status()


# Global alert manager instance
alert_manager = AlertManager()


def setup_default_alerts() -> None:
    """Register the billing engine's alert definitions and handlers."""
    alert_manager.register_definition(AlertDefinition(
        name=AlertName.WEBHOOK_VERIFICATION_FAILED.value,
        severity=AlertSeverity.WARNING,
        description="Inbound webhook failed signature or timestamp verification",
        cooldown_seconds=60,
    ))
    alert_manager.register_definition(AlertDefinition(
        name=AlertName.PAYOUT_FAILED.value,
        severity=AlertSeverity.CRITICAL,
        description="Gateway reported a failed payout",
        cooldown_seconds=0,
    ))
    alert_manager.register_definition(AlertDefinition(
        name=AlertName.WEBHOOK_AUDIT_LOG_FAILED.value,
        severity=AlertSeverity.WARNING,
        description="Webhook event could not be written to the audit log",
        cooldown_seconds=settings.ALERT_COOLDOWN_SECONDS,
    ))
    alert_manager.register_definition(AlertDefinition(
        name=AlertName.REFUND_RECONCILIATION_REQUIRED.value,
        severity=AlertSeverity.CRITICAL,
        description="Refund succeeded at the gateway but the invoice was not updated",
        cooldown_seconds=0,
    ))
    alert_manager.register_definition(AlertDefinition(
        name=AlertName.BILLING_RECONCILIATION_REQUIRED.value,
        severity=AlertSeverity.CRITICAL,
        description="Renewal was charged at the gateway but not recorded locally",
        cooldown_seconds=0,
    ))
    alert_manager.register_definition(AlertDefinition(
        name=AlertName.SUBSCRIPTION_PAYMENT_FAILED.value,
        severity=AlertSeverity.WARNING,
        description="Recurring subscription charge failed",
        cooldown_seconds=0,
    ))

    if settings.SLACK_WEBHOOK_URL:
        alert_manager.register_handler(SlackAlertHandler(settings.SLACK_WEBHOOK_URL))

    logger.info("Default alert definitions configured")
