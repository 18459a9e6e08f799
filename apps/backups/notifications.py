"""
Backup notifications.

The pipeline only builds the payload (severity, message, timestamp, details);
delivery goes to the configured e-mail address and webhook and is
best-effort: a delivery failure is logged and never fails a run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from django.conf import settings
from django.core.mail import send_mail

import requests

logger = logging.getLogger(__name__)

INFO = "INFO"
WARNING = "WARNING"
ERROR = "ERROR"
CRITICAL = "CRITICAL"

SEVERITY_LEVELS = {
    INFO: logging.INFO,
    WARNING: logging.WARNING,
    ERROR: logging.ERROR,
    CRITICAL: logging.CRITICAL,
}


@dataclass
class Notification:
    severity: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    details: Dict = field(default_factory=dict)

    @property
    def subject(self) -> str:
        return f"[PRS Backup {self.severity}] {self.message}"[:200]

    def to_payload(self) -> dict:
        return {
            "severity": self.severity,
            "message": self.message,
            "timestamp": self.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            "details": self.details,
        }

    def to_text(self) -> str:
        lines = [
            f"Severity: {self.severity}",
            f"Time: {self.timestamp.strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            self.message,
        ]
        if self.details:
            lines.append("")
            lines.extend(f"{key}: {value}" for key, value in self.details.items())
        return "\n".join(lines)


def send_email_notification(notification: Notification, recipient: str) -> bool:
    if not recipient:
        logger.debug("No backup admin e-mail configured")
        return False

    try:
        send_mail(
            subject=notification.subject,
            message=notification.to_text(),
            from_email=getattr(settings, "DEFAULT_FROM_EMAIL", None),
            recipient_list=[recipient],
            fail_silently=False,
        )
    except Exception as e:
        logger.error(f"Failed to send backup e-mail notification to {recipient}: {e}")
        return False

    logger.info(f"E-mail notification sent to {recipient}")
    return True


def send_webhook_notification(notification: Notification, webhook_url: str) -> bool:
    """
    Send webhook notification for a backup event.

    Args:
        notification: Payload to deliver
        webhook_url: Endpoint receiving a JSON POST

    Returns:
        True if webhook sent successfully, False otherwise
    """
    if not webhook_url:
        logger.debug("No backup alert webhook URL configured")
        return False

    try:
        response = requests.post(
            webhook_url,
            json=notification.to_payload(),
            timeout=10,
            headers={"Content-Type": "application/json"},
        )
    except requests.RequestException as e:
        logger.error(f"Failed to send webhook notification: {e}")
        return False

    if response.status_code in [200, 201, 202, 204]:
        logger.info("Webhook notification sent successfully")
        return True

    logger.warning(f"Webhook notification failed: status={response.status_code}")
    return False


class Notifier:
    """Logs every notification and forwards it to the configured sinks."""

    def __init__(self, admin_email: str = "", webhook_url: str = "", notify_on_success: bool = True):
        self.admin_email = admin_email
        self.webhook_url = webhook_url
        self.notify_on_success = notify_on_success

    @classmethod
    def from_config(cls, config):
        return cls(config.admin_email, config.webhook_url, config.notify_on_success)

    def notify(self, severity: str, message: str, details: Optional[dict] = None) -> Notification:
        notification = Notification(severity=severity, message=message, details=details or {})
        logger.log(SEVERITY_LEVELS.get(severity, logging.INFO), f"[{severity}] {message}")

        if severity == INFO and not self.notify_on_success:
            return notification

        send_email_notification(notification, self.admin_email)
        send_webhook_notification(notification, self.webhook_url)
        return notification

    def info(self, message, details=None):
        return self.notify(INFO, message, details)

    def warning(self, message, details=None):
        return self.notify(WARNING, message, details)

    def error(self, message, details=None):
        return self.notify(ERROR, message, details)

    def critical(self, message, details=None):
        return self.notify(CRITICAL, message, details)
