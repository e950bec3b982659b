import os
import smtplib
import time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Dict, List, Optional

import requests

from .logger import logger
from .store import BanRecord
from .timecodec import encode


class NotificationManager:
    """Sends ban/unban alerts to Slack and email"""

    def __init__(self, rate_limit_seconds: float = 300, clock: Callable[[], float] = time.time):
        self.last_notification_time: Dict[str, float] = {}
        self.rate_limit_seconds = rate_limit_seconds  # between notifications with the same key
        self._clock = clock

    def _should_send_notification(self, notification_type: str) -> bool:
        """Check if notification should be sent based on rate limiting"""
        now = self._clock()
        last_time = self.last_notification_time.get(notification_type)

        if last_time is not None and now - last_time < self.rate_limit_seconds:
            return False

        self.last_notification_time[notification_type] = now
        return True

    def _get_config_value(self, key: str, default=None):
        return os.environ.get(f"WINGUARD_{key.upper()}", default)

    def _recipients(self) -> List[str]:
        raw = self._get_config_value("notification_emails", "")
        return [email.strip() for email in raw.split(",") if email.strip()]

    @property
    def enabled(self) -> bool:
        return bool(self._get_config_value("slack_webhook") or self._recipients())

    def send_email(self, subject: str, body: str, to_emails: Optional[List[str]] = None) -> bool:
        """Send email notification"""
        to_emails = to_emails or self._recipients()
        if not to_emails:
            return False

        smtp_server = self._get_config_value("smtp_server", "localhost")
        smtp_port = int(self._get_config_value("smtp_port", "587"))
        smtp_user = self._get_config_value("smtp_user")
        smtp_password = self._get_config_value("smtp_password")
        from_email = self._get_config_value("from_email", "winguard@localhost")

        msg = MIMEMultipart()
        msg['From'] = from_email
        msg['To'] = ", ".join(to_emails)
        msg['Subject'] = f"[WinGuard] {subject}"
        msg.attach(MIMEText(body, 'plain', 'utf-8'))

        try:
            with smtplib.SMTP(smtp_server, smtp_port, timeout=10) as server:
                if smtp_user and smtp_password:
                    server.starttls()
                    server.login(smtp_user, smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email notification: {e}")
            return False

        logger.info(f"Email notification sent to {len(to_emails)} recipients")
        return True

    def send_slack(self, message: str, webhook_url: Optional[str] = None) -> bool:
        """Send Slack notification"""
        webhook_url = webhook_url or self._get_config_value("slack_webhook")
        if not webhook_url:
            return False

        payload = {
            "text": message,
            "username": "WinGuard",
            "icon_emoji": ":shield:",
        }
        channel = self._get_config_value("slack_channel")
        if channel:
            payload["channel"] = channel

        try:
            response = requests.post(webhook_url, json=payload, timeout=10)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to send Slack notification: {e}")
            return False

        logger.info("Slack notification sent successfully")
        return True

    def notify_banned(self, record: BanRecord, attempts: int) -> None:
        if not self.enabled or not self._should_send_notification(f"ban_{record.address}"):
            return

        subject = f"Banned {record.address}"
        body = (
            f"Source address: {record.address}\n"
            f"Failed attempts: {attempts}\n"
            f"Reason: {record.reason}\n"
            f"Banned at (UTC): {encode(record.created_at)}\n"
            f"Expires at (UTC): {encode(record.expires_at)}\n"
        )
        slack_message = (
            f":no_entry: *Address banned*\n"
            f"• *IP:* {record.address}\n"
            f"• *Attempts:* {attempts}\n"
            f"• *Until:* {encode(record.expires_at)} UTC"
        )
        self.send_email(subject, body)
        self.send_slack(slack_message)

    def notify_unbanned(self, address: str, cause: str) -> None:
        if not self.enabled or not self._should_send_notification(f"unban_{address}"):
            return

        self.send_email(f"Unbanned {address}", f"Source address: {address}\nCause: {cause}\n")
        self.send_slack(f":white_check_mark: *Address unbanned*\n• *IP:* {address}\n• *Cause:* {cause}")
