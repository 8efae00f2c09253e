"""Operator notifications: fsck reports, drive removals and task failures."""

import json
import logging
import os
import smtplib
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from email.mime.text import MIMEText
from enum import Enum
from typing import Deque, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

HISTORY_SIZE = 500


class NotificationLevel(Enum):
    """Notification severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# Logging level used for each severity; also orders severities for min_level.
LOG_LEVELS = {
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.ERROR: logging.ERROR,
    NotificationLevel.CRITICAL: logging.CRITICAL,
}


class NotificationChannel(Enum):
    """Available notification channels."""
    EMAIL = "email"
    LOG = "log"
    WEBHOOK = "webhook"


@dataclass
class SmtpSettings:
    """Where and how fsck reports and removal logs are mailed."""
    server: str = "localhost"
    port: int = 25
    username: str = ""
    password: str = ""
    sender: str = ""
    recipients: List[str] = field(default_factory=list)


@dataclass
class NotificationConfig:
    """Configuration for notifications."""
    enabled: bool = True
    channels: List[NotificationChannel] = field(default_factory=lambda: [NotificationChannel.LOG])
    smtp: SmtpSettings = field(default_factory=SmtpSettings)
    webhook_url: str = ""
    min_level: NotificationLevel = NotificationLevel.INFO
    rate_limit_minutes: int = 60  # per subject

    @classmethod
    def from_dict(cls, data: Dict) -> "NotificationConfig":
        """
        Build a configuration from its JSON form.

        Raises:
            ValueError: On an unknown channel or level
            TypeError: On an unknown key
        """
        data = dict(data)
        if 'channels' in data:
            data['channels'] = [NotificationChannel(name) for name in data['channels']]
        if 'min_level' in data:
            data['min_level'] = NotificationLevel(data['min_level'])
        if 'smtp' in data:
            data['smtp'] = SmtpSettings(**data['smtp'])
        return cls(**data)


@dataclass
class Notification:
    """A notification as it went out."""
    subject: str
    body: str
    level: NotificationLevel
    timestamp: datetime = field(default_factory=datetime.now)
    delivered_to: List[NotificationChannel] = field(default_factory=list)


class NotificationManager:
    """Sends operator notifications through the configured channels."""

    def __init__(self, config_file: Optional[str] = None,
                 config: Optional[NotificationConfig] = None):
        """
        Initialize notification manager.

        Args:
            config_file: Path to the JSON notification configuration file
            config: Explicit configuration, used instead of the file
        """
        self.config_file = config_file
        self.config = config or self._load_config()
        self._history: Deque[Notification] = deque(maxlen=HISTORY_SIZE)
        self._last_sent: Dict[str, datetime] = {}
        self._senders = {
            NotificationChannel.LOG: self._write_log,
            NotificationChannel.EMAIL: self._send_email,
            NotificationChannel.WEBHOOK: self._post_webhook,
        }

    def notify(self, subject: str, body: str,
               level: NotificationLevel = NotificationLevel.INFO) -> bool:
        """
        Send a notification. Never raises.

        Args:
            subject: Notification subject; repeats of it are rate limited
            body: Plain-text body
            level: Notification level

        Returns:
            True if the notification went out on every configured channel
        """
        if not self._wanted(subject, level):
            return False

        notification = Notification(subject=subject, body=body, level=level)
        for channel in self.config.channels:
            try:
                if self._senders[channel](notification):
                    notification.delivered_to.append(channel)
            except Exception as e:
                logger.error(f"Error sending notification '{subject}' via {channel.value}: {e}")

        self._last_sent[subject] = notification.timestamp
        self._history.append(notification)
        return len(notification.delivered_to) == len(self.config.channels)

    def recent(self, hours: int = 24) -> List[Notification]:
        cutoff = datetime.now() - timedelta(hours=hours)
        return [n for n in self._history if n.timestamp > cutoff]

    def _load_config(self) -> NotificationConfig:
        if not self.config_file or not os.path.exists(self.config_file):
            return NotificationConfig()
        try:
            with open(self.config_file, 'r') as f:
                return NotificationConfig.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Ignoring notification config {self.config_file}: {e}")
            return NotificationConfig()

    def _wanted(self, subject: str, level: NotificationLevel) -> bool:
        if not self.config.enabled:
            return False
        if LOG_LEVELS[level] < LOG_LEVELS[self.config.min_level]:
            return False

        last_sent = self._last_sent.get(subject)
        if last_sent is None:
            return True
        if datetime.now() - last_sent < timedelta(minutes=self.config.rate_limit_minutes):
            logger.debug(f"Rate limited notification: {subject}")
            return False
        return True

    def _write_log(self, notification: Notification) -> bool:
        logger.log(LOG_LEVELS[notification.level], f"{notification.subject}\n{notification.body}")
        return True

    def _send_email(self, notification: Notification) -> bool:
        smtp = self.config.smtp
        if not smtp.recipients or not smtp.sender:
            logger.warning("E-mail notifications need a sender and at least one recipient")
            return False

        message = MIMEText(notification.body, 'plain')
        message['From'] = smtp.sender
        message['To'] = ', '.join(smtp.recipients)
        message['Subject'] = notification.subject

        try:
            with smtplib.SMTP(smtp.server, smtp.port) as server:
                if smtp.username and smtp.password:
                    server.starttls()
                    server.login(smtp.username, smtp.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Cannot mail '{notification.subject}' through {smtp.server}: {e}")
            return False
        return True

    def _post_webhook(self, notification: Notification) -> bool:
        if not self.config.webhook_url:
            return False
        payload = {
            'level': notification.level.value,
            'subject': notification.subject,
            'body': notification.body,
            'timestamp': notification.timestamp.isoformat(),
        }
        try:
            response = requests.post(self.config.webhook_url, json=payload, timeout=10)
        except requests.RequestException as e:
            logger.error(f"Webhook {self.config.webhook_url} unreachable: {e}")
            return False
        if response.status_code >= 300:
            logger.error(f"Webhook {self.config.webhook_url} answered {response.status_code}")
            return False
        return True
