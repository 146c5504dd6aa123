"""
Notification providers for sending notifications via different channels.

Delivery is best-effort: providers report success as a boolean and log
failures, they never raise into the alert lifecycle.
"""

import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List

import requests

from ..core.config import NotificationConfig
from .models import Notification

logger = logging.getLogger(__name__)


class NotificationProvider(ABC):
    """Base class for notification providers."""

    name: str = "provider"

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """
        Send a notification.

        Args:
            notification: Notification to send

        Returns:
            True if successful, False otherwise
        """
        pass

    @abstractmethod
    def is_enabled(self) -> bool:
        """Check if provider is properly configured and enabled."""
        pass


class LogProvider(NotificationProvider):
    """Writes notifications to the application log. Always enabled."""

    name = "log"

    def is_enabled(self) -> bool:
        return True

    def send(self, notification: Notification) -> bool:
        logger.warning(
            f"[NOTIFICATION] [{notification.severity.value.upper()}] "
            f"{notification.subject} -> {', '.join(notification.channels) or 'no channel'}"
        )
        return True


class WebhookProvider(NotificationProvider):
    """
    Webhook notification provider.

    Sends JSON POST requests to a configured webhook URL.
    """

    name = "webhook"

    def __init__(self, url: str, token: str = "", timeout: float = 10.0):
        self.webhook_url = url
        self.webhook_token = token
        self.timeout = timeout

        if self.is_enabled():
            logger.info(f"WebhookProvider configured: {self.webhook_url}")

    def is_enabled(self) -> bool:
        """Check if webhook is properly configured."""
        return bool(self.webhook_url)

    def send(self, notification: Notification) -> bool:
        if not self.is_enabled():
            logger.warning("Webhook provider not properly configured, skipping")
            return False

        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Fleet-Sentinel/0.3",
        }
        if self.webhook_token:
            headers["Authorization"] = f"Bearer {self.webhook_token}"

        try:
            response = requests.post(
                self.webhook_url,
                json=notification.to_dict(),
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.Timeout:
            logger.error(f"Webhook notification timed out after {self.timeout}s: {notification.subject}")
            return False
        except requests.RequestException as e:
            logger.error(f"Failed to send webhook notification: {e}")
            return False

        logger.info(f"Sent webhook notification: {notification.subject}")
        return True


class EmailProvider(NotificationProvider):
    """Email notification provider using SMTP."""

    name = "email"

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_pass: str = "",
        email_from: str = "",
        email_to: str = "",
        use_tls: bool = True,
        timeout: float = 10.0,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_pass = smtp_pass
        self.email_from = email_from
        self.email_to = email_to
        self.use_tls = use_tls
        self.timeout = timeout

        if self.is_enabled():
            logger.info(
                f"EmailProvider configured: {self.smtp_host}:{self.smtp_port} "
                f"-> {self.email_to}"
            )

    def is_enabled(self) -> bool:
        """Check if email is properly configured."""
        return bool(self.smtp_host and self.email_from and self.email_to)

    def send(self, notification: Notification) -> bool:
        if not self.is_enabled():
            logger.warning("Email provider not properly configured, skipping")
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"[{notification.severity.value}] {notification.subject}"
        msg["From"] = self.email_from
        msg["To"] = self.email_to

        text = f"""
Fleet Sentinel Alert

Severity: {notification.severity.value}
Time: {notification.timestamp.strftime('%Y-%m-%d %H:%M:%S')}
Channels: {', '.join(notification.channels) if notification.channels else 'None'}

{notification.message}
"""
        msg.attach(MIMEText(text, "plain"))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.smtp_user:
                    server.login(self.smtp_user, self.smtp_pass)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email notification: {e}")
            return False

        logger.info(f"Sent email notification: {notification.subject}")
        return True


class TelegramProvider(NotificationProvider):
    """Telegram notification provider using Bot API."""

    name = "telegram"

    def __init__(self, bot_token: str, chat_ids: List[str], timeout: float = 10.0):
        self.bot_token = bot_token
        self.chat_ids = [c.strip() for c in chat_ids if c.strip()]
        self.timeout = timeout

        if self.is_enabled():
            logger.info(f"TelegramProvider configured: bot -> {len(self.chat_ids)} chats")

    def is_enabled(self) -> bool:
        """Check if Telegram is configured."""
        return bool(self.bot_token and self.chat_ids)

    def send(self, notification: Notification) -> bool:
        if not self.is_enabled():
            logger.warning("Telegram provider not properly configured, skipping")
            return False

        message = f"""*{notification.subject}*

*Severity:* {notification.severity.value}
*Time:* {notification.timestamp.strftime('%Y-%m-%d %H:%M:%S')}

{notification.message}"""

        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        success_count = 0
        for chat_id in self.chat_ids:
            try:
                response = requests.post(
                    url,
                    json={"chat_id": chat_id, "text": message, "parse_mode": "Markdown"},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                logger.error(f"Failed to send Telegram to chat {chat_id}: {e}")
                continue

            if response.status_code == 200 and response.json().get("ok"):
                success_count += 1
                logger.debug(f"Sent Telegram message to chat {chat_id}")
            else:
                logger.warning(
                    f"Failed to send Telegram to chat {chat_id}: HTTP {response.status_code}"
                )

        if success_count == 0:
            logger.error("Failed to send Telegram to any chats")
            return False

        logger.info(
            f"Sent Telegram notification to {success_count}/{len(self.chat_ids)} "
            f"chats: {notification.subject}"
        )
        return True


def build_providers(config: NotificationConfig) -> List[NotificationProvider]:
    """Create all built-in providers from configuration."""
    return [
        LogProvider(),
        WebhookProvider(config.webhook_url, config.webhook_token, timeout=config.timeout_seconds),
        EmailProvider(
            smtp_host=config.smtp_host,
            smtp_port=config.smtp_port,
            smtp_user=config.smtp_user,
            smtp_pass=config.smtp_pass,
            email_from=config.email_from,
            email_to=config.email_to,
            use_tls=config.smtp_use_tls,
            timeout=config.timeout_seconds,
        ),
        TelegramProvider(config.telegram_bot_token, config.telegram_chat_ids, timeout=config.timeout_seconds),
    ]
