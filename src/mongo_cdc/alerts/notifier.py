"""
Alert sinks.

notify(subject, message) never raises and never blocks the caller on
delivery: EmailAlertSink hands the message to a single background worker,
and delivery failures are only logged.
"""

from concurrent.futures import ThreadPoolExecutor
from email.message import EmailMessage
from html import escape
from typing import Optional
import logging
import smtplib

from ..config.settings import AlertSettings

logger = logging.getLogger(__name__)


class AlertSink:
    """Interface for alert delivery."""

    def notify(self, subject: str, message: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LogAlertSink(AlertSink):
    """Log alerts instead of sending them (alerting disabled)."""

    def notify(self, subject: str, message: str) -> None:
        logger.info(f"Alert disabled: {subject} - {message}")


class EmailAlertSink(AlertSink):
    """Send alerts by SMTP."""

    def __init__(self, settings: AlertSettings):
        self.settings = settings
        self._executor: Optional[ThreadPoolExecutor] = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="cdc-alert"
        )

    def build_message(self, subject: str, message: str) -> EmailMessage:
        email = EmailMessage()
        email["Subject"] = f"{self.settings.subject_prefix} {subject}"
        email["From"] = self.settings.from_address
        email["To"] = ", ".join(self.settings.to_addresses)
        email.set_content(message)
        email.add_alternative(
            f"<p>{escape(message).replace(chr(10), '<br>')}</p>",
            subtype="html"
        )
        return email

    def notify(self, subject: str, message: str) -> None:
        if self._executor is None:
            logger.warning(f"Alert sink closed, dropping alert: {subject}")
            return
        if not self.settings.to_addresses:
            logger.warning(f"No alert recipients configured, dropping alert: {subject}")
            return
        self._executor.submit(self._send, subject, message)

    def _send(self, subject: str, message: str) -> None:
        try:
            email = self.build_message(subject, message)
            with smtplib.SMTP(
                self.settings.smtp_host,
                self.settings.smtp_port,
                timeout=self.settings.timeout_seconds
            ) as smtp:
                if self.settings.use_tls:
                    smtp.starttls()
                if self.settings.username:
                    smtp.login(self.settings.username, self.settings.password or "")
                smtp.send_message(email)
            logger.info(f"Alert sent: {subject}")
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                f"Failed to send alert: {e}",
                extra={"subject": subject, "error_type": type(e).__name__}
            )

    def close(self) -> None:
        """Deliver queued alerts, then stop the worker."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


def create_alert_sink(settings: AlertSettings) -> AlertSink:
    if settings.enabled:
        return EmailAlertSink(settings)
    return LogAlertSink()
