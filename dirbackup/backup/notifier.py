"""
Outcome notifications for backup runs.

The Notifier formats one plain-text message per run and hands it to a
transport:
- SendGridTransport: SendGrid v3 HTTP API (needs an API key)
- SmtpTransport: plain SMTP server
- LogTransport: writes the message to the log only

Delivery is best-effort. A failed notification is logged and never fails
the run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from datetime import datetime
from typing import Optional, Tuple

import requests

from dirbackup.errors import NotifyFailed
from dirbackup.models import RunReport


logger = logging.getLogger(__name__)

SENDGRID_URL = 'https://api.sendgrid.com/v3/mail/send'
TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


class SendGridTransport:
    """Send mail through the SendGrid v3 API."""

    def __init__(self, api_key: str, timeout: float = 30, url: str = SENDGRID_URL):
        self.api_key = api_key
        self.timeout = timeout
        self.url = url

    def send(self, sender: str, recipient: str, subject: str, body: str):
        payload = {
            'personalizations': [{'to': [{'email': recipient}]}],
            'from': {'email': sender},
            'subject': subject,
            'content': [{'type': 'text/plain', 'value': body}],
        }
        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }

        try:
            response = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotifyFailed(f"SendGrid request failed: {e}")

        if response.status_code >= 300:
            raise NotifyFailed(
                f"SendGrid rejected message ({response.status_code}): {response.text[:200]}"
            )


class SmtpTransport:
    """Send mail through an SMTP server."""

    def __init__(self, smtp_server: str, smtp_port: int = 587, smtp_user: Optional[str] = None,
                 smtp_password: Optional[str] = None, use_tls: bool = True, timeout: float = 30):
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, sender: str, recipient: str, subject: str, body: str):
        msg = MIMEText(body, 'plain', 'utf-8')
        msg['Subject'] = subject
        msg['From'] = sender
        msg['To'] = recipient

        logger.debug(f"Connecting to SMTP server {self.smtp_server}:{self.smtp_port}")
        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()

                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)

                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotifyFailed(f"SMTP delivery failed: {e}")


class LogTransport:
    """Log the message instead of sending it."""

    def send(self, sender: str, recipient: str, subject: str, body: str):
        logger.info(f"Notification for {recipient} (no mail transport configured): {subject}\n{body}")


def create_transport(config):
    """
    Pick a transport from the configuration.

    The SendGrid API key wins over SMTP settings; with neither, messages
    are only logged.
    """
    if config.api_key:
        return SendGridTransport(config.api_key)

    if config.smtp_server:
        return SmtpTransport(
            smtp_server=config.smtp_server,
            smtp_port=config.smtp_port,
            smtp_user=config.smtp_user,
            smtp_password=config.smtp_password,
            use_tls=config.smtp_use_tls
        )

    logger.warning("No API key or SMTP server configured - notifications will only be logged")
    return LogTransport()


def format_size(size_bytes: int) -> str:
    """Format file size in human readable format."""
    size = float(size_bytes)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size < 1024:
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}PB"


def _timestamp(value: Optional[datetime]) -> str:
    return value.strftime(TIMESTAMP_FORMAT) if value else 'N/A'


class Notifier:
    """Sends exactly one outcome message per run."""

    def __init__(self, transport, recipient: str, sender: str, run_name: str):
        """
        Args:
            transport: Object with send(sender, recipient, subject, body)
            recipient: Address that receives reports
            sender: From address
            run_name: Identifier placed in the subject line
        """
        self.transport = transport
        self.recipient = recipient
        self.sender = sender
        self.run_name = run_name

    @classmethod
    def from_config(cls, config) -> 'Notifier':
        return cls(
            transport=create_transport(config),
            recipient=config.recipient,
            sender=config.sender,
            run_name=config.display_name
        )

    def compose(self, report: RunReport) -> Tuple[str, str]:
        """
        Build subject and body for a report.

        Returns:
            (subject, body)
        """
        started = _timestamp(report.started_at)
        completed = _timestamp(report.completed_at)

        if report.no_files:
            subject = f"[{self.run_name}] Backup: no backup initiated"
            body = (
                f"No files were found to back up in {report.source_dir}.\n"
                f"\n"
                f"Start: {started}\n"
                f"End: {completed}\n"
            )
        elif report.success:
            subject = f"[{self.run_name}] Backup: success"
            size = report.size or 0
            body = (
                f"Backup completed successfully.\n"
                f"\n"
                f"Destination: {report.remote_path}\n"
                f"Size: {size} bytes ({format_size(size)})\n"
                f"Files: {report.file_count}\n"
                f"Start: {started}\n"
                f"End: {completed}\n"
            )
        else:
            subject = f"[{self.run_name}] Backup: failed"
            body = (
                f"Backup of {report.source_dir} failed. Please investigate manually.\n"
                f"\n"
                f"Error: {report.error_message or 'unknown'}\n"
                f"Start: {started}\n"
                f"End: {completed}\n"
            )

        return subject, body

    def notify(self, report: RunReport) -> bool:
        """
        Send the outcome message for a run.

        Returns:
            True if the transport accepted the message, False otherwise
        """
        subject, body = self.compose(report)

        try:
            self.transport.send(self.sender, self.recipient, subject, body)
        except Exception as e:
            logger.error(f"Failed to send notification '{subject}' to {self.recipient}: {e}")
            return False

        logger.info(f"Notification sent to {self.recipient}: {subject}")
        return True

    def send_test_email(self) -> bool:
        """Send a test message to verify the transport."""
        subject = f"[{self.run_name}] Backup: test email"
        body = (
            f"This is a test email from dirbackup.\n"
            f"\n"
            f"From: {self.sender}\n"
            f"To: {self.recipient}\n"
            f"Transport: {type(self.transport).__name__}\n"
            f"\n"
            f"Generated at: {datetime.now().strftime(TIMESTAMP_FORMAT)}\n"
        )

        try:
            self.transport.send(self.sender, self.recipient, subject, body)
        except Exception as e:
            logger.error(f"Failed to send test email: {e}")
            return False
        return True
