"""
Alert notifiers used by the container monitor.

Every send returns a NotifyResult instead of raising, so a broken mail
server never stops the monitor.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Protocol

import aiosmtplib

from orchestrator.models import Host, OrchestratorConfig

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


@dataclass
class NotifyResult:
    success: bool
    error: Optional[str] = None


class Notifier(Protocol):
    def send_down_alert(self, recipient: str, host: Host, container: Dict[str, Any]) -> NotifyResult:
        ...

    def send_up_alert(self, recipient: str, host: Host, container: Dict[str, Any]) -> NotifyResult:
        ...

    def send_no_auto_restart_alert(self, recipient: str, host: Host, container: Dict[str, Any]) -> NotifyResult:
        ...


def _container_name(container: Dict[str, Any]) -> str:
    return container.get("name") or container.get("id", "unknown")[:12]


def down_subject(host: Host, container: Dict[str, Any]) -> str:
    return f"🚨 Container Alert: {_container_name(container)} is down on {host.display_name}"


def up_subject(host: Host, container: Dict[str, Any]) -> str:
    return f"✅ Container Recovered: {_container_name(container)} is running on {host.display_name}"


def no_auto_restart_subject(host: Host, container: Dict[str, Any]) -> str:
    return (
        f"⚠️ Container Alert: {_container_name(container)} running without "
        f"auto-restart on {host.display_name}"
    )


def alert_body(headline: str, host: Host, container: Dict[str, Any]) -> str:
    """Plain-text body shared by every alert kind."""
    observed = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
    lines = [
        headline,
        "",
        f"Server: {host.display_name} ({host.address})",
        f"Container: {_container_name(container)}",
        f"Container ID: {container.get('id', 'unknown')}",
        f"Image: {container.get('image', 'Unknown')}",
        f"Status: {container.get('status', 'Unknown')}",
        f"Restart policy: {container.get('restart_policy') or 'none'}",
        f"Observed: {observed}",
    ]
    return "\n".join(lines)


class LogNotifier:
    """Notifier that only writes alerts to the log."""

    def _log(self, subject: str, recipient: str) -> NotifyResult:
        logger.warning(f"ALERT to {recipient}: {subject}")
        return NotifyResult(success=True)

    def send_down_alert(self, recipient: str, host: Host, container: Dict[str, Any]) -> NotifyResult:
        return self._log(down_subject(host, container), recipient)

    def send_up_alert(self, recipient: str, host: Host, container: Dict[str, Any]) -> NotifyResult:
        return self._log(up_subject(host, container), recipient)

    def send_no_auto_restart_alert(self, recipient: str, host: Host, container: Dict[str, Any]) -> NotifyResult:
        return self._log(no_auto_restart_subject(host, container), recipient)


class EmailNotifier:
    """
    Sends alerts by SMTP with aiosmtplib.

    Port 587 uses STARTTLS, port 465 direct TLS; other ports use STARTTLS
    only when ``use_tls`` is set. Login happens only when both user and
    password are configured.
    """

    def __init__(self, config: OrchestratorConfig.EmailConfig):
        self.config = config

    def _smtp_kwargs(self) -> Dict[str, Any]:
        kwargs = {
            'hostname': self.config.smtp_host,
            'port': self.config.smtp_port,
            'timeout': self.config.timeout,
        }
        if self.config.smtp_port == 465:
            kwargs['use_tls'] = self.config.use_tls
        else:
            kwargs['start_tls'] = self.config.use_tls
        return kwargs

    def build_message(self, recipient: str, subject: str, text: str) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = self.config.from_address
        msg['To'] = recipient
        msg.attach(MIMEText(text, 'plain', 'utf-8'))
        html = "<html><body><pre style=\"font-family:monospace\">" + (
            text.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')
        ) + "</pre></body></html>"
        msg.attach(MIMEText(html, 'html', 'utf-8'))
        return msg

    async def _send(self, msg: MIMEMultipart) -> None:
        async with aiosmtplib.SMTP(**self._smtp_kwargs()) as smtp:
            if self.config.smtp_user and self.config.smtp_password:
                await smtp.login(self.config.smtp_user, self.config.smtp_password)
            else:
                logger.debug("SMTP auth skipped - no credentials provided")
            await smtp.send_message(msg)

    def send(self, recipient: str, subject: str, text: str) -> NotifyResult:
        """Send one email synchronously."""
        if not recipient or not EMAIL_PATTERN.match(recipient):
            return NotifyResult(success=False, error=f"Invalid recipient: {recipient!r}")

        msg = self.build_message(recipient, subject, text)
        try:
            asyncio.run(self._send(msg))
        except aiosmtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed: {e}")
            return NotifyResult(success=False, error=f"authentication failed: {e}")
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            logger.error(f"SMTP error sending to {recipient}: {e}")
            return NotifyResult(success=False, error=str(e))

        logger.info(f"Alert email sent to {recipient}: {subject}")
        return NotifyResult(success=True)

    def send_down_alert(self, recipient: str, host: Host, container: Dict[str, Any]) -> NotifyResult:
        return self.send(
            recipient,
            down_subject(host, container),
            alert_body("A container that should be running is down.", host, container),
        )

    def send_up_alert(self, recipient: str, host: Host, container: Dict[str, Any]) -> NotifyResult:
        return self.send(
            recipient,
            up_subject(host, container),
            alert_body("A container that was down is running again.", host, container),
        )

    def send_no_auto_restart_alert(self, recipient: str, host: Host, container: Dict[str, Any]) -> NotifyResult:
        return self.send(
            recipient,
            no_auto_restart_subject(host, container),
            alert_body(
                "A running container has no restart policy and will stay down "
                "after a crash or reboot.",
                host, container
            ),
        )


def build_notifier(config: OrchestratorConfig) -> Optional[Notifier]:
    """
    Notifier for the configured transport (``monitoring.notifier``).

    Returns None when email is selected but disabled or incomplete; the
    caller disables monitoring in that case.
    """
    if config.monitoring.notifier == "log":
        return LogNotifier()

    email = config.email
    if not email.enabled:
        return None
    if not email.smtp_host or not email.from_address:
        logger.warning("Email enabled but smtp_host/from_address missing")
        return None
    if bool(email.smtp_user) != bool(email.smtp_password):
        logger.warning("Email config needs both smtp_user and smtp_password, or neither")
        return None
    return EmailNotifier(email)
