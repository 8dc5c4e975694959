"""
SMTPEmailExecutor — the "send email" executor.

Payload shape:
    {"to": "a@b.com", "subject": "Hi", "body": "there"}

"email" is accepted in place of "to".  The body is sent as both the
plain-text and HTML alternative.  Transport errors come back as a
failed ExecutionResult so the poller retries with backoff.

Requires config:
    [smtp]
    host         = "smtp.example.com"
    port         = 587
    username     = "..."
    password     = "${SMTP_PASSWORD}"
    from_address = "scheduler@example.com"
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Mapping

from agendum.core.config import SMTPConfig
from agendum.executors.registry import ExecutionResult

logger = logging.getLogger(__name__)

SEND_EMAIL = "send email"


class SMTPEmailExecutor:
    """
    Sends one email per job over SMTP.

    Blocking by design: the registry runs sync executors in a worker
    thread.  A fresh connection is opened per send.
    """

    def __init__(self, config: SMTPConfig) -> None:
        self._config = config

    def build_message(self, payload: Mapping[str, Any]) -> EmailMessage:
        """Build the MIME message. Raises ValueError for a malformed payload."""
        to = payload.get("to") or payload.get("email")
        if not to:
            raise ValueError("payload has no recipient ('to')")
        subject = payload.get("subject", "")
        body = payload.get("body", "")
        html = payload.get("html") or body

        msg = EmailMessage()
        msg["From"] = self._config.from_address
        msg["To"] = to if isinstance(to, str) else ", ".join(to)
        msg["Subject"] = subject
        msg.set_content(body)
        msg.add_alternative(html, subtype="html")
        return msg

    def __call__(self, payload: Mapping[str, Any]) -> ExecutionResult:
        if not self._config.configured:
            return ExecutionResult.fail("SMTP is not configured (smtp.host, smtp.from_address)")
        try:
            msg = self.build_message(payload)
        except ValueError as e:
            return ExecutionResult.fail(f"Invalid email payload: {e}")

        cfg = self._config
        try:
            with smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout) as server:
                if cfg.use_tls:
                    server.starttls()
                if cfg.username and cfg.password:
                    server.login(cfg.username, cfg.password)
                refused = server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Email to {msg['To']} failed: {e}")
            return ExecutionResult.fail(f"SMTP error: {e}")

        if refused:
            return ExecutionResult.fail(f"Recipients refused: {', '.join(refused)}")

        logger.info(f"Email sent to {msg['To']} ({msg['Subject']!r})")
        return ExecutionResult.ok({"to": msg["To"]})
