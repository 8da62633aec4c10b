"""SMTP delivery client.

Sends notification jobs through an SMTP relay (Mailpit in development).
smtplib is blocking, so each send runs in a worker thread.

SMTP reply codes do not follow HTTP semantics, so this client ships its own
classifier:
- 4xx replies are transient (greylisting, mailbox busy, try again later)
- 5xx replies are permanent (unknown mailbox, policy rejection)
- refused recipients or sender are permanent
- connection failures and timeouts are retryable
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING

from taskmail.services.classification import (
    DeliveryError,
    ErrorClass,
    ErrorClassifier,
    extract_status_code,
)

if TYPE_CHECKING:
    from taskmail.core.config import SMTPSettings
    from taskmail.services.delivery import OutboundMessage

logger = logging.getLogger(__name__)

SMTP_RECIPIENTS_REFUSED = "recipients_refused"
SMTP_SENDER_REFUSED = "sender_refused"


def classify_smtp_error(error: BaseException) -> ErrorClass:
    """Classify a failure raised by SmtpDeliveryClient.send()."""
    category = getattr(error, "category", None)
    if category in (SMTP_RECIPIENTS_REFUSED, SMTP_SENDER_REFUSED):
        return ErrorClass.PERMANENT

    status_code = extract_status_code(error)
    if status_code is not None and 500 <= status_code < 600:
        return ErrorClass.PERMANENT

    return ErrorClass.RETRYABLE


class SmtpDeliveryClient:
    """Delivery client that relays messages over SMTP.

    Attributes:
        smtp_settings: SMTP connection configuration.
        from_address: Envelope and header sender address.
        from_name: Sender display name.
    """

    def __init__(
        self,
        smtp_settings: SMTPSettings,
        from_address: str,
        from_name: str | None = None,
        classifier: ErrorClassifier = classify_smtp_error,
    ) -> None:
        """Initialize the SMTP client.

        Args:
            smtp_settings: SMTP configuration settings.
            from_address: Sender address.
            from_name: Optional sender display name.
            classifier: Failure classifier (defaults to SMTP reply semantics).
        """
        self.smtp_settings = smtp_settings
        self.from_address = from_address
        self.from_name = from_name
        self._classifier = classifier

    async def send(self, message: OutboundMessage) -> str | None:
        """Send one message; returns the generated Message-ID."""
        message_id = await asyncio.to_thread(self._send_email, message)
        logger.info(
            "Message relayed over SMTP: recipient_hash=%s, template=%s, message_id=%s",
            message.destination_hash,
            message.template,
            message_id,
        )
        return message_id

    def classify_error(self, error: BaseException) -> ErrorClass:
        return self._classifier(error)

    async def aclose(self) -> None:
        # A fresh SMTP connection is opened per message
        return None

    def _build_message(self, message: OutboundMessage) -> tuple[MIMEMultipart, str]:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = (
            f"{self.from_name} <{self.from_address}>" if self.from_name else self.from_address
        )
        msg["To"] = message.destination

        message_id = f"<{secrets.token_hex(16)}@{self._get_domain()}>"
        msg["Message-ID"] = message_id

        # Text first: clients show the last alternative they can render
        if message.text_body:
            msg.attach(MIMEText(message.text_body, "plain", "utf-8"))
        msg.attach(MIMEText(message.html_body, "html", "utf-8"))
        return msg, message_id

    def _send_email(self, message: OutboundMessage) -> str:
        """Send an email via SMTP (blocking).

        Returns:
            Generated Message-ID.

        Raises:
            DeliveryError: If the email cannot be sent.
        """
        msg, message_id = self._build_message(message)

        try:
            if self.smtp_settings.use_ssl:
                # Implicit TLS (port 465)
                context = ssl.create_default_context()
                server = smtplib.SMTP_SSL(
                    self.smtp_settings.host,
                    self.smtp_settings.port,
                    timeout=self.smtp_settings.timeout,
                    context=context,
                )
            else:
                # Plain or STARTTLS
                server = smtplib.SMTP(
                    self.smtp_settings.host,
                    self.smtp_settings.port,
                    timeout=self.smtp_settings.timeout,
                )
                if self.smtp_settings.use_tls:
                    context = ssl.create_default_context()
                    server.starttls(context=context)

            with server:
                if self.smtp_settings.username and self.smtp_settings.password:
                    server.login(
                        self.smtp_settings.username,
                        self.smtp_settings.password.get_secret_value(),
                    )
                server.sendmail(self.from_address, [message.destination], msg.as_string())

            return message_id

        except smtplib.SMTPRecipientsRefused as e:
            codes = [code for code, _ in e.recipients.values()]
            raise DeliveryError(
                f"Recipient refused: {e.recipients}",
                status_code=codes[0] if codes else None,
                category=SMTP_RECIPIENTS_REFUSED,
            ) from e
        except smtplib.SMTPSenderRefused as e:
            raise DeliveryError(
                f"Sender refused: {_decode(e.smtp_error)}",
                status_code=e.smtp_code,
                category=SMTP_SENDER_REFUSED,
            ) from e
        except smtplib.SMTPResponseException as e:
            raise DeliveryError(
                f"SMTP error: {_decode(e.smtp_error)}",
                status_code=e.smtp_code,
            ) from e
        except smtplib.SMTPException as e:
            raise DeliveryError(f"SMTP error: {e}") from e
        except OSError as e:
            raise DeliveryError(f"Connection error: {e}") from e

    def _get_domain(self) -> str:
        _, _, domain = self.from_address.partition("@")
        return domain or "localhost"


def _decode(value: bytes | str) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
