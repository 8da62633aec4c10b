"""Delivery client boundary for outbound notifications.

A delivery client takes one rendered message and hands it to the provider.
It returns the provider's message id on success and raises on failure; it
also supplies the classifier that decides whether its failures are worth
retrying.

Implementations:
- HttpApiDeliveryClient: transactional email HTTP API (bearer token auth)
- SmtpDeliveryClient: SMTP relay (see taskmail.services.email)
- LogDeliveryClient: development stand-in that only logs the message
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from taskmail.services.classification import (
    DeliveryConfigurationError,
    DeliveryError,
    ErrorClass,
    ErrorClassifier,
    default_classifier,
)

if TYPE_CHECKING:
    from taskmail.core.config import Settings
    from taskmail.db.models.jobs import NotificationJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    """Rendered notification handed to a delivery client.

    Attributes:
        destination: Recipient address.
        subject: Subject line.
        html_body: HTML representation.
        text_body: Plain-text representation, if any.
        idempotency_key: Producer key, forwarded to providers that dedupe.
        template: Template label (for logs only).
    """

    destination: str
    subject: str
    html_body: str
    text_body: str | None
    idempotency_key: str
    template: str = "generic"

    @classmethod
    def from_job(cls, job: NotificationJob) -> OutboundMessage:
        return cls(
            destination=job.destination,
            subject=job.subject,
            html_body=job.html_body,
            text_body=job.text_body,
            idempotency_key=job.idempotency_key,
            template=job.template,
        )

    @property
    def destination_hash(self) -> str:
        """Short SHA-256 of the lowercased address, for logs."""
        return hash_address(self.destination)


def hash_address(address: str) -> str:
    """Hash an email address so logs never carry the raw address."""
    return hashlib.sha256(address.lower().strip().encode("utf-8")).hexdigest()[:16]


@runtime_checkable
class DeliveryClient(Protocol):
    """Interface implemented by every delivery integration."""

    async def send(self, message: OutboundMessage) -> str | None:
        """Transmit one message.

        Returns:
            The provider's message id, or None if it does not return one.

        Raises:
            DeliveryError: (or any exception) if the message was not accepted.
        """
        ...

    def classify_error(self, error: BaseException) -> ErrorClass:
        """Classify a failure raised by send()."""
        ...

    async def aclose(self) -> None:
        """Release connections held by the client."""
        ...


class HttpApiDeliveryClient:
    """Client for a transactional email HTTP API.

    Sends ``POST {api_url}/emails`` with a JSON body and an Idempotency-Key
    header, so a retry of a message the provider already accepted is not
    delivered twice. Error responses are expected as
    ``{"statusCode": 422, "name": "validation_error", "message": "..."}``.

    Args:
        api_url: Provider base URL.
        api_key: Bearer token.
        from_address: Sender address.
        from_name: Sender display name.
        timeout: Request timeout in seconds.
        classifier: Failure classifier (defaults to the HTTP status rules).
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        from_address: str,
        from_name: str | None = None,
        timeout: float = 15.0,
        classifier: ErrorClassifier = default_classifier,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            msg = "An API key is required for the HTTP delivery client"
            raise DeliveryConfigurationError(msg)

        self.api_url = api_url.rstrip("/")
        self.from_header = f"{from_name} <{from_address}>" if from_name else from_address
        self._classifier = classifier
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def send(self, message: OutboundMessage) -> str | None:
        """POST the message to the provider.

        Raises:
            DeliveryError: With status_code/category from the provider, or
                without a status code for transport-level failures.
        """
        body: dict[str, Any] = {
            "from": self.from_header,
            "to": [message.destination],
            "subject": message.subject,
            "html": message.html_body,
        }
        if message.text_body:
            body["text"] = message.text_body

        try:
            response = await self._client.post(
                "/emails",
                json=body,
                headers={"Idempotency-Key": message.idempotency_key},
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Provider request timed out: {e}") from e
        except httpx.TransportError as e:
            raise DeliveryError(f"Cannot reach provider: {e}") from e

        if response.is_success:
            provider_id = _json_or_empty(response).get("id")
            logger.info(
                "Message accepted by provider: recipient_hash=%s, template=%s, provider_id=%s",
                message.destination_hash,
                message.template,
                provider_id,
            )
            return provider_id

        payload = _json_or_empty(response)
        name = payload.get("name")
        raise DeliveryError(
            str(payload.get("message") or response.reason_phrase or "Provider rejected message"),
            status_code=response.status_code,
            category=name if isinstance(name, str) else None,
        )

    def classify_error(self, error: BaseException) -> ErrorClass:
        return self._classifier(error)

    async def aclose(self) -> None:
        await self._client.aclose()


class LogDeliveryClient:
    """Development client: logs the message instead of sending it.

    Returns a synthetic provider id so jobs still reach SENT.
    """

    def __init__(self, classifier: ErrorClassifier = default_classifier) -> None:
        self._classifier = classifier

    async def send(self, message: OutboundMessage) -> str | None:
        provider_id = f"log-{uuid.uuid4().hex}"
        logger.info(
            "[EMAIL NOT SENT - LOG BACKEND] recipient_hash=%s, subject=%s, template=%s, "
            "provider_id=%s",
            message.destination_hash,
            message.subject,
            message.template,
            provider_id,
        )
        return provider_id

    def classify_error(self, error: BaseException) -> ErrorClass:
        return self._classifier(error)

    async def aclose(self) -> None:
        return None


def build_delivery_client(settings: Settings) -> DeliveryClient:
    """Create the delivery client selected by ``settings.delivery.backend``.

    Raises:
        DeliveryConfigurationError: If the backend is unknown or misconfigured.
    """
    from taskmail.core.config import DeliveryBackend

    delivery = settings.delivery

    if delivery.backend == DeliveryBackend.HTTP:
        return HttpApiDeliveryClient(
            api_url=delivery.api_url,
            api_key=delivery.api_key.get_secret_value(),
            from_address=delivery.from_address,
            from_name=delivery.from_name,
            timeout=delivery.timeout,
        )

    if delivery.backend == DeliveryBackend.SMTP:
        from taskmail.services.email import SmtpDeliveryClient

        return SmtpDeliveryClient(
            smtp_settings=settings.smtp,
            from_address=delivery.from_address,
            from_name=delivery.from_name,
        )

    if delivery.backend == DeliveryBackend.LOG:
        logger.warning("Delivery backend is 'log': notifications will not be sent")
        return LogDeliveryClient()

    msg = f"Unknown delivery backend: {delivery.backend}"
    raise DeliveryConfigurationError(msg)


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}
