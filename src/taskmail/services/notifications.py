"""Producer-facing notification enqueue API.

Domain code (task assignment, sprint start, password reset, ...) decides
when to notify and with which template; this module renders the message and
writes a durable job. Nothing after the enqueue is ever reported back to the
producer: delivery happens in the worker.

Usage:
    from taskmail.core.settings import get_settings
    from taskmail.db import get_async_session
    from taskmail.services.notifications import NotificationService

    async with get_async_session() as session:
        service = NotificationService.from_settings(session, get_settings())
        await service.queue_templated(
            "task_assigned",
            "dev@example.com",
            {"assignee_name": "Ada", "task_title": "Fix login", ...},
            idempotency_key=f"task-assigned:{task_id}:{assignee_id}",
        )
        await session.commit()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateNotFound, select_autoescape

from taskmail.services.job_store import DEFAULT_MAX_ATTEMPTS, JobStoreService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from taskmail.core.config import Settings

logger = logging.getLogger(__name__)

# Templates shipped in taskmail/templates/email/<name>.{subject,html,txt}
TEMPLATE_NAMES = (
    "task_assigned",
    "task_status_changed",
    "comment_mention",
    "sprint_started",
    "password_reset",
)


class TemplateNotFoundError(Exception):
    """Raised when a notification template does not exist."""

    pass


@dataclass(frozen=True, slots=True)
class RenderedNotification:
    """Subject and body variants produced from one template."""

    template: str
    subject: str
    html_body: str
    text_body: str


_environment: Environment | None = None


def _get_environment() -> Environment:
    global _environment
    if _environment is None:
        _environment = Environment(
            loader=PackageLoader("taskmail", "templates/email"),
            autoescape=select_autoescape(["html", "xml"]),
            undefined=StrictUndefined,
            keep_trailing_newline=False,
        )
    return _environment


def render_notification(template: str, context: dict[str, Any]) -> RenderedNotification:
    """Render the subject, HTML and text variants of a template.

    Args:
        template: Template name (see TEMPLATE_NAMES).
        context: Variables for the template. Missing variables are errors.

    Returns:
        The rendered notification.

    Raises:
        TemplateNotFoundError: If the template does not exist.
    """
    env = _get_environment()
    try:
        subject = env.get_template(f"{template}.subject").render(context)
        html_body = env.get_template(f"{template}.html").render(context)
        text_body = env.get_template(f"{template}.txt").render(context)
    except TemplateNotFound as e:
        msg = f"Unknown notification template: {template}"
        raise TemplateNotFoundError(msg) from e

    return RenderedNotification(
        template=template,
        # Subject lines must be a single line
        subject=" ".join(subject.split()),
        html_body=html_body,
        text_body=text_body,
    )


class NotificationService:
    """Enqueue outbound notifications on behalf of domain code.

    Attributes:
        session: SQLAlchemy async session; the caller commits.
        default_max_attempts: max_attempts for jobs enqueued without one.
    """

    def __init__(
        self,
        session: AsyncSession,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.session = session
        self.default_max_attempts = default_max_attempts
        self._store = JobStoreService(session, default_max_attempts=default_max_attempts)

    @classmethod
    def from_settings(cls, session: AsyncSession, settings: Settings) -> NotificationService:
        """Create a service using the configured default attempt limit."""
        return cls(session, default_max_attempts=settings.worker.default_max_attempts)

    async def queue_email(
        self,
        destination: str,
        subject: str,
        html_body: str,
        *,
        idempotency_key: str,
        text_body: str | None = None,
        template: str = "generic",
        max_attempts: int | None = None,
    ) -> uuid.UUID:
        """Enqueue an already-rendered message.

        Returns:
            Job identity. Re-using an idempotency key returns the existing job.

        Raises:
            ValueError: If destination is empty or max_attempts is invalid.
            JobStoreError: If the job cannot be stored.
        """
        if not destination or "@" not in destination:
            msg = f"Invalid destination address: {destination!r}"
            raise ValueError(msg)

        job = await self._store.enqueue(
            destination=destination,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            idempotency_key=idempotency_key,
            template=template,
            max_attempts=max_attempts,
        )
        return job.job_id

    async def queue_templated(
        self,
        template: str,
        destination: str,
        context: dict[str, Any],
        *,
        idempotency_key: str,
        max_attempts: int | None = None,
    ) -> uuid.UUID:
        """Render ``template`` with ``context`` and enqueue the result."""
        rendered = render_notification(template, context)
        logger.debug("Rendered notification template=%s", template)
        return await self.queue_email(
            destination,
            rendered.subject,
            rendered.html_body,
            text_body=rendered.text_body,
            idempotency_key=idempotency_key,
            template=template,
            max_attempts=max_attempts,
        )
