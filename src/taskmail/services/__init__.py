"""taskmail service layer.

This package contains the delivery pipeline building blocks:
- JobStoreService: PostgreSQL-backed notification job store
- BackoffPolicy: Exponential retry delays
- RateGate: Process-local send pacing
- Error classification: retryable vs. permanent delivery failures
- Delivery clients: HTTP API, SMTP and log backends
- NotificationService: Producer-facing enqueue API with Jinja2 templates
"""

from taskmail.services.backoff import BackoffPolicy
from taskmail.services.classification import (
    DeliveryConfigurationError,
    DeliveryError,
    ErrorClass,
    StatusCodeClassifier,
    default_classifier,
    describe_error,
)
from taskmail.services.delivery import (
    DeliveryClient,
    HttpApiDeliveryClient,
    LogDeliveryClient,
    OutboundMessage,
    build_delivery_client,
)
from taskmail.services.job_store import (
    JobLeaseLostError,
    JobNotFoundError,
    JobStoreContractError,
    JobStoreError,
    JobStoreService,
)
from taskmail.services.notifications import NotificationService, TemplateNotFoundError
from taskmail.services.rate_gate import RateGate

__all__ = [
    "BackoffPolicy",
    "DeliveryClient",
    "DeliveryConfigurationError",
    "DeliveryError",
    "ErrorClass",
    "HttpApiDeliveryClient",
    "JobLeaseLostError",
    "JobNotFoundError",
    "JobStoreContractError",
    "JobStoreError",
    "JobStoreService",
    "LogDeliveryClient",
    "NotificationService",
    "OutboundMessage",
    "RateGate",
    "StatusCodeClassifier",
    "TemplateNotFoundError",
    "build_delivery_client",
    "default_classifier",
    "describe_error",
]
