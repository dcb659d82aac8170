"""Outbound email: queueing, rate limiting, delivery and failure classification."""

from docflow.notify.email_queue import EMAIL_JOB, EmailQueue, email_job_id
from docflow.notify.error_classification import (
    ClassifiedDeliveryError,
    DeliveryErrorClassifier,
    DeliveryErrorType,
    classify_delivery_error,
)
from docflow.notify.rate_limiter import ProviderRateLimiters, ReservoirLimiter
from docflow.notify.senders import EmailSender, OutboundEmail, SendResult, SmtpSender

__all__ = [
    "EMAIL_JOB",
    "EmailQueue",
    "email_job_id",
    "ClassifiedDeliveryError",
    "DeliveryErrorClassifier",
    "DeliveryErrorType",
    "classify_delivery_error",
    "ProviderRateLimiters",
    "ReservoirLimiter",
    "EmailSender",
    "OutboundEmail",
    "SendResult",
    "SmtpSender",
]
