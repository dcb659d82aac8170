"""
================================================================================
DELIVERY ERROR CLASSIFICATION
================================================================================
Classifies email provider failures for retry decisions.

Rules are evaluated in order and the first hit wins:
- Rate-limit wording, HTTP 429 and SMTP 450 4.7.1 -> RATE_LIMITED
- SMTP 5xx -> PERMANENT
- SMTP 4xx -> TEMPORARY
- Known transport error codes (ETIMEDOUT, ECONNRESET, ...) -> TEMPORARY
- Transient phrases ("try again", "service unavailable", ...) -> TEMPORARY
- Permanent phrases ("mailbox not found", "authentication failed", ...) -> PERMANENT
- Anything else -> UNKNOWN, which is retried like TEMPORARY
"""

import errno
import re
import smtplib
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from docflow.utils.errors import DeliveryError


class DeliveryErrorType(str, Enum):
    """Outcome classes for a failed send."""
    TEMPORARY = "TEMPORARY"
    PERMANENT = "PERMANENT"
    RATE_LIMITED = "RATE_LIMITED"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class ClassifiedDeliveryError:
    """Classification of one delivery failure"""
    type: DeliveryErrorType
    code: Optional[Union[int, str]]
    message: str

    @property
    def is_retryable(self) -> bool:
        return self.type != DeliveryErrorType.PERMANENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "code": self.code,
            "message": self.message,
            "is_retryable": self.is_retryable,
        }


_RESPONSE_CODE = re.compile(r"\b([45]\d{2})\b")


def extract_response_code(message: Optional[str]) -> Optional[int]:
    """First SMTP-looking status (``450``, ``550``...) in ``message``."""
    if not message:
        return None
    match = _RESPONSE_CODE.search(message)
    return int(match.group(1)) if match else None


class DeliveryErrorClassifier:
    """
    Ordered rule set over a provider's response code, transport error code
    and message text.
    """

    RATE_LIMIT_PATTERNS = [
        re.compile(p, re.IGNORECASE) for p in (
            r"exceeded",
            r"rate.?limit",
            r"messages.per.*hour",
            r"too many",
            r"quota exceeded",
            r"sending.?limit",
            r"throttl",
            r"429",
            r"daily.?limit",
            r"4\.7\.1",
        )
    ]

    TRANSIENT_CODES = {
        "ETIMEDOUT", "ECONNRESET", "EAI_AGAIN", "ENOTFOUND",
        "ECONNREFUSED", "ESOCKET", "EPIPE", "EHOSTUNREACH",
        "ENETUNREACH", "EPROTO", "ECONNABORTED",
    }

    TRANSIENT_PATTERNS = [
        "timeout", "timed out", "connection", "network", "temporarily", "try again",
        "service unavailable", "busy", "overload", "please retry",
        "server too busy", "temporary failure", "system not available",
        "resources temporarily unavailable", "connection refused",
    ]

    PERMANENT_PATTERNS = [
        # SMTP
        "user unknown", "mailbox not found", "does not exist",
        "invalid recipient", "rejected", "blocked", "blacklisted",
        "authentication failed", "relay denied", "not allowed",
        # HTTP API providers
        "invalid api key", "unauthorized", "forbidden",
        "domain not verified", "sender not verified", "unsubscribed",
        "invalid_email", "email_invalid", "bounced", "complaint",
        # Office 365
        "recipient rejected", "mailbox unavailable", "action not allowed",
        # General
        "permanent", "fatal", "bad address", "mailbox disabled",
        "no such user", "user disabled", "account disabled",
    ]

    def classify(self, error: BaseException) -> ClassifiedDeliveryError:
        """
        Classify a failed send.

        Args:
            error: The exception raised by the sender

        Returns:
            ClassifiedDeliveryError with type and the code used for the log
        """
        response_code, error_code, message = self._inspect(error)
        if response_code is None:
            response_code = extract_response_code(message)
        lowered = message.lower()

        def result(kind: DeliveryErrorType, code) -> ClassifiedDeliveryError:
            return ClassifiedDeliveryError(type=kind, code=code, message=message)

        for pattern in self.RATE_LIMIT_PATTERNS:
            if pattern.search(message):
                return result(DeliveryErrorType.RATE_LIMITED, response_code or 450)

        if response_code is not None and 500 <= response_code < 600:
            return result(DeliveryErrorType.PERMANENT, response_code)
        if response_code is not None and 400 <= response_code < 500:
            return result(DeliveryErrorType.TEMPORARY, response_code)

        if error_code and error_code.upper() in self.TRANSIENT_CODES:
            return result(DeliveryErrorType.TEMPORARY, error_code.upper())

        for phrase in self.TRANSIENT_PATTERNS:
            if phrase in lowered:
                return result(DeliveryErrorType.TEMPORARY, error_code or "NETWORK")

        for phrase in self.PERMANENT_PATTERNS:
            if phrase in lowered:
                return result(DeliveryErrorType.PERMANENT, response_code or 550)

        return result(DeliveryErrorType.UNKNOWN, None)

    @staticmethod
    def _inspect(error: BaseException) -> Tuple[Optional[int], Optional[str], str]:
        """Pull ``(response_code, error_code, message)`` out of known error types."""
        if isinstance(error, DeliveryError):
            return error.response_code, error.code, error.message or str(error)

        if isinstance(error, smtplib.SMTPResponseException):
            text = error.smtp_error
            if isinstance(text, bytes):
                text = text.decode("utf-8", errors="replace")
            return error.smtp_code, None, f"{error.smtp_code} {text}"

        if isinstance(error, smtplib.SMTPRecipientsRefused):
            refusals = list(error.recipients.values())
            if refusals:
                code, text = refusals[0]
                if isinstance(text, bytes):
                    text = text.decode("utf-8", errors="replace")
                return code, None, f"{code} {text}"
            return None, None, str(error)

        if isinstance(error, (socket.timeout, TimeoutError)):
            return None, "ETIMEDOUT", str(error) or "timeout"

        if isinstance(error, socket.gaierror):
            return None, "EAI_AGAIN", str(error)

        if isinstance(error, OSError) and error.errno in errno.errorcode:
            return None, errno.errorcode[error.errno], str(error)

        return None, None, str(error)


# Global classifier instance
delivery_error_classifier = DeliveryErrorClassifier()


def classify_delivery_error(error: BaseException) -> ClassifiedDeliveryError:
    """Convenience function to classify a delivery failure"""
    return delivery_error_classifier.classify(error)
