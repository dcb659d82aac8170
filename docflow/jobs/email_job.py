"""
email job.

Sends one logged email. The delivery log makes the job idempotent: a log
already marked ``SENT`` short-circuits, so a retried job never sends
twice. Failures are classified; permanent ones stop retries and
everything else is deferred for the queue's backoff.
"""

from typing import Any, Dict

from docflow.jobs.context import PipelineContext
from docflow.models import EmailPayload, EmailStatus, utc_now
from docflow.notify.error_classification import DeliveryErrorType, delivery_error_classifier
from docflow.notify.senders import OutboundEmail
from docflow.queue.jobs import Job
from docflow.utils.errors import UnrecoverableJobError
from docflow.utils.logger import get_logger

logger = get_logger(__name__)


async def process_email(ctx: PipelineContext, job: Job, payload: EmailPayload) -> Dict[str, Any]:
    logs = ctx.storage.email_logs
    log = await logs.get(payload.delivery_log_id)
    if log is not None and log.status == EmailStatus.SENT:
        logger.info("email_already_sent", job_id=job.id, email_log_id=log.id)
        return {"already_sent": True, "email_log_id": log.id}

    if log is not None:
        log.status = EmailStatus.SENDING
        log.attempts = job.attempts_made + 1
        await logs.update(log)

    provider = payload.provider_settings.get("provider") or ctx.settings.email_provider
    email = OutboundEmail(
        recipients=list(payload.recipients),
        subject=payload.subject,
        body=payload.body,
        attachments=list(payload.attachments),
    )

    try:
        result = await ctx.rate_limiters.schedule(provider, lambda: ctx.sender.send(email))
    except Exception as e:
        classified = delivery_error_classifier.classify(e)
        logger.error(
            "email_send_failed",
            job_id=job.id,
            email_log_id=payload.delivery_log_id,
            code=classified.code,
            type=classified.type.value,
            error=classified.message,
        )
        permanent = classified.type == DeliveryErrorType.PERMANENT
        if log is not None:
            log.status = EmailStatus.FAILED_PERMANENT if permanent else EmailStatus.DEFERRED
            log.last_error = classified.message[:1000]
            log.error_code = str(classified.code) if classified.code is not None else None
            log.error_type = classified.type.value
            await logs.update(log)
        if permanent:
            raise UnrecoverableJobError(
                f"Permanent failure ({classified.code}): {classified.message}",
                context=classified.to_dict(),
            ) from e
        raise

    if log is not None:
        log.status = EmailStatus.SENT
        log.message_id = result.message_id
        log.provider = result.provider
        log.sent_at = utc_now()
        log.last_error = None
        log.error_code = None
        log.error_type = None
        await logs.update(log)

    return {
        "success": True,
        "email_log_id": payload.delivery_log_id,
        "message_id": result.message_id,
        "provider": result.provider,
        "recipient_count": result.recipient_count,
    }
