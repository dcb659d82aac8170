"""
Email queue helper.

Every outbound email gets an ``EmailLog`` first, then one job on the
email queue whose id is derived from the log id, so queueing the same
log twice never produces two sends.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from docflow.ingestion.run_stats import ScanResult
from docflow.models import EmailLog, EmailPayload, EmailStatus
from docflow.queue.jobs import JobState
from docflow.queue.job_queue import JobQueue
from docflow.utils.logger import get_logger
from docflow.utils.storage import EmailLogRepository

logger = get_logger(__name__)

EMAIL_JOB = "send-email"


def email_job_id(log_id: str) -> str:
    return f"email_{log_id}"


class EmailQueue:
    def __init__(
        self,
        queue: JobQueue,
        logs: EmailLogRepository,
        provider: str = "smtp",
        max_attempts: int = 10,
    ):
        self.queue = queue
        self.logs = logs
        self.provider = provider
        self.max_attempts = max_attempts

    async def queue_email(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        attachments: Sequence[str] = (),
        related_document_id: Optional[str] = None,
        provider_settings: Optional[Dict[str, Any]] = None,
    ) -> EmailLog:
        """
        Log and enqueue one email.

        The log is written before the job exists. If enqueueing fails the
        log is marked ``FAILED_PERMANENT`` and the error is re-raised.
        """
        if not recipients:
            raise ValueError("at least one recipient is required")

        log = EmailLog(
            recipients=list(recipients),
            subject=subject,
            body=body,
            attachments=list(attachments),
            provider=self.provider,
            status=EmailStatus.QUEUED,
            max_attempts=self.max_attempts,
            related_document_id=related_document_id,
        )
        await self.logs.create(log)

        payload = EmailPayload(
            delivery_log_id=log.id,
            recipients=log.recipients,
            subject=subject,
            body=body,
            attachments=log.attachments,
            provider_settings=provider_settings or {"provider": self.provider},
        )
        try:
            job = await self.queue.add(EMAIL_JOB, payload.to_job_data(), job_id=email_job_id(log.id))
        except Exception as e:
            log.status = EmailStatus.FAILED_PERMANENT
            log.last_error = str(e)[:1000]
            await self.logs.update(log)
            logger.error("email_enqueue_failed", email_log_id=log.id, error=str(e))
            raise

        logger.info(
            "email_queued",
            email_log_id=log.id,
            job_id=job.id,
            recipients=len(log.recipients),
            subject=subject,
        )
        return log

    def stats(self) -> Dict[str, int]:
        counts = self.queue.counts()
        counts["total"] = sum(counts.values())
        return counts

    def failed_jobs(self, limit: int = 50) -> List[Dict[str, Any]]:
        jobs = self.queue.get_jobs([JobState.FAILED])
        jobs.sort(key=lambda j: j.finished_on or 0, reverse=True)
        return [
            {
                "id": job.id,
                "email_log_id": job.data.get("deliveryLogId"),
                "recipients": job.data.get("recipients", []),
                "subject": job.data.get("subject"),
                "failed_reason": job.failed_reason,
                "attempts_made": job.attempts_made,
                "finished_on": job.finished_on,
            }
            for job in jobs[:limit]
        ]

    async def retry_email(self, log_id: str) -> bool:
        """
        Send a failed email again.

        The failed job is retried in place when the queue still holds it;
        otherwise a fresh job is built from the log.
        """
        log = await self.logs.get(log_id)
        if log is None:
            return False
        if log.status == EmailStatus.SENT:
            logger.info("email_retry_skipped_sent", email_log_id=log_id)
            return False

        job_id = email_job_id(log_id)
        job = self.queue.get_job(job_id)
        if job is not None and job.state != JobState.FAILED:
            logger.info("email_retry_skipped_pending", email_log_id=log_id, state=job.state.value)
            return False

        log.status = EmailStatus.QUEUED
        log.last_error = None
        log.error_code = None
        log.error_type = None
        await self.logs.update(log)

        if job is not None:
            await self.queue.retry_job(job_id)
        else:
            payload = EmailPayload(
                delivery_log_id=log.id,
                recipients=log.recipients,
                subject=log.subject,
                body=log.body,
                attachments=log.attachments,
                provider_settings={"provider": log.provider},
            )
            await self.queue.add(EMAIL_JOB, payload.to_job_data(), job_id=job_id)
        logger.info("email_retry_queued", email_log_id=log_id)
        return True

    async def logs_page(
        self,
        page: int = 1,
        page_size: int = 50,
        status: Optional[EmailStatus] = None,
    ) -> Tuple[List[EmailLog], int]:
        return await self.logs.list_logs(page=page, page_size=page_size, status=status)

    async def send_scan_summary(self, result: ScanResult, admins: Sequence[str]) -> Optional[EmailLog]:
        """Mail a scan summary to admins when the scan queued files or hit errors."""
        if not admins or (result.queued == 0 and not result.errors):
            return None
        lines = [
            f"Source: {result.source}",
            f"Scanned: {result.scanned}",
            f"Queued: {result.queued}",
            f"Duplicates: {result.duplicates}",
            f"Skipped: {result.skipped}",
            f"Errors: {len(result.errors)}",
            f"Duration: {result.duration_ms} ms",
        ]
        if result.errors:
            lines.append("")
            lines.extend(f"{e['file']}: {e['error']}" for e in result.errors)
        subject = f"Document scan: {result.queued} queued, {len(result.errors)} errors"
        return await self.queue_email(admins, subject, "\n".join(lines))
