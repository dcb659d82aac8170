"""
Pipeline context.

Everything a job processor needs, built once per process and handed to
every processor call. Job code never reads the settings singleton.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from docflow.core.config import Settings
from docflow.extraction.extractor import DocumentExtractor
from docflow.extraction.pdf_coordinates import PageCache
from docflow.extraction.templates import TemplateResolver
from docflow.ingestion.dedup import DeduplicationIndex
from docflow.ingestion.router import FileRouter
from docflow.ingestion.run_stats import RunStatsStore
from docflow.matching import EntityMatcher
from docflow.notify.email_queue import EmailQueue
from docflow.notify.rate_limiter import ProviderRateLimiters
from docflow.notify.senders import EmailSender, SmtpSender
from docflow.queue.cancellation import ImportBatchStore
from docflow.queue.jobs import EMAIL
from docflow.queue.job_queue import JobQueue
from docflow.utils.errors import ConfigurationError
from docflow.utils.storage import Storage


@dataclass
class PipelineContext:
    settings: Settings
    storage: Storage
    queues: Dict[str, JobQueue]
    dedup: DeduplicationIndex
    router: FileRouter
    extractor: DocumentExtractor
    matcher: EntityMatcher
    batches: ImportBatchStore
    rate_limiters: ProviderRateLimiters
    sender: EmailSender
    email_queue: Optional[EmailQueue] = None
    run_stats: Optional[RunStatsStore] = None
    page_cache: PageCache = field(default_factory=PageCache)

    @classmethod
    def build(
        cls,
        settings: Settings,
        storage: Storage,
        queues: Dict[str, JobQueue],
        sender: Optional[EmailSender] = None,
        batches: Optional[ImportBatchStore] = None,
    ) -> "PipelineContext":
        page_cache = PageCache()
        email_queue = None
        if EMAIL in queues:
            email_queue = EmailQueue(
                queues[EMAIL],
                storage.email_logs,
                provider=settings.email_provider,
                max_attempts=settings.email_max_attempts,
            )
        return cls(
            settings=settings,
            storage=storage,
            queues=queues,
            dedup=DeduplicationIndex(storage.documents, settings.document_retention_days),
            router=FileRouter(settings.processed_path, settings.failed_path, storage.documents),
            extractor=DocumentExtractor(TemplateResolver(storage.templates), page_cache),
            matcher=EntityMatcher(storage.companies),
            batches=batches or ImportBatchStore(ttl_hours=settings.import_batch_ttl_hours),
            rate_limiters=ProviderRateLimiters.from_settings(settings),
            sender=sender or SmtpSender.from_settings(settings),
            email_queue=email_queue,
            run_stats=RunStatsStore(settings.run_stats_path),
            page_cache=page_cache,
        )

    def queue(self, name: str) -> JobQueue:
        try:
            return self.queues[name]
        except KeyError:
            raise ConfigurationError(f"Queue {name} is not configured") from None
