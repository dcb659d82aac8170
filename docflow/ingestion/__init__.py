"""Source scanning, hashing, deduplication, retention and file routing."""

from docflow.ingestion.dedup import DeduplicationIndex
from docflow.ingestion.hashing import hash_bytes, hash_file
from docflow.ingestion.retention import calculate_expiry, retention_start, should_delete
from docflow.ingestion.router import FileRouter, TerminalState
from docflow.ingestion.run_stats import RunStatsStore, ScanResult
from docflow.ingestion.scanner import SourceScanner
from docflow.ingestion.sources import (
    DocumentSource,
    FtpSource,
    LocalFolderSource,
    SftpSource,
    source_from_config,
)

__all__ = [
    "DeduplicationIndex",
    "hash_bytes",
    "hash_file",
    "calculate_expiry",
    "retention_start",
    "should_delete",
    "FileRouter",
    "TerminalState",
    "RunStatsStore",
    "ScanResult",
    "SourceScanner",
    "DocumentSource",
    "FtpSource",
    "LocalFolderSource",
    "SftpSource",
    "source_from_config",
]
