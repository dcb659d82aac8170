"""
Job Payload Models

One explicit schema per queue. Payloads are validated when a worker picks
a job up, never trusted by shape.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_job_data(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class FileImportPayload(_Payload):
    """Download one remote file and hand it to invoice-import."""
    kind: Literal["file-import"] = "file-import"
    file_name: str
    remote_or_local_path: str
    source_config: Dict[str, Any] = Field(default_factory=dict)
    ftp_folder: Optional[str] = None
    import_batch_id: Optional[str] = None


class InvoiceImportPayload(_Payload):
    """Classify, extract, match and route one local file."""
    kind: Literal["invoice-import"] = "invoice-import"
    file_path: str
    file_name: str
    import_batch_id: Optional[str] = None
    source_tag: str = "local"
    content_digest: Optional[str] = None
    is_duplicate: bool = False
    duplicate_of_id: Optional[str] = None


class BulkParsingPayload(_Payload):
    """Parse a file without persisting or moving it."""
    kind: Literal["bulk-parsing-test"] = "bulk-parsing-test"
    file_path: str
    file_name: str
    template_id: Optional[str] = None


class EmailPayload(_Payload):
    """Deliver one logged email."""
    kind: Literal["email"] = "email"
    delivery_log_id: str
    recipients: List[str] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    attachments: List[str] = Field(default_factory=list)
    provider_settings: Dict[str, Any] = Field(default_factory=dict)


class ScheduledTaskPayload(_Payload):
    """Named maintenance task."""
    kind: Literal["scheduled-tasks"] = "scheduled-tasks"
    task_name: str


JobPayload = Annotated[
    Union[
        FileImportPayload,
        InvoiceImportPayload,
        BulkParsingPayload,
        EmailPayload,
        ScheduledTaskPayload,
    ],
    Field(discriminator="kind"),
]

_payload_adapter = TypeAdapter(JobPayload)


def parse_payload(queue_name: str, data: Dict[str, Any]):
    """
    Validate raw job data against the schema of ``queue_name``.

    Raises pydantic.ValidationError when the data does not fit.
    """
    tagged = dict(data)
    tagged.setdefault("kind", queue_name)
    if tagged["kind"] != queue_name:
        raise ValueError(f"payload kind {tagged['kind']!r} does not belong on queue {queue_name!r}")
    return _payload_adapter.validate_python(tagged)
