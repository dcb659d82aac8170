"""
Template Resolver

Picks the coordinate template for a (file kind, document type) pair.
The chain is walked in order and stops at the first hit:

1. the default template of the exact type and file kind
2. any other enabled template of the exact type
3. PDFs only: the default invoice template
4. any enabled template of the file kind

A candidate whose declared type differs from the requested type is
rejected in steps 1 and 2. Every step taken is recorded as a warning so
fallbacks stay auditable. No hit means basic regex extraction.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from docflow.models import DocumentType, FileKind, Template
from docflow.utils.errors import TemplateMismatchError
from docflow.utils.logger import get_logger
from docflow.utils.storage import TemplateRepository

logger = get_logger(__name__)


class ResolutionStep:
    DEFAULT = "default"
    TYPE_MATCH = "type_match"
    INVOICE_DEFAULT = "invoice_default"
    FILE_KIND_ANY = "file_kind_any"
    NONE = "none"


@dataclass
class Resolution:
    template: Optional[Template]
    step: str
    warnings: List[str] = field(default_factory=list)

    @property
    def is_fallback(self) -> bool:
        return self.step in (ResolutionStep.INVOICE_DEFAULT, ResolutionStep.FILE_KIND_ANY)


def check_template_type(template: Template, document_type: DocumentType) -> None:
    """Raise ``TemplateMismatchError`` unless the template declares this type."""
    if template.document_type != document_type:
        raise TemplateMismatchError(template.id, document_type.value, template.document_type.value)


class TemplateResolver:
    def __init__(self, templates: TemplateRepository):
        self.templates = templates

    async def resolve(self, file_kind: FileKind, document_type: DocumentType) -> Resolution:
        warnings: List[str] = []

        defaults = await self.templates.find(file_kind, document_type, is_default=True)
        for template in defaults[:1]:
            try:
                check_template_type(template, document_type)
            except TemplateMismatchError as e:
                warnings.append(f"Rejected default template {template.id}: {e.message}")
                logger.warning("template_rejected", template_id=template.id,
                               expected=e.expected, actual=e.actual)
            else:
                return self._hit(template, ResolutionStep.DEFAULT, warnings)

        warnings.append(f"No default {file_kind.value} template for {document_type.value}")
        for template in await self.templates.find(file_kind, document_type, is_default=False):
            if template.document_type == document_type:
                warnings.append(f"Using non-default template {template.name}")
                return self._hit(template, ResolutionStep.TYPE_MATCH, warnings)

        if file_kind == FileKind.PDF and document_type != DocumentType.INVOICE:
            invoice_defaults = await self.templates.find(FileKind.PDF, DocumentType.INVOICE, is_default=True)
            if invoice_defaults:
                template = invoice_defaults[0]
                warnings.append(
                    f"No {document_type.value} template; using default invoice template {template.name}"
                )
                return self._hit(template, ResolutionStep.INVOICE_DEFAULT, warnings)

        any_kind = await self.templates.find(file_kind)
        if any_kind:
            template = any_kind[0]
            warnings.append(
                f"No {document_type.value} template; using {template.document_type.value} "
                f"template {template.name}"
            )
            return self._hit(template, ResolutionStep.FILE_KIND_ANY, warnings)

        warnings.append(f"No {file_kind.value} template found; using basic extraction")
        logger.info("template_not_found", file_kind=file_kind.value, document_type=document_type.value)
        return Resolution(template=None, step=ResolutionStep.NONE, warnings=warnings)

    async def by_id(self, template_id: str) -> Optional[Template]:
        return await self.templates.get(template_id)

    @staticmethod
    def _hit(template: Template, step: str, warnings: List[str]) -> Resolution:
        logger.info("template_resolved", template_id=template.id, step=step,
                    document_type=template.document_type.value)
        return Resolution(template=template, step=step, warnings=warnings)
