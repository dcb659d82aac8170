"""
Document extraction.

Ties the pieces together for one file: read its text, classify it,
resolve a template, extract fields (coordinates, cells or regex
fallback) and score the result. Blocking parsers run in a worker
thread.
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from docflow.extraction.classifier import classify, normalize_type_label
from docflow.extraction.confidence import calculate_confidence
from docflow.extraction.fields import DATE_KEYS, STANDARD_FIELDS, map_to_standard_name
from docflow.extraction.patterns import PROCESSING_METHOD as BASIC_METHOD
from docflow.extraction.patterns import extract_basic
from docflow.extraction.pdf_coordinates import PROCESSING_METHOD as COORDINATE_METHOD
from docflow.extraction.pdf_coordinates import (
    CoordinateExtractor,
    PageCache,
    PdfPlumberDocument,
    read_pdf_text,
    synthetic_full_text,
)
from docflow.extraction.spreadsheet import PROCESSING_METHOD as SPREADSHEET_METHOD
from docflow.extraction.spreadsheet import SpreadsheetExtractor, read_spreadsheet_text
from docflow.extraction.templates import Resolution, ResolutionStep, TemplateResolver
from docflow.extraction.transforms import is_valid_date_format
from docflow.models import DocumentType, ExtractionResult, FileKind, Template
from docflow.utils.errors import DocumentError
from docflow.utils.logger import get_logger

logger = get_logger(__name__)


def missing_field_warnings(fields: Dict[str, Any], template: Template) -> List[str]:
    """Warnings for mandatory fields that came back empty or malformed."""
    warnings = []
    for name in template.mandatory_fields:
        key = map_to_standard_name(name, template.code) or name
        value = fields.get(key)
        label = STANDARD_FIELDS[key].display_name if key in STANDARD_FIELDS else name
        if value is None or value == "":
            warnings.append(f"Missing mandatory field: {label}")
        elif key in DATE_KEYS and not is_valid_date_format(value):
            warnings.append(f"Invalid date format for {label}: {value}")
    return warnings


class DocumentExtractor:
    def __init__(self, resolver: TemplateResolver, cache: Optional[PageCache] = None):
        self.resolver = resolver
        self.coordinates = CoordinateExtractor(cache)
        self.spreadsheets = SpreadsheetExtractor()

    async def read_text(self, path: Path, file_kind: FileKind) -> str:
        if file_kind == FileKind.PDF:
            return await asyncio.to_thread(read_pdf_text, path)
        return await asyncio.to_thread(read_spreadsheet_text, path)

    async def extract(
        self,
        path: Path,
        document_type: Optional[DocumentType] = None,
        template: Optional[Template] = None,
        content_digest: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Extract one file.

        ``document_type`` skips classification; ``template`` skips
        resolution (a type mismatch then only produces a warning).
        """
        path = Path(path)
        file_kind = FileKind.from_path(path.name)
        if file_kind is None:
            raise DocumentError(f"Unsupported file type: {path.name}")

        raw_text = await self.read_text(path, file_kind)
        detected = document_type or classify(raw_text)

        warnings: List[str] = []
        if template is None:
            resolution = await self.resolver.resolve(file_kind, detected)
        else:
            resolution = Resolution(template=template, step=ResolutionStep.DEFAULT)
        warnings.extend(resolution.warnings)
        template = resolution.template

        if template is not None and template.has_coordinates:
            fields, full_text, method = await self._extract_with_template(
                path, file_kind, template, content_digest
            )
            if template.document_type != detected:
                warnings.append(
                    f"Template {template.name} is for {template.document_type.value} "
                    f"but the document was classified as {detected.value}"
                )
            labelled = normalize_type_label(fields.get("document_type"))
            if labelled is not None and labelled != detected:
                warnings.append(
                    f"Document type field says {labelled.value}, classified as {detected.value}"
                )
            warnings.extend(missing_field_warnings(fields, template))
        else:
            if template is not None:
                warnings.append(f"Template {template.name} has no field positions; using basic extraction")
                template = None
            fields = extract_basic(raw_text)
            full_text = raw_text
            method = BASIC_METHOD

        score = calculate_confidence(
            fields,
            template=template,
            full_text=full_text,
            processing_method=method,
        )
        logger.info(
            "document_extracted",
            file_name=path.name,
            document_type=detected.value,
            method=method,
            template_id=template.id if template else None,
            confidence=score,
            warnings=len(warnings),
        )
        return ExtractionResult(
            fields=fields,
            full_text=full_text,
            confidence_score=score,
            processing_method=method,
            warnings=warnings,
            template_id=template.id if template else None,
            document_type=detected,
        )

    async def _extract_with_template(
        self,
        path: Path,
        file_kind: FileKind,
        template: Template,
        content_digest: Optional[str],
    ) -> Tuple[Dict[str, Any], str, str]:
        if file_kind == FileKind.PDF:
            fields = await asyncio.to_thread(self._pdf_fields, path, template, content_digest)
            method = COORDINATE_METHOD
        else:
            fields = await asyncio.to_thread(self.spreadsheets.extract, path, template)
            method = SPREADSHEET_METHOD
        return fields, synthetic_full_text(fields), method

    def _pdf_fields(self, path: Path, template: Template, content_digest: Optional[str]) -> Dict[str, Any]:
        with PdfPlumberDocument(path, fingerprint=content_digest) as document:
            return self.coordinates.extract(document, template)
