"""Classification, template resolution, field extraction and scoring."""

from docflow.extraction.classifier import classify, normalize_type_label
from docflow.extraction.confidence import calculate_confidence
from docflow.extraction.extractor import DocumentExtractor
from docflow.extraction.patterns import extract_basic
from docflow.extraction.pdf_coordinates import (
    CoordinateExtractor,
    PageCache,
    PageLayout,
    TextPrimitive,
    extract_region_text,
)
from docflow.extraction.spreadsheet import SpreadsheetExtractor
from docflow.extraction.templates import Resolution, TemplateResolver
from docflow.extraction.transforms import apply_transforms

__all__ = [
    "classify",
    "normalize_type_label",
    "calculate_confidence",
    "DocumentExtractor",
    "extract_basic",
    "CoordinateExtractor",
    "PageCache",
    "PageLayout",
    "TextPrimitive",
    "extract_region_text",
    "SpreadsheetExtractor",
    "Resolution",
    "TemplateResolver",
    "apply_transforms",
]
