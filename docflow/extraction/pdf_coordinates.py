"""
PDF Coordinate Extraction

Reads template regions out of a PDF's text layout.

A page is reduced to a ``PageLayout``: its size plus one ``TextPrimitive``
per word, anchored in a bottom-left-origin space at 1.0 scale. Regions
are authored in normalized top-left-origin fractions, so each anchor is
converted with::

    norm_x = x / width
    norm_y = 1 - y / height

A word belongs to a region when its normalized anchor lies inside
``[left, right] x [top, bottom]``. Words in a region are grouped into
lines (normalized Y within ``LINE_TOLERANCE``), each line read left to
right, and everything is joined with single spaces.
"""

import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pdfplumber

from docflow.extraction.fields import map_to_standard_name
from docflow.extraction.transforms import apply_transforms
from docflow.ingestion.hashing import hash_file_sync
from docflow.models import FieldRegion, Template
from docflow.utils.errors import DocumentError, ExtractionError
from docflow.utils.logger import get_logger

logger = get_logger(__name__)

PROCESSING_METHOD = "local_coordinates"

# Normalized Y distance under which two words share a line
LINE_TOLERANCE = 0.01


@dataclass(frozen=True)
class TextPrimitive:
    """One word of the text layout, anchored bottom-left."""
    text: str
    x: float
    y: float


@dataclass
class PageLayout:
    width: float
    height: float
    primitives: List[TextPrimitive] = field(default_factory=list)

    def normalized(self, primitive: TextPrimitive) -> Tuple[float, float]:
        return primitive.x / self.width, 1 - primitive.y / self.height


class PdfDocument(ABC):
    """Source of page layouts for one PDF."""

    fingerprint: str
    page_count: int

    @abstractmethod
    def load_page(self, page_number: int) -> PageLayout:
        """Layout of a 1-based page."""

    def full_text(self) -> str:
        return ""

    def close(self) -> None:
        pass


class PdfPlumberDocument(PdfDocument):
    """``PdfDocument`` backed by pdfplumber word extraction."""

    def __init__(self, path: Union[str, Path], fingerprint: Optional[str] = None):
        self.path = Path(path)
        try:
            self._pdf = pdfplumber.open(self.path)
        except Exception as e:
            raise DocumentError(f"Cannot open PDF {self.path.name}: {e}") from e
        self.fingerprint = fingerprint or hash_file_sync(self.path)
        self.page_count = len(self._pdf.pages)

    def load_page(self, page_number: int) -> PageLayout:
        page = self._pdf.pages[page_number - 1]
        height = float(page.height)
        primitives = [
            TextPrimitive(
                text=word["text"],
                x=float(word["x0"]),
                y=height - float(word["bottom"]),
            )
            for word in page.extract_words(keep_blank_chars=False, use_text_flow=False)
        ]
        return PageLayout(width=float(page.width), height=height, primitives=primitives)

    def full_text(self) -> str:
        parts = []
        for page in self._pdf.pages:
            text = page.extract_text()
            if text:
                parts.append(text)
        return "\n".join(parts)

    def close(self) -> None:
        self._pdf.close()

    def __enter__(self) -> "PdfPlumberDocument":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def read_pdf_text(path: Union[str, Path]) -> str:
    """Plain text of every page, used for classification and the regex fallback."""
    with PdfPlumberDocument(path, fingerprint="-") as document:
        return document.full_text()


class PageCache:
    """Parsed page layouts keyed by ``{fingerprint}-{page}``. Thread safe."""

    def __init__(self, max_entries: int = 64):
        self.max_entries = max_entries
        self._pages: "OrderedDict[str, PageLayout]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(fingerprint: str, page_number: int) -> str:
        return f"{fingerprint}-{page_number}"

    def get(self, document: PdfDocument, page_number: int) -> PageLayout:
        key = self.key(document.fingerprint, page_number)
        with self._lock:
            layout = self._pages.get(key)
            if layout is not None:
                self.hits += 1
                self._pages.move_to_end(key)
                return layout
            self.misses += 1

        layout = document.load_page(page_number)
        with self._lock:
            self._pages[key] = layout
            if len(self._pages) > self.max_entries:
                self._pages.popitem(last=False)
        return layout

    def clear(self) -> None:
        with self._lock:
            self._pages.clear()

    def __len__(self) -> int:
        return len(self._pages)


def select_primitives(layout: PageLayout, region: FieldRegion) -> List[TextPrimitive]:
    selected = []
    for primitive in layout.primitives:
        norm_x, norm_y = layout.normalized(primitive)
        if region.left <= norm_x <= region.right and region.top <= norm_y <= region.bottom:
            selected.append(primitive)
    return selected


def order_primitives(layout: PageLayout, primitives: List[TextPrimitive]) -> List[TextPrimitive]:
    """Top-to-bottom lines, each read left to right."""
    by_y = sorted(primitives, key=lambda p: (layout.normalized(p)[1], p.x))
    lines: List[List[TextPrimitive]] = []
    line_y: Optional[float] = None
    for primitive in by_y:
        norm_y = layout.normalized(primitive)[1]
        if line_y is None or abs(norm_y - line_y) > LINE_TOLERANCE:
            lines.append([])
            line_y = norm_y
        lines[-1].append(primitive)

    ordered = []
    for line in lines:
        ordered.extend(sorted(line, key=lambda p: p.x))
    return ordered


def extract_region_text(layout: PageLayout, region: FieldRegion) -> Optional[str]:
    """Joined text inside ``region``, or None when nothing falls inside."""
    primitives = order_primitives(layout, select_primitives(layout, region))
    text = " ".join(p.text for p in primitives).strip()
    return text or None


class CoordinateExtractor:
    """
    Applies a template's regions to a PDF.

    Field names are mapped onto standard names where possible; custom
    names are kept as written. A region that holds no words yields None.
    """

    def __init__(self, cache: Optional[PageCache] = None):
        self.cache = cache if cache is not None else PageCache()

    def extract(self, document: PdfDocument, template: Template) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        for name, definition in template.fields.items():
            region = definition.region
            if region is None:
                continue
            if region.page > document.page_count:
                raise ExtractionError(
                    f"Page {region.page} does not exist in PDF",
                    context={"template_id": template.id, "field": name},
                )
            layout = self.cache.get(document, region.page)
            raw = extract_region_text(layout, region)
            key = map_to_standard_name(name, template.code) or name
            fields[key] = apply_transforms(raw, definition.transform)

        logger.debug(
            "coordinate_fields_extracted",
            template_id=template.id,
            fields=len(fields),
            populated=sum(1 for v in fields.values() if v not in (None, "")),
        )
        return fields


def synthetic_full_text(fields: Dict[str, Any]) -> str:
    """Text view of only the extracted values, one per line."""
    return "\n".join(str(v) for v in fields.values() if v not in (None, ""))
