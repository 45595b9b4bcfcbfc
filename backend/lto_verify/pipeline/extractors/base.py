"""Base extractor interface and the pattern tables shared by vehicle documents."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from lto_verify.config import TRACE_ENABLED
from lto_verify.pipeline.models import ExtractedFields

logger = logging.getLogger(__name__)


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


@dataclass(frozen=True)
class DocumentText:
    """The three views of a document's text that patterns run against.

    ``text`` keeps the original case (names, addresses, company names);
    ``upper`` is what identifier patterns match.  Both have whitespace
    collapsed so labels split across OCR lines still match.
    """
    raw: str
    text: str
    upper: str

    @classmethod
    def of(cls, raw: str) -> "DocumentText":
        collapsed = re.sub(r'\s+', ' ', raw or "").strip()
        return cls(raw=raw or "", text=collapsed, upper=collapsed.upper())


Step = Callable[[DocumentText, ExtractedFields], None]


class BaseExtractor(ABC):
    """Abstract base for document-type-specific field extractors.

    Subclasses list their extraction ``steps``.  Each step fills
    ``fields`` in place, so an exception inside one step loses only that
    step's fields.
    """

    document_type: str = "other"

    @abstractmethod
    def steps(self) -> list[Step]:
        """Ordered extraction steps for this document type."""

    def extract(self, text: str) -> ExtractedFields:
        fields = ExtractedFields(document_type=self.document_type)
        doc = DocumentText.of(text)
        if not doc.upper:
            return fields
        for step in self.steps():
            try:
                step(doc, fields)
            except Exception as e:
                logger.warning(
                    f"{type(self).__name__}: step {getattr(step, '__name__', step)} failed ({e}); "
                    f"keeping {len(fields)} field(s) extracted so far"
                )
        _trace(f"{self.document_type}: extracted {sorted(fields.values)}")
        return fields


# ═══════════════════════════════════════════════════
# PATTERN HELPERS
# ═══════════════════════════════════════════════════

def first_match(patterns: list[re.Pattern], haystack: str) -> re.Match | None:
    """Return the first match from an ordered pattern table."""
    for pattern in patterns:
        m = pattern.search(haystack)
        if m:
            return m
    return None


def set_first(
    fields: ExtractedFields,
    name: str,
    patterns: list[re.Pattern],
    haystack: str,
    transform: Callable[[str], object] | None = None,
) -> bool:
    """Set ``name`` from the first matching pattern (group 1) if not already set."""
    if name in fields:
        return False
    m = first_match(patterns, haystack)
    if not m:
        return False
    value = m.group(1).strip(" .,:;")
    if transform is not None:
        value = transform(value)
    if value is None:
        return False
    fields.set(name, value)
    return True


def _c(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


_NO = r'(?:\s*(?:NUMBER|NO|#))?\.?\s*[:.#]?\s*'
_HAS_DIGIT = r'(?=[A-Z0-9\-]*\d)'
DATE_VALUE = r'(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}|\d{4}-\d{2}-\d{2})'


# ═══════════════════════════════════════════════════
# SHARED VEHICLE IDENTIFIER TABLES
# ═══════════════════════════════════════════════════

# Compound labels ("CHASSIS/VIN") must precede the bare ones
VIN_PATTERNS = [
    _c(r'(?:CHASSIS\s*/\s*VIN|VIN\s*/\s*CHASSIS)' + _NO + r'([A-HJ-NPR-Z0-9]{17})\b'),
    _c(r'\bVIN' + _NO + r'([A-HJ-NPR-Z0-9]{17})\b'),
    _c(r'\bCHASSIS' + _NO + r'([A-HJ-NPR-Z0-9]{17})\b'),
]

# Non-17-character chassis / frame numbers (older or imported units)
CHASSIS_PATTERNS = [
    _c(r'\b(?:CHASSIS|FRAME)' + _NO + _HAS_DIGIT + r'([A-Z0-9\-]{10,17})\b'),
]

ENGINE_PATTERNS = [
    _c(r'\b(?:ENGINE|MOTOR)' + _NO + _HAS_DIGIT + r'([A-Z0-9\-]{6,20})\b'),
]

PLATE_TO_BE_ISSUED = _c(r'\bPLATE' + _NO + r'TO\s+BE\s+ISSUED\b')

PLATE_PATTERNS = [
    _c(r'\bPLATE' + _NO + r'([A-Z]{2,3}[\s\-]?\d{3,4})\b'),
]

PLATE_BARE_PATTERNS = [
    _c(r'\b([A-Z]{3}[\s\-]?\d{3,4})\b'),
]

_VEHICLE_LABELS = r'(?:MAKE|BRAND|MODEL|SERIES|YEAR|ENGINE|MOTOR|COLOU?R|PAINT|VIN|CHASSIS|FRAME|BODY|PLATE|FUEL|PRICE|AMOUNT|TOTAL)'

MAKE_PATTERNS = [
    _c(r'\b(?:MAKE|BRAND)\s*[:.]?\s*([A-Z][A-Z\-]*(?:\s+(?!' + _VEHICLE_LABELS + r'\b)[A-Z][A-Z\-]*)?)'),
]

SERIES_PATTERNS = [
    _c(r'\bSERIES\s*[:.]?\s*([A-Z0-9][A-Z0-9.\-]*(?:\s+(?!' + _VEHICLE_LABELS + r'\b)[A-Z0-9][A-Z0-9.\-]*){0,3})'),
]

MODEL_PATTERNS = [
    _c(r'(?<!YEAR\s)\bMODEL(?!\s*YEAR)\s*[:.]?\s*(?!YEAR\b)([A-Z0-9][A-Z0-9.\-]*(?:\s+(?!' + _VEHICLE_LABELS + r'\b)[A-Z0-9][A-Z0-9.\-]*){0,3})'),
]

YEAR_MODEL_PATTERNS = [
    _c(r'\b(?:YEAR\s*MODEL|MODEL\s*YEAR)\s*[:.]?\s*((?:19|20)\d{2})\b'),
]

YEAR_PATTERNS = [
    _c(r'\bYEAR\s*[:.]?\s*((?:19|20)\d{2})\b'),
]

COLOR_PATTERNS = [
    _c(r'\b(?:COLOU?R|PAINT)\s*[:.]?\s*([A-Z]+(?:\s+(?!' + _VEHICLE_LABELS + r'\b)[A-Z]+)?)'),
]


def format_plate(value: str) -> str:
    return re.sub(r'\s+', '-', value.strip().upper())


def set_vin(fields: ExtractedFields, value: str) -> None:
    """VIN and chassis number are the same identifier on these documents."""
    value = value.strip().upper()
    fields.set("vin", value)
    fields.set("chassisNumber", value)


def extract_vin_and_chassis(doc: DocumentText, fields: ExtractedFields) -> None:
    if "vin" in fields:
        return
    m = first_match(VIN_PATTERNS, doc.upper) or first_match(CHASSIS_PATTERNS, doc.upper)
    if m:
        set_vin(fields, m.group(1))


def extract_engine(doc: DocumentText, fields: ExtractedFields) -> None:
    set_first(fields, "engineNumber", ENGINE_PATTERNS, doc.upper, str.upper)


def extract_plate(doc: DocumentText, fields: ExtractedFields, *, allow_bare: bool = False) -> None:
    """Labeled plate first; "to be issued" yields an explicit empty string."""
    if "plateNumber" in fields:
        return
    if PLATE_TO_BE_ISSUED.search(doc.upper):
        fields.set("plateNumber", "")
        return
    if set_first(fields, "plateNumber", PLATE_PATTERNS, doc.upper, format_plate):
        return
    if allow_bare:
        set_first(fields, "plateNumber", PLATE_BARE_PATTERNS, doc.upper, format_plate)


def extract_vehicle_description(doc: DocumentText, fields: ExtractedFields) -> None:
    """Make, series/model, year model, and color."""
    set_first(fields, "make", MAKE_PATTERNS, doc.upper)
    set_first(fields, "series", SERIES_PATTERNS, doc.upper)
    set_first(fields, "model", MODEL_PATTERNS, doc.upper)
    set_first(fields, "yearModel", YEAR_MODEL_PATTERNS, doc.upper)
    set_first(fields, "year", YEAR_PATTERNS, doc.upper)
    set_first(fields, "color", COLOR_PATTERNS, doc.upper)


def extract_vehicle_identifiers(doc: DocumentText, fields: ExtractedFields) -> None:
    extract_vin_and_chassis(doc, fields)
    extract_engine(doc, fields)
    extract_plate(doc, fields)
