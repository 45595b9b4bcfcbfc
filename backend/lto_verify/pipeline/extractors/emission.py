"""Emission test certificate extractor."""

from __future__ import annotations

import logging

from lto_verify.pipeline.extractors.base import (
    DATE_VALUE,
    BaseExtractor,
    DocumentText,
    Step,
    _HAS_DIGIT,
    _c,
    extract_vehicle_identifiers,
    first_match,
    set_first,
)
from lto_verify.pipeline.extractors.insurance import EXPIRY_PATTERNS
from lto_verify.pipeline.models import ExtractedFields
from lto_verify.pipeline.utils import parse_number

logger = logging.getLogger(__name__)

_CERTIFICATE_PATTERNS = [
    _c(r'\b(?:CERTIFICATE|CERT\.?|CTR|TEST\s+REPORT)\s*(?:NUMBER|NO|#)\.?\s*[:.#]?\s*' + _HAS_DIGIT + r'([A-Z0-9\-]{4,25})\b'),
]

_TEST_DATE_PATTERNS = [
    _c(r'\b(?:TEST\s*DATE|DATE\s*(?:OF\s*)?TEST(?:ED|ING)?|TESTED\s+ON)\s*[:.]?\s*' + DATE_VALUE),
]

_TEST_CENTER_PATTERNS = [
    _c(r"\b(?:TEST(?:ING)?\s+CENT(?:ER|RE)|EMISSION\s+CENT(?:ER|RE)|PETC)\s*(?:NAME)?\s*[:.]?\s*"
       r"([A-Z0-9][A-Z0-9&.,'\- ]{2,60}?)"
       r"(?=\s+(?:ADDRESS|DATE|TEST\s+DATE|PLATE|VEHICLE|CO|HC|OPACITY|SMOKE|RESULT|STATUS|VALID\w*|EXPIR\w*|CERTIFICATE|CERT)\b|$)"),
]

_NUM = r'(\d+(?:\.\d+)?)'

_CO_PATTERNS = [
    _c(r'\b(?:CO|CARBON\s+MONOXIDE)\b\s*(?:\(%\))?\s*[:=]?\s*' + _NUM + r'\s*%?'),
]
_HC_PATTERNS = [
    _c(r'\b(?:HC|HYDROCARBONS?)\b\s*(?:\(PPM\))?\s*[:=]?\s*' + _NUM + r'\s*(?:PPM)?'),
]
_SMOKE_PATTERNS = [
    _c(r'\b(?:SMOKE(?:\s+OPACITY)?|OPACITY)\b\s*(?:\(%\))?\s*[:=]?\s*' + _NUM + r'\s*%?'),
]

_RESULT_PATTERNS = [
    _c(r'\b(?:RESULT|STATUS|REMARKS?)\s*[:.]?\s*(PASSED|FAILED|PASS|FAIL)\b'),
    _c(r'\b(PASSED|FAILED)\b'),
]


def _normalize_result(value: str) -> str:
    return "PASSED" if value.upper().startswith("PASS") else "FAILED"


class EmissionExtractor(BaseExtractor):
    """Test readings, dates, and certificate number from an emission test result."""

    document_type = "emission_cert"

    def steps(self) -> list[Step]:
        return [
            self._certificate,
            self._dates,
            self._test_center,
            self._readings,
            self._result,
            extract_vehicle_identifiers,
        ]

    @staticmethod
    def _certificate(doc: DocumentText, fields: ExtractedFields) -> None:
        set_first(fields, "certificateNumber", _CERTIFICATE_PATTERNS, doc.upper)

    @staticmethod
    def _dates(doc: DocumentText, fields: ExtractedFields) -> None:
        set_first(fields, "testDate", _TEST_DATE_PATTERNS, doc.upper)
        set_first(fields, "expiryDate", EXPIRY_PATTERNS, doc.upper)

    @staticmethod
    def _test_center(doc: DocumentText, fields: ExtractedFields) -> None:
        set_first(fields, "testCenter", _TEST_CENTER_PATTERNS, doc.text)

    @staticmethod
    def _readings(doc: DocumentText, fields: ExtractedFields) -> None:
        for name, patterns in (("co", _CO_PATTERNS), ("hc", _HC_PATTERNS), ("smoke", _SMOKE_PATTERNS)):
            m = first_match(patterns, doc.upper)
            if m:
                value = parse_number(m.group(1))
                if value is not None:
                    fields.set_default(name, value)

    @staticmethod
    def _result(doc: DocumentText, fields: ExtractedFields) -> None:
        set_first(fields, "testResult", _RESULT_PATTERNS, doc.upper, _normalize_result)
