"""Certificate of Registration / OR-CR extractor."""

from __future__ import annotations

import logging

from lto_verify.pipeline.extractors.base import (
    BaseExtractor,
    DocumentText,
    Step,
    _HAS_DIGIT,
    _NO,
    _c,
    extract_engine,
    extract_plate,
    extract_vehicle_description,
    extract_vin_and_chassis,
    set_first,
)
from lto_verify.pipeline.models import ExtractedFields

logger = logging.getLogger(__name__)

_MV_FILE_PATTERNS = [
    _c(r'\bMV\s*FILE' + _NO + r'(\d[\d\-]{7,19})\b'),
]

_CR_NUMBER_PATTERNS = [
    _c(r'\b(?:CERTIFICATE\s+OF\s+REGISTRATION(?:\s*(?:NUMBER|NO|#))?|CR\s*(?:NUMBER|NO|#))\.?\s*[:.#]?\s*' + _HAS_DIGIT + r'([A-Z0-9\-]{4,20})\b'),
]

_OR_NUMBER_PATTERNS = [
    _c(r'\b(?:OFFICIAL\s+RECEIPT(?:\s*(?:NUMBER|NO|#))?|OR\s*(?:NUMBER|NO|#))\.?\s*[:.#]?\s*' + _HAS_DIGIT + r'([A-Z0-9\-]{4,20})\b'),
]

_OWNER_PATTERNS = [
    _c(r"\b(?:REGISTERED\s+OWNER|OWNER'?S?\s+NAME|OWNER)\s*[:.]?\s*"
       r"([A-Z][A-Z.,'\- ]{2,60}?)(?=\s+(?:ADDRESS|MAKE|BRAND|PLATE|MV\s+FILE|ENGINE|VIN|CHASSIS|TIN)\b|$)"),
]


class RegistrationExtractor(BaseExtractor):
    """Vehicle identifiers and description from a CR or OR/CR pair."""

    document_type = "registration_cert"

    def steps(self) -> list[Step]:
        return [
            extract_vin_and_chassis,
            extract_engine,
            self._plate,
            extract_vehicle_description,
            self._registration_numbers,
            self._owner,
        ]

    @staticmethod
    def _plate(doc: DocumentText, fields: ExtractedFields) -> None:
        # Registration papers often print the plate without a label
        extract_plate(doc, fields, allow_bare=True)

    @staticmethod
    def _registration_numbers(doc: DocumentText, fields: ExtractedFields) -> None:
        set_first(fields, "mvFileNumber", _MV_FILE_PATTERNS, doc.upper)
        set_first(fields, "crNumber", _CR_NUMBER_PATTERNS, doc.upper)
        set_first(fields, "orNumber", _OR_NUMBER_PATTERNS, doc.upper)

    @staticmethod
    def _owner(doc: DocumentText, fields: ExtractedFields) -> None:
        set_first(fields, "ownerName", _OWNER_PATTERNS, doc.text)


class OrCrExtractor(RegistrationExtractor):
    document_type = "or_cr"
