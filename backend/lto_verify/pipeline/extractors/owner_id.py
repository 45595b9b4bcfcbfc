"""Owner government-ID extractor (license, passport, national/postal/voter/SSS IDs)."""

from __future__ import annotations

import logging

from lto_verify.pipeline.extractors.base import BaseExtractor, DocumentText, Step, _c, first_match, set_first
from lto_verify.pipeline.identity import (
    IdNumberScorer,
    PatternConfidenceScorer,
    classify_id_type,
    extract_generic_id_number,
    extract_id_number,
)
from lto_verify.pipeline.models import ExtractedFields

logger = logging.getLogger(__name__)

_NAME_STOP = r"(?=\s+(?:FIRST|GIVEN|MIDDLE|LAST|ADDRESS|DATE|SEX|NATIONALITY|BIRTH|LICEN[CS]E|ID|AGENCY|PHONE|CONTACT|TEL|MOBILE|SIGNATURE)\b|$)"
_NAME_VALUE = r"([A-Z][A-Z.'\- ]{0,40}?)"

_LAST_NAME_PATTERNS = [
    _c(r'\b(?:LAST\s*NAME|SURNAME|APELYIDO)\s*[:.]?\s*' + _NAME_VALUE + _NAME_STOP),
]
_FIRST_NAME_PATTERNS = [
    _c(r'\b(?:FIRST\s*NAME|GIVEN\s*NAMES?|PANGALAN)\s*[:.]?\s*' + _NAME_VALUE + _NAME_STOP),
]
_MIDDLE_NAME_PATTERNS = [
    _c(r'\b(?:MIDDLE\s*NAME|GITNANG\s*APELYIDO)\s*[:.]?\s*' + _NAME_VALUE + _NAME_STOP),
]
# "NAME: DELA CRUZ, JUAN PEDRO" is surname first, comma separated
_FULL_NAME_PATTERNS = [
    _c(r"\b(?:FULL\s+)?NAME\s*[:.]?\s*([A-Z][A-Z.'\- ]{0,40},\s*[A-Z][A-Z.'\- ]{0,40}?)" + _NAME_STOP),
    _c(r"\b(?:FULL\s+)?NAME\s*[:.]?\s*([A-Z][A-Z.'\- ]{2,60}?)" + _NAME_STOP),
]

_ADDRESS_PATTERNS = [
    _c(r'\bADDRESS\s*[:.]?\s*(.{5,160}?)(?=\s+(?:LICEN[CS]E|ID\s*NO|DATE|SEX|NATIONALITY|BIRTH|PHONE|CONTACT|TEL|MOBILE|'
       r'EXPIR\w*|VALID|SIGNATURE|BLOOD|WEIGHT|HEIGHT|AGENCY|RESTRICTION|CONDITION)\b|$)'),
]

_PHONE_PATTERNS = [
    _c(r'\b(?:PHONE|CONTACT|TEL|MOBILE|CELL)(?:\s*(?:NUMBER|NO))?\.?\s*[:.]?\s*'
       r'(\+?63[\s\-]?9\d{2}[\s\-]?\d{3}[\s\-]?\d{4}|09\d{2}[\s\-]?\d{3}[\s\-]?\d{4})'),
    _c(r'(\+63\s?9\d{9}|\b09\d{9})\b'),
]


def _clean_phone(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit() or ch == "+")


def extract_person_name(doc: DocumentText, fields: ExtractedFields, prefix: str = "") -> None:
    """Split labeled or "SURNAME, GIVEN" names into first/last/full fields."""
    last_key, first_key = f"{prefix}lastName", f"{prefix}firstName"
    full_key = f"{prefix}fullName" if prefix else "fullName"

    set_first(fields, last_key, _LAST_NAME_PATTERNS, doc.text)
    set_first(fields, first_key, _FIRST_NAME_PATTERNS, doc.text)
    if not prefix:
        set_first(fields, "middleName", _MIDDLE_NAME_PATTERNS, doc.text)

    if last_key not in fields or first_key not in fields:
        m = first_match(_FULL_NAME_PATTERNS, doc.text)
        if m:
            raw = m.group(1).strip(" .,")
            if "," in raw:
                last, first = (part.strip() for part in raw.split(",", 1))
            else:
                parts = raw.split()
                first, last = " ".join(parts[:-1]), parts[-1] if parts else ""
            if last:
                fields.set_default(last_key, last)
            if first:
                fields.set_default(first_key, first)

    if first_key in fields or last_key in fields:
        full = " ".join(p for p in (fields.get(first_key, ""), fields.get(last_key, "")) if p)
        fields.set_default(full_key, full)


def extract_address(doc: DocumentText, fields: ExtractedFields, key: str = "address") -> None:
    set_first(fields, key, _ADDRESS_PATTERNS, doc.text)


def extract_phone(doc: DocumentText, fields: ExtractedFields, key: str = "phone") -> None:
    set_first(fields, key, _PHONE_PATTERNS, doc.text, _clean_phone)


class OwnerIdExtractor(BaseExtractor):
    """ID type, ID number (confidence-gated), and the holder's personal details."""

    document_type = "owner_id"

    def __init__(self, scorer: IdNumberScorer | None = None):
        self.scorer = scorer or PatternConfidenceScorer()

    def steps(self) -> list[Step]:
        return [self._id_type_and_number, extract_person_name, extract_address, extract_phone]

    def _id_type_and_number(self, doc: DocumentText, fields: ExtractedFields) -> None:
        id_type = classify_id_type(doc.upper)
        if id_type:
            fields.set("idType", id_type)
            result = extract_id_number(doc.upper, id_type, self.scorer)
            if result:
                number, confidence = result
                fields.set("idNumber", number, confidence=confidence)
            else:
                logger.info(f"No {id_type} number cleared the confidence threshold")
            return

        number = extract_generic_id_number(doc.upper)
        if number:
            fields.set("idNumber", number)
