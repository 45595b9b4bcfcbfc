"""Insurance certificate (CTPL / comprehensive) extractor."""

from __future__ import annotations

import logging
import re

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
from lto_verify.pipeline.models import ExtractedFields
from lto_verify.pipeline.utils import parse_number

logger = logging.getLogger(__name__)

_POLICY_PATTERNS = [
    _c(r'\bPOLICY\s*(?:NUMBER|NO)?\.?\s*[:.#]?\s*(?!TYPE\b|HOLDER\b|PERIOD\b)' + _HAS_DIGIT + r'([A-Z0-9][A-Z0-9\-/]*)'),
]

EXPIRY_PATTERNS = [
    _c(r'\b(?:EXPIR\w*(?:\s+DATE)?|VALID\s+UNTIL|VALIDITY|EFFECTIVE\s+TO|PERIOD\s+TO|VALID\s+TO)\s*[:.]?\s*' + DATE_VALUE),
]

ISSUE_DATE_PATTERNS = [
    _c(r'\b(?:ISSUE\s*DATE|DATE\s*(?:OF\s*)?ISSUED?|ISSUED(?:\s+ON)?|EFFECTIVE\s+FROM|EFFECTIVITY\s+DATE|PERIOD\s+FROM)\s*[:.]?\s*' + DATE_VALUE),
]

_COMPANY_STOP = (r'(?=\s+(?:POLICY|ADDRESS|INSURED|PERIOD|COVERAGE|ISSUE\w*|DATE|EXPIR\w*|VALID\w*|EFFECTIVE|PLATE|VEHICLE|TYPE|'
                 r'SUM|AMOUNT|ASSURED|MAKE|COC|CERTIFICATE)\b|$)')

_COMPANY_PATTERNS = [
    _c(r'\b(?:INSURANCE\s+COMPANY|INSURER|INSURED\s+BY|COMPANY)\s*[:.]?\s*([A-Z][A-Z&.,\']*(?:\s+[A-Z&][A-Z&.,\']*)+?)' + _COMPANY_STOP),
    _c(r"\b((?:[A-Z][A-Z&.']*\s+){1,4}INSURANCE(?:\s+(?:CORPORATION|CORP\.?|COMPANY|CO\.?|INC\.?|AGENCY))*)"),
]

_POLICY_TYPE = _c(r'\b(COMPREHENSIVE|CTPL|THIRD\s+PARTY(?:\s+LIABILITY)?|LIABILITY)\b')

_COVERAGE_PATTERNS = [
    _c(r'\b(?:COVERAGE|SUM\s+INSURED|LIMIT\s+OF\s+LIABILITY|AMOUNT(?:\s+OF\s+INSURANCE)?)\s*[:.]?\s*(?:PHP|₱|PESOS?)?\s*([\d,]+(?:\.\d{1,2})?)'),
]


class InsuranceExtractor(BaseExtractor):
    """Policy details plus whatever vehicle identifiers the certificate prints."""

    document_type = "insurance_cert"

    def steps(self) -> list[Step]:
        return [
            self._policy,
            self._dates,
            self._company,
            self._policy_type,
            self._coverage,
            extract_vehicle_identifiers,
        ]

    @staticmethod
    def _policy(doc: DocumentText, fields: ExtractedFields) -> None:
        if set_first(fields, "policyNumber", _POLICY_PATTERNS, doc.upper):
            fields.set("insurancePolicyNumber", fields["policyNumber"])

    @staticmethod
    def _dates(doc: DocumentText, fields: ExtractedFields) -> None:
        if set_first(fields, "expiryDate", EXPIRY_PATTERNS, doc.upper):
            fields.set("insuranceExpiry", fields["expiryDate"])
        set_first(fields, "issueDate", ISSUE_DATE_PATTERNS, doc.upper)

    @staticmethod
    def _company(doc: DocumentText, fields: ExtractedFields) -> None:
        set_first(fields, "insuranceCompany", _COMPANY_PATTERNS, doc.text)

    @staticmethod
    def _policy_type(doc: DocumentText, fields: ExtractedFields) -> None:
        m = _POLICY_TYPE.search(doc.upper)
        if m:
            fields.set("policyType", re.sub(r'\s+', ' ', m.group(1)))

    @staticmethod
    def _coverage(doc: DocumentText, fields: ExtractedFields) -> None:
        m = first_match(_COVERAGE_PATTERNS, doc.upper)
        if m:
            amount = parse_number(m.group(1))
            if amount is not None:
                fields.set("coverageAmount", amount)
