"""Certificate of Stock Report (CSR) extractor."""

from __future__ import annotations

from lto_verify.pipeline.extractors.base import (
    BaseExtractor,
    DocumentText,
    Step,
    _HAS_DIGIT,
    _c,
    extract_engine,
    extract_plate,
    extract_vehicle_description,
    extract_vin_and_chassis,
    set_first,
)
from lto_verify.pipeline.models import ExtractedFields

_CSR_PATTERNS = [
    _c(r'\b(?:CERTIFICATE\s+OF\s+STOCK\s+REPORT|STOCK\s+REPORT|CSR)\s*(?:NUMBER|NO|#)?\.?\s*[:.#]?\s*'
       + _HAS_DIGIT + r'([A-Z0-9\-]{4,25})\b'),
]


class CsrExtractor(BaseExtractor):
    document_type = "csr"

    def steps(self) -> list[Step]:
        return [
            self._csr_number,
            extract_vin_and_chassis,
            extract_engine,
            extract_plate,
            extract_vehicle_description,
        ]

    @staticmethod
    def _csr_number(doc: DocumentText, fields: ExtractedFields) -> None:
        set_first(fields, "csrNumber", _CSR_PATTERNS, doc.upper)
