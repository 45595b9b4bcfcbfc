"""HPG motor vehicle clearance certificate extractor."""

from __future__ import annotations

from lto_verify.pipeline.extractors.base import (
    BaseExtractor,
    DocumentText,
    Step,
    _HAS_DIGIT,
    _c,
    extract_vehicle_identifiers,
    set_first,
)
from lto_verify.pipeline.models import ExtractedFields

_CLEARANCE_PATTERNS = [
    _c(r'\b(?:MV\s+CLEARANCE|CLEARANCE|CERTIFICATE)\s*(?:NUMBER|NO|#)\.?\s*[:.#]?\s*'
       + _HAS_DIGIT + r'([A-Z0-9\-]{4,25})\b'),
]


class HpgClearanceExtractor(BaseExtractor):
    document_type = "hpg_clearance"

    def steps(self) -> list[Step]:
        return [self._clearance_number, extract_vehicle_identifiers]

    @staticmethod
    def _clearance_number(doc: DocumentText, fields: ExtractedFields) -> None:
        set_first(fields, "clearanceNumber", _CLEARANCE_PATTERNS, doc.upper)
