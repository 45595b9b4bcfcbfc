"""Dealer sales invoice extractor."""

from __future__ import annotations

import logging

from lto_verify.pipeline.extractors.base import (
    BaseExtractor,
    DocumentText,
    Step,
    _c,
    extract_engine,
    extract_plate,
    extract_vehicle_description,
    extract_vin_and_chassis,
    first_match,
    set_first,
)
from lto_verify.pipeline.extractors.owner_id import extract_phone
from lto_verify.pipeline.models import ExtractedFields

logger = logging.getLogger(__name__)

_INVOICE_PATTERNS = [
    _c(r'\b(?:SALES\s+INVOICE|INVOICE|SI)\s*(?:NUMBER|NO|#)\.?\s*[:.#]?\s*([A-Z0-9\-]{3,20})\b'),
]

_BUYER_STOP = r'(?=\s+(?:ADDRESS|TIN|DATE|CONTACT|PHONE|TEL|MOBILE|VEHICLE|MAKE|BRAND|MODEL|UNIT|QTY|DESCRIPTION)\b|$)'

_BUYER_NAME_PATTERNS = [
    _c(r"\b(?:SOLD\s+TO|BUYER(?:'?S)?(?:\s+NAME)?|CUSTOMER(?:'?S)?(?:\s+NAME)?|PURCHASER(?:'?S)?(?:\s+NAME)?)"
       r"\s*[:.]?\s*([A-Z][A-Z.,'\- ]{2,60}?)" + _BUYER_STOP),
]

_BUYER_ADDRESS_PATTERNS = [
    _c(r"\b(?:BUYER'?S?\s+|CUSTOMER'?S?\s+)?ADDRESS\s*[:.]?\s*(.{5,160}?)"
       r"(?=\s+(?:TIN|DATE|CONTACT|PHONE|TEL|MOBILE|VEHICLE|MAKE|BRAND|MODEL|UNIT|QTY|DESCRIPTION|TERMS)\b|$)"),
]


class SalesInvoiceExtractor(BaseExtractor):
    """Vehicle identifiers, description, and buyer details from a dealer invoice."""

    document_type = "sales_invoice"

    def steps(self) -> list[Step]:
        return [
            extract_vin_and_chassis,
            extract_engine,
            extract_plate,
            extract_vehicle_description,
            self._invoice_number,
            self._buyer,
        ]

    @staticmethod
    def _invoice_number(doc: DocumentText, fields: ExtractedFields) -> None:
        set_first(fields, "invoiceNumber", _INVOICE_PATTERNS, doc.upper)

    @staticmethod
    def _buyer(doc: DocumentText, fields: ExtractedFields) -> None:
        m = first_match(_BUYER_NAME_PATTERNS, doc.text)
        if m:
            name = m.group(1).strip(" .,")
            fields.set("buyerName", name)
            if "," in name:
                last, first = (p.strip() for p in name.split(",", 1))
            else:
                parts = name.split()
                first, last = " ".join(parts[:-1]), parts[-1]
            if last:
                fields.set("buyerLastName", last)
            if first:
                fields.set("buyerFirstName", first)
        set_first(fields, "buyerAddress", _BUYER_ADDRESS_PATTERNS, doc.text)
        extract_phone(doc, fields, key="buyerPhone")
