"""Structured field parsing — dispatches document text to its extractor.

``parse_fields`` is pure and total: any text and any document type yield an
``ExtractedFields`` (possibly empty), never an exception.
"""

from __future__ import annotations

import logging

from lto_verify.config import TRACE_ENABLED
from lto_verify.pipeline.extractors import (
    BaseExtractor,
    CsrExtractor,
    EmissionExtractor,
    HpgClearanceExtractor,
    InsuranceExtractor,
    OrCrExtractor,
    OwnerIdExtractor,
    RegistrationExtractor,
    SalesInvoiceExtractor,
)
from lto_verify.pipeline.models import ExtractedFields

logger = logging.getLogger(__name__)


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


# Extractor registry: one stateless instance per document type
EXTRACTORS: dict[str, BaseExtractor] = {
    "registration_cert": RegistrationExtractor(),
    "or_cr": OrCrExtractor(),
    "owner_id": OwnerIdExtractor(),
    "seller_id": OwnerIdExtractor(),
    "buyer_id": OwnerIdExtractor(),
    "insurance_cert": InsuranceExtractor(),
    "emission_cert": EmissionExtractor(),
    "sales_invoice": SalesInvoiceExtractor(),
    "csr": CsrExtractor(),
    "hpg_clearance": HpgClearanceExtractor(),
}

# Legacy field names mirrored onto the canonical ones
FIELD_ALIASES = {
    "series": "model",
    "yearModel": "year",
}


def _apply_aliases(fields: ExtractedFields) -> None:
    for source, target in FIELD_ALIASES.items():
        if fields.get(source) not in (None, ""):
            fields.set(target, fields[source])


def parse_fields(text: str | None, document_type: str) -> ExtractedFields:
    """Parse ``text`` as a document of ``document_type``.

    Unknown types and empty text produce empty fields.  Bytes are decoded
    as UTF-8; any other non-string input is logged and yields empty fields.
    An extractor fault is logged and empty fields are returned.
    """
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8", errors="replace")
    elif text is not None and not isinstance(text, str):
        logger.warning(f"Field parsing skipped for {document_type}: expected text, got {type(text).__name__}")
        return ExtractedFields(document_type=document_type)

    extractor = EXTRACTORS.get(document_type)
    if extractor is None:
        if text:
            logger.info(f"No field extractor for document type '{document_type}'")
        return ExtractedFields(document_type=document_type)
    if not text or not text.strip():
        return ExtractedFields(document_type=document_type)

    try:
        fields = extractor.extract(text)
    except Exception as e:
        logger.warning(f"Field parsing failed for {document_type}: {e}")
        return ExtractedFields(document_type=document_type)

    fields.document_type = document_type
    _apply_aliases(fields)
    _trace(f"parse_fields({document_type}): {fields.to_dict()}")
    return fields


# Owner-ID keys carried into the combined HPG record under an "owner" prefix
_OWNER_FIELD_MAP = {
    "firstName": "ownerFirstName",
    "lastName": "ownerLastName",
    "middleName": "ownerMiddleName",
    "fullName": "ownerFullName",
    "address": "ownerAddress",
    "phone": "ownerPhone",
    "idType": "ownerIdType",
    "idNumber": "ownerIdNumber",
}


def extract_hpg_info(registration_text: str | None, owner_id_text: str | None) -> ExtractedFields:
    """Combine vehicle identifiers and owner details for an HPG clearance form.

    Vehicle fields come from the registration certificate; owner fields
    from the owner's ID, renamed with an ``owner`` prefix.  A side with no
    text contributes nothing.
    """
    combined = ExtractedFields(document_type="hpg_clearance")

    vehicle = parse_fields(registration_text, "registration_cert")
    for name, value in vehicle.values.items():
        combined.set(name, value, vehicle.confidence.get(name))
    chassis = vehicle.first("vin", "chassisNumber")
    if chassis:
        combined.set("chassisNumber", chassis)

    owner = parse_fields(owner_id_text, "owner_id")
    for name, target in _OWNER_FIELD_MAP.items():
        if name in owner:
            combined.set_default(target, owner[name], owner.confidence.get(name))

    _trace(f"extract_hpg_info: {sorted(combined.values)}")
    return combined
