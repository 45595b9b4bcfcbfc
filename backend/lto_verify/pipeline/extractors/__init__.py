"""Field extractors for the supported vehicle registration document types."""

from .base import BaseExtractor, DocumentText
from .registration import RegistrationExtractor, OrCrExtractor
from .owner_id import OwnerIdExtractor
from .insurance import InsuranceExtractor
from .emission import EmissionExtractor
from .sales_invoice import SalesInvoiceExtractor
from .csr import CsrExtractor
from .hpg_clearance import HpgClearanceExtractor

__all__ = [
    "BaseExtractor",
    "DocumentText",
    "RegistrationExtractor",
    "OrCrExtractor",
    "OwnerIdExtractor",
    "InsuranceExtractor",
    "EmissionExtractor",
    "SalesInvoiceExtractor",
    "CsrExtractor",
    "HpgClearanceExtractor",
]
