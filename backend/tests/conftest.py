"""Shared fixtures for the LTO document verification test suite."""

import pytest
from datetime import datetime

from lto_verify.config import AutoVerificationConfig, DocumentWaitConfig
from lto_verify.pipeline.models import DocumentRecord, User, Vehicle
from lto_verify.pipeline.registries import (
    EMISSION_PROBLEM_RECORDS,
    EMISSION_STATUS_MESSAGES,
    EMISSION_VALID_RECORDS,
    HPG_HOT_LIST,
    HPG_STATUS_MESSAGES,
    INSURANCE_PROBLEM_RECORDS,
    INSURANCE_STATUS_MESSAGES,
    INSURANCE_VALID_RECORDS,
    StaticRecordRegistry,
)
from lto_verify.stores import InMemoryStore

# Seeded valid registry records are dated from today, so they are unexpired at FIXED_NOW
FIXED_NOW = datetime(2025, 6, 1, 9, 30)


def fixed_clock() -> datetime:
    return FIXED_NOW


# ═══════════════════════════════════════════════════
# Document text fixtures (shaped like real text-layer / OCR output)
# ═══════════════════════════════════════════════════

@pytest.fixture
def registration_text():
    """Certificate of Registration for a 2022 Vios."""
    return """
    CERTIFICATE OF REGISTRATION
    CR No: 123456789
    MV File No: 1301-00000123456
    Plate No: ABC 1234
    Make: TOYOTA
    Series: VIOS 1.3 E
    Year Model: 2022
    Color: PEARL WHITE
    Engine No: 2NZ7654321
    Chassis No: MR2BT9F30K1234567
    Owner: JUAN DELA CRUZ
    Address: 123 Rizal St, Quezon City
    """


@pytest.fixture
def insurance_text():
    """CTPL certificate matching the seeded NCR 1234 registry record, valid one year."""
    return """
    CERTIFICATE OF COVER
    Insurance Company: Pioneer Insurance Corp
    Policy No: POL-2024-VALID001
    Policy Type: CTPL
    Issue Date: 06/01/2025
    Expiry Date: 06/01/2026
    Plate No: NCR 1234
    Engine No: CLEANENG001
    Chassis No: CLEANCHS001
    Sum Insured: PHP 100,000.00
    """


@pytest.fixture
def emission_text():
    """Passing emission test for NCR 1234."""
    return """
    EMISSION TEST CERTIFICATE
    Certificate No: ETC-2025-004521
    Test Date: 03/10/2025
    Valid Until: 03/10/2026
    Testing Center: LTO Main Emission Center
    Plate No: NCR 1234
    CO: 1.8%
    HC: 280 ppm
    Smoke Opacity: 25%
    Result: PASSED
    """


@pytest.fixture
def license_text():
    """Driver's license for Juan Santos Dela Cruz."""
    return """
    REPUBLIC OF THE PHILIPPINES
    DEPARTMENT OF TRANSPORTATION
    LAND TRANSPORTATION OFFICE
    DRIVER'S LICENSE
    Last Name: DELA CRUZ
    First Name: JUAN
    Middle Name: SANTOS
    Address: 123 Rizal St, Quezon City
    License No: N01-12-123456
    Mobile: 0917 123 4567
    """


@pytest.fixture
def sales_invoice_text():
    return """
    SALES INVOICE
    Invoice No: SI-2025-0042
    Sold To: DELA CRUZ, JUAN
    Address: 45 Mabini St, Manila
    Contact: 0918 765 4321
    Make: HONDA
    Model: CITY 1.5 V
    Year: 2025
    Color: RED
    Engine No: L15Z1234567
    Chassis No: MRHGM6640NP012345
    """


# ═══════════════════════════════════════════════════
# Registries pinned to FIXED_NOW
# ═══════════════════════════════════════════════════

@pytest.fixture
def insurance_registry():
    return StaticRecordRegistry(
        "Insurance",
        INSURANCE_PROBLEM_RECORDS,
        INSURANCE_VALID_RECORDS,
        INSURANCE_STATUS_MESSAGES,
        match_policy=True,
        valid_message="ACTIVE: Insurance policy is valid",
        clock=fixed_clock,
    )


@pytest.fixture
def emission_registry():
    return StaticRecordRegistry(
        "Emission",
        EMISSION_PROBLEM_RECORDS,
        EMISSION_VALID_RECORDS,
        EMISSION_STATUS_MESSAGES,
        clock=fixed_clock,
    )


@pytest.fixture
def hpg_registry():
    return StaticRecordRegistry(
        "HPG",
        HPG_HOT_LIST,
        status_messages=HPG_STATUS_MESSAGES,
        not_found_message="Vehicle not found in HPG hot list",
        clock=fixed_clock,
    )


@pytest.fixture
def auto_config():
    return AutoVerificationConfig(enabled=True, min_score=90)


@pytest.fixture
def no_wait():
    """Backoff schedule with the production shape but no real sleeping needed."""
    return DocumentWaitConfig(attempts=5, base_delay=0.1, window_minutes=2)


# ═══════════════════════════════════════════════════
# Domain records
# ═══════════════════════════════════════════════════

@pytest.fixture
def vehicle():
    """New registration whose identifiers match the seeded NCR 1234 records."""
    return Vehicle(
        id="veh-001",
        vin="CLEANCHS001",
        plate_number="NCR 1234",
        engine_number="CLEANENG001",
        chassis_number="CLEANCHS001",
        make="TOYOTA",
        model="VIOS",
        year="2022",
        color="WHITE",
        owner_name="Juan Dela Cruz",
        owner_email="juan@example.com",
        owner_id="user-owner",
        created_at=FIXED_NOW,
    )


@pytest.fixture
def insurance_document(tmp_path):
    path = tmp_path / "ctpl.pdf"
    path.write_bytes(b"%PDF-1.4 insurance placeholder")
    return DocumentRecord(
        id="doc-ins",
        document_type="insurance_cert",
        file_path=str(path),
        mime_type="application/pdf",
        original_name="ctpl.pdf",
        vehicle_id="veh-001",
        uploaded_at=FIXED_NOW,
    )


@pytest.fixture
def emission_document(tmp_path):
    path = tmp_path / "emission.pdf"
    path.write_bytes(b"%PDF-1.4 emission placeholder")
    return DocumentRecord(
        id="doc-emi",
        document_type="emission_cert",
        file_path=str(path),
        mime_type="application/pdf",
        original_name="emission.pdf",
        vehicle_id="veh-001",
        uploaded_at=FIXED_NOW,
    )


@pytest.fixture
def owner_id_document(tmp_path):
    path = tmp_path / "license.pdf"
    path.write_bytes(b"%PDF-1.4 license placeholder")
    return DocumentRecord(
        id="doc-oid",
        document_type="owner_id",
        file_path=str(path),
        mime_type="application/pdf",
        original_name="license.pdf",
        vehicle_id="veh-001",
        uploaded_at=FIXED_NOW,
    )


@pytest.fixture
def registration_document(tmp_path):
    path = tmp_path / "cr.pdf"
    path.write_bytes(b"%PDF-1.4 registration placeholder")
    return DocumentRecord(
        id="doc-reg",
        document_type="registration_cert",
        file_path=str(path),
        mime_type="application/pdf",
        original_name="cr.pdf",
        vehicle_id="veh-001",
        uploaded_at=FIXED_NOW,
    )


@pytest.fixture
def reviewers():
    return [
        User(id="user-hpg", role="hpg_admin", name="HPG Officer", organization="HPG"),
        User(id="user-ins", role="insurance_verifier", name="Insurance Verifier", organization="Insurer"),
    ]


@pytest.fixture
def store(vehicle, reviewers):
    """In-memory store holding the vehicle and one active reviewer per track."""
    s = InMemoryStore()
    s.vehicles[vehicle.id] = vehicle
    for user in reviewers:
        s.users[user.id] = user
    return s
