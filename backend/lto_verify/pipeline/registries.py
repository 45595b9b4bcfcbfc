"""External record matching — insurance, emission and HPG hot-list registries.

Every registry answers the same question for a claimed set of vehicle
identifiers: is there a record, and does it allow approval?  The seeded
in-process registries stand in until a registry URL is configured, at
which point ``HttpRecordRegistry`` is used instead.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Callable, Protocol

import httpx

from lto_verify.config import (
    EMISSION_REGISTRY_URL,
    HPG_REGISTRY_URL,
    INSURANCE_REGISTRY_URL,
    REGISTRY_API_KEY,
    REGISTRY_LOOKUP_TIMEOUT,
)
from lto_verify.errors import RegistryLookupError
from lto_verify.pipeline.models import RecordMatchResult
from lto_verify.pipeline.utils import normalize_identifier, normalize_plate, parse_date

logger = logging.getLogger(__name__)

MATCH_STATUSES = ("VALID", "FLAGGED", "EXPIRED", "NOT_FOUND")


class RecordMatcher(Protocol):
    """Anything that can look a vehicle claim up in an external registry."""

    name: str

    async def lookup(self, claim: dict) -> RecordMatchResult:
        ...


def _normalized_claim(claim: dict) -> dict:
    return {
        "plateNumber": normalize_plate(claim.get("plateNumber")),
        "engineNumber": normalize_identifier(claim.get("engineNumber")),
        "chassisNumber": normalize_identifier(claim.get("chassisNumber") or claim.get("vin")),
        "policyNumber": normalize_identifier(claim.get("policyNumber")),
    }


class StaticRecordRegistry:
    """A registry backed by two fixed record sets.

    Problem records are checked first and match on plate, engine or
    chassis (and policy number when ``match_policy`` is set).  Valid
    records match on plate only and are re-checked for expiry.
    """

    def __init__(
        self,
        name: str,
        problem_records: list[dict],
        valid_records: list[dict] | None = None,
        status_messages: dict[str, str] | None = None,
        *,
        match_policy: bool = False,
        valid_message: str = "Valid record found in registry",
        expired_message: str = "Registry record has EXPIRED",
        not_found_message: str = "No matching record found in registry",
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.name = name
        self.problem_records = list(problem_records)
        self.valid_records = list(valid_records or [])
        self.status_messages = dict(status_messages or {})
        self.match_policy = match_policy
        self.valid_message = valid_message
        self.expired_message = expired_message
        self.not_found_message = not_found_message
        self.clock = clock

    def _matches_problem(self, record: dict, claim: dict) -> bool:
        checks = [
            (claim["plateNumber"], normalize_plate(record.get("plateNumber"))),
            (claim["engineNumber"], normalize_identifier(record.get("engineNumber"))),
            (claim["chassisNumber"], normalize_identifier(record.get("chassisNumber"))),
        ]
        if self.match_policy:
            checks.append((claim["policyNumber"], normalize_identifier(record.get("policyNumber"))))
        return any(claimed and claimed == stored for claimed, stored in checks)

    async def lookup(self, claim: dict) -> RecordMatchResult:
        normalized = _normalized_claim(claim)
        logger.info(f"[{self.name}] Lookup: {normalized}")

        for record in self.problem_records:
            if self._matches_problem(record, normalized):
                status_type = record.get("status")
                return RecordMatchResult(
                    found=True,
                    status="FLAGGED",
                    can_approve=False,
                    message=self.status_messages.get(status_type, f"{self.name} record flagged"),
                    record=dict(record),
                    status_type=status_type,
                )

        plate = normalized["plateNumber"]
        for record in self.valid_records:
            if not plate or normalize_plate(record.get("plateNumber")) != plate:
                continue
            expiry = parse_date(record.get("expiryDate"))
            if expiry is not None and expiry.date() < self.clock().date():
                return RecordMatchResult(
                    found=True,
                    status="EXPIRED",
                    can_approve=False,
                    message=self.expired_message,
                    record=dict(record),
                    status_type="CERTIFICATE_EXPIRED",
                )
            return RecordMatchResult(
                found=True,
                status="VALID",
                can_approve=True,
                message=self.valid_message,
                record=dict(record),
                status_type=record.get("status"),
            )

        return RecordMatchResult.not_found(self.not_found_message)


class HttpRecordRegistry:
    """Registry reached over HTTP: ``POST {base_url}/lookup`` with the claim as JSON."""

    def __init__(self, name: str, base_url: str, timeout: float = REGISTRY_LOOKUP_TIMEOUT, api_key: str = ""):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def lookup(self, claim: dict) -> RecordMatchResult:
        payload = {k: v for k, v in claim.items() if v not in (None, "")}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}/lookup", json=payload, headers=self._headers())
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise RegistryLookupError(f"{self.name} registry request failed: {e}") from e
        except ValueError as e:
            raise RegistryLookupError(f"{self.name} registry returned invalid JSON: {e}") from e

        status = str(data.get("status", "NOT_FOUND")).upper()
        if status not in MATCH_STATUSES:
            raise RegistryLookupError(f"{self.name} registry returned unknown status '{status}'")
        return RecordMatchResult(
            found=bool(data.get("found", status != "NOT_FOUND")),
            status=status,
            can_approve=bool(data.get("canApprove", status in ("VALID", "NOT_FOUND"))),
            message=data.get("message", ""),
            record=data.get("record"),
            status_type=data.get("statusType"),
        )


async def lookup_with_timeout(
    matcher: RecordMatcher,
    claim: dict,
    timeout: float = REGISTRY_LOOKUP_TIMEOUT,
) -> RecordMatchResult:
    """Run ``matcher.lookup`` bounded by ``timeout`` seconds.

    Raises ``RegistryLookupError`` on timeout or on any registry fault.
    """
    name = getattr(matcher, "name", type(matcher).__name__)
    try:
        return await asyncio.wait_for(matcher.lookup(claim), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise RegistryLookupError(f"{name} lookup timed out after {timeout:g}s") from e
    except RegistryLookupError:
        raise
    except Exception as e:
        raise RegistryLookupError(f"{name} lookup failed: {e}") from e


# ═══════════════════════════════════════════════════
# SEEDED REGISTRY DATA
# ═══════════════════════════════════════════════════

def _days_from_today(days: int) -> str:
    return (date.today() + timedelta(days=days)).isoformat()


INSURANCE_PROBLEM_RECORDS = [
    {
        "plateNumber": "ABC 123", "engineNumber": "ENG123456789", "chassisNumber": "CHS987654321",
        "policyNumber": "POL-2024-FAKE001", "status": "FRAUDULENT",
        "issueDate": "2024-01-15", "expiryDate": "2025-01-15",
        "insuranceCompany": "Unknown Insurance Co.", "policyType": "Comprehensive",
        "flagReason": "Policy number does not exist in insurance registry",
    },
    {
        "plateNumber": "XYZ 789", "engineNumber": "ENG999888777", "chassisNumber": "CHS111222333",
        "policyNumber": "POL-2023-EXP456", "status": "EXPIRED",
        "issueDate": "2022-06-20", "expiryDate": "2023-06-20",
        "insuranceCompany": "SafeDrive Insurance", "policyType": "CTPL",
        "flagReason": "Insurance policy has expired",
    },
    {
        "plateNumber": "DEF 456", "engineNumber": "ENG444555666", "chassisNumber": "CHS777888999",
        "policyNumber": "POL-2024-CAN789", "status": "CANCELLED",
        "issueDate": "2024-01-01", "expiryDate": "2025-01-01",
        "insuranceCompany": "SecureAuto Insurance", "policyType": "Comprehensive",
        "flagReason": "Policy cancelled due to non-payment of premium",
    },
    {
        "plateNumber": "TEST 999", "engineNumber": "TESTENGINE123", "chassisNumber": "TESTCHASSIS456",
        "policyNumber": "POL-TEST-FRAUD", "status": "FRAUDULENT",
        "issueDate": "2024-06-01", "expiryDate": "2025-06-01",
        "insuranceCompany": "Fake Insurance Inc.", "policyType": "CTPL",
        "flagReason": "Test entry - Fraudulent insurance document",
    },
]

# Valid records are dated from the import day so they stay unexpired for the next ~10 months
INSURANCE_VALID_RECORDS = [
    {
        "plateNumber": "NCR 1234", "engineNumber": "CLEANENG001", "chassisNumber": "CLEANCHS001",
        "policyNumber": "POL-2024-VALID001", "status": "ACTIVE",
        "issueDate": _days_from_today(-60), "expiryDate": _days_from_today(305),
        "insuranceCompany": "PhilAm Insurance", "policyType": "Comprehensive", "coverage": 500000,
    },
    {
        "plateNumber": "CLEAN 001", "engineNumber": "VALIDENG001", "chassisNumber": "VALIDCHS001",
        "policyNumber": "POL-2024-VALID002", "status": "ACTIVE",
        "issueDate": _days_from_today(-15), "expiryDate": _days_from_today(350),
        "insuranceCompany": "Malayan Insurance", "policyType": "CTPL", "coverage": 100000,
    },
]

INSURANCE_STATUS_MESSAGES = {
    "FRAUDULENT": "ALERT: Fraudulent insurance document detected",
    "EXPIRED": "EXPIRED: Insurance policy has expired",
    "CANCELLED": "CANCELLED: Insurance policy has been cancelled",
    "TAMPERED": "ALERT: Suspected tampered insurance certificate",
}

EMISSION_PROBLEM_RECORDS = [
    {
        "plateNumber": "ABC 123", "engineNumber": "ENG123456789", "chassisNumber": "CHS987654321",
        "status": "FAILED", "testDate": "2024-01-15", "expiryDate": "2024-01-15",
        "testCenter": "Metro Manila Emission Testing Center",
        "testResult": {"co": 8.5, "hc": 650, "smoke": 75},
        "failureReason": "CO and HC levels exceeded limits",
    },
    {
        "plateNumber": "XYZ 789", "engineNumber": "ENG999888777", "chassisNumber": "CHS111222333",
        "status": "EXPIRED", "testDate": "2023-06-20", "expiryDate": "2024-06-20",
        "testCenter": "Quezon City Emission Center",
        "testResult": {"co": 2.1, "hc": 450, "smoke": 35},
        "failureReason": None,
    },
    {
        "plateNumber": "DEF 456", "engineNumber": "ENG444555666", "chassisNumber": "CHS777888999",
        "status": "TAMPERED", "testDate": "2024-03-01", "expiryDate": None,
        "testCenter": "Makati Emission Testing", "testResult": None,
        "failureReason": "Suspected falsified emission certificate",
    },
    {
        "plateNumber": "TEST 999", "engineNumber": "TESTENGINE123", "chassisNumber": "TESTCHASSIS456",
        "status": "FAILED", "testDate": "2024-06-01", "expiryDate": "2024-06-01",
        "testCenter": "Test Emission Center",
        "testResult": {"co": 10.2, "hc": 850, "smoke": 85},
        "failureReason": "All emission levels exceeded - test entry for demonstration",
    },
]

EMISSION_VALID_RECORDS = [
    {
        "plateNumber": "NCR 1234", "engineNumber": "CLEANENG001", "chassisNumber": "CLEANCHS001",
        "status": "PASSED", "testDate": _days_from_today(-30), "expiryDate": _days_from_today(335),
        "testCenter": "LTO Main Emission Center",
        "testResult": {"co": 1.8, "hc": 280, "smoke": 25},
    },
    {
        "plateNumber": "CLEAN 001", "engineNumber": "VALIDENG001", "chassisNumber": "VALIDCHS001",
        "status": "PASSED", "testDate": _days_from_today(-10), "expiryDate": _days_from_today(355),
        "testCenter": "Pasig Emission Testing",
        "testResult": {"co": 2.0, "hc": 320, "smoke": 30},
    },
]

EMISSION_STATUS_MESSAGES = {
    "FAILED": "FAILED: Vehicle failed emission test",
    "EXPIRED": "EXPIRED: Emission test certificate has expired",
    "TAMPERED": "ALERT: Suspected tampered emission certificate",
}

HPG_HOT_LIST = [
    {
        "plateNumber": "ABC-1234", "engineNumber": "STOLEN001", "chassisNumber": "STOLENCHS001",
        "status": "STOLEN", "reason": "Stolen vehicle", "reportedDate": "2024-01-15", "reportedBy": "PNP NCR",
    },
    {
        "plateNumber": "XYZ-5678", "engineNumber": "CARN001", "chassisNumber": "CARNCHS001",
        "status": "CARNAPPED", "reason": "Carnapped vehicle", "reportedDate": "2024-02-20", "reportedBy": "HPG NCR",
    },
]

HPG_STATUS_MESSAGES = {
    "STOLEN": "ALERT: Vehicle reported stolen",
    "CARNAPPED": "ALERT: Vehicle reported carnapped",
}


def build_insurance_registry(url: str = INSURANCE_REGISTRY_URL) -> RecordMatcher:
    if url:
        return HttpRecordRegistry("Insurance", url, api_key=REGISTRY_API_KEY)
    return StaticRecordRegistry(
        "Insurance",
        INSURANCE_PROBLEM_RECORDS,
        INSURANCE_VALID_RECORDS,
        INSURANCE_STATUS_MESSAGES,
        match_policy=True,
        valid_message="ACTIVE: Insurance policy is valid",
        expired_message="Insurance policy has EXPIRED - Renewal required",
        not_found_message="No insurance record found - Manual verification of submitted certificate required",
    )


def build_emission_registry(url: str = EMISSION_REGISTRY_URL) -> RecordMatcher:
    if url:
        return HttpRecordRegistry("Emission", url, api_key=REGISTRY_API_KEY)
    return StaticRecordRegistry(
        "Emission",
        EMISSION_PROBLEM_RECORDS,
        EMISSION_VALID_RECORDS,
        EMISSION_STATUS_MESSAGES,
        valid_message="PASSED: Vehicle has valid emission test certificate",
        expired_message="Emission certificate has EXPIRED - Retest required",
        not_found_message="No emission test record found - Manual verification of submitted certificate required",
    )


def build_hpg_registry(url: str = HPG_REGISTRY_URL) -> RecordMatcher:
    if url:
        return HttpRecordRegistry("HPG", url, api_key=REGISTRY_API_KEY)
    return StaticRecordRegistry(
        "HPG",
        HPG_HOT_LIST,
        status_messages=HPG_STATUS_MESSAGES,
        not_found_message="Vehicle not found in HPG hot list",
    )
