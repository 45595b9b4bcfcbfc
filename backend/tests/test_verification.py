"""Tests for lto_verify/pipeline/verification.py — decision engine and auto-verification.

Covers:
  - check_expiry (date-only end of day, timestamps, missing / unparseable)
  - check_data_consistency and check_emission_compliance
  - weighted score formula, bands, monotonic in fraud score
  - decide: hard checks, reasons, determinism, disabled config
  - AutoVerifier insurance / emission / HPG flows end to end
  - a document file reused for another vehicle is held as a duplicate
  - file resolution fallbacks, missing files, persistence failures, safety net
"""

import dataclasses
import logging

import pytest
from unittest.mock import AsyncMock, patch

from lto_verify.config import AutoVerificationConfig
from lto_verify.pipeline.fraud import analyze
from lto_verify.pipeline.models import DocumentRecord, ExtractedFields, FraudAnalysis, RecordMatchResult
from lto_verify.pipeline.registries import (
    INSURANCE_STATUS_MESSAGES,
    INSURANCE_VALID_RECORDS,
    StaticRecordRegistry,
)
from lto_verify.pipeline.verification import (
    DISABLED_REASON,
    HPG_PRE_VERIFIED_NOTE,
    AutoVerifier,
    calculate_verification_score,
    check_data_consistency,
    check_emission_compliance,
    check_expiry,
    decide,
)

from conftest import FIXED_NOW, fixed_clock

MOD = "lto_verify.pipeline.verification"

CLEAN_FRAUD = FraudAnalysis(fraud_score=0.0, risk_level="LOW")
VALID_MATCH = RecordMatchResult(
    found=True, status="VALID", can_approve=True, message="ACTIVE",
    record={"plateNumber": "NCR 1234", "policyNumber": "POL-2024-VALID001"},
)


def _extract_returns(text):
    return patch(f"{MOD}.extract_text_async", AsyncMock(return_value=text))


@pytest.fixture
def verifier(store, insurance_registry, emission_registry, auto_config, tmp_path):
    return AutoVerifier(
        store,
        insurance_registry,
        emission_registry,
        config=auto_config,
        upload_dir=tmp_path / "uploads",
        clock=fixed_clock,
    )


class BrokenMatcher:
    name = "Insurance"

    async def lookup(self, claim):
        raise ConnectionError("registry down")


# ═══════════════════════════════════════════════════
# check_expiry
# ═══════════════════════════════════════════════════

class TestCheckExpiry:

    def test_future_date(self):
        result = check_expiry("06/11/2025", FIXED_NOW)
        assert result.is_valid is True
        assert result.days_until_expiry == 10
        assert result.reason == "Valid"

    def test_date_only_valid_through_end_of_day(self):
        result = check_expiry("06/01/2025", FIXED_NOW)
        assert result.is_valid is True
        assert result.days_until_expiry == 0

    def test_past_date(self):
        result = check_expiry("05/31/2025", FIXED_NOW)
        assert result.is_valid is False
        assert result.reason == "Expired"
        assert result.days_until_expiry == 0

    def test_timestamp_compares_exactly(self):
        assert check_expiry("2025-06-01T08:00:00", FIXED_NOW).is_valid is False
        assert check_expiry("2025-06-01T10:00:00", FIXED_NOW).is_valid is True

    def test_missing(self):
        result = check_expiry(None, FIXED_NOW)
        assert result.is_valid is False
        assert result.reason == "Expiry date not found"

    def test_unparseable(self):
        result = check_expiry("next spring", FIXED_NOW)
        assert result.is_valid is False
        assert result.reason == "Could not parse expiry date"


# ═══════════════════════════════════════════════════
# Consistency and compliance
# ═══════════════════════════════════════════════════

class TestDataConsistency:

    def test_no_record_is_consistent(self):
        fields = ExtractedFields(values={"policyNumber": "POL-X"})
        assert check_data_consistency(fields, RecordMatchResult.not_found(), {"plateNumber": "NCR 1234"}) is True
        assert check_data_consistency(fields, None) is True

    def test_plate_and_policy_agree(self):
        fields = ExtractedFields(values={"policyNumber": "pol-2024-valid001"})
        assert check_data_consistency(fields, VALID_MATCH, {"plateNumber": "ncr  1234"}) is True

    def test_plate_mismatch(self):
        fields = ExtractedFields()
        assert check_data_consistency(fields, VALID_MATCH, {"plateNumber": "ABC 999"}) is False

    def test_missing_plate_is_not_a_mismatch(self):
        assert check_data_consistency(ExtractedFields(), VALID_MATCH, {}) is True

    def test_policy_mismatch(self):
        fields = ExtractedFields(values={"policyNumber": "POL-OTHER"})
        assert check_data_consistency(fields, VALID_MATCH, {"plateNumber": "NCR 1234"}) is False

    def test_policy_claimed_but_record_has_none(self):
        match = RecordMatchResult(found=True, status="VALID", can_approve=True, record={"plateNumber": "NCR 1234"})
        fields = ExtractedFields(values={"policyNumber": "POL-X"})
        assert check_data_consistency(fields, match, {"plateNumber": "NCR 1234"}) is False


class TestEmissionCompliance:

    def test_within_limits(self):
        check = check_emission_compliance(ExtractedFields(values={"co": 4.5, "hc": 600.0, "smoke": 50.0}))
        assert check.all_compliant is True

    def test_each_limit(self):
        check = check_emission_compliance(ExtractedFields(values={"co": 4.6, "hc": 600.1, "smoke": 51}))
        assert (check.co_compliant, check.hc_compliant, check.smoke_compliant) == (False, False, False)

    def test_missing_readings_pass(self):
        check = check_emission_compliance(ExtractedFields(values={"co": 1.2}))
        assert check.all_compliant is True
        assert check.readings == {"co": 1.2}


# ═══════════════════════════════════════════════════
# Score formula
# ═══════════════════════════════════════════════════

def _checks(**overrides):
    checks = {
        "databaseMatch": True,
        "notExpired": True,
        "dataConsistent": True,
        "documentQuality": 1.0,
        "fraudScore": 0.0,
    }
    checks.update(overrides)
    return checks


class TestVerificationScore:

    def test_perfect(self):
        result = calculate_verification_score(_checks())
        assert (result.score, result.max_score, result.percentage, result.decision) == (100, 100, 100, "APPROVE")

    def test_compliance_adds_ten_points(self):
        assert calculate_verification_score(_checks(compliance=True)).max_score == 110
        result = calculate_verification_score(_checks(compliance=False))
        assert result.percentage == 91

    def test_review_band(self):
        result = calculate_verification_score(_checks(notExpired=False))
        assert result.percentage == 80
        assert result.decision == "REVIEW"

    def test_reject_band(self):
        result = calculate_verification_score(_checks(databaseMatch=False))
        assert result.percentage == 60
        assert result.decision == "REJECT"

    def test_half_quality(self):
        assert calculate_verification_score(_checks(documentQuality=0.5)).percentage == 95

    def test_non_increasing_in_fraud_score(self):
        scores = [
            calculate_verification_score(_checks(fraudScore=f / 10)).score
            for f in range(11)
        ]
        assert scores == sorted(scores, reverse=True)
        assert scores[0] - scores[-1] == pytest.approx(10)


# ═══════════════════════════════════════════════════
# decide
# ═══════════════════════════════════════════════════

class TestDecide:

    def setup_method(self):
        self.fields = ExtractedFields("insurance_cert", values={"policyNumber": "POL-2024-VALID001"})
        self.claim = {"plateNumber": "NCR 1234", "policyNumber": "POL-2024-VALID001"}

    def test_all_checks_pass(self):
        decision = decide("insurance", self.fields, VALID_MATCH, CLEAN_FRAUD, True, self.claim)
        assert decision.status == "APPROVED"
        assert decision.automated is True
        assert decision.score == 100
        assert decision.confidence == 1.0
        assert decision.reason == "All verification checks passed"
        assert decision.flag_reasons == []
        assert decision.basis["scoreDecision"] == "APPROVE"

    def test_not_found_never_approves(self):
        decision = decide("insurance", self.fields, RecordMatchResult.not_found(), CLEAN_FRAUD, True, self.claim)
        assert decision.status == "PENDING"
        assert decision.automated is False
        assert decision.flag_reasons[0] == "Database verification failed: No matching record found in registry"

    def test_expired_document(self):
        decision = decide("insurance", self.fields, VALID_MATCH, CLEAN_FRAUD, False, self.claim)
        assert decision.status == "PENDING"
        assert decision.flag_reasons == ["Document expired", "Low score: 80%"]

    def test_fraud_failure_blocks_high_score(self):
        fraud = FraudAnalysis(fraud_score=0.3, risk_level="MEDIUM")
        decision = decide("insurance", self.fields, VALID_MATCH, fraud, True, self.claim)
        assert decision.score == 97
        assert decision.status == "PENDING"
        assert decision.flag_reasons == ["Fraud risk detected (MEDIUM)"]

    def test_threshold_from_config(self):
        config = AutoVerificationConfig(min_score=99)
        fields = ExtractedFields("insurance_cert")
        decision = decide("insurance", fields, VALID_MATCH, CLEAN_FRAUD, True, {"plateNumber": "NCR 1234"}, config)
        assert decision.score == 95
        assert decision.flag_reasons == ["Low score: 95%"]

    def test_disabled(self):
        decision = decide(
            "insurance", self.fields, VALID_MATCH, CLEAN_FRAUD, True, self.claim,
            AutoVerificationConfig(enabled=False),
        )
        assert decision.status == "PENDING"
        assert decision.automated is False
        assert decision.reason == DISABLED_REASON

    def test_deterministic(self):
        fraud = analyze(self.fields, VALID_MATCH, "insurance", now=FIXED_NOW)
        first = decide("insurance", self.fields, VALID_MATCH, fraud, True, self.claim)
        second = decide("insurance", self.fields, VALID_MATCH, fraud, True, self.claim)
        assert first.to_dict() == second.to_dict()

    def test_metadata_trail(self):
        decision = decide("emission", ExtractedFields(values={"co": 1.0}), VALID_MATCH, CLEAN_FRAUD, True, {})
        assert set(decision.metadata) == {
            "extractedData", "databaseCheck", "fraudAnalysis", "verificationScore", "complianceCheck",
        }
        assert decision.metadata["complianceCheck"]["allCompliant"] is True


# ═══════════════════════════════════════════════════
# AutoVerifier: insurance
# ═══════════════════════════════════════════════════

class TestVerifyInsurance:

    @pytest.mark.asyncio
    async def test_valid_certificate_is_auto_approved(self, verifier, store, vehicle, insurance_document, insurance_text):
        with _extract_returns(insurance_text):
            decision = await verifier.verify_insurance(vehicle, insurance_document)

        assert decision.status == "APPROVED"
        assert decision.score == 100
        assert decision.metadata["policyNumber"] == "POL-2024-VALID001"
        assert decision.metadata["documentId"] == "doc-ins"
        assert len(decision.metadata["fileHash"]) == 64

        record = store.verifications[("veh-001", "insurance")]
        assert record.status == "APPROVED"
        assert record.verified_by == "system"
        assert record.note == "Auto-verified: Score 100%, Policy: POL-2024-VALID001"
        assert record.metadata["automated"] is True
        assert record.metadata["verificationScore"] == 100
        assert record.metadata["verificationMetadata"]["verifiedAt"] == FIXED_NOW.isoformat()

    @pytest.mark.asyncio
    async def test_tampered_record_goes_to_review(self, store, vehicle, insurance_document, insurance_text,
                                                  emission_registry, auto_config):
        tampered = StaticRecordRegistry(
            "Insurance",
            [{"plateNumber": "NCR 1234", "policyNumber": "POL-2024-VALID001", "status": "TAMPERED"}],
            INSURANCE_VALID_RECORDS,
            INSURANCE_STATUS_MESSAGES,
            match_policy=True,
            clock=fixed_clock,
        )
        verifier = AutoVerifier(store, tampered, emission_registry, config=auto_config, clock=fixed_clock)
        with _extract_returns(insurance_text):
            decision = await verifier.verify_insurance(vehicle, insurance_document)

        assert decision.status == "PENDING"
        assert decision.score == 57
        assert decision.metadata["fraudAnalysis"]["fraudScore"] == pytest.approx(0.3)
        assert decision.metadata["fraudAnalysis"]["riskLevel"] == "MEDIUM"
        assert decision.flag_reasons == [
            "Database verification failed: ALERT: Suspected tampered insurance certificate",
            "Fraud risk detected (MEDIUM)",
            "Low score: 57%",
        ]
        record = store.verifications[("veh-001", "insurance")]
        assert record.status == "PENDING"
        assert record.verified_by is None
        assert record.note.startswith("Auto-verification completed with issues: Database verification failed")

    @pytest.mark.asyncio
    async def test_expired_registry_record(self, store, vehicle, insurance_document, insurance_text,
                                           emission_registry, auto_config):
        registry = StaticRecordRegistry(
            "Insurance", [], [{**INSURANCE_VALID_RECORDS[0], "expiryDate": "2025-10-01"}], match_policy=True,
            expired_message="Insurance policy has EXPIRED - Renewal required",
            clock=lambda: FIXED_NOW.replace(year=2026, month=1),
        )
        verifier = AutoVerifier(store, registry, emission_registry, config=auto_config, clock=fixed_clock)
        with _extract_returns(insurance_text):
            decision = await verifier.verify_insurance(vehicle, insurance_document)
        assert decision.status == "PENDING"
        assert "Database verification failed: Insurance policy has EXPIRED - Renewal required" in decision.flag_reasons

    @pytest.mark.asyncio
    async def test_missing_policy_number(self, verifier, store, vehicle, insurance_document):
        with _extract_returns("CERTIFICATE OF COVER Plate No: NCR 1234"):
            decision = await verifier.verify_insurance(vehicle, insurance_document)
        assert decision.status == "PENDING"
        assert decision.score == 0
        assert decision.reason == "Policy number not found in document"
        record = store.verifications[("veh-001", "insurance")]
        assert record.note == "Auto-verification completed with issues: Policy number not found in document"

    @pytest.mark.asyncio
    async def test_registry_fault_becomes_pending(self, store, vehicle, insurance_document, insurance_text,
                                                  emission_registry, auto_config):
        verifier = AutoVerifier(store, BrokenMatcher(), emission_registry, config=auto_config, clock=fixed_clock)
        with _extract_returns(insurance_text):
            decision = await verifier.verify_insurance(vehicle, insurance_document)
        assert decision.status == "PENDING"
        assert decision.score == 60
        assert decision.metadata["databaseCheck"]["statusType"] == "LOOKUP_ERROR"
        assert decision.metadata["databaseCheck"]["canApprove"] is False
        assert decision.flag_reasons[0] == (
            "Database verification failed: Registry lookup failed: Insurance lookup failed: registry down"
        )

    @pytest.mark.asyncio
    async def test_file_not_found_is_not_persisted(self, verifier, store, vehicle):
        document = DocumentRecord(id="doc-gone", document_type="insurance_cert", file_path="/nonexistent/x.pdf")
        extract = AsyncMock()
        with patch(f"{MOD}.extract_text_async", extract):
            decision = await verifier.verify_insurance(vehicle, document)
        assert decision.status == "PENDING"
        assert decision.score == 0
        assert decision.reason == "Insurance document file not found. Document ID: doc-gone"
        extract.assert_not_awaited()
        assert store.verifications == {}

    @pytest.mark.asyncio
    async def test_persistence_failure_still_returns(self, verifier, store, vehicle, insurance_document,
                                                     insurance_text, caplog):
        with _extract_returns(insurance_text), \
             patch.object(store, "update_verification_status", AsyncMock(side_effect=RuntimeError("db down"))), \
             caplog.at_level(logging.ERROR, logger=MOD):
            decision = await verifier.verify_insurance(vehicle, insurance_document)
        assert decision.status == "APPROVED"
        assert "audit trail incomplete" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, verifier, vehicle, insurance_document, insurance_text):
        with _extract_returns(insurance_text), \
             patch(f"{MOD}.parse_fields", side_effect=RuntimeError("parser exploded")):
            decision = await verifier.verify_insurance(vehicle, insurance_document)
        assert decision.status == "PENDING"
        assert decision.automated is False
        assert decision.score == 0
        assert decision.reason == "Verification error: parser exploded"

    @pytest.mark.asyncio
    async def test_disabled_skips_everything(self, store, vehicle, insurance_document,
                                             insurance_registry, emission_registry):
        verifier = AutoVerifier(
            store, insurance_registry, emission_registry,
            config=AutoVerificationConfig(enabled=False), clock=fixed_clock,
        )
        extract = AsyncMock()
        with patch(f"{MOD}.extract_text_async", extract):
            decision = await verifier.verify_insurance(vehicle, insurance_document)
        assert decision.reason == DISABLED_REASON
        extract.assert_not_awaited()
        assert store.verifications == {}


class TestDuplicateDocument:
    """The same file submitted for a second vehicle is held for review."""

    @pytest.mark.asyncio
    async def test_reuse_for_other_vehicle_is_pending(self, verifier, store, vehicle, insurance_document,
                                                      insurance_text):
        other = dataclasses.replace(vehicle, id="veh-002")
        with _extract_returns(insurance_text):
            first = await verifier.verify_insurance(vehicle, insurance_document)
            second = await verifier.verify_insurance(other, insurance_document)

        assert first.status == "APPROVED"
        reason = "Document already used for vehicle veh-001. Duplicate detected."
        assert second.status == "PENDING"
        assert second.automated is True
        assert second.score == 0
        assert second.reason == reason
        assert second.flag_reasons == [reason]
        assert second.metadata["hashCheck"] == {"exists": True, "vehicleId": "veh-001", "category": "insurance"}
        assert second.metadata["fileHash"] == first.metadata["fileHash"]

        record = store.verifications[("veh-002", "insurance")]
        assert record.status == "PENDING"
        assert record.verified_by is None
        assert record.note == f"Auto-verification completed with critical issue: {reason}"
        assert record.metadata["automated"] is True
        assert record.metadata["verificationScore"] == 0
        assert record.metadata["fileHash"] == first.metadata["fileHash"]
        assert store.verifications[("veh-001", "insurance")].status == "APPROVED"

    @pytest.mark.asyncio
    async def test_reverifying_same_vehicle_is_not_a_duplicate(self, verifier, vehicle, insurance_document,
                                                               insurance_text):
        with _extract_returns(insurance_text):
            await verifier.verify_insurance(vehicle, insurance_document)
            again = await verifier.verify_insurance(vehicle, insurance_document)
        assert again.status == "APPROVED"
        assert "hashCheck" not in again.metadata

    @pytest.mark.asyncio
    async def test_emission_reuse(self, verifier, store, vehicle, emission_document, emission_text):
        other = dataclasses.replace(vehicle, id="veh-002")
        with _extract_returns(emission_text):
            await verifier.verify_emission(vehicle, emission_document)
            second = await verifier.verify_emission(other, emission_document)
        assert second.status == "PENDING"
        assert second.reason == "Document already used for vehicle veh-001. Duplicate detected."
        assert store.verifications[("veh-002", "emission")].status == "PENDING"

    @pytest.mark.asyncio
    async def test_failed_hash_lookup_is_not_a_duplicate(self, verifier, store, vehicle, insurance_document,
                                                         insurance_text, caplog):
        with _extract_returns(insurance_text), \
             patch.object(store, "find_verification_by_file_hash", AsyncMock(side_effect=RuntimeError("index down"))), \
             caplog.at_level(logging.WARNING, logger=MOD):
            decision = await verifier.verify_insurance(vehicle, insurance_document)
        assert decision.status == "APPROVED"
        assert "Duplicate document check failed" in caplog.text


# ═══════════════════════════════════════════════════
# AutoVerifier: emission
# ═══════════════════════════════════════════════════

class TestVerifyEmission:

    @pytest.mark.asyncio
    async def test_passing_certificate(self, verifier, store, vehicle, emission_document, emission_text):
        with _extract_returns(emission_text):
            decision = await verifier.verify_emission(vehicle, emission_document)
        assert decision.status == "APPROVED"
        assert decision.score == 100
        assert decision.metadata["certificateNumber"] == "ETC-2025-004521"
        record = store.verifications[("veh-001", "emission")]
        assert record.note == "Auto-verified: Score 100%, Certificate: ETC-2025-004521"

    @pytest.mark.asyncio
    async def test_high_co_reading(self, verifier, store, vehicle, emission_document, emission_text):
        with _extract_returns(emission_text.replace("CO: 1.8%", "CO: 8.5%")):
            decision = await verifier.verify_emission(vehicle, emission_document)
        assert decision.status == "PENDING"
        assert decision.score == 91
        assert decision.flag_reasons == ["Emission readings non-compliant: CO 8.5% exceeds 4.5%"]
        assert decision.metadata["complianceCheck"]["coCompliant"] is False
        assert store.verifications[("veh-001", "emission")].status == "PENDING"

    @pytest.mark.asyncio
    async def test_no_test_data(self, verifier, store, vehicle, emission_document):
        with _extract_returns("EMISSION TEST"):
            decision = await verifier.verify_emission(vehicle, emission_document)
        assert decision.reason == "Emission test data not found in document"
        assert store.verifications[("veh-001", "emission")].status == "PENDING"


# ═══════════════════════════════════════════════════
# AutoVerifier: HPG and file handling
# ═══════════════════════════════════════════════════

class TestPreVerifyHpg:

    @pytest.mark.asyncio
    async def test_extracts_identifiers_never_approves(self, verifier, store, vehicle, registration_document,
                                                       owner_id_document, registration_text, license_text):
        async def fake_extract(path, mime_type=None):
            return registration_text if path.name == "cr.pdf" else license_text

        with patch(f"{MOD}.extract_text_async", side_effect=fake_extract):
            decision = await verifier.pre_verify_hpg(vehicle, [registration_document, owner_id_document])

        assert decision.status == "PENDING"
        assert decision.score == 50
        assert decision.basis == {"canPreFill": True}
        assert decision.metadata["extractedData"]["engineNumber"] == "2NZ7654321"
        assert decision.metadata["extractedData"]["ownerIdNumber"] == "N01-12-123456"

        record = store.verifications[("veh-001", "hpg")]
        assert record.status == "PENDING"
        assert record.note == HPG_PRE_VERIFIED_NOTE
        assert record.metadata["automated"] is True

    @pytest.mark.asyncio
    async def test_no_documents(self, verifier, vehicle):
        decision = await verifier.pre_verify_hpg(vehicle, [])
        assert decision.score == 0
        assert decision.basis == {"canPreFill": False}


class TestResolveDocumentFile:

    def test_stored_path(self, verifier, insurance_document):
        assert verifier.resolve_document_file(insurance_document).name == "ctpl.pdf"

    def test_falls_back_to_id_in_upload_dir(self, verifier):
        verifier.upload_dir.mkdir(parents=True)
        (verifier.upload_dir / "doc-7.pdf").write_bytes(b"%PDF")
        document = DocumentRecord(id="doc-7", document_type="insurance_cert", file_path="/moved/away.pdf")
        assert verifier.resolve_document_file(document) == verifier.upload_dir / "doc-7.pdf"

    def test_falls_back_to_original_name(self, verifier):
        verifier.upload_dir.mkdir(parents=True)
        (verifier.upload_dir / "scan.pdf").write_bytes(b"%PDF")
        document = DocumentRecord(id="doc-8", document_type="insurance_cert", original_name="C:/Users/me/scan.pdf")
        assert verifier.resolve_document_file(document) == verifier.upload_dir / "scan.pdf"

    def test_nothing_found(self, verifier):
        document = DocumentRecord(id="doc-9", document_type="owner_id")
        assert verifier.resolve_document_file(document) is None

    @pytest.mark.asyncio
    async def test_read_document_missing_file(self, verifier):
        assert await verifier.read_document(DocumentRecord(id="doc-9", document_type="owner_id")) is None
