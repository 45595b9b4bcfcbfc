"""Verification decision engine and the auto-verification flows built on it.

``decide`` is pure: it combines a registry verdict, a fraud analysis and an
expiry result into a weighted score and an APPROVED / PENDING decision,
without reading the clock.  ``AutoVerifier`` runs the impure steps around
it (file resolution, extraction, registry lookup, persistence) and wraps
every flow in a safety net so a verification attempt never raises.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable

from lto_verify.config import (
    EMISSION_LIMITS,
    REGISTRY_LOOKUP_TIMEOUT,
    TRACE_ENABLED,
    UPLOAD_DIR,
    AutoVerificationConfig,
)
from lto_verify.errors import RegistryLookupError
from lto_verify.pipeline.field_parser import extract_hpg_info, parse_fields
from lto_verify.pipeline.fraud import analyze
from lto_verify.pipeline.ingestion import extract_text_async
from lto_verify.pipeline.models import (
    ComplianceCheck,
    DocumentRecord,
    ExpiryCheck,
    ExtractedFields,
    FraudAnalysis,
    RecordMatchResult,
    VerificationDecision,
    VerificationRecord,
    VerificationScore,
    Vehicle,
)
from lto_verify.pipeline.registries import RecordMatcher, lookup_with_timeout
from lto_verify.pipeline.utils import is_date_only, normalize_identifier, normalize_plate, parse_date
from lto_verify.stores import VerificationStore

logger = logging.getLogger(__name__)


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


# Document-quality key fields per category: any one present earns full quality points
KEY_FIELDS = {
    "insurance": ("policyNumber", "insurancePolicyNumber"),
    "emission": ("testDate", "certificateNumber"),
}

HPG_PRE_VERIFIED_NOTE = "HPG pre-verified: Data extracted, manual physical inspection required"
DISABLED_REASON = "Auto-verification disabled"


# ═══════════════════════════════════════════════════
# CHECKS
# ═══════════════════════════════════════════════════

def check_expiry(expiry, now: datetime | None = None) -> ExpiryCheck:
    """Is ``expiry`` still in the future?

    Date-only values count as valid through the end of that day.
    """
    if not expiry:
        return ExpiryCheck(is_valid=False, reason="Expiry date not found")
    parsed = parse_date(expiry)
    if parsed is None:
        return ExpiryCheck(is_valid=False, reason="Could not parse expiry date")

    now = now or datetime.now()
    if is_date_only(expiry):
        parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999999)
    is_valid = parsed >= now
    return ExpiryCheck(
        is_valid=is_valid,
        expiry_date=parsed.isoformat(),
        days_until_expiry=(parsed - now).days if is_valid else 0,
        reason="Valid" if is_valid else "Expired",
    )


def check_data_consistency(
    fields: ExtractedFields,
    match_result: RecordMatchResult | None,
    vehicle_claim: dict | None = None,
) -> bool:
    """Does the registry record agree with the claim and the document?

    Plates must agree (a missing side is not a disagreement); when a
    policy number was claimed it must equal the record's.  No record
    means nothing to contradict.
    """
    if match_result is None or not match_result.found or not match_result.record:
        return True
    record = match_result.record
    claim = vehicle_claim or {}

    claimed_plate, record_plate = claim.get("plateNumber"), record.get("plateNumber")
    plate_match = (not claimed_plate or not record_plate
                   or normalize_plate(claimed_plate) == normalize_plate(record_plate))

    policy = fields.first("insurancePolicyNumber", "policyNumber") or claim.get("policyNumber")
    if policy:
        recorded = record.get("policyNumber")
        return plate_match and bool(recorded) and normalize_identifier(policy) == normalize_identifier(recorded)
    return plate_match


def check_emission_compliance(fields: ExtractedFields, limits: dict | None = None) -> ComplianceCheck:
    """Compare CO / HC / smoke readings against the limits.  Missing readings pass."""
    limits = limits or EMISSION_LIMITS
    readings = {name: fields.get(name) for name in ("co", "hc", "smoke") if fields.get(name) is not None}

    def within(name: str) -> bool:
        value = readings.get(name)
        return value is None or float(value) <= limits[name]

    return ComplianceCheck(
        co_compliant=within("co"),
        hc_compliant=within("hc"),
        smoke_compliant=within("smoke"),
        readings=readings,
    )


def _compliance_reason(compliance: ComplianceCheck, limits: dict | None = None) -> str:
    limits = limits or EMISSION_LIMITS
    parts = []
    if not compliance.co_compliant:
        parts.append(f"CO {compliance.readings['co']}% exceeds {limits['co']}%")
    if not compliance.hc_compliant:
        parts.append(f"HC {compliance.readings['hc']} ppm exceeds {limits['hc']:g} ppm")
    if not compliance.smoke_compliant:
        parts.append(f"smoke opacity {compliance.readings['smoke']}% exceeds {limits['smoke']:g}%")
    return "Emission readings non-compliant: " + ", ".join(parts)


def calculate_verification_score(checks: dict) -> VerificationScore:
    """Weighted score out of 100 (110 when a compliance check applies).

    Registry match 40, not expired 20, data consistency 20, document
    quality up to 10, inverse fraud score up to 10, compliance 10.
    """
    score = 0.0
    max_score = 0

    max_score += 40
    if checks.get("databaseMatch"):
        score += 40

    max_score += 20
    if checks.get("notExpired"):
        score += 20

    max_score += 20
    if checks.get("dataConsistent"):
        score += 20

    max_score += 10
    score += checks.get("documentQuality", 0) * 10

    max_score += 10
    score += (1 - checks.get("fraudScore", 0)) * 10

    if "compliance" in checks:
        max_score += 10
        if checks["compliance"]:
            score += 10

    percentage = round(score / max_score * 100) if max_score else 0
    if percentage >= 90:
        band = "APPROVE"
    elif percentage >= 70:
        band = "REVIEW"
    else:
        band = "REJECT"
    return VerificationScore(score=score, max_score=max_score, percentage=percentage, decision=band, checks=dict(checks))


# ═══════════════════════════════════════════════════
# DECISION
# ═══════════════════════════════════════════════════

def decide(
    category: str,
    fields: ExtractedFields,
    match_result: RecordMatchResult | None,
    fraud_analysis: FraudAnalysis,
    expiry_valid: bool,
    vehicle_claim: dict | None = None,
    config: AutoVerificationConfig | None = None,
) -> VerificationDecision:
    """Approve only when the score clears ``config.min_score`` and no hard check fails.

    Hard checks: registry verdict VALID, document not expired, emission
    readings compliant (emission only), fraud analysis passed.
    """
    config = config or AutoVerificationConfig()
    if not config.enabled:
        return VerificationDecision(status="PENDING", automated=False, reason=DISABLED_REASON)

    match_valid = match_result is not None and match_result.status == "VALID"
    quality = 1.0 if fields.first(*KEY_FIELDS.get(category, ())) else 0.5
    checks = {
        "databaseMatch": match_valid,
        "notExpired": bool(expiry_valid),
        "dataConsistent": check_data_consistency(fields, match_result, vehicle_claim),
        "documentQuality": quality,
        "fraudScore": fraud_analysis.fraud_score,
    }
    compliance = None
    if category == "emission":
        compliance = check_emission_compliance(fields)
        checks["compliance"] = compliance.all_compliant

    verification_score = calculate_verification_score(checks)
    percentage = verification_score.percentage

    reasons = []
    if not match_valid:
        message = match_result.message if match_result else "no registry result"
        reasons.append(f"Database verification failed: {message}")
    if not expiry_valid:
        reasons.append("Document expired")
    if compliance is not None and not compliance.all_compliant:
        reasons.append(_compliance_reason(compliance))
    if not fraud_analysis.passed:
        reasons.append(f"Fraud risk detected ({fraud_analysis.risk_level})")
    if percentage < config.min_score:
        reasons.append(f"Low score: {percentage}%")

    approved = not reasons
    metadata = {
        "extractedData": fields.to_dict(),
        "databaseCheck": match_result.to_dict() if match_result else None,
        "fraudAnalysis": fraud_analysis.to_dict(),
        "verificationScore": verification_score.to_dict(),
    }
    if compliance is not None:
        metadata["complianceCheck"] = compliance.to_dict()

    _trace(f"decide({category}): {percentage}% band={verification_score.decision} reasons={reasons}")
    return VerificationDecision(
        status="APPROVED" if approved else "PENDING",
        automated=approved,
        score=percentage,
        reason="All verification checks passed" if approved else "; ".join(reasons),
        basis={**checks, "scoreDecision": verification_score.decision},
        flag_reasons=reasons,
        metadata=metadata,
    )


# ═══════════════════════════════════════════════════
# AUTO-VERIFICATION FLOWS
# ═══════════════════════════════════════════════════

def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def error_decision(error: Exception) -> VerificationDecision:
    return VerificationDecision(status="PENDING", automated=False, score=0, reason=f"Verification error: {error}")


class AutoVerifier:
    """Runs insurance, emission and HPG verification for one vehicle document.

    Every public flow returns a ``VerificationDecision``; any fault inside
    a flow becomes a PENDING decision with zero confidence.
    """

    def __init__(
        self,
        verifications: VerificationStore,
        insurance_registry: RecordMatcher,
        emission_registry: RecordMatcher,
        config: AutoVerificationConfig | None = None,
        upload_dir: str | Path = UPLOAD_DIR,
        lookup_timeout: float = REGISTRY_LOOKUP_TIMEOUT,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.verifications = verifications
        self.insurance_registry = insurance_registry
        self.emission_registry = emission_registry
        self.config = config or AutoVerificationConfig.from_env()
        self.upload_dir = Path(upload_dir)
        self.lookup_timeout = lookup_timeout
        self.clock = clock

    # ── Helpers ──

    def resolve_document_file(self, document: DocumentRecord) -> Path | None:
        """Stored path, then ``<upload_dir>/<id>.pdf``, then ``<upload_dir>/<original_name>``."""
        candidates = []
        if document.file_path:
            candidates.append(Path(document.file_path))
        if document.id:
            candidates.append(self.upload_dir / f"{document.id}.pdf")
        if document.original_name:
            candidates.append(self.upload_dir / Path(document.original_name).name)
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    async def read_document(self, document: DocumentRecord) -> str | None:
        """Extracted text of ``document``, or None when its file cannot be found."""
        path = self.resolve_document_file(document)
        if path is None:
            logger.warning(f"File for document {document.id} ({document.document_type}) not found")
            return None
        return await extract_text_async(path, document.mime_type)

    async def _lookup(self, registry: RecordMatcher, claim: dict) -> RecordMatchResult:
        try:
            return await lookup_with_timeout(registry, claim, self.lookup_timeout)
        except RegistryLookupError as e:
            logger.warning(f"Registry lookup failed, continuing without a registry verdict: {e}")
            return RecordMatchResult(
                found=False,
                status="NOT_FOUND",
                can_approve=False,
                message=f"Registry lookup failed: {e}",
                status_type="LOOKUP_ERROR",
            )

    async def _persist(
        self,
        vehicle: Vehicle,
        category: str,
        decision: VerificationDecision,
        note: str,
        automated: bool | None = None,
    ) -> None:
        verified_by = "system" if decision.approved else None
        metadata = {
            "automated": decision.automated if automated is None else automated,
            "verificationScore": decision.score,
            "verificationMetadata": {
                **decision.metadata,
                "basis": decision.basis,
                "flagReasons": list(decision.flag_reasons),
                "verifiedAt": self.clock().isoformat(),
            },
        }
        # Top-level so later verifications can find reuse of the same file
        if decision.metadata.get("fileHash"):
            metadata["fileHash"] = decision.metadata["fileHash"]
        try:
            await self.verifications.update_verification_status(
                vehicle.id, category, decision.status, verified_by, note, metadata
            )
        except Exception as e:
            logger.error(
                f"Failed to persist {category} verification for vehicle {vehicle.id}, "
                f"audit trail incomplete: {e}"
            )

    def _file_not_found(self, label: str, document: DocumentRecord) -> VerificationDecision:
        reason = f"{label} document file not found. Document ID: {document.id or 'N/A'}"
        logger.error(reason)
        return VerificationDecision(status="PENDING", automated=False, score=0, reason=reason)

    async def _flag_missing_data(
        self, vehicle: Vehicle, category: str, reason: str, fields: ExtractedFields, file_hash: str
    ) -> VerificationDecision:
        logger.warning(f"{category.capitalize()} verification issue for vehicle {vehicle.id}: {reason}")
        decision = VerificationDecision(
            status="PENDING",
            automated=False,
            score=0,
            reason=reason,
            flag_reasons=[reason],
            metadata={"extractedData": fields.to_dict(), "fileHash": file_hash},
        )
        await self._persist(vehicle, category, decision, f"Auto-verification completed with issues: {reason}")
        return decision

    async def _find_duplicate(self, vehicle: Vehicle, file_hash: str) -> VerificationRecord | None:
        """Verification of another vehicle made from the same file, if any.

        A failing lookup is logged and treated as "no duplicate".
        """
        try:
            return await self.verifications.find_verification_by_file_hash(file_hash, exclude_vehicle_id=vehicle.id)
        except Exception as e:
            logger.warning(f"Duplicate document check failed for vehicle {vehicle.id}, continuing: {e}")
            return None

    async def _flag_duplicate(
        self,
        vehicle: Vehicle,
        category: str,
        document: DocumentRecord,
        fields: ExtractedFields,
        file_hash: str,
        previous: VerificationRecord,
    ) -> VerificationDecision:
        reason = f"Document already used for vehicle {previous.vehicle_id}. Duplicate detected."
        logger.warning(f"{category.capitalize()} duplicate detected for vehicle {vehicle.id}: {reason}")
        decision = VerificationDecision(
            status="PENDING",
            automated=True,
            score=0,
            reason=reason,
            flag_reasons=[reason],
            metadata={
                "extractedData": fields.to_dict(),
                "fileHash": file_hash,
                "documentId": document.id,
                "hashCheck": {
                    "exists": True,
                    "vehicleId": previous.vehicle_id,
                    "category": previous.category,
                },
            },
        )
        await self._persist(vehicle, category, decision, f"Auto-verification completed with critical issue: {reason}")
        return decision

    # ── Insurance ──

    async def verify_insurance(self, vehicle: Vehicle, document: DocumentRecord) -> VerificationDecision:
        if not self.config.enabled:
            return VerificationDecision(status="PENDING", automated=False, reason=DISABLED_REASON)
        try:
            return await self._verify_insurance(vehicle, document)
        except Exception as e:
            logger.error(f"Insurance verification error for vehicle {vehicle.id}: {e}", exc_info=True)
            return error_decision(e)

    async def _verify_insurance(self, vehicle: Vehicle, document: DocumentRecord) -> VerificationDecision:
        logger.info(f"Starting insurance verification for vehicle {vehicle.id}")
        path = self.resolve_document_file(document)
        if path is None:
            return self._file_not_found("Insurance", document)

        text = await extract_text_async(path, document.mime_type)
        fields = parse_fields(text, "insurance_cert")
        file_hash = await asyncio.to_thread(_sha256, path)

        policy = fields.first("insurancePolicyNumber", "policyNumber")
        if not policy:
            return await self._flag_missing_data(
                vehicle, "insurance", "Policy number not found in document", fields, file_hash
            )
        previous = await self._find_duplicate(vehicle, file_hash)
        if previous is not None:
            return await self._flag_duplicate(vehicle, "insurance", document, fields, file_hash, previous)

        now = self.clock()
        claim = {**vehicle.claim(), "policyNumber": policy}
        match = await self._lookup(self.insurance_registry, claim)
        fraud = analyze(fields, match, "insurance", now=now)
        expiry = check_expiry(fields.first("insuranceExpiry", "expiryDate"), now)

        decision = decide("insurance", fields, match, fraud, expiry.is_valid, claim, self.config)
        decision.metadata.update({
            "expiryCheck": expiry.to_dict(),
            "fileHash": file_hash,
            "documentId": document.id,
            "policyNumber": policy,
        })
        if decision.approved:
            note = f"Auto-verified: Score {decision.score}%, Policy: {policy}"
        else:
            note = f"Auto-verification completed with issues: {decision.reason}"
        await self._persist(vehicle, "insurance", decision, note)
        logger.info(f"Insurance verification for vehicle {vehicle.id}: {decision.status} ({decision.score}%)")
        return decision

    # ── Emission ──

    async def verify_emission(self, vehicle: Vehicle, document: DocumentRecord) -> VerificationDecision:
        if not self.config.enabled:
            return VerificationDecision(status="PENDING", automated=False, reason=DISABLED_REASON)
        try:
            return await self._verify_emission(vehicle, document)
        except Exception as e:
            logger.error(f"Emission verification error for vehicle {vehicle.id}: {e}", exc_info=True)
            return error_decision(e)

    async def _verify_emission(self, vehicle: Vehicle, document: DocumentRecord) -> VerificationDecision:
        logger.info(f"Starting emission verification for vehicle {vehicle.id}")
        path = self.resolve_document_file(document)
        if path is None:
            return self._file_not_found("Emission", document)

        text = await extract_text_async(path, document.mime_type)
        fields = parse_fields(text, "emission_cert")
        file_hash = await asyncio.to_thread(_sha256, path)

        has_readings = any(name in fields for name in ("co", "hc", "smoke"))
        if not fields.get("certificateNumber") and not has_readings:
            return await self._flag_missing_data(
                vehicle, "emission", "Emission test data not found in document", fields, file_hash
            )
        previous = await self._find_duplicate(vehicle, file_hash)
        if previous is not None:
            return await self._flag_duplicate(vehicle, "emission", document, fields, file_hash, previous)

        now = self.clock()
        claim = vehicle.claim()
        match = await self._lookup(self.emission_registry, claim)
        fraud = analyze(fields, match, "emission", now=now)
        expiry = check_expiry(fields.get("expiryDate"), now)

        decision = decide("emission", fields, match, fraud, expiry.is_valid, claim, self.config)
        decision.metadata.update({
            "expiryCheck": expiry.to_dict(),
            "fileHash": file_hash,
            "documentId": document.id,
            "certificateNumber": fields.get("certificateNumber"),
        })
        if decision.approved:
            note = f"Auto-verified: Score {decision.score}%, Certificate: {fields.get('certificateNumber') or 'N/A'}"
        else:
            note = f"Auto-verification completed with issues: {decision.reason}"
        await self._persist(vehicle, "emission", decision, note)
        logger.info(f"Emission verification for vehicle {vehicle.id}: {decision.status} ({decision.score}%)")
        return decision

    # ── HPG ──

    async def pre_verify_hpg(self, vehicle: Vehicle, documents: list[DocumentRecord]) -> VerificationDecision:
        """Extract identifiers for the HPG form.  HPG is never auto-approved."""
        if not self.config.enabled:
            return VerificationDecision(status="PENDING", automated=False, reason=DISABLED_REASON)
        try:
            return await self._pre_verify_hpg(vehicle, documents)
        except Exception as e:
            logger.error(f"HPG pre-verification error for vehicle {vehicle.id}: {e}", exc_info=True)
            return error_decision(e)

    async def _pre_verify_hpg(self, vehicle: Vehicle, documents: list[DocumentRecord]) -> VerificationDecision:
        logger.info(f"Starting HPG pre-verification for vehicle {vehicle.id}")
        registration = next(
            (d for d in documents if d.document_type in ("registration_cert", "or_cr")), None
        )
        owner_id = next((d for d in documents if d.document_type == "owner_id"), None)

        registration_text = await self.read_document(registration) if registration else None
        owner_text = await self.read_document(owner_id) if owner_id else None
        extracted = extract_hpg_info(registration_text, owner_text)

        can_pre_fill = bool(extracted.get("engineNumber") and extracted.get("chassisNumber"))
        decision = VerificationDecision(
            status="PENDING",
            automated=False,
            score=50 if can_pre_fill else 0,
            reason="HPG requires manual physical inspection",
            basis={"canPreFill": can_pre_fill},
            metadata={
                "extractedData": extracted.to_dict(),
                "preVerifiedAt": self.clock().isoformat(),
                "note": "HPG always requires manual physical inspection",
            },
        )
        await self._persist(vehicle, "hpg", decision, HPG_PRE_VERIFIED_NOTE, automated=True)
        return decision
