"""Clearance orchestrator - routes a submitted registration to HPG and the insurer.

For one vehicle:
  1. Wait for its uploaded documents to be linked (backoff, then a
     time-window fallback around the vehicle's creation time)
  2. HPG track     -> identifier staging / OCR diff + hot-list lookup
  3. Insurance track -> auto-verification, then the clearance request
  4. Vehicle status -> SUBMITTED once any request went out

The two tracks are independent: a failure in one is recorded on its
``TrackResult`` and never stops the other.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from lto_verify.config import (
    REGISTRY_LOOKUP_TIMEOUT,
    REVIEWER_ROLES,
    VEHICLE_STATUS_SUBMITTED,
    DocumentWaitConfig,
)
from lto_verify.errors import RegistryLookupError
from lto_verify.pipeline.field_parser import parse_fields
from lto_verify.pipeline.models import (
    ClearanceOutcome,
    ClearanceRequest,
    DocumentRecord,
    TrackResult,
    Vehicle,
    VerificationDecision,
)
from lto_verify.pipeline.registries import RecordMatcher, lookup_with_timeout
from lto_verify.pipeline.utils import identifiers_match
from lto_verify.pipeline.verification import AutoVerifier
from lto_verify.stores import PipelineStore

logger = logging.getLogger(__name__)

HPG_PURPOSE = "Initial Vehicle Registration - HPG Clearance"
INSURANCE_PURPOSE = "Initial Vehicle Registration - Insurance Verification"
AUTO_SENT_NOTE = "Automatically sent upon vehicle registration submission"

REGISTRATION_DOCUMENT_TYPES = ("registration_cert", "or_cr")
HPG_DOCUMENT_TYPES = ("hpg_clearance", "owner_id", *REGISTRATION_DOCUMENT_TYPES)

# Any one of these documents makes the HPG track applicable
HPG_TRIGGER_TYPES = {
    "new": ("owner_id", "hpg_clearance"),
    "transfer": ("owner_id", *REGISTRATION_DOCUMENT_TYPES),
}


# ═══════════════════════════════════════════════════
# TRACK APPLICABILITY
# ═══════════════════════════════════════════════════

def classify_registration(vehicle: Vehicle) -> str:
    """``"transfer"`` when any registration descriptor says so, else ``"new"``."""
    for value in (vehicle.registration_type, vehicle.origin_type, vehicle.purpose):
        if value and "transfer" in value.lower():
            return "transfer"
    return "new"


def hpg_track_applies(kind: str, documents: list[DocumentRecord]) -> bool:
    triggers = HPG_TRIGGER_TYPES.get(kind, HPG_TRIGGER_TYPES["new"])
    return any(d.document_type in triggers for d in documents)


def find_insurance_document(documents: list[DocumentRecord]) -> DocumentRecord | None:
    """Typed insurance certificate first; a filename mentioning insurance as a last resort."""
    for document in documents:
        if document.document_type == "insurance_cert":
            return document
    for document in documents:
        if document.original_name and "insurance" in document.original_name.lower():
            return document
    return None


def compare_identifiers(vehicle: Vehicle, extracted) -> dict:
    """Claimed vs extracted identifiers: True/False, or None when a side is missing."""
    return {
        "plateNumber": identifiers_match(vehicle.plate_number, extracted.get("plateNumber"), plate=True),
        "engineNumber": identifiers_match(vehicle.engine_number, extracted.get("engineNumber")),
        "chassisNumber": identifiers_match(
            vehicle.chassis_number or vehicle.vin, extracted.first("chassisNumber", "vin")
        ),
        "vin": identifiers_match(vehicle.vin, extracted.get("vin")),
    }


def _staged_claim(vehicle: Vehicle) -> dict:
    return {
        "plateNumber": vehicle.plate_number,
        "engineNumber": vehicle.engine_number,
        "chassisNumber": vehicle.chassis_number or vehicle.vin,
        "vin": vehicle.vin,
        "make": vehicle.make,
        "model": vehicle.model,
        "year": vehicle.year,
        "color": vehicle.color,
        "ownerName": vehicle.owner_name,
    }


def _document_refs(documents: list[DocumentRecord]) -> list[dict]:
    return [
        {"id": d.id, "type": d.document_type, "path": d.file_path, "filename": d.original_name}
        for d in documents
    ]


def _vehicle_summary(vehicle: Vehicle) -> dict:
    return {
        "vehicleVin": vehicle.vin,
        "vehiclePlate": vehicle.plate_number,
        "vehicleMake": vehicle.make,
        "vehicleModel": vehicle.model,
        "vehicleYear": vehicle.year,
        "ownerName": vehicle.owner_name,
        "ownerEmail": vehicle.owner_email,
    }


class ClearanceOrchestrator:
    """Creates the HPG and insurance clearance requests for a submitted vehicle."""

    def __init__(
        self,
        store: PipelineStore,
        verifier: AutoVerifier,
        hpg_registry: RecordMatcher,
        wait: DocumentWaitConfig | None = None,
        lookup_timeout: float = REGISTRY_LOOKUP_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.verifier = verifier
        self.hpg_registry = hpg_registry
        self.wait = wait or DocumentWaitConfig()
        self.lookup_timeout = lookup_timeout
        self._sleep = sleep

    # ═══════════════════════════════════════════
    # ENTRY POINT
    # ═══════════════════════════════════════════

    async def auto_send_clearance_requests(
        self,
        vehicle_id: str,
        documents: list[DocumentRecord] | None = None,
        requested_by: str = "system",
    ) -> ClearanceOutcome:
        outcome = ClearanceOutcome(vehicle_id=vehicle_id)

        vehicle = await self.store.get_vehicle(vehicle_id)
        if vehicle is None:
            logger.error(f"[Auto-Send] Vehicle {vehicle_id} not found")
            outcome.hpg.error = outcome.insurance.error = "Vehicle not found"
            return outcome

        all_documents = await self.wait_for_documents(vehicle)
        seen = {d.id for d in all_documents}
        for document in documents or []:
            if document.id not in seen:
                # Caller copies can predate the upload layer's path and linkage updates
                stored = await self.store.get_document(document.id)
                all_documents.append(stored or document)
                seen.add(document.id)
        outcome.document_ids = [d.id for d in all_documents]
        logger.info(f"[Auto-Send] Vehicle {vehicle_id}: {len(all_documents)} document(s) available")

        kind = classify_registration(vehicle)
        if hpg_track_applies(kind, all_documents):
            try:
                outcome.hpg = await self._send_to_hpg(vehicle, all_documents, requested_by, kind)
            except Exception as e:
                logger.error(f"[Auto-Send] HPG track failed for vehicle {vehicle_id}: {e}", exc_info=True)
                outcome.hpg = TrackResult(error=str(e))
        else:
            logger.info(f"[Auto-Send] Skipping HPG - no qualifying documents for a {kind} registration")

        insurance_document = find_insurance_document(all_documents)
        if insurance_document is not None:
            try:
                outcome.insurance = await self._send_to_insurance(vehicle, insurance_document, requested_by)
            except Exception as e:
                logger.error(f"[Auto-Send] Insurance track failed for vehicle {vehicle_id}: {e}", exc_info=True)
                outcome.insurance = TrackResult(error=str(e))
        else:
            logger.info("[Auto-Send] Skipping Insurance - no insurance certificate found")

        if outcome.any_sent:
            await self._mark_submitted(vehicle, outcome, requested_by)
        return outcome

    # ═══════════════════════════════════════════
    # DOCUMENT WAIT
    # ═══════════════════════════════════════════

    async def wait_for_documents(self, vehicle: Vehicle) -> list[DocumentRecord]:
        """Documents linked to ``vehicle``, allowing for late linkage.

        Polls by vehicle id immediately and then with doubling delays.  If
        nothing turns up, falls back to documents uploaded within the
        configured window around the vehicle's creation that are unlinked
        or linked to this vehicle.
        """
        documents = await self.store.get_documents_by_vehicle(vehicle.id)
        delay = self.wait.base_delay
        for attempt in range(1, self.wait.attempts + 1):
            if documents:
                return list(documents)
            logger.debug(f"[Auto-Send] No documents for {vehicle.id} yet, retry {attempt} in {delay * 1000:.0f}ms")
            await self._sleep(delay)
            delay *= 2
            documents = await self.store.get_documents_by_vehicle(vehicle.id)
        if documents:
            return list(documents)

        window = timedelta(minutes=self.wait.window_minutes)
        candidates = await self.store.get_documents_in_window(
            vehicle.created_at - window, vehicle.created_at + window
        )
        matched = [d for d in candidates if d.vehicle_id in (None, vehicle.id)]
        logger.info(
            f"[Auto-Send] Time-window fallback for {vehicle.id}: "
            f"{len(matched)} of {len(candidates)} document(s) in +/-{self.wait.window_minutes} min"
        )
        return matched

    # ═══════════════════════════════════════════
    # SHARED HELPERS
    # ═══════════════════════════════════════════

    async def _existing_open_request(self, vehicle_id: str, request_type: str) -> ClearanceRequest | None:
        for request in await self.store.get_clearance_requests_by_vehicle(vehicle_id):
            if request.request_type == request_type and request.is_open:
                return request
        return None

    async def _reviewer_id(self, request_type: str) -> str | None:
        user = await self.store.find_active_user(REVIEWER_ROLES[request_type])
        if user is None:
            logger.warning(f"[Auto-Send] No active {REVIEWER_ROLES[request_type]} to assign")
            return None
        return user.id

    async def _notify(self, user_id: str | None, title: str, message: str, type: str = "info") -> None:
        if not user_id:
            return
        try:
            await self.store.create_notification(user_id, title, message, type)
        except Exception as e:
            logger.warning(f"[Auto-Send] Notification '{title}' to {user_id} failed: {e}")

    async def _mark_submitted(self, vehicle: Vehicle, outcome: ClearanceOutcome, requested_by: str) -> None:
        try:
            await self.store.update_vehicle(vehicle.id, status=VEHICLE_STATUS_SUBMITTED)
            await self.store.add_vehicle_history(
                vehicle.id,
                "CLEARANCE_REQUESTS_AUTO_SENT",
                "Clearance requests automatically sent to organizations. "
                f"HPG: {'Yes' if outcome.hpg.sent else 'No'}, "
                f"Insurance: {'Yes' if outcome.insurance.sent else 'No'}",
                performed_by=requested_by,
                metadata={
                    "hpgRequestId": outcome.hpg.request_id,
                    "insuranceRequestId": outcome.insurance.request_id,
                },
            )
        except Exception as e:
            logger.error(f"[Auto-Send] Failed to mark vehicle {vehicle.id} submitted, audit trail incomplete: {e}")

    # ═══════════════════════════════════════════
    # HPG TRACK
    # ═══════════════════════════════════════════

    async def _stage_hpg_data(self, vehicle: Vehicle, documents: list[DocumentRecord], kind: str) -> dict:
        """Phase 1: what the HPG reviewer sees pre-filled."""
        if kind != "transfer":
            return {"source": "vehicle_record", "extractedData": _staged_claim(vehicle), "dataComparison": None}

        registration = next((d for d in documents if d.document_type in REGISTRATION_DOCUMENT_TYPES), None)
        if registration is None:
            return {"source": "none", "extractedData": {}, "dataComparison": None}
        try:
            text = await self.verifier.read_document(registration)
        except Exception as e:
            logger.warning(f"[Auto-Send→HPG] Could not read registration document {registration.id}: {e}")
            text = None
        if not text:
            return {"source": registration.document_type, "extractedData": {}, "dataComparison": None}

        fields = parse_fields(text, registration.document_type)
        return {
            "source": registration.document_type,
            "extractedData": fields.to_dict(),
            "dataComparison": compare_identifiers(vehicle, fields),
        }

    async def _check_hot_list(self, vehicle: Vehicle) -> dict:
        checked_at = datetime.now().isoformat()
        try:
            match = await lookup_with_timeout(self.hpg_registry, vehicle.claim(), self.lookup_timeout)
        except RegistryLookupError as e:
            logger.warning(f"[Auto-Send→HPG] Hot-list check failed for {vehicle.id}: {e}")
            return {
                "checkedAt": checked_at,
                "status": "ERROR",
                "details": "Database check failed",
                "error": str(e),
                "recommendation": "MANUAL_REVIEW",
            }
        flagged = match.status == "FLAGGED"
        check = {
            "checkedAt": checked_at,
            "status": "FLAGGED" if flagged else "CLEAN",
            "details": match.message,
            "statusType": match.status_type,
            "matchedRecords": [match.record] if match.record else [],
            "recommendation": "AUTO_REJECT" if flagged else "PROCEED",
        }
        if flagged:
            check["rejectionReason"] = (match.record or {}).get("reason") or match.message
        return check

    async def _send_to_hpg(
        self, vehicle: Vehicle, documents: list[DocumentRecord], requested_by: str, kind: str
    ) -> TrackResult:
        existing = await self._existing_open_request(vehicle.id, "hpg")
        if existing is not None:
            return TrackResult(sent=False, request_id=existing.id, error="HPG clearance request already exists")

        assigned_to = await self._reviewer_id("hpg")
        hpg_documents = [d for d in documents if d.document_type in HPG_DOCUMENT_TYPES]
        staged = await self._stage_hpg_data(vehicle, hpg_documents, kind)
        hot_list = await self._check_hot_list(vehicle)
        flagged = hot_list["status"] == "FLAGGED"

        notes = AUTO_SENT_NOTE
        if flagged:
            notes += f"\n\nWARNING: Vehicle found in HPG hot list - {hot_list['rejectionReason']}"

        request = ClearanceRequest(
            vehicle_id=vehicle.id,
            request_type="hpg",
            requested_by=requested_by,
            assigned_to=assigned_to,
            purpose=HPG_PURPOSE,
            notes=notes,
            metadata={
                **_vehicle_summary(vehicle),
                "vehicleColor": vehicle.color,
                "engineNumber": vehicle.engine_number,
                "chassisNumber": vehicle.chassis_number,
                "registrationKind": kind,
                "documents": _document_refs(hpg_documents),
                **staged,
                "hpgDatabaseCheck": hot_list,
                "hpgDatabaseCheckedAt": hot_list["checkedAt"],
            },
        )
        request, created = await self.store.create_clearance_request_if_absent(request)
        if not created:
            return TrackResult(sent=False, request_id=request.id, error="HPG clearance request already exists")

        await self.store.add_vehicle_history(
            vehicle.id,
            "HPG_CLEARANCE_REQUESTED",
            f"HPG clearance automatically requested. Purpose: {HPG_PURPOSE}",
            performed_by=requested_by,
            metadata={"clearanceRequestId": request.id},
        )
        label = vehicle.plate_number or vehicle.vin
        await self._notify(assigned_to, "New HPG Clearance Request", f"New clearance request for vehicle {label}")
        if flagged:
            await self._notify(
                assigned_to,
                "HPG Hot List Alert",
                f"Vehicle {label} matched the HPG hot list: {hot_list['rejectionReason']}",
                "urgent",
            )

        logger.info(f"[Auto-Send→HPG] Request created: {request.id} (hot list: {hot_list['status']})")
        return TrackResult(sent=True, request_id=request.id)

    # ═══════════════════════════════════════════
    # INSURANCE TRACK
    # ═══════════════════════════════════════════

    async def _verify_insurance(self, vehicle: Vehicle, document: DocumentRecord) -> VerificationDecision | None:
        try:
            return await self.verifier.verify_insurance(vehicle, document)
        except Exception as e:
            logger.error(f"[Auto-Send→Insurance] Auto-verification raised for {vehicle.id}: {e}", exc_info=True)
            try:
                await self.store.update_verification_status(
                    vehicle.id,
                    "insurance",
                    "PENDING",
                    None,
                    f"Auto-verification failed: {e}",
                    {"automated": False, "verificationMetadata": {"error": str(e)}},
                )
            except Exception as pe:
                logger.error(f"[Auto-Send→Insurance] Could not record verification error, audit trail incomplete: {pe}")
            return None

    async def _send_to_insurance(
        self, vehicle: Vehicle, document: DocumentRecord, requested_by: str
    ) -> TrackResult:
        existing = await self._existing_open_request(vehicle.id, "insurance")
        if existing is not None:
            return TrackResult(
                sent=False, request_id=existing.id, error="Insurance verification request already exists"
            )

        assigned_to = await self._reviewer_id("insurance")
        decision = await self._verify_insurance(vehicle, document)
        verification = decision.to_dict() if decision else {
            "status": "PENDING", "automated": False, "reason": "Auto-verification failed",
        }

        request = ClearanceRequest(
            vehicle_id=vehicle.id,
            request_type="insurance",
            requested_by=requested_by,
            assigned_to=assigned_to,
            purpose=INSURANCE_PURPOSE,
            notes=AUTO_SENT_NOTE,
            metadata={
                **_vehicle_summary(vehicle),
                "documentId": document.id,
                "documentPath": document.file_path,
                "documentType": document.document_type,
                "documentFilename": document.original_name,
                "documents": _document_refs([document]),
                "autoVerification": {
                    "status": verification["status"],
                    "automated": verification["automated"],
                    "score": verification.get("score", 0),
                    "reason": verification.get("reason", ""),
                },
            },
        )
        request, created = await self.store.create_clearance_request_if_absent(request)
        if not created:
            return TrackResult(
                sent=False, request_id=request.id, error="Insurance verification request already exists"
            )

        await self.store.add_vehicle_history(
            vehicle.id,
            "INSURANCE_VERIFICATION_REQUESTED",
            "Insurance verification automatically requested",
            performed_by=requested_by,
            metadata={"clearanceRequestId": request.id, "documentId": document.id},
        )

        label = vehicle.plate_number or vehicle.vin
        if decision is not None and decision.approved:
            await self.store.update_clearance_request_status(
                request.id,
                "APPROVED",
                metadata={"autoApproved": True, "verificationScore": decision.score},
            )
            message = f"Insurance for vehicle {label} was auto-verified (score {decision.score}%)"
            await self._notify(assigned_to, "Insurance Auto-Verified", message, "success")
            await self._notify(vehicle.owner_id, "Insurance Auto-Verified", message, "success")
            logger.info(f"[Auto-Send→Insurance] Request {request.id} auto-approved")
        else:
            await self._notify(
                assigned_to,
                "New Insurance Verification Request",
                f"New insurance verification request for vehicle {label}",
            )
            logger.info(f"[Auto-Send→Insurance] Request created: {request.id} (manual review)")

        return TrackResult(sent=True, request_id=request.id, verification=verification)
