"""Domain records shared across the verification pipeline.

Persisted records (documents, vehicles, verification records, clearance
requests) round-trip through ``to_dict()`` / ``from_dict()`` so the JSON
store can snapshot them.  Ephemeral results (match verdicts, fraud
analyses, decisions) only need ``to_dict()`` because they are embedded in
verification metadata for the audit trail.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from lto_verify.config import CLEARANCE_TERMINAL_STATUSES


def _now() -> datetime:
    return datetime.now()


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return None


# ═══════════════════════════════════════════════════
# PERSISTED RECORDS
# ═══════════════════════════════════════════════════

@dataclass
class DocumentRecord:
    """An uploaded file, possibly not yet linked to its vehicle."""
    id: str
    document_type: str                # registration_cert | insurance_cert | owner_id | ...
    file_path: str = ""
    mime_type: str | None = None
    original_name: str = ""
    vehicle_id: str | None = None     # None until the upload layer links it
    uploaded_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "file_path": self.file_path,
            "mime_type": self.mime_type,
            "original_name": self.original_name,
            "vehicle_id": self.vehicle_id,
            "uploaded_at": _iso(self.uploaded_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentRecord":
        return cls(
            id=data["id"],
            document_type=data.get("document_type", "other"),
            file_path=data.get("file_path", ""),
            mime_type=data.get("mime_type"),
            original_name=data.get("original_name", ""),
            vehicle_id=data.get("vehicle_id"),
            uploaded_at=_parse_ts(data.get("uploaded_at")) or _now(),
        )


@dataclass
class Vehicle:
    """A registration submission and the identifiers its owner claimed."""
    id: str
    vin: str = ""
    plate_number: str = ""
    engine_number: str = ""
    chassis_number: str = ""
    make: str = ""
    model: str = ""
    year: str = ""
    color: str = ""
    owner_name: str = ""
    owner_email: str = ""
    owner_id: str | None = None
    status: str = "PENDING"
    registration_type: str = ""
    origin_type: str = ""
    purpose: str = ""
    created_at: datetime = field(default_factory=_now)

    def claim(self) -> dict:
        """Identifiers in the shape registries and the fraud scorer expect."""
        return {
            "plateNumber": self.plate_number,
            "engineNumber": self.engine_number,
            "chassisNumber": self.chassis_number or self.vin,
            "vin": self.vin,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vin": self.vin,
            "plate_number": self.plate_number,
            "engine_number": self.engine_number,
            "chassis_number": self.chassis_number,
            "make": self.make,
            "model": self.model,
            "year": self.year,
            "color": self.color,
            "owner_name": self.owner_name,
            "owner_email": self.owner_email,
            "owner_id": self.owner_id,
            "status": self.status,
            "registration_type": self.registration_type,
            "origin_type": self.origin_type,
            "purpose": self.purpose,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Vehicle":
        kwargs = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k != "created_at"}
        return cls(**kwargs, created_at=_parse_ts(data.get("created_at")) or _now())


@dataclass
class VerificationRecord:
    """Current verification status for one (vehicle, category) pair."""
    vehicle_id: str
    category: str                     # insurance | emission | hpg
    status: str                       # APPROVED | PENDING | REJECTED
    verified_by: str | None = None
    note: str = ""
    metadata: dict = field(default_factory=dict)
    updated_at: datetime = field(default_factory=_now)
    history: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "vehicle_id": self.vehicle_id,
            "category": self.category,
            "status": self.status,
            "verified_by": self.verified_by,
            "note": self.note,
            "metadata": self.metadata,
            "updated_at": _iso(self.updated_at),
            "history": self.history,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VerificationRecord":
        return cls(
            vehicle_id=data["vehicle_id"],
            category=data["category"],
            status=data["status"],
            verified_by=data.get("verified_by"),
            note=data.get("note", ""),
            metadata=data.get("metadata", {}),
            updated_at=_parse_ts(data.get("updated_at")) or _now(),
            history=data.get("history", []),
        )


@dataclass
class ClearanceRequest:
    """A unit of work routed to HPG or an insurer for one vehicle."""
    vehicle_id: str
    request_type: str                 # hpg | insurance
    id: str = field(default_factory=_new_id)
    status: str = "PENDING"           # PENDING | REVIEWING | APPROVED | REJECTED | COMPLETED
    requested_by: str = "system"
    assigned_to: str | None = None
    purpose: str = ""
    notes: str = ""
    metadata: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status not in CLEARANCE_TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "request_type": self.request_type,
            "status": self.status,
            "requested_by": self.requested_by,
            "assigned_to": self.assigned_to,
            "purpose": self.purpose,
            "notes": self.notes,
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ClearanceRequest":
        return cls(
            vehicle_id=data["vehicle_id"],
            request_type=data["request_type"],
            id=data["id"],
            status=data.get("status", "PENDING"),
            requested_by=data.get("requested_by", "system"),
            assigned_to=data.get("assigned_to"),
            purpose=data.get("purpose", ""),
            notes=data.get("notes", ""),
            metadata=data.get("metadata", {}),
            created_at=_parse_ts(data.get("created_at")) or _now(),
            updated_at=_parse_ts(data.get("updated_at")) or _now(),
            completed_at=_parse_ts(data.get("completed_at")),
        )


@dataclass
class User:
    id: str
    role: str
    name: str = ""
    email: str = ""
    organization: str = ""
    active: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "name": self.name,
            "email": self.email,
            "organization": self.organization,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class Notification:
    user_id: str
    title: str
    message: str
    type: str = "info"                # info | success | warning | urgent
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    read: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "created_at": _iso(self.created_at),
            "read": self.read,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Notification":
        return cls(
            user_id=data["user_id"],
            title=data["title"],
            message=data["message"],
            type=data.get("type", "info"),
            id=data["id"],
            created_at=_parse_ts(data.get("created_at")) or _now(),
            read=data.get("read", False),
        )


@dataclass
class HistoryEntry:
    """Append-only audit trail entry for a vehicle."""
    vehicle_id: str
    action: str
    description: str
    performed_by: str | None = "system"
    metadata: dict = field(default_factory=dict)
    performed_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "vehicle_id": self.vehicle_id,
            "action": self.action,
            "description": self.description,
            "performed_by": self.performed_by,
            "metadata": self.metadata,
            "performed_at": _iso(self.performed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        return cls(
            vehicle_id=data["vehicle_id"],
            action=data["action"],
            description=data.get("description", ""),
            performed_by=data.get("performed_by"),
            metadata=data.get("metadata", {}),
            performed_at=_parse_ts(data.get("performed_at")) or _now(),
        )


# ═══════════════════════════════════════════════════
# EXTRACTION OUTPUT
# ═══════════════════════════════════════════════════

@dataclass
class ExtractedFields:
    """Fields parsed from one document.

    Presence is explicit: a key that was never found is absent, which is
    different from a key present with an empty string (e.g. a plate
    number printed as "To be issued").
    """
    document_type: str = ""
    values: dict[str, Any] = field(default_factory=dict)
    confidence: dict[str, float] = field(default_factory=dict)

    def __contains__(self, name: str) -> bool:
        return name in self.values

    def __getitem__(self, name: str) -> Any:
        return self.values[name]

    def __len__(self) -> int:
        return len(self.values)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def first(self, *names: str) -> Any:
        """Return the first non-empty value among ``names``."""
        for name in names:
            value = self.values.get(name)
            if value not in (None, ""):
                return value
        return None

    def set(self, name: str, value: Any, confidence: float | None = None) -> None:
        self.values[name] = value
        if confidence is not None:
            self.confidence[name] = round(confidence, 2)

    def set_default(self, name: str, value: Any, confidence: float | None = None) -> bool:
        """Set ``name`` only if absent (first match wins).  Returns True if set."""
        if name in self.values:
            return False
        self.set(name, value, confidence)
        return True

    def update(self, other: "ExtractedFields") -> None:
        for name, value in other.values.items():
            self.set_default(name, value, other.confidence.get(name))

    def to_dict(self) -> dict:
        data = dict(self.values)
        if self.confidence:
            data["fieldConfidence"] = dict(self.confidence)
        return data


# ═══════════════════════════════════════════════════
# EPHEMERAL VERDICTS
# ═══════════════════════════════════════════════════

@dataclass
class RecordMatchResult:
    """Verdict from an external registry lookup."""
    found: bool
    status: str                       # VALID | FLAGGED | EXPIRED | NOT_FOUND
    can_approve: bool
    message: str = ""
    record: dict | None = None
    status_type: str | None = None    # registry sub-status: FAILED, TAMPERED, STOLEN, ...

    @classmethod
    def not_found(cls, message: str = "No matching record found in registry") -> "RecordMatchResult":
        return cls(found=False, status="NOT_FOUND", can_approve=True, message=message)

    def to_dict(self) -> dict:
        return {
            "found": self.found,
            "status": self.status,
            "canApprove": self.can_approve,
            "message": self.message,
            "record": self.record,
            "statusType": self.status_type,
        }


@dataclass
class FraudIndicator:
    type: str
    severity: str                     # LOW | MEDIUM | HIGH
    message: str
    score: float

    def to_dict(self) -> dict:
        return {"type": self.type, "severity": self.severity, "message": self.message, "score": self.score}


@dataclass
class FraudAnalysis:
    fraud_score: float
    risk_level: str                   # LOW | MEDIUM | HIGH | CRITICAL
    indicators: list[FraudIndicator] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.fraud_score < 0.3

    def to_dict(self) -> dict:
        return {
            "fraudScore": self.fraud_score,
            "riskLevel": self.risk_level,
            "indicators": [i.to_dict() for i in self.indicators],
            "passed": self.passed,
        }


@dataclass
class ExpiryCheck:
    is_valid: bool
    expiry_date: str | None = None
    days_until_expiry: int | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "isValid": self.is_valid,
            "expiryDate": self.expiry_date,
            "daysUntilExpiry": self.days_until_expiry,
            "reason": self.reason,
        }


@dataclass
class ComplianceCheck:
    """Emission readings against regulatory limits.  Missing readings count as compliant."""
    co_compliant: bool = True
    hc_compliant: bool = True
    smoke_compliant: bool = True
    readings: dict = field(default_factory=dict)

    @property
    def all_compliant(self) -> bool:
        return self.co_compliant and self.hc_compliant and self.smoke_compliant

    def to_dict(self) -> dict:
        return {
            "coCompliant": self.co_compliant,
            "hcCompliant": self.hc_compliant,
            "smokeCompliant": self.smoke_compliant,
            "allCompliant": self.all_compliant,
            "readings": self.readings,
        }


@dataclass
class VerificationScore:
    score: float
    max_score: int
    percentage: int
    decision: str                     # APPROVE | REVIEW | REJECT
    checks: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "score": round(self.score, 2),
            "maxScore": self.max_score,
            "percentage": self.percentage,
            "decision": self.decision,
            "checks": self.checks,
        }


@dataclass
class VerificationDecision:
    """Outcome of one auto-verification attempt."""
    status: str                       # APPROVED | PENDING
    automated: bool
    score: int = 0
    reason: str = ""
    basis: dict = field(default_factory=dict)
    flag_reasons: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    @property
    def confidence(self) -> float:
        return self.score / 100

    @property
    def approved(self) -> bool:
        return self.status == "APPROVED"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "automated": self.automated,
            "score": self.score,
            "confidence": self.confidence,
            "reason": self.reason,
            "basis": self.basis,
            "flagReasons": list(self.flag_reasons),
            "metadata": self.metadata,
        }


# ═══════════════════════════════════════════════════
# ORCHESTRATION OUTCOME
# ═══════════════════════════════════════════════════

@dataclass
class TrackResult:
    sent: bool = False
    request_id: str | None = None
    error: str | None = None
    verification: dict | None = None

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "requestId": self.request_id,
            "error": self.error,
            "verification": self.verification,
        }


@dataclass
class ClearanceOutcome:
    vehicle_id: str
    hpg: TrackResult = field(default_factory=TrackResult)
    insurance: TrackResult = field(default_factory=TrackResult)
    document_ids: list[str] = field(default_factory=list)

    @property
    def any_sent(self) -> bool:
        return self.hpg.sent or self.insurance.sent

    def to_dict(self) -> dict:
        return {
            "vehicleId": self.vehicle_id,
            "hpg": self.hpg.to_dict(),
            "insurance": self.insurance.to_dict(),
            "documentIds": list(self.document_ids),
        }
