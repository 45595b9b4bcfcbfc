"""Fraud risk scoring for extracted certificate fields.

Each indicator adds a fixed number of points; the total is capped at 1.0.
A document "passes" when its score stays below 0.3.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from lto_verify.pipeline.models import ExtractedFields, FraudAnalysis, FraudIndicator, RecordMatchResult
from lto_verify.pipeline.utils import normalize_identifier, parse_date

logger = logging.getLogger(__name__)

MAX_FRAUD_SCORE = 1.0

_VALID_NUMBER = re.compile(r'^[A-Z0-9\-]{6,20}$')

# (field, pattern, message)
KNOWN_FRAUD_PATTERNS = [
    ("insuranceCompany", re.compile(r'TEST|FAKE|SAMPLE', re.IGNORECASE), "Contains test/fake keywords"),
    ("policyNumber", re.compile(r'12345|00000|XXXXX', re.IGNORECASE), "Contains suspicious number patterns"),
]

# Insurance fields whose absence is itself suspicious, with the alias each may arrive under
CRITICAL_INSURANCE_FIELDS = {
    "policyNumber": "insurancePolicyNumber",
    "expiryDate": "insuranceExpiry",
    "insuranceCompany": "insuranceCompany",
}


def risk_level(score: float) -> str:
    if score < 0.2:
        return "LOW"
    if score < 0.5:
        return "MEDIUM"
    if score < 0.8:
        return "HIGH"
    return "CRITICAL"


def _values(fields) -> dict:
    if isinstance(fields, ExtractedFields):
        return fields.values
    return dict(fields or {})


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # Feb 29 → Feb 28
        return moment.replace(year=moment.year + years, day=28)


def analyze(
    fields: ExtractedFields | dict,
    match_result: RecordMatchResult | None,
    document_type: str = "insurance",
    now: datetime | None = None,
) -> FraudAnalysis:
    """Score ``fields`` for fraud indicators.

    ``now`` anchors the "too far in the future" expiry check so callers
    can make the analysis reproducible.
    """
    values = _values(fields)
    now = now or datetime.now()
    indicators: list[FraudIndicator] = []

    def flag(kind: str, severity: str, message: str, points: float):
        indicators.append(FraudIndicator(type=kind, severity=severity, message=message, score=points))

    # ── Number format ──
    number = values.get("policyNumber") or values.get("certificateNumber")
    if number:
        if not _VALID_NUMBER.match(str(number).upper()):
            flag("INVALID_FORMAT", "MEDIUM", "Policy/Certificate number format is suspicious", 0.2)

    # ── Date consistency ──
    issue_raw, expiry_raw = values.get("issueDate"), values.get("expiryDate")
    if issue_raw and expiry_raw:
        issue, expiry = parse_date(issue_raw), parse_date(expiry_raw)
        if issue is None or expiry is None:
            flag("DATE_PARSE_ERROR", "LOW", "Could not parse dates for validation", 0.05)
        else:
            if issue >= expiry:
                flag("DATE_INCONSISTENCY", "HIGH", "Issue date is after or equal to expiry date", 0.15)
            if expiry > _add_years(now, 2):
                flag("SUSPICIOUS_EXPIRY", "MEDIUM", "Expiry date is unusually far in the future", 0.1)

    # ── Registry cross-check ──
    if match_result is not None:
        if match_result.status in ("FLAGGED", "FRAUDULENT"):
            flag("DATABASE_FLAGGED", "HIGH", match_result.message or "Document flagged in database", 0.3)
        policy = values.get("policyNumber")
        if policy and match_result.record:
            recorded = normalize_identifier(match_result.record.get("policyNumber"))
            if recorded and normalize_identifier(policy) != recorded:
                flag("POLICY_MISMATCH", "HIGH", "Policy number does not match database record", 0.25)

    # ── Missing critical fields ──
    if document_type == "insurance":
        for name, alias in CRITICAL_INSURANCE_FIELDS.items():
            if not values.get(name) and not values.get(alias):
                flag("MISSING_FIELD", "MEDIUM", f"Missing critical field: {name}", 0.1)

    # ── Known fraud patterns ──
    for name, pattern, message in KNOWN_FRAUD_PATTERNS:
        if pattern.search(str(values.get(name) or "")):
            flag("KNOWN_FRAUD_PATTERN", "HIGH", message, 0.2)

    score = round(min(sum(i.score for i in indicators), MAX_FRAUD_SCORE), 2)
    if indicators:
        logger.info(f"Fraud analysis ({document_type}): score={score} indicators={[i.type for i in indicators]}")
    return FraudAnalysis(fraud_score=score, risk_level=risk_level(score), indicators=indicators)
