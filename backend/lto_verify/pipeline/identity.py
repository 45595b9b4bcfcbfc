"""Identity-document classification and confidence-weighted number extraction.

Owner IDs arrive as anything from a driver's license to an SSS card, each
with its own number format.  Extraction is two-phase:

  1. ``classify_id_type`` scans the header (first 200 chars) and then the
     full text against a keyword table.
  2. ``extract_id_number`` runs the type's number patterns, scores every
     candidate through an :class:`IdNumberScorer`, and keeps the best one
     only when its confidence clears ``ACCEPT_THRESHOLD``.

The default :class:`PatternConfidenceScorer` adds up:

  * format validity          0 or 1
  * keyword proximity bonus  0.3 / 0.2 / 0.1 / 0 (nearer keyword scores higher)
  * pattern specificity      0.2 labeled pattern, 0.1 bare pattern

capped at 1.0.  It is a hand-tuned heuristic; callers depend only on the
protocol so a trained classifier can replace it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from lto_verify.config import TRACE_ENABLED

logger = logging.getLogger(__name__)

HEADER_CHARS = 200
ACCEPT_THRESHOLD = 0.5
LABELED_BONUS = 0.2
BARE_BONUS = 0.1
_PROXIMITY_BANDS = [
    (20, 0.3),
    (50, 0.2),
    (100, 0.1),
]


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


def _c(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


# ═══════════════════════════════════════════════════
# ID TYPE TABLE
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class IdTypeSpec:
    """Everything needed to classify one ID type and read its number."""
    id_type: str
    keywords: re.Pattern                       # classification + proximity anchor
    number_format: re.Pattern                  # full-match validity check
    labeled: list[re.Pattern] = field(default_factory=list)
    bare: list[re.Pattern] = field(default_factory=list)


_SEP = r'[\s\-]?'
_LBL = r'\s*(?:ID\s*)?(?:NUMBER|NO|#)?\.?\s*[:.#]?\s*'

# Classification priority follows list order: national-id is last because
# "PHILIPPINE(S)" appears in most government ID headers.
ID_TYPE_SPECS: list[IdTypeSpec] = [
    IdTypeSpec(
        id_type="drivers-license",
        keywords=_c(r"\bDRIVER'?S?\b|\bLICEN[CS]E\b|\bDL\b"),
        number_format=_c(r'[A-Z]\d{2}-\d{2}-\d{6,}'),
        labeled=[_c(r"\b(?:LICEN[CS]E|DL)" + _LBL + r'([A-Z]\d{2}' + _SEP + r'\d{2}' + _SEP + r'\d{6,})')],
        bare=[_c(r'\b([A-Z]\d{2}-\d{2}-\d{6,})\b')],
    ),
    IdTypeSpec(
        id_type="passport",
        keywords=_c(r'\bPASSPORT\b|\bPASAPORTE\b|\bPP\b'),
        number_format=_c(r'[A-Z]{1,2}\d{6,8}[A-Z]?'),
        labeled=[_c(r'\b(?:PASSPORT|PASAPORTE|PP)' + _LBL + r'([A-Z]{1,2}\d{6,8}[A-Z]?)\b')],
        bare=[_c(r'\b([A-Z]{1,2}\d{7}[A-Z]?)\b')],
    ),
    IdTypeSpec(
        id_type="postal-id",
        keywords=_c(r'\bPOSTAL\b|\bPHLPOST\b'),
        number_format=_c(r'\d{12}[A-Z]?'),
        labeled=[_c(r'\b(?:PRN|POSTAL(?:\s+ID)?)' + _LBL + r'(\d{12}[A-Z]?)\b')],
        bare=[_c(r'\b(\d{12}[A-Z]?)\b')],
    ),
    IdTypeSpec(
        id_type="voters-id",
        keywords=_c(r"\bVOTER'?S?\b|\bCOMELEC\b"),
        number_format=_c(r'\d{4}-\d{4}[A-Z]?-[A-Z0-9]{8,16}'),
        labeled=[_c(r"\b(?:VOTER'?S?|VIN)" + _LBL + r'(\d{4}-\d{4}[A-Z]?-[A-Z0-9]{8,16})\b')],
        bare=[_c(r'\b(\d{4}-\d{4}[A-Z]?-[A-Z0-9]{8,16})\b')],
    ),
    IdTypeSpec(
        id_type="sss-id",
        keywords=_c(r'\bSSS\b|\bSOCIAL\s+SECURITY\b'),
        number_format=_c(r'\d{2}-?\d{7}-?\d'),
        labeled=[_c(r'\b(?:SSS|SS)' + _LBL + r'(\d{2}' + _SEP + r'\d{7}' + _SEP + r'\d)\b')],
        bare=[_c(r'\b(\d{2}-\d{7}-\d)\b')],
    ),
    IdTypeSpec(
        id_type="national-id",
        keywords=_c(r'\bNATIONAL\s+ID\b|\bNID\b|\bPHIL\s*ID\b|\bPHILSYS\b|\bPHILIPPINES?\b'),
        number_format=_c(r'\d{4}-?\d{4}-?\d{4}-?\d{4}'),
        labeled=[_c(r'\b(?:PCN|PSN|PHILSYS(?:\s+CARD)?|NATIONAL\s+ID|ID)' + _LBL
                    + r'(\d{4}' + _SEP + r'\d{4}' + _SEP + r'\d{4}' + _SEP + r'\d{4})\b')],
        bare=[_c(r'\b(\d{4}-\d{4}-\d{4}-\d{4})\b')],
    ),
]

_SPECS_BY_TYPE = {spec.id_type: spec for spec in ID_TYPE_SPECS}

# Used only when the ID type could not be classified
GENERIC_ID_PATTERNS = [
    _c(r'\bLICEN[CS]E\s*(?:NO|NUMBER)\.?\s*[:.]?\s*([A-Z]\d{2}-\d{2}-\d{6,})'),
    _c(r'\bID\s*(?:NO|NUMBER)\.?\s*[:.]?\s*([A-Z0-9\-]{8,20})\b'),
    _c(r'\b(?:LICEN[CS]E|PASSPORT)\s*(?:NO|NUMBER)\.?\s*[:.]?\s*([A-Z0-9\-]{6,20})\b'),
    _c(r'\b([A-Z]\d{2}-\d{2}-\d{6,})\b'),
    _c(r'\b([A-Z]{1,3}[\d\-]{8,15})\b'),
    _c(r'\b(\d{2}-?\d{2}-?\d{6,10})\b'),
]
_GENERIC_VALID = re.compile(r'[A-Z0-9\-]{6,20}')


def get_id_spec(id_type: str) -> IdTypeSpec | None:
    return _SPECS_BY_TYPE.get(id_type)


def classify_id_type(text: str) -> str | None:
    """Classify an ID from its header first, then from the full text."""
    if not text:
        return None
    header = text[:HEADER_CHARS]
    for scope in (header, text):
        for spec in ID_TYPE_SPECS:
            if spec.keywords.search(scope):
                _trace(f"ID type {spec.id_type} from {'header' if scope is header else 'full text'}")
                return spec.id_type
    return None


# ═══════════════════════════════════════════════════
# CONFIDENCE SCORING
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class IdCandidate:
    value: str
    start: int          # offset of the number in the normalized text
    labeled: bool


class IdNumberScorer(Protocol):
    def score(self, candidate: IdCandidate, spec: IdTypeSpec, text: str) -> float:
        """Confidence in [0, 1] that ``candidate`` is this ID's number."""
        ...


class PatternConfidenceScorer:
    """Format validity + keyword proximity + pattern specificity."""

    def score(self, candidate: IdCandidate, spec: IdTypeSpec, text: str) -> float:
        validity = 1.0 if spec.number_format.fullmatch(candidate.value) else 0.0
        proximity = self._proximity_bonus(candidate, spec, text)
        specificity = LABELED_BONUS if candidate.labeled else BARE_BONUS
        return min(1.0, validity + proximity + specificity)

    @staticmethod
    def _proximity_bonus(candidate: IdCandidate, spec: IdTypeSpec, text: str) -> float:
        distances = []
        for m in spec.keywords.finditer(text):
            if m.end() <= candidate.start:
                distances.append(candidate.start - m.end())
            else:
                distances.append(max(0, m.start() - candidate.start))
        if not distances:
            return 0.0
        nearest = min(distances)
        for limit, bonus in _PROXIMITY_BANDS:
            if nearest <= limit:
                return bonus
        return 0.0


def _clean_candidate(value: str) -> str:
    return re.sub(r'\s+', '-', value.strip().upper())


def extract_id_number(
    text: str,
    id_type: str,
    scorer: IdNumberScorer | None = None,
) -> tuple[str, float] | None:
    """Best-scoring number for ``id_type``, or None if nothing clears the threshold."""
    spec = get_id_spec(id_type)
    if spec is None or not text:
        return None
    scorer = scorer or PatternConfidenceScorer()

    best: tuple[str, float] | None = None
    for patterns, labeled in ((spec.labeled, True), (spec.bare, False)):
        for pattern in patterns:
            for m in pattern.finditer(text):
                candidate = IdCandidate(_clean_candidate(m.group(1)), m.start(1), labeled)
                confidence = round(scorer.score(candidate, spec, text), 2)
                _trace(f"{id_type} candidate {candidate.value} → {confidence}")
                if confidence > ACCEPT_THRESHOLD and (best is None or confidence > best[1]):
                    best = (candidate.value, confidence)
    return best


def extract_generic_id_number(text: str) -> str | None:
    """Cross-type fallback with only length/charset validation."""
    for pattern in GENERIC_ID_PATTERNS:
        for m in pattern.finditer(text or ""):
            value = _clean_candidate(m.group(1))
            if _GENERIC_VALID.fullmatch(value):
                return value
    return None
