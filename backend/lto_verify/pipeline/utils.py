"""Shared normalisation and date helpers for the verification pipeline."""

import re
from datetime import date, datetime
from typing import Optional

# MM/DD/YYYY first so 4-digit years are never truncated by the 2-digit form
_RE_DATE_LONG = re.compile(r'(?<!\d)(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})')
_RE_DATE_SHORT = re.compile(r'(?<!\d)(\d{1,2})[/\-](\d{1,2})[/\-](\d{2})(?!\d)')


def normalize_text(text: str) -> str:
    """Uppercase and collapse runs of whitespace to single spaces."""
    if not text:
        return ""
    return re.sub(r'\s+', ' ', str(text)).strip().upper()


def normalize_plate(value) -> str:
    """Plate numbers compare uppercase; any run of spaces or hyphens is one separator.

    The parser writes plates as ``NCR-1234`` while vehicle records and
    registries hold ``NCR 1234``; both normalise to ``NCR 1234``.
    """
    if value is None:
        return ""
    return re.sub(r'[\s\-]+', ' ', str(value)).strip(" -").upper()


def normalize_identifier(value) -> str:
    """Engine / chassis / VIN / policy numbers compare uppercase with all whitespace removed."""
    if value is None:
        return ""
    return re.sub(r'\s+', '', str(value)).upper()


def identifiers_match(claimed, extracted, *, plate: bool = False) -> Optional[bool]:
    """Normalised equality, or None when either side is missing."""
    if not claimed or not extracted:
        return None
    norm = normalize_plate if plate else normalize_identifier
    return norm(claimed) == norm(extracted)


def parse_date(value) -> Optional[datetime]:
    """Parse a certificate date.

    Tries MM/DD/YYYY, then MM/DD/YY (years below 50 land in the 2000s,
    otherwise the 1900s).  A slash date that is not a real calendar date
    is retried as DD/MM before falling back to ISO-8601.  Returns None
    when nothing parses.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    text = str(value).strip()
    for pattern, short in ((_RE_DATE_LONG, False), (_RE_DATE_SHORT, True)):
        m = pattern.search(text)
        if not m:
            continue
        first, second, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if short:
            year += 2000 if year < 50 else 1900
        # MM/DD first; DD/MM only when MM/DD is not a real calendar date
        for month, day in ((first, second), (second, first)):
            try:
                return datetime(year, month, day)
            except ValueError:
                continue
        break

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def is_date_only(value) -> bool:
    """True when ``value`` carries no time-of-day component."""
    if isinstance(value, datetime):
        return False
    if isinstance(value, date):
        return True
    text = str(value or "").strip()
    return bool(text) and not re.search(r'\d{1,2}:\d{2}', text)


def parse_number(value) -> Optional[float]:
    """Parse a reading or amount such as '1,250.00' or '8.5%'."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r'[^\d.\-]', '', str(value))
    if not cleaned or cleaned in (".", "-"):
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None
