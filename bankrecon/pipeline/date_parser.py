"""
Day-first date parser for statement exports.

Strategy:
1. ISO dates (and ISO timestamps) first, they are never ambiguous
2. Named months via dateutil
3. Numeric formats: assume dd.mm / dd/mm (European default, trailing dot allowed)
4. Validate against the statement period when one is known
"""

import re
from datetime import date, timedelta
from typing import Optional

from dateutil import parser as dateutil_parser
from pydantic import BaseModel


class DateParseResult(BaseModel):
    parsed_date: Optional[date] = None
    raw_text: str
    format_detected: str
    confidence: float
    is_ambiguous: bool
    ambiguity_note: Optional[str] = None


# Ordered by specificity (try most specific first)
DATE_FORMATS = [
    (r'(\d{4})-(\d{2})-(\d{2})', 'YYYY-MM-DD', False),

    (r'(\d{1,2})\.?\s+(January|February|March|April|May|June|July|August|September|October|November|December)\s+(\d{4})', 'DD_MONTH_YYYY', False),
    (r'(\d{1,2})(?:st|nd|rd|th)?\s+(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)\w*\s+(\d{2,4})', 'DD_MON_YYYY', False),

    (r'(\d{1,2})\.\s?(\d{1,2})\.\s?(\d{4})\.?', 'DD.MM.YYYY', True),
    (r'(\d{1,2})/(\d{1,2})/(\d{4})', 'DD/MM/YYYY', True),
    (r'(\d{1,2})-(\d{1,2})-(\d{4})', 'DD-MM-YYYY', True),
    (r'(\d{2})\.(\d{2})\.(\d{2})\.?(?!\d)', 'DD.MM.YY', True),
    (r'(\d{2})/(\d{2})/(\d{2})(?!\d)', 'DD/MM/YY', True),
]


def parse_date(
    raw: str,
    statement_period_start: Optional[date] = None,
    statement_period_end: Optional[date] = None,
) -> DateParseResult:
    """
    Parse a date string, day first.

    Numeric dates where both parts are <= 12 are flagged ambiguous unless the
    parsed value falls inside the known statement period.
    """
    raw_clean = (raw or "").strip()

    for pattern, format_name, potentially_ambiguous in DATE_FORMATS:
        m = re.match(pattern, raw_clean, re.IGNORECASE)
        if not m:
            continue

        try:
            parsed = _parse_by_format(m, format_name)
        except (ValueError, OverflowError):
            continue

        is_ambiguous = False
        ambiguity_note = None
        if potentially_ambiguous:
            day_val, month_val = int(m.group(1)), int(m.group(2))
            if day_val <= 12 and month_val <= 12 and day_val != month_val:
                is_ambiguous = True
                ambiguity_note = f"dd/mm vs mm/dd ambiguous ({m.group(1)}/{m.group(2)})"
                if statement_period_start and statement_period_end:
                    if statement_period_start <= parsed <= statement_period_end + timedelta(days=5):
                        is_ambiguous = False

        confidence = 0.95 if not is_ambiguous else 0.70
        if parsed.year > date.today().year + 1:
            confidence = 0.3
        if parsed.year < 2000:
            confidence = 0.5

        return DateParseResult(
            parsed_date=parsed,
            raw_text=raw,
            format_detected=format_name,
            confidence=confidence,
            is_ambiguous=is_ambiguous,
            ambiguity_note=ambiguity_note,
        )

    return DateParseResult(
        parsed_date=None,
        raw_text=raw or "",
        format_detected="UNKNOWN",
        confidence=0.0,
        is_ambiguous=False,
    )


def _parse_by_format(match, format_name: str) -> date:
    if format_name == 'YYYY-MM-DD':
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    if format_name in ('DD.MM.YYYY', 'DD/MM/YYYY', 'DD-MM-YYYY'):
        return date(int(match.group(3)), int(match.group(2)), int(match.group(1)))

    if format_name in ('DD.MM.YY', 'DD/MM/YY'):
        yy = int(match.group(3))
        year = 1900 + yy if yy > 50 else 2000 + yy
        return date(year, int(match.group(2)), int(match.group(1)))

    return dateutil_parser.parse(match.group(0), dayfirst=True).date()


def parse_iso_date(raw: Optional[str]) -> Optional[date]:
    """ISO date or timestamp (CAMT Dt / DtTm) to a date; None if absent or invalid."""
    if not raw or not raw.strip():
        return None
    try:
        return dateutil_parser.isoparse(raw.strip()).date()
    except (ValueError, OverflowError):
        return None


def is_date_like(text: str) -> bool:
    """Quick check if text looks like it could be a date."""
    text = (text or "").strip()
    if not text:
        return False
    date_patterns = [
        r'\d{1,2}[/\-\.]\s?\d{1,2}[/\-\.]\s?\d{2,4}',
        r'\d{1,2}\s+(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)',
        r'\d{4}-\d{2}-\d{2}',
    ]
    return any(re.search(p, text, re.IGNORECASE) for p in date_patterns)
