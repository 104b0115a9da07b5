"""
Text utilities for OCR output.

Invoice text arrives in many scripts and number formats; these helpers
normalize labels for comparison and pull numbers out of noisy cells.
"""

import re
import unicodedata
from typing import Optional

# Optional minus, a digit, then digits and separators
_NUMBER_RE = re.compile(r"-?\d[\d.,]*")


def normalize_label(text: Optional[str]) -> str:
    """
    Normalize a short label for comparison.

    - "  Qty. " → "qty"
    - "ＰＲＩＣＥ" → "price"  (full-width forms folded by NFKC)

    Args:
        text: Raw label

    Returns:
        Casefolded label without surrounding punctuation, or ""
    """
    if not text:
        return ""
    normalized = unicodedata.normalize("NFKC", text).strip().casefold()
    return normalized.strip(" .:*_#")


def parse_number(cell: Optional[str], default: float) -> float:
    """
    Parse a numeric table cell, ignoring currency symbols and units.

    Handles thousands separators and decimal commas:
    - "₹1,250.00" → 1250.0
    - "12,50 €"   → 12.5
    - "1.234.567" → 1234567.0
    - "3 kg"      → 3.0
    - "N/A"       → default

    Args:
        cell: Raw cell text
        default: Value returned when no number can be read

    Returns:
        Parsed number or default
    """
    if not cell:
        return default

    match = _NUMBER_RE.search(cell)
    if match is None:
        return default

    token = match.group(0)
    negative = token.startswith("-")
    cleaned = token.lstrip("-").rstrip(".,")

    if "," in cleaned and "." in cleaned:
        # Whichever separator comes last is the decimal point
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        head, _, tail = cleaned.rpartition(",")
        if cleaned.count(",") == 1 and 1 <= len(tail) <= 2:
            cleaned = f"{head}.{tail}"
        else:
            cleaned = cleaned.replace(",", "")
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")

    try:
        value = float(cleaned)
    except ValueError:
        return default

    return -value if negative else value
