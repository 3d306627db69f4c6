"""
Phone number normalization and carrier label helpers.
"""

from __future__ import annotations

import re

from app.scraper.types import CARRIER_UNKNOWN

KNOWN_CARRIERS: tuple[str, ...] = ("Telkom", "Vodacom", "MTN", "Cell C")

_CARRIER_PRIORITY: dict[str, int] = {
    carrier.lower(): index for index, carrier in enumerate(KNOWN_CARRIERS, start=1)
}
_OTHER_PRIORITY = len(KNOWN_CARRIERS) + 1
_UNKNOWN_PRIORITY = _OTHER_PRIORITY + 1

_NON_DIGITS = re.compile(r"\D+")
_SERVICED_BY = re.compile(r"serviced\s+by\s+(?P<rest>.+)", re.IGNORECASE | re.DOTALL)
_TRAILING_PUNCTUATION = re.compile(r"[.,;:!?]+$")


def normalize_phone_number(raw: str | None) -> str | None:
    """
    Reduce a phone number to local digits: ``+27 11 123 4567`` → ``0111234567``.

    Returns None when nothing dialable remains.
    """

    if not raw:
        return None
    digits = _NON_DIGITS.sub("", raw)
    if digits.startswith("0027"):
        digits = "0" + digits[4:]
    elif digits.startswith("27") and len(digits) > 9:
        digits = "0" + digits[2:]
    return digits or None


def canonical_carrier(label: str | None) -> str:
    """
    Map free-form carrier text onto a canonical label, or ``unknown``.
    """

    if not label:
        return CARRIER_UNKNOWN
    cleaned = _TRAILING_PUNCTUATION.sub("", " ".join(label.split()))
    if not cleaned or cleaned.lower() == CARRIER_UNKNOWN:
        return CARRIER_UNKNOWN
    lowered = cleaned.lower()
    for carrier in KNOWN_CARRIERS:
        if lowered == carrier.lower() or lowered.startswith(carrier.lower() + " "):
            return carrier
    return cleaned.split()[0]


def parse_carrier_text(text: str | None) -> str:
    """
    Extract the carrier from porting-database text such as
    ``"0111234567 is serviced by Telkom."``.
    """

    if not text:
        return CARRIER_UNKNOWN
    match = _SERVICED_BY.search(text)
    if match is None:
        return CARRIER_UNKNOWN
    return canonical_carrier(match.group("rest"))


def carrier_priority(carrier: str) -> int:
    """
    Sort key for carriers: Telkom, Vodacom, MTN, Cell C, others, then unknown.
    """

    lowered = carrier.strip().lower()
    if lowered in _CARRIER_PRIORITY:
        return _CARRIER_PRIORITY[lowered]
    if lowered in {CARRIER_UNKNOWN, "", "unresolved"}:
        return _UNKNOWN_PRIORITY
    return _OTHER_PRIORITY


def confidence_for(carrier: str) -> float:
    return 0.0 if carrier == CARRIER_UNKNOWN else 1.0
