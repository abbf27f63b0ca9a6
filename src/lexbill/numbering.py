"""Invoice number allocation.

Invoice numbers look like ``DDMMYYYY-OFFICE`` for the first invoice of a
day at an office and ``DDMMYYYY-OFFICE-A``, ``-B``, ... ``-Z``, ``-AA``
for the ones after it.

Allocation here is read-then-write and only suggests a number. The
persistence layer must enforce uniqueness atomically (unique constraint on
the number); a collision at submission surfaces as ConflictError and the
user regenerates.
"""

import logging
import re
from datetime import date
from typing import Callable, Iterable

from .errors import ValidationError

logger = logging.getLogger("lexbill.numbering")

OFFICE_CODES = {
    "delhi": "D",
    "mumbai": "M",
    "bangalore": "B",
    "delhi (lt)": "LT",
}

# Location ids used by the web client that differ from the backend names
LOCATION_ALIASES = {
    "delhi_litigation": "delhi (lt)",
}

INVOICE_NUMBER_RE = re.compile(r"^\d{8}-(D|M|B|LT)(-[A-Z]+)?$")

FORMAT_HINT = "DDMMYYYY-OFFICE or DDMMYYYY-OFFICE-A (e.g., 07012026-M or 07012026-M-A)"


def normalize_location(location: str) -> str:
    key = (location or "").strip().lower()
    return LOCATION_ALIASES.get(key, key)


def office_code(location: str) -> str:
    """Map a billing location to its office code.

    Raises ValidationError for unknown locations.
    """
    code = OFFICE_CODES.get(normalize_location(location))
    if code is None:
        raise ValidationError(
            "billing_location",
            f"Invalid location. Must be one of: {', '.join(OFFICE_CODES)}",
        )
    return code


def number_prefix(invoice_date: date, location: str) -> str:
    """Format the DDMMYYYY-OFFICE prefix."""
    return f"{invoice_date.strftime('%d%m%Y')}-{office_code(location)}"


def number_to_sequence(n: int) -> str:
    """0 -> A, 25 -> Z, 26 -> AA, 27 -> AB, ..."""
    if n < 0:
        raise ValueError("sequence index must be non-negative")
    result = ""
    while True:
        result = chr(ord("A") + n % 26) + result
        n = n // 26 - 1
        if n < 0:
            return result


def allocate(invoice_date: date, location: str, existing_numbers: Iterable[str]) -> str:
    """Pick the next free invoice number for a date and office.

    ``existing_numbers`` may contain anything; only numbers sharing the
    prefix are considered. With none, the bare prefix is returned;
    otherwise the first unused suffix in A, B, ... order.
    """
    prefix = number_prefix(invoice_date, location)
    taken = {n for n in existing_numbers if n == prefix or n.startswith(prefix + "-")}
    taken = {n for n in taken if INVOICE_NUMBER_RE.match(n)}

    if not taken:
        logger.debug("First invoice for %s", prefix)
        return prefix

    i = 0
    while True:
        candidate = f"{prefix}-{number_to_sequence(i)}"
        if candidate not in taken:
            logger.debug("Allocated %s (%d existing for prefix)", candidate, len(taken))
            return candidate
        i += 1


def validate_invoice_number(number: str | None) -> ValidationError | None:
    """Return a ValidationError describing what is wrong, or None."""
    if not number:
        return ValidationError("invoice_number", "Invoice number is required")
    if not INVOICE_NUMBER_RE.match(number):
        return ValidationError("invoice_number", f"Invoice number must follow format: {FORMAT_HINT}")

    day = int(number[0:2])
    month = int(number[2:4])
    year = int(number[4:8])
    if not (1 <= day <= 31 and 1 <= month <= 12 and 2000 <= year <= 2100):
        return ValidationError("invoice_number", "Invalid date in invoice number")
    return None


def check_invoice_number(number: str) -> str:
    """Validate a manually entered number, raising ValidationError."""
    error = validate_invoice_number(number)
    if error is not None:
        raise error
    return number


class InvoiceNumberAllocator:
    """Allocate numbers using a lookup of numbers already issued.

    ``lookup`` receives a DDMMYYYY-OFFICE prefix and returns the invoice
    numbers that start with it (``BillingFileStore.list_invoice_numbers``
    fits).
    """

    def __init__(self, lookup: Callable[[str], Iterable[str]]):
        self._lookup = lookup

    def allocate(self, invoice_date: date, location: str) -> str:
        prefix = number_prefix(invoice_date, location)
        existing = list(self._lookup(prefix))
        return allocate(invoice_date, location, existing)
