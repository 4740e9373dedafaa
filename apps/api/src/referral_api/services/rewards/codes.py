"""Referral code generation."""

from __future__ import annotations

import re
import secrets
from typing import Iterator

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")
_DIGITS = re.compile(r"\d+")


def _name_part(customer_name: str | None, limit: int) -> str:
    if not customer_name or not customer_name.strip():
        return "CUST"
    first = customer_name.strip().split()[0]
    cleaned = _NON_ALNUM.sub("", first).upper()[:limit]
    return cleaned or "CUST"


def _id_part(customer_id: str) -> str:
    digits = "".join(_DIGITS.findall(customer_id))
    if digits:
        return digits[-4:].rjust(4, "0")
    tail = customer_id[-4:].upper()
    return tail.rjust(4, "0")


def normalize_code(code: str | None) -> str | None:
    if code is None:
        return None
    cleaned = code.strip().upper()
    return cleaned or None


def generate_personal_code(customer_name: str | None, customer_id: str) -> str:
    """First name (up to 10 chars) followed by the last four digits of the customer id.

    >>> generate_personal_code("Alice Smith", "CUST-7-0001")
    'ALICE0001'
    """

    return f"{_name_part(customer_name, 10)}{_id_part(customer_id)}"


def candidate_codes(customer_name: str | None, customer_id: str, max_probes: int = 10) -> Iterator[str]:
    """Yield the base code, then distinct suffixed variants, then one random fallback.

    Suffixes replace the last two characters of the base, so a suffix equal
    to the base (an id ending in ``01``) is skipped rather than probed twice.
    """

    base = generate_personal_code(customer_name, customer_id)
    seen = {base}
    yield base
    for attempt in range(1, 100):
        if len(seen) >= max(max_probes, 1):
            break
        candidate = f"{base[:-2]}{attempt:02d}"
        if candidate in seen:
            continue
        seen.add(candidate)
        yield candidate
    yield f"{_name_part(customer_name, 6)}{secrets.randbelow(10000):04d}"


__all__ = ["candidate_codes", "generate_personal_code", "normalize_code"]
