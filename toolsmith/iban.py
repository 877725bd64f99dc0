"""Deterministic IBAN generation and MOD-97 validation."""
from __future__ import annotations

import re
import struct
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Tuple

_MASK32 = 0xFFFFFFFF
_SIGN_BIT = 0x80000000
_FNV_OFFSET_BASIS = 0x811C9DC5
_FNV_PRIME = 0x01000193
_SPLITMIX_INCREMENT = 0x6D2B79F5

MIN_IBAN_LENGTH = 15
MAX_IBAN_LENGTH = 34

# (bank code digits, account number digits) per supported country.
BBAN_LAYOUTS: Dict[str, Tuple[int, int]] = {
    "DE": (8, 10),
    "AT": (5, 11),
    "PL": (8, 16),
}

IBAN_LENGTHS: Dict[str, int] = {
    country: 4 + bank + account for country, (bank, account) in BBAN_LAYOUTS.items()
}

SUPPORTED_COUNTRIES = tuple(BBAN_LAYOUTS)

_COUNTRY_PATTERN = re.compile(r"[A-Z]{2}")
_CHECK_PATTERN = re.compile(r"[0-9]{2}")
_BBAN_PATTERN = re.compile(r"[A-Z0-9]+")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class IbanValidation:
    """Outcome of :func:`validate`; ``reason`` is set only when invalid."""

    valid: bool
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"valid": self.valid}
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


def _utf16_units(text: str) -> Iterator[int]:
    encoded = text.encode("utf-16-le", "surrogatepass")
    for (unit,) in struct.iter_unpack("<H", encoded):
        yield unit


def fnv1a32(text: str) -> int:
    """Return the 32-bit FNV-1a hash of ``text`` over its UTF-16 code units.

    Each step multiplies as a signed 32-bit value in double precision and
    keeps the low 32 bits of the rounded product, the same arithmetic as
    JavaScript's ``(hash * prime) >>> 0``.
    """

    value = _FNV_OFFSET_BASIS
    for unit in _utf16_units(text):
        mixed = value ^ unit
        if mixed & _SIGN_BIT:
            mixed -= 1 << 32
        value = int(float(mixed * _FNV_PRIME)) & _MASK32
    return value


def splitmix32(seed: int) -> Callable[[], int]:
    """Return a PRNG yielding unsigned 32-bit integers derived from ``seed``."""

    state = seed & _MASK32

    def _next() -> int:
        nonlocal state
        state = (state + _SPLITMIX_INCREMENT) & _MASK32
        z = state
        z = ((z ^ (z >> 15)) * (z | 1)) & _MASK32
        z ^= (z + (((z ^ (z >> 7)) * (z | 61)) & _MASK32)) & _MASK32
        return (z ^ (z >> 14)) & _MASK32

    return _next


def generate_digits(rng: Callable[[], int], length: int) -> str:
    return "".join(str(rng() % 10) for _ in range(length))


def _transliterate(value: str) -> str:
    digits = []
    for char in value:
        if "0" <= char <= "9":
            digits.append(char)
        elif "A" <= char <= "Z":
            digits.append(str(ord(char) - ord("A") + 10))
    return "".join(digits)


def _mod97(numeric: str) -> int:
    remainder = 0
    for digit in numeric:
        remainder = (remainder * 10 + int(digit)) % 97
    return remainder


def calculate_check_digits(country: str, bban: str) -> str:
    """Compute the two ISO 7064 MOD 97-10 check digits for ``country`` + ``bban``.

    Characters outside ``0-9A-Z`` are ignored. When nothing usable remains, the
    digits are computed over the country code alone.
    """

    country = country.upper()
    numeric = _transliterate(bban + country + "00")
    if not numeric:
        country_digits = "".join(
            str(ord(char) - ord("A") + 10) if "A" <= char <= "Z" else "0" for char in country
        )
        numeric = country_digits + "00"
    return f"{98 - _mod97(numeric):02d}"


def generate(country: str, seed: Optional[str] = None) -> str:
    """Generate a syntactically valid IBAN for ``country``.

    The same ``(country, seed)`` pair always yields the same IBAN. Without a
    seed a random UUID is used, so every call differs.
    """

    country = country.upper()
    try:
        bank_length, account_length = BBAN_LAYOUTS[country]
    except KeyError as exc:
        raise ValueError(f"Unsupported IBAN country '{country}'") from exc

    rng = splitmix32(fnv1a32(seed if seed is not None else str(uuid.uuid4())))
    bank_code = generate_digits(rng, bank_length)
    account = generate_digits(rng, account_length)
    bban = bank_code + account
    return f"{country}{calculate_check_digits(country, bban)}{bban}"


def normalize(iban: str) -> str:
    return _WHITESPACE.sub("", iban).upper()


def has_valid_checksum(iban: str) -> bool:
    """Return ``True`` when a normalised IBAN passes the MOD-97 check."""

    rearranged = iban[4:] + iban[:4]
    return _mod97(_transliterate(rearranged)) == 1


def validate(iban: str) -> IbanValidation:
    normalized = normalize(iban)

    if len(normalized) < MIN_IBAN_LENGTH:
        return IbanValidation(False, f"IBAN is too short (minimum {MIN_IBAN_LENGTH} characters)")
    if len(normalized) > MAX_IBAN_LENGTH:
        return IbanValidation(False, f"IBAN is too long (maximum {MAX_IBAN_LENGTH} characters)")

    country = normalized[:2]
    if not _COUNTRY_PATTERN.fullmatch(country):
        return IbanValidation(False, "Invalid country code (must be 2 letters)")

    if not _CHECK_PATTERN.fullmatch(normalized[2:4]):
        return IbanValidation(False, "Invalid check digits (must be 2 digits)")

    expected_length = IBAN_LENGTHS.get(country)
    if expected_length is not None and len(normalized) != expected_length:
        return IbanValidation(
            False,
            f"Invalid length for {country} (expected {expected_length}, got {len(normalized)})",
        )

    if not _BBAN_PATTERN.fullmatch(normalized[4:]):
        return IbanValidation(False, "BBAN contains invalid characters (must be alphanumeric)")

    if not has_valid_checksum(normalized):
        return IbanValidation(False, "Invalid checksum (mod-97 validation failed)")

    return IbanValidation(True)


__all__ = [
    "BBAN_LAYOUTS",
    "IBAN_LENGTHS",
    "IbanValidation",
    "SUPPORTED_COUNTRIES",
    "calculate_check_digits",
    "fnv1a32",
    "generate",
    "generate_digits",
    "has_valid_checksum",
    "normalize",
    "splitmix32",
    "validate",
]
