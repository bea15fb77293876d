"""CPF/CNPJ helpers (check digits and formatting)."""

from __future__ import annotations

import re
from typing import Optional, Sequence

_NON_DIGITS = re.compile(r"\D+")

CPF_LENGTH = 11
CNPJ_LENGTH = 14

_CNPJ_WEIGHTS_FIRST = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_WEIGHTS_SECOND = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def only_digits(value: Optional[object]) -> str:
    if value is None:
        return ""
    return _NON_DIGITS.sub("", str(value))


def _check_digit(digits: str, weights: Sequence[int]) -> int:
    remainder = sum(int(d) * w for d, w in zip(digits, weights)) % 11
    return 0 if remainder < 2 else 11 - remainder


def is_valid_cpf(value: Optional[object]) -> bool:
    digits = only_digits(value)
    if len(digits) != CPF_LENGTH or digits == digits[0] * CPF_LENGTH:
        return False
    first = _check_digit(digits[:9], range(10, 1, -1))
    second = _check_digit(digits[:10], range(11, 1, -1))
    return digits[-2:] == f"{first}{second}"


def is_valid_cnpj(value: Optional[object]) -> bool:
    digits = only_digits(value)
    if len(digits) != CNPJ_LENGTH or digits == digits[0] * CNPJ_LENGTH:
        return False
    first = _check_digit(digits[:12], _CNPJ_WEIGHTS_FIRST)
    second = _check_digit(digits[:13], _CNPJ_WEIGHTS_SECOND)
    return digits[-2:] == f"{first}{second}"


def document_kind(value: Optional[object]) -> Optional[str]:
    """Classify a document by length: ``"cpf"``, ``"cnpj"`` or ``None``."""

    length = len(only_digits(value))
    if length == CPF_LENGTH:
        return "cpf"
    if length == CNPJ_LENGTH:
        return "cnpj"
    return None


def is_valid_document(value: Optional[object]) -> bool:
    kind = document_kind(value)
    if kind == "cpf":
        return is_valid_cpf(value)
    if kind == "cnpj":
        return is_valid_cnpj(value)
    return False


def format_cpf(value: Optional[object]) -> str:
    d = only_digits(value)
    if len(d) != CPF_LENGTH:
        return d
    return f"{d[:3]}.{d[3:6]}.{d[6:9]}-{d[9:]}"


def format_cnpj(value: Optional[object]) -> str:
    d = only_digits(value)
    if len(d) != CNPJ_LENGTH:
        return d
    return f"{d[:2]}.{d[2:5]}.{d[5:8]}/{d[8:12]}-{d[12:]}"


def format_document(value: Optional[object]) -> str:
    """Mask a CPF or CNPJ by length; other values come back as bare digits."""

    if document_kind(value) == "cpf":
        return format_cpf(value)
    return format_cnpj(value)


__all__ = [
    "CNPJ_LENGTH",
    "CPF_LENGTH",
    "document_kind",
    "format_cnpj",
    "format_cpf",
    "format_document",
    "is_valid_cnpj",
    "is_valid_cpf",
    "is_valid_document",
    "only_digits",
]
