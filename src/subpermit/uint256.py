"""Checked 256-bit unsigned integer helpers for allowance and spend amounts."""

from __future__ import annotations

from typing import Any

from .errors import ArithmeticOverflowError, ArithmeticUnderflowError


UINT256_MAX = 2**256 - 1


def parse_uint256(value: Any, field_name: str = "amount") -> int:
    """Validate an integer amount (or decimal string) in [0, 2**256 - 1]."""
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer, not a boolean")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise ValueError(f"{field_name} must be an unsigned integer")
    if parsed < 0 or parsed > UINT256_MAX:
        raise ValueError(f"{field_name} must be within uint256 range")
    return parsed


def checked_add(a: int, b: int) -> int:
    total = a + b
    if total > UINT256_MAX:
        raise ArithmeticOverflowError(a, b)
    return total


def checked_sub(a: int, b: int) -> int:
    if b > a:
        raise ArithmeticUnderflowError(a, b)
    return a - b


def to_db(value: int) -> str:
    """SQLite INTEGER is 64-bit, so wide values are stored as decimal text."""
    return str(value)


def from_db(value: Any) -> int:
    if value is None:
        return 0
    return int(value)
