"""
Agreement keys and period buckets.

An agreement is identified by (owner, spender, interval, expiry). Spend is
tracked per absolute bucket ``now // interval``, so the current bucket of a
daily agreement is simply the current UNIX day, whenever the agreement began.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .uint256 import parse_uint256


NEVER_EXPIRES = 0

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    if not isinstance(address, str):
        raise ValueError(f"Invalid Ethereum address: {address!r}")
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def parse_interval(value: Any) -> int:
    interval = parse_uint256(value, "interval")
    if interval == 0:
        raise ValueError("interval must be > 0")
    return interval


def period_index(now: int, interval: int) -> int:
    return now // interval


@dataclass(frozen=True)
class AgreementKey:
    """Composite key of one recurring-spend authorization."""

    owner: str
    spender: str
    interval: int
    expiry: int

    @classmethod
    def of(cls, owner: str, spender: str, interval: Any, expiry: Any) -> "AgreementKey":
        return cls(
            owner=normalize_address(owner),
            spender=normalize_address(spender),
            interval=parse_interval(interval),
            expiry=parse_uint256(expiry, "expiry"),
        )

    @property
    def never_expires(self) -> bool:
        return self.expiry == NEVER_EXPIRES

    def is_expired(self, now: int) -> bool:
        return self.expiry != NEVER_EXPIRES and now > self.expiry

    def period(self, now: int) -> int:
        return period_index(now, self.interval)

    def as_row(self) -> tuple[str, str, str, str]:
        return (self.owner, self.spender, str(self.interval), str(self.expiry))
