"""Per-owner permit nonces. Implicitly zero, strictly increasing, never reset."""

from __future__ import annotations

from .agreement import normalize_address
from .store import LedgerStore
from .uint256 import checked_add, from_db, to_db


class NonceRegistry:
    def __init__(self, store: LedgerStore):
        self.store = store

    def current(self, owner: str) -> int:
        owner = normalize_address(owner)
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT nonce FROM nonces WHERE owner = ?",
                (owner,),
            ).fetchone()
        return from_db(row["nonce"]) if row is not None else 0

    def consume(self, owner: str) -> int:
        """Advance the owner's nonce and return the value that was consumed."""
        owner = normalize_address(owner)
        with self.store.transaction() as conn:
            consumed = self.current(owner)
            conn.execute(
                """
                INSERT INTO nonces (owner, nonce) VALUES (?, ?)
                ON CONFLICT (owner) DO UPDATE SET nonce = excluded.nonce
                """,
                (owner, to_db(checked_add(consumed, 1))),
            )
        return consumed
