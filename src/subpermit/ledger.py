"""
Allowance and per-period spend ledgers.

Both ledgers are keyed by the composite agreement key
(owner, spender, interval, expiry). The spend ledger adds the absolute period
index, so a new bucket (and therefore a fresh quota) starts whenever the clock
crosses an interval boundary. There is no explicit roll-over.
"""

from __future__ import annotations

import logging
from typing import Any

from .agreement import AgreementKey, period_index
from .events import ApprovalForSubscription, Notifier
from .store import LedgerStore
from .uint256 import checked_add, checked_sub, from_db, parse_uint256, to_db


logger = logging.getLogger(__name__)


class AllowanceLedger:
    """Quota amounts per agreement. Reads are not time-gated."""

    def __init__(self, store: LedgerStore, notifier: Notifier):
        self.store = store
        self.notifier = notifier

    def read_key(self, key: AgreementKey) -> int:
        with self.store.transaction() as conn:
            row = conn.execute(
                """
                SELECT amount FROM allowances
                WHERE owner = ? AND spender = ? AND interval_seconds = ? AND expiry = ?
                """,
                key.as_row(),
            ).fetchone()
        return from_db(row["amount"]) if row is not None else 0

    def _write_key(self, key: AgreementKey, amount: int) -> None:
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO allowances (owner, spender, interval_seconds, expiry, amount)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (owner, spender, interval_seconds, expiry)
                DO UPDATE SET amount = excluded.amount
                """,
                (*key.as_row(), to_db(amount)),
            )
        event = ApprovalForSubscription(
            owner=key.owner,
            spender=key.spender,
            amount=amount,
            interval=key.interval,
            expiry=key.expiry,
        )
        self.store.after_commit(lambda: self.notifier.emit(event))

    def read(self, owner: str, spender: str, interval: Any, expiry: Any) -> int:
        return self.read_key(AgreementKey.of(owner, spender, interval, expiry))

    def set(self, owner: str, spender: str, interval: Any, expiry: Any, amount: Any) -> int:
        """Overwrite the allowance. Always succeeds for valid inputs."""
        key = AgreementKey.of(owner, spender, interval, expiry)
        value = parse_uint256(amount, "amount")
        with self.store.transaction():
            self._write_key(key, value)
        return value

    def increase(self, owner: str, spender: str, interval: Any, expiry: Any, delta: Any) -> int:
        key = AgreementKey.of(owner, spender, interval, expiry)
        value = parse_uint256(delta, "delta")
        with self.store.transaction():
            updated = checked_add(self.read_key(key), value)
            self._write_key(key, updated)
        return updated

    def decrease(self, owner: str, spender: str, interval: Any, expiry: Any, delta: Any) -> int:
        """Lower the allowance.

        Spend already drawn in the current period is not reconciled; the lower
        value only applies from the next spend check on.
        """
        key = AgreementKey.of(owner, spender, interval, expiry)
        value = parse_uint256(delta, "delta")
        with self.store.transaction():
            updated = checked_sub(self.read_key(key), value)
            self._write_key(key, updated)
        return updated


class PeriodSpendLedger:
    """Amount drawn per agreement and absolute period."""

    def __init__(self, store: LedgerStore, allowances: AllowanceLedger):
        self.store = store
        self.allowances = allowances

    def read_key(self, key: AgreementKey, period: int) -> int:
        with self.store.transaction() as conn:
            row = conn.execute(
                """
                SELECT spent FROM period_spend
                WHERE owner = ? AND spender = ? AND interval_seconds = ? AND expiry = ?
                  AND period_index = ?
                """,
                (*key.as_row(), str(period)),
            ).fetchone()
        return from_db(row["spent"]) if row is not None else 0

    def read(self, owner: str, spender: str, interval: Any, expiry: Any, period: int) -> int:
        return self.read_key(AgreementKey.of(owner, spender, interval, expiry), period)

    def remaining_for(self, key: AgreementKey, now: int) -> int:
        if key.is_expired(now):
            return 0
        with self.store.transaction():
            allowance = self.allowances.read_key(key)
            spent = self.read_key(key, key.period(now))
        # allowance may have been decreased below what this period already drew
        return max(0, allowance - spent)

    def remaining(self, owner: str, spender: str, interval: Any, expiry: Any, now: int) -> int:
        """Quota left in the bucket containing ``now``; 0 once expired."""
        return self.remaining_for(AgreementKey.of(owner, spender, interval, expiry), now)

    def commit_for(self, key: AgreementKey, now: int, amount: int) -> int:
        period = key.period(now)
        with self.store.transaction() as conn:
            spent = checked_add(self.read_key(key, period), amount)
            conn.execute(
                """
                INSERT INTO period_spend (
                    owner, spender, interval_seconds, expiry, period_index, spent
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (owner, spender, interval_seconds, expiry, period_index)
                DO UPDATE SET spent = excluded.spent
                """,
                (*key.as_row(), str(period), to_db(spent)),
            )
        return spent

    def commit(
        self,
        owner: str,
        spender: str,
        interval: Any,
        expiry: Any,
        now: int,
        amount: Any,
    ) -> int:
        """Add ``amount`` to the current bucket and return the bucket total."""
        key = AgreementKey.of(owner, spender, interval, expiry)
        return self.commit_for(key, now, parse_uint256(amount, "amount"))

    def prune(self, now: int) -> int:
        """Drop buckets older than the current one of their interval."""
        removed = 0
        with self.store.transaction() as conn:
            rows = conn.execute(
                """
                SELECT owner, spender, interval_seconds, expiry, period_index
                FROM period_spend
                """
            ).fetchall()
            for row in rows:
                current = period_index(now, int(row["interval_seconds"]))
                if int(row["period_index"]) >= current:
                    continue
                conn.execute(
                    """
                    DELETE FROM period_spend
                    WHERE owner = ? AND spender = ? AND interval_seconds = ? AND expiry = ?
                      AND period_index = ?
                    """,
                    (
                        row["owner"],
                        row["spender"],
                        row["interval_seconds"],
                        row["expiry"],
                        row["period_index"],
                    ),
                )
                removed += 1
        if removed:
            logger.info("Pruned %d stale period spend records", removed)
        return removed
