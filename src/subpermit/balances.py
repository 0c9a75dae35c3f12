"""Fungible ledger interface and a SQLite-backed reference implementation."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol

from .agreement import normalize_address
from .errors import InsufficientBalanceError
from .store import LedgerStore
from .uint256 import checked_add, checked_sub, from_db, parse_uint256, to_db


logger = logging.getLogger(__name__)

# Called after balances move; returning False rejects the transfer.
TransferHook = Callable[[str, str, int], Optional[bool]]


class FungibleLedger(Protocol):
    def balance_of(self, account: str) -> int: ...

    def transfer(self, sender: str, recipient: str, amount: int) -> bool: ...


class TokenBalances:
    """Balances stored in the same database as the allowance state.

    Because it shares the ``LedgerStore`` transaction, a transfer that fails
    after the spend was committed is rolled back together with it.
    """

    def __init__(self, store: LedgerStore):
        self.store = store
        self._hooks: list[TransferHook] = []

    def add_transfer_hook(self, hook: TransferHook) -> Callable[[], None]:
        self._hooks.append(hook)

        def remove() -> None:
            if hook in self._hooks:
                self._hooks.remove(hook)

        return remove

    def _write(self, conn, account: str, amount: int) -> None:
        conn.execute(
            """
            INSERT INTO balances (account, amount) VALUES (?, ?)
            ON CONFLICT (account) DO UPDATE SET amount = excluded.amount
            """,
            (account, to_db(amount)),
        )

    def _set_supply(self, conn, total: int) -> None:
        conn.execute(
            """
            INSERT INTO token_supply (id, total) VALUES (1, ?)
            ON CONFLICT (id) DO UPDATE SET total = excluded.total
            """,
            (to_db(total),),
        )

    def balance_of(self, account: str) -> int:
        account = normalize_address(account)
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT amount FROM balances WHERE account = ?",
                (account,),
            ).fetchone()
        return from_db(row["amount"]) if row is not None else 0

    def total_supply(self) -> int:
        with self.store.transaction() as conn:
            row = conn.execute("SELECT total FROM token_supply WHERE id = 1").fetchone()
        return from_db(row["total"]) if row is not None else 0

    def mint(self, account: str, amount: Any) -> int:
        account = normalize_address(account)
        amount = parse_uint256(amount, "amount")
        with self.store.transaction() as conn:
            self._set_supply(conn, checked_add(self.total_supply(), amount))
            balance = checked_add(self.balance_of(account), amount)
            self._write(conn, account, balance)
        logger.info("Minted %d to %s", amount, account)
        return balance

    def burn(self, account: str, amount: Any) -> int:
        account = normalize_address(account)
        amount = parse_uint256(amount, "amount")
        with self.store.transaction() as conn:
            current = self.balance_of(account)
            if amount > current:
                raise InsufficientBalanceError(amount, current)
            self._write(conn, account, current - amount)
            self._set_supply(conn, checked_sub(self.total_supply(), amount))
        logger.info("Burned %d from %s", amount, account)
        return current - amount

    def transfer(self, sender: str, recipient: str, amount: Any) -> bool:
        """Move funds and run transfer hooks.

        Returns False (with nothing moved) when a hook rejects the transfer;
        raises if the sender is short.
        """
        sender = normalize_address(sender)
        recipient = normalize_address(recipient)
        amount = parse_uint256(amount, "amount")
        try:
            with self.store.transaction() as conn:
                sender_balance = self.balance_of(sender)
                if amount > sender_balance:
                    raise InsufficientBalanceError(amount, sender_balance)
                self._write(conn, sender, sender_balance - amount)
                self._write(conn, recipient, checked_add(self.balance_of(recipient), amount))
                for hook in list(self._hooks):
                    if hook(sender, recipient, amount) is False:
                        raise _HookRejected()
        except _HookRejected:
            logger.warning("Transfer hook rejected %d from %s to %s", amount, sender, recipient)
            return False
        return True


class _HookRejected(Exception):
    pass
