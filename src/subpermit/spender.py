"""
Spend execution against a subscription allowance.

Flow (all inside one ledger transaction):
1. Remaining quota for the current period is non-zero and covers the amount
2. Owner's live balance covers the amount
3. Commit the amount to the period bucket
4. Transfer through the fungible ledger

The commit precedes the transfer so that a reentrant spend made from inside
the transfer already sees this one. Any failure rolls everything back.
"""

from __future__ import annotations

import logging
from typing import Any

from .agreement import AgreementKey, normalize_address
from .balances import FungibleLedger
from .errors import (
    InsufficientAllowanceError,
    InsufficientBalanceError,
    TransferFailedError,
)
from .ledger import PeriodSpendLedger
from .store import LedgerStore
from .uint256 import parse_uint256


logger = logging.getLogger(__name__)


class SubscriptionSpender:
    """Orchestrates the check-commit-transfer sequence."""

    def __init__(
        self,
        store: LedgerStore,
        spend_ledger: PeriodSpendLedger,
        token_ledger: FungibleLedger,
    ):
        self.store = store
        self.spend_ledger = spend_ledger
        self.token_ledger = token_ledger

    def spend(
        self,
        owner: str,
        spender: str,
        to: str,
        amount: Any,
        interval: Any,
        expiry: Any,
        now: int,
    ) -> bool:
        key = AgreementKey.of(owner, spender, interval, expiry)
        recipient = normalize_address(to)
        amount = parse_uint256(amount, "amount")

        with self.store.transaction():
            available = self.spend_ledger.remaining_for(key, now)
            # an exhausted, expired or missing agreement refuses even a zero pull
            if amount > available or available == 0:
                raise InsufficientAllowanceError(amount, available)

            balance = self.token_ledger.balance_of(key.owner)
            if amount > balance:
                raise InsufficientBalanceError(amount, balance)

            spent = self.spend_ledger.commit_for(key, now, amount)

            if not self.token_ledger.transfer(key.owner, recipient, amount):
                logger.warning(
                    "Transfer rejected, rolling back period spend: owner=%s spender=%s",
                    key.owner,
                    key.spender,
                )
                raise TransferFailedError(key.owner, recipient, amount)

        logger.info(
            "Subscription spend: owner=%s spender=%s to=%s amount=%d period=%d spent=%d",
            key.owner,
            key.spender,
            recipient,
            amount,
            key.period(now),
            spent,
        )
        return True
