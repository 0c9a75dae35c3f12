"""
Subscription token: the public operations over one ledger database.

``caller`` arguments stand for the authenticated sender of an operation
(the owner for approvals, the spender for pulls).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from .agreement import AgreementKey, normalize_address
from .audit import AuditTrail, EventType
from .balances import FungibleLedger, TokenBalances
from .config import SubpermitConfig
from .errors import PermitError, SubpermitError
from .events import Listener, Notifier
from .ledger import AllowanceLedger, PeriodSpendLedger
from .nonces import NonceRegistry
from .permit import PermitVerifier, Signature, SigningDomain
from .spender import SubscriptionSpender
from .store import LedgerStore


logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time())


class SubscriptionToken:
    """Recurring allowances, permits and subscription pulls."""

    def __init__(
        self,
        store: LedgerStore,
        domain: SigningDomain,
        balances: Optional[FungibleLedger] = None,
        clock: Optional[Clock] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.store = store
        self.domain = domain
        self.clock = clock or system_clock
        self.audit = audit
        self.notifier = Notifier()
        self.balances = balances if balances is not None else TokenBalances(store)
        self.allowances = AllowanceLedger(store, self.notifier)
        self.spend_ledger = PeriodSpendLedger(store, self.allowances)
        self.nonces = NonceRegistry(store)
        self.permits = PermitVerifier(store, self.nonces, self.allowances, domain)
        self.spender = SubscriptionSpender(store, self.spend_ledger, self.balances)
        if audit is not None:
            self.notifier.subscribe(audit.record_approval)

    @classmethod
    def from_config(
        cls,
        config: SubpermitConfig,
        clock: Optional[Clock] = None,
        with_audit: bool = True,
    ) -> "SubscriptionToken":
        store = LedgerStore(config.db_path)
        domain = SigningDomain(
            name=config.domain_name,
            version=config.domain_version,
            chain_id=config.chain_id,
            verifying_contract=config.verifying_contract,
        )
        audit = AuditTrail(config.audit_path, config.audit_key_path) if with_audit else None
        return cls(store, domain, clock=clock, audit=audit)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register for ``ApprovalForSubscription`` notifications."""
        return self.notifier.subscribe(listener)

    # ── Allowances ────────────────────────────────────────────────

    def permit_for_subscription(
        self,
        owner: str,
        spender: str,
        value: Any,
        interval: Any,
        expiry: Any,
        deadline: Any,
        signature: Signature,
    ) -> bool:
        key = AgreementKey.of(owner, spender, interval, expiry)
        try:
            self.permits.apply(
                owner, spender, value, interval, expiry, deadline, signature, now=self.clock()
            )
        except PermitError as e:
            logger.warning("Permit rejected for owner %s: %s", key.owner, e)
            if self.audit is not None:
                self.audit.log_agreement(EventType.PERMIT_REJECTED, key, amount=int(value), error=e)
            raise
        if self.audit is not None:
            audit = self.audit
            self.store.after_commit(
                lambda: audit.log_agreement(EventType.PERMIT_ACCEPTED, key, amount=int(value))
            )
        return True

    def approve_for_subscription(
        self, caller: str, spender: str, value: Any, interval: Any, expiry: Any
    ) -> bool:
        self.allowances.set(caller, spender, interval, expiry, value)
        return True

    def increase_allowance_for_subscription(
        self, caller: str, spender: str, delta: Any, interval: Any, expiry: Any
    ) -> bool:
        self.allowances.increase(caller, spender, interval, expiry, delta)
        return True

    def decrease_allowance_for_subscription(
        self, caller: str, spender: str, delta: Any, interval: Any, expiry: Any
    ) -> bool:
        self.allowances.decrease(caller, spender, interval, expiry, delta)
        return True

    def allowance_for_subscription(
        self, owner: str, spender: str, interval: Any, expiry: Any
    ) -> int:
        """Quota the spender can still pull in the current period."""
        return self.spend_ledger.remaining(owner, spender, interval, expiry, self.clock())

    # ── Spending ──────────────────────────────────────────────────

    def transfer_from_for_subscription(
        self,
        caller: str,
        owner: str,
        to: str,
        amount: Any,
        interval: Any,
        expiry: Any,
    ) -> bool:
        key = AgreementKey.of(owner, caller, interval, expiry)
        recipient = normalize_address(to)
        now = self.clock()
        try:
            self.spender.spend(owner, caller, to, amount, interval, expiry, now=now)
        except SubpermitError as e:
            if self.audit is not None:
                self.audit.log_agreement(
                    EventType.SPEND_DENIED,
                    key,
                    amount=int(amount),
                    error=e,
                    recipient=recipient,
                    period=key.period(now),
                )
            raise
        if self.audit is not None:
            audit = self.audit
            self.store.after_commit(
                lambda: audit.log_agreement(
                    EventType.SPEND_COMPLETED,
                    key,
                    amount=int(amount),
                    recipient=recipient,
                    period=key.period(now),
                )
            )
        return True

    def prune_spend_records(self) -> int:
        return self.spend_ledger.prune(self.clock())

    # ── Nonces and signing domain ─────────────────────────────────

    def current_nonce(self, owner: str) -> int:
        return self.nonces.current(owner)

    def signing_domain_id(self) -> str:
        return self.domain.separator()

    # ── Underlying balances ───────────────────────────────────────

    def balance_of(self, account: str) -> int:
        return self.balances.balance_of(account)

    def transfer(self, caller: str, to: str, amount: Any) -> bool:
        return self.balances.transfer(caller, to, amount)

    def mint(self, account: str, amount: Any) -> int:
        return self._local_balances().mint(account, amount)

    def burn(self, account: str, amount: Any) -> int:
        return self._local_balances().burn(account, amount)

    def _local_balances(self) -> TokenBalances:
        if not isinstance(self.balances, TokenBalances):
            raise TypeError("mint/burn are only available on the built-in token ledger")
        return self.balances
