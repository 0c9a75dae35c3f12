"""
Subpermit: recurring spending allowances with EIP-712 permits.

Owner grants a quota → spender pulls up to it once per period → until expiry.
"""

__version__ = "0.1.0"

from .agreement import NEVER_EXPIRES, AgreementKey, normalize_address, period_index
from .audit import AuditTrail, EventType
from .balances import FungibleLedger, TokenBalances
from .config import SubpermitConfig
from .errors import (
    ArithmeticOverflowError,
    ArithmeticUnderflowError,
    ExpiredDeadlineError,
    InsufficientAllowanceError,
    InsufficientBalanceError,
    InvalidSignatureError,
    SubpermitError,
    TransferFailedError,
)
from .events import ApprovalForSubscription, Notifier
from .ledger import AllowanceLedger, PeriodSpendLedger
from .nonces import NonceRegistry
from .permit import (
    PermitMessage,
    PermitVerifier,
    SigningDomain,
    recover_permit_signer,
    sign_permit,
)
from .spender import SubscriptionSpender
from .store import LedgerStore
from .token import SubscriptionToken
from .uint256 import UINT256_MAX

__all__ = [
    "AgreementKey", "NEVER_EXPIRES", "normalize_address", "period_index",
    "AuditTrail", "EventType", "FungibleLedger", "TokenBalances", "SubpermitConfig",
    "SubpermitError", "ExpiredDeadlineError", "InvalidSignatureError",
    "InsufficientAllowanceError", "InsufficientBalanceError",
    "ArithmeticOverflowError", "ArithmeticUnderflowError", "TransferFailedError",
    "ApprovalForSubscription", "Notifier", "AllowanceLedger", "PeriodSpendLedger",
    "NonceRegistry", "PermitMessage", "PermitVerifier", "SigningDomain",
    "recover_permit_signer", "sign_permit", "SubscriptionSpender", "LedgerStore",
    "SubscriptionToken", "UINT256_MAX",
]
