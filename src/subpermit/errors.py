"""
Subpermit error types.

Every failure aborts the whole operation; nothing is retried internally and
no partial effect survives. Callers resubmit with corrected parameters.
"""


class SubpermitError(Exception):
    """Base error for all Subpermit operations."""
    pass


# Permit errors
class PermitError(SubpermitError):
    """Base error for signature-based authorization failures."""
    pass


class ExpiredDeadlineError(PermitError):
    """Permit was submitted after its signed deadline."""
    def __init__(self, deadline: int, now: int):
        self.deadline = deadline
        self.now = now
        super().__init__(f"Permit deadline {deadline} has passed (now {now})")


class InvalidSignatureError(PermitError):
    """Recovered signer does not match the claimed owner.

    Forged, replayed and tampered permits all end up here.
    """
    def __init__(self, message: str = "Invalid permit signature"):
        super().__init__(message)


# Quota errors
class QuotaError(SubpermitError):
    """Base error for spend checks."""
    pass


class InsufficientAllowanceError(QuotaError):
    """Requested amount exceeds the remaining quota for the current period."""
    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Amount {requested} exceeds remaining allowance {available} for this period"
        )


class InsufficientBalanceError(QuotaError):
    """Owner's live balance cannot cover the requested amount."""
    def __init__(self, requested: int, balance: int):
        self.requested = requested
        self.balance = balance
        super().__init__(f"Amount {requested} exceeds owner balance {balance}")


# Arithmetic errors
class AmountArithmeticError(SubpermitError, ArithmeticError):
    """Base error for uint256 range violations."""
    pass


class ArithmeticOverflowError(AmountArithmeticError):
    def __init__(self, a: int, b: int):
        self.a = a
        self.b = b
        super().__init__(f"uint256 overflow: {a} + {b}")


class ArithmeticUnderflowError(AmountArithmeticError):
    def __init__(self, a: int, b: int):
        self.a = a
        self.b = b
        super().__init__(f"uint256 underflow: {a} - {b}")


# Ledger errors
class TransferFailedError(SubpermitError):
    """The fungible ledger refused to move the funds."""
    def __init__(self, sender: str, recipient: str, amount: int):
        self.sender = sender
        self.recipient = recipient
        self.amount = amount
        super().__init__(f"Transfer of {amount} from {sender} to {recipient} was rejected")
