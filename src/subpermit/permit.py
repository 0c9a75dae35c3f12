"""
EIP-712 permits for subscription allowances.

A permit lets an owner authorize a recurring allowance off-band: the owner
signs ``PermitForSubscription`` typed data, anyone submits it, and the
verifier installs the allowance once the signature recovers to the owner.
The owner's current nonce is part of the signed payload, so a consumed or
altered permit simply recovers to a different address.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Union

from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from eth_utils import keccak

from .agreement import AgreementKey, normalize_address
from .errors import ExpiredDeadlineError, InvalidSignatureError
from .ledger import AllowanceLedger
from .nonces import NonceRegistry
from .store import LedgerStore
from .uint256 import parse_uint256


logger = logging.getLogger(__name__)

PERMIT_PRIMARY_TYPE = "PermitForSubscription"
PERMIT_TYPES = {
    PERMIT_PRIMARY_TYPE: [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "interval", "type": "uint256"},
        {"name": "expiry", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}

Signature = Union[bytes, bytearray, str, tuple]


@dataclass(frozen=True)
class SigningDomain:
    """EIP-712 domain that permits are bound to."""

    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def to_eip712(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": int(self.chain_id),
            "verifyingContract": normalize_address(self.verifying_contract),
        }

    def separator(self) -> str:
        """Domain separator hash, identifying this domain to off-band signers."""
        placeholder = PermitMessage(
            owner="0x" + "00" * 20,
            spender="0x" + "00" * 20,
            value=0,
            interval=1,
            expiry=0,
            nonce=0,
            deadline=0,
        )
        return "0x" + bytes(placeholder.signable(self).header).hex()


@dataclass(frozen=True)
class PermitMessage:
    """The signed terms of one permit."""

    owner: str
    spender: str
    value: int
    interval: int
    expiry: int
    nonce: int
    deadline: int

    def to_eip712_message(self, domain: SigningDomain) -> dict:
        """Convert the permit to EIP-712 typed data for signing."""
        return {
            "types": PERMIT_TYPES,
            "primaryType": PERMIT_PRIMARY_TYPE,
            "domain": domain.to_eip712(),
            "message": {
                "owner": normalize_address(self.owner),
                "spender": normalize_address(self.spender),
                "value": parse_uint256(self.value, "value"),
                "interval": parse_uint256(self.interval, "interval"),
                "expiry": parse_uint256(self.expiry, "expiry"),
                "nonce": parse_uint256(self.nonce, "nonce"),
                "deadline": parse_uint256(self.deadline, "deadline"),
            },
        }

    def signable(self, domain: SigningDomain) -> SignableMessage:
        typed_data = self.to_eip712_message(domain)
        return encode_typed_data(
            typed_data["domain"],
            typed_data["types"],
            typed_data["message"],
        )

    def digest(self, domain: SigningDomain) -> str:
        """EIP-712 digest that the owner's key signs."""
        signable = self.signable(domain)
        return "0x" + keccak(
            b"\x19" + bytes(signable.version) + bytes(signable.header) + bytes(signable.body)
        ).hex()


def sign_permit(private_key: str, domain: SigningDomain, permit: PermitMessage) -> str:
    """Sign a permit and return the 65-byte signature as 0x hex."""
    typed_data = permit.to_eip712_message(domain)
    signed = Account.sign_typed_data(
        private_key,
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    return "0x" + bytes(signed.signature).hex()


def recover_permit_signer(
    domain: SigningDomain,
    permit: PermitMessage,
    signature: Signature,
) -> str:
    """Recover the address that signed ``permit``. Has no side effects."""
    try:
        signable = permit.signable(domain)
        if isinstance(signature, tuple):
            recovered = Account.recover_message(signable, vrs=_parse_vrs(signature))
        else:
            recovered = Account.recover_message(
                signable,
                signature=_signature_bytes(signature),
            )
    except Exception as e:
        raise InvalidSignatureError(f"Signature recovery failed: {e}") from e
    return normalize_address(recovered)


class PermitVerifier:
    """Checks permits and, on success, consumes a nonce and sets the allowance."""

    def __init__(
        self,
        store: LedgerStore,
        nonces: NonceRegistry,
        allowances: AllowanceLedger,
        domain: SigningDomain,
    ):
        self.store = store
        self.nonces = nonces
        self.allowances = allowances
        self.domain = domain

    def apply(
        self,
        owner: str,
        spender: str,
        value: Any,
        interval: Any,
        expiry: Any,
        deadline: Any,
        signature: Signature,
        now: int,
    ) -> bool:
        key = AgreementKey.of(owner, spender, interval, expiry)
        value = parse_uint256(value, "value")
        deadline = parse_uint256(deadline, "deadline")
        if now > deadline:
            raise ExpiredDeadlineError(deadline, now)

        with self.store.transaction():
            permit = PermitMessage(
                owner=key.owner,
                spender=key.spender,
                value=value,
                interval=key.interval,
                expiry=key.expiry,
                nonce=self.nonces.current(key.owner),
                deadline=deadline,
            )
            recovered = recover_permit_signer(self.domain, permit, signature)
            if recovered != key.owner:
                raise InvalidSignatureError(
                    f"Signer mismatch: expected {key.owner}, got {recovered}"
                )
            # nonce is spent before the allowance becomes observable
            self.nonces.consume(key.owner)
            self.allowances.set(key.owner, key.spender, key.interval, key.expiry, value)

        logger.info(
            "Permit accepted: owner=%s spender=%s nonce=%d",
            key.owner,
            key.spender,
            permit.nonce,
        )
        return True


def _signature_bytes(signature: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(signature, (bytes, bytearray)):
        raw = bytes(signature)
    elif isinstance(signature, str):
        candidate = signature.strip()
        if candidate.lower().startswith("0x"):
            candidate = candidate[2:]
        raw = bytes.fromhex(candidate)
    else:
        raise TypeError(f"Unsupported signature type: {type(signature).__name__}")
    if len(raw) != 65:
        raise ValueError(f"Signature must be 65 bytes, got {len(raw)}")
    return raw


def _parse_vrs(signature: tuple) -> tuple[int, int, int]:
    if len(signature) != 3:
        raise ValueError("Signature tuple must be (v, r, s)")
    v, r, s = signature
    return int(v), _word(r), _word(s)


def _word(value: Any) -> int:
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValueError("Signature component must be 32 bytes")
        return int.from_bytes(value, "big")
    if isinstance(value, str):
        return int(value, 16)
    return int(value)
