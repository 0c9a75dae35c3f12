"""Runtime configuration and local storage hardening."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_HOME = Path.home() / ".subpermit"
DEFAULT_DOMAIN_NAME = "Subscription Token"
DEFAULT_DOMAIN_VERSION = "1"
DEFAULT_CHAIN_ID = 8453
PLACEHOLDER_VERIFYING_CONTRACT = "0x0000000000000000000000000000000000000001"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


@dataclass
class SubpermitConfig:
    """Where state lives and which EIP-712 domain permits are signed under."""

    home: Path = DEFAULT_HOME
    db_path: Optional[Path] = None
    audit_path: Optional[Path] = None
    domain_name: str = DEFAULT_DOMAIN_NAME
    domain_version: str = DEFAULT_DOMAIN_VERSION
    chain_id: int = DEFAULT_CHAIN_ID
    verifying_contract: str = PLACEHOLDER_VERIFYING_CONTRACT

    def __post_init__(self) -> None:
        self.home = Path(self.home)
        if self.db_path is None:
            self.db_path = self.home / "ledger.sqlite3"
        if self.audit_path is None:
            self.audit_path = self.home / "audit.jsonl"
        if self.chain_id <= 0:
            raise ValueError(f"chain_id must be positive: {self.chain_id}")

    @property
    def audit_key_path(self) -> Path:
        return self.home.parent / ".subpermit-secrets" / "audit_hmac.key"

    @classmethod
    def from_env(cls) -> "SubpermitConfig":
        home = Path(os.getenv("SUBPERMIT_HOME", str(DEFAULT_HOME)))
        db_path = os.getenv("SUBPERMIT_DB_PATH")
        audit_path = os.getenv("SUBPERMIT_AUDIT_PATH")
        chain_id_raw = os.getenv("SUBPERMIT_CHAIN_ID", str(DEFAULT_CHAIN_ID))
        try:
            chain_id = int(chain_id_raw)
        except ValueError as e:
            raise ValueError(f"Invalid SUBPERMIT_CHAIN_ID: {chain_id_raw}") from e
        return cls(
            home=home,
            db_path=Path(db_path) if db_path else None,
            audit_path=Path(audit_path) if audit_path else None,
            domain_name=os.getenv("SUBPERMIT_TOKEN_NAME", DEFAULT_DOMAIN_NAME),
            domain_version=os.getenv("SUBPERMIT_TOKEN_VERSION", DEFAULT_DOMAIN_VERSION),
            chain_id=chain_id,
            verifying_contract=os.getenv(
                "SUBPERMIT_VERIFYING_CONTRACT", PLACEHOLDER_VERIFYING_CONTRACT
            ),
        )
