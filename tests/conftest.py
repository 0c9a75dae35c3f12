"""Shared fixtures: throwaway accounts, a manual clock and a fresh token."""

import pytest
from eth_account import Account

from subpermit.permit import SigningDomain
from subpermit.store import LedgerStore
from subpermit.token import SubscriptionToken


DAY = 86_400
# 2024-01-01T00:00:00Z, a day boundary
START = 1_704_067_200


class ManualClock:
    def __init__(self, now: int = START):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def domain():
    return SigningDomain(
        name="Subscription Token",
        version="1",
        chain_id=84532,
        verifying_contract="0x00000000000000000000000000000000000000aa",
    )


@pytest.fixture
def store(tmp_path):
    store = LedgerStore(tmp_path / "ledger.sqlite3")
    yield store
    store.close()


@pytest.fixture
def token(store, domain, clock):
    return SubscriptionToken(store, domain, clock=clock)


@pytest.fixture
def owner():
    return Account.create()


@pytest.fixture
def spender():
    return Account.create()


@pytest.fixture
def recipient():
    return Account.create()
