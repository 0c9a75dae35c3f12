"""Tests for subscription spends: period quotas, expiry, rollback and reentrancy."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from subpermit.errors import (
    InsufficientAllowanceError,
    InsufficientBalanceError,
    SubpermitError,
    TransferFailedError,
)


DAY = 86_400
START = 1_704_067_200


@pytest.fixture
def funded(token, owner):
    token.mint(owner.address, 10_000)
    return token


def _pull(token, spender, owner, to, amount, interval=DAY, expiry=0):
    return token.transfer_from_for_subscription(
        spender.address, owner.address, to.address, amount, interval, expiry
    )


class TestPeriodQuota:
    def test_daily_pull_for_ten_days(self, funded, clock, owner, spender, recipient):
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)

        for _ in range(10):
            assert _pull(funded, spender, owner, recipient, 100) is True
            assert funded.allowance_for_subscription(owner.address, spender.address, DAY, 0) == 0
            clock.advance(DAY)

        assert funded.balance_of(recipient.address) == 1_000
        assert funded.balance_of(owner.address) == 9_000

    def test_third_pull_in_period_fails(self, funded, owner, spender, recipient):
        expiry = START + 30 * DAY
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, expiry)
        _pull(funded, spender, owner, recipient, 50, expiry=expiry)
        _pull(funded, spender, owner, recipient, 50, expiry=expiry)

        with pytest.raises(InsufficientAllowanceError) as exc:
            _pull(funded, spender, owner, recipient, 1, expiry=expiry)
        assert exc.value.available == 0
        assert funded.balance_of(recipient.address) == 100

    def test_partial_pull_leaves_remainder(self, funded, owner, spender, recipient):
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)
        _pull(funded, spender, owner, recipient, 30)
        assert funded.allowance_for_subscription(owner.address, spender.address, DAY, 0) == 70

    def test_quota_resets_on_absolute_boundary(self, funded, clock, owner, spender, recipient):
        clock.advance(23 * 3600)
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)
        _pull(funded, spender, owner, recipient, 100)

        clock.advance(3600)

        assert funded.allowance_for_subscription(owner.address, spender.address, DAY, 0) == 100
        assert _pull(funded, spender, owner, recipient, 100)

    def test_no_approval_means_no_pull(self, funded, owner, spender, recipient):
        with pytest.raises(InsufficientAllowanceError):
            _pull(funded, spender, owner, recipient, 1)

    def test_zero_amount_pull_within_quota_succeeds(self, funded, owner, spender, recipient):
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)
        assert _pull(funded, spender, owner, recipient, 0)

    def test_zero_amount_pull_fails_without_quota(self, funded, clock, owner, spender, recipient):
        with pytest.raises(InsufficientAllowanceError):
            _pull(funded, spender, owner, recipient, 0)

        expiry = START + DAY
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, expiry)
        _pull(funded, spender, owner, recipient, 100, expiry=expiry)
        with pytest.raises(InsufficientAllowanceError):
            _pull(funded, spender, owner, recipient, 0, expiry=expiry)

        clock.now = expiry + 1
        with pytest.raises(InsufficientAllowanceError):
            _pull(funded, spender, owner, recipient, 0, expiry=expiry)

    def test_decrease_below_spent_blocks_rest_of_period(
        self, funded, clock, owner, spender, recipient
    ):
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)
        _pull(funded, spender, owner, recipient, 80)
        funded.decrease_allowance_for_subscription(owner.address, spender.address, 50, DAY, 0)

        with pytest.raises(InsufficientAllowanceError):
            _pull(funded, spender, owner, recipient, 1)

        clock.advance(DAY)
        assert funded.allowance_for_subscription(owner.address, spender.address, DAY, 0) == 50


class TestExpiry:
    def test_pull_at_expiry_is_allowed(self, funded, clock, owner, spender, recipient):
        expiry = START + 2 * DAY
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, expiry)
        clock.now = expiry
        assert _pull(funded, spender, owner, recipient, 100, expiry=expiry)

    def test_pull_after_expiry_fails(self, funded, clock, owner, spender, recipient):
        expiry = START + 2 * DAY
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, expiry)
        clock.now = expiry + 1

        assert funded.allowance_for_subscription(owner.address, spender.address, DAY, expiry) == 0
        with pytest.raises(InsufficientAllowanceError):
            _pull(funded, spender, owner, recipient, 1, expiry=expiry)

    def test_distinct_expiries_are_separate_agreements(
        self, funded, owner, spender, recipient
    ):
        short = START + DAY
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)
        funded.approve_for_subscription(owner.address, spender.address, 10, DAY, short)

        _pull(funded, spender, owner, recipient, 100)

        assert funded.allowance_for_subscription(owner.address, spender.address, DAY, short) == 10
        assert _pull(funded, spender, owner, recipient, 10, expiry=short)

    def test_distinct_intervals_are_separate_agreements(
        self, funded, owner, spender, recipient
    ):
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)
        funded.approve_for_subscription(owner.address, spender.address, 500, 7 * DAY, 0)
        _pull(funded, spender, owner, recipient, 100)

        assert funded.allowance_for_subscription(owner.address, spender.address, 7 * DAY, 0) == 500


class TestFailureRollsBack:
    def test_insufficient_balance(self, token, owner, spender, recipient):
        token.mint(owner.address, 10)
        token.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)

        with pytest.raises(InsufficientBalanceError):
            _pull(token, spender, owner, recipient, 50)

        assert token.allowance_for_subscription(owner.address, spender.address, DAY, 0) == 100
        assert token.balance_of(owner.address) == 10

    def test_rejected_transfer_undoes_commit(self, funded, owner, spender, recipient):
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)
        funded.balances.add_transfer_hook(lambda sender, to, amount: False)

        with pytest.raises(TransferFailedError):
            _pull(funded, spender, owner, recipient, 40)

        assert funded.allowance_for_subscription(owner.address, spender.address, DAY, 0) == 100
        assert funded.balance_of(owner.address) == 10_000
        assert funded.balance_of(recipient.address) == 0

    def test_hook_exception_propagates_and_rolls_back(
        self, funded, owner, spender, recipient
    ):
        def explode(sender, to, amount):
            raise RuntimeError("recipient refused")

        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)
        funded.balances.add_transfer_hook(explode)

        with pytest.raises(RuntimeError):
            _pull(funded, spender, owner, recipient, 40)
        assert funded.allowance_for_subscription(owner.address, spender.address, DAY, 0) == 100

    def test_invalid_amount_is_value_error(self, funded, owner, spender, recipient):
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)
        with pytest.raises(ValueError):
            _pull(funded, spender, owner, recipient, -1)


class TestReentrancy:
    def test_nested_spend_sees_outer_commit(self, funded, owner, spender, recipient):
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)
        outcomes = []

        def pull_again(sender, to, amount):
            if outcomes:
                return None
            outcomes.append("entered")
            outcomes.append(_pull(funded, spender, owner, recipient, 40))
            try:
                _pull(funded, spender, owner, recipient, 50)
            except InsufficientAllowanceError as e:
                outcomes.append(e.available)
            return None

        funded.balances.add_transfer_hook(pull_again)
        assert _pull(funded, spender, owner, recipient, 50)

        assert outcomes == ["entered", True, 10]
        assert funded.allowance_for_subscription(owner.address, spender.address, DAY, 0) == 10
        assert funded.balance_of(recipient.address) == 90


class TestConcurrency:
    def test_parallel_pulls_never_exceed_quota(self, funded, owner, spender, recipient):
        funded.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)

        def attempt(_):
            try:
                return _pull(funded, spender, owner, recipient, 10)
            except SubpermitError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(50)))

        assert results.count(True) == 10
        assert funded.balance_of(recipient.address) == 100
        assert funded.allowance_for_subscription(owner.address, spender.address, DAY, 0) == 0
