"""
Subpermit CLI: recurring allowances against a local token ledger.

Commands:
    subpermit domain      Show the EIP-712 signing domain
    subpermit mint        Credit tokens to an account
    subpermit balance     Show an account balance
    subpermit approve     Set a subscription allowance (owner)
    subpermit increase    Raise a subscription allowance (owner)
    subpermit decrease    Lower a subscription allowance (owner)
    subpermit allowance   Show remaining quota for the current period
    subpermit permit      Sign or submit an off-band permit
    subpermit nonce       Show an owner's permit nonce
    subpermit spend       Pull funds under a subscription (spender)
    subpermit prune       Drop spend records of past periods
    subpermit audit       View audit trail
"""

from __future__ import annotations

import json
import logging
import subprocess
import sys
import time
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .agreement import NEVER_EXPIRES
from .audit import AuditTrail, EventType
from .config import SubpermitConfig
from .errors import SubpermitError
from .permit import PermitMessage, sign_permit
from .token import SubscriptionToken


def _config() -> SubpermitConfig:
    return SubpermitConfig.from_env()


def _token() -> SubscriptionToken:
    return SubscriptionToken.from_config(_config())


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    if raw in {"never", "none", "0"}:
        return 0
    if raw.isdigit():
        return int(raw)
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 3600, 72h, 30d, never)")
    return int(raw[:-1]) * units[raw[-1]]


def _parse_interval(value: str) -> int:
    seconds = _parse_duration_to_seconds(value)
    if seconds <= 0:
        raise ValueError(f"Interval must be a positive duration: {value}")
    return seconds


def _resolve_expiry(expiry: int, expires_in: Optional[str]) -> int:
    if expires_in is None:
        return expiry
    delta = _parse_duration_to_seconds(expires_in)
    return int(time.time()) + delta if delta > 0 else NEVER_EXPIRES


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _refuse_key_from_argv(param: str, flag: str, unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source(param) == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            f"❌ Refusing {flag} from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


def _caller_from_key(key_input: str) -> str:
    try:
        return Account.from_key(_resolve_private_key(key_input)).address
    except Exception as exc:
        click.echo(f"❌ Failed to load key: {exc}", err=True)
        sys.exit(1)


def _fail(action: str, exc: Exception) -> None:
    click.echo(f"❌ {action}: {exc}", err=True)
    sys.exit(1)


def _expiry_label(expiry: int) -> str:
    if expiry == NEVER_EXPIRES:
        return "Never"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(expiry))


def _owner_key_option(f):
    f = click.option(
        "--unsafe-allow-key-arg",
        is_flag=True,
        default=False,
        help="Allow passing --owner-key via argv (unsafe; can leak in shell/process history).",
    )(f)
    return click.option(
        "--owner-key", prompt=True, hide_input=True,
        help="Owner private key hex or op:// reference",
    )(f)


def _agreement_options(f):
    f = click.option("--expiry", type=int, default=NEVER_EXPIRES,
                     help="Agreement expiry (UNIX seconds, 0 = never)")(f)
    f = click.option("--interval", required=True,
                     help="Recurrence interval (e.g. 86400, 1d, 12h)")(f)
    return click.option("--spender", required=True, help="Spender address")(f)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable info logging")
def main(verbose: bool):
    """Subpermit: recurring spending allowances with EIP-712 permits."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


@main.command()
def domain():
    """Show the EIP-712 signing domain permits must be signed under."""
    config = _config()
    token = _token()
    click.echo(f"Name:               {config.domain_name}")
    click.echo(f"Version:            {config.domain_version}")
    click.echo(f"Chain ID:           {config.chain_id}")
    click.echo(f"Verifying contract: {config.verifying_contract}")
    click.echo(f"Domain separator:   {token.signing_domain_id()}")


@main.command()
@click.option("--to", "account", required=True, help="Account to credit")
@click.option("--amount", type=int, required=True, help="Amount in base units")
def mint(account: str, amount: int):
    """Credit tokens to an account on the local ledger."""
    try:
        balance = _token().mint(account, amount)
    except (SubpermitError, ValueError) as e:
        _fail("Mint failed", e)
    click.echo(f"✅ Minted {amount} to {account.lower()} (balance {balance})")


@main.command()
@click.argument("account")
def balance(account: str):
    """Show an account balance."""
    try:
        amount = _token().balance_of(account)
    except ValueError as e:
        _fail("Balance lookup failed", e)
    click.echo(str(amount))


@main.command()
@_owner_key_option
@_agreement_options
@click.option("--amount", type=int, required=True, help="Allowance per period (base units)")
@click.option("--expires-in", default=None, help="Set expiry relative to now (e.g. 30d, never)")
def approve(
    owner_key: str,
    unsafe_allow_key_arg: bool,
    spender: str,
    interval: str,
    expiry: int,
    amount: int,
    expires_in: Optional[str],
):
    """Set (overwrite) a subscription allowance."""
    _refuse_key_from_argv("owner_key", "--owner-key", unsafe_allow_key_arg)
    owner = _caller_from_key(owner_key)
    try:
        interval_seconds = _parse_interval(interval)
        expiry = _resolve_expiry(expiry, expires_in)
        _token().approve_for_subscription(owner, spender, amount, interval_seconds, expiry)
    except (SubpermitError, ValueError) as e:
        _fail("Approve failed", e)
    click.echo(f"✅ Allowance set: {amount} every {interval_seconds}s")
    click.echo(f"   Owner:   {owner.lower()}")
    click.echo(f"   Spender: {spender.lower()}")
    click.echo(f"   Expiry:  {expiry} ({_expiry_label(expiry)})")


@main.command()
@_owner_key_option
@_agreement_options
@click.option("--delta", type=int, required=True, help="Amount to add")
def increase(owner_key: str, unsafe_allow_key_arg: bool, spender: str, interval: str,
             expiry: int, delta: int):
    """Raise a subscription allowance."""
    _refuse_key_from_argv("owner_key", "--owner-key", unsafe_allow_key_arg)
    owner = _caller_from_key(owner_key)
    try:
        token = _token()
        interval_seconds = _parse_interval(interval)
        token.increase_allowance_for_subscription(owner, spender, delta, interval_seconds, expiry)
        updated = token.allowances.read(owner, spender, interval_seconds, expiry)
    except (SubpermitError, ValueError) as e:
        _fail("Increase failed", e)
    click.echo(f"✅ Allowance increased to {updated}")


@main.command()
@_owner_key_option
@_agreement_options
@click.option("--delta", type=int, required=True, help="Amount to subtract")
def decrease(owner_key: str, unsafe_allow_key_arg: bool, spender: str, interval: str,
             expiry: int, delta: int):
    """Lower a subscription allowance."""
    _refuse_key_from_argv("owner_key", "--owner-key", unsafe_allow_key_arg)
    owner = _caller_from_key(owner_key)
    try:
        token = _token()
        interval_seconds = _parse_interval(interval)
        token.decrease_allowance_for_subscription(owner, spender, delta, interval_seconds, expiry)
        updated = token.allowances.read(owner, spender, interval_seconds, expiry)
    except (SubpermitError, ValueError) as e:
        _fail("Decrease failed", e)
    click.echo(f"✅ Allowance decreased to {updated}")


@main.command()
@click.option("--owner", required=True, help="Owner address")
@_agreement_options
def allowance(owner: str, spender: str, interval: str, expiry: int):
    """Show the quota remaining in the current period."""
    try:
        remaining = _token().allowance_for_subscription(
            owner, spender, _parse_interval(interval), expiry
        )
    except ValueError as e:
        _fail("Allowance lookup failed", e)
    click.echo(str(remaining))


@main.command()
@click.argument("owner")
def nonce(owner: str):
    """Show the next permit nonce for an owner."""
    try:
        current = _token().current_nonce(owner)
    except ValueError as e:
        _fail("Nonce lookup failed", e)
    click.echo(str(current))


@main.group("permit")
def permit_group():
    """Off-band permit signing and submission."""
    pass


@permit_group.command("sign")
@_owner_key_option
@_agreement_options
@click.option("--amount", type=int, required=True, help="Allowance per period (base units)")
@click.option("--expires-in", default=None, help="Set expiry relative to now (e.g. 30d, never)")
@click.option("--deadline-in", default="1h", help="Permit validity window (default: 1h)")
def permit_sign(
    owner_key: str,
    unsafe_allow_key_arg: bool,
    spender: str,
    interval: str,
    expiry: int,
    amount: int,
    expires_in: Optional[str],
    deadline_in: str,
):
    """Sign a permit with the owner's current nonce and print it as JSON."""
    _refuse_key_from_argv("owner_key", "--owner-key", unsafe_allow_key_arg)
    try:
        private_key = _resolve_private_key(owner_key)
        owner = Account.from_key(private_key).address
        token = _token()
        permit = PermitMessage(
            owner=owner.lower(),
            spender=spender.lower(),
            value=amount,
            interval=_parse_interval(interval),
            expiry=_resolve_expiry(expiry, expires_in),
            nonce=token.current_nonce(owner),
            deadline=int(time.time()) + _parse_duration_to_seconds(deadline_in),
        )
        signature = sign_permit(private_key, token.domain, permit)
    except Exception as e:
        _fail("Failed to sign permit", e)
    click.echo(json.dumps(
        {
            "owner": permit.owner,
            "spender": permit.spender,
            "value": str(permit.value),
            "interval": permit.interval,
            "expiry": permit.expiry,
            "nonce": permit.nonce,
            "deadline": permit.deadline,
            "signature": signature,
        },
        indent=2,
    ))


@permit_group.command("submit")
@click.argument("permit_file", type=click.File("r"))
def permit_submit(permit_file):
    """Submit a signed permit (JSON from `permit sign`, or - for stdin)."""
    try:
        data = json.load(permit_file)
        _token().permit_for_subscription(
            owner=data["owner"],
            spender=data["spender"],
            value=int(data["value"]),
            interval=int(data["interval"]),
            expiry=int(data["expiry"]),
            deadline=int(data["deadline"]),
            signature=data["signature"],
        )
    except (SubpermitError, ValueError, KeyError) as e:
        _fail("Permit rejected", e)
    click.echo(f"✅ Permit accepted for {data['owner']} → {data['spender']}")


@main.command()
@click.option("--spender-key", prompt=True, hide_input=True,
              help="Spender private key hex or op:// reference")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --spender-key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--owner", required=True, help="Owner address to pull from")
@click.option("--to", "recipient", default=None, help="Recipient (default: spender)")
@click.option("--amount", type=int, required=True, help="Amount in base units")
@click.option("--interval", required=True, help="Recurrence interval (e.g. 86400, 1d)")
@click.option("--expiry", type=int, default=NEVER_EXPIRES, help="Agreement expiry (0 = never)")
def spend(
    spender_key: str,
    unsafe_allow_key_arg: bool,
    owner: str,
    recipient: Optional[str],
    amount: int,
    interval: str,
    expiry: int,
):
    """Pull funds from an owner under a subscription allowance."""
    _refuse_key_from_argv("spender_key", "--spender-key", unsafe_allow_key_arg)
    caller = _caller_from_key(spender_key)
    try:
        token = _token()
        interval_seconds = _parse_interval(interval)
        token.transfer_from_for_subscription(
            caller, owner, recipient or caller, amount, interval_seconds, expiry
        )
        remaining = token.allowance_for_subscription(owner, caller, interval_seconds, expiry)
    except (SubpermitError, ValueError) as e:
        _fail("Spend failed", e)
    click.echo(f"✅ Pulled {amount} from {owner.lower()}")
    click.echo(f"   Remaining this period: {remaining}")


@main.command()
def prune():
    """Delete spend records of periods that have already ended."""
    removed = _token().prune_spend_records()
    click.echo(f"Pruned {removed} record(s)")


@main.command()
@click.option("--owner", default=None, help="Filter by owner address")
@click.option("--spender", default=None, help="Filter by spender address")
@click.option("--type", "event_type", default=None,
              type=click.Choice([e.value for e in EventType]),
              help="Filter by event type")
@click.option("--limit", default=20, help="Number of events")
def audit(owner: Optional[str], spender: Optional[str], event_type: Optional[str], limit: int):
    """View the audit trail."""
    config = _config()
    trail = AuditTrail(config.audit_path, config.audit_key_path)
    try:
        events = trail.read_events(
            owner=owner,
            spender=spender,
            event_type=EventType(event_type) if event_type else None,
            limit=limit,
        )
    except RuntimeError as e:
        _fail("Audit trail unreadable", e)
    if not events:
        click.echo("No events found")
        return
    for event in events:
        click.echo(event.to_json())


if __name__ == "__main__":
    main()
