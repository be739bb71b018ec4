"""
Warden CLI — smart account administration on a local chain.

Commands:
    warden account address|create|show    Predict, deploy, inspect accounts
    warden session register|revoke|status Manage session keys
    warden owner propose|accept|set-relayer
    warden request sign|submit            Sign a request; relay it locally
    warden signature check                ERC-1271 style signature query
    warden audit                          View audit trail
"""

from __future__ import annotations

import json
import subprocess
import sys
import time
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .account import ACCOUNT_VARIANTS, ERC1271_MAGIC_VALUE, SmartAccount
from .audit import AuditTrail, EventType
from .config import WardenConfig
from .encoding import hex_to_bytes, normalize_address
from .errors import WardenError
from .factory import AccountFactory
from .relayer import LocalRelayer
from .request import Call, Request, sign_request
from .signatures import SignatureMode
from .store import ChainStore


# ── Helpers ───────────────────────────────────────────────────────


def _config() -> WardenConfig:
    return WardenConfig.from_env()


def _store(config: WardenConfig) -> ChainStore:
    return ChainStore(config.state_path)


def _audit(config: WardenConfig) -> AuditTrail:
    return AuditTrail(config.audit_path, config.audit_key_path, hmac_key=config.audit_hmac_key)


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _refuse_key_from_argv(param_name: str, unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source(param_name) == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        flag = "--" + param_name.replace("_", "-")
        _fail(
            f"Refusing {flag} from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk."
        )


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


def _key_address(key_input: str) -> str:
    return normalize_address(Account.from_key(_resolve_private_key(key_input)).address)


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    if raw == "0":
        return 0
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 90m, 72h, 30d)")
    return int(raw[:-1]) * units[raw[-1]]


def _parse_addresses(raw: str) -> list[str]:
    if not raw.strip():
        return []
    return [normalize_address(item.strip()) for item in raw.split(",") if item.strip()]


def _smart_account(chain, address: str) -> SmartAccount:
    account = chain.get_contract(address)
    if not isinstance(account, SmartAccount):
        raise WardenError(f"{address} does not support session keys")
    return account


def _fmt_time(ts: int) -> str:
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ts))


def _relayer(chain, config: WardenConfig) -> LocalRelayer:
    """The CLI relays as the configured relayer address, deploying it on first use."""
    if chain.has_code(config.relayer_address):
        contract = chain.get_contract(config.relayer_address)
        if not isinstance(contract, LocalRelayer):
            raise WardenError(f"{config.relayer_address} is not a relayer")
        return contract
    return LocalRelayer(chain, config.relayer_address)


def _audit_denied(audit: AuditTrail, operation: str, account_address: str, error: Exception, **details) -> None:
    try:
        account = normalize_address(account_address)
    except ValueError:
        account = None
        details["account_input"] = account_address
    audit.log(
        EventType.OPERATION_DENIED,
        account=account,
        success=False,
        reason=str(error),
        details={"operation": operation, **details},
    )


def _key_options(param: str, help_text: str):
    def decorator(f):
        f = click.option(
            "--unsafe-allow-key-arg",
            is_flag=True,
            default=False,
            help=f"Allow passing --{param.replace('_', '-')} via argv (unsafe; can leak in shell/process history).",
        )(f)
        f = click.option(
            f"--{param.replace('_', '-')}", param, prompt=True, hide_input=True, help=help_text,
        )(f)
        return f
    return decorator


# ── CLI ───────────────────────────────────────────────────────────


@click.group()
@click.version_option(version="0.1.0")
def main():
    """Warden — self-custodial smart accounts with session keys."""
    pass


@main.group("account")
def account_group():
    """Account creation and inspection."""
    pass


@account_group.command("address")
@click.argument("admin")
@click.argument("nonce", type=int)
@click.option("--variant", type=click.Choice(sorted(ACCOUNT_VARIANTS)), default=SmartAccount.VARIANT)
def account_address(admin: str, nonce: int, variant: str):
    """Predict the account address for ADMIN and NONCE."""
    config = _config()
    try:
        chain = _store(config).load(config.chain_id)
        factory = AccountFactory(chain, config.relayer_address, ACCOUNT_VARIANTS[variant])
        address = factory.get_address(admin, nonce)
    except (WardenError, ValueError) as e:
        _fail(str(e))
    deployed = "deployed" if chain.has_code(address) else "not deployed"
    click.echo(f"{address} ({deployed})")


@account_group.command("create")
@click.argument("admin")
@click.argument("nonce", type=int)
@click.option("--variant", type=click.Choice(sorted(ACCOUNT_VARIANTS)), default=SmartAccount.VARIANT)
def account_create(admin: str, nonce: int, variant: str):
    """Deploy the account for ADMIN and NONCE (no-op if it exists)."""
    config = _config()
    audit = _audit(config)
    try:
        with _store(config).transaction(config.chain_id) as chain:
            factory = AccountFactory(chain, config.relayer_address, ACCOUNT_VARIANTS[variant])
            existed = chain.has_code(factory.get_address(admin, nonce))
            address = factory.create_account(admin, nonce)
    except (WardenError, ValueError) as e:
        _fail(f"Failed to create account: {e}")

    if existed:
        click.echo(f"ℹ️  Account already deployed: {address}")
        return
    audit.log(
        EventType.ACCOUNT_CREATED,
        account=address,
        actor=normalize_address(admin),
        details={"nonce": nonce, "variant": variant, "relayer": config.relayer_address},
    )
    click.echo(f"✅ Account created: {address}")
    click.echo(f"   Owner:   {normalize_address(admin)}")
    click.echo(f"   Relayer: {config.relayer_address}")
    click.echo(f"   Variant: {variant}")


@account_group.command("show")
@click.argument("address")
def account_show(address: str):
    """Show owner, relayer and session keys of an account."""
    config = _config()
    try:
        chain = _store(config).load(config.chain_id)
        account = chain.get_contract(address)
    except (WardenError, ValueError) as e:
        _fail(str(e))

    click.echo(f"Account:  {account.address}")
    click.echo(f"Variant:  {account.VARIANT}")
    click.echo(f"Owner:    {account.owner}")
    if account.ownership.has_pending_transfer:
        click.echo(f"Pending:  {account.pending_owner}")
    click.echo(f"Relayer:  {account.trusted_relayer}")
    if isinstance(account, SmartAccount):
        keys = account.session_keys.list_keys()
        click.echo(f"Session keys: {len(keys)}")
        for key, policy in sorted(keys.items()):
            uses = "master" if policy.is_master else f"{policy.limit} uses"
            state = "active" if account.session_keys.is_active(key, chain.timestamp) else "inactive"
            click.echo(f"  {key}  {uses}  until {_fmt_time(policy.valid_until)}  [{state}]")


@main.group("session")
def session_group():
    """Session key lifecycle."""
    pass


@session_group.command("register")
@click.argument("account_address")
@click.argument("key")
@click.option("--valid-for", default="24h", help="Window length from the start (e.g. 90m, 72h, 30d)")
@click.option("--starts-in", default="0", help="Delay before the window opens (e.g. 10m)")
@click.option("--limit", type=int, default=None, help="Call budget; omit for a master key")
@click.option("--whitelist", default="", help="Comma-separated allowed targets (max 10)")
@click.option(
    "--whitelist-mode",
    type=click.Choice(["auto", "enforce", "off"]),
    default="auto",
    help="auto: enforce iff --whitelist is given; enforce: always (empty allows nothing); off: never",
)
@_key_options("caller_key", "Owner or master session key (hex or op:// reference)")
def session_register(
    account_address: str,
    key: str,
    valid_for: str,
    starts_in: str,
    limit: Optional[int],
    whitelist: str,
    whitelist_mode: str,
    caller_key: str,
    unsafe_allow_key_arg: bool,
):
    """Register session KEY on ACCOUNT_ADDRESS."""
    _refuse_key_from_argv("caller_key", unsafe_allow_key_arg)
    config = _config()
    audit = _audit(config)
    try:
        caller = _key_address(caller_key)
        targets = _parse_addresses(whitelist)
        enforce = {"auto": None, "enforce": True, "off": False}[whitelist_mode]
        with _store(config).transaction(config.chain_id) as chain:
            account = _smart_account(chain, account_address)
            valid_after = chain.timestamp + _parse_duration_to_seconds(starts_in)
            valid_until = valid_after + _parse_duration_to_seconds(valid_for)
            policy = account.register_session_key(
                caller,
                key,
                valid_after,
                valid_until,
                limit=limit,
                whitelist=targets if (whitelist.strip() or whitelist_mode == "enforce") else None,
                enforce_whitelist=enforce,
            )
    except (WardenError, ValueError, RuntimeError) as e:
        _audit_denied(audit, "session_register", account_address, e, key=key)
        _fail(f"Failed to register session key: {e}")

    audit.log(
        EventType.SESSION_KEY_REGISTERED,
        account=normalize_address(account_address),
        actor=caller,
        subject=normalize_address(key),
        details=policy.to_dict(),
    )
    click.echo(f"✅ Session key registered: {normalize_address(key)}")
    click.echo(f"   Window:    {_fmt_time(policy.valid_after)} → {_fmt_time(policy.valid_until)}")
    click.echo(f"   Budget:    {'master (unlimited)' if policy.is_master else policy.limit}")
    if policy.enforce_whitelist:
        click.echo(f"   Whitelist: {', '.join(policy.whitelist) or '(allows nothing)'}")


@session_group.command("revoke")
@click.argument("account_address")
@click.argument("key")
@_key_options("caller_key", "Owner, master session key, or the key itself")
def session_revoke(account_address: str, key: str, caller_key: str, unsafe_allow_key_arg: bool):
    """Revoke session KEY on ACCOUNT_ADDRESS."""
    _refuse_key_from_argv("caller_key", unsafe_allow_key_arg)
    config = _config()
    audit = _audit(config)
    try:
        caller = _key_address(caller_key)
        with _store(config).transaction(config.chain_id) as chain:
            _smart_account(chain, account_address).revoke_session_key(caller, key)
    except (WardenError, ValueError, RuntimeError) as e:
        _audit_denied(audit, "session_revoke", account_address, e, key=key)
        _fail(f"Failed to revoke session key: {e}")

    audit.log(
        EventType.SESSION_KEY_REVOKED,
        account=normalize_address(account_address),
        actor=caller,
        subject=normalize_address(key),
    )
    click.echo(f"✅ Session key revoked: {normalize_address(key)}")


@session_group.command("status")
@click.argument("account_address")
@click.argument("key")
def session_status(account_address: str, key: str):
    """Show the policy of session KEY."""
    config = _config()
    try:
        chain = _store(config).load(config.chain_id)
        registry = _smart_account(chain, account_address).session_keys
        policy = registry.get_policy(key)
    except (WardenError, ValueError) as e:
        _fail(str(e))
    if policy is None:
        _fail(f"Session key not registered: {key}")

    click.echo(json.dumps(
        {
            "key": normalize_address(key),
            "active": registry.is_active(key, chain.timestamp),
            "master": policy.is_master,
            **policy.to_dict(),
        },
        indent=2,
    ))


@main.group("owner")
def owner_group():
    """Two-phase ownership transfer."""
    pass


@owner_group.command("propose")
@click.argument("account_address")
@click.argument("new_owner")
@_key_options("caller_key", "Current owner key")
def owner_propose(account_address: str, new_owner: str, caller_key: str, unsafe_allow_key_arg: bool):
    """Propose NEW_OWNER for ACCOUNT_ADDRESS."""
    _refuse_key_from_argv("caller_key", unsafe_allow_key_arg)
    config = _config()
    audit = _audit(config)
    try:
        caller = _key_address(caller_key)
        with _store(config).transaction(config.chain_id) as chain:
            chain.get_contract(account_address).propose_transfer(caller, new_owner)
    except (WardenError, ValueError, RuntimeError) as e:
        _audit_denied(audit, "owner_propose", account_address, e, new_owner=new_owner)
        _fail(f"Failed to propose transfer: {e}")

    audit.log(
        EventType.OWNERSHIP_PROPOSED,
        account=normalize_address(account_address),
        actor=caller,
        subject=normalize_address(new_owner),
    )
    click.echo(f"✅ Transfer proposed to {normalize_address(new_owner)}; current owner keeps control until accepted")


@owner_group.command("accept")
@click.argument("account_address")
@_key_options("caller_key", "Pending owner key")
def owner_accept(account_address: str, caller_key: str, unsafe_allow_key_arg: bool):
    """Accept ownership of ACCOUNT_ADDRESS."""
    _refuse_key_from_argv("caller_key", unsafe_allow_key_arg)
    config = _config()
    audit = _audit(config)
    try:
        caller = _key_address(caller_key)
        with _store(config).transaction(config.chain_id) as chain:
            chain.get_contract(account_address).accept_ownership(caller)
    except (WardenError, ValueError, RuntimeError) as e:
        _audit_denied(audit, "owner_accept", account_address, e)
        _fail(f"Failed to accept ownership: {e}")

    audit.log(EventType.OWNERSHIP_ACCEPTED, account=normalize_address(account_address), actor=caller)
    click.echo(f"✅ {caller} now owns {normalize_address(account_address)}")


@owner_group.command("set-relayer")
@click.argument("account_address")
@click.argument("relayer")
@_key_options("caller_key", "Owner key")
def owner_set_relayer(account_address: str, relayer: str, caller_key: str, unsafe_allow_key_arg: bool):
    """Point ACCOUNT_ADDRESS at a new trusted RELAYER."""
    _refuse_key_from_argv("caller_key", unsafe_allow_key_arg)
    config = _config()
    audit = _audit(config)
    try:
        caller = _key_address(caller_key)
        with _store(config).transaction(config.chain_id) as chain:
            chain.get_contract(account_address).update_trusted_relayer(caller, relayer)
    except (WardenError, ValueError, RuntimeError) as e:
        _audit_denied(audit, "owner_set_relayer", account_address, e, relayer=relayer)
        _fail(f"Failed to update relayer: {e}")

    audit.log(
        EventType.RELAYER_UPDATED,
        account=normalize_address(account_address),
        actor=caller,
        subject=normalize_address(relayer),
    )
    click.echo(f"✅ Trusted relayer set to {normalize_address(relayer)}")


@main.group("request")
def request_group():
    """Signed requests."""
    pass


@request_group.command("sign")
@click.argument("account_address")
@click.option("--target", "targets", multiple=True, required=True, help="Call target (repeat for a batch)")
@click.option("--value", "values", multiple=True, type=int, help="Call value per target (default 0)")
@click.option("--data", "data_items", multiple=True, help="Hex calldata per target (default empty)")
@click.option("--nonce", type=int, default=None, help="Relayer nonce (default: next nonce known to the local relayer)")
@click.option("--batch", is_flag=True, help="Encode as a batch even with one target")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in SignatureMode]),
    default=SignatureMode.TYPED_DATA.value,
    help="Signature encoding",
)
@_key_options("signer_key", "Owner or session key")
def request_sign(
    account_address: str,
    targets: tuple[str, ...],
    values: tuple[int, ...],
    data_items: tuple[str, ...],
    nonce: Optional[int],
    batch: bool,
    mode: str,
    signer_key: str,
    unsafe_allow_key_arg: bool,
):
    """Build and sign a request for ACCOUNT_ADDRESS; prints JSON."""
    _refuse_key_from_argv("signer_key", unsafe_allow_key_arg)
    config = _config()
    audit = _audit(config)
    try:
        if values and len(values) != len(targets):
            raise ValueError("--value must be given once per --target")
        if data_items and len(data_items) != len(targets):
            raise ValueError("--data must be given once per --target")
        if nonce is None:
            chain = _store(config).load(config.chain_id)
            nonce = _relayer(chain, config).get_nonce(account_address)
        calls = [
            Call(
                target,
                values[i] if values else 0,
                hex_to_bytes(data_items[i]) if data_items else b"",
            )
            for i, target in enumerate(targets)
        ]
        if batch or len(calls) > 1:
            request = Request.batch(account_address, nonce, calls)
        else:
            request = Request(sender=account_address, nonce=nonce, calls=tuple(calls))
        private_key = _resolve_private_key(signer_key)
        signed = sign_request(request, private_key, config.chain_id, SignatureMode(mode))
    except (WardenError, ValueError, RuntimeError) as e:
        _fail(f"Failed to sign request: {e}")

    audit.log(
        EventType.REQUEST_SIGNED,
        account=signed.sender,
        actor=normalize_address(Account.from_key(private_key).address),
        details={"request_hash": "0x" + signed.request_hash().hex(), "mode": mode},
    )
    click.echo(json.dumps(signed.to_dict(), indent=2))


@request_group.command("submit")
@click.argument("request_file", type=click.File("r"), default="-")
def request_submit(request_file):
    """Relay a signed request (JSON from `request sign`) through the local relayer.

    The CLI acts as WARDEN_RELAYER_ADDRESS, the relayer every account it
    creates trusts. Reads stdin when REQUEST_FILE is omitted.
    """
    config = _config()
    audit = _audit(config)
    sender = None
    try:
        payload = json.load(request_file)
        if not isinstance(payload, dict):
            raise ValueError("Request JSON must be an object")
        sender = payload.get("sender")
        request = Request.from_dict(payload)
        with _store(config).transaction(config.chain_id) as chain:
            receipt = _relayer(chain, config).handle(request)
    except (WardenError, ValueError, KeyError) as e:
        if sender:
            _audit_denied(audit, "request_submit", sender, e)
        _fail(f"Failed to submit request: {e}")

    audit.log(
        EventType.REQUEST_SUBMITTED,
        account=receipt.sender,
        actor=config.relayer_address,
        success=receipt.success,
        reason=receipt.reason,
        details={"request_hash": receipt.request_hash, "nonce": receipt.nonce},
    )
    click.echo(json.dumps(receipt.to_dict(), indent=2))
    if not receipt.success:
        sys.exit(1)


@main.group("signature")
def signature_group():
    """Signature queries."""
    pass


@signature_group.command("check")
@click.argument("account_address")
@click.argument("request_hash")
@click.argument("signature")
def signature_check(account_address: str, request_hash: str, signature: str):
    """Ask ACCOUNT_ADDRESS whether SIGNATURE over REQUEST_HASH is valid."""
    config = _config()
    audit = _audit(config)
    try:
        chain = _store(config).load(config.chain_id)
        result = chain.get_contract(account_address).is_valid_signature(request_hash, signature)
    except (WardenError, ValueError) as e:
        _fail(str(e))

    valid = result == ERC1271_MAGIC_VALUE
    audit.log(
        EventType.SIGNATURE_CHECKED,
        account=normalize_address(account_address),
        success=valid,
        details={"request_hash": request_hash},
    )
    click.echo("0x" + result.hex())
    if not valid:
        sys.exit(1)


@main.command()
@click.option("--account", "account_address", default=None, help="Filter by account address")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(account_address: Optional[str], limit: int):
    """View the audit trail."""
    trail = _audit(_config())
    try:
        events = trail.read_events(
            account=normalize_address(account_address) if account_address else None,
            limit=limit,
        )
    except (RuntimeError, ValueError) as e:
        _fail(str(e))
    if not events:
        click.echo("No audit events.")
        return
    for event in events:
        mark = "✅" if event.success else "❌"
        when = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(event.timestamp))
        click.echo(f"{mark} {when}  {event.event_type:<24} {event.account or '-'}  {event.subject or ''}")


if __name__ == "__main__":
    main()
