# proofledger/cli/main.py
"""
CLI for reconciling reserve attestations and computing SPV payouts.
"""

import asyncio
import json
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from proofledger.chain.attestations import resolve_attestations
from proofledger.chain.bridge import bridge_fetchers, resolve_bridge
from proofledger.core.canon import canonical_json_str, serialize_attestation_message
from proofledger.core.cid import cid_sha256_hex, normalize_cid
from proofledger.core.config import load_settings
from proofledger.core.encoding import b64_encode, decode_signature
from proofledger.core.errors import ProofLedgerError, ValidationError
from proofledger.core.schema import ReserveMetadata
from proofledger.core.types import AttestationStatus, SettlementAsset, SpvHolder
from proofledger.crypto.keys import SignerKeyPair
from proofledger.fetch.gateway import MetadataFetcher, ProbingMetadataFetcher, resolve_gateways
from proofledger.spv.distribute import (
    available_native_balance,
    calculate_distribution,
    format_payment_amount,
    fund_distribution,
    native_balance,
)
from proofledger.spv.income import summarize_income
from proofledger.spv.reserve import build_reserve_payload, reserve_anchor, resolve_reserve_proofs
from proofledger.verify.verifier import build_message_candidates, match_candidates, verify_memo_hash

app = typer.Typer(
    name="proofledger",
    help="Reconcile on-ledger reserve attestations with their off-chain evidence",
    add_completion=False,
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

STATUS_STYLE = {
    AttestationStatus.VERIFIED: "green",
    AttestationStatus.RECORDED: "yellow",
    AttestationStatus.INVALID: "red",
    AttestationStatus.PENDING: "cyan",
}


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _load_json(path: Path) -> Any:
    if not path.exists():
        console.print(f"[red]File not found: {path}[/]")
        raise typer.Exit(1)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        console.print(f"[red]Failed to read {path}: {str(e)}[/]")
        raise typer.Exit(1)


def load_records(path: Path) -> List[Any]:
    """Horizon records from a JSON file: a bare list, a page ({"records": [...]}) or a raw response."""
    data = _load_json(path)
    if isinstance(data, dict):
        data = data.get("records") or (data.get("_embedded") or {}).get("records") or []
    if not isinstance(data, list):
        console.print(f"[red]{path} does not contain a list of records[/]")
        raise typer.Exit(1)
    return data


def load_balances(path: Path) -> List[Any]:
    """The `balances` list of a Horizon account response (or the bare list)."""
    data = _load_json(path)
    if isinstance(data, dict):
        data = data.get("balances")
    if not isinstance(data, list) or not all(isinstance(b, dict) for b in data):
        console.print(f"[red]No account balances in {path}[/]")
        raise typer.Exit(1)
    return data


def _message(week: int, reserve: str, timestamp: str, nonce: str) -> dict:
    return {"week": week, "reserveAmount": reserve, "timestamp": timestamp, "nonce": nonce}


def _print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging (also PROOFLEDGER_DEBUG=1)"),
):
    """Reserve attestation reconciliation and SPV payouts."""
    configure_logging(verbose or load_settings().debug)


@app.command()
def resolve(
    operations: Path = typer.Argument(..., help="JSON file with Horizon operations (joined with transactions)"),
    effects: Optional[Path] = typer.Option(None, "--effects", "-e", help="JSON file with account data effects"),
    gateway: Optional[str] = typer.Option(None, "--gateway", "-g", help="IPFS gateway (overrides PROOFLEDGER_IPFS_GATEWAY)"),
    strict: Optional[bool] = typer.Option(None, "--strict/--lenient", help="Join mismatches are Invalid instead of Recorded"),
    as_json: bool = typer.Option(False, "--json", help="Print attestations as JSON"),
):
    """Resolve and verify the attestations referenced by an account's payments."""
    ops = load_records(operations)
    effect_records = load_records(effects) if effects else []
    fetcher = MetadataFetcher(gateways=resolve_gateways(gateway))

    try:
        attestations = asyncio.run(resolve_attestations(ops, effect_records, fetcher=fetcher, strict=strict))
    except ProofLedgerError as e:
        console.print(f"[red]Resolution failed: {str(e)}[/]")
        raise typer.Exit(1)

    if as_json:
        _print_json([a.to_dict() for a in attestations])
        return
    if not attestations:
        console.print("[yellow]No attestations found in the supplied operations.[/]")
        return

    table = Table(title="Attestations")
    table.add_column("Week")
    table.add_column("Reserve USD")
    table.add_column("Status")
    table.add_column("Metadata CID")
    table.add_column("Tx")
    table.add_column("Reason")
    for att in attestations:
        style = STATUS_STYLE[att.status]
        table.add_row(
            str(att.week),
            str(att.reserve_usd),
            f"[{style}]{att.status.value}[/]",
            att.metadata_cid,
            att.tx_hash[:12],
            att.reason or "—",
        )
    console.print(table)


@app.command()
def reserve(
    operations: Path = typer.Argument(..., help="JSON file with the SPV account's operations"),
    gateway: Optional[str] = typer.Option(None, "--gateway", "-g", help="IPFS gateway"),
    as_json: bool = typer.Option(False, "--json", help="Print proofs as JSON"),
):
    """List weekly reserve proofs anchored with the vesto.reserve.cid data entry."""
    ops = load_records(operations)
    fetcher = ProbingMetadataFetcher(gateways=resolve_gateways(gateway), model=ReserveMetadata)
    proofs = asyncio.run(resolve_reserve_proofs(ops, fetcher=fetcher))

    if as_json:
        _print_json([p.to_dict() for p in proofs])
        return
    if not proofs:
        console.print("[yellow]No reserve proofs found.[/]")
        return

    table = Table(title="Reserve Proofs")
    table.add_column("As of")
    table.add_column("Week")
    table.add_column("Reserve USD")
    table.add_column("Status")
    table.add_column("CID")
    for proof in proofs:
        style = STATUS_STYLE[proof.status]
        table.add_row(
            proof.ts,
            str(proof.metadata.week) if proof.metadata else "—",
            str(proof.metadata.reserveUSD) if proof.metadata else "—",
            f"[{style}]{proof.status.value}[/]",
            proof.cid,
        )
    console.print(table)


@app.command()
def bridge(
    operations: Path = typer.Argument(..., help="JSON file with the bridge account's operations (joined with transactions)"),
    account: Optional[str] = typer.Option(None, "--account", envvar="PROOFLEDGER_BRIDGE_ACCOUNT", help="Bridge account"),
    gateway: Optional[str] = typer.Option(None, "--gateway", "-g", help="IPFS gateway"),
    as_json: bool = typer.Option(False, "--json", help="Print the snapshot as JSON"),
):
    """List bridge locks, mints and redeems with their proof status and totals."""
    if not account:
        console.print("[red]No bridge account: pass --account or set PROOFLEDGER_BRIDGE_ACCOUNT[/]")
        raise typer.Exit(1)
    ops = load_records(operations)
    fetchers = bridge_fetchers(gateways=resolve_gateways(gateway))
    snapshot = asyncio.run(resolve_bridge(ops, account, load_settings().susd_asset, fetchers=fetchers))

    if as_json:
        _print_json(snapshot.to_dict())
        return

    entries = snapshot.locks + snapshot.mints + snapshot.redeems
    if entries:
        table = Table(title="Bridge Operations")
        table.add_column("Kind")
        table.add_column("Created")
        table.add_column("Amount")
        table.add_column("Status")
        table.add_column("Counterparty")
        table.add_column("Tx")
        table.add_column("Reason")
        for entry in entries:
            style = STATUS_STYLE[entry.status]
            table.add_row(
                entry.kind,
                entry.created_at,
                f"{entry.amount} {entry.asset}",
                f"[{style}]{entry.status.value}[/]",
                entry.target_account or entry.recipient or "—",
                entry.id[:12],
                entry.metadata_error or "—",
            )
        console.print(table)
    else:
        console.print("[yellow]No bridge operations found.[/]")

    stats = snapshot.stats.to_dict()
    console.print(
        f"Locked: [bold]{stats['totalLockedXlm']}[/] XLM  "
        f"Minted: [bold]{stats['totalMintedSusd']}[/] SUSD  "
        f"Redeemed: [bold]{stats['totalRedeemedSusd']}[/] SUSD  "
        f"(7d: {stats['ops7d']}, 30d: {stats['ops30d']})"
    )


@app.command("reserve-payload")
def reserve_payload(
    xlm: str = typer.Option(..., "--xlm", help="SPV native balance"),
    susd: str = typer.Option("0", "--susd", help="SPV SUSD balance"),
    reserve_usd: Optional[str] = typer.Option(None, "--reserve-usd", help="Override the reserve figure"),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="ISO timestamp (default: now)"),
    week: Optional[int] = typer.Option(None, "--week", help="Override the ISO week"),
    last_tx: Optional[str] = typer.Option(None, "--last-tx", help="Last income transaction hash"),
    notes: Optional[str] = typer.Option(None, "--notes"),
    cid: Optional[str] = typer.Option(None, "--cid", help="CID of the pinned document: print its on-chain anchor"),
):
    """Build a vesto.reserve@1 document (canonical JSON) and, given its CID, the memo hash."""
    try:
        payload = build_reserve_payload(xlm, susd, reserve_usd, last_tx, as_of, notes, week)
        anchor = reserve_anchor(cid) if cid else None
    except ValidationError as e:
        console.print(f"[red]{str(e)}[/]")
        raise typer.Exit(1)

    console.print(canonical_json_str(payload), markup=False, highlight=False, soft_wrap=True)
    if anchor:
        console.print(f"[bold]manage_data[/] {anchor.manage_data_key} = {anchor.cid}")
        console.print(f"[bold]memo hash[/]   {anchor.memo_hash_hex}")


@app.command()
def distribute(
    holders_file: Path = typer.Argument(..., help='JSON list of {"account": ..., "balance": ...}'),
    income: Optional[str] = typer.Option(None, "--income", "-i", help="Revenue to split"),
    income_from: Optional[Path] = typer.Option(
        None, "--income-from", help="JSON file with the SPV account's payments; income is summed over --days",
    ),
    account: Optional[str] = typer.Option(None, "--account", envvar="PROOFLEDGER_SPV_ACCOUNT", help="SPV account receiving the income"),
    days: int = typer.Option(7, "--days", help="Income window in days: 7 or 30"),
    asset: str = typer.Option("XLM", "--asset", "-a", help="XLM or SUSD"),
    available: Optional[str] = typer.Option(None, "--available", help="Spendable balance; payouts shrink to fit"),
    balances: Optional[Path] = typer.Option(
        None, "--balances", help="Horizon account JSON; spendable XLM is its native balance less reserve and fees",
    ),
    base_fee: int = typer.Option(100, "--base-fee", help="Base fee per payout operation, in stroops"),
    as_json: bool = typer.Option(False, "--json", help="Print payouts as JSON"),
):
    """Compute proportional payouts to token holders."""
    if (income is None) == (income_from is None):
        console.print("[red]Pass exactly one of --income or --income-from[/]")
        raise typer.Exit(1)

    records = load_records(holders_file)
    try:
        holders = [SpvHolder(account=str(r["account"]), balance=Decimal(str(r["balance"]))) for r in records]
    except (KeyError, TypeError, ArithmeticError) as e:
        console.print(f"[red]Invalid holder record: {str(e)}[/]")
        raise typer.Exit(1)

    settlement = SettlementAsset.normalise(asset)
    if income_from is not None:
        if not account:
            console.print("[red]--income-from needs --account (or PROOFLEDGER_SPV_ACCOUNT)[/]")
            raise typer.Exit(1)
        window = summarize_income(load_records(income_from), account, days, load_settings().susd_asset)
        income = window.income_for(settlement)
        if income <= 0:
            console.print(f"[yellow]No {settlement.value} income in the last {window.window_days} days[/]")
            raise typer.Exit(1)

    try:
        result = calculate_distribution(holders, income, settlement)
        if available is None and balances is not None and settlement is SettlementAsset.XLM:
            balance = native_balance(load_balances(balances))
            available = available_native_balance(balance, base_fee, len(result.payouts))
            logger.debug("[proofledger:spv] native balance %s, available %s", balance, available)
        if available is not None:
            result = fund_distribution(holders, result, available, settlement)
    except ValidationError as e:
        console.print(f"[red]Distribution failed: {str(e)}[/]")
        raise typer.Exit(1)

    if as_json:
        _print_json({
            "asset": settlement.value,
            "totalPaid": format_payment_amount(result.total_paid),
            "underStroopDropped": result.under_stroop_dropped,
            "payouts": [
                {"account": p.account, "amount": format_payment_amount(p.amount), "share": str(p.share)}
                for p in result.payouts
            ],
        })
        return

    table = Table(title=f"Distribution ({settlement.value})")
    table.add_column("Account")
    table.add_column("Share")
    table.add_column("Amount")
    for payout in result.payouts:
        table.add_row(payout.account, f"{payout.share:.6f}", format_payment_amount(payout.amount))
    console.print(table)
    console.print(f"Total paid: [bold]{format_payment_amount(result.total_paid)}[/] {settlement.value}")
    if result.under_stroop_dropped:
        console.print(f"[yellow]{result.under_stroop_dropped} holder(s) below one stroop were skipped[/]")


@app.command()
def sign(
    week: int = typer.Option(..., "--week"),
    reserve_amount: str = typer.Option(..., "--reserve", help="Reserve amount (USD)"),
    timestamp: str = typer.Option(..., "--timestamp"),
    nonce: str = typer.Option(..., "--nonce", help="At least 8 characters"),
    secret: Optional[str] = typer.Option(
        None, "--secret", envvar="PROOFLEDGER_SIGNER_SECRET", show_default=False,
        help="S... seed or hex key (prefer the env var)",
    ),
):
    """Sign the canonical attestation message with a custodian key."""
    if not secret:
        console.print("[red]No signing key: pass --secret or set PROOFLEDGER_SIGNER_SECRET[/]")
        raise typer.Exit(1)
    try:
        signer = SignerKeyPair.from_secret(secret)
        serialized = serialize_attestation_message(_message(week, reserve_amount, timestamp, nonce))
        signature = signer.sign(serialized.canonical_bytes)
    except ProofLedgerError as e:
        console.print(f"[red]{str(e)}[/]")
        raise typer.Exit(1)

    _print_json({
        "publicKey": signer.address,
        "signature": signature.hex(),
        "signatureBase64": b64_encode(signature),
        "message": serialized.base64,
        "nonce": nonce,
    })


@app.command("verify-signature")
def verify_signature(
    public_key: str = typer.Option(..., "--public-key", help="G-address, hex or base64 key"),
    signature: str = typer.Option(..., "--signature", help="Hex or base64 signature"),
    week: int = typer.Option(..., "--week"),
    reserve_amount: str = typer.Option(..., "--reserve"),
    timestamp: str = typer.Option(..., "--timestamp"),
    nonce: str = typer.Option(..., "--nonce"),
    message: Optional[str] = typer.Option(None, "--message", help="Base64 message as signed by the wallet"),
):
    """Check a detached attestation signature against every accepted message encoding."""
    signature_bytes = decode_signature(signature)
    if not signature_bytes:
        console.print("[red]Signature is neither hex nor base64[/]")
        raise typer.Exit(1)

    candidates = build_message_candidates(_message(week, reserve_amount, timestamp, nonce), message)
    outcome = match_candidates(public_key, signature_bytes, candidates)
    if outcome.status is AttestationStatus.VERIFIED:
        console.print(f"[green]✓ Signature valid[/] (matched {outcome.matched})")
        return
    console.print(f"[red]✗ {outcome.reason}[/]")
    raise typer.Exit(1)


@app.command("memo-hash")
def memo_hash(
    cid: str = typer.Argument(..., help="Content identifier"),
    expected: Optional[str] = typer.Option(None, "--check", help="Hash memo (hex) to compare against"),
):
    """Print sha256(cid), the hash memo that anchors a CID on-chain."""
    try:
        canonical = normalize_cid(cid)
    except ValidationError as e:
        console.print(f"[red]{str(e)}[/]")
        raise typer.Exit(1)

    console.print(f"cid:       {cid.strip()}")
    if canonical != cid.strip():
        console.print(f"cid (v1):  {canonical}")
    console.print(f"memo hash: {cid_sha256_hex(cid)}")

    if expected is not None:
        result = verify_memo_hash(cid, expected)
        style = STATUS_STYLE[result.status]
        console.print(f"[{style}]{result.status.value}[/]" + (f" ({result.reason})" if result.reason else ""))
        if result.status is not AttestationStatus.VERIFIED:
            raise typer.Exit(1)


if __name__ == "__main__":
    app()
