# proofledger/chain/bridge.py
"""
Bridge account ingest: locks, mints and redeems between the ledger and EVM.

Each bridge transaction carries three things:

    manage_data vesto.bridge.<kind>.cid ──► proof document CID
    hash memo ──► sha256(cid)
    payment ──► what actually moved (asset, amount, counterparty)

Entries start out Recorded from the payment alone. The proof document then
fills in the bridged details and the hash memo decides the final status.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type

import httpx
from pydantic import BaseModel

from proofledger.chain.attestations import fee_in_xlm
from proofledger.chain.resolver import Record, hash_memo_hex, parse_timestamp, transaction_attr
from proofledger.core.cid import try_normalize_cid
from proofledger.core.encoding import b64_decode_strict
from proofledger.core.schema import (
    BRIDGE_AMOUNT_PLACES,
    BridgeLockMetadata,
    BridgeMintMetadata,
    BridgeRedeemMetadata,
    bridge_amount,
)
from proofledger.core.types import AttestationStatus
from proofledger.fetch.gateway import MetadataFetcher, ProbingMetadataFetcher, Sleep
from proofledger.verify.verifier import verify_detached_proof

logger = logging.getLogger(__name__)

LOCK = "lock"
MINT = "mint"
REDEEM = "redeem"
BRIDGE_KINDS = (LOCK, MINT, REDEEM)
BRIDGE_MANAGE_DATA_KEYS = {f"vesto.bridge.{kind}.cid": kind for kind in BRIDGE_KINDS}
BRIDGE_MODELS: Dict[str, Type[BaseModel]] = {
    LOCK: BridgeLockMetadata,
    MINT: BridgeMintMetadata,
    REDEEM: BridgeRedeemMetadata,
}
EVM_CHAIN = "EVM"
XLM = "XLM"
SUSD = "SUSD"


@dataclass(frozen=True)
class BridgeEntry:
    """
    One bridge operation. `chain` is the EVM side: where a lock is released
    or where a redeem is paid out.
    """
    kind: str
    id: str
    amount: Decimal
    asset: str
    proof_cid: str
    created_at: str
    memo_hash_hex: Optional[str] = None
    account: Optional[str] = None
    recipient: Optional[str] = None
    target_account: Optional[str] = None
    chain: Optional[str] = None
    burn_tx: Optional[str] = None
    fee_xlm: Decimal = Decimal(0)
    signature_count: int = 0
    status: AttestationStatus = AttestationStatus.RECORDED
    metadata_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "kind": self.kind,
            "amount": format_bridge_amount(self.amount),
            "asset": self.asset,
            "proofCid": self.proof_cid,
            "memoHashHex": self.memo_hash_hex or "",
            "createdAt": self.created_at,
            "feeXlm": str(self.fee_xlm),
            "sigs": self.signature_count,
            "status": self.status.value,
            "metadataError": self.metadata_error,
        }
        if self.kind == LOCK:
            d.update(chain=self.chain, recipient=self.recipient or "", account=self.account)
        elif self.kind == MINT:
            d.update(targetAccount=self.target_account or "")
        else:
            d.update(targetChain=self.chain, recipient=self.recipient or "", burnTx=self.burn_tx)
        return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class BridgeStats:
    total_locked_xlm: Decimal = Decimal(0)
    total_minted_susd: Decimal = Decimal(0)
    total_redeemed_susd: Decimal = Decimal(0)
    ops_7d: int = 0
    ops_30d: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalLockedXlm": format_bridge_amount(self.total_locked_xlm),
            "totalMintedSusd": format_bridge_amount(self.total_minted_susd),
            "totalRedeemedSusd": format_bridge_amount(self.total_redeemed_susd),
            "ops7d": self.ops_7d,
            "ops30d": self.ops_30d,
        }


@dataclass(frozen=True)
class BridgeSnapshot:
    locks: List[BridgeEntry] = field(default_factory=list)
    mints: List[BridgeEntry] = field(default_factory=list)
    redeems: List[BridgeEntry] = field(default_factory=list)
    stats: BridgeStats = field(default_factory=BridgeStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locks": [e.to_dict() for e in self.locks],
            "mints": [e.to_dict() for e in self.mints],
            "redeems": [e.to_dict() for e in self.redeems],
            "stats": self.stats.to_dict(),
        }


def format_bridge_amount(amount: Decimal) -> str:
    return f"{amount.quantize(BRIDGE_AMOUNT_PLACES):.7f}"


def _account(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _decode_proof_cid(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return ""
    try:
        decoded = b64_decode_strict(value).decode("utf-8").strip()
    except (ValueError, UnicodeDecodeError):
        return ""
    return try_normalize_cid(decoded) or decoded


def _payment_amount(record: Record) -> Decimal:
    try:
        return bridge_amount(record.get("amount") or "0")
    except ValueError:
        return Decimal(0)


def _is_susd(record: Record, susd: Optional[Tuple[str, str]]) -> bool:
    return bool(susd) and _account(record.get("asset_code")) == susd[0] and _account(record.get("asset_issuer")) == susd[1]


def _find(records: Iterable[Record], match: Callable[[Record], bool]) -> Optional[Record]:
    return next((r for r in records if r.get("type") == "payment" and match(r)), None)


def _group_by_transaction(records: Iterable[Record]) -> Dict[str, List[Record]]:
    grouped: Dict[str, List[Record]] = {}
    for record in records:
        tx_hash = record.get("transaction_hash") if record else None
        if tx_hash:
            grouped.setdefault(tx_hash, []).append(record)
    return grouped


def _entry_for(
    kind: str,
    manage: Record,
    records: List[Record],
    bridge_account: str,
    susd: Optional[Tuple[str, str]],
) -> Optional[BridgeEntry]:
    if kind == LOCK:
        payment = _find(records, lambda r: bridge_account in (_account(r.get("source_account")), _account(r.get("from"))))
        if payment is None:
            return None
        if (payment.get("asset_type") or "").lower() == "native":
            asset = XLM
        elif _is_susd(payment, susd):
            asset = SUSD
        else:
            return None
        extra = dict(recipient=_account(payment.get("to")), chain=EVM_CHAIN)
    elif kind == MINT:
        payment = _find(records, lambda r: _is_susd(r, susd) and _account(r.get("source_account")) == bridge_account)
        if payment is None:
            return None
        asset = SUSD
        extra = dict(target_account=_account(payment.get("to")))
    else:
        payment = _find(records, lambda r: _is_susd(r, susd) and _account(r.get("to")) == bridge_account)
        if payment is None:
            return None
        asset = SUSD
        extra = dict(recipient="", chain=EVM_CHAIN)

    attr = transaction_attr(manage)
    signatures = attr.get("signatures")
    fee = attr.get("fee_charged")
    return BridgeEntry(
        kind=kind,
        id=manage["transaction_hash"],
        amount=_payment_amount(payment),
        asset=asset,
        proof_cid=_decode_proof_cid(manage.get("value")),
        created_at=manage.get("created_at") or "",
        memo_hash_hex=hash_memo_hex(manage),
        account=_account(manage.get("source_account")) or bridge_account,
        fee_xlm=(fee_in_xlm(str(fee)) if fee is not None else None) or Decimal(0),
        signature_count=len(signatures) if isinstance(signatures, list) else 0,
        **extra,
    )


def collect_bridge_entries(
    records: Iterable[Record],
    bridge_account: str,
    susd: Optional[Tuple[str, str]] = None,
) -> List[BridgeEntry]:
    """
    Pair each bridge manage_data entry with the payment in the same transaction.

    lock: a native or SUSD payment sent by the bridge account
    mint: a SUSD payment sent by the bridge account
    redeem: a SUSD payment received by the bridge account

    Entries without a matching payment are skipped.
    """
    bridge_account = bridge_account.strip()
    if not bridge_account:
        return []
    entries = []
    for records_in_tx in _group_by_transaction(records).values():
        for manage in records_in_tx:
            if manage.get("type") != "manage_data":
                continue
            kind = BRIDGE_MANAGE_DATA_KEYS.get(manage.get("name") or "")
            if kind is None:
                continue
            entry = _entry_for(kind, manage, records_in_tx, bridge_account, susd)
            if entry is not None:
                entries.append(entry)
    return entries


def bridge_fetchers(
    gateways: Optional[Sequence[str]] = None,
    client: Optional[httpx.AsyncClient] = None,
    sleep: Sleep = asyncio.sleep,
) -> Dict[str, MetadataFetcher]:
    """One probing fetcher per kind, so proof documents are cached per kind and CID."""
    return {
        kind: ProbingMetadataFetcher(gateways=gateways, client=client, model=model, sleep=sleep)
        for kind, model in BRIDGE_MODELS.items()
    }


async def settle_bridge_entry(entry: BridgeEntry, fetcher: MetadataFetcher) -> BridgeEntry:
    if not entry.proof_cid:
        return replace(entry, metadata_error=f"missing-cid:{entry.kind}")

    check = await verify_detached_proof(fetcher, entry.proof_cid, entry.memo_hash_hex)
    entry = replace(entry, status=check.status, metadata_error=check.reason)
    if check.envelope is None:
        return entry

    doc = check.envelope.metadata
    if entry.kind == LOCK:
        return replace(
            entry,
            recipient=doc.recipient,
            amount=doc.amount,
            asset=SUSD if doc.asset.strip().upper() == SUSD else XLM,
        )
    if entry.kind == MINT:
        return replace(entry, amount=doc.amount, target_account=doc.targetAccount)
    return replace(entry, recipient=doc.recipient, amount=doc.amount, burn_tx=doc.burnTx)


def compute_bridge_stats(entries: Iterable[BridgeEntry], now: Optional[datetime] = None) -> BridgeStats:
    """Locked XLM, minted and redeemed SUSD, and how many operations landed in the last 7 and 30 days."""
    now = now or datetime.now(timezone.utc)
    entries = list(entries)

    def total(kind: str, asset: str) -> Decimal:
        return sum((e.amount for e in entries if e.kind == kind and e.asset == asset), Decimal(0))

    def within(days: int) -> int:
        since = now - timedelta(days=days)
        stamps = (parse_timestamp(e.created_at) for e in entries)
        return sum(1 for created in stamps if created is not None and created >= since)

    return BridgeStats(
        total_locked_xlm=total(LOCK, XLM),
        total_minted_susd=total(MINT, SUSD),
        total_redeemed_susd=total(REDEEM, SUSD),
        ops_7d=within(7),
        ops_30d=within(30),
    )


async def resolve_bridge(
    records: Iterable[Record],
    bridge_account: str,
    susd: Optional[Tuple[str, str]] = None,
    fetchers: Optional[Mapping[str, MetadataFetcher]] = None,
    now: Optional[datetime] = None,
) -> BridgeSnapshot:
    """Bridge operations in ledger order, settled against their proof documents, plus totals."""
    if not bridge_account.strip():
        return BridgeSnapshot()

    entries = collect_bridge_entries(records, bridge_account, susd)
    fetchers = fetchers or bridge_fetchers()
    settled = await asyncio.gather(*(settle_bridge_entry(e, fetchers[e.kind]) for e in entries))

    stats = compute_bridge_stats(settled, now)
    snapshot = BridgeSnapshot(
        locks=[e for e in settled if e.kind == LOCK],
        mints=[e for e in settled if e.kind == MINT],
        redeems=[e for e in settled if e.kind == REDEEM],
        stats=stats,
    )
    logger.debug(
        "[proofledger:bridge] %d locks, %d mints, %d redeems; totals %s",
        len(snapshot.locks), len(snapshot.mints), len(snapshot.redeems), stats.to_dict(),
    )
    return snapshot
