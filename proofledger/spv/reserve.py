# proofledger/spv/reserve.py
"""
Weekly SPV reserve snapshots.

The snapshot document (vesto.reserve@1) is pinned off-chain; its CID is
written to the `vesto.reserve.cid` manage_data entry and sha256(cid) is
carried as the hash memo of the same transaction.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional

from proofledger.chain.attestations import fee_in_xlm
from proofledger.chain.resolver import Record, hash_memo_hex, parse_timestamp, transaction_attr
from proofledger.core.cid import cid_sha256_hex, gateway_url
from proofledger.core.encoding import b64_decode_strict
from proofledger.core.errors import ValidationError
from proofledger.core.schema import ReserveMetadata
from proofledger.core.types import AttestationStatus
from proofledger.fetch.gateway import MetadataFetcher, ProbingMetadataFetcher, parse_metadata
from proofledger.spv.distribute import format_payment_amount, to_decimal
from proofledger.verify.verifier import verify_detached_proof

logger = logging.getLogger(__name__)

RESERVE_MANAGE_DATA_KEY = "vesto.reserve.cid"
RESERVE_SCHEMA = "vesto.reserve@1"
MANAGE_DATA_VALUE_LIMIT = 64
CENT = Decimal("0.01")


def iso_week(value: "date | datetime") -> int:
    return value.isocalendar()[1]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_reserve_payload(
    balance_xlm: Any,
    balance_susd: Any,
    reserve_usd: Any = None,
    last_tx: Optional[str] = None,
    as_of: Optional[str] = None,
    notes: Optional[str] = None,
    week: Optional[int] = None,
) -> Dict[str, Any]:
    """Build (and validate) a vesto.reserve@1 document. Week defaults to the ISO week of as_of."""
    as_of = as_of or _utc_now_iso()
    as_of_dt = parse_timestamp(as_of)
    if as_of_dt is None:
        raise ValidationError(f"asOf is not an ISO timestamp: {as_of!r}")

    xlm = to_decimal(balance_xlm, "spvBalanceXLM")
    susd = to_decimal(balance_susd, "spvBalanceSUSD")
    if reserve_usd is None:
        reserve = max(Decimal(0), (xlm + susd).quantize(CENT, rounding=ROUND_HALF_UP))
    else:
        reserve = to_decimal(reserve_usd, "reserveUSD")

    payload = {
        "schema": RESERVE_SCHEMA,
        "week": max(0, int(week)) if week is not None else iso_week(as_of_dt),
        "reserveUSD": reserve,
        "spvBalanceXLM": format_payment_amount(xlm),
        "spvBalanceSUSD": str(susd.quantize(CENT, rounding=ROUND_HALF_UP)),
        "asOf": as_of,
        "lastTx": last_tx or "",
    }
    if notes:
        payload["notes"] = notes
    parse_metadata(payload, ReserveMetadata)
    return payload


def ensure_manage_data_size(cid: str) -> str:
    if len(cid.encode("utf-8")) > MANAGE_DATA_VALUE_LIMIT:
        raise ValidationError(f"Reserve CID exceeds manage_data {MANAGE_DATA_VALUE_LIMIT} byte limit.")
    return cid


@dataclass(frozen=True)
class ReserveAnchor:
    """What goes on-chain for one snapshot: manage_data entry plus hash memo."""
    cid: str
    memo_hash_hex: str
    manage_data_key: str = RESERVE_MANAGE_DATA_KEY


def reserve_anchor(cid: str) -> ReserveAnchor:
    cid = ensure_manage_data_size(cid.strip())
    return ReserveAnchor(cid=cid, memo_hash_hex=cid_sha256_hex(cid))


@dataclass(frozen=True)
class ReserveProof:
    cid: str
    tx_hash: str
    status: AttestationStatus
    ts: str
    gateway_url: str
    memo_hash_hex: Optional[str] = None
    metadata: Optional[ReserveMetadata] = None
    reason: Optional[str] = None
    signature_count: Optional[int] = None
    fee_xlm: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "cid": self.cid,
            "txHash": self.tx_hash,
            "status": self.status.value,
            "ts": self.ts,
            "gatewayUrl": self.gateway_url,
            "memoHashHex": self.memo_hash_hex,
            "metadata": self.metadata.model_dump(mode="json", by_alias=True) if self.metadata else None,
            "reason": self.reason,
            "signatureCount": self.signature_count,
            "feeXlm": str(self.fee_xlm) if self.fee_xlm is not None else None,
        }
        return {k: v for k, v in d.items() if v is not None}


def _decode_value(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    try:
        return b64_decode_strict(value).decode("utf-8").strip() or None
    except (ValueError, UnicodeDecodeError):
        return None


async def _resolve_one(op: Record, cid: str, fetcher: MetadataFetcher) -> ReserveProof:
    memo_hash_hex = hash_memo_hex(op)
    signatures = transaction_attr(op).get("signatures")
    fee = transaction_attr(op).get("fee_charged")

    check = await verify_detached_proof(fetcher, cid, memo_hash_hex)

    return ReserveProof(
        cid=cid,
        tx_hash=op.get("transaction_hash") or "",
        status=check.status,
        ts=op.get("created_at") or _utc_now_iso(),
        gateway_url=gateway_url(fetcher.gateways[0], cid),
        memo_hash_hex=memo_hash_hex,
        metadata=check.envelope.metadata if check.envelope else None,
        reason=check.reason,
        signature_count=len(signatures) if isinstance(signatures, list) else None,
        fee_xlm=fee_in_xlm(str(fee)) if fee is not None else None,
    )


async def resolve_reserve_proofs(
    operations: Iterable[Record],
    fetcher: Optional[MetadataFetcher] = None,
    key: str = RESERVE_MANAGE_DATA_KEY,
) -> List[ReserveProof]:
    """Reserve snapshots anchored by `key` manage_data operations, newest first."""
    fetcher = fetcher or ProbingMetadataFetcher(model=ReserveMetadata)
    jobs = []
    for op in operations:
        if op.get("type") != "manage_data" or op.get("name") != key:
            continue
        cid = _decode_value(op.get("value"))
        if not cid:
            continue
        jobs.append(_resolve_one(op, cid, fetcher))

    proofs = await asyncio.gather(*jobs)
    logger.debug(
        "[proofledger:spv] reserve proofs resolved: %d total, %d verified",
        len(proofs), sum(1 for p in proofs if p.status is AttestationStatus.VERIFIED),
    )
    oldest = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(proofs, key=lambda p: parse_timestamp(p.ts) or oldest, reverse=True)
