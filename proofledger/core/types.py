# proofledger/core/types.py
from dataclasses import dataclass, field, fields, asdict
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class AttestationStatus(str, Enum):
    PENDING = "Pending"
    RECORDED = "Recorded"
    VERIFIED = "Verified"
    INVALID = "Invalid"

    def __str__(self) -> str:
        return self.value


class SettlementAsset(str, Enum):
    XLM = "XLM"
    SUSD = "SUSD"

    @classmethod
    def normalise(cls, value: "str | SettlementAsset") -> "SettlementAsset":
        """Anything that is not SUSD settles in native XLM."""
        return cls.SUSD if str(getattr(value, "value", value)).upper() == "SUSD" else cls.XLM


@dataclass(frozen=True)
class ProofRef:
    """Locator of the evidence document behind an attestation."""
    hash: str
    url: str
    mime: Optional[str] = None
    size: Optional[Decimal] = None


@dataclass(frozen=True)
class EffectBundle:
    """
    Transaction-scoped data recovered from manage_data entries.
    Every field is optional; merging keeps the existing value unless the
    incoming bundle supplies a non-empty one.
    """
    metadata_cid: Optional[str] = None
    signature_string: Optional[str] = None
    public_key: Optional[str] = None
    nonce: Optional[str] = None
    request_cid: Optional[str] = None
    manage_data_name: Optional[str] = None
    metadata_error: Optional[str] = None

    def merge(self, incoming: "EffectBundle") -> "EffectBundle":
        values = {}
        for f in fields(self):
            new = getattr(incoming, f.name)
            values[f.name] = new if new else getattr(self, f.name)
        return EffectBundle(**values)


@dataclass(frozen=True)
class LedgerPayment:
    """Payment operation joined with its transaction memo attributes."""
    id: str
    created_at: str
    transaction_hash: str
    source_account: Optional[str] = None
    to: Optional[str] = None
    from_account: Optional[str] = None
    amount: Optional[str] = None
    asset_type: Optional[str] = None
    asset_code: Optional[str] = None
    asset_issuer: Optional[str] = None
    memo: Optional[str] = None
    memo_type: Optional[str] = None
    fee_charged: Optional[str] = None
    signatures: List[str] = field(default_factory=list)
    tx_source_account: Optional[str] = None


@dataclass(frozen=True)
class AttestationCandidate:
    payment: LedgerPayment
    metadata_cid: str
    memo_hash_hex: Optional[str] = None
    bundle: Optional[EffectBundle] = None


@dataclass(frozen=True)
class Attestation:
    """Resolved reserve attestation. Re-derived on every reconciliation pass."""
    week: int
    reserve_usd: Decimal
    ipfs: ProofRef
    metadata_cid: str
    signed_by: str
    signature: str
    nonce: str
    status: AttestationStatus
    ts: str
    tx_hash: str
    signature_type: str = "ed25519"
    proof_cid: Optional[str] = None
    memo_hash_hex: Optional[str] = None
    request_cid: Optional[str] = None
    reason: Optional[str] = None
    metadata_fetch_failed: bool = False
    signature_count: int = 0
    fee_xlm: Optional[Decimal] = None
    tx_source_account: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape (camelCase) for JSON export."""
        d = {
            "week": self.week,
            "reserveUSD": str(self.reserve_usd),
            "ipfs": {k: (str(v) if isinstance(v, Decimal) else v) for k, v in asdict(self.ipfs).items() if v is not None},
            "metadataCid": self.metadata_cid,
            "proofCid": self.proof_cid,
            "memoHashHex": self.memo_hash_hex,
            "signedBy": self.signed_by,
            "signature": self.signature,
            "signatureType": self.signature_type,
            "nonce": self.nonce,
            "status": self.status.value,
            "ts": self.ts,
            "txHash": self.tx_hash,
            "requestCid": self.request_cid,
            "reason": self.reason,
            "metadataFetchFailed": self.metadata_fetch_failed,
            "signatureCount": self.signature_count,
            "feeXlm": str(self.fee_xlm) if self.fee_xlm is not None else None,
            "txSourceAccount": self.tx_source_account,
        }
        return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class SpvHolder:
    account: str
    balance: Decimal


@dataclass(frozen=True)
class Payout:
    account: str
    asset: SettlementAsset
    amount: Decimal
    share: Decimal


@dataclass(frozen=True)
class Distribution:
    payouts: List[Payout]
    total_paid: Decimal
    under_stroop_dropped: int = 0
