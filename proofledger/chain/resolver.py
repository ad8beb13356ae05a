# proofledger/chain/resolver.py
"""
Turn raw Horizon records for one account into attestation candidates.

    effects + manage_data ops ──► EffectBundle per transaction
    payment ops ──► memo CID (or bundle CID) ──► normalise ──► dedupe by CID

Pure and synchronous: same input, same candidates.
"""

import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from proofledger.chain.memos import extract_memo, memo_hash_b64_to_hex
from proofledger.core.cid import try_normalize_cid
from proofledger.core.encoding import b64_decode_strict
from proofledger.core.types import AttestationCandidate, EffectBundle, LedgerPayment

logger = logging.getLogger(__name__)

Record = Mapping[str, Any]

DATA_EFFECT_TYPES = ("data_created", "data_updated")


def _str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def transaction_attr(record: Record) -> Mapping[str, Any]:
    attr = record.get("transaction_attr") or record.get("transaction")
    return attr if isinstance(attr, Mapping) else {}


def hash_memo_hex(record: Record) -> Optional[str]:
    """Hex of the transaction hash memo, or None when there is no usable one."""
    attr = transaction_attr(record)
    if attr.get("memo_type") != "hash":
        return None
    encoded = attr.get("memo_hash") or attr.get("memo")
    if not encoded:
        return None
    try:
        return memo_hash_b64_to_hex(encoded)
    except ValueError:
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def bundle_from_payload(parsed: Mapping[str, Any]) -> EffectBundle:
    """Read signature fields from a data value, top level first, then `attestation`."""
    nested = parsed.get("attestation")
    sources = (parsed, nested if isinstance(nested, Mapping) else {})

    def pick(*keys: str) -> Optional[str]:
        for source in sources:
            for key in keys:
                value = _str(source.get(key))
                if value:
                    return value
        return None

    return EffectBundle(
        metadata_cid=pick("metadataCid"),
        signature_string=pick("signature"),
        public_key=pick("publicKey", "signedBy"),
        nonce=pick("nonce"),
        request_cid=pick("requestCid"),
    )


def build_effect_bundles(effects: Iterable[Record]) -> Dict[str, EffectBundle]:
    bundles: Dict[str, EffectBundle] = {}
    for effect in effects:
        if effect.get("type") not in DATA_EFFECT_TYPES:
            continue
        tx_hash = _str(effect.get("transaction_hash"))
        value = effect.get("value")
        if not tx_hash or not isinstance(value, str):
            continue
        try:
            parsed = json.loads(b64_decode_strict(value).decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.debug("[proofledger:resolver] skipping undecodable data effect on %s: %s", tx_hash, e)
            continue
        if not isinstance(parsed, Mapping):
            continue

        bundle = bundle_from_payload(parsed)
        # Only well-formed identifiers survive from effects
        bundle = replace(bundle, metadata_cid=try_normalize_cid(bundle.metadata_cid))
        bundles[tx_hash] = bundles.get(tx_hash, EffectBundle()).merge(bundle)
    return bundles


def merge_manage_data_bundles(operations: Iterable[Record], bundles: Dict[str, EffectBundle]) -> Dict[str, EffectBundle]:
    """Fold manage_data operations into the per-transaction bundles (in place)."""
    for op in operations:
        if op.get("type") != "manage_data":
            continue
        tx_hash = _str(op.get("transaction_hash"))
        if not tx_hash:
            continue

        bundle = EffectBundle(manage_data_name=_str(op.get("name")))
        raw_value = _str(op.get("value"))
        if raw_value:
            try:
                decoded = b64_decode_strict(raw_value).decode("utf-8")
            except (ValueError, UnicodeDecodeError) as e:
                bundle = bundle.merge(EffectBundle(metadata_error=str(e) or "Failed to decode manage_data value"))
                decoded = None

            if decoded:
                try:
                    parsed = json.loads(decoded)
                except ValueError:
                    parsed = None
                if isinstance(parsed, Mapping):
                    bundle = bundle.merge(bundle_from_payload(parsed))
                else:
                    # bare CID stored as the data value
                    bundle = bundle.merge(EffectBundle(metadata_cid=decoded.strip()))

                if bundle.metadata_cid:
                    normalised = try_normalize_cid(bundle.metadata_cid)
                    if normalised:
                        bundle = bundle.merge(EffectBundle(metadata_cid=normalised))

        bundles[tx_hash] = bundles.get(tx_hash, EffectBundle()).merge(bundle)
    return bundles


def build_payments(operations: Iterable[Record]) -> List[LedgerPayment]:
    """Payment operations joined with the memo attributes of their transaction."""
    operations = list(operations)
    attrs: Dict[str, Dict[str, Any]] = {}

    for op in operations:
        tx_hash = _str(op.get("transaction_hash"))
        if not tx_hash:
            continue
        candidate = transaction_attr(op)
        existing = attrs.setdefault(tx_hash, {})
        for key in ("memo_type", "fee_charged", "source_account"):
            if candidate.get(key) is not None and existing.get(key) is None:
                existing[key] = candidate[key]
        memo = _str(candidate.get("memo_hash")) if candidate.get("memo_type") == "hash" else None
        memo = memo or _str(candidate.get("memo"))
        if memo and not existing.get("memo"):
            existing["memo"] = memo
        signatures = candidate.get("signatures")
        if signatures:
            existing["signatures"] = list(signatures)

    payments: List[LedgerPayment] = []
    for op in operations:
        if op.get("type") != "payment":
            continue
        tx_hash = _str(op.get("transaction_hash"))
        if not tx_hash:
            continue
        attr = attrs.get(tx_hash, {})
        amount = op.get("amount")
        payments.append(LedgerPayment(
            id=str(op.get("id", "")),
            created_at=str(op.get("created_at", "")),
            transaction_hash=tx_hash,
            source_account=_str(op.get("source_account")) or _str(op.get("from")),
            to=_str(op.get("to")),
            from_account=_str(op.get("from")) or _str(op.get("source_account")),
            amount=str(amount) if amount is not None else None,
            asset_type=_str(op.get("asset_type")),
            asset_code=_str(op.get("asset_code")),
            asset_issuer=_str(op.get("asset_issuer")),
            memo=attr.get("memo") or _str(op.get("memo")),
            memo_type=attr.get("memo_type") or _str(op.get("memo_type")),
            fee_charged=str(attr["fee_charged"]) if attr.get("fee_charged") is not None else None,
            signatures=attr.get("signatures", []),
            tx_source_account=_str(attr.get("source_account")),
        ))
    return payments


def dedupe_candidates(
    payments: Iterable[LedgerPayment],
    bundles: Mapping[str, EffectBundle],
) -> List[AttestationCandidate]:
    """One candidate per normalised CID; the latest created_at wins."""
    by_cid: Dict[str, Tuple[AttestationCandidate, Optional[datetime]]] = {}
    dropped = 0

    for payment in payments:
        bundle = bundles.get(payment.transaction_hash)
        memo = extract_memo(payment)
        raw_cid = memo.cid or (bundle.metadata_cid if bundle else None)
        if not raw_cid:
            continue
        cid = try_normalize_cid(raw_cid)
        if not cid:
            dropped += 1
            continue

        candidate = AttestationCandidate(
            payment=payment,
            metadata_cid=cid,
            memo_hash_hex=memo.memo_hash_hex,
            bundle=bundle,
        )
        created = parse_timestamp(payment.created_at)
        existing = by_cid.get(cid)
        if existing is None:
            by_cid[cid] = (candidate, created)
            continue
        _, existing_created = existing
        if created is not None and (existing_created is None or created > existing_created):
            by_cid[cid] = (candidate, created)

    if dropped:
        logger.debug("[proofledger:resolver] dropped %d candidate(s) with malformed CIDs", dropped)
    return [candidate for candidate, _ in by_cid.values()]


def resolve_candidates(
    operations: Optional[Iterable[Record]],
    effects: Optional[Iterable[Record]] = None,
) -> List[AttestationCandidate]:
    operations = list(operations or [])
    if not operations:
        return []
    payments = build_payments(operations)
    if not payments:
        return []
    bundles = build_effect_bundles(effects or [])
    merge_manage_data_bundles(operations, bundles)
    return dedupe_candidates(payments, bundles)
