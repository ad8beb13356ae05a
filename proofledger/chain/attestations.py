# proofledger/chain/attestations.py
"""
Reconciliation pass: ledger records in, verified Attestation records out.

Nothing here is persisted; every pass re-derives the full list.
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional

from proofledger.chain.resolver import Record, parse_timestamp, resolve_candidates
from proofledger.core.cid import gateway_url
from proofledger.core.types import Attestation, AttestationCandidate, AttestationStatus, EffectBundle, ProofRef
from proofledger.fetch.gateway import MetadataFetcher
from proofledger.verify.verifier import AttestationVerifier, VerificationContext

logger = logging.getLogger(__name__)

STROOPS_PER_XLM = Decimal(10) ** 7
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return None


def fee_in_xlm(fee_charged: Optional[str]) -> Optional[Decimal]:
    if fee_charged is None:
        return None
    try:
        return Decimal(fee_charged) / STROOPS_PER_XLM
    except InvalidOperation:
        return None


async def build_attestation(candidate: AttestationCandidate, verifier: AttestationVerifier) -> Attestation:
    payment = candidate.payment
    bundle = candidate.bundle or EffectBundle()
    context = VerificationContext.from_candidate(candidate)

    result = await verifier.verify(context, candidate.bundle)
    metadata = result.metadata
    nested = metadata.attestation if metadata else None
    request = metadata.request if metadata else None

    file_cid = (metadata.fileCid or metadata.proofCid) if metadata else None
    file_cid = file_cid or candidate.metadata_cid

    attestation = Attestation(
        week=metadata.week if metadata else 0,
        reserve_usd=metadata.reserveAmount if metadata else Decimal(0),
        ipfs=ProofRef(
            hash=file_cid,
            url=gateway_url(verifier.fetcher.gateways[0], file_cid),
            mime=metadata.mime if metadata else None,
            size=metadata.size if metadata else None,
        ),
        metadata_cid=candidate.metadata_cid,
        proof_cid=metadata.proofCid if metadata else None,
        memo_hash_hex=candidate.memo_hash_hex,
        signed_by=_first(
            nested.signedBy if nested else None,
            metadata.issuer if metadata else None,
            bundle.public_key,
            context.source_account,
        ) or "",
        signature=_first(bundle.signature_string, nested.signature if nested else None) or "",
        nonce=_first(bundle.nonce, nested.nonce if nested else None) or "",
        status=result.status,
        ts=(metadata.timestamp if metadata else None) or payment.created_at,
        tx_hash=payment.transaction_hash,
        request_cid=_first(
            bundle.request_cid,
            request.cid if request else None,
            nested.requestCid if nested else None,
        ),
        reason=result.reason,
        metadata_fetch_failed=result.status is AttestationStatus.RECORDED and metadata is None,
        signature_count=len(payment.signatures),
        fee_xlm=fee_in_xlm(payment.fee_charged),
        tx_source_account=context.source_account,
    )
    logger.debug(
        "[proofledger:attestations] %s -> %s%s",
        candidate.metadata_cid, attestation.status.value,
        f" ({attestation.reason})" if attestation.reason else "",
    )
    return attestation


def _newest_first(attestation: Attestation) -> datetime:
    return parse_timestamp(attestation.ts) or _OLDEST


async def resolve_attestations(
    operations: Optional[Iterable[Record]],
    effects: Optional[Iterable[Record]] = None,
    fetcher: Optional[MetadataFetcher] = None,
    strict: Optional[bool] = None,
    verifier: Optional[AttestationVerifier] = None,
) -> List[Attestation]:
    """One Attestation per distinct metadata CID, newest first."""
    candidates = resolve_candidates(operations, effects)
    if not candidates:
        return []

    verifier = verifier or AttestationVerifier(fetcher=fetcher, strict=strict)
    attestations = await asyncio.gather(*(build_attestation(c, verifier) for c in candidates))
    return sorted(attestations, key=_newest_first, reverse=True)
