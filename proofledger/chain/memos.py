# proofledger/chain/memos.py
import logging
from dataclasses import dataclass
from typing import Optional

from proofledger.core.cid import try_normalize_cid
from proofledger.core.encoding import b64_decode_strict
from proofledger.core.types import LedgerPayment

logger = logging.getLogger(__name__)

MEMO_HASH_LENGTH = 32


@dataclass(frozen=True)
class MemoExtraction:
    cid: Optional[str] = None
    memo_hash_hex: Optional[str] = None


def memo_hash_b64_to_hex(b64: str) -> str:
    """Decode a hash memo (base64 of 32 bytes) into lowercase hex."""
    raw = b64_decode_strict(b64)
    if len(raw) != MEMO_HASH_LENGTH:
        raise ValueError(f"Hash memo must be {MEMO_HASH_LENGTH} bytes, got {len(raw)}")
    return raw.hex()


def extract_memo_cid(payment: LedgerPayment) -> Optional[str]:
    """CID carried directly in a text memo, normalised to v1."""
    direct = (payment.memo or "").strip()
    if direct and payment.memo_type in (None, "text"):
        cid = try_normalize_cid(direct)
        if cid:
            return cid
    return None


def extract_memo(payment: LedgerPayment) -> MemoExtraction:
    """
    Text memo → CID. Hash memo → memo_hash_hex (the CID then has to come from a
    manage_data entry). Anything else yields an empty extraction.
    """
    if payment.memo_type == "hash" and payment.memo:
        try:
            return MemoExtraction(memo_hash_hex=memo_hash_b64_to_hex(payment.memo))
        except ValueError as e:
            logger.debug("[proofledger:memo] ignoring malformed hash memo on %s: %s", payment.transaction_hash, e)
            return MemoExtraction()
    return MemoExtraction(cid=extract_memo_cid(payment))
