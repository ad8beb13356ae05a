# proofledger/core/cid.py
import hashlib
import logging
import re
from typing import Optional, Union

from multiformats import CID

from proofledger.core.errors import InvalidCidError

logger = logging.getLogger(__name__)

_ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)
_IPFS_PREFIX = re.compile(r"^(ipfs://|/+)?(ipfs/+)?", re.IGNORECASE)


def _to_v1(cid: CID) -> str:
    if cid.version == 0:
        cid = cid.set(version=1, base="base32")
    elif cid.base.name != "base32":
        cid = cid.set(base="base32")
    return str(cid)


def normalize_cid(raw: Union[str, bytes]) -> str:
    """
    Parse a content identifier (string or binary form) and return its canonical
    CIDv1 base32 string. CIDv0 input is upgraded.
    """
    if isinstance(raw, str):
        value = raw.strip()
        if not value:
            raise InvalidCidError("Empty content identifier")
    else:
        value = bytes(raw)
    try:
        parsed = CID.decode(value)
    except Exception as e:  # multiformats raises ValueError/KeyError subclasses per layer
        raise InvalidCidError(f"Malformed content identifier: {str(value)[:80]}") from e

    upgraded = _to_v1(parsed)
    if parsed.version == 0:
        logger.debug("[proofledger:cid] CID upgraded to v1 %s -> %s", value, upgraded)
    return upgraded


def try_normalize_cid(raw: Optional[Union[str, bytes]]) -> Optional[str]:
    if not raw:
        return None
    try:
        return normalize_cid(raw)
    except InvalidCidError:
        return None


def cid_sha256_hex(cid: str) -> str:
    """Hash memo value for a CID: sha256 over its UTF-8 string form."""
    trimmed = cid.strip()
    if not trimmed:
        raise InvalidCidError("CID must be a non-empty string.")
    return hashlib.sha256(trimmed.encode("utf-8")).hexdigest()


def gateway_url(gateway: str, value: str) -> str:
    """Join a gateway base and a CID (or pass an absolute URL through)."""
    trimmed = value.strip()
    if not trimmed or _ABSOLUTE_URL.match(trimmed):
        return trimmed
    return f"{gateway.rstrip('/')}/{_IPFS_PREFIX.sub('', trimmed, count=1)}"
