# proofledger/core/encoding.py
import base64
import binascii
import re
from typing import Optional

_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]+$")


def b64url_encode(data: bytes) -> str:
    """Encode bytes to base64url (no padding, URL-safe)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    """Decode base64url string back to bytes."""
    # Restore padding
    padding = len(s) % 4
    if padding:
        s += "=" * (4 - padding)
    return base64.urlsafe_b64decode(s)


def b64_encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64_decode_strict(value: str) -> bytes:
    """
    Decode standard base64, rejecting anything that does not re-encode to the
    same text (modulo padding). Horizon data values are always canonical.
    """
    raw = value.strip()
    padded = raw + "=" * (-len(raw) % 4)
    try:
        decoded = base64.b64decode(padded, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e
    if base64.b64encode(decoded).decode("ascii").rstrip("=") != raw.rstrip("="):
        raise ValueError("Invalid base64 payload: non-canonical encoding")
    return decoded


def try_b64_decode(value: str) -> Optional[bytes]:
    try:
        return b64_decode_strict(value)
    except ValueError:
        return None


def is_hex(value: str) -> bool:
    return bool(_HEX_RE.match(value.strip()))


def strip_hex_prefix(value: str) -> str:
    value = value.strip()
    return value[2:] if value[:2].lower() == "0x" else value


def decode_signature(value: str) -> Optional[bytes]:
    """Signatures travel as hex (128 chars) or base64; anything else is None."""
    raw = value.strip()
    if not raw:
        return None
    if is_hex(raw) and len(strip_hex_prefix(raw)) % 2 == 0:
        return bytes.fromhex(strip_hex_prefix(raw))
    decoded = try_b64_decode(raw)
    if decoded is None:
        try:
            decoded = b64url_decode(raw)
        except (binascii.Error, ValueError):
            return None
    return decoded or None


def mask(identifier: str, keep: int = 4) -> str:
    """Shorten an account / key identifier for log output: GABC…WXYZ."""
    value = identifier.strip()
    if len(value) <= keep * 2:
        return "…" if value else ""
    return f"{value[:keep]}…{value[-keep:]}"
