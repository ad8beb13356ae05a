# proofledger/crypto/hashing.py
import hashlib
import struct

SIGNED_MESSAGE_PREFIX = b"Stellar Signed Message:\n"


def sha256_bytes(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def signed_message_hash(payload: bytes) -> bytes:
    """Wallet "sign message" digest: sha256(prefix || u32le(len) || payload)."""
    return sha256_bytes(SIGNED_MESSAGE_PREFIX + struct.pack("<I", len(payload)) + payload)
