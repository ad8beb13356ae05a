# proofledger/crypto/strkey.py
"""
Stellar strkey encoding for Ed25519 keys.

    base32( version_byte || 32-byte key || crc16-xmodem little-endian )

G... is an account (public key), S... a secret seed.
"""

import base64
import binascii
import struct

from proofledger.core.errors import KeyLengthError, ValidationError

VERSION_ACCOUNT_ID = 6 << 3   # "G"
VERSION_SEED = 18 << 3        # "S"


def crc16_xmodem(data: bytes) -> int:
    crc = 0
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            crc = ((crc << 1) ^ 0x1021) if crc & 0x8000 else (crc << 1)
            crc &= 0xFFFF
    return crc


def encode(version: int, payload: bytes) -> str:
    if len(payload) != 32:
        raise KeyLengthError(f"Expected 32-byte key, got {len(payload)}")
    body = bytes([version]) + payload
    return base64.b32encode(body + struct.pack("<H", crc16_xmodem(body))).decode("ascii")


def decode(version: int, value: str) -> bytes:
    raw = value.strip().upper()
    if len(raw) != 56:
        raise ValidationError(f"Invalid strkey length: {len(raw)}")
    try:
        decoded = base64.b32decode(raw)
    except binascii.Error as e:
        raise ValidationError(f"Invalid strkey encoding: {e}") from e

    body, checksum = decoded[:-2], decoded[-2:]
    if body[0] != version:
        raise ValidationError("Unexpected strkey version byte")
    if struct.unpack("<H", checksum)[0] != crc16_xmodem(body):
        raise ValidationError("Invalid strkey checksum")
    return body[1:]


def encode_public_key(raw: bytes) -> str:
    return encode(VERSION_ACCOUNT_ID, raw)


def decode_public_key(address: str) -> bytes:
    return decode(VERSION_ACCOUNT_ID, address)


def encode_secret_seed(raw: bytes) -> str:
    return encode(VERSION_SEED, raw)


def decode_secret_seed(secret: str) -> bytes:
    return decode(VERSION_SEED, secret)
