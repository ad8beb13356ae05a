# proofledger/crypto/keys.py
"""
Ed25519 signing behind a capability interface.

Two interchangeable backends are probed at runtime: the OpenSSL provider shipped
with `cryptography` and the libsodium bindings from PyNaCl. Callers go through
Ed25519Backend, which validates key sizes once and then walks the chain until a
backend serves the call.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import nacl.bindings
import nacl.exceptions
import nacl.signing
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from proofledger.core.encoding import b64url_encode, is_hex, mask, strip_hex_prefix, try_b64_decode
from proofledger.core.errors import BackendUnavailable, KeyLengthError, ValidationError
from proofledger.crypto import strkey

logger = logging.getLogger(__name__)

SEED_LENGTH = 32
SECRET_KEY_LENGTH = 64
PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64

# Failures that mean "try the next backend", not "the input is bad"
FALLBACK_ERRORS = (BackendUnavailable, UnsupportedAlgorithm, ValueError, TypeError)


class SignatureBackend(Protocol):
    name: str

    def available(self) -> bool: ...

    def sign(self, private_key: bytes, message: bytes) -> bytes: ...

    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> bool: ...


def expand_private_key(private_key: bytes) -> bytes:
    """Normalise a 32-byte seed into the 64-byte (seed || public key) secret key."""
    if len(private_key) == SECRET_KEY_LENGTH:
        return bytes(private_key)
    if len(private_key) == SEED_LENGTH:
        _, secret_key = nacl.bindings.crypto_sign_seed_keypair(bytes(private_key))
        return secret_key
    raise KeyLengthError(
        f"Invalid ed25519 private key length {len(private_key)}. Expected 32 or 64 bytes."
    )


class NativeBackend:
    """OpenSSL Ed25519 through `cryptography`."""

    name = "native"

    def __init__(self):
        self._supported: Optional[bool] = None

    def available(self) -> bool:
        if self._supported is None:
            try:
                Ed25519PrivateKey.generate()
                self._supported = True
            except UnsupportedAlgorithm:
                logger.warning("[proofledger:crypto] native Ed25519 provider unsupported on this platform")
                self._supported = False
        return self._supported

    def sign(self, private_key: bytes, message: bytes) -> bytes:
        if not self.available():
            raise BackendUnavailable("native Ed25519 provider unavailable")
        key = Ed25519PrivateKey.from_private_bytes(bytes(private_key[:SEED_LENGTH]))
        return key.sign(message)

    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> bool:
        if not self.available():
            raise BackendUnavailable("native Ed25519 provider unavailable")
        key = Ed25519PublicKey.from_public_bytes(bytes(public_key))
        try:
            key.verify(signature, message)
            return True
        except InvalidSignature:
            return False


class SoftwareBackend:
    """libsodium via PyNaCl, driven with the expanded 64-byte secret key."""

    name = "software"

    def available(self) -> bool:
        return True

    def sign(self, private_key: bytes, message: bytes) -> bytes:
        signed = nacl.bindings.crypto_sign(message, expand_private_key(private_key))
        return signed[:SIGNATURE_LENGTH]

    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> bool:
        try:
            nacl.signing.VerifyKey(bytes(public_key)).verify(message, signature)
            return True
        except nacl.exceptions.BadSignatureError:
            return False


class Ed25519Backend:
    def __init__(self, backends: Optional[Sequence[SignatureBackend]] = None):
        self.backends = tuple(backends) if backends else (NativeBackend(), SoftwareBackend())

    def sign(self, private_key: bytes, message: bytes) -> bytes:
        if len(private_key) not in (SEED_LENGTH, SECRET_KEY_LENGTH):
            raise KeyLengthError(
                f"Invalid ed25519 private key length {len(private_key)}. Expected 32 or 64 bytes."
            )
        for backend in self.backends:
            if not backend.available():
                continue
            try:
                return backend.sign(private_key, message)
            except FALLBACK_ERRORS as e:
                logger.warning("[proofledger:crypto] %s backend failed to sign, falling back: %s", backend.name, e)
        raise BackendUnavailable("No Ed25519 backend could sign the message")

    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> bool:
        if len(public_key) != PUBLIC_KEY_LENGTH:
            raise KeyLengthError(
                f"Invalid ed25519 public key length {len(public_key)}. Expected 32 bytes."
            )
        if len(signature) != SIGNATURE_LENGTH:
            return False
        for backend in self.backends:
            if not backend.available():
                continue
            try:
                return backend.verify(public_key, message, signature)
            except FALLBACK_ERRORS as e:
                logger.warning(
                    "[proofledger:crypto] %s backend failed to verify for key %s, falling back: %s",
                    backend.name, mask(public_key.hex()), e,
                )
        raise BackendUnavailable("No Ed25519 backend could verify the signature")


default_backend = Ed25519Backend()


def sign_ed25519(private_key: bytes, message: bytes, backend: Optional[Ed25519Backend] = None) -> bytes:
    return (backend or default_backend).sign(private_key, message)


def verify_ed25519(
    public_key: bytes, message: bytes, signature: bytes, backend: Optional[Ed25519Backend] = None
) -> bool:
    return (backend or default_backend).verify(public_key, message, signature)


def public_key_from_identifier(identifier: str) -> bytes:
    """Accept a Stellar G-address, 64 hex chars, or base64 of the raw 32-byte key."""
    value = identifier.strip()
    if not value:
        raise ValidationError("Empty public key identifier")
    if value[0] in "Gg" and len(value) == 56:
        return strkey.decode_public_key(value)
    if is_hex(value) and len(strip_hex_prefix(value)) == PUBLIC_KEY_LENGTH * 2:
        return bytes.fromhex(strip_hex_prefix(value))
    raw = try_b64_decode(value)
    if raw is None:
        raise ValidationError(f"Unrecognised public key identifier {mask(value)}")
    if len(raw) != PUBLIC_KEY_LENGTH:
        raise KeyLengthError(f"Invalid ed25519 public key length {len(raw)}. Expected 32 bytes.")
    return raw


@dataclass(frozen=True)
class SignerKeyPair:
    """Custodian signing identity (seed + derived public key)."""
    seed: bytes
    public_key: bytes

    @classmethod
    def generate(cls) -> "SignerKeyPair":
        return cls.from_seed(secrets.token_bytes(SEED_LENGTH))

    @classmethod
    def from_seed(cls, seed: bytes) -> "SignerKeyPair":
        if len(seed) != SEED_LENGTH:
            raise KeyLengthError(f"Invalid ed25519 seed length {len(seed)}. Expected 32 bytes.")
        public_key, _ = nacl.bindings.crypto_sign_seed_keypair(bytes(seed))
        return cls(seed=bytes(seed), public_key=public_key)

    @classmethod
    def from_secret(cls, secret: str) -> "SignerKeyPair":
        """Load from an S... strkey or a hex encoded 32/64-byte key."""
        value = secret.strip()
        if value[:1] in ("S", "s") and len(value) == 56:
            return cls.from_seed(strkey.decode_secret_seed(value))
        if is_hex(value) and len(strip_hex_prefix(value)) % 2 == 0:
            raw = bytes.fromhex(strip_hex_prefix(value))
            return cls.from_seed(expand_private_key(raw)[:SEED_LENGTH])
        raise ValidationError("Secret must be an S... strkey or hex encoded key")

    @property
    def secret_key(self) -> bytes:
        return self.seed + self.public_key

    @property
    def address(self) -> str:
        return strkey.encode_public_key(self.public_key)

    def public_key_b64url(self) -> str:
        return b64url_encode(self.public_key)

    def sign(self, message: bytes, backend: Optional[Ed25519Backend] = None) -> bytes:
        return sign_ed25519(self.seed, message, backend)

    def verify(self, message: bytes, signature: bytes, backend: Optional[Ed25519Backend] = None) -> bool:
        return verify_ed25519(self.public_key, message, signature, backend)

    def __repr__(self) -> str:
        return f"SignerKeyPair(address={mask(self.address)})"
