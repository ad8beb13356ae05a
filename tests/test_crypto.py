# tests/test_crypto.py
import base64
import hashlib
import struct

import nacl.bindings
import pytest

from proofledger.core.errors import BackendUnavailable, KeyLengthError, ValidationError
from proofledger.crypto import strkey
from proofledger.crypto.hashing import signed_message_hash
from proofledger.crypto.keys import (
    Ed25519Backend,
    NativeBackend,
    SignerKeyPair,
    SoftwareBackend,
    expand_private_key,
    public_key_from_identifier,
    sign_ed25519,
    verify_ed25519,
)

MESSAGE = b"week=12;reserve=1250.50"


@pytest.fixture
def signer():
    return SignerKeyPair.from_seed(bytes(range(32)))


class BrokenBackend:
    name = "broken"

    def __init__(self):
        self.calls = 0

    def available(self):
        return True

    def sign(self, private_key, message):
        self.calls += 1
        raise BackendUnavailable("provider rejected the key")

    def verify(self, public_key, message, signature):
        self.calls += 1
        raise ValueError("provider failure")


class MissingBackend(BrokenBackend):
    name = "missing"

    def available(self):
        return False


def flip(data: bytes, index: int) -> bytes:
    return data[:index] + bytes([data[index] ^ 0x01]) + data[index + 1:]


def test_sign_verify_roundtrip(signer):
    signature = sign_ed25519(signer.seed, MESSAGE)
    assert len(signature) == 64
    assert verify_ed25519(signer.public_key, MESSAGE, signature)


@pytest.mark.parametrize("index", [0, 31, 63])
def test_flipped_signature_byte_fails(signer, index):
    signature = signer.sign(MESSAGE)
    assert not signer.verify(MESSAGE, flip(signature, index))


def test_flipped_message_byte_fails(signer):
    signature = signer.sign(MESSAGE)
    assert not signer.verify(flip(MESSAGE, 5), signature)


def test_seed_and_expanded_key_both_verify(signer):
    expanded = expand_private_key(signer.seed)
    assert len(expanded) == 64
    assert expanded == signer.secret_key
    for key in (signer.seed, expanded):
        assert verify_ed25519(signer.public_key, MESSAGE, sign_ed25519(key, MESSAGE))


@pytest.mark.parametrize("backend", [NativeBackend(), SoftwareBackend()])
def test_backends_agree(signer, backend):
    chain = Ed25519Backend([backend])
    signature = chain.sign(signer.seed, MESSAGE)
    assert signature == nacl.bindings.crypto_sign(MESSAGE, signer.secret_key)[:64]
    assert chain.verify(signer.public_key, MESSAGE, signature)


def test_software_backend_with_expanded_key(signer):
    chain = Ed25519Backend([SoftwareBackend()])
    assert chain.verify(signer.public_key, MESSAGE, chain.sign(signer.secret_key, MESSAGE))


def test_fallback_to_next_backend(signer):
    broken = BrokenBackend()
    chain = Ed25519Backend([broken, SoftwareBackend()])
    signature = chain.sign(signer.seed, MESSAGE)
    assert chain.verify(signer.public_key, MESSAGE, signature)
    assert broken.calls == 2


def test_unavailable_backend_is_skipped(signer):
    missing = MissingBackend()
    chain = Ed25519Backend([missing, SoftwareBackend()])
    assert chain.verify(signer.public_key, MESSAGE, chain.sign(signer.seed, MESSAGE))
    assert missing.calls == 0


def test_no_working_backend_raises(signer):
    chain = Ed25519Backend([BrokenBackend()])
    with pytest.raises(BackendUnavailable):
        chain.sign(signer.seed, MESSAGE)


@pytest.mark.parametrize("length", [0, 16, 31, 33, 63, 65])
def test_bad_private_key_length(length):
    with pytest.raises(KeyLengthError):
        sign_ed25519(b"\x01" * length, MESSAGE)


@pytest.mark.parametrize("length", [0, 31, 33, 64])
def test_bad_public_key_length(signer, length):
    with pytest.raises(KeyLengthError):
        verify_ed25519(b"\x01" * length, MESSAGE, signer.sign(MESSAGE))


def test_short_signature_is_false(signer):
    assert verify_ed25519(signer.public_key, MESSAGE, signer.sign(MESSAGE)[:63]) is False


def test_strkey_roundtrip(signer):
    address = signer.address
    assert address.startswith("G") and len(address) == 56
    assert strkey.decode_public_key(address) == signer.public_key

    secret = strkey.encode_secret_seed(signer.seed)
    assert secret.startswith("S")
    assert SignerKeyPair.from_secret(secret) == signer


def test_strkey_rejects_bad_checksum(signer):
    address = signer.address
    tampered = address[:-1] + ("A" if address[-1] != "A" else "B")
    with pytest.raises(ValidationError):
        strkey.decode_public_key(tampered)


def test_strkey_rejects_wrong_version(signer):
    with pytest.raises(ValidationError):
        strkey.decode_secret_seed(signer.address)


def test_public_key_identifiers(signer):
    raw = signer.public_key
    assert public_key_from_identifier(signer.address) == raw
    assert public_key_from_identifier(raw.hex()) == raw
    assert public_key_from_identifier(base64.b64encode(raw).decode()) == raw
    with pytest.raises(ValidationError):
        public_key_from_identifier("not a key")
    with pytest.raises(KeyLengthError):
        public_key_from_identifier(base64.b64encode(b"\x01" * 16).decode())


def test_from_secret_hex(signer):
    assert SignerKeyPair.from_secret(signer.seed.hex()) == signer
    assert SignerKeyPair.from_secret(signer.secret_key.hex()) == signer
    with pytest.raises(ValidationError):
        SignerKeyPair.from_secret("abc")


def test_repr_is_masked(signer):
    text = repr(signer)
    assert signer.address not in text
    assert signer.seed.hex() not in text


def test_signed_message_hash_layout():
    payload = b"hello"
    expected = hashlib.sha256(b"Stellar Signed Message:\n" + struct.pack("<I", 5) + payload).digest()
    assert signed_message_hash(payload) == expected
