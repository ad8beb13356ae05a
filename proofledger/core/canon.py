# proofledger/core/canon.py
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Union

import cbor2
import jcs
from pydantic import ValidationError as SchemaError

from proofledger.core.encoding import b64_encode
from proofledger.core.errors import CanonicalizationError
from proofledger.core.schema import AttestationMessage


def normalize(value: Any) -> Any:
    """
    Rebuild a value with every mapping's keys in lexicographic order.
    Sequences keep their order; bytes and scalars pass through, except Decimal
    which becomes int when integral and float otherwise.
    """
    if isinstance(value, Mapping):
        return {key: normalize(value[key]) for key in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [normalize(item) for item in value]
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def canonical_json(obj: Any) -> bytes:
    """
    Produce deterministic UTF-8 bytes according to RFC 8785 (JSON Canonicalization Scheme).
    Returns bytes ready for hashing or signing.
    """
    return jcs.canonicalize(normalize(obj))


def canonical_json_str(obj: Any) -> str:
    """Same as above, but returns string (mostly for debugging)."""
    return canonical_json(obj).decode("utf-8")


def canonical_cbor(obj: Any) -> bytes:
    # cbor2 keeps insertion order when canonical=False, which is the sorted order here
    return cbor2.dumps(normalize(obj))


def validate_message(message: Union[AttestationMessage, Mapping[str, Any]]) -> AttestationMessage:
    if isinstance(message, AttestationMessage):
        return message
    try:
        return AttestationMessage.model_validate(dict(message))
    except SchemaError as e:
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise CanonicalizationError(f"Attestation message rejected: {issues}") from e
    except (TypeError, ValueError) as e:
        raise CanonicalizationError(f"Attestation message rejected: {e}") from e


def canonicalize_message(message: Union[AttestationMessage, Mapping[str, Any]]) -> bytes:
    """Validate then encode the signed attestation message as sorted-key CBOR."""
    parsed = validate_message(message)
    return canonical_cbor(parsed.model_dump())


@dataclass(frozen=True)
class SerializedMessage:
    text: str
    text_bytes: bytes
    canonical_bytes: bytes
    base64: str


def serialize_attestation_message(message: Union[AttestationMessage, Mapping[str, Any]]) -> SerializedMessage:
    """All byte forms a signer may have used for the same message."""
    parsed = validate_message(message)
    payload = parsed.model_dump()
    text_bytes = canonical_json(payload)
    canonical_bytes = canonical_cbor(payload)
    return SerializedMessage(
        text=text_bytes.decode("utf-8"),
        text_bytes=text_bytes,
        canonical_bytes=canonical_bytes,
        base64=b64_encode(canonical_bytes),
    )
