# proofledger/verify/verifier.py
"""
Verification engine: link a ledger transaction to its off-chain document.

    Pending ──fetch fails──────────────► Recorded(reason)
       │──schema violation─────────────► Invalid(schema:...)
       │──join rule fails──────────────► Invalid | Recorded (strict / lenient)
       └──join holds──► Verified ──signature contradicts──► Invalid | Recorded

Transport failures never escape `AttestationVerifier.verify`.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from proofledger.core.canon import serialize_attestation_message
from proofledger.core.cid import cid_sha256_hex, try_normalize_cid
from proofledger.core.config import load_settings
from proofledger.core.encoding import decode_signature, mask, strip_hex_prefix, try_b64_decode
from proofledger.core.errors import BackendUnavailable, CanonicalizationError, GatewayError, MetadataParseError, ValidationError
from proofledger.core.schema import AttestationMetadata
from proofledger.core.types import AttestationCandidate, AttestationStatus, EffectBundle
from proofledger.crypto.hashing import sha256_bytes, signed_message_hash
from proofledger.crypto.keys import Ed25519Backend, default_backend, public_key_from_identifier
from proofledger.fetch.gateway import MetadataEnvelope, MetadataFetcher, default_fetcher

logger = logging.getLogger(__name__)

# Manage-data names that prove intentional on-chain recording
RECOGNIZED_MANAGE_DATA_KEYS = ("attestation.cid", "reserve.cid")


def is_recognized_key(name: Optional[str]) -> bool:
    lowered = (name or "").strip().lower()
    return any(lowered == key or lowered.endswith("." + key) for key in RECOGNIZED_MANAGE_DATA_KEYS)


def same_cid(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    left = try_normalize_cid(a) or a.strip()
    right = try_normalize_cid(b) or b.strip()
    return left.lower() == right.lower()


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@dataclass
class VerificationCheck:
    name: str
    passed: bool
    detail: str = ""


@dataclass
class VerificationResult:
    status: AttestationStatus = AttestationStatus.PENDING
    reason: Optional[str] = None
    envelope: Optional[MetadataEnvelope] = None
    matched: Optional[str] = None
    checks: List[VerificationCheck] = field(default_factory=list)

    @property
    def metadata(self) -> Optional[AttestationMetadata]:
        return self.envelope.metadata if self.envelope else None

    def settle(self, status: AttestationStatus, reason: Optional[str] = None) -> "VerificationResult":
        self.status = status
        self.reason = reason
        return self

    def __bool__(self):
        return self.status is AttestationStatus.VERIFIED

    def __str__(self):
        if self:
            return f"Verified ✓ ({self.matched})" if self.matched else "Verified ✓"
        lines = [f"{self.status.value}: {self.reason or 'no reason recorded'}"]
        for check in self.checks:
            lines.append(f"  • {check.name}: {'ok' if check.passed else 'failed'} {check.detail}".rstrip())
        return "\n".join(lines)


@dataclass(frozen=True)
class VerificationContext:
    """Ledger-side identifiers the fetched document has to agree with."""
    metadata_cid: str
    proof_cid: Optional[str] = None
    memo_hash_hex: Optional[str] = None
    request_cid: Optional[str] = None
    request_memo_hash_hex: Optional[str] = None
    manage_data_name: Optional[str] = None
    source_account: Optional[str] = None

    @classmethod
    def from_candidate(cls, candidate: AttestationCandidate) -> "VerificationContext":
        bundle = candidate.bundle or EffectBundle()
        payment = candidate.payment
        return cls(
            metadata_cid=candidate.metadata_cid,
            proof_cid=bundle.metadata_cid,
            memo_hash_hex=candidate.memo_hash_hex,
            request_cid=bundle.request_cid,
            request_memo_hash_hex=candidate.memo_hash_hex,
            manage_data_name=bundle.manage_data_name,
            source_account=payment.tx_source_account or payment.source_account or payment.from_account,
        )


@dataclass(frozen=True)
class SignatureBundle:
    signature_string: Optional[str] = None
    signature_bytes: Optional[bytes] = None
    public_key: Optional[str] = None
    nonce: Optional[str] = None
    request_cid: Optional[str] = None
    message_base64: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool(self.signature_bytes and self.public_key and self.nonce)

    @classmethod
    def resolve(
        cls,
        effect_bundle: Optional[EffectBundle],
        envelope: Optional[MetadataEnvelope],
        source_account: Optional[str] = None,
    ) -> "SignatureBundle":
        """Effect bundle, then `metadata.attestation`, then top-level extras, then the tx source."""
        effect = effect_bundle or EffectBundle()
        metadata = envelope.metadata if envelope else None
        nested = getattr(metadata, "attestation", None)
        request = getattr(metadata, "request", None)
        extras: Mapping[str, Any] = envelope.extras if envelope else {}

        signature = _first(effect.signature_string, getattr(nested, "signature", None), extras.get("signature"))
        return cls(
            signature_string=signature,
            signature_bytes=decode_signature(signature) if signature else None,
            public_key=_first(
                effect.public_key,
                getattr(nested, "publicKey", None),
                getattr(nested, "signedBy", None),
                extras.get("publicKey"),
                extras.get("signedBy"),
                source_account,
            ),
            nonce=_first(effect.nonce, getattr(nested, "nonce", None), extras.get("nonce")),
            request_cid=_first(
                effect.request_cid,
                getattr(request, "cid", None),
                getattr(nested, "requestCid", None),
                extras.get("requestCid"),
            ),
            message_base64=_first(getattr(nested, "message", None), extras.get("message")),
        )


@dataclass(frozen=True)
class VerificationCandidate:
    source: str
    payload: bytes


def build_verification_candidates(metadata: AttestationMetadata, bundle: SignatureBundle) -> List[VerificationCandidate]:
    message = None
    if bundle.nonce:
        message = {
            "week": metadata.week,
            "reserveAmount": metadata.reserveAmount,
            "timestamp": metadata.timestamp,
            "nonce": bundle.nonce,
        }
    return build_message_candidates(message, bundle.message_base64)


def build_message_candidates(
    message: Optional[Mapping[str, Any]],
    message_base64: Optional[str] = None,
) -> List[VerificationCandidate]:
    """Every byte form a custodian wallet may have signed, each raw, SEP-23 hashed and sha256 hashed."""
    candidates: List[VerificationCandidate] = []

    def register(source: str, payload: Optional[bytes]) -> None:
        if not payload:
            return
        candidates.append(VerificationCandidate(source, payload))
        candidates.append(VerificationCandidate(f"{source}:sep23", signed_message_hash(payload)))
        candidates.append(VerificationCandidate(f"{source}:sha256", sha256_bytes(payload)))

    encoded = (message_base64 or "").strip()
    if encoded:
        register("bundle:message-text", encoded.encode("utf-8"))
        register("bundle:message-bytes", try_b64_decode(encoded))

    if message is not None:
        try:
            serialized = serialize_attestation_message(message)
        except CanonicalizationError as e:
            logger.debug("[proofledger:verify] metadata message not serialisable: %s", e)
        else:
            register("metadata:serialized-text", serialized.text_bytes)
            register("metadata:canonical-bytes", serialized.canonical_bytes)

    seen = set()
    unique = []
    for candidate in candidates:
        if candidate.payload not in seen:
            seen.add(candidate.payload)
            unique.append(candidate)
    return unique


@dataclass(frozen=True)
class SignatureOutcome:
    status: AttestationStatus
    matched: Optional[str] = None
    reason: Optional[str] = None


def match_candidates(
    public_key: str,
    signature: bytes,
    candidates: List[VerificationCandidate],
    backend: Optional[Ed25519Backend] = None,
) -> SignatureOutcome:
    """Try each candidate payload against one signature; the first match wins."""
    try:
        raw_key = public_key_from_identifier(public_key)
    except ValidationError:
        return SignatureOutcome(AttestationStatus.INVALID, reason="Invalid signer public key")

    if not candidates:
        return SignatureOutcome(AttestationStatus.PENDING, reason="No verification payloads available yet")

    backend = backend or default_backend
    for candidate in candidates:
        try:
            if backend.verify(raw_key, candidate.payload, signature):
                return SignatureOutcome(AttestationStatus.VERIFIED, matched=candidate.source)
        except BackendUnavailable as e:
            logger.warning("[proofledger:verify] no backend for %s: %s", mask(public_key), e)
            return SignatureOutcome(AttestationStatus.PENDING, reason=str(e))

    return SignatureOutcome(AttestationStatus.INVALID, reason="Signature verification failed")


def verify_signature(
    metadata: AttestationMetadata,
    bundle: SignatureBundle,
    backend: Optional[Ed25519Backend] = None,
) -> SignatureOutcome:
    """Pending when inputs are missing, Verified on the first matching candidate, Invalid otherwise."""
    if not bundle.complete:
        reason = (
            "Awaiting attestation nonce or signer details"
            if bundle.signature_string
            else "Awaiting attestation signature"
        )
        return SignatureOutcome(AttestationStatus.PENDING, reason=reason)

    candidates = build_verification_candidates(metadata, bundle)
    return match_candidates(bundle.public_key, bundle.signature_bytes, candidates, backend)


def verify_memo_hash(cid: str, memo_hash_hex: Optional[str]) -> VerificationResult:
    """Detached hash proof: sha256(cid) against the hash memo."""
    result = VerificationResult()
    provided = strip_hex_prefix(memo_hash_hex or "").lower()
    if not provided:
        result.checks.append(VerificationCheck("memo-hash", False, "no hash memo"))
        return result.settle(AttestationStatus.RECORDED, "memo-hash-missing")

    expected = cid_sha256_hex(cid)
    if provided == expected:
        result.matched = "memo-hash"
        result.checks.append(VerificationCheck("memo-hash", True))
        return result.settle(AttestationStatus.VERIFIED)

    result.checks.append(VerificationCheck("memo-hash", False, f"expected {expected}"))
    return result.settle(AttestationStatus.INVALID, "memo-hash-mismatch")


async def verify_detached_proof(fetcher: MetadataFetcher, cid: str, memo_hash_hex: Optional[str]) -> VerificationResult:
    """
    Fetch a document anchored by manage_data and prove it with the hash memo.

    A fetched document only verifies through the memo hash; without a memo the
    proof stays Recorded.
    """
    try:
        envelope = await fetcher.fetch(cid)
    except MetadataParseError as e:
        return VerificationResult().settle(AttestationStatus.INVALID, str(e))
    except GatewayError as e:
        return VerificationResult().settle(AttestationStatus.RECORDED, str(e) or "metadata-fetch-failed")

    result = verify_memo_hash(cid, memo_hash_hex)
    result.envelope = envelope
    return result


class AttestationVerifier:
    """
    Fetch + join rule + optional detached signature.

    strict: join or signature mismatches are Invalid instead of Recorded.
    Defaults to PROOFLEDGER_STRICT_VERIFY.
    """

    def __init__(
        self,
        fetcher: Optional[MetadataFetcher] = None,
        strict: Optional[bool] = None,
        backend: Optional[Ed25519Backend] = None,
    ):
        self.fetcher = fetcher or default_fetcher()
        self.strict = load_settings().strict_verify if strict is None else strict
        self.backend = backend or default_backend

    @property
    def mismatch_status(self) -> AttestationStatus:
        return AttestationStatus.INVALID if self.strict else AttestationStatus.RECORDED

    def check_join(self, context: VerificationContext, envelope: MetadataEnvelope) -> VerificationCheck:
        metadata = envelope.metadata
        if is_recognized_key(context.manage_data_name):
            return VerificationCheck("join", True, f"manage-data:{context.manage_data_name}")

        if context.proof_cid and same_cid(getattr(metadata, "proofCid", None), context.proof_cid):
            return VerificationCheck("join", True, "proof-cid")

        request = getattr(metadata, "request", None)
        nested = getattr(metadata, "attestation", None)
        metadata_request = _first(
            getattr(request, "cid", None),
            getattr(nested, "requestCid", None),
            envelope.extras.get("requestCid"),
        )
        if context.request_cid and same_cid(metadata_request, context.request_cid):
            return VerificationCheck("join", True, "request-cid")

        if (
            context.memo_hash_hex
            and context.request_memo_hash_hex
            and strip_hex_prefix(context.memo_hash_hex).lower() == strip_hex_prefix(context.request_memo_hash_hex).lower()
        ):
            return VerificationCheck("join", True, "memo-hash")

        return VerificationCheck("join", False, "join-mismatch")

    async def verify(
        self,
        context: VerificationContext,
        effect_bundle: Optional[EffectBundle] = None,
    ) -> VerificationResult:
        result = VerificationResult()

        try:
            envelope = await self.fetcher.fetch(context.metadata_cid)
        except MetadataParseError as e:
            result.checks.append(VerificationCheck("schema", False, "; ".join(e.issues)))
            return result.settle(AttestationStatus.INVALID, str(e))
        except GatewayError as e:
            logger.debug("[proofledger:verify] %s unreachable: %s", context.metadata_cid, e)
            result.checks.append(VerificationCheck("fetch", False, str(e)))
            return result.settle(AttestationStatus.RECORDED, str(e) or "metadata-fetch-failed")

        result.envelope = envelope
        result.checks.append(VerificationCheck("fetch", True, envelope.gateway or ""))

        join = self.check_join(context, envelope)
        result.checks.append(join)
        if not join.passed:
            return result.settle(self.mismatch_status, "join-mismatch")

        result.matched = join.detail
        result.settle(AttestationStatus.VERIFIED)

        bundle = SignatureBundle.resolve(effect_bundle, envelope, context.source_account)
        outcome = verify_signature(envelope.metadata, bundle, self.backend)
        if outcome.status is AttestationStatus.PENDING:
            # nothing to check yet, the join decides
            result.checks.append(VerificationCheck("signature", True, f"skipped: {outcome.reason}"))
        elif outcome.status is AttestationStatus.VERIFIED:
            result.checks.append(VerificationCheck("signature", True, outcome.matched or ""))
            result.matched = f"{join.detail}+{outcome.matched}"
        else:
            result.checks.append(VerificationCheck("signature", False, outcome.reason or ""))
            result.settle(self.mismatch_status, "signature-mismatch")
        return result
