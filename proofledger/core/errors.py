# proofledger/core/errors.py
"""
Exception taxonomy.

Validation errors always reach the caller. Transport errors (GatewayError) are
turned into a Recorded status by the verifier and never escape it.
"""


class ProofLedgerError(Exception):
    """Base class for every error raised by proofledger."""


class ValidationError(ProofLedgerError, ValueError):
    """Input does not satisfy a structural or schema requirement."""


class InvalidCidError(ValidationError):
    pass


class KeyLengthError(ValidationError):
    pass


class CanonicalizationError(ValidationError):
    """Message rejected by the signing schema before encoding."""


class MetadataParseError(ValidationError):
    """Fetched document decoded fine but violates the metadata schema."""

    def __init__(self, message: str, issues: list[str] | None = None):
        super().__init__(message)
        self.issues = issues or []


class DistributionError(ValidationError):
    pass


class InsufficientFundsError(DistributionError):
    def __init__(self, message: str, available=None, required=None):
        super().__init__(message)
        self.available = available
        self.required = required


class GatewayError(ProofLedgerError):
    """Every gateway failed; message carries the last failure seen."""

    def __init__(self, message: str, status: int | None = None, url: str | None = None):
        super().__init__(message)
        self.status = status
        self.url = url


class BackendUnavailable(ProofLedgerError):
    """A signature backend cannot serve the request on this platform."""
