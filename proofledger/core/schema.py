# proofledger/core/schema.py
"""
Schemas for the documents proofledger reads and signs.

Numbers in off-chain documents are frequently written as strings ("1,250.00"),
so amount fields accept either form and are normalised to Decimal.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_NON_NUMERIC = re.compile(r"[^\d.\-]")


def parse_numberish(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("Invalid number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Invalid number")
        try:
            result = Decimal(_NON_NUMERIC.sub("", cleaned))
        except InvalidOperation as e:
            raise ValueError("Invalid number") from e
    else:
        raise ValueError("Invalid number")
    if not result.is_finite():
        raise ValueError("Invalid number")
    return result


def non_negative(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    number = parse_numberish(value)
    if number < 0:
        raise ValueError("Number must be non-negative")
    return number


def non_negative_int(value: Any) -> int:
    number = non_negative(value)
    if number is None or number != number.to_integral_value():
        raise ValueError("Expected a non-negative integer")
    return int(number)


class AttestationMessage(BaseModel):
    """The message custodians sign: one week's reserve figure plus a nonce."""
    model_config = ConfigDict(extra="forbid")

    week: int
    reserveAmount: Decimal
    timestamp: str = Field(min_length=1)
    nonce: str = Field(min_length=8)

    @field_validator("week", mode="before")
    @classmethod
    def check_week(cls, value: Any) -> int:
        return non_negative_int(value)

    @field_validator("reserveAmount", mode="before")
    @classmethod
    def check_reserve(cls, value: Any) -> Decimal:
        if value is None:
            raise ValueError("Invalid number")
        return non_negative(value)


class AttestationExtras(BaseModel):
    model_config = ConfigDict(extra="allow")

    nonce: Optional[str] = Field(default=None, min_length=8)
    message: Optional[str] = None
    signedBy: Optional[str] = None
    publicKey: Optional[str] = None
    signature: Optional[str] = None
    requestCid: Optional[str] = None


class RequestAsset(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    name: Optional[str] = None
    valueUSD: Optional[Decimal] = None

    @field_validator("valueUSD", mode="before")
    @classmethod
    def check_value(cls, value: Any) -> Optional[Decimal]:
        return non_negative(value)


class RequestRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    cid: str = Field(min_length=1)
    asset: Optional[RequestAsset] = None


class AttestationMetadata(BaseModel):
    """Off-chain attestation document referenced from the ledger."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    schema_id: Optional[str] = Field(default=None, alias="schema")
    week: int
    reserveAmount: Decimal
    fileCid: str = Field(min_length=1)
    proofCid: Optional[str] = Field(default=None, min_length=1)
    issuer: str = Field(min_length=1)
    timestamp: str = Field(min_length=1)
    mime: Optional[str] = None
    size: Optional[Decimal] = None
    attestation: Optional[AttestationExtras] = None
    request: Optional[RequestRef] = None

    @field_validator("week", mode="before")
    @classmethod
    def check_week(cls, value: Any) -> int:
        return non_negative_int(value)

    @field_validator("reserveAmount", mode="before")
    @classmethod
    def check_reserve(cls, value: Any) -> Decimal:
        if value is None:
            raise ValueError("Invalid number")
        return non_negative(value)

    @field_validator("size", mode="before")
    @classmethod
    def check_size(cls, value: Any) -> Optional[Decimal]:
        return non_negative(value)

    @property
    def extras(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class ReserveMetadata(BaseModel):
    """Weekly SPV reserve snapshot (vesto.reserve@1)."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    schema_id: Literal["vesto.reserve@1"] = Field(alias="schema")
    week: int
    reserveUSD: Decimal
    spvBalanceXLM: str = Field(min_length=1)
    spvBalanceSUSD: str = Field(min_length=1)
    asOf: str = Field(min_length=1)
    lastTx: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("week", mode="before")
    @classmethod
    def check_week(cls, value: Any) -> int:
        return non_negative_int(value)

    @field_validator("reserveUSD", mode="before")
    @classmethod
    def check_reserve(cls, value: Any) -> Decimal:
        return parse_numberish(value)

    @property
    def extras(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


BRIDGE_AMOUNT_PLACES = Decimal("0.0000001")


def bridge_amount(value: Any) -> Decimal:
    if value is None:
        raise ValueError("Invalid amount")
    return parse_numberish(value).quantize(BRIDGE_AMOUNT_PLACES)


class BridgeAssetRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str
    issuer: str


class BridgeLockMetadata(BaseModel):
    """Lock of XLM or SUSD on the bridge account for release on EVM (vesto.lock@1)."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    schema_id: Literal["vesto.lock@1"] = Field(alias="schema")
    bridgeAccount: str
    chain: str
    asset: str
    assetIssuer: Optional[str] = None
    amount: Decimal
    recipient: str
    timestamp: str

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value: Any) -> Decimal:
        return bridge_amount(value)


class BridgeMintMetadata(BaseModel):
    """SUSD minted on the ledger against an EVM lock (vesto.mint@1)."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    schema_id: Literal["vesto.mint@1"] = Field(alias="schema")
    bridgeAccount: str
    targetAccount: str
    amount: Decimal
    asset: BridgeAssetRef
    evmLockProofCid: str
    timestamp: str

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value: Any) -> Decimal:
        return bridge_amount(value)


class BridgeRedeemMetadata(BaseModel):
    """SUSD returned to the bridge account for redemption on EVM (vesto.redeem@1)."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    schema_id: Literal["vesto.redeem@1"] = Field(alias="schema")
    bridgeAccount: str
    targetChain: str
    recipient: str
    amount: Decimal
    asset: BridgeAssetRef
    burnTx: Optional[str] = None
    timestamp: str

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value: Any) -> Decimal:
        return bridge_amount(value)
