# proofledger/spv/distribute.py
"""
Proportional revenue split across SPV token holders.

Amounts are rounded once, here, to whole stroops (10^-7) with ROUND_HALF_UP.
Holders whose payout rounds below one stroop are dropped and counted.
Every function is pure: re-running with a reduced income is how shortfalls
are handled.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Sequence

from proofledger.core.errors import DistributionError, InsufficientFundsError
from proofledger.core.types import Distribution, Payout, SettlementAsset, SpvHolder

logger = logging.getLogger(__name__)

STROOPS_PER_UNIT = Decimal(10) ** 7
STROOP = Decimal(1) / STROOPS_PER_UNIT
MIN_STROOPS = 1
RESERVE_BUFFER_XLM = Decimal(1)
MAX_FUNDING_PASSES = 8


def to_decimal(value: Any, name: str = "amount") -> Decimal:
    if isinstance(value, bool):
        raise DistributionError(f"Invalid {name}: {value!r}")
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as e:
        raise DistributionError(f"Invalid {name}: {value!r}") from e
    if not number.is_finite():
        raise DistributionError(f"Invalid {name}: {value!r}")
    return number


def to_stroops(amount: Decimal) -> int:
    return int((amount * STROOPS_PER_UNIT).to_integral_value(rounding=ROUND_HALF_UP))


def from_stroops(stroops: int) -> Decimal:
    return (Decimal(stroops) / STROOPS_PER_UNIT).quantize(STROOP)


def format_payment_amount(amount: Any) -> str:
    """Payment operation amount: at most 7 decimals, trailing zeros trimmed."""
    text = f"{from_stroops(to_stroops(to_decimal(amount))):.7f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


def calculate_distribution(
    holders: Sequence[SpvHolder],
    income: Any,
    asset: "SettlementAsset | str" = SettlementAsset.XLM,
) -> Distribution:
    income = to_decimal(income, "income")
    total_supply = sum((max(Decimal(0), to_decimal(h.balance, "balance")) for h in holders), Decimal(0))
    if total_supply <= 0:
        raise DistributionError("Holder balances must sum to more than zero.")
    if income <= 0:
        raise DistributionError("Income must be positive to build a distribution.")

    resolved_asset = SettlementAsset.normalise(asset)
    payouts = []
    total_paid = Decimal(0)
    dropped = 0

    for holder in holders:
        balance = to_decimal(holder.balance, "balance")
        if balance <= 0:
            continue
        share = balance / total_supply
        stroops = to_stroops(income * share)
        if stroops < MIN_STROOPS:
            dropped += 1
            continue
        amount = from_stroops(stroops)
        payouts.append(Payout(account=holder.account, asset=resolved_asset, amount=amount, share=share))
        total_paid += amount

    if not payouts:
        raise DistributionError("Distribution resulted in zero payouts after threshold filtering.")

    logger.debug(
        "[proofledger:spv] distribution %s: %d payouts, total %s, %d under one stroop",
        resolved_asset.value, len(payouts), total_paid, dropped,
    )
    return Distribution(payouts=payouts, total_paid=total_paid, under_stroop_dropped=dropped)


def native_balance(balances: Iterable[Mapping[str, Any]]) -> Decimal:
    """Native XLM balance from a Horizon account `balances` list."""
    for entry in balances:
        if entry.get("asset_type") == "native":
            return to_decimal(entry.get("balance", "0"), "balance")
    return Decimal(0)


def available_native_balance(
    balance: Any,
    base_fee_stroops: int,
    payout_count: int,
    reserve_buffer: Decimal = RESERVE_BUFFER_XLM,
) -> Decimal:
    """Spendable XLM after keeping a reserve buffer and paying one base fee per operation."""
    fee = Decimal(base_fee_stroops) * max(1, payout_count) / STROOPS_PER_UNIT
    return max(Decimal(0), to_decimal(balance, "balance") - reserve_buffer - fee)


def fund_distribution(
    holders: Sequence[SpvHolder],
    distribution: Distribution,
    available: Any,
    asset: "SettlementAsset | str" = SettlementAsset.XLM,
) -> Distribution:
    """
    Shrink a distribution to what the account can actually pay.

    Returns `distribution` unchanged when it fits; otherwise recomputes with
    income=available (and again by the rounding overshoot, if any).
    """
    available = to_decimal(available, "available")
    required = distribution.total_paid
    if available <= 0:
        raise InsufficientFundsError("insufficient-funds", available=available, required=required)
    if required <= available:
        return distribution

    logger.info("[proofledger:spv] shortfall: required %s, available %s; recomputing", required, available)
    income = available
    for _ in range(MAX_FUNDING_PASSES):
        try:
            funded = calculate_distribution(holders, income, asset)
        except DistributionError as e:
            raise InsufficientFundsError(f"insufficient-funds: {e}", available=available, required=required) from e
        overshoot = funded.total_paid - available
        if overshoot <= 0:
            return funded
        income -= overshoot
    raise InsufficientFundsError("insufficient-funds: rounding did not converge", available=available, required=required)
