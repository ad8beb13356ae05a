# proofledger/spv/income.py
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from proofledger.chain.resolver import parse_timestamp, transaction_attr
from proofledger.core.types import SettlementAsset

logger = logging.getLogger(__name__)

WINDOW_DAYS = (7, 30)


@dataclass(frozen=True)
class SpvPayment:
    hash: str
    amount: Decimal
    asset: SettlementAsset
    created_at: str
    from_account: Optional[str] = None
    to: Optional[str] = None
    memo: Optional[str] = None


@dataclass(frozen=True)
class SpvIncome:
    income_xlm: Decimal
    income_susd: Decimal
    ops_count: int
    window_days: int
    fetched_at: str
    last_tx_hash: Optional[str] = None
    last_seen_cursor: Optional[str] = None
    payments: List[SpvPayment] = field(default_factory=list)

    def income_for(self, asset: "SettlementAsset | str") -> Decimal:
        return self.income_susd if SettlementAsset.normalise(asset) is SettlementAsset.SUSD else self.income_xlm


def _amount(value: Any) -> Decimal:
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return Decimal(0)
    return number if number.is_finite() else Decimal(0)


def summarize_income(
    records: Iterable[Mapping[str, Any]],
    account: str,
    days: int = 7,
    susd: Optional[Tuple[str, str]] = None,
    now: Optional[datetime] = None,
) -> SpvIncome:
    """
    Sum incoming native and SUSD payments to `account` over the last 7 or 30 days.
    Records are Horizon payments, newest first; anything else is ignored.
    """
    window = 30 if days == 30 else 7
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=window)
    account = account.strip()

    income_xlm = Decimal(0)
    income_susd = Decimal(0)
    payments: List[SpvPayment] = []
    last_tx_hash = None
    last_cursor = None

    for record in records:
        if not record or record.get("type") != "payment":
            continue
        if (record.get("to") or "").strip() != account:
            continue
        created = parse_timestamp(record.get("created_at"))
        if created is None or created < since:
            continue
        amount = _amount(record.get("amount"))
        if amount <= 0:
            continue

        if (record.get("asset_type") or "").lower() == "native":
            asset = SettlementAsset.XLM
            income_xlm += amount
        elif (
            susd
            and (record.get("asset_code") or "").strip() == susd[0]
            and (record.get("asset_issuer") or "").strip() == susd[1]
        ):
            asset = SettlementAsset.SUSD
            income_susd += amount
        else:
            continue

        payments.append(SpvPayment(
            hash=record.get("transaction_hash", ""),
            amount=amount,
            asset=asset,
            created_at=record.get("created_at", ""),
            from_account=record.get("from"),
            to=record.get("to"),
            memo=transaction_attr(record).get("memo") or record.get("memo"),
        ))
        if last_tx_hash is None:
            last_tx_hash = record.get("transaction_hash")
            last_cursor = record.get("paging_token")

    logger.debug(
        "[proofledger:spv] income %dd: %s XLM, %s SUSD over %d payments",
        window, income_xlm, income_susd, len(payments),
    )
    return SpvIncome(
        income_xlm=income_xlm,
        income_susd=income_susd,
        ops_count=len(payments),
        window_days=window,
        fetched_at=now.isoformat(),
        last_tx_hash=last_tx_hash,
        last_seen_cursor=last_cursor,
        payments=payments,
    )
