# bizpoints/commission.py
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import LedgerTransaction, LedgerTransactionType
from bizpoints.config import CommissionConfigHelper
from bizpoints.errors import InvalidCommissionRequest
from bizpoints.hierarchy import HierarchyWalker, load_commission_customer
from bizpoints.ledger import post_entry
from logger import commission_logger as logger


@dataclass
class CommissionCredit:
    dealer_id: int
    dealer_name: str
    dealer_code: Optional[str]
    role: str
    level: int
    rate_percent: float
    rate_source: str
    amount: Decimal
    new_balance: Optional[Decimal] = None
    transaction_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dealerId": self.dealer_id,
            "dealerName": self.dealer_name,
            "dealerCode": self.dealer_code,
            "role": self.role,
            "level": self.level,
            "commissionRate": self.rate_percent,
            "rateSource": self.rate_source,
            "commissionAmount": float(self.amount),
            "newBalance": float(self.new_balance) if self.new_balance is not None else None,
            "transactionId": self.transaction_id,
        }


@dataclass
class CommissionFailure:
    dealer_id: int
    dealer_name: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"dealerId": self.dealer_id, "dealerName": self.dealer_name, "error": self.error}


@dataclass
class CommissionResult:
    customer_id: int
    transaction_amount: Decimal
    transaction_reference: str
    commissions: List[CommissionCredit] = field(default_factory=list)
    duplicates: List[CommissionCredit] = field(default_factory=list)
    failures: List[CommissionFailure] = field(default_factory=list)
    truncated: bool = False

    @property
    def total_distributed(self) -> Decimal:
        return sum((c.amount for c in self.commissions), Decimal('0.00'))

    @property
    def partial(self) -> bool:
        return bool(self.failures) or self.truncated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customerId": self.customer_id,
            "transactionAmount": float(self.transaction_amount),
            "transactionReference": self.transaction_reference,
            "totalCommissionDistributed": float(self.total_distributed),
            "commissionsProcessed": len(self.commissions),
            "commissions": [c.to_dict() for c in self.commissions],
            "duplicates": [c.to_dict() for c in self.duplicates],
            "failures": [f.to_dict() for f in self.failures],
            "truncated": self.truncated,
        }


def _parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidCommissionRequest(f"Invalid transaction amount: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidCommissionRequest("Transaction amount must be greater than 0")
    return amount


def _already_credited(dealer_id: int, reference: str) -> bool:
    return db.session.query(
        LedgerTransaction.query.filter_by(
            user_id=dealer_id,
            reference=reference,
            type=LedgerTransactionType.COMMISSION_EARNED,
        ).exists()
    ).scalar()


class CommissionLedger:
    """
    Turns a completed customer payment into BizPoints credits up the dealer chain.

    Every dealer hop is its own short transaction: a failed hop is rolled back,
    logged and reported, and the walk carries on with the next dealer.
    """

    def __init__(self, walker: Optional[HierarchyWalker] = None):
        self.walker = walker or HierarchyWalker()

    def process_commission(self, customer_id: int, transaction_amount, transaction_reference: str) -> CommissionResult:
        amount = _parse_amount(transaction_amount)
        reference = (transaction_reference or "").strip()
        if not reference:
            raise InvalidCommissionRequest("Transaction reference is required")

        customer = load_commission_customer(customer_id)
        customer_name = customer.name
        customer_code = customer.dealer_code or customer.email

        walk = self.walker.walk(customer)
        result = CommissionResult(
            customer_id=customer_id,
            transaction_amount=amount,
            transaction_reference=reference,
            truncated=walk.truncated,
        )
        logger.info(
            f"Processing commission for customer {customer_id}, amount {amount}, "
            f"reference {reference}: {len(walk)} dealers in chain"
        )

        for step in walk:
            dealer = step.dealer
            credit = CommissionCredit(
                dealer_id=dealer.id,
                dealer_name=dealer.name,
                dealer_code=dealer.dealer_code,
                role=dealer.role.value,
                level=step.level,
                rate_percent=step.rate_percent,
                rate_source=step.rate_source,
                amount=CommissionConfigHelper.calculate_commission_amount(amount, step.rate),
            )
            if credit.amount <= 0:
                logger.info(f"{credit.role} {credit.dealer_id}: no commission at {credit.rate_percent}%")
                continue

            try:
                if _already_credited(credit.dealer_id, reference):
                    logger.warning(f"Commission for {reference} already credited to dealer {credit.dealer_id}")
                    result.duplicates.append(credit)
                    continue

                entry = post_entry(
                    credit.dealer_id,
                    LedgerTransactionType.COMMISSION_EARNED,
                    credit.amount,
                    f"Commission from {customer_name} ({customer_code}) payment of {amount}",
                    reference=reference,
                    source_user_id=customer_id,
                )
                credit.new_balance = entry.balance_after
                credit.transaction_id = entry.id
                db.session.commit()
                result.commissions.append(credit)
                logger.info(
                    f"Commission credited: {credit.role} {credit.dealer_id} +{credit.amount} "
                    f"({credit.rate_percent}% {credit.rate_source}), balance {credit.new_balance}"
                )
            except IntegrityError:
                # Lost a race with a concurrent run for the same reference
                db.session.rollback()
                logger.warning(f"Duplicate commission for {reference} rejected for dealer {credit.dealer_id}")
                credit.new_balance = None
                credit.transaction_id = None
                result.duplicates.append(credit)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Failed to credit commission to dealer {credit.dealer_id}: {e}", exc_info=True)
                result.failures.append(
                    CommissionFailure(dealer_id=credit.dealer_id, dealer_name=credit.dealer_name, error=str(e))
                )

        logger.info(
            f"Commission for {reference} done: {result.total_distributed} to {len(result.commissions)} dealers, "
            f"{len(result.duplicates)} duplicates, {len(result.failures)} failures"
        )
        return result

    def preview_commission(self, customer_id: int, amount) -> Dict[str, Any]:
        """Same rate resolution as process_commission, without touching balances."""
        value = _parse_amount(amount)
        customer = load_commission_customer(customer_id)
        walk = self.walker.walk(customer)

        dealers = []
        total = Decimal('0.00')
        for step in walk:
            commission_amount = CommissionConfigHelper.calculate_commission_amount(value, step.rate)
            if commission_amount <= 0:
                continue
            total += commission_amount
            dealers.append({
                "dealerId": step.dealer.id,
                "dealerName": step.dealer.name,
                "dealerCode": step.dealer.dealer_code,
                "role": step.dealer.role.value,
                "level": step.level,
                "commissionRate": step.rate_percent,
                "rateSource": step.rate_source,
                "commissionAmount": float(commission_amount),
            })

        return {
            "customerId": customer_id,
            "amount": float(value),
            "totalCommission": float(total),
            "dealers": dealers,
            "truncated": walk.truncated,
        }


commission_ledger = CommissionLedger()


def process_commission(customer_id: int, transaction_amount, transaction_reference: str) -> CommissionResult:
    return commission_ledger.process_commission(customer_id, transaction_amount, transaction_reference)


def preview_commission(customer_id: int, amount) -> Dict[str, Any]:
    return commission_ledger.preview_commission(customer_id, amount)
