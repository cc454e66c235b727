# bizpoints/ledger.py
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import User, Role, LedgerTransaction, LedgerTransactionType
from bizpoints.config import CommissionConfigHelper
from bizpoints.errors import (
    BizPointsError, InsufficientBalance, InvalidLedgerAdjustment,
    LedgerPermissionError, LedgerUserNotFound, PersistenceFailure,
)
from logger import app_logger as logger

ADJUSTMENT_TYPES = (
    LedgerTransactionType.ADMIN_CREDIT,
    LedgerTransactionType.ADMIN_DEBIT,
    LedgerTransactionType.BONUS,
    LedgerTransactionType.SETTLEMENT_WITHDRAW,
)


def to_amount(value) -> Decimal:
    """Parse a positive money amount with two decimal places."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidLedgerAdjustment(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidLedgerAdjustment("Amount must be greater than 0")
    return amount.quantize(CommissionConfigHelper.AMOUNT_QUANT)


def post_entry(
    user_id: int,
    entry_type: LedgerTransactionType,
    amount: Decimal,
    description: str,
    reference: Optional[str] = None,
    source_user_id: Optional[int] = None,
    created_by_id: Optional[int] = None,
) -> LedgerTransaction:
    """
    Move `amount` (signed) into the user's point balance and append the ledger row.

    Locks the user row, reads the balance, writes balance + amount and the
    matching LedgerTransaction in the caller's transaction. Flushes, never commits.
    """
    user = (
        User.query.filter_by(id=user_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if user is None:
        raise LedgerUserNotFound(f"User {user_id} not found")

    current_balance = Decimal(str(user.point_balance or 0))
    new_balance = current_balance + amount
    if new_balance < 0:
        raise InsufficientBalance(
            f"Insufficient balance. Current: {current_balance}, Requested: {abs(amount)}"
        )

    user.point_balance = new_balance
    entry = LedgerTransaction(
        user_id=user.id,
        type=entry_type,
        amount=amount,
        balance_after=new_balance,
        description=description[:255],
        reference=reference,
        source_user_id=source_user_id,
        created_by_id=created_by_id,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def _parse_adjustment_type(entry_type: Union[str, LedgerTransactionType]) -> LedgerTransactionType:
    if isinstance(entry_type, LedgerTransactionType):
        parsed = entry_type
    else:
        try:
            parsed = LedgerTransactionType(str(entry_type).upper())
        except ValueError:
            raise InvalidLedgerAdjustment("Invalid transaction type")
    if parsed not in ADJUSTMENT_TYPES:
        raise InvalidLedgerAdjustment(f"{parsed.value} cannot be posted manually")
    return parsed


def adjust_balance(
    target_user_id: int,
    entry_type: Union[str, LedgerTransactionType],
    amount,
    acting_user: User,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Admin credit/debit/bonus/settlement on a user's BizPoints, committed on success."""
    parsed_type = _parse_adjustment_type(entry_type)
    value = to_amount(amount)

    if acting_user.role is Role.CUSTOMER:
        raise LedgerPermissionError("Customers cannot post BizPoints adjustments")
    # Below ADMIN, dealers may only touch their own balance
    if acting_user.role.level > Role.ADMIN.level and target_user_id != acting_user.id:
        raise LedgerPermissionError("Dealers can only create transactions for themselves")

    signed = -value if parsed_type.is_debit else value
    text = description or f"{parsed_type.value.replace('_', ' ').title()} by {acting_user.name}"

    try:
        entry = post_entry(
            target_user_id,
            parsed_type,
            signed,
            text,
            created_by_id=acting_user.id,
        )
        db.session.commit()
    except BizPointsError:
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"BizPoints adjustment failed for user {target_user_id}: {e}", exc_info=True)
        raise PersistenceFailure("Failed to record BizPoints transaction")

    logger.info(
        f"BizPoints {parsed_type.value} of {signed} for user {target_user_id} by {acting_user.id}, "
        f"balance {entry.balance_after}"
    )
    return {
        "transaction": entry.to_dict(),
        "newBalance": float(entry.balance_after),
    }


def get_transactions(user_id: int, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
    user = db.session.get(User, user_id)
    if user is None:
        raise LedgerUserNotFound(f"User {user_id} not found")

    query = LedgerTransaction.query.filter_by(user_id=user_id)
    total = query.count()
    entries = (
        query.order_by(LedgerTransaction.created_at.desc(), LedgerTransaction.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {
        "userId": user_id,
        "entries": [entry.to_dict() for entry in entries],
        "totalCount": total,
        "currentBalance": float(user.point_balance or 0),
    }


def reconcile_point_balance(user_id: int, fix: bool = False) -> Dict[str, Any]:
    """Compare the cached point_balance with the ledger sum; optionally rewrite the cache."""
    user = db.session.get(User, user_id)
    if user is None:
        raise LedgerUserNotFound(f"User {user_id} not found")

    ledger_sum = db.session.query(
        func.coalesce(func.sum(LedgerTransaction.amount), 0)
    ).filter(LedgerTransaction.user_id == user_id).scalar()
    ledger_sum = Decimal(str(ledger_sum)).quantize(CommissionConfigHelper.AMOUNT_QUANT)
    stored = Decimal(str(user.point_balance or 0)).quantize(CommissionConfigHelper.AMOUNT_QUANT)
    drift = stored - ledger_sum

    fixed = False
    if fix and drift != 0:
        try:
            locked = User.query.filter_by(id=user_id).with_for_update().populate_existing().first()
            locked.point_balance = ledger_sum
            db.session.commit()
            fixed = True
            logger.warning(f"Point balance of user {user_id} rebuilt from ledger: {stored} -> {ledger_sum}")
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to rebuild point balance for user {user_id}: {e}", exc_info=True)
            raise PersistenceFailure("Failed to rebuild point balance")

    return {
        "userId": user_id,
        "storedBalance": float(stored),
        "ledgerBalance": float(ledger_sum),
        "drift": float(drift),
        "fixed": fixed,
    }
