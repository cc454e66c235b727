# vouchers/management.py
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import User, Role, Voucher, VoucherType, SubscriptionPackage
from vouchers.errors import (
    InvalidVoucherDefinition, DuplicateVoucherCode, InvalidVoucherPackage,
    VoucherPermissionError, VoucherNotFoundById, PersistenceFailure,
)
from vouchers.redemption import normalize_code
from logger import voucher_logger as logger

MAX_CODE_LENGTH = 50


def _optional_amount(value, name: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidVoucherDefinition(f"Invalid {name}")
    if not amount.is_finite() or amount < 0:
        raise InvalidVoucherDefinition(f"Invalid {name}")
    return amount


def create_voucher(
    creator: User,
    code: str,
    voucher_type: str,
    value,
    description: Optional[str] = None,
    usage_limit: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    package_id: Optional[int] = None,
    allow_dealer_redemption: bool = False,
    min_purchase_amount=None,
    max_discount_amount=None,
) -> Voucher:
    if not creator.role.is_dealer:
        raise VoucherPermissionError("Customers cannot create vouchers")

    normalized = normalize_code(code)
    if not normalized:
        raise InvalidVoucherDefinition("Voucher code is required")
    if len(normalized) > MAX_CODE_LENGTH:
        raise InvalidVoucherDefinition(f"Voucher code must be at most {MAX_CODE_LENGTH} characters")

    try:
        parsed_type = VoucherType(str(voucher_type).lower())
    except ValueError:
        raise InvalidVoucherDefinition(
            "Invalid voucher type. Must be: credit, messages, percentage, or package"
        )

    amount = _optional_amount(value, "value")
    if amount is None or amount <= 0:
        raise InvalidVoucherDefinition("Value must be greater than 0")
    if parsed_type is VoucherType.PERCENTAGE and amount > 100:
        raise InvalidVoucherDefinition("Percentage vouchers cannot exceed 100%")
    if parsed_type is VoucherType.MESSAGES and amount != amount.to_integral_value():
        raise InvalidVoucherDefinition("Message vouchers must grant a whole number of messages")

    if usage_limit is not None:
        try:
            usage_limit = int(usage_limit)
        except (TypeError, ValueError):
            raise InvalidVoucherDefinition("Usage limit must be a whole number")
        if usage_limit <= 0:
            raise InvalidVoucherDefinition("Usage limit must be greater than 0")

    if parsed_type is VoucherType.PACKAGE:
        package = db.session.get(SubscriptionPackage, package_id) if package_id else None
        if package is None or not package.is_active:
            raise InvalidVoucherPackage("Package vouchers need an active package")
    else:
        package_id = None

    if Voucher.query.filter_by(code=normalized).first() is not None:
        raise DuplicateVoucherCode()

    voucher = Voucher(
        code=normalized,
        description=description,
        type=parsed_type.value,
        value=amount,
        usage_limit=usage_limit,
        usage_count=0,
        is_active=True,
        expires_at=expires_at,
        package_id=package_id,
        created_by_id=creator.id,
        # Vouchers created below ADMIN belong to that dealer
        dealer_id=creator.id if creator.role.level > Role.ADMIN.level else None,
        allow_dealer_redemption=bool(allow_dealer_redemption),
        min_purchase_amount=_optional_amount(min_purchase_amount, "minimum purchase amount"),
        max_discount_amount=_optional_amount(max_discount_amount, "maximum discount amount"),
    )

    try:
        db.session.add(voucher)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise DuplicateVoucherCode()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to create voucher {normalized}: {e}", exc_info=True)
        raise PersistenceFailure("Failed to create voucher")

    logger.info(f"Voucher {voucher.code} ({voucher.type} {voucher.value}) created by user {creator.id}")
    return voucher


def deactivate_voucher(voucher_id: int, acting_user: User) -> Dict[str, Any]:
    """Soft-deactivate; used vouchers are never deleted."""
    voucher = Voucher.query.filter_by(id=voucher_id).with_for_update().first()
    if voucher is None:
        raise VoucherNotFoundById()

    if acting_user.role.level > Role.ADMIN.level and voucher.dealer_id != acting_user.id:
        raise VoucherPermissionError("Dealers can only deactivate their own vouchers")

    voucher.is_active = False
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to deactivate voucher {voucher_id}: {e}", exc_info=True)
        raise PersistenceFailure("Failed to deactivate voucher")

    logger.info(f"Voucher {voucher.code} deactivated by user {acting_user.id}")
    return voucher.to_dict()
