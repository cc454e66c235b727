# vouchers/history.py
from typing import List, Dict, Any

from sqlalchemy import or_, func

from extensions import db
from models import (
    Voucher, VoucherUsage, VoucherRedemptionAttempt, VoucherType,
    AttemptStatus, SubscriptionPackage, as_utc,
)


def _benefit_label(voucher: Voucher, package: SubscriptionPackage) -> str:
    if voucher.type == VoucherType.CREDIT.value:
        return f"{voucher.value} credit"
    if voucher.type == VoucherType.MESSAGES.value:
        return f"{int(voucher.value)} messages"
    if voucher.type == VoucherType.PERCENTAGE.value:
        return f"{voucher.value}% discount"
    if voucher.type == VoucherType.PACKAGE.value and package is not None:
        return f"{package.name} package ({package.duration_days} days, {package.message_limit} messages)"
    if voucher.type == VoucherType.PACKAGE.value:
        return "Package activation"
    return "Voucher benefit"


def get_redemption_history(user_id: int) -> List[Dict[str, Any]]:
    """Successful redemptions for a user, newest first."""
    rows = (
        db.session.query(VoucherUsage, Voucher, SubscriptionPackage)
        .join(Voucher, VoucherUsage.voucher_id == Voucher.id)
        .outerjoin(SubscriptionPackage, Voucher.package_id == SubscriptionPackage.id)
        .filter(VoucherUsage.user_id == user_id)
        .order_by(VoucherUsage.used_at.desc(), VoucherUsage.id.desc())
        .all()
    )

    history = []
    for usage, voucher, package in rows:
        history.append({
            "id": usage.id,
            "code": voucher.code,
            "type": voucher.type,
            "value": float(voucher.value),
            "voucherDescription": voucher.description,
            "benefitDescription": _benefit_label(voucher, package),
            "notes": usage.notes,
            "creditApplied": float(usage.credit_applied) if usage.credit_applied is not None else None,
            "messagesApplied": usage.messages_applied,
            "discountApplied": float(usage.discount_applied) if usage.discount_applied is not None else None,
            "packageName": package.name if package else None,
            "subscriptionId": usage.customer_package_id,
            "redeemedBy": usage.redeemed_by_id,
            "usedAt": as_utc(usage.used_at).isoformat() if usage.used_at else None,
        })
    return history


def get_redemption_attempt_stats(user_id: int) -> Dict[str, int]:
    """Counts of redemption attempts by outcome, for attempts on or by this user."""
    rows = (
        db.session.query(VoucherRedemptionAttempt.attempt_status, func.count(VoucherRedemptionAttempt.id))
        .filter(or_(
            VoucherRedemptionAttempt.user_id == user_id,
            VoucherRedemptionAttempt.acting_user_id == user_id,
        ))
        .group_by(VoucherRedemptionAttempt.attempt_status)
        .all()
    )
    stats = {status.value: 0 for status in AttemptStatus}
    for status, count in rows:
        stats[status] = count
    stats["total"] = sum(count for _, count in rows)
    return stats


def get_available_discounts(user_id: int) -> List[Dict[str, Any]]:
    """Percentage discounts a user has picked up through redemption."""
    rows = (
        db.session.query(VoucherUsage, Voucher)
        .join(Voucher, VoucherUsage.voucher_id == Voucher.id)
        .filter(VoucherUsage.user_id == user_id, VoucherUsage.discount_applied.isnot(None))
        .order_by(VoucherUsage.used_at.desc(), VoucherUsage.id.desc())
        .all()
    )
    return [
        {
            "code": voucher.code,
            "discountPercentage": float(usage.discount_applied),
            "minPurchaseAmount": float(voucher.min_purchase_amount) if voucher.min_purchase_amount is not None else None,
            "maxDiscountAmount": float(voucher.max_discount_amount) if voucher.max_discount_amount is not None else None,
            "obtainedAt": as_utc(usage.used_at).isoformat() if usage.used_at else None,
        }
        for usage, voucher in rows
    ]
