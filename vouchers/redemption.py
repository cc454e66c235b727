# vouchers/redemption.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Any, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import (
    User, Role, Voucher, VoucherType, VoucherStatus, VoucherUsage,
    VoucherRedemptionAttempt, AttemptStatus,
)
from blueprints.package_helpers import PackageActivationHelper
from vouchers.errors import (
    VoucherError, VoucherNotFound, VoucherNotRedeemable, RedemptionForbidden,
    AlreadyRedeemed, UnknownVoucherType, RedemptionTargetNotFound,
    InvalidVoucherPackage, PersistenceFailure,
)
from logger import voucher_logger as logger


def normalize_code(code) -> str:
    return (code or "").strip().upper()


def _already_redeemed(voucher_id: int, user_id: int) -> bool:
    return VoucherUsage.query.filter_by(voucher_id=voucher_id, user_id=user_id).first() is not None


@dataclass
class AppliedBenefit:
    description: str
    details: Dict[str, Any]
    usage_fields: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class VoucherRedemptionEngine:
    """
    Validates and applies one voucher redemption inside a single transaction.

    Every rejected attempt is written to voucher_redemption_attempts after the
    redemption transaction has been rolled back, so no benefit is ever half applied.
    """

    def redeem_voucher(
        self,
        code: str,
        acting_user: User,
        target_customer_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        normalized = normalize_code(code)
        audit = {
            "code": normalized[:50] or None,
            "acting_user_id": acting_user.id,
            "user_id": None,
            "voucher_id": None,
            "ip_address": ip_address,
            "user_agent": (user_agent or "")[:255] or None,
        }

        try:
            target = self._resolve_target(acting_user, target_customer_id)
            audit["user_id"] = target.id

            voucher = (
                Voucher.query
                .filter(func.upper(Voucher.code) == normalized)
                .with_for_update()
                .populate_existing()
                .first()
            ) if normalized else None
            if voucher is None:
                raise VoucherNotFound()
            audit["voucher_id"] = voucher.id

            status = voucher.status()
            if status is not VoucherStatus.VALID:
                raise VoucherNotRedeemable(status)

            self._check_dealer_rules(voucher, target)

            if _already_redeemed(voucher.id, target.id):
                raise AlreadyRedeemed()

            target = (
                User.query.filter_by(id=target.id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            now = datetime.now(timezone.utc)
            benefit = self._apply_benefit(voucher, target, acting_user.id, now)

            db.session.add(VoucherUsage(
                voucher_id=voucher.id,
                user_id=target.id,
                redeemed_by_id=acting_user.id,
                notes=benefit.description,
                ip_address=ip_address,
                user_agent=audit["user_agent"],
                used_at=now,
                **benefit.usage_fields
            ))
            # The unique (voucher_id, user_id) constraint settles concurrent redemptions here
            db.session.flush()

            voucher.usage_count = Voucher.usage_count + 1
            target.last_voucher_redemption = now

            db.session.add(VoucherRedemptionAttempt(
                voucher_id=voucher.id,
                user_id=target.id,
                acting_user_id=acting_user.id,
                code=audit["code"],
                attempt_status=AttemptStatus.SUCCESS.value,
                ip_address=ip_address,
                user_agent=audit["user_agent"],
                created_at=now,
            ))

            response = {
                "message": "Voucher redeemed successfully",
                "voucher": {
                    "code": voucher.code,
                    "type": voucher.type,
                    "value": float(voucher.value),
                    "description": voucher.description,
                },
                "benefit": dict(description=benefit.description, **benefit.details),
                "balances": {
                    "accountBalance": float(target.account_balance or 0),
                    "messageBalance": target.message_balance or 0,
                    "voucherCredits": float(target.voucher_credits or 0),
                    "pointBalance": float(target.point_balance or 0),
                },
                "redemption": {
                    "userId": target.id,
                    "redeemedBy": acting_user.id,
                    "redeemedAt": now.isoformat(),
                },
                "warnings": benefit.warnings,
            }
            db.session.commit()

        except IntegrityError as e:
            db.session.rollback()
            error = AlreadyRedeemed()
            self._record_rejection(audit, error)
            raise error from e
        except VoucherError as error:
            db.session.rollback()
            self._record_rejection(audit, error)
            raise
        except Exception as e:
            db.session.rollback()
            logger.error(f"Voucher redemption of {normalized} failed: {e}", exc_info=True)
            error = PersistenceFailure()
            self._record_rejection(audit, error)
            raise error from e

        logger.info(
            f"Voucher {normalized} redeemed for user {response['redemption']['userId']} "
            f"by {acting_user.id}: {benefit.description}"
        )
        return response

    def _resolve_target(self, acting_user: User, target_customer_id: Optional[int]) -> User:
        if target_customer_id is None or target_customer_id == acting_user.id:
            target = db.session.get(User, acting_user.id)
            if target is None:
                raise RedemptionTargetNotFound("User not found")
            return target

        if acting_user.role is Role.CUSTOMER:
            raise RedemptionForbidden("Customers can only redeem vouchers for themselves")

        target = db.session.get(User, target_customer_id)
        if target is None:
            raise RedemptionTargetNotFound()
        return target

    def _check_dealer_rules(self, voucher: Voucher, target: User) -> None:
        if not target.role.is_dealer:
            return
        if not voucher.allow_dealer_redemption:
            raise RedemptionForbidden("Dealers cannot redeem this voucher")
        if target.id in (voucher.dealer_id, voucher.created_by_id):
            raise RedemptionForbidden("Dealers cannot redeem their own vouchers")

    def _apply_benefit(self, voucher: Voucher, target: User, acting_user_id: int, now: datetime) -> AppliedBenefit:
        try:
            voucher_type = VoucherType(voucher.type)
        except ValueError:
            raise UnknownVoucherType(voucher.type)

        value = Decimal(str(voucher.value))

        if voucher_type is VoucherType.CREDIT:
            previous = Decimal(str(target.account_balance or 0))
            target.account_balance = previous + value
            target.voucher_credits = Decimal(str(target.voucher_credits or 0)) + value
            return AppliedBenefit(
                description=f"{value} credit added to your account",
                details={
                    "type": voucher_type.value,
                    "amount": float(value),
                    "previousBalance": float(previous),
                    "newBalance": float(target.account_balance),
                },
                usage_fields={"credit_applied": value},
            )

        if voucher_type is VoucherType.MESSAGES:
            count = int(value)
            previous = target.message_balance or 0
            target.message_balance = previous + count
            return AppliedBenefit(
                description=f"{count} messages added to your account balance",
                details={
                    "type": voucher_type.value,
                    "count": count,
                    "previousBalance": previous,
                    "newBalance": target.message_balance,
                },
                usage_fields={"messages_applied": count},
            )

        if voucher_type is VoucherType.PERCENTAGE:
            return AppliedBenefit(
                description=f"{value}% discount saved for your next purchase",
                details={"type": voucher_type.value, "discount": float(value)},
                usage_fields={"discount_applied": value},
            )

        package = voucher.package
        if package is None or not package.is_active:
            raise InvalidVoucherPackage()

        subscription, replaced = PackageActivationHelper.activate_package(
            target,
            package,
            purchase_type='voucher_redemption',
            voucher_id=voucher.id,
            created_by_id=acting_user_id,
            now=now,
        )
        description = (
            f"{package.name} package activated for {package.duration_days} days "
            f"({package.message_limit} messages)"
        )
        warnings = []
        if replaced:
            description += f". Previous {replaced['packageName']} subscription has been discontinued."
            warnings.append(
                f"Your previous {replaced['packageName']} subscription "
                f"({replaced['daysRemaining']} days remaining) has been replaced by this voucher."
            )
        return AppliedBenefit(
            description=description,
            details={
                "type": voucher_type.value,
                "packageId": package.id,
                "packageName": package.name,
                "duration": package.duration_days,
                "messageLimit": package.message_limit,
                "subscriptionId": subscription.id,
                "replacedSubscription": replaced,
            },
            usage_fields={
                "package_assigned_id": package.id,
                "customer_package_id": subscription.id,
            },
            warnings=warnings,
        )

    def _record_rejection(self, audit: Dict[str, Any], error: VoucherError) -> None:
        try:
            db.session.add(VoucherRedemptionAttempt(
                voucher_id=audit["voucher_id"],
                user_id=audit["user_id"],
                acting_user_id=audit["acting_user_id"],
                code=audit["code"],
                attempt_status=error.attempt_status.value,
                failure_reason=error.reason[:255],
                ip_address=audit["ip_address"],
                user_agent=audit["user_agent"],
            ))
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to record redemption attempt for {audit['code']}: {e}", exc_info=True)
            raise PersistenceFailure("Failed to record redemption attempt") from e

        logger.warning(
            f"Voucher redemption {error.attempt_status.value} for code {audit['code']} "
            f"(user {audit['user_id']}, by {audit['acting_user_id']}): {error.reason}"
        )


redemption_engine = VoucherRedemptionEngine()


def redeem_voucher(code, acting_user, target_customer_id=None, ip_address=None, user_agent=None):
    return redemption_engine.redeem_voucher(
        code, acting_user, target_customer_id=target_customer_id,
        ip_address=ip_address, user_agent=user_agent,
    )
