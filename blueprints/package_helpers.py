# package_helpers.py
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple, Dict, Any

from models import db, CustomerPackage, SubscriptionPackage, User, as_utc


class PackageActivationHelper:

    @staticmethod
    def activate_package(
        user: User,
        package: SubscriptionPackage,
        purchase_type: str,
        voucher_id: Optional[int] = None,
        payment_id: Optional[int] = None,
        created_by_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[CustomerPackage, Optional[Dict[str, Any]]]:
        """
        Start a new subscription for `user`, closing whatever is currently active.
        Runs inside the caller's transaction: flushes, never commits.
        Returns the new CustomerPackage and details of the subscription it replaced, if any.
        """
        now = now or datetime.now(timezone.utc)

        current = (
            CustomerPackage.query
            .filter(CustomerPackage.user_id == user.id, CustomerPackage.is_active.is_(True))
            .order_by(CustomerPackage.created_at.desc(), CustomerPackage.id.desc())
            .with_for_update()
            .all()
        )

        replaced = None
        for subscription in current:
            end_date = as_utc(subscription.end_date)
            if end_date > now:
                if replaced is None:
                    replaced = {
                        "subscriptionId": subscription.id,
                        "packageName": subscription.package.name if subscription.package else None,
                        "packagePrice": float(subscription.package.price) if subscription.package else None,
                        "daysRemaining": (end_date - now).days,
                    }
                subscription.status = 'replaced'
            else:
                subscription.status = 'expired'
            subscription.is_active = False

        new_package = CustomerPackage(
            user_id=user.id,
            package_id=package.id,
            voucher_id=voucher_id,
            payment_id=payment_id,
            purchase_type=purchase_type,
            status='active',
            is_active=True,
            start_date=now,
            end_date=now + timedelta(days=package.duration_days),
            messages_used=0,
            created_by_id=created_by_id,
        )
        db.session.add(new_package)
        db.session.flush()

        return new_package, replaced
