"""
Tests for voucher redemption.

Tests cover:
1. Benefit application per voucher type
2. One redemption per user and voucher
3. Status checks (expired, inactive, exhausted)
4. Dealer redemption rules and acting-for-customer redemption
5. Audit rows for every attempt
6. Rollback on concurrent and unexpected failures
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from extensions import db
from models import (
    Role, Voucher, VoucherUsage, VoucherRedemptionAttempt, CustomerPackage, as_utc,
)
from vouchers.errors import (
    AlreadyRedeemed, VoucherNotFound, VoucherNotRedeemable, RedemptionForbidden,
    RedemptionTargetNotFound, UnknownVoucherType, InvalidVoucherPackage, PersistenceFailure,
)
import vouchers.redemption as redemption_module
from vouchers.redemption import VoucherRedemptionEngine, redeem_voucher


def attempts(**filters):
    return VoucherRedemptionAttempt.query.filter_by(**filters).order_by(VoucherRedemptionAttempt.id).all()


class TestCreditVoucher:

    def test_welcome_credit(self, chain, make_voucher):
        customer = chain["customer"]
        voucher = make_voucher("WELCOME50", type="credit", value="50", usage_limit=100)

        result = redeem_voucher("WELCOME50", customer, ip_address="10.0.0.1", user_agent="pytest")

        assert result["balances"]["accountBalance"] == 50.0
        assert result["balances"]["voucherCredits"] == 50.0
        assert result["benefit"]["type"] == "credit"
        assert customer.account_balance == Decimal("50.00")
        assert voucher.usage_count == 1
        assert customer.last_voucher_redemption is not None

        usage = VoucherUsage.query.one()
        assert (usage.voucher_id, usage.user_id) == (voucher.id, customer.id)
        assert usage.credit_applied == Decimal("50.00")
        assert usage.ip_address == "10.0.0.1"

        audit = attempts()
        assert [a.attempt_status for a in audit] == ["success"]
        assert audit[0].user_agent == "pytest"

    def test_second_redemption_by_same_user(self, chain, make_voucher):
        customer = chain["customer"]
        voucher = make_voucher("WELCOME50", type="credit", value="50", usage_limit=100)
        redeem_voucher("WELCOME50", customer)

        with pytest.raises(AlreadyRedeemed) as excinfo:
            redeem_voucher("WELCOME50", customer)

        assert excinfo.value.reason == "Voucher already used by this user"
        assert voucher.usage_count == 1
        assert customer.account_balance == Decimal("50.00")
        assert VoucherUsage.query.count() == 1

        failed = attempts(attempt_status="failed")
        assert len(failed) == 1
        assert failed[0].failure_reason == "Voucher already used by this user"
        assert failed[0].voucher_id == voucher.id

    def test_code_is_case_insensitive(self, chain, make_voucher):
        make_voucher("WELCOME50")
        result = redeem_voucher("  welcome50 ", chain["customer"])
        assert result["voucher"]["code"] == "WELCOME50"


class TestOtherVoucherTypes:

    def test_messages_voucher(self, chain, make_voucher):
        customer = chain["customer"]
        make_voucher("MSG100", type="messages", value="100")

        result = redeem_voucher("MSG100", customer)

        assert customer.message_balance == 100
        assert result["benefit"]["count"] == 100
        assert VoucherUsage.query.one().messages_applied == 100

    def test_percentage_voucher_is_stored_not_applied(self, chain, make_voucher):
        customer = chain["customer"]
        make_voucher("SAVE15", type="percentage", value="15")

        result = redeem_voucher("SAVE15", customer)

        assert result["benefit"]["discount"] == 15.0
        assert customer.account_balance == Decimal("0.00")
        assert VoucherUsage.query.one().discount_applied == Decimal("15.00")

    def test_package_voucher_starts_subscription(self, chain, make_voucher, make_package):
        customer = chain["customer"]
        package = make_package(name="Starter", duration_days=30, message_limit=500)
        make_voucher("STARTER", type="package", value="1", package_id=package.id)

        result = redeem_voucher("STARTER", customer)

        subscription = CustomerPackage.query.filter_by(user_id=customer.id, is_active=True).one()
        assert subscription.package_id == package.id
        assert subscription.purchase_type == "voucher_redemption"
        length = as_utc(subscription.end_date) - as_utc(subscription.start_date)
        assert length == timedelta(days=30)
        assert result["benefit"]["subscriptionId"] == subscription.id
        assert result["warnings"] == []

    def test_package_voucher_replaces_running_subscription(self, chain, make_voucher, make_package):
        customer = chain["customer"]
        starter = make_package(name="Starter")
        pro = make_package(name="Pro", duration_days=90)
        make_voucher("STARTER", type="package", value="1", package_id=starter.id)
        make_voucher("PRO90", type="package", value="1", package_id=pro.id)

        redeem_voucher("STARTER", customer)
        result = redeem_voucher("PRO90", customer)

        assert len(result["warnings"]) == 1
        assert "Starter" in result["warnings"][0]
        assert result["benefit"]["replacedSubscription"]["packageName"] == "Starter"
        statuses = {cp.package_id: (cp.status, cp.is_active) for cp in CustomerPackage.query.all()}
        assert statuses == {starter.id: ("replaced", False), pro.id: ("active", True)}

    def test_package_voucher_with_inactive_package(self, chain, make_voucher, make_package):
        customer = chain["customer"]
        package = make_package(is_active=False)
        voucher = make_voucher("OLDPKG", type="package", value="1", package_id=package.id)

        with pytest.raises(InvalidVoucherPackage):
            redeem_voucher("OLDPKG", customer)

        assert voucher.usage_count == 0
        assert CustomerPackage.query.count() == 0
        assert attempts()[0].attempt_status == "failed"

    def test_unknown_type_changes_nothing(self, chain, make_voucher):
        customer = chain["customer"]
        voucher = make_voucher("MYSTERY", type="points", value="10")

        with pytest.raises(UnknownVoucherType):
            redeem_voucher("MYSTERY", customer)

        assert voucher.usage_count == 0
        assert VoucherUsage.query.count() == 0
        assert customer.account_balance == Decimal("0.00")
        assert attempts()[0].failure_reason == "Unknown voucher type: points"


class TestVoucherStatus:

    def test_unknown_code(self, chain):
        with pytest.raises(VoucherNotFound) as excinfo:
            redeem_voucher("NOPE", chain["customer"])

        assert excinfo.value.status_code == 404
        audit = attempts()
        assert len(audit) == 1
        assert audit[0].voucher_id is None
        assert audit[0].code == "NOPE"
        assert audit[0].user_id == chain["customer"].id

    def test_expired(self, chain, make_voucher):
        make_voucher("OLD", expires_at=datetime.now(timezone.utc) - timedelta(days=1))

        with pytest.raises(VoucherNotRedeemable) as excinfo:
            redeem_voucher("OLD", chain["customer"])
        assert excinfo.value.reason == "Voucher has expired"

    def test_inactive(self, chain, make_voucher):
        make_voucher("OFF", is_active=False)

        with pytest.raises(VoucherNotRedeemable) as excinfo:
            redeem_voucher("OFF", chain["customer"])
        assert excinfo.value.reason == "Voucher is no longer active"

    def test_expiry_reported_before_inactivity(self, chain, make_voucher):
        make_voucher("BOTH", is_active=False, expires_at=datetime.now(timezone.utc) - timedelta(hours=1))

        with pytest.raises(VoucherNotRedeemable) as excinfo:
            redeem_voucher("BOTH", chain["customer"])
        assert excinfo.value.reason == "Voucher has expired"

    def test_usage_limit_reached(self, chain, make_user, make_voucher):
        voucher = make_voucher("ONEOFF", usage_limit=1)
        other = make_user(Role.CUSTOMER, parent=chain["subdealer"])
        redeem_voucher("ONEOFF", chain["customer"])

        with pytest.raises(VoucherNotRedeemable) as excinfo:
            redeem_voucher("ONEOFF", other)

        assert excinfo.value.reason == "Voucher usage limit has been reached"
        assert voucher.usage_count == 1


class TestDealerRules:

    def test_dealer_blocked_by_default(self, chain, make_voucher):
        subdealer = chain["subdealer"]
        make_voucher("CUSTOMERONLY")

        with pytest.raises(RedemptionForbidden):
            redeem_voucher("CUSTOMERONLY", subdealer)

        audit = attempts()
        assert audit[0].attempt_status == "blocked"
        assert audit[0].failure_reason == "Dealers cannot redeem this voucher"
        assert subdealer.account_balance == Decimal("0.00")

    def test_dealer_cannot_redeem_own_voucher(self, chain, make_voucher):
        subdealer = chain["subdealer"]
        make_voucher("MINE", allow_dealer_redemption=True, dealer_id=subdealer.id)

        with pytest.raises(RedemptionForbidden) as excinfo:
            redeem_voucher("MINE", subdealer)
        assert excinfo.value.reason == "Dealers cannot redeem their own vouchers"

    def test_dealer_redeems_when_allowed(self, chain, make_voucher):
        subdealer = chain["subdealer"]
        make_voucher("DEALERS", allow_dealer_redemption=True, created_by_id=chain["owner"].id)

        redeem_voucher("DEALERS", subdealer)
        assert subdealer.account_balance == Decimal("50.00")

    def test_dealer_redeems_for_customer(self, chain, make_voucher):
        customer, subdealer = chain["customer"], chain["subdealer"]
        make_voucher("WELCOME50")

        result = redeem_voucher("WELCOME50", subdealer, target_customer_id=customer.id)

        assert result["redemption"] == {
            "userId": customer.id,
            "redeemedBy": subdealer.id,
            "redeemedAt": result["redemption"]["redeemedAt"],
        }
        assert customer.account_balance == Decimal("50.00")
        assert subdealer.account_balance == Decimal("0.00")
        usage = VoucherUsage.query.one()
        assert usage.redeemed_by_id == subdealer.id
        assert attempts()[0].acting_user_id == subdealer.id

    def test_customer_cannot_redeem_for_someone_else(self, chain, make_user, make_voucher):
        make_voucher("WELCOME50")
        other = make_user(Role.CUSTOMER, parent=chain["subdealer"])

        with pytest.raises(RedemptionForbidden):
            redeem_voucher("WELCOME50", chain["customer"], target_customer_id=other.id)
        assert other.account_balance == Decimal("0.00")

    def test_unknown_target_customer(self, chain, make_voucher):
        make_voucher("WELCOME50")

        with pytest.raises(RedemptionTargetNotFound):
            redeem_voucher("WELCOME50", chain["subdealer"], target_customer_id=9999)

        audit = attempts()
        assert audit[0].user_id is None
        assert audit[0].acting_user_id == chain["subdealer"].id


class TestAuditTrail:

    def test_attempt_rows_are_append_only(self, chain):
        with pytest.raises(VoucherNotFound):
            redeem_voucher("NOPE", chain["customer"])

        row = attempts()[0]
        row.failure_reason = "edited"
        with pytest.raises(ValueError):
            db.session.flush()
        db.session.rollback()

    def test_redemptions_by_different_users_share_the_voucher(self, chain, make_user, make_voucher):
        voucher = make_voucher("SHARED", usage_limit=5)
        second = make_user(Role.CUSTOMER, parent=chain["subdealer"])

        redeem_voucher("SHARED", chain["customer"])
        redeem_voucher("SHARED", second)

        assert voucher.usage_count == 2
        assert Voucher.query.filter_by(code="SHARED").one().status().value == "valid"


class TestFailureRollback:

    def test_concurrent_redemption_caught_by_unique_constraint(self, chain, make_voucher, monkeypatch):
        customer = chain["customer"]
        voucher = make_voucher("WELCOME50", type="credit", value="50", usage_limit=100)
        redeem_voucher("WELCOME50", customer)

        # A racing request passes the usage check before the first one commits
        monkeypatch.setattr(redemption_module, "_already_redeemed", lambda voucher_id, user_id: False)

        with pytest.raises(AlreadyRedeemed):
            redeem_voucher("WELCOME50", customer)

        db.session.expire_all()
        assert voucher.usage_count == 1
        assert customer.account_balance == Decimal("50.00")
        assert VoucherUsage.query.count() == 1
        assert [a.attempt_status for a in attempts()] == ["success", "failed"]

    def test_unexpected_error_after_benefit_rolls_back(self, chain, make_voucher, monkeypatch):
        customer = chain["customer"]
        voucher = make_voucher("WELCOME50", type="credit", value="50", usage_limit=100)
        real_apply_benefit = VoucherRedemptionEngine._apply_benefit

        def apply_then_fail(self, *args):
            real_apply_benefit(self, *args)
            raise TypeError("unexpected")

        monkeypatch.setattr(VoucherRedemptionEngine, "_apply_benefit", apply_then_fail)

        with pytest.raises(PersistenceFailure):
            redeem_voucher("WELCOME50", customer)

        db.session.commit()
        db.session.expire_all()
        assert customer.account_balance == Decimal("0.00")
        assert customer.voucher_credits == Decimal("0.00")
        assert voucher.usage_count == 0
        assert VoucherUsage.query.count() == 0

        audit = attempts()
        assert [a.attempt_status for a in audit] == ["error"]
        assert audit[0].failure_reason == "Failed to redeem voucher"
