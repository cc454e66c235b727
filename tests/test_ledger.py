from decimal import Decimal

import pytest

from extensions import db
from models import Role, LedgerTransaction, LedgerTransactionType
from bizpoints.errors import (
    InsufficientBalance, InvalidLedgerAdjustment, LedgerPermissionError, LedgerUserNotFound,
)
from bizpoints.ledger import adjust_balance, get_transactions, reconcile_point_balance, post_entry


class TestAdjustBalance:

    def test_admin_credit(self, chain):
        result = adjust_balance(chain["subdealer"].id, "ADMIN_CREDIT", "50", chain["owner"])

        assert result["newBalance"] == 50.0
        assert result["transaction"]["type"] == "ADMIN_CREDIT"
        assert result["transaction"]["createdBy"] == chain["owner"].id
        assert chain["subdealer"].point_balance == Decimal("50.00")

    def test_debits_are_stored_negative(self, chain):
        subdealer, owner = chain["subdealer"], chain["owner"]
        adjust_balance(subdealer.id, LedgerTransactionType.ADMIN_CREDIT, "100", owner)
        result = adjust_balance(subdealer.id, "settlement_withdraw", "40", owner)

        assert result["transaction"]["amount"] == -40.0
        assert result["newBalance"] == 60.0
        assert subdealer.point_balance == Decimal("60.00")

    def test_debit_beyond_balance_is_refused(self, chain):
        subdealer, owner = chain["subdealer"], chain["owner"]
        adjust_balance(subdealer.id, "BONUS", "10", owner)

        with pytest.raises(InsufficientBalance):
            adjust_balance(subdealer.id, "ADMIN_DEBIT", "10.01", owner)

        assert subdealer.point_balance == Decimal("10.00")
        assert LedgerTransaction.query.filter_by(user_id=subdealer.id).count() == 1

    def test_commission_cannot_be_posted_by_hand(self, chain):
        with pytest.raises(InvalidLedgerAdjustment):
            adjust_balance(chain["subdealer"].id, "COMMISSION_EARNED", "10", chain["owner"])

    @pytest.mark.parametrize("entry_type,amount", [("GIFT", "10"), ("BONUS", "0"), ("BONUS", "-5"), ("BONUS", "x")])
    def test_invalid_input(self, chain, entry_type, amount):
        with pytest.raises(InvalidLedgerAdjustment):
            adjust_balance(chain["subdealer"].id, entry_type, amount, chain["owner"])

    def test_customers_cannot_adjust(self, chain):
        with pytest.raises(LedgerPermissionError):
            adjust_balance(chain["customer"].id, "BONUS", "10", chain["customer"])

    def test_dealers_below_admin_only_touch_themselves(self, chain):
        employee = chain["employee"]
        with pytest.raises(LedgerPermissionError):
            adjust_balance(chain["subdealer"].id, "BONUS", "10", employee)

        assert adjust_balance(employee.id, "BONUS", "5", employee)["newBalance"] == 5.0

    def test_unknown_user(self, chain):
        with pytest.raises(LedgerUserNotFound):
            adjust_balance(9999, "BONUS", "10", chain["owner"])


class TestLedgerEntries:

    def test_entries_are_append_only(self, chain):
        adjust_balance(chain["subdealer"].id, "BONUS", "10", chain["owner"])
        entry = LedgerTransaction.query.first()

        entry.description = "rewritten"
        with pytest.raises(ValueError):
            db.session.flush()
        db.session.rollback()

        assert LedgerTransaction.query.first().description != "rewritten"

    def test_post_entry_leaves_commit_to_caller(self, chain):
        subdealer = chain["subdealer"]
        post_entry(subdealer.id, LedgerTransactionType.BONUS, Decimal("5.00"), "Welcome bonus")
        db.session.rollback()

        assert subdealer.point_balance == Decimal("0.00")
        assert LedgerTransaction.query.count() == 0

    def test_transactions_newest_first(self, chain):
        subdealer, owner = chain["subdealer"], chain["owner"]
        adjust_balance(subdealer.id, "ADMIN_CREDIT", "20", owner)
        adjust_balance(subdealer.id, "BONUS", "5", owner)
        adjust_balance(subdealer.id, "ADMIN_DEBIT", "3", owner)

        page = get_transactions(subdealer.id, limit=2)

        assert page["totalCount"] == 3
        assert page["currentBalance"] == 22.0
        assert [e["type"] for e in page["entries"]] == ["ADMIN_DEBIT", "BONUS"]
        assert page["entries"][0]["balance"] == 22.0

    def test_transactions_for_unknown_user(self, app):
        with pytest.raises(LedgerUserNotFound):
            get_transactions(404)


class TestReconciliation:

    def test_balance_matches_ledger(self, chain):
        adjust_balance(chain["subdealer"].id, "BONUS", "15", chain["owner"])

        report = reconcile_point_balance(chain["subdealer"].id)
        assert report["drift"] == 0.0
        assert report["fixed"] is False

    def test_drift_detected_and_fixed(self, chain):
        subdealer = chain["subdealer"]
        adjust_balance(subdealer.id, "BONUS", "15", chain["owner"])
        subdealer.point_balance = Decimal("40.00")
        db.session.commit()

        report = reconcile_point_balance(subdealer.id)
        assert report["storedBalance"] == 40.0
        assert report["ledgerBalance"] == 15.0
        assert report["drift"] == 25.0

        fixed = reconcile_point_balance(subdealer.id, fix=True)
        assert fixed["fixed"] is True
        assert subdealer.point_balance == Decimal("15.00")


class TestRoles:

    def test_role_levels(self):
        assert [r.level for r in (Role.OWNER, Role.ADMIN, Role.EMPLOYEE, Role.SUBDEALER, Role.CUSTOMER)] == [1, 2, 3, 4, 5]
        assert Role.CUSTOMER.is_dealer is False
        assert Role.SUBDEALER.is_dealer is True
