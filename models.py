# models.py - Canonical Flask-SQLAlchemy models for dealers, BizPoints and vouchers
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from flask_login import UserMixin
from sqlalchemy import UniqueConstraint, CheckConstraint, Index, event, text
from extensions import db
from bizpoints.errors import InvalidHierarchy

# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class Role(Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    EMPLOYEE = "EMPLOYEE"
    SUBDEALER = "SUBDEALER"
    CUSTOMER = "CUSTOMER"

    @property
    def level(self) -> int:
        """Hierarchy depth number: 1 for OWNER down to 5 for CUSTOMER."""
        return ROLE_LEVELS[self]

    @property
    def is_dealer(self) -> bool:
        return self is not Role.CUSTOMER


ROLE_LEVELS = {
    Role.OWNER: 1,
    Role.ADMIN: 2,
    Role.EMPLOYEE: 3,
    Role.SUBDEALER: 4,
    Role.CUSTOMER: 5,
}


class LedgerTransactionType(Enum):
    COMMISSION_EARNED = "COMMISSION_EARNED"
    ADMIN_CREDIT = "ADMIN_CREDIT"
    ADMIN_DEBIT = "ADMIN_DEBIT"
    BONUS = "BONUS"
    SETTLEMENT_WITHDRAW = "SETTLEMENT_WITHDRAW"

    @property
    def is_debit(self) -> bool:
        return self in (LedgerTransactionType.ADMIN_DEBIT, LedgerTransactionType.SETTLEMENT_WITHDRAW)


class VoucherType(Enum):
    CREDIT = "credit"
    MESSAGES = "messages"
    PERCENTAGE = "percentage"
    PACKAGE = "package"


class VoucherStatus(Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INACTIVE = "inactive"
    EXHAUSTED = "exhausted"


class AttemptStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"
    ERROR = "error"


class PaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _money(value):
    return float(value) if value is not None else 0.0


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides created_at and updated_at timestamps to inheriting models."""
    created_at = db.Column(db.DateTime(timezone=True), default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=db.func.now(),
                           onupdate=db.func.now())

# ===========================================================
# USERS & DEALER HIERARCHY
# ===========================================================

class User(UserMixin, db.Model, BaseMixin):
    """A node in the dealer tree. Customers are leaves, the OWNER is the root."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    dealer_code = db.Column(db.String(20), unique=True, nullable=True)
    role = db.Column(db.Enum(Role, name="user_role"), nullable=False, default=Role.CUSTOMER, index=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)

    # Percentage override, e.g. 5.00 means 5%
    commission_rate = db.Column(db.Numeric(5, 2), nullable=True)

    point_balance = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"), server_default=text("0.00"))
    account_balance = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"), server_default=text("0.00"))
    message_balance = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))
    voucher_credits = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"), server_default=text("0.00"))
    last_voucher_redemption = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False)

    parent = db.relationship('User', remote_side=[id], backref=db.backref('children', lazy='dynamic'))

    __table_args__ = (
        CheckConstraint('point_balance >= 0', name='chk_point_balance_non_negative'),
    )

    def assign_parent(self, parent):
        """Attach this user under `parent`, keeping role levels strictly increasing downwards."""
        if parent is None:
            self.parent = None
            return
        if parent is self or (self.id is not None and parent.id == self.id):
            raise InvalidHierarchy("A user cannot be its own parent")
        if parent.role.level >= self.role.level:
            raise InvalidHierarchy(
                f"{parent.role.value} cannot be the parent of {self.role.value}"
            )
        self.parent = parent

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "dealerCode": self.dealer_code,
            "parentId": self.parent_id,
            "commissionRate": float(self.commission_rate) if self.commission_rate is not None else None,
            "pointBalance": _money(self.point_balance),
            "accountBalance": _money(self.account_balance),
            "messageBalance": self.message_balance or 0,
            "voucherCredits": _money(self.voucher_credits),
            "isActive": self.is_active,
        }

    def __repr__(self):
        return f'<User {self.id} {self.role.value if self.role else None}>'

# ===========================================================
# BIZPOINTS LEDGER
# ===========================================================

class LedgerTransaction(db.Model, BaseMixin):
    """Immutable BizPoints movement. balance_after is the user's point_balance right after this row."""
    __tablename__ = 'bizpoints_transactions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    type = db.Column(db.Enum(LedgerTransactionType, name="ledger_transaction_type"), nullable=False, index=True)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    balance_after = db.Column(db.Numeric(18, 2), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    reference = db.Column(db.String(120), nullable=True, index=True)
    source_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    user = db.relationship('User', foreign_keys=[user_id], backref=db.backref('ledger_transactions', lazy='dynamic'))
    source_user = db.relationship('User', foreign_keys=[source_user_id])

    __table_args__ = (
        # One commission row per dealer per external reference; replays hit this index.
        Index(
            'uq_commission_dealer_reference', 'user_id', 'reference',
            unique=True,
            postgresql_where=text("type = 'COMMISSION_EARNED'"),
            sqlite_where=text("type = 'COMMISSION_EARNED'"),
        ),
        Index('idx_ledger_user_created', 'user_id', 'created_at'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type.value,
            "amount": _money(self.amount),
            "balance": _money(self.balance_after),
            "description": self.description,
            "reference": self.reference,
            "sourceUserId": self.source_user_id,
            "createdBy": self.created_by_id,
            "createdAt": as_utc(self.created_at).isoformat() if self.created_at else None,
        }

# ===========================================================
# PACKAGES & SUBSCRIPTIONS
# ===========================================================

class SubscriptionPackage(db.Model, BaseMixin):
    __tablename__ = 'packages'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    price = db.Column(db.Numeric(18, 2), nullable=False)
    duration_days = db.Column(db.Integer, nullable=False, default=30)
    message_limit = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, default=True, nullable=False)


class CustomerPackage(db.Model, BaseMixin):
    __tablename__ = 'customer_packages'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    package_id = db.Column(db.Integer, db.ForeignKey('packages.id'), nullable=False)
    voucher_id = db.Column(db.Integer, db.ForeignKey('vouchers.id'), nullable=True)
    payment_id = db.Column(db.Integer, db.ForeignKey('payments.id'), nullable=True)
    purchase_type = db.Column(db.String(30), nullable=False)  # payment, voucher_redemption
    status = db.Column(db.String(20), default='active', nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False)
    messages_used = db.Column(db.Integer, default=0, nullable=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    package = db.relationship('SubscriptionPackage')

    __table_args__ = (
        Index('idx_customer_package_user_active', 'user_id', 'is_active'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "packageId": self.package_id,
            "packageName": self.package.name if self.package else None,
            "purchaseType": self.purchase_type,
            "status": self.status,
            "isActive": self.is_active,
            "startDate": as_utc(self.start_date).isoformat(),
            "endDate": as_utc(self.end_date).isoformat(),
        }

# ===========================================================
# VOUCHERS
# ===========================================================

class Voucher(db.Model, BaseMixin):
    __tablename__ = 'vouchers'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False, index=True)
    description = db.Column(db.Text)
    type = db.Column(db.String(20), nullable=False)  # credit, messages, percentage, package
    value = db.Column(db.Numeric(18, 2), nullable=False)
    usage_limit = db.Column(db.Integer, nullable=True)  # NULL means unlimited
    usage_count = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    dealer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    allow_dealer_redemption = db.Column(db.Boolean, default=False, nullable=False)

    package_id = db.Column(db.Integer, db.ForeignKey('packages.id'), nullable=True)
    min_purchase_amount = db.Column(db.Numeric(18, 2), nullable=True)
    max_discount_amount = db.Column(db.Numeric(18, 2), nullable=True)

    package = db.relationship('SubscriptionPackage')
    dealer = db.relationship('User', foreign_keys=[dealer_id])

    __table_args__ = (
        CheckConstraint('usage_count >= 0', name='chk_voucher_usage_count'),
    )

    def status(self, now=None) -> VoucherStatus:
        """Derived status; the order of checks decides which reason wins."""
        now = now or datetime.now(timezone.utc)
        if self.expires_at is not None and as_utc(self.expires_at) < now:
            return VoucherStatus.EXPIRED
        if not self.is_active:
            return VoucherStatus.INACTIVE
        if self.usage_limit is not None and (self.usage_count or 0) >= self.usage_limit:
            return VoucherStatus.EXHAUSTED
        return VoucherStatus.VALID

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "type": self.type,
            "value": _money(self.value),
            "usageLimit": self.usage_limit,
            "usageCount": self.usage_count,
            "isActive": self.is_active,
            "expiresAt": as_utc(self.expires_at).isoformat() if self.expires_at else None,
            "dealerId": self.dealer_id,
            "allowDealerRedemption": self.allow_dealer_redemption,
            "packageId": self.package_id,
            "status": self.status().value,
        }


class VoucherUsage(db.Model):
    """One successful redemption of a voucher by a user."""
    __tablename__ = 'voucher_usage'

    id = db.Column(db.Integer, primary_key=True)
    voucher_id = db.Column(db.Integer, db.ForeignKey('vouchers.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    redeemed_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    credit_applied = db.Column(db.Numeric(18, 2), nullable=True)
    messages_applied = db.Column(db.Integer, nullable=True)
    discount_applied = db.Column(db.Numeric(5, 2), nullable=True)
    package_assigned_id = db.Column(db.Integer, db.ForeignKey('packages.id'), nullable=True)
    customer_package_id = db.Column(db.Integer, db.ForeignKey('customer_packages.id'), nullable=True)
    notes = db.Column(db.Text)
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.String(255))
    used_at = db.Column(db.DateTime(timezone=True), default=db.func.now(), nullable=False)

    voucher = db.relationship('Voucher', backref=db.backref('usages', lazy='dynamic'))
    package_assigned = db.relationship('SubscriptionPackage')

    __table_args__ = (
        UniqueConstraint('voucher_id', 'user_id', name='uq_voucher_usage_voucher_user'),
    )


class VoucherRedemptionAttempt(db.Model):
    """Append-only audit trail of every redemption try."""
    __tablename__ = 'voucher_redemption_attempts'

    id = db.Column(db.Integer, primary_key=True)
    voucher_id = db.Column(db.Integer, db.ForeignKey('vouchers.id'), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    acting_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    code = db.Column(db.String(50), nullable=True)
    attempt_status = db.Column(db.String(20), nullable=False, index=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.String(255))
    created_at = db.Column(db.DateTime(timezone=True), default=db.func.now(), nullable=False)

# ===========================================================
# PAYMENTS & WEBHOOKS
# ===========================================================

class Payment(db.Model, BaseMixin):
    __tablename__ = 'payments'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete='SET NULL'), nullable=True, index=True)
    package_id = db.Column(db.Integer, db.ForeignKey('packages.id'), nullable=True)
    reference = db.Column(db.String(128), nullable=False)
    external_ref = db.Column(db.String(128), index=True)
    provider = db.Column(db.String(50))
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default='INR')
    status = db.Column(db.Enum(PaymentStatus, name='paymentstatus'), nullable=False, default=PaymentStatus.PENDING)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship('User', backref=db.backref('payments', lazy='dynamic'))
    package = db.relationship('SubscriptionPackage')

    __table_args__ = (
        UniqueConstraint('reference', name='uq_payments_reference'),
    )


class WebhookEvent(db.Model, BaseMixin):
    __tablename__ = 'webhook_events'

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(50), nullable=False)
    event_type = db.Column(db.String(100))
    payload = db.Column(db.JSON, nullable=False)
    signature = db.Column(db.String(255))
    reference = db.Column(db.String(120), index=True)
    processed = db.Column(db.Boolean, default=False)
    processed_at = db.Column(db.DateTime(timezone=True))
    status = db.Column(db.String(50), default='pending')
    remarks = db.Column(db.String(255))

    def mark_processed(self, success=True, remarks=None):
        self.processed = True
        self.status = 'success' if success else 'failed'
        self.remarks = remarks[:255] if remarks else None
        self.processed_at = datetime.now(timezone.utc)

# ===========================================================
# IMMUTABILITY GUARDS
# ===========================================================

@event.listens_for(LedgerTransaction, "before_update")
@event.listens_for(VoucherRedemptionAttempt, "before_update")
def _refuse_update(mapper, connection, target):
    raise ValueError(f"{target.__class__.__name__} rows are append-only")
