"""Create dealer hierarchy, BizPoints ledger, voucher and payment tables"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1d2a9e7b10'
down_revision = None
branch_labels = None
depends_on = None

ROLE_NAMES = ('OWNER', 'ADMIN', 'EMPLOYEE', 'SUBDEALER', 'CUSTOMER')
LEDGER_TYPE_NAMES = ('COMMISSION_EARNED', 'ADMIN_CREDIT', 'ADMIN_DEBIT', 'BONUS', 'SETTLEMENT_WITHDRAW')
PAYMENT_STATUS_NAMES = ('PENDING', 'COMPLETED', 'FAILED', 'CANCELLED')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    ]


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('email', sa.String(length=120), nullable=False),
        sa.Column('dealer_code', sa.String(length=20), nullable=True),
        sa.Column('role', sa.Enum(*ROLE_NAMES, name='user_role'), nullable=False),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('commission_rate', sa.Numeric(precision=5, scale=2), nullable=True),
        sa.Column('point_balance', sa.Numeric(precision=18, scale=2), server_default=sa.text('0.00'), nullable=False),
        sa.Column('account_balance', sa.Numeric(precision=18, scale=2), server_default=sa.text('0.00'), nullable=False),
        sa.Column('message_balance', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('voucher_credits', sa.Numeric(precision=18, scale=2), server_default=sa.text('0.00'), nullable=False),
        sa.Column('last_voucher_redemption', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('email'),
        sa.UniqueConstraint('dealer_code'),
        sa.CheckConstraint('point_balance >= 0', name='chk_point_balance_non_negative'),
    )
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.create_index('ix_users_role', ['role'])
        batch_op.create_index('ix_users_parent_id', ['parent_id'])

    op.create_table(
        'packages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('price', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('duration_days', sa.Integer(), nullable=False),
        sa.Column('message_limit', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('name'),
    )

    op.create_table(
        'bizpoints_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.Enum(*LEDGER_TYPE_NAMES, name='ledger_transaction_type'), nullable=False),
        sa.Column('amount', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('balance_after', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('reference', sa.String(length=120), nullable=True),
        sa.Column('source_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table('bizpoints_transactions', schema=None) as batch_op:
        batch_op.create_index('ix_bizpoints_transactions_user_id', ['user_id'])
        batch_op.create_index('ix_bizpoints_transactions_type', ['type'])
        batch_op.create_index('ix_bizpoints_transactions_reference', ['reference'])
        batch_op.create_index('idx_ledger_user_created', ['user_id', 'created_at'])
    op.create_index(
        'uq_commission_dealer_reference',
        'bizpoints_transactions',
        ['user_id', 'reference'],
        unique=True,
        postgresql_where=sa.text("type = 'COMMISSION_EARNED'"),
        sqlite_where=sa.text("type = 'COMMISSION_EARNED'"),
    )

    op.create_table(
        'vouchers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('value', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('usage_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dealer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('allow_dealer_redemption', sa.Boolean(), nullable=False),
        sa.Column('package_id', sa.Integer(), sa.ForeignKey('packages.id'), nullable=True),
        sa.Column('min_purchase_amount', sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column('max_discount_amount', sa.Numeric(precision=18, scale=2), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('usage_count >= 0', name='chk_voucher_usage_count'),
    )
    with op.batch_alter_table('vouchers', schema=None) as batch_op:
        batch_op.create_index('ix_vouchers_code', ['code'], unique=True)
        batch_op.create_index('ix_vouchers_dealer_id', ['dealer_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('package_id', sa.Integer(), sa.ForeignKey('packages.id'), nullable=True),
        sa.Column('reference', sa.String(length=128), nullable=False),
        sa.Column('external_ref', sa.String(length=128), nullable=True),
        sa.Column('provider', sa.String(length=50), nullable=True),
        sa.Column('amount', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('status', sa.Enum(*PAYMENT_STATUS_NAMES, name='paymentstatus'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('reference', name='uq_payments_reference'),
    )
    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.create_index('ix_payments_user_id', ['user_id'])
        batch_op.create_index('ix_payments_external_ref', ['external_ref'])

    op.create_table(
        'customer_packages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('package_id', sa.Integer(), sa.ForeignKey('packages.id'), nullable=False),
        sa.Column('voucher_id', sa.Integer(), sa.ForeignKey('vouchers.id'), nullable=True),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=True),
        sa.Column('purchase_type', sa.String(length=30), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('messages_used', sa.Integer(), nullable=False),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table('customer_packages', schema=None) as batch_op:
        batch_op.create_index('ix_customer_packages_user_id', ['user_id'])
        batch_op.create_index('idx_customer_package_user_active', ['user_id', 'is_active'])

    op.create_table(
        'voucher_usage',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('voucher_id', sa.Integer(), sa.ForeignKey('vouchers.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('redeemed_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('credit_applied', sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column('messages_applied', sa.Integer(), nullable=True),
        sa.Column('discount_applied', sa.Numeric(precision=5, scale=2), nullable=True),
        sa.Column('package_assigned_id', sa.Integer(), sa.ForeignKey('packages.id'), nullable=True),
        sa.Column('customer_package_id', sa.Integer(), sa.ForeignKey('customer_packages.id'), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.Column('used_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('voucher_id', 'user_id', name='uq_voucher_usage_voucher_user'),
    )
    with op.batch_alter_table('voucher_usage', schema=None) as batch_op:
        batch_op.create_index('ix_voucher_usage_voucher_id', ['voucher_id'])
        batch_op.create_index('ix_voucher_usage_user_id', ['user_id'])

    op.create_table(
        'voucher_redemption_attempts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('voucher_id', sa.Integer(), sa.ForeignKey('vouchers.id'), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('acting_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('code', sa.String(length=50), nullable=True),
        sa.Column('attempt_status', sa.String(length=20), nullable=False),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    with op.batch_alter_table('voucher_redemption_attempts', schema=None) as batch_op:
        batch_op.create_index('ix_voucher_redemption_attempts_voucher_id', ['voucher_id'])
        batch_op.create_index('ix_voucher_redemption_attempts_user_id', ['user_id'])
        batch_op.create_index('ix_voucher_redemption_attempts_attempt_status', ['attempt_status'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('signature', sa.String(length=255), nullable=True),
        sa.Column('reference', sa.String(length=120), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=True),
        sa.Column('remarks', sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table('webhook_events', schema=None) as batch_op:
        batch_op.create_index('ix_webhook_events_reference', ['reference'])


def downgrade():
    op.drop_table('webhook_events')
    op.drop_table('voucher_redemption_attempts')
    op.drop_table('voucher_usage')
    op.drop_table('customer_packages')
    op.drop_table('payments')
    op.drop_table('vouchers')
    op.drop_index('uq_commission_dealer_reference', table_name='bizpoints_transactions')
    op.drop_table('bizpoints_transactions')
    op.drop_table('packages')
    op.drop_table('users')
    sa.Enum(name='paymentstatus').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='ledger_transaction_type').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='user_role').drop(op.get_bind(), checkfirst=True)
