"""initial_entitlement_schema

Revision ID: 0001
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()'))
        for name in names
    ]


def upgrade() -> None:
    op.create_table(
        'user_entitlements',
        sa.Column('user_id', sa.TEXT(), primary_key=True),
        sa.Column('subscription_status', sa.TEXT(), nullable=False, server_default='free'),
        sa.Column('payment_method', sa.TEXT(), nullable=False, server_default='none'),
        sa.Column('card_customer_id', sa.TEXT(), nullable=True),
        sa.Column('card_subscription_id', sa.TEXT(), nullable=True),
        sa.Column('platform_original_transaction_id', sa.TEXT(), nullable=True),
        sa.Column('platform_customer_id', sa.TEXT(), nullable=True),
        sa.Column('renewal_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('total_usage_count', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('last_event_ms', sa.BIGINT(), nullable=True),
        *_timestamps('created_at', 'updated_at'),
        sa.CheckConstraint(
            "subscription_status IN ('free', 'premium')",
            name='ck_user_entitlements_status',
        ),
        sa.CheckConstraint(
            "payment_method IN ('none', 'card_provider', 'platform_iap')",
            name='ck_user_entitlements_payment_method',
        ),
        # A premium user always has a payment rail
        sa.CheckConstraint(
            "subscription_status <> 'premium' OR payment_method <> 'none'",
            name='ck_user_entitlements_premium_has_rail',
        ),
    )
    op.create_index('idx_user_entitlements_card_customer', 'user_entitlements', ['card_customer_id'])
    op.create_index('idx_user_entitlements_platform_customer', 'user_entitlements', ['platform_customer_id'])

    op.create_table(
        'card_customer_mappings',
        sa.Column('id', sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('customer_id', sa.TEXT(), nullable=False),
        *_timestamps('created_at'),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index(
        'uq_card_customer_mappings_live_user',
        'card_customer_mappings',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text('deleted_at IS NULL'),
    )
    op.create_index('idx_card_customer_mappings_customer', 'card_customer_mappings', ['customer_id'])

    op.create_table(
        'card_subscription_records',
        sa.Column('id', sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('customer_id', sa.TEXT(), nullable=False),
        sa.Column('subscription_id', sa.TEXT(), nullable=True),
        sa.Column('price_id', sa.TEXT(), nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='not_started'),
        sa.Column('cancel_at_period_end', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('current_period_end', sa.BIGINT(), nullable=True),
        *_timestamps('created_at', 'updated_at'),
        sa.UniqueConstraint('customer_id', name='uq_card_subscription_records_customer'),
    )
    op.create_index('idx_card_subscription_records_user', 'card_subscription_records', ['user_id'])
    op.create_index(
        'idx_card_subscription_records_subscription', 'card_subscription_records', ['subscription_id']
    )

    op.create_table(
        'card_orders',
        sa.Column('id', sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('customer_id', sa.TEXT(), nullable=False),
        sa.Column('checkout_session_id', sa.TEXT(), nullable=False),
        sa.Column('payment_intent_id', sa.TEXT(), nullable=True),
        sa.Column('amount_subtotal', sa.BIGINT(), nullable=True),
        sa.Column('amount_total', sa.BIGINT(), nullable=True),
        sa.Column('currency', sa.TEXT(), nullable=True),
        sa.Column('payment_status', sa.TEXT(), nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='completed'),
        *_timestamps('created_at'),
        sa.UniqueConstraint('checkout_session_id', name='uq_card_orders_checkout_session'),
    )
    op.create_index('idx_card_orders_user', 'card_orders', ['user_id'])
    op.create_index('idx_card_orders_customer', 'card_orders', ['customer_id'])

    op.create_table(
        'usage_history',
        sa.Column('id', sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('kind', sa.TEXT(), nullable=False, server_default='analysis'),
        *_timestamps('created_at'),
    )
    op.create_index('idx_usage_history_user', 'usage_history', ['user_id'])

    op.create_table(
        'ingredient_feedback',
        sa.Column('id', sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('ingredient', sa.TEXT(), nullable=False),
        sa.Column('verdict', sa.TEXT(), nullable=True),
        sa.Column('comment', sa.TEXT(), nullable=True),
        *_timestamps('created_at'),
    )
    op.create_index('idx_ingredient_feedback_user', 'ingredient_feedback', ['user_id'])

    op.create_table(
        'subscription_audit',
        sa.Column('id', sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('old_status', sa.TEXT(), nullable=True),
        sa.Column('new_status', sa.TEXT(), nullable=False),
        sa.Column('old_payment_method', sa.TEXT(), nullable=True),
        sa.Column('new_payment_method', sa.TEXT(), nullable=False),
        sa.Column('event_type', sa.TEXT(), nullable=False),
        sa.Column('source', sa.TEXT(), nullable=False),
        sa.Column('notes', sa.TEXT(), nullable=True),
        *_timestamps('changed_at'),
    )
    op.create_index(
        'idx_subscription_audit_user_changed', 'subscription_audit', ['user_id', 'changed_at']
    )

    op.create_table(
        'webhook_dedup_events',
        sa.Column('id', sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column('provider', sa.TEXT(), nullable=False),
        sa.Column('dedup_key', sa.TEXT(), nullable=False),
        *_timestamps('first_seen_at'),
        sa.Column('last_seen_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='processing'),
        sa.Column('request_hash', sa.TEXT(), nullable=True),
        sa.UniqueConstraint('provider', 'dedup_key', name='uq_webhook_dedup_events'),
    )
    op.create_index('idx_webhook_dedup_status', 'webhook_dedup_events', ['status'])
    op.create_index('idx_webhook_dedup_first_seen', 'webhook_dedup_events', ['first_seen_at'])


def downgrade() -> None:
    op.drop_table('webhook_dedup_events')
    op.drop_table('subscription_audit')
    op.drop_table('ingredient_feedback')
    op.drop_table('usage_history')
    op.drop_table('card_orders')
    op.drop_table('card_subscription_records')
    op.drop_table('card_customer_mappings')
    op.drop_table('user_entitlements')
