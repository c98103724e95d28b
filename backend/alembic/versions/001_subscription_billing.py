"""Subscription billing schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

WHAT: Creates the plan catalog, subscriptions, the PayTech notification
ledger and the subscription audit log.

WHY: Two constraints carry the concurrency guarantees of the service:
- uq_subscriptions_one_active_per_user: partial unique index on
  subscriptions(user_id) WHERE status = 'ACTIVE', so no interleaving of
  activations can leave a user with two ACTIVE rows
- uq_webhook_events_transaction_id: one ledger row per PayTech token, the
  target of INSERT ... ON CONFLICT DO NOTHING

HOW: Enum columns store the member names (uppercase), matching the ORM.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


plan_type_enum = sa.Enum('FREE', 'BASIC', 'PREMIUM', 'PROFESSIONAL', name='plantype')
subscription_status_enum = sa.Enum(
    'PENDING', 'ACTIVE', 'SUSPENDED', 'CANCELLED', 'EXPIRED',
    name='subscriptionstatus',
)
webhook_outcome_enum = sa.Enum(
    'APPLIED', 'DUPLICATE_IGNORED', 'REJECTED', name='webhookoutcome'
)
webhook_event_kind_enum = sa.Enum('SALE_COMPLETE', 'SALE_CANCELLED', name='webhookeventkind')
audit_action_enum = sa.Enum(
    'SUBSCRIPTION_SUSPENDED',
    'SUBSCRIPTION_RESTORED',
    'SUBSCRIPTION_CANCELLED',
    'SUBSCRIPTION_FORCE_ACTIVATED',
    'RECONCILIATION_RUN',
    'PLAN_UPSERTED',
    'PLANS_INITIALIZED',
    name='auditaction',
)


def upgrade() -> None:
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('type', plan_type_enum, nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='XOF'),
        sa.Column('duration_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('features', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_subscription_plans_id', 'subscription_plans', ['id'])
    op.create_index('ix_subscription_plans_type', 'subscription_plans', ['type'], unique=True)
    op.create_index('ix_subscription_plans_is_active', 'subscription_plans', ['is_active'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column(
            'plan_id',
            sa.Integer(),
            sa.ForeignKey('subscription_plans.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('status', subscription_status_enum, nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('suspended_at', sa.DateTime(), nullable=True),
        sa.Column('suspended_reason', sa.Text(), nullable=True),
        sa.Column('restored_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('transaction_id', sa.String(255), nullable=True, unique=True),
        sa.Column('ref_command', sa.String(255), nullable=True),
        sa.Column('payment_method', sa.String(50), nullable=False, server_default='mobile_money'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_ref_command', 'subscriptions', ['ref_command'])
    op.create_index(
        'uq_subscriptions_one_active_per_user',
        'subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
        sqlite_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.String(255), nullable=False),
        sa.Column('event_kind', webhook_event_kind_enum, nullable=True),
        sa.Column('outcome', webhook_outcome_enum, nullable=False),
        sa.Column('payload_digest', sa.String(64), nullable=False),
        sa.Column('ref_command', sa.String(255), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('transaction_id', name='uq_webhook_events_transaction_id'),
    )
    op.create_index('ix_webhook_events_id', 'webhook_events', ['id'])

    op.create_table(
        'subscription_audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor', sa.String(255), nullable=False, server_default='system'),
        sa.Column('action', audit_action_enum, nullable=False),
        sa.Column('subscription_id', sa.String(36), nullable=True),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('request_id', sa.String(64), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_subscription_audit_logs_id', 'subscription_audit_logs', ['id'])
    op.create_index('ix_subscription_audit_logs_actor', 'subscription_audit_logs', ['actor'])
    op.create_index('ix_subscription_audit_logs_action', 'subscription_audit_logs', ['action'])
    op.create_index(
        'ix_subscription_audit_logs_subscription_id',
        'subscription_audit_logs',
        ['subscription_id'],
    )
    op.create_index('ix_subscription_audit_logs_user_id', 'subscription_audit_logs', ['user_id'])


def downgrade() -> None:
    op.drop_table('subscription_audit_logs')
    op.drop_table('webhook_events')
    op.drop_index('uq_subscriptions_one_active_per_user', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('subscription_plans')

    bind = op.get_bind()
    for enum_type in (
        audit_action_enum,
        webhook_outcome_enum,
        webhook_event_kind_enum,
        subscription_status_enum,
        plan_type_enum,
    ):
        enum_type.drop(bind, checkfirst=True)
