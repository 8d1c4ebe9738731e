"""create_approval_routing_tables

Revision ID: 5e1a7c3b9d20
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '5e1a7c3b9d20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False)


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)


def _updated_at() -> sa.Column:
    return sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)


def upgrade() -> None:
    # ─── tier_configurations ───
    op.create_table(
        'tier_configurations',
        _id(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('lineage_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('supersedes_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('cumulative', sa.Boolean(), nullable=False),
        sa.Column('tiers', sa.JSON(), nullable=False),
        sa.Column('referenced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tier_configurations_category', 'tier_configurations', ['category'])
    op.create_index('ix_tier_configurations_lineage_id', 'tier_configurations', ['lineage_id'])
    op.create_index(
        'uq_tier_configurations_default_per_category', 'tier_configurations', ['category'],
        unique=True, postgresql_where=sa.text('is_default AND is_active'),
    )

    # ─── workflow_instances ───
    op.create_table(
        'workflow_instances',
        _id(),
        sa.Column('reference_id', sa.String(255), nullable=False),
        sa.Column('reference_type', sa.String(100), nullable=False),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('requester_id', sa.String(255), nullable=False),
        sa.Column('attributes', sa.JSON(), nullable=False),
        sa.Column('configuration_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('configuration_version', sa.Integer(), nullable=False),
        sa.Column('tier_plan', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('cycle', sa.Integer(), nullable=False),
        sa.Column('current_step_order', sa.Integer(), nullable=False),
        sa.Column('current_step_id', sa.String(64), nullable=True),
        sa.Column('step_entered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('escalation_target', sa.JSON(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(['configuration_id'], ['tier_configurations.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_workflow_instances_reference_id', 'workflow_instances', ['reference_id'])
    op.create_index('ix_workflow_instances_category', 'workflow_instances', ['category'])
    op.create_index('ix_workflow_instances_requester_id', 'workflow_instances', ['requester_id'])
    op.create_index('ix_workflow_instances_configuration_id', 'workflow_instances', ['configuration_id'])
    op.create_index('ix_workflow_instances_status', 'workflow_instances', ['status'])

    # ─── workflow_step_history ───
    op.create_table(
        'workflow_step_history',
        _id(),
        sa.Column('instance_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('cycle', sa.Integer(), nullable=False),
        sa.Column('step_id', sa.String(64), nullable=True),
        sa.Column('step_order', sa.Integer(), nullable=False),
        sa.Column('tier_level', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('action_by', sa.String(255), nullable=False),
        sa.Column('approver_slot_id', sa.String(64), nullable=True),
        sa.Column('is_proxy_approval', sa.Boolean(), nullable=False),
        sa.Column('original_approver_id', sa.String(255), nullable=True),
        sa.Column('delegation_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('is_system_action', sa.Boolean(), nullable=False),
        sa.Column('completes_workflow', sa.Boolean(), nullable=False),
        sa.Column('comments', sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['instance_id'], ['workflow_instances.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('instance_id', 'sequence', name='uq_workflow_step_history_sequence'),
    )
    op.create_index('ix_workflow_step_history_instance_id', 'workflow_step_history', ['instance_id'])
    op.create_index('ix_workflow_step_history_step_id', 'workflow_step_history', ['step_id'])
    op.create_index('ix_workflow_step_history_action_by', 'workflow_step_history', ['action_by'])
    op.create_index('ix_workflow_step_history_created_at', 'workflow_step_history', ['created_at'])

    # ─── rejection_history ───
    op.create_table(
        'rejection_history',
        _id(),
        sa.Column('instance_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('cycle', sa.Integer(), nullable=False),
        sa.Column('step_id', sa.String(64), nullable=True),
        sa.Column('tier_level', sa.Integer(), nullable=True),
        sa.Column('rejected_by', sa.String(255), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('returned_to_requestor', sa.Boolean(), nullable=False),
        sa.Column('previous_status', sa.String(50), nullable=False),
        sa.Column('is_proxy_approval', sa.Boolean(), nullable=False),
        sa.Column('original_approver_id', sa.String(255), nullable=True),
        sa.Column('amount', sa.Numeric(18, 2), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['instance_id'], ['workflow_instances.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_rejection_history_instance_id', 'rejection_history', ['instance_id'])
    op.create_index('ix_rejection_history_created_at', 'rejection_history', ['created_at'])

    # ─── delegation_rules ───
    op.create_table(
        'delegation_rules',
        _id(),
        sa.Column('from_user_id', sa.String(255), nullable=False),
        sa.Column('to_user_id', sa.String(255), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('delegation_type', sa.String(20), nullable=False),
        sa.Column('workflow_categories', sa.JSON(), nullable=False),
        sa.Column('limits', sa.JSON(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoke_reason', sa.Text(), nullable=True),
        sa.Column('revoked_by', sa.String(255), nullable=True),
        sa.Column('expired_recorded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_delegation_rules_from_user_id', 'delegation_rules', ['from_user_id'])
    op.create_index('ix_delegation_rules_to_user_id', 'delegation_rules', ['to_user_id'])

    # ─── delegation_audit ───
    op.create_table(
        'delegation_audit',
        _id(),
        sa.Column('delegation_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('actor_id', sa.String(255), nullable=False),
        sa.Column('instance_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(['delegation_id'], ['delegation_rules.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_delegation_audit_delegation_id', 'delegation_audit', ['delegation_id'])
    op.create_index('ix_delegation_audit_action', 'delegation_audit', ['action'])
    op.create_index('ix_delegation_audit_instance_id', 'delegation_audit', ['instance_id'])
    op.create_index('ix_delegation_audit_created_at', 'delegation_audit', ['created_at'])

    # ─── proxy_approvals ───
    op.create_table(
        'proxy_approvals',
        _id(),
        sa.Column('instance_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('step_id', sa.String(64), nullable=True),
        sa.Column('delegation_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('original_approver_id', sa.String(255), nullable=False),
        sa.Column('proxy_approver_id', sa.String(255), nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('tier_level', sa.Integer(), nullable=True),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=True),
        sa.Column('comments', sa.Text(), nullable=True),
        sa.Column('acted_at', sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(['instance_id'], ['workflow_instances.id']),
        sa.ForeignKeyConstraint(['delegation_id'], ['delegation_rules.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_proxy_approvals_instance_id', 'proxy_approvals', ['instance_id'])
    op.create_index('ix_proxy_approvals_delegation_id', 'proxy_approvals', ['delegation_id'])
    op.create_index('ix_proxy_approvals_original_approver_id', 'proxy_approvals', ['original_approver_id'])
    op.create_index('ix_proxy_approvals_proxy_approver_id', 'proxy_approvals', ['proxy_approver_id'])
    op.create_index('ix_proxy_approvals_created_at', 'proxy_approvals', ['created_at'])

    # ─── notification_intents ───
    op.create_table(
        'notification_intents',
        _id(),
        sa.Column('recipient_id', sa.String(255), nullable=False),
        sa.Column('notification_type', sa.String(50), nullable=False),
        sa.Column('instance_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('step_id', sa.String(64), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('dispatched_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notification_intents_recipient_id', 'notification_intents', ['recipient_id'])
    op.create_index('ix_notification_intents_notification_type', 'notification_intents', ['notification_type'])
    op.create_index('ix_notification_intents_instance_id', 'notification_intents', ['instance_id'])
    op.create_index('ix_notification_intents_created_at', 'notification_intents', ['created_at'])


def downgrade() -> None:
    op.drop_table('notification_intents')
    op.drop_table('proxy_approvals')
    op.drop_table('delegation_audit')
    op.drop_table('delegation_rules')
    op.drop_table('rejection_history')
    op.drop_table('workflow_step_history')
    op.drop_table('workflow_instances')
    op.drop_index('uq_tier_configurations_default_per_category', table_name='tier_configurations')
    op.drop_table('tier_configurations')
