"""Create action queue, indexing rule, cost model and audit tables

Revision ID: e1f2a3b4c5d6
Revises:
Create Date: 2026-10-19 12:00:00.000000

The unique in_flight_target column backs the one-in-flight-action-per-target
rule: it holds the target while an action is queued, approved or pending
and is cleared when the action reaches a terminal status.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'e1f2a3b4c5d6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'actions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('deployment_id', sa.String(66), nullable=True),
        sa.Column('allocation_id', sa.String(42), nullable=True),
        sa.Column('amount', sa.String(78), nullable=True),
        sa.Column('proof', sa.String(66), nullable=True),
        sa.Column('force', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('source', sa.String(100), nullable=False),
        sa.Column('reason', sa.String(500), nullable=False, server_default=''),
        sa.Column('transaction_ref', sa.String(100), nullable=True),
        sa.Column('failure_reason', sa.String(1000), nullable=True),
        sa.Column('result', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('pending_cycles', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('in_flight_target', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_actions_status', 'actions', ['status'])
    op.create_index('ix_actions_type', 'actions', ['type'])
    op.create_index('ix_actions_deployment_id', 'actions', ['deployment_id'])
    op.create_index('ix_actions_allocation_id', 'actions', ['allocation_id'])
    op.create_index('ix_actions_source', 'actions', ['source'])
    op.create_index('ix_actions_created_at', 'actions', ['created_at'])
    op.create_unique_constraint('uq_actions_in_flight_target', 'actions', ['in_flight_target'])

    op.create_table(
        'indexing_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('identifier', sa.String(100), nullable=False),
        sa.Column('identifier_type', sa.String(20), nullable=False),
        sa.Column('allocation_amount', sa.String(78), nullable=True),
        sa.Column('allocation_lifetime', sa.Integer(), nullable=True),
        sa.Column('auto_renewal', sa.Boolean(), nullable=True),
        sa.Column('parallel_allocations', sa.Integer(), nullable=True),
        sa.Column('max_allocation_percentage', sa.Float(), nullable=True),
        sa.Column('min_signal', sa.String(78), nullable=True),
        sa.Column('max_signal', sa.String(78), nullable=True),
        sa.Column('min_stake', sa.String(78), nullable=True),
        sa.Column('min_average_query_fees', sa.String(78), nullable=True),
        sa.Column('custom', sa.String(2000), nullable=True),
        sa.Column('decision_basis', sa.String(20), nullable=True),
        sa.Column('require_supported', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('identifier', 'identifier_type', name='uq_indexing_rules_identifier'),
    )
    op.create_index('ix_indexing_rules_identifier', 'indexing_rules', ['identifier'])

    op.create_table(
        'cost_models',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('deployment', sa.String(66), nullable=False),
        sa.Column('model', sa.Text(), nullable=True),
        sa.Column('variables', postgresql.JSONB(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_cost_models_deployment', 'cost_models', ['deployment'], unique=True)

    op.create_table(
        'audit_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_type', sa.String(30), nullable=False),
        sa.Column('actor', sa.String(100), nullable=False),
        sa.Column('summary', sa.String(500), nullable=False),
        sa.Column('subject_type', sa.String(30), nullable=False),
        sa.Column('subject_id', sa.String(100), nullable=True),
        sa.Column('details', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('previous_hash', sa.String(64), nullable=True),
        sa.Column('entry_hash', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('entry_hash', name='uq_audit_log_entry_hash'),
    )
    op.create_index('ix_audit_log_event_type', 'audit_log', ['event_type'])
    op.create_index('ix_audit_log_created_at', 'audit_log', ['created_at'])


def downgrade() -> None:
    op.drop_table('audit_log')
    op.drop_table('cost_models')
    op.drop_table('indexing_rules')
    op.drop_table('actions')
