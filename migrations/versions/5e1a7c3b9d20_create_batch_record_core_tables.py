"""create batch record core tables

Revision ID: 5e1a7c3b9d20
Revises:
Create Date: 2026-10-19 09:12:44.102318

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '5e1a7c3b9d20'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

json_doc = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    # audit_events table
    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('request_id', sa.String(length=64), nullable=True),
        sa.Column('actor_user_id', sa.String(length=128), nullable=True),
        sa.Column('action', sa.String(length=128), nullable=False),
        sa.Column('entity_type', sa.String(length=128), nullable=True),
        sa.Column('entity_id', sa.String(length=128), nullable=True),
        sa.Column('old_value_json', sa.Text(), nullable=True),
        sa.Column('new_value_json', sa.Text(), nullable=True),
        sa.Column('reason', sa.String(length=512), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('batch_record_id', sa.String(length=36), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_audit_events_batch', 'audit_events', ['batch_record_id'], unique=False)
    op.create_index('idx_audit_events_entity', 'audit_events', ['entity_type', 'entity_id'], unique=False)
    op.create_index('idx_audit_events_created_at', 'audit_events', ['created_at'], unique=False)

    # template tables
    op.create_table(
        'batch_record_templates',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.String(length=1024), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table(
        'template_versions',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('template_id', sa.String(length=64), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('data', json_doc, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['template_id'], ['batch_record_templates.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('template_id', 'version', name='uq_template_versions_template_version')
    )
    op.create_table(
        'template_rules',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('template_id', sa.String(length=64), nullable=False),
        sa.Column('rule_type', sa.String(length=64), nullable=False),
        sa.Column('rule_data', json_doc, nullable=False),
        sa.Column('target_section_id', sa.String(length=128), nullable=True),
        sa.Column('target_field_id', sa.String(length=128), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['template_id'], ['batch_record_templates.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_template_rules_target', 'template_rules', ['template_id', 'target_section_id'], unique=False)

    # batch_records table
    op.create_table(
        'batch_records',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('batch_number', sa.String(length=128), nullable=False),
        sa.Column('template_id', sa.String(length=64), nullable=False),
        sa.Column('template_version_id', sa.String(length=64), nullable=True),
        sa.Column('planned_quantity', sa.Float(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['template_id'], ['batch_record_templates.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['template_version_id'], ['template_versions.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('batch_number')
    )
    op.create_index('idx_batch_records_status', 'batch_records', ['status'], unique=False)
    op.create_index('idx_batch_records_template', 'batch_records', ['template_id'], unique=False)

    # batch_record_sections table (one row per section version)
    op.create_table(
        'batch_record_sections',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('node_id', sa.String(length=36), nullable=False),
        sa.Column('batch_record_id', sa.String(length=36), nullable=False),
        sa.Column('section_id', sa.String(length=128), nullable=False),
        sa.Column('parent_section_id', sa.String(length=36), nullable=True),
        sa.Column('section_type', sa.String(length=16), nullable=False),
        sa.Column('section_data', json_doc, nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('previous_version_id', sa.String(length=36), nullable=True),
        sa.Column('approval_request_id', sa.String(length=36), nullable=True),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('locked_by', sa.String(length=128), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_by', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('updated_by', sa.String(length=128), nullable=True),
        sa.ForeignKeyConstraint(['batch_record_id'], ['batch_records.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['parent_section_id'], ['batch_record_sections.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['previous_version_id'], ['batch_record_sections.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('node_id', 'version', name='uq_batch_record_sections_node_version')
    )
    op.create_index('idx_batch_record_sections_batch', 'batch_record_sections', ['batch_record_id'], unique=False)
    op.create_index('idx_batch_record_sections_parent', 'batch_record_sections', ['parent_section_id'], unique=False)
    op.create_index('idx_batch_record_sections_section', 'batch_record_sections', ['batch_record_id', 'section_id'], unique=False)
    op.create_index(
        'uq_batch_record_sections_active_path',
        'batch_record_sections',
        ['batch_record_id', 'section_id', sa.text("coalesce(parent_section_id, '')")],
        unique=True,
        sqlite_where=sa.text('is_active'),
        postgresql_where=sa.text('is_active'),
    )

    # approval_requests table
    op.create_table(
        'approval_requests',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('batch_record_id', sa.String(length=36), nullable=False),
        sa.Column('section_id', sa.String(length=128), nullable=False),
        sa.Column('section_node_id', sa.String(length=36), nullable=False),
        sa.Column('parent_section_id', sa.String(length=36), nullable=True),
        sa.Column('section_record_id', sa.String(length=36), nullable=True),
        sa.Column('resulting_section_record_id', sa.String(length=36), nullable=True),
        sa.Column('request_type', sa.String(length=32), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('existing_data', json_doc, nullable=True),
        sa.Column('proposed_data', json_doc, nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('status_before_request', sa.String(length=32), nullable=True),
        sa.Column('requested_by', sa.String(length=128), nullable=False),
        sa.Column('requested_at', sa.DateTime(), nullable=False),
        sa.Column('reviewed_by', sa.String(length=128), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('review_comments', sa.Text(), nullable=True),
        sa.Column('signature_id', sa.String(length=36), nullable=True),
        sa.ForeignKeyConstraint(['batch_record_id'], ['batch_records.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['section_record_id'], ['batch_record_sections.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['resulting_section_record_id'], ['batch_record_sections.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_approval_requests_batch', 'approval_requests', ['batch_record_id'], unique=False)
    op.create_index('idx_approval_requests_status', 'approval_requests', ['status'], unique=False)
    op.create_index('idx_approval_requests_section', 'approval_requests', ['batch_record_id', 'section_id'], unique=False)
    op.create_index(
        'uq_approval_requests_pending_node',
        'approval_requests',
        ['section_node_id'],
        unique=True,
        sqlite_where=sa.text("status = 'PENDING'"),
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    # electronic_signatures table
    op.create_table(
        'electronic_signatures',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('entity_type', sa.String(length=128), nullable=False),
        sa.Column('entity_id', sa.String(length=128), nullable=False),
        sa.Column('payload_hash', sa.String(length=64), nullable=False),
        sa.Column('batch_record_id', sa.String(length=36), nullable=True),
        sa.Column('section_record_id', sa.String(length=36), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.Column('consumed_action', sa.String(length=128), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_electronic_signatures_user', 'electronic_signatures', ['user_id'], unique=False)
    op.create_index('idx_electronic_signatures_entity', 'electronic_signatures', ['entity_type', 'entity_id'], unique=False)
    op.create_index('idx_electronic_signatures_batch', 'electronic_signatures', ['batch_record_id'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_electronic_signatures_batch', table_name='electronic_signatures')
    op.drop_index('idx_electronic_signatures_entity', table_name='electronic_signatures')
    op.drop_index('idx_electronic_signatures_user', table_name='electronic_signatures')
    op.drop_table('electronic_signatures')

    op.drop_index('uq_approval_requests_pending_node', table_name='approval_requests')
    op.drop_index('idx_approval_requests_section', table_name='approval_requests')
    op.drop_index('idx_approval_requests_status', table_name='approval_requests')
    op.drop_index('idx_approval_requests_batch', table_name='approval_requests')
    op.drop_table('approval_requests')

    op.drop_index('uq_batch_record_sections_active_path', table_name='batch_record_sections')
    op.drop_index('idx_batch_record_sections_section', table_name='batch_record_sections')
    op.drop_index('idx_batch_record_sections_parent', table_name='batch_record_sections')
    op.drop_index('idx_batch_record_sections_batch', table_name='batch_record_sections')
    op.drop_table('batch_record_sections')

    op.drop_index('idx_batch_records_template', table_name='batch_records')
    op.drop_index('idx_batch_records_status', table_name='batch_records')
    op.drop_table('batch_records')

    op.drop_index('idx_template_rules_target', table_name='template_rules')
    op.drop_table('template_rules')
    op.drop_table('template_versions')
    op.drop_table('batch_record_templates')

    op.drop_index('idx_audit_events_created_at', table_name='audit_events')
    op.drop_index('idx_audit_events_entity', table_name='audit_events')
    op.drop_index('idx_audit_events_batch', table_name='audit_events')
    op.drop_table('audit_events')
