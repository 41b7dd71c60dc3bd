"""create outbound messaging tables

Revision ID: 20261019_outbound_messaging
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_outbound_messaging'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'messaging_channels',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('channel_type', sa.String(length=20), nullable=False, server_default='whatsapp'),
        sa.Column('sender_identity', sa.String(length=64), nullable=False),
        sa.Column('credential_ref', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('tenant_id', 'channel_type', name='uq_messaging_channels_tenant_type'),
    )

    op.create_table(
        'recipient_messaging_preferences',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('recipient_id', sa.Integer(), nullable=False),
        sa.Column('address', sa.String(length=32), nullable=False),
        sa.Column('opt_in', sa.Boolean(), nullable=False, server_default=sa.text('FALSE')),
        sa.Column('opted_out_at', sa.DateTime(), nullable=True),
        sa.Column('quiet_hours_start', sa.String(length=5), nullable=True),
        sa.Column('quiet_hours_end', sa.String(length=5), nullable=True),
        sa.Column('max_messages_per_day', sa.Integer(), nullable=True, server_default='20'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('tenant_id', 'recipient_id', name='uq_recipient_prefs_tenant_recipient'),
    )
    op.create_index('ix_recipient_prefs_opt_in', 'recipient_messaging_preferences', ['tenant_id', 'opt_in'])

    op.create_table(
        'employees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('location_id', sa.Integer(), nullable=True),
    )
    op.create_index('ix_employees_tenant_location', 'employees', ['tenant_id', 'location_id'])

    op.create_table(
        'message_templates',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('approval_status', sa.String(length=20), nullable=False, server_default='draft'),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('provider_template_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('tenant_id', 'name', 'version', name='uq_message_templates_name_version'),
    )

    op.create_table(
        'outbound_messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('recipient_id', sa.Integer(), nullable=False),
        sa.Column('channel', sa.String(length=20), nullable=False, server_default='whatsapp'),
        sa.Column('template_id', sa.Integer(), sa.ForeignKey('message_templates.id'), nullable=True),
        sa.Column('event_type', sa.String(length=100), nullable=False, server_default='manual'),
        sa.Column('event_ref_id', sa.String(length=100), nullable=True),
        sa.Column('recipient_address', sa.String(length=32), nullable=False),
        sa.Column('variables', sa.JSON(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='queued'),
        sa.Column('provider_message_id', sa.String(length=64), nullable=True),
        sa.Column('error_code', sa.String(length=32), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('idempotency_key', name='uq_outbound_messages_idempotency_key'),
        sa.CheckConstraint("status IN ('queued', 'sent', 'failed')", name='ck_outbound_messages_status'),
        sa.CheckConstraint(
            "next_retry_at IS NULL OR status = 'failed'",
            name='ck_outbound_messages_retry_only_failed',
        ),
    )
    op.create_index(
        'ix_outbound_messages_recipient_created',
        'outbound_messages',
        ['tenant_id', 'recipient_id', 'created_at'],
    )
    op.create_index('ix_outbound_messages_status_retry', 'outbound_messages', ['status', 'next_retry_at'])
    op.create_index('ix_outbound_messages_provider_id', 'outbound_messages', ['provider_message_id'])

    op.create_table(
        'message_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('message_id', sa.Integer(), sa.ForeignKey('outbound_messages.id'), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('provider_status', sa.String(length=32), nullable=True),
        sa.Column('raw_provider_payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_message_events_message', 'message_events', ['message_id'])


def downgrade():
    op.drop_index('ix_message_events_message', table_name='message_events')
    op.drop_table('message_events')

    op.drop_index('ix_outbound_messages_provider_id', table_name='outbound_messages')
    op.drop_index('ix_outbound_messages_status_retry', table_name='outbound_messages')
    op.drop_index('ix_outbound_messages_recipient_created', table_name='outbound_messages')
    op.drop_table('outbound_messages')

    op.drop_table('message_templates')
    op.drop_index('ix_employees_tenant_location', table_name='employees')
    op.drop_table('employees')
    op.drop_index('ix_recipient_prefs_opt_in', table_name='recipient_messaging_preferences')
    op.drop_table('recipient_messaging_preferences')
    op.drop_table('messaging_channels')
