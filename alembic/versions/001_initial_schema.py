"""Initial schema

Revision ID: 001_initial_schema
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    # Partners table (owned by the admin tooling; read-only for the tracker)
    op.create_table(
        'partners',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('target_domain', sa.String(length=255), nullable=True),
        sa.Column('clickid_keys', JSONType, nullable=True),
        sa.Column('sum_keys', JSONType, nullable=True),
        sa.Column('sum_mapping', JSONType, nullable=True),
        sa.Column('ip_whitelist_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('allowed_ips', JSONType, nullable=True),
        sa.Column('logging_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('telegram_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('telegram_whitelist_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('telegram_whitelist_keywords', JSONType, nullable=True),
        sa.Column('partner_telegram_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('partner_telegram_bot_token', sa.String(length=512), nullable=True),
        sa.Column('partner_telegram_channel_id', sa.String(length=128), nullable=True),
        sa.Column('google_spreadsheet_id', sa.String(length=128), nullable=True),
        sa.Column('google_sheet_name', sa.String(length=128), nullable=True),
        sa.Column('google_service_account_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Postback queue
    op.create_table(
        'postback_queue',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('partner_id', sa.String(length=64), nullable=False),
        sa.Column('data', JSONType, nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_postback_queue_partner_id', 'postback_queue', ['partner_id'])
    op.create_index('ix_postback_queue_status_created', 'postback_queue', ['status', 'created_at'])

    # Detailed statistics, one row per distinct event
    op.create_table(
        'detailed_stats',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_key', sa.String(length=64), nullable=False),
        sa.Column('partner_id', sa.String(length=64), nullable=False),
        sa.Column('queue_entry_id', sa.Integer(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('click_id', sa.Text(), nullable=True),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('sum', sa.Float(), nullable=True),
        sa.Column('sum_mapping', sa.Float(), nullable=False, server_default='0'),
        sa.Column('extra_params', JSONType, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_key')
    )
    op.create_index('ix_detailed_stats_partner_id', 'detailed_stats', ['partner_id'])
    op.create_index('ix_detailed_stats_partner_timestamp', 'detailed_stats', ['partner_id', 'timestamp'])

    # Summary counters
    op.create_table(
        'summary_stats',
        sa.Column('partner_id', sa.String(length=64), nullable=False),
        sa.Column('total_requests', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_redirects', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('errors', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('partner_id')
    )

    # Global settings
    op.create_table(
        'app_settings',
        sa.Column('setting_key', sa.String(length=64), nullable=False),
        sa.Column('setting_value', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('setting_key')
    )


def downgrade() -> None:
    op.drop_table('app_settings')
    op.drop_table('summary_stats')
    op.drop_index('ix_detailed_stats_partner_timestamp', table_name='detailed_stats')
    op.drop_index('ix_detailed_stats_partner_id', table_name='detailed_stats')
    op.drop_table('detailed_stats')
    op.drop_index('ix_postback_queue_status_created', table_name='postback_queue')
    op.drop_index('ix_postback_queue_partner_id', table_name='postback_queue')
    op.drop_table('postback_queue')
    op.drop_table('partners')
