"""Initial migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Scan jobs table
    op.create_table(
        'scan_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('scan_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('trigger', sa.String(length=32), nullable=True),
        sa.Column('stage', sa.String(length=32), nullable=False),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('emails_found', sa.Integer(), nullable=False),
        sa.Column('emails_to_process', sa.Integer(), nullable=False),
        sa.Column('emails_processed', sa.Integer(), nullable=False),
        sa.Column('subscriptions_found', sa.Integer(), nullable=False),
        sa.Column('tasks_failed', sa.Integer(), nullable=False),
        sa.Column('degraded', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('redispatch_count', sa.Integer(), nullable=False),
        sa.Column('last_pending_count', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    # email_records.scan_id references this unique index
    op.create_index('ix_scan_jobs_scan_id', 'scan_jobs', ['scan_id'], unique=True)

    # Subscriptions table
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('billing_cycle', sa.String(length=16), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('provider', sa.String(length=255), nullable=True),
        sa.Column('next_billing_date', sa.Date(), nullable=True),
        sa.Column('is_manual', sa.Boolean(), nullable=False),
        sa.Column('normalized_name', sa.String(length=255), nullable=True),
        sa.Column('source_analysis_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    # Email records table
    op.create_table(
        'email_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('scan_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('provider_message_id', sa.String(length=128), nullable=False),
        sa.Column('subject', sa.Text(), nullable=False),
        sa.Column('sender', sa.Text(), nullable=False),
        sa.Column('date', sa.String(length=128), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('content_preview', sa.String(length=500), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['scan_id'], ['scan_jobs.scan_id'], ),
        sa.UniqueConstraint('scan_id', 'provider_message_id', name='uq_email_scan_message'),
    )

    # Analysis tasks table
    op.create_table(
        'analysis_tasks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email_record_id', sa.Integer(), nullable=False),
        sa.Column('scan_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('subscription_name', sa.String(length=255), nullable=True),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=True),
        sa.Column('billing_cycle', sa.String(length=16), nullable=True),
        sa.Column('next_billing_date', sa.Date(), nullable=True),
        sa.Column('provider', sa.String(length=255), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('raw_model_output', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['email_record_id'], ['email_records.id'], ),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ),
        sa.UniqueConstraint('email_record_id'),
    )

    # Mailbox tokens table (written by the OAuth flow)
    op.create_table(
        'mailbox_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('access_token', sa.String(length=2048), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )

    # Create indexes
    op.create_index('ix_scan_jobs_user_id', 'scan_jobs', ['user_id'])
    op.create_index('ix_scan_jobs_stage', 'scan_jobs', ['stage'])
    op.create_index('ix_email_records_scan_id', 'email_records', ['scan_id'])
    op.create_index('ix_email_records_user_id', 'email_records', ['user_id'])
    op.create_index('ix_analysis_tasks_scan_id', 'analysis_tasks', ['scan_id'])
    op.create_index('ix_analysis_tasks_user_id', 'analysis_tasks', ['user_id'])
    op.create_index('ix_analysis_tasks_status', 'analysis_tasks', ['status'])
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index(
        'uq_subscription_user_normalized',
        'subscriptions',
        ['user_id', 'normalized_name'],
        unique=True,
        postgresql_where=sa.text('is_manual = false'),
    )


def downgrade() -> None:
    # Drop indexes
    op.drop_index('uq_subscription_user_normalized', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_index('ix_analysis_tasks_status', table_name='analysis_tasks')
    op.drop_index('ix_analysis_tasks_user_id', table_name='analysis_tasks')
    op.drop_index('ix_analysis_tasks_scan_id', table_name='analysis_tasks')
    op.drop_index('ix_email_records_user_id', table_name='email_records')
    op.drop_index('ix_email_records_scan_id', table_name='email_records')
    op.drop_index('ix_scan_jobs_stage', table_name='scan_jobs')
    op.drop_index('ix_scan_jobs_user_id', table_name='scan_jobs')
    op.drop_index('ix_scan_jobs_scan_id', table_name='scan_jobs')

    # Drop tables
    op.drop_table('mailbox_tokens')
    op.drop_table('analysis_tasks')
    op.drop_table('email_records')
    op.drop_table('subscriptions')
    op.drop_table('scan_jobs')
