"""Initial migration - create reconciliation, webhook event and snapshot tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create reconciliation_jobs table
    op.create_table(
        'reconciliation_jobs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('type', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_by', sa.String(255), nullable=False, server_default='system'),
        sa.Column('config_json', sa.Text(), nullable=True),
        sa.Column('results_json', sa.Text(), nullable=True),
        sa.Column('errors_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_reconciliation_jobs_type_status', 'reconciliation_jobs', ['type', 'status'])
    op.create_index('ix_reconciliation_jobs_created_at', 'reconciliation_jobs', ['created_at'])

    # Create reconciliation_checks table
    op.create_table(
        'reconciliation_checks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('job_id', sa.String(36), sa.ForeignKey('reconciliation_jobs.id'), nullable=False),
        sa.Column('resource_type', sa.String(50), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=False),
        sa.Column('check_name', sa.String(100), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('check_metadata_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_reconciliation_checks_job_id', 'reconciliation_checks', ['job_id'])
    op.create_index('ix_reconciliation_checks_resource', 'reconciliation_checks', ['resource_type', 'resource_id'])
    op.create_index('ix_reconciliation_checks_outcome', 'reconciliation_checks', ['outcome'])

    # Create reconciliation_discrepancies table
    op.create_table(
        'reconciliation_discrepancies',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('check_id', sa.String(36), sa.ForeignKey('reconciliation_checks.id'), nullable=False),
        sa.Column('resource_type', sa.String(50), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=False),
        sa.Column('field', sa.String(100), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False, server_default='medium'),
        sa.Column('authoritative_value', sa.Text(), nullable=True),
        sa.Column('local_value', sa.Text(), nullable=True),
        sa.Column('source_event_id', sa.String(255), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(20), nullable=True),
        sa.Column('resolution_json', sa.Text(), nullable=True),
        sa.Column('active_key', sa.String(512), nullable=True, unique=True),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_reconciliation_discrepancies_check_id', 'reconciliation_discrepancies', ['check_id'])
    op.create_index(
        'ix_reconciliation_discrepancies_resource',
        'reconciliation_discrepancies',
        ['resource_type', 'resource_id', 'field'],
    )
    op.create_index('ix_reconciliation_discrepancies_resolved', 'reconciliation_discrepancies', ['resolved'])

    # Create webhook_events table
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('resource_type', sa.String(50), nullable=True),
        sa.Column('resource_id', sa.String(255), nullable=True),
        sa.Column('payload_json', sa.Text(), nullable=True),
        sa.Column('event_metadata_json', sa.Text(), nullable=True),
        sa.Column('processing_state', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('event_timestamp', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_webhook_events_event_id', 'webhook_events', ['event_id'], unique=True)
    op.create_index('ix_webhook_events_resource', 'webhook_events', ['resource_type', 'event_timestamp'])
    op.create_index('ix_webhook_events_processing_state', 'webhook_events', ['processing_state'])

    # Create transactions table
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('customer_id', sa.String(255), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('company_name', sa.String(255), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('invoice_number', sa.String(100), nullable=True),
        sa.Column('transfer_metadata_json', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_transactions_external_id', 'transactions', ['external_id'], unique=True)
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_processed_at', 'transactions', ['processed_at'])

    # Create customers table
    op.create_table(
        'customers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='unverified'),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('customer_metadata_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_customers_external_id', 'customers', ['external_id'], unique=True)

    # Create reconciliation_watermarks table
    op.create_table(
        'reconciliation_watermarks',
        sa.Column('config_name', sa.String(100), primary_key=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=False),
        sa.Column('last_event_id', sa.String(255), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('reconciliation_watermarks')

    op.drop_index('ix_customers_external_id', table_name='customers')
    op.drop_table('customers')

    op.drop_index('ix_transactions_processed_at', table_name='transactions')
    op.drop_index('ix_transactions_status', table_name='transactions')
    op.drop_index('ix_transactions_external_id', table_name='transactions')
    op.drop_table('transactions')

    op.drop_index('ix_webhook_events_processing_state', table_name='webhook_events')
    op.drop_index('ix_webhook_events_resource', table_name='webhook_events')
    op.drop_index('ix_webhook_events_event_id', table_name='webhook_events')
    op.drop_table('webhook_events')

    op.drop_index('ix_reconciliation_discrepancies_resolved', table_name='reconciliation_discrepancies')
    op.drop_index('ix_reconciliation_discrepancies_resource', table_name='reconciliation_discrepancies')
    op.drop_index('ix_reconciliation_discrepancies_check_id', table_name='reconciliation_discrepancies')
    op.drop_table('reconciliation_discrepancies')

    op.drop_index('ix_reconciliation_checks_outcome', table_name='reconciliation_checks')
    op.drop_index('ix_reconciliation_checks_resource', table_name='reconciliation_checks')
    op.drop_index('ix_reconciliation_checks_job_id', table_name='reconciliation_checks')
    op.drop_table('reconciliation_checks')

    op.drop_index('ix_reconciliation_jobs_created_at', table_name='reconciliation_jobs')
    op.drop_index('ix_reconciliation_jobs_type_status', table_name='reconciliation_jobs')
    op.drop_table('reconciliation_jobs')
