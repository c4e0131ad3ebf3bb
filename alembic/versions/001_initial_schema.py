"""Initial schema

Revision ID: 001
Revises: 
Create Date: 2026-02-04 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

ENROLLMENT_STATUSES = ('created', 'sent', 'opened', 'processing', 'paid', 'failed', 'expired', 'canceled')
LIVE_STATUS_SQL = "status IN ('created', 'sent', 'opened', 'processing')"


def upgrade() -> None:
    # Policies table
    op.create_table(
        'policies',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('terms_url', sa.Text(), nullable=False),
        sa.Column('privacy_url', sa.Text(), nullable=True),
        sa.Column('version', sa.String(), nullable=False),
        sa.Column('terms_text', sa.Text(), nullable=True),
        sa.Column('privacy_text', sa.Text(), nullable=True),
        sa.Column('terms_content_hash', sa.String(64), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_policies_is_default', 'policies', ['is_default'])
    op.create_index('ix_policies_is_active', 'policies', ['is_active'])

    # Enrollments table
    op.create_table(
        'enrollments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('crm_module', sa.String(), nullable=False),
        sa.Column('crm_record_id', sa.String(), nullable=False),
        sa.Column('patient_name', sa.String(), nullable=True),
        sa.Column('patient_email', sa.String(), nullable=True),
        sa.Column('patient_phone', sa.String(), nullable=True),
        sa.Column('patient_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('token_hash', sa.String(64), nullable=False),
        sa.Column('token_suffix', sa.String(4), nullable=False),
        sa.Column('policy_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('terms_url', sa.Text(), nullable=False),
        sa.Column('privacy_url', sa.Text(), nullable=True),
        sa.Column('terms_version', sa.String(), nullable=False),
        sa.Column('terms_content_hash', sa.String(64), nullable=False),
        sa.Column('status', sa.Enum(*ENROLLMENT_STATUSES, name='enrollment_status'), nullable=False, server_default='created'),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('opened_at', sa.DateTime(), nullable=True),
        sa.Column('terms_accepted_at', sa.DateTime(), nullable=True),
        sa.Column('processing_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('expired_at', sa.DateTime(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('consent_ip', sa.String(45), nullable=True),
        sa.Column('consent_user_agent', sa.Text(), nullable=True),
        sa.Column('signature_blob_ref', sa.String(), nullable=True),
        sa.Column('consent_document_ref', sa.String(), nullable=True),
        sa.Column('checkout_session_id', sa.String(), nullable=True),
        sa.Column('payment_intent_id', sa.String(), nullable=True),
        sa.Column('processor_customer_id', sa.String(), nullable=True),
        sa.Column('payment_method_kind', sa.Enum('card', 'ach', name='payment_method_kind'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['policy_id'], ['policies.id'], ),
        sa.UniqueConstraint('checkout_session_id', name='uq_enrollments_checkout_session_id'),
    )
    op.create_index('ix_enrollments_token_hash', 'enrollments', ['token_hash'], unique=True)
    op.create_index('ix_enrollments_crm_record_id', 'enrollments', ['crm_record_id'])
    op.create_index('ix_enrollments_patient_email', 'enrollments', ['patient_email'])
    op.create_index('ix_enrollments_patient_id', 'enrollments', ['patient_id'])
    op.create_index('ix_enrollments_policy_id', 'enrollments', ['policy_id'])
    op.create_index('ix_enrollments_status', 'enrollments', ['status'])
    op.create_index('ix_enrollments_expires_at', 'enrollments', ['expires_at'])
    op.create_index('ix_enrollments_payment_intent_id', 'enrollments', ['payment_intent_id'])
    # At most one live enrollment per CRM record
    op.create_index(
        'uq_enrollments_live_crm_record',
        'enrollments',
        ['crm_module', 'crm_record_id'],
        unique=True,
        postgresql_where=sa.text(LIVE_STATUS_SQL),
    )

    # Enrollment events table (append-only)
    op.create_table(
        'enrollment_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('enrollment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('event_data', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['enrollment_id'], ['enrollments.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_enrollment_events_enrollment_id', 'enrollment_events', ['enrollment_id'])
    op.create_index('ix_enrollment_events_event_type', 'enrollment_events', ['event_type'])
    op.create_index('ix_enrollment_events_created_at', 'enrollment_events', ['created_at'])

    # Processed Stripe events (idempotency ledger)
    op.create_table(
        'processed_stripe_events',
        sa.Column('stripe_event_id', sa.String(), primary_key=True),
        sa.Column('event_type', sa.String(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_processed_stripe_events_event_type', 'processed_stripe_events', ['event_type'])

    # Rate limit counters
    op.create_table(
        'rate_limit_counters',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('key', 'window_start', name='uq_rate_limit_counters_key_window'),
    )
    op.create_index('ix_rate_limit_counters_window_start', 'rate_limit_counters', ['window_start'])


def downgrade() -> None:
    op.drop_table('rate_limit_counters')
    op.drop_table('processed_stripe_events')
    op.drop_table('enrollment_events')
    op.drop_index('uq_enrollments_live_crm_record', table_name='enrollments')
    op.drop_table('enrollments')
    op.drop_table('policies')

    # Drop enums
    sa.Enum(name='payment_method_kind').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='enrollment_status').drop(op.get_bind(), checkfirst=True)
