"""Baseline migration - accounts, messages, contacts and the job queue

Revision ID: 0001_baseline
Revises: 
Create Date: 2026-10-18

Postgres schema for mailbox sync and contact extraction. Tests build the
same tables from the ORM metadata on SQLite.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create sync, contact and queue tables."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    # ==========================================================================
    # Accounts
    # ==========================================================================
    op.execute('''
        CREATE TABLE accounts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL,
            provider VARCHAR(20) NOT NULL DEFAULT 'gmail',
            email_address VARCHAR(320) NOT NULL,
            display_name TEXT,
            refresh_token TEXT,
            is_enabled BOOLEAN NOT NULL DEFAULT true,
            disabled_at TIMESTAMPTZ,
            sync_status VARCHAR(20) NOT NULL DEFAULT 'never_synced',
            sync_status_reason TEXT,
            history_gap_detected BOOLEAN NOT NULL DEFAULT false,
            watch_expiration_at TIMESTAMPTZ,
            watch_last_renewed_at TIMESTAMPTZ,
            watch_last_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_accounts_user_provider_email UNIQUE (user_id, provider, email_address)
        )
    ''')
    op.execute('CREATE INDEX idx_accounts_email_enabled ON accounts(email_address, is_enabled)')

    # ==========================================================================
    # Sync state (one row per account, CAS on version)
    # ==========================================================================
    op.execute('''
        CREATE TABLE sync_states (
            account_id UUID PRIMARY KEY REFERENCES accounts(id) ON DELETE CASCADE,
            history_id BIGINT,
            mode VARCHAR(20) NOT NULL DEFAULT 'initial',
            baseline_history_id BIGINT,
            initial_window_start TIMESTAMPTZ,
            initial_started_at TIMESTAMPTZ,
            backfill_before TIMESTAMPTZ,
            backfill_completed_at TIMESTAMPTZ,
            last_success_at TIMESTAMPTZ,
            last_error TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    # ==========================================================================
    # Messages
    # ==========================================================================
    op.execute('''
        CREATE TABLE messages (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            account_id UUID NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            user_id UUID NOT NULL,
            provider_message_id VARCHAR(255) NOT NULL,
            thread_id VARCHAR(255),
            rfc_message_id TEXT,
            sender_email VARCHAR(320),
            sender_name TEXT,
            to_recipients JSONB NOT NULL DEFAULT '[]',
            cc_recipients JSONB NOT NULL DEFAULT '[]',
            bcc_recipients JSONB NOT NULL DEFAULT '[]',
            subject TEXT,
            snippet TEXT,
            body_text TEXT,
            body_html TEXT,
            label_ids JSONB NOT NULL DEFAULT '[]',
            sent_at TIMESTAMPTZ,
            history_id BIGINT,
            direction VARCHAR(20) NOT NULL DEFAULT 'inbound',
            ingest_state VARCHAR(20) NOT NULL DEFAULT 'stored',
            ingest_error TEXT,
            content_hash VARCHAR(64),
            extracted_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_messages_account_provider_id UNIQUE (account_id, provider_message_id)
        )
    ''')
    op.execute('CREATE INDEX idx_messages_account_sent ON messages(account_id, sent_at)')
    op.execute('CREATE INDEX idx_messages_account_thread ON messages(account_id, thread_id)')

    # ==========================================================================
    # Contacts
    # ==========================================================================
    op.execute('''
        CREATE TABLE contacts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL,
            email VARCHAR(320) NOT NULL,
            display_name TEXT,
            company TEXT,
            job_title TEXT,
            phone VARCHAR(50),
            website TEXT,
            linkedin_url TEXT,
            twitter_handle VARCHAR(100),
            github_handle VARCHAR(100),
            domain VARCHAR(255),
            is_freemail BOOLEAN NOT NULL DEFAULT false,
            is_role_address BOOLEAN NOT NULL DEFAULT false,
            field_provenance JSONB NOT NULL DEFAULT '{}',
            status VARCHAR(20) NOT NULL DEFAULT 'active',
            merged_into_id UUID REFERENCES contacts(id) ON DELETE SET NULL,
            interaction_count INTEGER NOT NULL DEFAULT 0,
            inbound_count INTEGER NOT NULL DEFAULT 0,
            outbound_count INTEGER NOT NULL DEFAULT 0,
            first_interaction_at TIMESTAMPTZ,
            last_interaction_at TIMESTAMPTZ,
            relationship_strength DOUBLE PRECISION NOT NULL DEFAULT 0,
            stats_updated_at TIMESTAMPTZ,
            enrichment_status VARCHAR(20),
            enriched_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('''
        CREATE UNIQUE INDEX uq_contacts_user_email_active
        ON contacts(user_id, email) WHERE status = 'active'
    ''')
    op.execute('CREATE INDEX idx_contacts_user_last_interaction ON contacts(user_id, last_interaction_at)')
    op.execute('CREATE INDEX idx_contacts_domain ON contacts(user_id, domain)')

    # ==========================================================================
    # Interactions
    # ==========================================================================
    op.execute('''
        CREATE TABLE interactions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            message_id UUID NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
            contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            account_id UUID NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            user_id UUID NOT NULL,
            direction VARCHAR(20) NOT NULL,
            occurred_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_interactions_message_contact_direction UNIQUE (message_id, contact_id, direction)
        )
    ''')
    op.execute('CREATE INDEX idx_interactions_contact_occurred ON interactions(contact_id, occurred_at)')
    op.execute('CREATE INDEX idx_interactions_account ON interactions(account_id)')

    # ==========================================================================
    # Jobs
    # ==========================================================================
    op.execute('''
        CREATE TABLE jobs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            account_id UUID,
            job_type VARCHAR(50) NOT NULL,
            payload JSONB NOT NULL DEFAULT '{}',
            priority INTEGER NOT NULL DEFAULT 2,
            run_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 5,
            rate_limit_hits INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            dedupe_key VARCHAR(255),
            lease_expires_at TIMESTAMPTZ,
            claimed_by VARCHAR(100),
            cancel_requested BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ
        )
    ''')
    op.execute('CREATE INDEX idx_jobs_ready ON jobs(status, priority, run_at)')
    op.execute('CREATE INDEX idx_jobs_account_status ON jobs(account_id, status)')
    op.execute('CREATE INDEX idx_jobs_dedupe_key ON jobs(dedupe_key, status)')
    op.execute('''
        CREATE UNIQUE INDEX uq_jobs_dedupe_processing
        ON jobs(dedupe_key) WHERE status = 'processing' AND dedupe_key IS NOT NULL
    ''')


def downgrade() -> None:
    op.execute('DROP TABLE IF EXISTS jobs')
    op.execute('DROP TABLE IF EXISTS interactions')
    op.execute('DROP TABLE IF EXISTS contacts')
    op.execute('DROP TABLE IF EXISTS messages')
    op.execute('DROP TABLE IF EXISTS sync_states')
    op.execute('DROP TABLE IF EXISTS accounts')
