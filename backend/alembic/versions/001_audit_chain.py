"""Audit log hash chain

Revision ID: 001_audit_chain
Revises:
Create Date: 2026-10-16

Creates the audit_logs table and enforces immutability at the database level:

1. UNIQUE sequence_number: two appenders can never both claim the same
   position in the chain, even if the advisory lock is bypassed.

2. PostgreSQL triggers block UPDATE and DELETE on audit_logs.

SECURITY NOTE: The triggers are defense-in-depth. Production deployments
should also grant the application role INSERT/SELECT only on audit_logs.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_audit_chain'
down_revision = None
branch_labels = None
depends_on = None

AUDIT_CATEGORIES = (
    'APPLICATION', 'DOCUMENT', 'PAYMENT', 'USER', 'EVALUATION', 'FIELD_VERIFICATION',
    'CERTIFICATE', 'QUERY', 'NOTIFICATION', 'SYSTEM', 'GENERAL',
)
AUDIT_SEVERITIES = ('INFO', 'WARNING', 'CRITICAL')


def upgrade() -> None:
    # ==========================================================================
    # AUDIT_LOGS TABLE
    # ==========================================================================

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('sequence_number', sa.BigInteger(), nullable=False),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('category', sa.Enum(*AUDIT_CATEGORIES, name='audit_category'), nullable=False),
        sa.Column('severity', sa.Enum(*AUDIT_SEVERITIES, name='audit_severity'), nullable=False),
        sa.Column('entity_type', sa.String(100), nullable=False),
        sa.Column('entity_id', sa.String(255), nullable=False, server_default=''),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('user_role', sa.String(50), nullable=True),
        sa.Column('session_id', sa.String(64), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('old_values', postgresql.JSONB(), nullable=True),
        sa.Column('new_values', postgresql.JSONB(), nullable=True),
        sa.Column('previous_hash', sa.String(64), nullable=False),
        sa.Column('record_hash', sa.String(64), nullable=False),
        sa.Column('hashed_at', sa.String(32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('sequence_number', name='uq_audit_logs_sequence_number'),
    )

    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_record_hash', 'audit_logs', ['record_hash'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity_type', 'entity_id'])
    op.create_index('ix_audit_logs_user_created', 'audit_logs', ['user_id', 'created_at'])
    op.create_index('ix_audit_logs_category_created', 'audit_logs', ['category', 'created_at'])

    # ==========================================================================
    # IMMUTABILITY TRIGGER FUNCTION
    # ==========================================================================

    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_audit_modification()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION '% operations are not permitted on % table. Audit records are immutable.', TG_OP, TG_TABLE_NAME
                USING ERRCODE = 'restrict_violation';
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE TRIGGER audit_logs_prevent_update
        BEFORE UPDATE ON audit_logs
        FOR EACH ROW
        EXECUTE FUNCTION prevent_audit_modification();
    """)

    op.execute("""
        CREATE TRIGGER audit_logs_prevent_delete
        BEFORE DELETE ON audit_logs
        FOR EACH ROW
        EXECUTE FUNCTION prevent_audit_modification();
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS audit_logs_prevent_delete ON audit_logs")
    op.execute("DROP TRIGGER IF EXISTS audit_logs_prevent_update ON audit_logs")
    op.execute("DROP FUNCTION IF EXISTS prevent_audit_modification()")

    op.drop_table('audit_logs')
    sa.Enum(name='audit_severity').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='audit_category').drop(op.get_bind(), checkfirst=True)
