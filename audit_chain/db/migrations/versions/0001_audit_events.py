"""Create the append-only audit_events table

Revision ID: 0001_audit_events
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_audit_events"
down_revision = None
branch_labels = None
depends_on = None


PREVENT_MUTATION_FUNCTION = """
CREATE OR REPLACE FUNCTION prevent_audit_mutation()
RETURNS trigger LANGUAGE plpgsql AS $$
BEGIN
  RAISE EXCEPTION 'audit_events is append-only';
END $$;
"""


def upgrade() -> None:
    op.create_table(
        "audit_events",
        sa.Column(
            "chain_sequence",
            sa.BigInteger(),
            primary_key=True,
            autoincrement=False,
            comment="Zero-based position in the global chain",
        ),
        sa.Column("event_id", sa.String(64), nullable=False, unique=True),
        sa.Column("actor_principal_id", sa.String(255), nullable=False),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("tier", sa.String(16), nullable=False),
        sa.Column("case_id", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.String(64),
            nullable=False,
            comment="Timestamp string exactly as hashed",
        ),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("prev_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("event_hash", sa.String(64), nullable=False, unique=True),
        sa.Column(
            "hash_algorithm",
            sa.String(32),
            nullable=False,
            server_default="sha-256",
        ),
        sa.Column(
            "hash_canonicalization",
            sa.String(64),
            nullable=False,
            server_default="sorted-json-v1",
        ),
        sa.Column(
            "recorded_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint("tier IN ('green', 'amber', 'red')", name="ck_audit_events_tier"),
    )
    op.create_index("ix_audit_events_case_id", "audit_events", ["case_id"])
    op.create_index("ix_audit_events_actor", "audit_events", ["actor_principal_id"])

    op.execute(PREVENT_MUTATION_FUNCTION)
    op.execute(
        "CREATE TRIGGER no_audit_update BEFORE UPDATE ON audit_events "
        "FOR EACH ROW EXECUTE FUNCTION prevent_audit_mutation()"
    )
    op.execute(
        "CREATE TRIGGER no_audit_delete BEFORE DELETE ON audit_events "
        "FOR EACH ROW EXECUTE FUNCTION prevent_audit_mutation()"
    )
    op.execute(
        "CREATE TRIGGER no_audit_truncate BEFORE TRUNCATE ON audit_events "
        "FOR EACH STATEMENT EXECUTE FUNCTION prevent_audit_mutation()"
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS no_audit_truncate ON audit_events")
    op.execute("DROP TRIGGER IF EXISTS no_audit_delete ON audit_events")
    op.execute("DROP TRIGGER IF EXISTS no_audit_update ON audit_events")
    op.execute("DROP FUNCTION IF EXISTS prevent_audit_mutation()")
    op.drop_index("ix_audit_events_actor", table_name="audit_events")
    op.drop_index("ix_audit_events_case_id", table_name="audit_events")
    op.drop_table("audit_events")
