"""Relay schema

Revision ID: 001
Revises: 
Create Date: 2026-10-18

"""
from alembic import op

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Same SQL file is applied by wabridge.infra.database.init_schema
    import os
    sql_file = os.path.join(
        os.path.dirname(os.path.dirname(os.path.dirname(__file__))),
        "migrations",
        "001_relay_schema.sql"
    )

    if os.path.exists(sql_file):
        with open(sql_file, 'r') as f:
            for statement in f.read().split(";"):
                lines = [l for l in statement.splitlines() if not l.strip().startswith("--")]
                sql = "\n".join(lines).strip()
                if sql:
                    op.execute(sql)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS protocol_sessions")
    op.execute("DROP INDEX IF EXISTS idx_crm_credentials_scope_id")
    op.execute("DROP TABLE IF EXISTS crm_credentials")
    op.execute("DROP TABLE IF EXISTS conversation_mappings")
