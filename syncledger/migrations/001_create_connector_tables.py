"""Create connector sync-state and error-ledger tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_create_connector_tables"
down_revision = None
branch_labels = None
depends_on = None


_UUID = postgresql.UUID(as_uuid=True)
_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
_ACTIVE = sa.text("status IN ('pending', 'retrying')")


def upgrade() -> None:
    """Create ``connector_sync_state`` and ``connector_errors`` with their indexes."""

    op.create_table(
        "connector_sync_state",
        sa.Column("tenant_id", _UUID, nullable=False),
        sa.Column("connector", sa.String(length=64), nullable=False),
        sa.Column(
            "mode", sa.String(length=32), nullable=False, server_default=sa.text("'http'")
        ),
        sa.Column("cursor_ts", sa.DateTime(timezone=True)),
        sa.Column("cursor_id", sa.Text()),
        sa.Column("page_cursor", sa.Text()),
        sa.Column("last_success_at", sa.DateTime(timezone=True)),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True)),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default=sa.text("'ok'")
        ),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text()),
        sa.Column("meta", _JSON),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("tenant_id", "connector", name="pk_connector_sync_state"),
    )

    op.create_table(
        "connector_errors",
        sa.Column("id", _ID, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", _UUID, nullable=False),
        sa.Column("connector", sa.String(length=64), nullable=False),
        sa.Column("mode", sa.String(length=32), nullable=False),
        sa.Column("operation", sa.String(length=200), nullable=False),
        sa.Column("source_ref", sa.String(length=500)),
        sa.Column("error_kind", sa.String(length=200), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("payload", _JSON),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("dedupe_key", sa.String(length=64), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "status IN ('pending', 'retrying', 'dead_letter', 'resolved')",
            name="ck_connector_errors_status",
        ),
    )
    op.create_index(
        "uq_connector_errors_active",
        "connector_errors",
        ["tenant_id", "connector", "dedupe_key"],
        unique=True,
        postgresql_where=_ACTIVE,
        sqlite_where=_ACTIVE,
    )
    op.create_index(
        "ix_connector_errors_due",
        "connector_errors",
        ["tenant_id", "status", "next_retry_at", "id"],
    )
    op.create_index(
        "ix_connector_errors_dead_letter",
        "connector_errors",
        ["tenant_id", "status", "updated_at"],
    )


def downgrade() -> None:
    """Drop the connector tables and their indexes."""

    op.drop_index("ix_connector_errors_dead_letter", table_name="connector_errors")
    op.drop_index("ix_connector_errors_due", table_name="connector_errors")
    op.drop_index("uq_connector_errors_active", table_name="connector_errors")
    op.drop_table("connector_errors")
    op.drop_table("connector_sync_state")
