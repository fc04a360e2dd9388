"""create reclaimed_tabs and reaper_metadata tables

Revision ID: a1f3c5e7b9d2
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1f3c5e7b9d2"
down_revision = None
branch_labels = None
depends_on = None

SCHEMA = "tabflow"


def upgrade() -> None:
    """Create history and metadata tables."""
    op.create_table(
        "reclaimed_tabs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tab_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False, server_default=""),
        sa.Column("url", sa.Text(), nullable=False, server_default=""),
        sa.Column("favicon", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "reason",
            sa.String(length=16),
            nullable=False,
            server_default="reclaimed",
        ),
        sa.Column("recovery_hint", sa.String(length=128), nullable=True),
        sa.Column(
            "reclaimed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_tabflow_reclaimed_tabs_tab_id",
        "reclaimed_tabs",
        ["tab_id"],
        schema=SCHEMA,
    )
    # Retention purge and most-recent-first listing both scan by time
    op.create_index(
        "idx_reclaimed_tabs_reclaimed_at",
        "reclaimed_tabs",
        ["reclaimed_at"],
        schema=SCHEMA,
    )

    op.create_table(
        "reaper_metadata",
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("value", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("key"),
        schema=SCHEMA,
    )


def downgrade() -> None:
    """Drop history and metadata tables."""
    op.drop_table("reaper_metadata", schema=SCHEMA)
    op.drop_index(
        "idx_reclaimed_tabs_reclaimed_at",
        table_name="reclaimed_tabs",
        schema=SCHEMA,
    )
    op.drop_index(
        "ix_tabflow_reclaimed_tabs_tab_id",
        table_name="reclaimed_tabs",
        schema=SCHEMA,
    )
    op.drop_table("reclaimed_tabs", schema=SCHEMA)
