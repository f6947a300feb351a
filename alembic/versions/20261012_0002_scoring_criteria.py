"""Add per-configuration scoring criteria."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0002"
down_revision = "20261005_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scoring_criteria",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("configuration_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("prompt_template", sa.Text(), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "configuration_id",
            "name",
            name="uq_scoring_criteria_configuration_name",
        ),
    )
    op.create_index(
        "ix_scoring_criteria_configuration_id",
        "scoring_criteria",
        ["configuration_id"],
    )


def downgrade() -> None:
    op.drop_table("scoring_criteria")
