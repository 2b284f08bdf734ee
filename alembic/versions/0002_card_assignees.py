"""card assignees

Revision ID: 0002_card_assignees
Revises: 0001_initial
Create Date: 2026-10-17 00:00:00.000000

"""

from __future__ import annotations

from alembic import op  # type: ignore[attr-defined]
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_card_assignees"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "card_assignees",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("card_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["card_id"], ["cards.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("card_id", "user_id", name="uq_card_assignee"),
    )
    op.create_index("ix_card_assignees_card_id", "card_assignees", ["card_id"])
    op.create_index("ix_card_assignees_user_id", "card_assignees", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_card_assignees_user_id", table_name="card_assignees")
    op.drop_index("ix_card_assignees_card_id", table_name="card_assignees")
    op.drop_table("card_assignees")
