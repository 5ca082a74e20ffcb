"""create project board watcher table

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 11:30:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "project_board_watcher",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("board_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["board_id"], ["project_board.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("board_id", "user_id", name="uq_project_board_watcher"),
    )
    op.create_index("ix_project_board_watcher_user", "project_board_watcher", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_project_board_watcher_user", table_name="project_board_watcher")
    op.drop_table("project_board_watcher")
