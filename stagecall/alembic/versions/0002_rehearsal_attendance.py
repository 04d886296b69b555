"""Track each member's attendance answer per rehearsal."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_rehearsal_attendance"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "rehearsal_attendance",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("rehearsal_id", sa.String(length=36), nullable=False),
        sa.Column("member_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("emergency_reason", sa.String(length=500), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ["rehearsal_id"], ["rehearsals.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("rehearsal_id", "member_id"),
    )
    op.create_index(
        "ix_rehearsal_attendance_member_id", "rehearsal_attendance", ["member_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_rehearsal_attendance_member_id", table_name="rehearsal_attendance")
    op.drop_table("rehearsal_attendance")
