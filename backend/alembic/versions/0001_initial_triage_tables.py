"""images and projects

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from snaptriage.core.config import settings

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None

IMAGES = settings.images_table
PROJECTS = settings.projects_table

image_status = sa.Enum("new", "approved", "rejected", "deleted", "project-assigned", name="image_status")
relocation_state = sa.Enum("none", "pending", "moving", "complete", "failed", name="relocation_state")


def upgrade() -> None:
    op.create_table(
        PROJECTS,
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("storage_prefix", sa.String(length=63), nullable=False),
        sa.Column("image_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("keywords", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(f"ix_{PROJECTS}_storage_prefix", PROJECTS, ["storage_prefix"])
    op.create_index(f"ix_{PROJECTS}_archived", PROJECTS, ["archived"])

    op.create_table(
        IMAGES,
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("original_path", sa.String(length=1024), nullable=False),
        sa.Column("thumb_small_path", sa.String(length=1024), nullable=False),
        sa.Column("thumb_large_path", sa.String(length=1024), nullable=False),
        sa.Column("raw_sidecar_path", sa.String(length=1024), nullable=True),
        sa.Column("related_paths", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("store_location", sa.String(length=120), nullable=False, server_default="local"),
        sa.Column("status", image_status, nullable=False, server_default="new"),
        sa.Column("relocation_state", relocation_state, nullable=False, server_default="none"),
        sa.Column("relocation_target", sa.String(length=32), nullable=True),
        sa.Column("relocation_destination", sa.String(length=1024), nullable=True),
        sa.Column("relocation_project_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("relocation_error", sa.Text(), nullable=True),
        sa.Column("relocation_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed", sa.String(length=5), nullable=False, server_default="false"),
        sa.Column("color_group", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "project_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(f"{PROJECTS}.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("rating", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("promoted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("keywords", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("exif_data", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("inserted_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(f"ix_{IMAGES}_status", IMAGES, ["status"])
    op.create_index(f"ix_{IMAGES}_relocation_state", IMAGES, ["relocation_state"])
    op.create_index(f"ix_{IMAGES}_project_id", IMAGES, ["project_id"])


def downgrade() -> None:
    op.drop_index(f"ix_{IMAGES}_project_id", table_name=IMAGES)
    op.drop_index(f"ix_{IMAGES}_relocation_state", table_name=IMAGES)
    op.drop_index(f"ix_{IMAGES}_status", table_name=IMAGES)
    op.drop_table(IMAGES)
    op.drop_index(f"ix_{PROJECTS}_archived", table_name=PROJECTS)
    op.drop_index(f"ix_{PROJECTS}_storage_prefix", table_name=PROJECTS)
    op.drop_table(PROJECTS)
    relocation_state.drop(op.get_bind(), checkfirst=True)
    image_status.drop(op.get_bind(), checkfirst=True)
