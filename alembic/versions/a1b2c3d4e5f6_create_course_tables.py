"""Create content, asset, plugin and build tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from collections.abc import Sequence
from typing import Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "content_items",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("parent_id", sa.String(length=32), nullable=True),
        sa.Column("course_id", sa.String(length=32), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=True),
        sa.Column("component", sa.String(), nullable=True),
        sa.Column("local_id", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_content_items_type", "content_items", ["type"])
    op.create_index("ix_content_items_parent_id", "content_items", ["parent_id"])
    op.create_index("ix_content_items_course_id", "content_items", ["course_id"])
    op.create_index("idx_content_course_type", "content_items", ["course_id", "type"])

    op.create_table(
        "assets",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=True),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=True),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("size", sa.Integer(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "content_plugins",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("version", sa.String(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("COMPONENT", "EXTENSION", "MENU", "THEME", name="plugintype"),
            nullable=False,
        ),
        sa.Column("target_attribute", sa.String(), nullable=False),
        sa.Column("managed_externally", sa.Boolean(), nullable=False),
        sa.Column("plugin_dependencies", sa.JSON(), nullable=False),
        sa.Column("path", sa.String(), nullable=True),
        sa.Column("installed_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_content_plugins_name", "content_plugins", ["name"], unique=True)

    op.create_table(
        "build_attempts",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("action", sa.Enum("PREVIEW", "PUBLISH", "EXPORT", name="buildaction"), nullable=False),
        sa.Column("course_id", sa.String(length=32), nullable=False),
        sa.Column("location", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("versions", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_build_attempts_course_id", "build_attempts", ["course_id"])
    op.create_index("idx_build_action_creator", "build_attempts", ["action", "created_by"])


def downgrade() -> None:
    op.drop_index("idx_build_action_creator", table_name="build_attempts")
    op.drop_index("ix_build_attempts_course_id", table_name="build_attempts")
    op.drop_table("build_attempts")
    op.drop_index("ix_content_plugins_name", table_name="content_plugins")
    op.drop_table("content_plugins")
    op.drop_table("assets")
    op.drop_index("idx_content_course_type", table_name="content_items")
    op.drop_index("ix_content_items_course_id", table_name="content_items")
    op.drop_index("ix_content_items_parent_id", table_name="content_items")
    op.drop_index("ix_content_items_type", table_name="content_items")
    op.drop_table("content_items")
