"""Story request tracking schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Timestamps are stored as naive UTC, like the application writes them
UTC_NOW = sa.text("timezone('utc', now())")


def upgrade() -> None:
    # Check if tables already exist and skip if so
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "story_requests" in existing_tables:
        # Tables already exist, skip migration
        return

    # Create story_requests table
    op.create_table(
        "story_requests",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("error_message", sa.Text),
        sa.Column("is_episode", sa.Boolean, server_default=sa.false()),
        sa.Column("episode_number", sa.Integer),
        sa.Column("category_id", sa.Text),
        sa.Column("location", sa.Text),
        sa.Column("moral_id", sa.Text),
        sa.Column("length", sa.Text, server_default="normal"),
        sa.Column("generate_images", sa.Boolean, server_default=sa.true()),
        sa.Column("notify_on_complete", sa.Boolean, server_default=sa.true()),
        sa.Column("generation_started_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, server_default=UTC_NOW),
        sa.Column("updated_at", sa.DateTime, server_default=UTC_NOW),
    )
    op.create_index("idx_story_requests_user_status", "story_requests", ["user_id", "status"])
    op.create_index("idx_story_requests_created_at", "story_requests", ["created_at"])

    # Create story_request_children table
    op.create_table(
        "story_request_children",
        sa.Column(
            "story_request_id",
            sa.Text,
            sa.ForeignKey("story_requests.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("child_id", sa.Text, primary_key=True),
    )

    # Create story_request_characters table
    op.create_table(
        "story_request_characters",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "story_request_id",
            sa.Text,
            sa.ForeignKey("story_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category_character_id", sa.Text),
        sa.Column("side_character_id", sa.Text),
    )

    # Create stories table
    op.create_table(
        "stories",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("request_id", sa.Text),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("series_id", sa.Text),
        sa.Column("title", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=UTC_NOW),
    )
    op.create_index("idx_stories_request_id", "stories", ["request_id"])


def downgrade() -> None:
    op.drop_table("stories")
    op.drop_table("story_request_characters")
    op.drop_table("story_request_children")
    op.drop_table("story_requests")
