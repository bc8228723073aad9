"""initial media schema: assets, jobs, queue tasks

Revision ID: a1c0e2d4f601
Revises:
Create Date: 2025-08-24 08:27:01.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "a1c0e2d4f601"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json_type():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = set(inspector.get_table_names())

    if "assets" not in tables:
        op.create_table(
            "assets",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("object_key", sa.String(length=512), nullable=False),
            sa.Column("mime", sa.String(length=255), nullable=False),
            sa.Column("size", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("thumb_key", sa.String(length=512), nullable=True),
            sa.Column("meta", _json_type(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("object_key"),
        )
        op.create_index(op.f("ix_assets_owner_id"), "assets", ["owner_id"], unique=False)
        op.create_index(
            "ix_assets_status_created_at", "assets", ["status", "created_at"], unique=False
        )

    if "jobs" not in tables:
        op.create_table(
            "jobs",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column(
                "asset_id",
                sa.String(length=36),
                sa.ForeignKey("assets.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("state", sa.String(length=20), nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=False),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index(op.f("ix_jobs_asset_id"), "jobs", ["asset_id"], unique=False)
        op.create_index(op.f("ix_jobs_state"), "jobs", ["state"], unique=False)

    if "media_queue_tasks" not in tables:
        op.create_table(
            "media_queue_tasks",
            sa.Column("id", sa.String(length=120), primary_key=True),
            sa.Column("queue_name", sa.String(length=64), nullable=False),
            sa.Column("task_name", sa.String(length=64), nullable=False),
            sa.Column("payload", _json_type(), nullable=False),
            sa.Column("state", sa.String(length=20), nullable=False),
            sa.Column("priority", sa.Integer(), nullable=False),
            sa.Column("progress", sa.Integer(), nullable=False),
            sa.Column("worker_id", sa.String(length=100), nullable=True),
            sa.Column("attempts_made", sa.Integer(), nullable=False),
            sa.Column("max_attempts", sa.Integer(), nullable=False),
            sa.Column("retry_count", sa.Integer(), nullable=False),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("scheduled_at", sa.DateTime(), nullable=False),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("finished_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index(
            op.f("ix_media_queue_tasks_queue_name"),
            "media_queue_tasks",
            ["queue_name"],
            unique=False,
        )
        op.create_index(
            "ix_media_queue_tasks_queue",
            "media_queue_tasks",
            ["state", "scheduled_at", "priority", "created_at"],
            unique=False,
        )


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = set(inspector.get_table_names())

    if "media_queue_tasks" in tables:
        op.drop_index("ix_media_queue_tasks_queue", table_name="media_queue_tasks")
        op.drop_index(op.f("ix_media_queue_tasks_queue_name"), table_name="media_queue_tasks")
        op.drop_table("media_queue_tasks")
    if "jobs" in tables:
        op.drop_index(op.f("ix_jobs_state"), table_name="jobs")
        op.drop_index(op.f("ix_jobs_asset_id"), table_name="jobs")
        op.drop_table("jobs")
    if "assets" in tables:
        op.drop_index("ix_assets_status_created_at", table_name="assets")
        op.drop_index(op.f("ix_assets_owner_id"), table_name="assets")
        op.drop_table("assets")
