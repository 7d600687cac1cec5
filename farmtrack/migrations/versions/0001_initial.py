"""Initial farm, return ledger and notification schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

return_record_source = postgresql.ENUM(
    "SCAN",
    "MANUAL",
    "CORRECTION",
    name="return_record_source",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "ADMIN",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    return_record_source.create(bind, checkfirst=True)
    audit_actor_type.create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )

    op.create_table(
        "farms",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("owner_user_id", sa.Integer(), nullable=True),
        sa.Column("timezone_name", sa.String(length=64), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["owner_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_farms_owner_user_id", "farms", ["owner_user_id"])

    op.create_table(
        "animals",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("farm_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("tag_number", sa.String(length=100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["farm_id"], ["farms.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("farm_id", "tag_number", name="uq_animals_farm_tag"),
    )
    op.create_index("ix_animals_farm_id", "animals", ["farm_id"])

    op.create_table(
        "return_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("farm_id", sa.Integer(), nullable=False),
        sa.Column("animal_id", sa.Integer(), nullable=False),
        sa.Column("local_day", sa.Date(), nullable=False),
        sa.Column("returned", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("return_reason", sa.Text(), nullable=True),
        sa.Column("source", return_record_source, nullable=False, server_default="SCAN"),
        _created_at(),
        _created_at("updated_at"),
        sa.ForeignKeyConstraint(["farm_id"], ["farms.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["animal_id"], ["animals.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("farm_id", "animal_id", "local_day", name="uq_return_records_farm_animal_day"),
    )
    op.create_index("ix_return_records_farm_day", "return_records", ["farm_id", "local_day"])
    op.create_index("ix_return_records_animal_id", "return_records", ["animal_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("farm_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("alert_type", sa.String(length=50), nullable=False, server_default="NIGHT_RETURN"),
        sa.Column("alert_day", sa.Date(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["farm_id"], ["farms.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("idempotency_key", name="uq_notifications_idempotency_key"),
    )
    op.create_index("ix_notifications_farm_created", "notifications", ["farm_id", "created_at"])
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    op.create_table(
        "farm_settings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("farm_id", sa.Integer(), nullable=False),
        sa.Column("key", sa.String(length=100), nullable=False),
        sa.Column("value", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _created_at("updated_at"),
        sa.ForeignKeyConstraint(["farm_id"], ["farms.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("farm_id", "key", name="uq_farm_settings_farm_key"),
    )
    op.create_index("ix_farm_settings_farm_id", "farm_settings", ["farm_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("farm_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.ForeignKeyConstraint(["farm_id"], ["farms.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_farm_id", "audit_logs", ["farm_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_farm_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_farm_settings_farm_id", table_name="farm_settings")
    op.drop_table("farm_settings")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_index("ix_notifications_farm_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_return_records_animal_id", table_name="return_records")
    op.drop_index("ix_return_records_farm_day", table_name="return_records")
    op.drop_table("return_records")
    op.drop_index("ix_animals_farm_id", table_name="animals")
    op.drop_table("animals")
    op.drop_index("ix_farms_owner_user_id", table_name="farms")
    op.drop_table("farms")
    op.drop_table("users")

    bind = op.get_bind()
    audit_actor_type.drop(bind, checkfirst=True)
    return_record_source.drop(bind, checkfirst=True)
