"""org hierarchy, memberships and unit permission grants

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610190001"
down_revision = None
branch_labels = None
depends_on = None



def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_events_event_type", "events", ["event_type"])
    op.create_index("ix_events_ts", "events", ["ts"])
    op.create_index("ix_events_actor_id", "events", ["actor_id"])
    op.create_index("ix_events_correlation_id", "events", ["correlation_id"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_full_name", "users", ["full_name"])
    op.create_index("ix_users_created_at", "users", ["created_at"])

    op.create_table(
        "org_units",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("unit_type", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("head_user_id", sa.String(), nullable=True),
        sa.Column("max_staff", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["parent_id"], ["org_units.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["head_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_org_units_code", "org_units", ["code"], unique=True)
    op.create_index("ix_org_units_name", "org_units", ["name"])
    op.create_index("ix_org_units_unit_type", "org_units", ["unit_type"])
    op.create_index("ix_org_units_parent_id", "org_units", ["parent_id"])
    op.create_index("ix_org_units_head_user_id", "org_units", ["head_user_id"])
    op.create_index("ix_org_units_is_active", "org_units", ["is_active"])
    op.create_index("ix_org_units_created_at", "org_units", ["created_at"])
    op.create_index("ix_org_units_updated_at", "org_units", ["updated_at"])

    op.create_table(
        "unit_memberships",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("unit_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["unit_id"], ["org_units.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("user_id", "unit_id"),
    )
    op.create_index("ix_unit_memberships_unit_role", "unit_memberships", ["unit_id", "role"])
    op.create_index("ix_unit_memberships_user_primary", "unit_memberships", ["user_id", "is_primary"])
    op.create_index("ix_unit_memberships_assigned_at", "unit_memberships", ["assigned_at"])

    op.create_table(
        "unit_permission_grants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("unit_id", sa.String(), nullable=False),
        sa.Column("module", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["unit_id"], ["org_units.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "unit_id",
            "module",
            "action",
            "resource",
            name="uq_unit_permission_grants_unit_module_action_resource",
        ),
    )
    op.create_index("ix_unit_permission_grants_unit_id", "unit_permission_grants", ["unit_id"])
    op.create_index("ix_unit_permission_grants_module", "unit_permission_grants", ["module"])
    op.create_index("ix_unit_permission_grants_created_at", "unit_permission_grants", ["created_at"])


def downgrade() -> None:
    op.drop_table("unit_permission_grants")
    op.drop_table("unit_memberships")
    op.drop_table("org_units")
    op.drop_table("users")
    op.drop_table("events")
