"""create control plane schema

Revision ID: 20261019_00
Revises:
Create Date: 2026-10-19 09:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_00"
down_revision = None
branch_labels = None
depends_on = None


def _record_columns() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _tenant_column() -> sa.Column:
    return sa.Column(
        "tenant_id",
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=63), nullable=False),
        sa.Column("plan", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("contact_email", sa.String(length=320), nullable=True),
        sa.Column("data_plane_type", sa.String(length=16), nullable=True),
        sa.Column("data_plane_database", sa.String(length=128), nullable=True),
        *_record_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tenants_slug", "tenants", ["slug"], unique=True)

    op.create_table(
        "users",
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("password_hash", sa.String(length=255), nullable=True),
        sa.Column("email_verified", sa.Boolean(), nullable=False),
        *_record_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "tenant_memberships",
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        _tenant_column(),
        *_record_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_tenant_memberships_tenant_user"),
    )
    op.create_index("ix_tenant_memberships_tenant_id", "tenant_memberships", ["tenant_id"], unique=False)
    op.create_index("ix_tenant_memberships_user_id", "tenant_memberships", ["user_id"], unique=False)

    op.create_table(
        "direct_app_permissions",
        sa.Column(
            "membership_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("tenant_memberships.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("app_id", sa.String(length=120), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("granted_by", sa.String(length=255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _tenant_column(),
        *_record_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("membership_id", "app_id", name="uq_direct_app_permissions_membership_app"),
    )
    op.create_index("ix_direct_app_permissions_tenant_id", "direct_app_permissions", ["tenant_id"], unique=False)
    op.create_index(
        "ix_direct_app_permissions_membership_id", "direct_app_permissions", ["membership_id"], unique=False
    )
    op.create_index("ix_direct_app_permissions_user_id", "direct_app_permissions", ["user_id"], unique=False)
    op.create_index("ix_direct_app_permissions_expires_at", "direct_app_permissions", ["expires_at"], unique=False)

    op.create_table(
        "tenant_groups",
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("member_count", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("last_modified_by", sa.String(length=255), nullable=False),
        _tenant_column(),
        *_record_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_tenant_groups_tenant_name"),
    )
    op.create_index("ix_tenant_groups_tenant_id", "tenant_groups", ["tenant_id"], unique=False)

    op.create_table(
        "tenant_group_members",
        sa.Column(
            "group_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("tenant_groups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("group_id", "user_id"),
    )
    op.create_index("ix_tenant_group_members_user_id", "tenant_group_members", ["user_id"], unique=False)

    op.create_table(
        "group_app_permissions",
        sa.Column(
            "group_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("tenant_groups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("app_id", sa.String(length=120), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("granted_by", sa.String(length=255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _tenant_column(),
        *_record_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("group_id", "app_id", name="uq_group_app_permissions_group_app"),
    )
    op.create_index("ix_group_app_permissions_tenant_id", "group_app_permissions", ["tenant_id"], unique=False)
    op.create_index("ix_group_app_permissions_group_id", "group_app_permissions", ["group_id"], unique=False)
    op.create_index("ix_group_app_permissions_expires_at", "group_app_permissions", ["expires_at"], unique=False)

    op.create_table(
        "permission_notifications",
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("recipient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("recipient_email", sa.String(length=320), nullable=False),
        sa.Column("app_id", sa.String(length=120), nullable=False),
        sa.Column("app_name", sa.String(length=255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("days_until_expiration", sa.Integer(), nullable=False),
        sa.Column("permission_source", sa.String(length=16), nullable=False),
        sa.Column("source_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        _tenant_column(),
        *_record_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "source_id",
            "app_id",
            "expires_at",
            "days_until_expiration",
            name="uq_permission_notifications_source_app_expiry_lead",
        ),
    )
    op.create_index("ix_permission_notifications_tenant_id", "permission_notifications", ["tenant_id"], unique=False)
    op.create_index(
        "ix_permission_notifications_recipient_id", "permission_notifications", ["recipient_id"], unique=False
    )
    op.create_index("ix_permission_notifications_status", "permission_notifications", ["status"], unique=False)
    op.create_index(
        "ix_permission_notifications_scheduled_for", "permission_notifications", ["scheduled_for"], unique=False
    )

    op.create_table(
        "tenant_app_entitlements",
        sa.Column("app_id", sa.String(length=120), nullable=False),
        sa.Column("app_name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("admin_manageable", sa.Boolean(), nullable=False),
        _tenant_column(),
        *_record_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "app_id", name="uq_tenant_app_entitlements_tenant_app"),
    )
    op.create_index("ix_tenant_app_entitlements_tenant_id", "tenant_app_entitlements", ["tenant_id"], unique=False)

    op.create_table(
        "tenant_migrations",
        sa.Column("slug", sa.String(length=63), nullable=False),
        sa.Column("target_database", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("completed_collections", sa.JSON(), nullable=False),
        sa.Column("records_moved", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _tenant_column(),
        *_record_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tenant_migrations_tenant_id", "tenant_migrations", ["tenant_id"], unique=False)
    op.create_index("ix_tenant_migrations_status", "tenant_migrations", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_tenant_migrations_status", table_name="tenant_migrations")
    op.drop_index("ix_tenant_migrations_tenant_id", table_name="tenant_migrations")
    op.drop_table("tenant_migrations")

    op.drop_index("ix_tenant_app_entitlements_tenant_id", table_name="tenant_app_entitlements")
    op.drop_table("tenant_app_entitlements")

    op.drop_index("ix_permission_notifications_scheduled_for", table_name="permission_notifications")
    op.drop_index("ix_permission_notifications_status", table_name="permission_notifications")
    op.drop_index("ix_permission_notifications_recipient_id", table_name="permission_notifications")
    op.drop_index("ix_permission_notifications_tenant_id", table_name="permission_notifications")
    op.drop_table("permission_notifications")

    op.drop_index("ix_group_app_permissions_expires_at", table_name="group_app_permissions")
    op.drop_index("ix_group_app_permissions_group_id", table_name="group_app_permissions")
    op.drop_index("ix_group_app_permissions_tenant_id", table_name="group_app_permissions")
    op.drop_table("group_app_permissions")

    op.drop_index("ix_tenant_group_members_user_id", table_name="tenant_group_members")
    op.drop_table("tenant_group_members")

    op.drop_index("ix_tenant_groups_tenant_id", table_name="tenant_groups")
    op.drop_table("tenant_groups")

    op.drop_index("ix_direct_app_permissions_expires_at", table_name="direct_app_permissions")
    op.drop_index("ix_direct_app_permissions_user_id", table_name="direct_app_permissions")
    op.drop_index("ix_direct_app_permissions_membership_id", table_name="direct_app_permissions")
    op.drop_index("ix_direct_app_permissions_tenant_id", table_name="direct_app_permissions")
    op.drop_table("direct_app_permissions")

    op.drop_index("ix_tenant_memberships_user_id", table_name="tenant_memberships")
    op.drop_index("ix_tenant_memberships_tenant_id", table_name="tenant_memberships")
    op.drop_table("tenant_memberships")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    op.drop_index("ix_tenants_slug", table_name="tenants")
    op.drop_table("tenants")
