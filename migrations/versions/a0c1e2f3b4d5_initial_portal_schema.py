"""initial portal schema

Revision ID: a0c1e2f3b4d5
Revises:
Create Date: 2026-10-16 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a0c1e2f3b4d5'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create users, codes, audit, transactions, settings, custom services and submissions."""
    # Check if tables already exist (idempotent)
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("account_type", sa.String(32), nullable=False, server_default="individual"),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("first_name", sa.String(50), nullable=False),
            sa.Column("middle_name", sa.String(50), nullable=True),
            sa.Column("last_name", sa.String(50), nullable=False),
            sa.Column("gender", sa.String(16), nullable=True),
            sa.Column("contact", sa.String(64), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("role", sa.String(32), nullable=False, server_default="user"),
            sa.Column("permissions", sa.JSON(), nullable=False),
            sa.Column("allowed_services", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("last_login_at", sa.DateTime(), nullable=True),
            *_timestamps(),
        )
        op.create_index("idx_users_role", "users", ["role"])
        op.create_index("idx_users_created_at", "users", ["created_at"])

    if "verification_codes" not in existing_tables:
        op.create_table(
            "verification_codes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("code", sa.String(6), nullable=False),
            sa.Column("type", sa.String(32), nullable=False),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            sa.Column("is_used", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_verification_codes_user_type", "verification_codes", ["user_id", "type"])

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
        )

    if "transactions" not in existing_tables:
        op.create_table(
            "transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("date", sa.DateTime(), nullable=True),
            sa.Column("service_id", sa.String(128), nullable=True),
            sa.Column("service_name", sa.String(255), nullable=False),
            sa.Column("service_other_info", sa.Text(), nullable=True),
            sa.Column("service_approval_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("total_amount_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("reference", sa.String(64), nullable=False, unique=True),
            sa.Column("breakdown", sa.JSON(), nullable=False),
            sa.Column("form_data", sa.JSON(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
            sa.Column("channel", sa.String(32), nullable=True),
            sa.Column("payment", sa.JSON(), nullable=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("user_email", sa.String(320), nullable=True),
            sa.Column("user_full_name", sa.String(255), nullable=True),
            sa.Column("created_by_admin_id", sa.String(64), nullable=True),
            sa.Column("notifications", sa.JSON(), nullable=True),
            *_timestamps(),
        )
        for col in ("date", "status", "service_id", "service_name", "channel", "user_id", "created_at"):
            op.create_index(f"idx_transactions_{col}", "transactions", [col])

    if "portal_settings" not in existing_tables:
        op.create_table(
            "portal_settings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("city", sa.JSON(), nullable=False),
            sa.Column("branding", sa.JSON(), nullable=False),
            sa.Column("assets", sa.JSON(), nullable=False),
            sa.Column("contact", sa.JSON(), nullable=False),
            sa.Column("faq", sa.JSON(), nullable=False),
            sa.Column("convenience_fee", sa.JSON(), nullable=False),
            sa.Column("enabled_services", sa.JSON(), nullable=False),
            sa.Column("form_configs", sa.JSON(), nullable=False),
            sa.Column("add_on_services", sa.JSON(), nullable=False),
            sa.Column("custom_payment_services", sa.JSON(), nullable=False),
            sa.Column("updated_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            *_timestamps(),
        )

    if "custom_application_services" not in existing_tables:
        op.create_table(
            "custom_application_services",
            sa.Column("id", sa.String(128), primary_key=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=False, server_default=""),
            sa.Column("icon", sa.String(64), nullable=False, server_default="FileText"),
            sa.Column("color", sa.String(64), nullable=False, server_default="bg-blue-500"),
            sa.Column("visible", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("form_fields", sa.JSON(), nullable=False),
            sa.Column("form_steps", sa.JSON(), nullable=False),
            sa.Column("button_texts", sa.JSON(), nullable=True),
            sa.Column("button_visibility", sa.JSON(), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("updated_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            *_timestamps(),
        )
        op.create_index("idx_custom_app_services_visible", "custom_application_services", ["visible"])
        op.create_index("idx_custom_app_services_title", "custom_application_services", ["title"])

    if "custom_payment_services" not in existing_tables:
        op.create_table(
            "custom_payment_services",
            sa.Column("id", sa.String(128), primary_key=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=False, server_default=""),
            sa.Column("base_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("processing_fee", sa.Float(), nullable=False, server_default="0"),
            sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("form_fields", sa.JSON(), nullable=False),
            sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("updated_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            *_timestamps(),
        )
        op.create_index("idx_custom_payment_services_enabled", "custom_payment_services", ["enabled"])

    if "application_submissions" not in existing_tables:
        op.create_table(
            "application_submissions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("custom_application_service_id", sa.String(128), nullable=False),
            sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
            sa.Column("admin_status", sa.String(16), nullable=True),
            sa.Column("form_data", sa.JSON(), nullable=False),
            sa.Column("admin_notes", sa.Text(), nullable=True),
            *_timestamps(),
        )
        op.create_index(
            "idx_app_submissions_user_service",
            "application_submissions",
            ["user_id", "custom_application_service_id"],
        )
        op.create_index("idx_app_submissions_status", "application_submissions", ["status"])
        op.create_index("idx_app_submissions_admin_status", "application_submissions", ["admin_status"])
        op.create_index("idx_app_submissions_updated_at", "application_submissions", ["updated_at"])


def downgrade() -> None:
    for table in (
        "application_submissions",
        "custom_payment_services",
        "custom_application_services",
        "portal_settings",
        "transactions",
        "audit_events",
        "verification_codes",
        "users",
    ):
        op.drop_table(table)
