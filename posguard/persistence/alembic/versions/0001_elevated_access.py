"""add stores, users and elevated access audit tables

Revision ID: 0001_elevated_access
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_elevated_access"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Authoritative store ownership behind the permission cache.
    op.create_table(
        "stores",
        sa.Column("store_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_stores_company_id", "stores", ["company_id"], unique=False)

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_system_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("roles", postgresql.JSONB(), nullable=True),
        sa.Column("permissions", postgresql.JSONB(), nullable=True),
        sa.Column("company_ids", postgresql.JSONB(), nullable=True),
        sa.Column("store_ids", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Append-only step-up audit trail; (token_jti, token_sequence) orders events per token.
    op.create_table(
        "elevated_access_audit",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("user_email", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("result", sa.String(), nullable=False),
        sa.Column("requested_permission", sa.String(), nullable=False),
        sa.Column("store_id", sa.String(), nullable=True),
        sa.Column("token_jti", sa.String(), nullable=True),
        sa.Column("token_sequence", sa.Integer(), nullable=True),
        sa.Column("token_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("token_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=False),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=True),
        sa.Column("rate_limit_window", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("token_jti", "token_sequence", name="uq_elevated_access_token_seq"),
    )
    op.create_index("ix_elevated_access_audit_event_type", "elevated_access_audit", ["event_type"])
    op.create_index("ix_elevated_access_audit_store_id", "elevated_access_audit", ["store_id"])
    op.create_index("ix_elevated_access_audit_token_jti", "elevated_access_audit", ["token_jti"])
    op.create_index("ix_elevated_access_audit_created_at", "elevated_access_audit", ["created_at"])
    op.create_index("ix_elevated_access_ip_created", "elevated_access_audit", ["ip_address", "created_at"])
    op.create_index("ix_elevated_access_email_created", "elevated_access_audit", ["user_email", "created_at"])
    op.create_index("ix_elevated_access_user_created", "elevated_access_audit", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_elevated_access_user_created", table_name="elevated_access_audit")
    op.drop_index("ix_elevated_access_email_created", table_name="elevated_access_audit")
    op.drop_index("ix_elevated_access_ip_created", table_name="elevated_access_audit")
    op.drop_index("ix_elevated_access_audit_created_at", table_name="elevated_access_audit")
    op.drop_index("ix_elevated_access_audit_token_jti", table_name="elevated_access_audit")
    op.drop_index("ix_elevated_access_audit_store_id", table_name="elevated_access_audit")
    op.drop_index("ix_elevated_access_audit_event_type", table_name="elevated_access_audit")
    op.drop_table("elevated_access_audit")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.drop_index("ix_stores_company_id", table_name="stores")
    op.drop_table("stores")
