"""add authorization and publish governance tables

Revision ID: 0001_authz_governance
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_authz_governance"
down_revision = None
branch_labels = None
depends_on = None

_json = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
_auto_id = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()))
    return columns


def _caps() -> list[sa.Column]:
    return [
        sa.Column("max_tokens_per_day", sa.Integer(), nullable=True),
        sa.Column("max_tokens_per_month", sa.Integer(), nullable=True),
        sa.Column("max_requests_per_day", sa.Integer(), nullable=True),
        sa.Column("max_requests_per_month", sa.Integer(), nullable=True),
        sa.Column("max_stories_per_month", sa.Integer(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
    )
    op.create_index("ix_users_tenant_id", "users", ["tenant_id"], unique=False)

    # Tenant accounts carry the external CRM ids that report members are matched on.
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("salesforce_id", sa.String(), nullable=True),
        sa.Column("hubspot_id", sa.String(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_accounts_tenant_id", "accounts", ["tenant_id"], unique=False)
    op.create_index("ix_accounts_salesforce_id", "accounts", ["salesforce_id"], unique=False)
    op.create_index("ix_accounts_hubspot_id", "accounts", ["hubspot_id"], unique=False)

    op.create_table(
        "role_profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_preset", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("permissions_json", _json, nullable=True),
        sa.Column("can_access_anonymous_stories", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("can_generate_anonymous_stories", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("can_access_named_stories", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("can_generate_named_stories", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("default_account_scope_type", sa.String(), nullable=False, server_default="all_accounts"),
        sa.Column("default_account_ids_json", _json, nullable=True),
        *_caps(),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "key", name="uq_role_profiles_tenant_key"),
    )
    op.create_index("ix_role_profiles_tenant_id", "role_profiles", ["tenant_id"], unique=False)

    op.create_table(
        "user_role_assignments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "role_profile_id",
            sa.String(),
            sa.ForeignKey("role_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("assigned_by", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", name="uq_user_role_assignments_user_id"),
    )
    op.create_index("ix_user_role_assignments_tenant_id", "user_role_assignments", ["tenant_id"], unique=False)
    op.create_index(
        "ix_user_role_assignments_role_profile_id", "user_role_assignments", ["role_profile_id"], unique=False
    )

    op.create_table(
        "user_permissions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("permission", sa.String(), nullable=False),
        sa.Column("granted_by", sa.String(), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("user_id", "permission", name="uq_user_permissions_user_permission"),
    )
    op.create_index("ix_user_permissions_tenant_id", "user_permissions", ["tenant_id"], unique=False)
    op.create_index("ix_user_permissions_user_id", "user_permissions", ["user_id"], unique=False)

    # One row per grant; CRM grants keep the last successful membership snapshot.
    op.create_table(
        "user_account_access",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("scope_type", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("account_ids_json", _json, nullable=True),
        sa.Column("crm_provider", sa.String(), nullable=True),
        sa.Column("crm_report_id", sa.String(), nullable=True),
        sa.Column("crm_report_name", sa.String(), nullable=True),
        sa.Column("cached_account_ids_json", _json, nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.String(), nullable=True),
        sa.Column("last_sync_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("granted_by", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_user_account_access_tenant_id", "user_account_access", ["tenant_id"], unique=False)
    op.create_index("ix_user_account_access_user_id", "user_account_access", ["user_id"], unique=False)

    op.create_table(
        "ai_usage_limits",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        *_caps(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_ai_usage_limits_tenant_user"),
    )
    op.create_index("ix_ai_usage_limits_tenant_id", "ai_usage_limits", ["tenant_id"], unique=False)

    op.create_table(
        "artifact_governance_policies",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("artifact_type", sa.String(), nullable=False, server_default="landing_page"),
        sa.Column("approval_chain_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("max_expiration_days", sa.Integer(), nullable=True),
        sa.Column("require_provenance", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_by", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", name="uq_artifact_governance_policies_tenant_id"),
    )

    op.create_table(
        "artifact_approval_steps",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column(
            "policy_id",
            sa.String(),
            sa.ForeignKey("artifact_governance_policies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("min_approvals", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("approver_scope_type", sa.String(), nullable=False),
        sa.Column("approver_scope_value", sa.String(), nullable=True),
        sa.Column("allow_self_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
        sa.UniqueConstraint("policy_id", "step_order", name="uq_artifact_approval_steps_order"),
    )
    op.create_index("ix_artifact_approval_steps_tenant_id", "artifact_approval_steps", ["tenant_id"], unique=False)
    op.create_index("ix_artifact_approval_steps_policy_id", "artifact_approval_steps", ["policy_id"], unique=False)

    op.create_table(
        "approval_groups",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("owner_user_id", sa.String(), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("tenant_id", "name", name="uq_approval_groups_tenant_name"),
    )
    op.create_index("ix_approval_groups_tenant_id", "approval_groups", ["tenant_id"], unique=False)

    op.create_table(
        "approval_group_members",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("group_id", sa.String(), sa.ForeignKey("approval_groups.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("group_id", "user_id", name="uq_approval_group_members_group_user"),
    )
    op.create_index("ix_approval_group_members_tenant_id", "approval_group_members", ["tenant_id"], unique=False)
    op.create_index("ix_approval_group_members_group_id", "approval_group_members", ["group_id"], unique=False)
    op.create_index("ix_approval_group_members_user_id", "approval_group_members", ["user_id"], unique=False)

    # Status and version move together through compare-and-set updates.
    op.create_table(
        "approval_requests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("request_type", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("requested_by_user_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("request_payload_json", _json, nullable=True),
        sa.Column("chain_json", _json, nullable=True),
        sa.Column("reviewer_user_id", sa.String(), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("execution_result_json", _json, nullable=True),
        sa.Column("execution_error", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_approval_requests_tenant_id", "approval_requests", ["tenant_id"], unique=False)
    op.create_index("ix_approval_requests_request_type", "approval_requests", ["request_type"], unique=False)
    op.create_index(
        "ix_approval_requests_requested_by_user_id", "approval_requests", ["requested_by_user_id"], unique=False
    )
    op.create_index("ix_approval_requests_status", "approval_requests", ["status"], unique=False)

    op.create_table(
        "approval_decisions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column(
            "request_id",
            sa.String(),
            sa.ForeignKey("approval_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_order", sa.Integer(), nullable=True),
        sa.Column("approver_user_id", sa.String(), nullable=False),
        sa.Column("decision", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("request_id", "approver_user_id", name="uq_approval_decisions_request_user"),
    )
    op.create_index("ix_approval_decisions_tenant_id", "approval_decisions", ["tenant_id"], unique=False)
    op.create_index("ix_approval_decisions_request_id", "approval_decisions", ["request_id"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("id", _auto_id, primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False, server_default="info"),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", _json, nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"], unique=False)


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("approval_decisions")
    op.drop_table("approval_requests")
    op.drop_table("approval_group_members")
    op.drop_table("approval_groups")
    op.drop_table("artifact_approval_steps")
    op.drop_table("artifact_governance_policies")
    op.drop_table("ai_usage_limits")
    op.drop_table("user_account_access")
    op.drop_table("user_permissions")
    op.drop_table("user_role_assignments")
    op.drop_table("role_profiles")
    op.drop_table("accounts")
    op.drop_table("users")
