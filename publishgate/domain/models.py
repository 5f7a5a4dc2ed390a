from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so the sqlite test database can create the schema.
JsonDoc = JSON().with_variant(JSONB(), "postgresql")
# sqlite only autoincrements INTEGER primary keys.
AutoId = BigInteger().with_variant(Integer(), "sqlite")


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Base role: owner, admin, member or viewer.
    role: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    # External CRM identifiers used to match report members to local accounts.
    salesforce_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    hubspot_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RoleProfile(Base):
    __tablename__ = "role_profiles"
    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_role_profiles_tenant_key"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    key: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_preset: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Ordered list of permission kinds.
    permissions_json: Mapped[list[str]] = mapped_column(JsonDoc, default=list)
    can_access_anonymous_stories: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_generate_anonymous_stories: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_access_named_stories: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_generate_named_stories: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Account scope template applied when the profile is assigned with a scope reset.
    default_account_scope_type: Mapped[str] = mapped_column(String, default="all_accounts")
    default_account_ids_json: Mapped[list[str]] = mapped_column(JsonDoc, default=list)
    # Usage caps; null means unlimited.
    max_tokens_per_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_tokens_per_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_requests_per_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_requests_per_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_stories_per_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserRoleAssignment(Base):
    __tablename__ = "user_role_assignments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # At most one assignment per user.
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), unique=True)
    role_profile_id: Mapped[str] = mapped_column(
        String, ForeignKey("role_profiles.id", ondelete="CASCADE"), index=True
    )
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserPermission(Base):
    __tablename__ = "user_permissions"
    __table_args__ = (UniqueConstraint("user_id", "permission", name="uq_user_permissions_user_permission"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), index=True)
    permission: Mapped[str] = mapped_column(String)
    granted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserAccountAccess(Base):
    __tablename__ = "user_account_access"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), index=True)
    # all_accounts, single_account, account_list or crm_report.
    scope_type: Mapped[str] = mapped_column(String)
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Admin-curated ids for account_list grants.
    account_ids_json: Mapped[list[str]] = mapped_column(JsonDoc, default=list)
    crm_provider: Mapped[str | None] = mapped_column(String, nullable=True)
    crm_report_id: Mapped[str | None] = mapped_column(String, nullable=True)
    crm_report_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Last successfully synced CRM membership; replaced wholesale on every sync.
    cached_account_ids_json: Mapped[list[str]] = mapped_column(JsonDoc, default=list)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(String, nullable=True)
    last_sync_failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Bumped on every membership write.
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    granted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AIUsageLimit(Base):
    __tablename__ = "ai_usage_limits"
    __table_args__ = (UniqueConstraint("tenant_id", "user_id", name="uq_ai_usage_limits_tenant_user"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"))
    max_tokens_per_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_tokens_per_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_requests_per_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_requests_per_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_stories_per_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ArtifactGovernancePolicy(Base):
    __tablename__ = "artifact_governance_policies"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # One policy per tenant.
    tenant_id: Mapped[str] = mapped_column(String, unique=True)
    artifact_type: Mapped[str] = mapped_column(String, default="landing_page")
    approval_chain_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Null means published artifacts may never expire.
    max_expiration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    require_provenance: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ArtifactApprovalStep(Base):
    __tablename__ = "artifact_approval_steps"
    __table_args__ = (UniqueConstraint("policy_id", "step_order", name="uq_artifact_approval_steps_order"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    policy_id: Mapped[str] = mapped_column(
        String, ForeignKey("artifact_governance_policies.id", ondelete="CASCADE"), index=True
    )
    step_order: Mapped[int] = mapped_column(Integer)
    min_approvals: Mapped[int] = mapped_column(Integer, default=1)
    # role_profile, team, user, group or self.
    approver_scope_type: Mapped[str] = mapped_column(String)
    approver_scope_value: Mapped[str | None] = mapped_column(String, nullable=True)
    allow_self_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ApprovalGroup(Base):
    __tablename__ = "approval_groups"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_approval_groups_tenant_name"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ApprovalGroupMember(Base):
    __tablename__ = "approval_group_members"
    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uq_approval_group_members_group_user"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    group_id: Mapped[str] = mapped_column(String, ForeignKey("approval_groups.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ApprovalRequest(Base):
    __tablename__ = "approval_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # artifact_publish, data_deletion, crm_writeback or account_merge.
    request_type: Mapped[str] = mapped_column(String, index=True)
    target_type: Mapped[str] = mapped_column(String)
    target_id: Mapped[str] = mapped_column(String)
    requested_by_user_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    request_payload_json: Mapped[dict[str, Any]] = mapped_column(JsonDoc, default=dict)
    # Enabled steps captured at submission; later policy edits do not move pending requests.
    chain_json: Mapped[list[dict[str, Any]]] = mapped_column(JsonDoc, default=list)
    reviewer_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_result_json: Mapped[dict[str, Any] | None] = mapped_column(JsonDoc, nullable=True)
    execution_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Compare-and-set counter guarding every status or decision write.
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ApprovalDecision(Base):
    __tablename__ = "approval_decisions"
    # One decision per approver per request, across all steps.
    __table_args__ = (UniqueConstraint("request_id", "approver_user_id", name="uq_approval_decisions_request_user"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    request_id: Mapped[str] = mapped_column(String, ForeignKey("approval_requests.id", ondelete="CASCADE"), index=True)
    # Null for single-review chains without configured steps.
    step_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approver_user_id: Mapped[str] = mapped_column(String)
    decision: Mapped[str] = mapped_column(String)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(AutoId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    # info, warn or critical.
    severity: Mapped[str] = mapped_column(String, default="info")
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonDoc, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
