from __future__ import annotations

from dataclasses import dataclass, field

from publishgate.core.errors import ValidationFailedError


ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"
ROLE_VIEWER = "viewer"
ROLE_ORDER = {ROLE_VIEWER: 0, ROLE_MEMBER: 1, ROLE_ADMIN: 2, ROLE_OWNER: 3}
# Top two tiers hold every permission by construction.
PRIVILEGED_ROLES = frozenset({ROLE_OWNER, ROLE_ADMIN})

PERMISSION_CREATE_LANDING_PAGE = "create_landing_page"
PERMISSION_PUBLISH_LANDING_PAGE = "publish_landing_page"
PERMISSION_PUBLISH_NAMED_LANDING_PAGE = "publish_named_landing_page"
PERMISSION_EDIT_ANY_LANDING_PAGE = "edit_any_landing_page"
PERMISSION_DELETE_ANY_LANDING_PAGE = "delete_any_landing_page"
PERMISSION_MANAGE_PERMISSIONS = "manage_permissions"
PERMISSION_VIEW_ANALYTICS = "view_analytics"
PERMISSION_MANAGE_ENTITY_RESOLUTION = "manage_entity_resolution"
PERMISSION_MANAGE_AI_SETTINGS = "manage_ai_settings"

# Catalog order is the display order used by admin views and role profiles.
PERMISSION_KINDS: tuple[str, ...] = (
    PERMISSION_CREATE_LANDING_PAGE,
    PERMISSION_PUBLISH_LANDING_PAGE,
    PERMISSION_PUBLISH_NAMED_LANDING_PAGE,
    PERMISSION_EDIT_ANY_LANDING_PAGE,
    PERMISSION_DELETE_ANY_LANDING_PAGE,
    PERMISSION_MANAGE_PERMISSIONS,
    PERMISSION_VIEW_ANALYTICS,
    PERMISSION_MANAGE_ENTITY_RESOLUTION,
    PERMISSION_MANAGE_AI_SETTINGS,
)

# Route-level action names mapped to the permission each one requires.
ACTION_PERMISSIONS: dict[str, str] = {
    "create": PERMISSION_CREATE_LANDING_PAGE,
    "publish": PERMISSION_PUBLISH_LANDING_PAGE,
    "publish_named": PERMISSION_PUBLISH_NAMED_LANDING_PAGE,
    "edit_any": PERMISSION_EDIT_ANY_LANDING_PAGE,
    "delete_any": PERMISSION_DELETE_ANY_LANDING_PAGE,
    "manage_permissions": PERMISSION_MANAGE_PERMISSIONS,
    "view_analytics": PERMISSION_VIEW_ANALYTICS,
    "manage_ai_settings": PERMISSION_MANAGE_AI_SETTINGS,
}

SCOPE_ALL_ACCOUNTS = "all_accounts"
SCOPE_SINGLE_ACCOUNT = "single_account"
SCOPE_ACCOUNT_LIST = "account_list"
SCOPE_CRM_REPORT = "crm_report"
ACCOUNT_SCOPE_TYPES = (SCOPE_ALL_ACCOUNTS, SCOPE_SINGLE_ACCOUNT, SCOPE_ACCOUNT_LIST, SCOPE_CRM_REPORT)
# CRM report scopes cannot be a profile template; they need a provider report id per grant.
TEMPLATE_SCOPE_TYPES = (SCOPE_ALL_ACCOUNTS, SCOPE_SINGLE_ACCOUNT, SCOPE_ACCOUNT_LIST)

CRM_PROVIDER_SALESFORCE = "salesforce"
CRM_PROVIDER_HUBSPOT = "hubspot"
CRM_PROVIDERS = (CRM_PROVIDER_SALESFORCE, CRM_PROVIDER_HUBSPOT)

POLICY_SOURCE_ADMIN_OVERRIDE = "admin_override"
POLICY_SOURCE_ASSIGNED_PROFILE = "assigned_profile"
POLICY_SOURCE_FALLBACK = "fallback"


@dataclass(frozen=True)
class UsageCaps:
    max_tokens_per_day: int | None = None
    max_tokens_per_month: int | None = None
    max_requests_per_day: int | None = None
    max_requests_per_month: int | None = None
    max_stories_per_month: int | None = None

    def as_dict(self) -> dict[str, int | None]:
        return {
            "max_tokens_per_day": self.max_tokens_per_day,
            "max_tokens_per_month": self.max_tokens_per_month,
            "max_requests_per_day": self.max_requests_per_day,
            "max_requests_per_month": self.max_requests_per_month,
            "max_stories_per_month": self.max_stories_per_month,
        }


@dataclass(frozen=True)
class StoryFlags:
    can_access_anonymous_stories: bool = True
    can_generate_anonymous_stories: bool = True
    can_access_named_stories: bool = False
    can_generate_named_stories: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {
            "can_access_anonymous_stories": self.can_access_anonymous_stories,
            "can_generate_anonymous_stories": self.can_generate_anonymous_stories,
            "can_access_named_stories": self.can_access_named_stories,
            "can_generate_named_stories": self.can_generate_named_stories,
        }


@dataclass(frozen=True)
class PresetRoleProfile:
    key: str
    name: str
    description: str
    permissions: tuple[str, ...]
    flags: StoryFlags
    default_account_scope_type: str
    caps: UsageCaps = field(default_factory=UsageCaps)


_ALL_STORY_FLAGS = StoryFlags(True, True, True, True)
_ANONYMOUS_ONLY = StoryFlags(True, True, False, False)

PRESET_ROLE_PROFILES: tuple[PresetRoleProfile, ...] = (
    PresetRoleProfile(
        key="REVOPS",
        name="Revenue Operations",
        description="Owns account data quality, publishing and reporting across the tenant.",
        permissions=(
            PERMISSION_CREATE_LANDING_PAGE,
            PERMISSION_PUBLISH_LANDING_PAGE,
            PERMISSION_PUBLISH_NAMED_LANDING_PAGE,
            PERMISSION_EDIT_ANY_LANDING_PAGE,
            PERMISSION_VIEW_ANALYTICS,
            PERMISSION_MANAGE_ENTITY_RESOLUTION,
        ),
        flags=_ALL_STORY_FLAGS,
        default_account_scope_type=SCOPE_ALL_ACCOUNTS,
    ),
    PresetRoleProfile(
        key="MARKETING",
        name="Marketing Team",
        description="Builds and publishes anonymized customer stories for campaigns.",
        permissions=(
            PERMISSION_CREATE_LANDING_PAGE,
            PERMISSION_PUBLISH_LANDING_PAGE,
            PERMISSION_VIEW_ANALYTICS,
        ),
        flags=_ANONYMOUS_ONLY,
        default_account_scope_type=SCOPE_ALL_ACCOUNTS,
        caps=UsageCaps(max_stories_per_month=150),
    ),
    PresetRoleProfile(
        key="SALES",
        name="Sales Team",
        description="Builds stories and publishes customer-facing outputs.",
        permissions=(
            PERMISSION_CREATE_LANDING_PAGE,
            PERMISSION_PUBLISH_LANDING_PAGE,
            PERMISSION_PUBLISH_NAMED_LANDING_PAGE,
            PERMISSION_VIEW_ANALYTICS,
        ),
        flags=_ALL_STORY_FLAGS,
        default_account_scope_type=SCOPE_ALL_ACCOUNTS,
        caps=UsageCaps(max_stories_per_month=200),
    ),
    PresetRoleProfile(
        key="CS",
        name="Customer Success Team",
        description="Builds internal/external stories, usually anonymized by default.",
        permissions=(
            PERMISSION_CREATE_LANDING_PAGE,
            PERMISSION_PUBLISH_LANDING_PAGE,
            PERMISSION_VIEW_ANALYTICS,
        ),
        flags=_ANONYMOUS_ONLY,
        default_account_scope_type=SCOPE_ALL_ACCOUNTS,
        caps=UsageCaps(max_stories_per_month=120),
    ),
    PresetRoleProfile(
        key="EXEC",
        name="Executive (View Only)",
        description="View reporting and content that has already been created. No generation/publish actions.",
        permissions=(PERMISSION_VIEW_ANALYTICS,),
        flags=StoryFlags(True, False, False, False),
        default_account_scope_type=SCOPE_ACCOUNT_LIST,
        caps=UsageCaps(max_stories_per_month=0),
    ),
)
PRESET_KEYS = frozenset(preset.key for preset in PRESET_ROLE_PROFILES)


def normalize_role(role: str | None) -> str | None:
    # Normalize base roles to the supported vocabulary; unknown roles resolve to None.
    if role is None:
        return None
    normalized = role.strip().lower()
    return normalized if normalized in ROLE_ORDER else None


def is_privileged_role(role: str | None) -> bool:
    return normalize_role(role) in PRIVILEGED_ROLES


def normalize_permission(permission: str) -> str:
    # Reject unknown permission kinds at the boundary so resolvers only see catalog values.
    normalized = (permission or "").strip().lower()
    if normalized not in PERMISSION_KINDS:
        raise ValidationFailedError(
            f"Unknown permission kind '{permission}'",
            details={"permission": permission, "allowed": list(PERMISSION_KINDS)},
        )
    return normalized


def normalize_permissions(permissions: list[str] | tuple[str, ...]) -> list[str]:
    # Deduplicate while keeping catalog order so stored bundles compare stably.
    requested = {normalize_permission(permission) for permission in permissions}
    return [kind for kind in PERMISSION_KINDS if kind in requested]


def permission_for_action(action: str) -> str:
    try:
        return ACTION_PERMISSIONS[action]
    except KeyError as exc:
        raise ValidationFailedError(f"Unknown action '{action}'", details={"action": action}) from exc


def fallback_story_flags(role: str | None) -> StoryFlags:
    normalized = normalize_role(role)
    if normalized in PRIVILEGED_ROLES:
        return _ALL_STORY_FLAGS
    if normalized == ROLE_VIEWER:
        return StoryFlags(True, False, False, False)
    return _ANONYMOUS_ONLY
