from __future__ import annotations

import pytest

from publishgate.core.errors import ValidationFailedError
from publishgate.services.authz.catalog import (
    PERMISSION_KINDS,
    PERMISSION_MANAGE_PERMISSIONS,
    PERMISSION_PUBLISH_LANDING_PAGE,
    PERMISSION_VIEW_ANALYTICS,
    PRESET_KEYS,
    PRESET_ROLE_PROFILES,
    SCOPE_CRM_REPORT,
    TEMPLATE_SCOPE_TYPES,
    fallback_story_flags,
    is_privileged_role,
    normalize_permission,
    normalize_permissions,
    normalize_role,
    permission_for_action,
)
from publishgate.services.governance.teams import (
    TEAM_CS,
    TEAM_MARKETING,
    TEAM_REVOPS,
    TEAM_SALES,
    normalize_team_key,
    team_for_role_profile_key,
)


def test_catalog_lists_nine_permission_kinds() -> None:
    assert len(PERMISSION_KINDS) == 9
    assert len(set(PERMISSION_KINDS)) == 9
    assert PERMISSION_MANAGE_PERMISSIONS in PERMISSION_KINDS


def test_normalize_permission_rejects_unknown_kinds() -> None:
    assert normalize_permission("  Publish_Landing_Page ") == PERMISSION_PUBLISH_LANDING_PAGE
    with pytest.raises(ValidationFailedError) as exc_info:
        normalize_permission("launch_missiles")
    assert exc_info.value.details["permission"] == "launch_missiles"


def test_normalize_permissions_dedupes_in_catalog_order() -> None:
    normalized = normalize_permissions(["view_analytics", "publish_landing_page", "VIEW_ANALYTICS"])
    assert normalized == [PERMISSION_PUBLISH_LANDING_PAGE, PERMISSION_VIEW_ANALYTICS]


def test_base_roles_normalize_and_only_owner_admin_are_privileged() -> None:
    assert normalize_role(" Admin ") == "admin"
    assert normalize_role("superuser") is None
    assert is_privileged_role("owner")
    assert is_privileged_role("ADMIN")
    assert not is_privileged_role("member")
    assert not is_privileged_role(None)


def test_action_names_map_to_permissions() -> None:
    assert permission_for_action("publish") == PERMISSION_PUBLISH_LANDING_PAGE
    with pytest.raises(ValidationFailedError):
        permission_for_action("teleport")


def test_presets_cover_the_five_teams_with_catalog_permissions() -> None:
    assert PRESET_KEYS == {"REVOPS", "MARKETING", "SALES", "CS", "EXEC"}
    for preset in PRESET_ROLE_PROFILES:
        assert set(preset.permissions) <= set(PERMISSION_KINDS)
        assert preset.default_account_scope_type in TEMPLATE_SCOPE_TYPES
    exec_preset = next(preset for preset in PRESET_ROLE_PROFILES if preset.key == "EXEC")
    assert exec_preset.permissions == (PERMISSION_VIEW_ANALYTICS,)
    assert SCOPE_CRM_REPORT not in TEMPLATE_SCOPE_TYPES


def test_fallback_story_flags_follow_base_role() -> None:
    assert fallback_story_flags("owner").can_generate_named_stories is True
    assert fallback_story_flags("viewer").can_generate_anonymous_stories is False
    assert fallback_story_flags("member").can_access_named_stories is False


def test_role_profile_keys_bucket_into_teams() -> None:
    assert team_for_role_profile_key("SALES") == TEAM_SALES
    assert team_for_role_profile_key("cs") == TEAM_CS
    assert team_for_role_profile_key("FIELD_MARKETING") == TEAM_MARKETING
    assert team_for_role_profile_key("EXEC") == TEAM_REVOPS
    assert team_for_role_profile_key(None) == TEAM_REVOPS


def test_team_keys_normalize_to_known_teams() -> None:
    assert normalize_team_key(" sales ") == TEAM_SALES
    assert normalize_team_key("finance") is None
    assert normalize_team_key(None) is None
