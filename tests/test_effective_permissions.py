from __future__ import annotations

from datetime import datetime, timedelta, timezone

from control_plane.services.effective import (
    EffectivePermissions,
    is_valid_permission,
    validate_permissions,
)


def test_validate_permissions_partitions_standard_custom_and_unknown() -> None:
    result = validate_permissions(["view", "bogus", "custom:x"])

    assert result.valid == ["view", "custom:x"]
    assert result.invalid == ["bogus"]
    assert result.ok is False


def test_validate_permissions_keeps_order_and_drops_duplicates() -> None:
    result = validate_permissions(["edit", "view", "edit", "manage_groups"])

    assert result.valid == ["edit", "view", "manage_groups"]
    assert result.invalid == []
    assert result.ok is True


def test_is_valid_permission_rejects_near_misses() -> None:
    assert is_valid_permission("custom:reports.export") is True
    assert is_valid_permission("VIEW") is False
    assert is_valid_permission("custom") is False
    assert is_valid_permission("") is False


def test_union_merges_per_app_independent_of_order() -> None:
    soon = datetime(2026, 5, 1, tzinfo=timezone.utc)
    later = soon + timedelta(days=10)
    grants = [
        ("crm", ["view"], None),
        ("crm", ["edit", "view"], later),
        ("billing", ["export"], soon),
    ]

    forward = EffectivePermissions.union(grants)
    backward = EffectivePermissions.union(reversed(grants))

    assert forward == backward
    assert forward.as_dict() == {"billing": ["export"], "crm": ["edit", "view"]}
    assert forward.earliest_expiry == soon


def test_empty_result_denies_everything() -> None:
    empty = EffectivePermissions.empty()

    assert len(empty) == 0
    assert empty.permissions_for("crm") == frozenset()
    assert empty.has("crm", "view") is False
    assert empty.has_any("crm", ["view", "edit"]) is False
    assert empty.accessible_apps() == []


def test_has_any_and_has_all() -> None:
    effective = EffectivePermissions.union([("crm", ["view", "edit"], None)])

    assert effective.has_any("crm", ["delete", "edit"]) is True
    assert effective.has_all("crm", ["view", "edit"]) is True
    assert effective.has_all("crm", ["view", "delete"]) is False


def test_payload_round_trip_keeps_expiry() -> None:
    expiry = datetime(2026, 4, 1, 8, 30, tzinfo=timezone.utc)
    effective = EffectivePermissions.union([("crm", ["view"], expiry)])

    restored = EffectivePermissions.from_payload(effective.to_payload())

    assert restored == effective
    assert restored.earliest_expiry == expiry
