from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

STANDARD_PERMISSIONS: frozenset[str] = frozenset(
    {"view", "create", "edit", "delete", "export", "share", "admin"}
)
SYSTEM_PERMISSIONS: frozenset[str] = frozenset(
    {"invite_users", "manage_groups", "assign_apps", "view_analytics", "manage_billing"}
)
CUSTOM_PERMISSION_PREFIX = "custom:"


def is_valid_permission(permission: str) -> bool:
    return (
        permission in STANDARD_PERMISSIONS
        or permission in SYSTEM_PERMISSIONS
        or permission.startswith(CUSTOM_PERMISSION_PREFIX)
    )


@dataclass(slots=True, frozen=True)
class PermissionValidation:
    valid: list[str]
    invalid: list[str]

    @property
    def ok(self) -> bool:
        return not self.invalid


def validate_permissions(permissions: Sequence[str]) -> PermissionValidation:
    valid: list[str] = []
    invalid: list[str] = []
    for permission in permissions:
        target = valid if isinstance(permission, str) and is_valid_permission(permission) else invalid
        if permission not in target:
            target.append(permission)
    return PermissionValidation(valid=valid, invalid=invalid)


@dataclass(frozen=True, eq=False)
class EffectivePermissions(Mapping[str, frozenset[str]]):
    """Resolved ``app_id -> permissions`` for one user in one tenant.

    Apps that are absent map to the empty set; absence is never "unknown".
    """

    apps: Mapping[str, frozenset[str]] = field(default_factory=dict)
    earliest_expiry: datetime | None = None

    @classmethod
    def empty(cls) -> EffectivePermissions:
        return cls()

    @classmethod
    def union(
        cls,
        grants: Iterable[tuple[str, Iterable[str], datetime | None]],
    ) -> EffectivePermissions:
        merged: dict[str, set[str]] = {}
        earliest: datetime | None = None
        for app_id, permissions, expires_at in grants:
            merged.setdefault(app_id, set()).update(permissions)
            if expires_at is not None and (earliest is None or expires_at < earliest):
                earliest = expires_at
        apps = {app_id: frozenset(perms) for app_id, perms in merged.items() if perms}
        return cls(apps=apps, earliest_expiry=earliest)

    def __getitem__(self, app_id: str) -> frozenset[str]:
        return self.apps[app_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self.apps)

    def __len__(self) -> int:
        return len(self.apps)

    def permissions_for(self, app_id: str) -> frozenset[str]:
        return self.apps.get(app_id, frozenset())

    def has(self, app_id: str, permission: str) -> bool:
        return permission in self.permissions_for(app_id)

    def has_any(self, app_id: str, permissions: Iterable[str]) -> bool:
        granted = self.permissions_for(app_id)
        return any(permission in granted for permission in permissions)

    def has_all(self, app_id: str, permissions: Iterable[str]) -> bool:
        granted = self.permissions_for(app_id)
        return all(permission in granted for permission in permissions)

    def accessible_apps(self) -> list[str]:
        return sorted(self.apps)

    def as_dict(self) -> dict[str, list[str]]:
        return {app_id: sorted(perms) for app_id, perms in sorted(self.apps.items())}

    def to_payload(self) -> dict[str, object]:
        return {
            "apps": self.as_dict(),
            "earliest_expiry": self.earliest_expiry.isoformat() if self.earliest_expiry else None,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> EffectivePermissions:
        apps = payload["apps"]
        if not isinstance(apps, Mapping):
            raise TypeError("apps must be a mapping")
        expiry_raw = payload.get("earliest_expiry")
        return cls(
            apps={str(app_id): frozenset(perms) for app_id, perms in apps.items()},
            earliest_expiry=datetime.fromisoformat(expiry_raw) if isinstance(expiry_raw, str) else None,
        )
