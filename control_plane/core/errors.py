from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar
from uuid import UUID

T = TypeVar("T")


class ControlPlaneError(Exception):
    code = "control_plane_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def payload(self) -> dict[str, object]:
        return {"code": self.code, "message": self.message}


class NotFoundError(ControlPlaneError):
    code = "not_found"
    status_code = 404


class TenantNotFoundError(NotFoundError):
    code = "tenant_not_found"

    def __init__(self, tenant_id: UUID | str) -> None:
        super().__init__(f"Tenant {tenant_id} not found")
        self.tenant_id = tenant_id


class UserNotFoundError(NotFoundError):
    code = "user_not_found"

    def __init__(self, user_id: UUID | str) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class GroupNotFoundError(NotFoundError):
    code = "group_not_found"

    def __init__(self, group_id: UUID | str) -> None:
        super().__init__(f"Group {group_id} not found")
        self.group_id = group_id


class MembershipNotFoundError(NotFoundError):
    code = "membership_not_found"

    def __init__(self, user_id: UUID | str, tenant_id: UUID | str) -> None:
        super().__init__(f"User {user_id} is not a member of tenant {tenant_id}")
        self.user_id = user_id
        self.tenant_id = tenant_id


class ConflictError(ControlPlaneError):
    code = "conflict"
    status_code = 409


class InvalidInputError(ControlPlaneError):
    code = "invalid_input"
    status_code = 422


class PermissionValidationError(InvalidInputError):
    code = "invalid_permissions"

    def __init__(self, valid: Sequence[str], invalid: Sequence[str]) -> None:
        super().__init__(f"Invalid permissions: {', '.join(map(str, invalid)) or '(none given)'}")
        self.valid = list(valid)
        self.invalid = list(invalid)

    def payload(self) -> dict[str, object]:
        return {**super().payload(), "valid": self.valid, "invalid": self.invalid}


class StoreUnavailableError(ControlPlaneError):
    code = "store_unavailable"
    status_code = 503


class MigrationError(ControlPlaneError):
    code = "migration_failed"
    status_code = 500

    def __init__(self, message: str, migration_id: UUID | None = None) -> None:
        super().__init__(message)
        self.migration_id = migration_id

    def payload(self) -> dict[str, object]:
        return {
            **super().payload(),
            "migration_id": str(self.migration_id) if self.migration_id else None,
        }


@dataclass(slots=True)
class Outcome(Generic[T]):
    value: T | None = None
    error: ControlPlaneError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> Outcome[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: ControlPlaneError) -> Outcome[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
