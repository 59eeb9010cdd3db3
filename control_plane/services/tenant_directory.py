from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from control_plane.core.db import StoreClient
from control_plane.core.errors import (
    ConflictError,
    InvalidInputError,
    MembershipNotFoundError,
    Outcome,
    StoreUnavailableError,
    TenantNotFoundError,
    UserNotFoundError,
)
from control_plane.models.base import utcnow
from control_plane.models.group import TenantGroup, TenantGroupMember
from control_plane.models.membership import TENANT_ROLES, DirectAppPermission, TenantMembership
from control_plane.models.tenant import SUBSCRIPTION_PLANS, TENANT_STATUSES, Tenant
from control_plane.models.user import User
from control_plane.services.permission_cache import EffectivePermissionCache

if TYPE_CHECKING:
    from control_plane.services.data_plane import DataPlaneRouter

logger = logging.getLogger(__name__)

SHARED_PLANS: frozenset[str] = frozenset({"free", "starter"})
DEDICATED_PLANS: frozenset[str] = frozenset({"professional", "enterprise", "custom"})

_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")


def is_shared_plan(plan: str) -> bool:
    return plan in SHARED_PLANS


def is_dedicated_plan(plan: str) -> bool:
    return plan in DEDICATED_PLANS


def plan_data_plane(plan: str) -> str:
    return "dedicated" if is_dedicated_plan(plan) else "shared"


def dedicated_database_name(slug: str, prefix: str = "rmap_tenant_") -> str:
    return f"{prefix}{slug.replace('-', '_')}"


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass(slots=True)
class SubscriptionChange:
    tenant_id: UUID
    previous_plan: str
    plan: str
    data_plane_type: str
    requires_migration: bool


class TenantDirectory:
    """Tenants, users and tenant memberships.

    With ``data_planes`` wired, tenants created on a dedicated plan get their
    database provisioned and upgrades move existing data before returning.
    """

    def __init__(
        self,
        store: StoreClient,
        *,
        cache: EffectivePermissionCache | None = None,
        data_planes: DataPlaneRouter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._data_planes = data_planes
        self._clock = clock
        self._dedicated_prefix = store.settings.dedicated_database_prefix

    def database_for_slug(self, slug: str) -> str:
        return dedicated_database_name(slug, self._dedicated_prefix)

    async def create_tenant(
        self,
        name: str,
        slug: str,
        *,
        plan: str = "free",
        contact_email: str | None = None,
    ) -> Tenant:
        if not _SLUG_RE.match(slug):
            raise InvalidInputError(f"Invalid tenant slug {slug!r}")
        if plan not in SUBSCRIPTION_PLANS:
            raise InvalidInputError(f"Unknown subscription plan {plan!r}")

        data_plane_type = plan_data_plane(plan)
        tenant = Tenant(
            name=name,
            slug=slug,
            plan=plan,
            status="active",
            contact_email=normalize_email(contact_email) if contact_email else None,
            data_plane_type=data_plane_type,
            data_plane_database=(
                self.database_for_slug(slug)
                if data_plane_type == "dedicated"
                else self._store.shared_database
            ),
        )
        try:
            async with self._store.session() as session:
                session.add(tenant)
                await session.commit()
        except IntegrityError as exc:
            raise ConflictError(f"Tenant slug {slug!r} already exists") from exc
        except SQLAlchemyError as exc:
            logger.exception("Error creating tenant %s", slug)
            raise StoreUnavailableError("Failed to create tenant") from exc

        logger.info("Created new tenant %s on %s data plane", slug, data_plane_type)
        if data_plane_type == "dedicated" and self._data_planes is not None:
            try:
                await self._data_planes.create_dedicated_tenant_db(slug)
            except SQLAlchemyError as exc:
                logger.exception("Error provisioning dedicated database for tenant %s", slug)
                raise StoreUnavailableError(f"Failed to provision database for tenant {slug}") from exc
        return tenant

    async def get_tenant(self, identifier: UUID | str) -> Tenant | None:
        clauses = [Tenant.slug == str(identifier)]
        tenant_id = identifier if isinstance(identifier, UUID) else _parse_uuid(identifier)
        if tenant_id is not None:
            clauses.append(Tenant.id == tenant_id)
        async with self._store.session() as session:
            return await session.scalar(select(Tenant).where(or_(*clauses)))

    async def require_tenant(self, tenant_id: UUID) -> Tenant:
        async with self._store.session() as session:
            tenant = await session.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    async def update_subscription(self, tenant_id: UUID, plan: str) -> Outcome[SubscriptionChange]:
        """Change a tenant's plan.

        Records on a dedicated database have no way back to the shared one, so
        moving such a tenant to a shared plan is refused. An upgrade from the
        shared database migrates the tenant's records when a data-plane router
        is wired. Without a router, or when the migration fails, the change
        reports ``requires_migration`` and a later migration run resumes.
        """
        if plan not in SUBSCRIPTION_PLANS:
            return Outcome.failure(InvalidInputError(f"Unknown subscription plan {plan!r}"))
        try:
            async with self._store.session() as session:
                tenant = await session.get(Tenant, tenant_id)
                if tenant is None:
                    return Outcome.failure(TenantNotFoundError(tenant_id))
                previous = tenant.plan
                data_plane_type = tenant.data_plane_type or plan_data_plane(previous)
                if data_plane_type == "dedicated" and is_shared_plan(plan):
                    logger.warning("Refusing to move dedicated tenant %s to the %s plan", tenant_id, plan)
                    return Outcome.failure(
                        ConflictError(f"Tenant {tenant_id} has a dedicated database and cannot move to the {plan} plan")
                    )
                tenant.plan = plan
                tenant.updated_at = self._clock()
                slug = tenant.slug
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Error updating subscription for tenant %s", tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to update subscription"))

        requires_migration = is_dedicated_plan(plan) and data_plane_type == "shared"
        if requires_migration and self._data_planes is not None:
            migrated = await self._data_planes.migrate_tenant_to_dedicated(tenant_id, slug)
            if migrated.ok:
                data_plane_type = "dedicated"
                requires_migration = False
            else:
                logger.error("Migration of tenant %s after upgrade to %s failed: %s", tenant_id, plan, migrated.error)
        elif requires_migration:
            logger.warning("Tenant %s moved to plan %s and awaits migration to a dedicated database", tenant_id, plan)
        logger.info("Updated subscription for tenant %s from %s to %s", tenant_id, previous, plan)
        return Outcome.success(
            SubscriptionChange(
                tenant_id=tenant_id,
                previous_plan=previous,
                plan=plan,
                data_plane_type=data_plane_type,
                requires_migration=requires_migration,
            )
        )

    async def set_status(self, tenant_id: UUID, status: str) -> Outcome[Tenant]:
        """Change a tenant's status and drop the cached permissions of everyone in it."""
        if status not in TENANT_STATUSES:
            return Outcome.failure(InvalidInputError(f"Unknown tenant status {status!r}"))
        try:
            async with self._store.session() as session:
                tenant = await session.get(Tenant, tenant_id)
                if tenant is None:
                    return Outcome.failure(TenantNotFoundError(tenant_id))
                user_ids = set(
                    await session.scalars(
                        select(TenantMembership.user_id).where(TenantMembership.tenant_id == tenant_id)
                    )
                )
                user_ids.update(
                    await session.scalars(
                        select(TenantGroupMember.user_id)
                        .join(TenantGroup, TenantGroup.id == TenantGroupMember.group_id)
                        .where(TenantGroup.tenant_id == tenant_id)
                    )
                )
                tenant.status = status
                tenant.updated_at = self._clock()
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Error changing status of tenant %s", tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to change tenant status"))

        if self._cache is not None:
            await self._cache.invalidate_many((user_id, tenant_id) for user_id in user_ids)
        logger.info("Tenant %s is now %s", tenant_id, status)
        return Outcome.success(tenant)

    async def register_user(
        self,
        email: str,
        *,
        password_hash: str | None = None,
        name: str | None = None,
    ) -> User:
        normalized = normalize_email(email)
        if "@" not in normalized:
            raise InvalidInputError(f"Invalid email {email!r}")
        user = User(email=normalized, name=name, password_hash=password_hash, email_verified=False)
        try:
            async with self._store.session() as session:
                if await session.scalar(select(User.id).where(User.email == normalized)) is not None:
                    raise ConflictError(f"Email {normalized} is already registered")
                session.add(user)
                await session.commit()
        except IntegrityError as exc:
            raise ConflictError(f"Email {normalized} is already registered") from exc
        except SQLAlchemyError as exc:
            logger.exception("Error registering user")
            raise StoreUnavailableError("Failed to register user") from exc
        logger.info("Created new user %s", user.id)
        return user

    async def get_user_by_email(self, email: str) -> User | None:
        async with self._store.session() as session:
            return await session.scalar(select(User).where(User.email == normalize_email(email)))

    async def add_member(
        self,
        tenant_id: UUID,
        user_id: UUID,
        *,
        role: str = "member",
    ) -> Outcome[TenantMembership]:
        if role not in TENANT_ROLES:
            return Outcome.failure(InvalidInputError(f"Unknown tenant role {role!r}"))
        try:
            async with self._store.session() as session:
                if await session.get(Tenant, tenant_id) is None:
                    return Outcome.failure(TenantNotFoundError(tenant_id))
                if await session.get(User, user_id) is None:
                    return Outcome.failure(UserNotFoundError(user_id))
                existing = await session.scalar(
                    select(TenantMembership.id).where(
                        TenantMembership.tenant_id == tenant_id,
                        TenantMembership.user_id == user_id,
                    )
                )
                if existing is not None:
                    return Outcome.failure(ConflictError(f"User {user_id} is already a member of tenant {tenant_id}"))
                membership = TenantMembership(tenant_id=tenant_id, user_id=user_id, role=role, status="active")
                session.add(membership)
                await session.commit()
        except IntegrityError:
            return Outcome.failure(ConflictError(f"User {user_id} is already a member of tenant {tenant_id}"))
        except SQLAlchemyError:
            logger.exception("Error adding user %s to tenant %s", user_id, tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to add user to tenant"))

        logger.info("Added user %s to tenant %s with role %s", user_id, tenant_id, role)
        return Outcome.success(membership)

    async def get_membership(self, user_id: UUID, tenant_id: UUID) -> TenantMembership | None:
        async with self._store.session() as session:
            return await session.scalar(
                select(TenantMembership).where(
                    TenantMembership.tenant_id == tenant_id,
                    TenantMembership.user_id == user_id,
                )
            )

    async def list_members(self, tenant_id: UUID) -> list[TenantMembership]:
        async with self._store.session() as session:
            rows = await session.scalars(
                select(TenantMembership)
                .where(TenantMembership.tenant_id == tenant_id)
                .order_by(TenantMembership.created_at)
            )
            return list(rows)

    async def update_member_role(self, user_id: UUID, tenant_id: UUID, role: str) -> Outcome[TenantMembership]:
        if role not in TENANT_ROLES:
            return Outcome.failure(InvalidInputError(f"Unknown tenant role {role!r}"))
        try:
            async with self._store.session() as session:
                membership = await session.scalar(
                    select(TenantMembership).where(
                        TenantMembership.tenant_id == tenant_id,
                        TenantMembership.user_id == user_id,
                    )
                )
                if membership is None:
                    return Outcome.failure(MembershipNotFoundError(user_id, tenant_id))
                membership.role = role
                membership.updated_at = self._clock()
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Error updating role of user %s in tenant %s", user_id, tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to update role"))
        return Outcome.success(membership)

    async def remove_member(self, user_id: UUID, tenant_id: UUID) -> Outcome[bool]:
        """Remove a membership together with its direct grants and group memberships."""
        try:
            async with self._store.session() as session:
                membership = await session.scalar(
                    select(TenantMembership).where(
                        TenantMembership.tenant_id == tenant_id,
                        TenantMembership.user_id == user_id,
                    )
                )
                if membership is None:
                    return Outcome.failure(MembershipNotFoundError(user_id, tenant_id))

                await session.execute(
                    delete(DirectAppPermission).where(DirectAppPermission.membership_id == membership.id)
                )
                group_ids = list(
                    await session.scalars(
                        select(TenantGroupMember.group_id)
                        .join(TenantGroup, TenantGroup.id == TenantGroupMember.group_id)
                        .where(TenantGroup.tenant_id == tenant_id, TenantGroupMember.user_id == user_id)
                    )
                )
                if group_ids:
                    await session.execute(
                        delete(TenantGroupMember).where(
                            TenantGroupMember.user_id == user_id,
                            TenantGroupMember.group_id.in_(group_ids),
                        )
                    )
                    member_count = (
                        select(func.count())
                        .select_from(TenantGroupMember)
                        .where(TenantGroupMember.group_id == TenantGroup.id)
                        .scalar_subquery()
                    )
                    await session.execute(
                        update(TenantGroup)
                        .where(TenantGroup.id.in_(group_ids))
                        .values(member_count=member_count, updated_at=self._clock())
                        .execution_options(synchronize_session=False)
                    )
                await session.delete(membership)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Error removing user %s from tenant %s", user_id, tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to remove user from tenant"))

        if self._cache is not None:
            await self._cache.invalidate(user_id, tenant_id)
        logger.info("Removed user %s from tenant %s", user_id, tenant_id)
        return Outcome.success(True)


def _parse_uuid(value: str) -> UUID | None:
    try:
        return UUID(value)
    except (TypeError, ValueError):
        return None
