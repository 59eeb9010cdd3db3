from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import datetime

import requests
from fastapi import FastAPI
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.agents.health import AgentHealth
from control_plane.core.config import Settings, settings
from control_plane.core.db import StoreClient
from control_plane.models.base import utcnow
from control_plane.models.entitlement import TenantAppEntitlement
from control_plane.models.group import GroupAppPermission
from control_plane.models.membership import ADMIN_ROLES, DirectAppPermission, TenantMembership
from control_plane.models.notification import PermissionNotification
from control_plane.models.user import User

logger = logging.getLogger(__name__)

SUPERSEDED = "superseded"


class NotificationDispatcher:
    def __init__(self, webhook_url: str, *, timeout: float = 10) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout

    async def dispatch(self, payload: dict[str, object]) -> None:
        if not self.webhook_url:
            raise ValueError("Notification webhook is not configured")

        def _post() -> None:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()

        await asyncio.to_thread(_post)


class NotificationAgent:
    """Delivers queued permission-expiration warnings.

    The core only queues rows with blank ``recipient_email`` and ``app_name``;
    this agent fills them in, drops warnings whose grant has since changed
    expiry or disappeared, and posts the rest to the notification webhook.
    """

    def __init__(
        self,
        store: StoreClient,
        config: Settings,
        *,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.health = AgentHealth(name="notification-agent", ready=True)
        self._store = store
        self._config = config
        self._dispatcher = dispatcher or NotificationDispatcher(config.notification_webhook_url)
        self._clock = clock
        self._stop_event = asyncio.Event()

    async def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        retry_delay = 1
        while not self._stop_event.is_set():
            self.health.mark_run()
            try:
                await self.process_due()
                self.health.mark_success()
                delay = self._config.notification_scan_interval_seconds
                retry_delay = 1
            except Exception as exc:  # pragma: no cover - operational path
                self.health.mark_error(exc)
                logger.exception("Notification scan failed")
                delay = retry_delay
                retry_delay = min(retry_delay * 2, 120)

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)

    async def process_due(self) -> int:
        """Handle one batch of due pending warnings and return how many were sent."""
        now = self._clock()
        sent = 0
        async with self._store.session() as session:
            due = await session.scalars(
                select(PermissionNotification)
                .where(
                    PermissionNotification.status == "pending",
                    PermissionNotification.scheduled_for <= now,
                )
                .order_by(PermissionNotification.scheduled_for)
                .limit(self._config.notification_batch_size)
                .with_for_update(skip_locked=True)
            )
            for notification in list(due):
                if await self._deliver(session, notification, now):
                    sent += 1
            await session.commit()
        return sent

    async def _deliver(self, session: AsyncSession, notification: PermissionNotification, now: datetime) -> bool:
        current_expiry = await self._current_expiry(session, notification)
        if current_expiry is None or current_expiry != notification.expires_at:
            notification.status = "failed"
            notification.error = SUPERSEDED
            self.health.increment("superseded")
            return False

        emails = await self._recipient_emails(session, notification)
        if not emails:
            self._record_attempt(notification, "No recipient email could be resolved")
            return False

        notification.recipient_email = ",".join(emails)
        notification.app_name = await self._app_name(session, notification)
        payload: dict[str, object] = {
            "event_type": notification.type,
            "tenant_id": str(notification.tenant_id),
            "recipients": emails,
            "app_id": notification.app_id,
            "app_name": notification.app_name,
            "permission_source": notification.permission_source,
            "expires_at": notification.expires_at.isoformat(),
            "days_until_expiration": notification.days_until_expiration,
            "message": (
                f"Your access to {notification.app_name} expires in "
                f"{notification.days_until_expiration} day(s)"
            ),
        }
        try:
            await self._dispatcher.dispatch(payload)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Delivery of notification %s failed: %s", notification.id, exc)
            self._record_attempt(notification, str(exc))
            return False

        notification.attempts += 1
        notification.status = "sent"
        notification.sent_at = now
        notification.error = None
        self.health.increment("sent")
        return True

    def _record_attempt(self, notification: PermissionNotification, error: str) -> None:
        notification.attempts += 1
        notification.error = error
        if notification.attempts >= self._config.notification_max_attempts:
            notification.status = "failed"
            self.health.increment("failed")

    async def _current_expiry(self, session: AsyncSession, notification: PermissionNotification) -> datetime | None:
        if notification.permission_source == "direct":
            statement = select(DirectAppPermission.expires_at).where(
                DirectAppPermission.membership_id == notification.source_id,
                DirectAppPermission.app_id == notification.app_id,
            )
        else:
            statement = select(GroupAppPermission.expires_at).where(
                GroupAppPermission.group_id == notification.source_id,
                GroupAppPermission.app_id == notification.app_id,
            )
        return await session.scalar(statement)

    async def _recipient_emails(self, session: AsyncSession, notification: PermissionNotification) -> list[str]:
        if notification.permission_source == "direct":
            email = await session.scalar(select(User.email).where(User.id == notification.recipient_id))
            return [email] if email else []

        # Group warnings go to the people who can renew the grant.
        emails = await session.scalars(
            select(User.email)
            .join(TenantMembership, TenantMembership.user_id == User.id)
            .where(
                TenantMembership.tenant_id == notification.tenant_id,
                TenantMembership.role.in_(ADMIN_ROLES),
                TenantMembership.status == "active",
            )
            .order_by(User.email)
        )
        return list(emails)

    async def _app_name(self, session: AsyncSession, notification: PermissionNotification) -> str:
        name = await session.scalar(
            select(TenantAppEntitlement.app_name).where(
                TenantAppEntitlement.tenant_id == notification.tenant_id,
                TenantAppEntitlement.app_id == notification.app_id,
            )
        )
        return name or notification.app_id


app = FastAPI(title="Control Plane Notification Agent")


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=settings.log_level)
    store = StoreClient(settings)
    agent = NotificationAgent(store, settings)
    app.state.store = store
    app.state.agent = agent
    app.state.task = asyncio.create_task(agent.run())


@app.on_event("shutdown")
async def shutdown_event() -> None:
    agent: NotificationAgent = app.state.agent
    await agent.stop()
    task: asyncio.Task[None] = app.state.task
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    await app.state.store.dispose()


@app.get("/health", tags=["system"])
async def health() -> dict[str, object]:
    return app.state.agent.health.payload()


@app.get("/ready", tags=["system"])
async def ready() -> dict[str, bool]:
    return {"ready": app.state.agent.health.ready and await app.state.store.ping()}
