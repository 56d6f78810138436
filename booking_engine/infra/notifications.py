"""
Notification and integration-sync dispatch.

Booking operations publish notify/sync intents after their write has
committed. Intents are delivered on background asyncio tasks: a slow or
failing collaborator never delays or fails the booking, and delivery
errors are logged and dropped.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Union

import httpx

from booking_engine.config import get_settings
from booking_engine.core.scheduling.lifecycle import NotifyKind, SyncAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotifyIntent:
    """Ask the notification collaborator to message the client."""

    tenant_id: str
    appointment_id: str
    kind: NotifyKind


@dataclass(frozen=True)
class SyncIntent:
    """Ask the calendar integration to mirror an appointment."""

    tenant_id: str
    appointment_id: str
    action: SyncAction


Intent = Union[NotifyIntent, SyncIntent]


class Notifier(Protocol):
    async def notify(self, tenant_id: str, appointment_id: str, kind: NotifyKind) -> None:
        ...


class Syncer(Protocol):
    async def sync(self, tenant_id: str, appointment_id: str, action: SyncAction) -> None:
        ...


class _CollaboratorClient:
    """Shared httpx plumbing for collaborator services."""

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base_url = base_url
        self.timeout = timeout if timeout is not None else get_settings().dispatch_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def _post(self, path: str, tenant_id: str, payload: dict) -> None:
        client = await self._get_client()
        response = await client.post(
            path,
            json=payload,
            headers={"X-Tenant-ID": tenant_id},
        )
        response.raise_for_status()

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None


class NotificationClient(_CollaboratorClient):
    """
    HTTP client for the notification service.

    Exposes:
    - POST /api/notifications - Send confirmation/reschedule/cancellation
    """

    async def notify(self, tenant_id: str, appointment_id: str, kind: NotifyKind) -> None:
        await self._post(
            "/api/notifications",
            tenant_id,
            {"appointment_id": appointment_id, "type": kind.value},
        )


class IntegrationClient(_CollaboratorClient):
    """
    HTTP client for the calendar integration service.

    Exposes:
    - POST /api/sync - Upsert or remove the mirrored calendar event
    """

    async def sync(self, tenant_id: str, appointment_id: str, action: SyncAction) -> None:
        await self._post(
            "/api/sync",
            tenant_id,
            {"appointment_id": appointment_id, "action": action.value},
        )


class LoggingCollaborator:
    """Stand-in used when no collaborator URL is configured."""

    async def notify(self, tenant_id: str, appointment_id: str, kind: NotifyKind) -> None:
        logger.info(f"[notify] tenant={tenant_id} appointment={appointment_id} kind={kind.value}")

    async def sync(self, tenant_id: str, appointment_id: str, action: SyncAction) -> None:
        logger.info(f"[sync] tenant={tenant_id} appointment={appointment_id} action={action.value}")


class IntentDispatcher:
    """
    Fire-and-forget publisher for notify/sync intents.

    Each intent runs on its own task; references are kept until the task
    finishes so it is not garbage collected mid-flight.
    """

    def __init__(self, notifier: Notifier, syncer: Syncer):
        self._notifier = notifier
        self._syncer = syncer
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def publish(self, intent: Intent) -> asyncio.Task:
        """Schedule delivery of `intent` and return immediately."""
        task = asyncio.create_task(self._deliver(intent))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, intent: Intent) -> None:
        try:
            if isinstance(intent, NotifyIntent):
                await self._notifier.notify(intent.tenant_id, intent.appointment_id, intent.kind)
            else:
                await self._syncer.sync(intent.tenant_id, intent.appointment_id, intent.action)
            logger.debug(f"Delivered {intent}")
        except asyncio.CancelledError:
            logger.warning(f"Delivery cancelled for {intent}")
            raise
        except Exception as e:
            # Delivery is best-effort and never affects the booking outcome
            logger.error(f"Failed to deliver {intent}: {e}", exc_info=True)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding deliveries (used on shutdown and in tests)."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} undelivered intent(s)")

    async def close(self, timeout: Optional[float] = None) -> None:
        """Drain outstanding intents and close collaborator clients."""
        await self.drain(timeout=timeout)
        for collaborator in (self._notifier, self._syncer):
            if isinstance(collaborator, _CollaboratorClient):
                await collaborator.close()


def build_dispatcher() -> IntentDispatcher:
    """Create a dispatcher from settings."""
    settings = get_settings()
    fallback = LoggingCollaborator()

    notifier: Notifier = (
        NotificationClient(settings.notification_service_url)
        if settings.notification_service_url
        else fallback
    )
    syncer: Syncer = (
        IntegrationClient(settings.integration_service_url)
        if settings.integration_service_url
        else fallback
    )
    return IntentDispatcher(notifier, syncer)
