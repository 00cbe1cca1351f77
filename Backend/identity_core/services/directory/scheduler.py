"""
Periodic directory sync scheduling.

One timer per tenant with an enabled directory configuration. A coarser
refresh tick reconciles the timers with the stored configurations so admin
changes apply without a restart. Runs for the same tenant never overlap: a
tick that finds the tenant's lease held is dropped.
"""

import functools
import uuid
from typing import Awaitable, Callable, Optional

import structlog

from identity_core.core.config import settings
from identity_core.core.exceptions import IdentityError, SyncAlreadyRunningError
from identity_core.core.tasks import KeyedLeases, LeaseUnavailableError, ScheduledTask, TaskScheduler
from identity_core.services.directory.sync import SyncResult


logger = structlog.get_logger(__name__)

# Returns (tenant_id, sync_interval_hours) for every enabled configuration
EnabledConfigLoader = Callable[[], Awaitable[list[tuple[uuid.UUID, int]]]]
SyncRunner = Callable[[uuid.UUID], Awaitable[SyncResult]]


class DirectorySyncScheduler:
    """Owns the per-tenant sync timers."""

    def __init__(
        self,
        load_enabled_configs: EnabledConfigLoader,
        run_sync: SyncRunner,
        task_scheduler: TaskScheduler,
        leases: Optional[KeyedLeases] = None,
        refresh_interval_seconds: Optional[int] = None,
    ):
        self._load_enabled_configs = load_enabled_configs
        self._run_sync = run_sync
        self._task_scheduler = task_scheduler
        self._leases = leases or KeyedLeases()
        self._refresh_interval = refresh_interval_seconds or settings.directory.refresh_interval_seconds
        self._timers: dict[uuid.UUID, ScheduledTask] = {}
        self._intervals: dict[uuid.UUID, int] = {}
        self._refresh_task: Optional[ScheduledTask] = None

    @property
    def scheduled_tenants(self) -> dict[uuid.UUID, int]:
        """Scheduled tenants and their interval in hours."""
        return dict(self._intervals)

    def is_scheduled(self, tenant_id: uuid.UUID) -> bool:
        return tenant_id in self._timers

    def is_syncing(self, tenant_id: uuid.UUID) -> bool:
        return self._leases.is_held(tenant_id)

    async def start(self) -> None:
        if self._refresh_task is not None:
            return
        await self.refresh()
        self._refresh_task = self._task_scheduler.call_every(
            self._refresh_interval,
            self.refresh,
            name="directory-sync-refresh",
        )
        logger.info("Directory sync scheduler started", tenants=len(self._timers))

    async def stop(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None
        for tenant_id in list(self._timers):
            self.unschedule_tenant(tenant_id)
        logger.info("Directory sync scheduler stopped")

    def schedule_tenant(self, tenant_id: uuid.UUID, interval_hours: int) -> None:
        """Arm (or re-arm) the tenant's timer. A non-positive interval leaves it unscheduled."""
        self.unschedule_tenant(tenant_id)
        if interval_hours <= 0:
            return

        self._timers[tenant_id] = self._task_scheduler.call_every(
            interval_hours * 3600,
            functools.partial(self._tick, tenant_id),
            name=f"directory-sync:{tenant_id}",
        )
        self._intervals[tenant_id] = interval_hours
        logger.info("Scheduled directory sync", company_id=str(tenant_id), interval_hours=interval_hours)

    def unschedule_tenant(self, tenant_id: uuid.UUID) -> None:
        timer = self._timers.pop(tenant_id, None)
        self._intervals.pop(tenant_id, None)
        if timer is not None:
            timer.cancel()
            logger.info("Unscheduled directory sync", company_id=str(tenant_id))

    async def refresh(self) -> None:
        """Reconcile live timers with the enabled configurations."""
        try:
            enabled = dict(await self._load_enabled_configs())
        except Exception as e:
            logger.error("Failed to load directory configurations", error=str(e))
            return

        for tenant_id in list(self._timers):
            if tenant_id not in enabled:
                self.unschedule_tenant(tenant_id)

        for tenant_id, interval_hours in enabled.items():
            if interval_hours <= 0:
                self.unschedule_tenant(tenant_id)
            elif self._intervals.get(tenant_id) != interval_hours:
                self.schedule_tenant(tenant_id, interval_hours)

    async def _tick(self, tenant_id: uuid.UUID) -> None:
        try:
            with self._leases.hold(tenant_id):
                await self._run_sync(tenant_id)
        except LeaseUnavailableError:
            logger.info("Skipping directory sync, previous run still in progress", company_id=str(tenant_id))
        except IdentityError as e:
            logger.error("Scheduled directory sync failed", company_id=str(tenant_id), error=e.message)

    async def run_now(self, tenant_id: uuid.UUID) -> SyncResult:
        """
        Run a sync immediately under the tenant's lease.

        Raises:
            SyncAlreadyRunningError: A run for this tenant is in flight
        """
        try:
            with self._leases.hold(tenant_id):
                return await self._run_sync(tenant_id)
        except LeaseUnavailableError:
            raise SyncAlreadyRunningError()
