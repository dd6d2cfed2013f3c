"""
Reconciler — periodic drift correction for stores stuck mid-flight.

Each tick:
  - Provisioning stores: timed out → Failed; namespace gone → Failed;
    all pods ready → Ready. This heals stores whose workflow died with
    the process or was otherwise lost.
  - Deleting stores with no teardown running here → teardown resumed.
  - Managed namespaces with no live store → logged as orphans.

A failure on one store is logged and the tick moves on; a failing tick is
logged and the loop waits for the next one.
"""

import asyncio
import contextlib
import logging
from typing import Optional

from store_platform.models import EngineType, Store, StoreStatus
from store_platform.services.store_manager import StoreManager, provision_key
from store_platform.services.repository import utcnow

logger = logging.getLogger("reconciler")


class Reconciler:
    """Runs StoreManager drift correction on a fixed interval."""

    def __init__(self, manager: StoreManager, interval: Optional[float] = None):
        self.manager = manager
        self.interval = manager.settings.RECONCILE_INTERVAL if interval is None else interval
        self._task: Optional[asyncio.Task] = None

    @property
    def repository(self):
        return self.manager.repository

    @property
    def cluster(self):
        return self.manager.cluster

    async def reconcile_once(self) -> None:
        for store in self.repository.list_where_status(StoreStatus.PROVISIONING):
            try:
                await self.reconcile_provisioning(store)
            except Exception as e:
                logger.error(f"Reconcile error for store {store.id}: {e}")

        for store in self.repository.list_where_status(StoreStatus.DELETING):
            try:
                if self.manager.resume_teardown(store):
                    logger.warning(f"Store {store.id} stuck in Deleting — resuming teardown")
            except Exception as e:
                logger.error(f"Reconcile error for store {store.id}: {e}")

        try:
            orphans = await self.find_orphans()
            if orphans:
                logger.warning(f"Orphaned store namespaces (no live store): {', '.join(orphans)}")
        except Exception as e:
            logger.error(f"Orphan namespace scan failed: {e}")

    async def reconcile_provisioning(self, store: Store) -> Optional[StoreStatus]:
        """Re-derive one Provisioning store's state. Returns the status written, if any."""
        timeout = self.manager.settings.PROVISION_TIMEOUT
        elapsed = (utcnow() - store.createdAt).total_seconds()
        if elapsed > timeout:
            logger.warning(f"Store {store.id} provisioning timed out")
            if self.manager.mark_provisioning_failed(
                store.id, "Provisioning timed out during reconciliation", "Provisioning timed out"
            ):
                return StoreStatus.FAILED
            return None

        # A live workflow in this process owns namespace creation
        workflow_running = self.manager.tasks.is_running(provision_key(store.id))
        if not workflow_running and not await self.cluster.namespace_exists(store.namespace):
            if self.manager.mark_provisioning_failed(
                store.id, "Namespace no longer exists", "Namespace disappeared"
            ):
                return StoreStatus.FAILED
            return None

        if await self.cluster.all_pods_ready(store.namespace):
            store_url, admin_url = store.storeUrl, store.adminUrl
            if store_url is None:
                urls = await self.cluster.list_ingress_urls(store.namespace)
                # No ingress listed yet: the release serves the host it was installed with
                store_url = urls[0] if urls else f"http://{self.manager.settings.host_for(store.name)}"
                admin_url = f"{store_url}{EngineType(store.engine).admin_path}"
            logger.info(f"Reconciler: store {store.id} is now Ready")
            if self.manager.mark_ready(
                store.id,
                "Store became ready (detected by reconciler)",
                store_url=store_url,
                admin_url=admin_url,
            ):
                return StoreStatus.READY
        return None

    async def find_orphans(self) -> list[str]:
        known = {s.namespace for s in self.repository.list_active()}
        managed = await self.cluster.list_managed_namespaces()
        return sorted(ns for ns in managed if ns not in known)

    async def run(self) -> None:
        logger.info(f"Reconciliation loop started (interval: {self.interval:g}s)")
        while True:
            try:
                await self.reconcile_once()
            except Exception as e:
                logger.error(f"Reconciliation loop error: {e}")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="reconciler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Reconciliation loop stopped")
