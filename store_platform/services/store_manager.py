"""
Store manager — owns the store lifecycle.

Create flow (synchronous part):
  validate name/engine → duplicate check → owner and global quota →
  admission slot → persist Provisioning record → spawn the provisioning
  workflow → audit + event (failures logged) → return the record

Provisioning workflow (detached, holds the admission slot until exit):
  1. Ensure namespace (ownership labels)
  2. Helm install (idempotent)
  3. Poll pod readiness until ready or the provisioning deadline
  4. Provisioning → Ready, or Provisioning → Failed with the error verbatim

Delete flow:
  reject absent (404) / already Deleting (409) → Deleting → spawn teardown →
  audit + event (failures logged)
  teardown: helm uninstall → delete namespace → Deleted,
  or Deleting → Failed with a delete-specific message

Every status write is compare-and-set against the state the writer
expects, so a workflow whose store was deleted mid-flight (or that lost a
race with the reconciler) writes nothing.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Iterable, Optional

from store_platform.config import Settings
from store_platform.exceptions import (
    ConcurrencyLimitError,
    ConflictError,
    ExternalToolError,
    NotFoundError,
    ProvisioningTimeoutError,
    QuotaExceededError,
    ValidationError,
)
from store_platform.models import (
    STORE_NAME_PATTERN,
    EngineType,
    EventType,
    PlatformMetrics,
    Store,
    StoreDetail,
    StoreStatus,
    validate_transition,
)
from store_platform.services import metrics
from store_platform.services.admission import AdmissionController, TaskRegistry
from store_platform.services.events import EventPublisher
from store_platform.services.helm_service import InstallParameters, PackageDeployer
from store_platform.services.kubernetes_service import ClusterClient, store_labels
from store_platform.services.repository import StoreRepository, utcnow

logger = logging.getLogger("store-manager")


def provision_key(store_id: str) -> str:
    return f"provision:{store_id}"


def teardown_key(store_id: str) -> str:
    return f"teardown:{store_id}"


def release_id(store: Store) -> str:
    return f"{EngineType(store.engine).release_prefix}-{store.id}"


class StoreManager:
    """Orchestrates create/delete workflows for stores."""

    def __init__(
        self,
        settings: Settings,
        repository: StoreRepository,
        cluster: ClusterClient,
        deployer: PackageDeployer,
        admission: Optional[AdmissionController] = None,
        tasks: Optional[TaskRegistry] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.settings = settings
        self.repository = repository
        self.cluster = cluster
        self.deployer = deployer
        self.admission = admission or AdmissionController(settings.MAX_CONCURRENT_PROVISIONS)
        self.tasks = tasks or TaskRegistry()
        self.publisher = publisher or EventPublisher(settings.REDIS_URL)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _event(self, store_id: str, event_type: EventType, message: str, status: str = "") -> None:
        self.repository.append_event(store_id, event_type, message)
        self.publisher.publish(store_id, event_type.value, message, status)

    def _transition(
        self,
        store_id: str,
        target: StoreStatus,
        expected: Optional[Iterable[StoreStatus]] = None,
        **fields: Any,
    ) -> Optional[Store]:
        updated = self.repository.update_status(store_id, target, expected=expected, **fields)
        if updated is None:
            logger.info(f"Store {store_id}: skipped transition to {target.value} (state moved on)")
        return updated

    def validate(self, name: str, engine: Optional[str]) -> EngineType:
        """Check name and engine; returns the engine to deploy."""
        if not name or not STORE_NAME_PATTERN.match(name):
            raise ValidationError(
                "Store name must be DNS-safe: lowercase alphanumeric and hyphens, "
                "1-63 chars, not starting or ending with a hyphen"
            )
        engine = engine or self.settings.DEFAULT_ENGINE
        try:
            engine_type = EngineType(engine)
        except ValueError:
            supported = ", ".join(e.value for e in EngineType)
            raise ValidationError(f"Invalid engine: {engine}. Supported: {supported}") from None
        if not engine_type.supported:
            raise ValidationError(f"{engine_type.value} engine is not yet implemented")
        return engine_type

    def mark_ready(
        self,
        store_id: str,
        message: str,
        store_url: Optional[str] = None,
        admin_url: Optional[str] = None,
    ) -> Optional[Store]:
        """Provisioning → Ready. No-op if the store already left Provisioning."""
        updated = self._transition(
            store_id,
            StoreStatus.READY,
            expected=[StoreStatus.PROVISIONING],
            store_url=store_url,
            admin_url=admin_url,
        )
        if updated is not None:
            self._event(store_id, EventType.SUCCESS, message, StoreStatus.READY.value)
            logger.info(f"Store {store_id} ({updated.name}) is Ready")
        return updated

    def mark_provisioning_failed(
        self, store_id: str, error_message: str, event_message: str
    ) -> Optional[Store]:
        """Provisioning → Failed. No-op if the store already left Provisioning."""
        updated = self._transition(
            store_id,
            StoreStatus.FAILED,
            expected=[StoreStatus.PROVISIONING],
            error_message=error_message,
        )
        if updated is not None:
            self._event(store_id, EventType.ERROR, event_message, StoreStatus.FAILED.value)
            metrics.record_failure()
        return updated

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_store(
        self,
        name: str,
        engine: Optional[str] = None,
        owner: str = "anonymous",
        ip_address: Optional[str] = None,
    ) -> Store:
        """Accept a create request and start provisioning in the background."""
        engine_type = self.validate(name, engine)

        if self.repository.get_by_name(name):
            raise ConflictError(f'Store with name "{name}" already exists')

        owned = self.repository.count_active(owner=owner)
        if owned >= self.settings.MAX_STORES_PER_OWNER:
            raise QuotaExceededError(
                f"Quota exceeded: owner '{owner}' already has {owned}"
                f"/{self.settings.MAX_STORES_PER_OWNER} stores"
            )
        active = self.repository.count_active()
        if active >= self.settings.MAX_STORES_GLOBAL:
            raise QuotaExceededError(
                f"Maximum total stores ({self.settings.MAX_STORES_GLOBAL}) reached"
            )

        store_id = uuid.uuid4().hex[:8]
        key = provision_key(store_id)
        if not self.admission.try_acquire(key):
            raise ConcurrencyLimitError(
                f"Too many concurrent provisions. Max: {self.settings.MAX_CONCURRENT_PROVISIONS}. "
                "Please try again shortly."
            )

        try:
            store = self.repository.create(
                store_id=store_id,
                name=name,
                engine=engine_type.value,
                namespace=self.settings.namespace_for(store_id),
                owner=owner,
            )
            self.tasks.spawn(key, self._provision_store(store))
        except Exception:
            self.admission.release(key)
            raise

        # The record and its workflow exist from here on; bookkeeping failures are logged only
        try:
            self.repository.append_audit(
                "CREATE_STORE",
                {"name": name, "engine": engine_type.value, "namespace": store.namespace},
                ip_address=ip_address,
                store_id=store_id,
            )
            self._event(
                store_id,
                EventType.INFO,
                f"Store creation initiated (engine: {engine_type.value})",
                StoreStatus.PROVISIONING.value,
            )
        except Exception as e:
            logger.error(f"Could not record creation of store {store_id}: {e}")

        metrics.record_create(engine_type.value)
        logger.info(f"Store creation started: {store_id} ({name}, engine={engine_type.value})")
        return store

    def _still_provisioning(self, store_id: str) -> bool:
        current = self.repository.get(store_id)
        return current is not None and current.status is StoreStatus.PROVISIONING

    async def _provision_store(self, store: Store) -> None:
        """Provisioning workflow. Never raises; always releases the admission slot."""
        key = provision_key(store.id)
        try:
            self._event(store.id, EventType.INFO, "Creating Kubernetes namespace")
            await self.cluster.ensure_namespace_exists(
                store.namespace, store_labels(store.id, store.name, store.engine)
            )

            if not self._still_provisioning(store.id):
                logger.info(f"Store {store.id} left Provisioning — not installing")
                return

            engine = EngineType(store.engine)
            self._event(store.id, EventType.INFO, f"Installing {engine.value} via Helm")
            urls = await self.deployer.install(
                release_id(store),
                store.namespace,
                InstallParameters(
                    store_id=store.id,
                    store_name=store.name,
                    host=self.settings.host_for(store.name),
                    admin_path=engine.admin_path,
                ),
            )

            self._event(store.id, EventType.INFO, "Waiting for pods to become ready")
            if not await self._wait_for_ready(store):
                logger.info(f"Store {store.id} left Provisioning while waiting — dropping result")
                return

            self.mark_ready(
                store.id,
                "All pods ready — store is live!",
                store_url=urls.storeUrl,
                admin_url=urls.adminUrl,
            )
        except Exception as e:
            logger.error(f"Provisioning failed for store {store.id}: {e}")
            try:
                self.mark_provisioning_failed(store.id, str(e), f"Provisioning failed: {e}")
            except Exception as record_err:
                # Left in Provisioning; the reconciler times it out later
                logger.error(f"Could not record failure for store {store.id}: {record_err}")
        finally:
            self.admission.release(key)

    async def _wait_for_ready(self, store: Store) -> bool:
        """
        Poll pod readiness until ready (True), the store leaves Provisioning
        (False), or the provisioning deadline passes (ProvisioningTimeoutError).
        """
        timeout = self.settings.PROVISION_TIMEOUT
        deadline = store.createdAt + timedelta(seconds=timeout)
        while True:
            if not self._still_provisioning(store.id):
                return False
            try:
                if await self.cluster.all_pods_ready(store.namespace):
                    logger.info(f"All pods ready in namespace {store.namespace}")
                    return True
            except ExternalToolError as e:
                logger.debug(f"Readiness check error for {store.namespace}: {e}")
            remaining = (deadline - utcnow()).total_seconds()
            if remaining <= 0:
                raise ProvisioningTimeoutError(
                    f"Provisioning timeout: pods not ready after {timeout:g}s"
                )
            await asyncio.sleep(min(self.settings.READINESS_POLL_INTERVAL, remaining))

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_store(self, store_id: str, ip_address: Optional[str] = None) -> dict:
        """Accept a delete request and tear the store down in the background."""
        store = self.repository.get(store_id)
        if store is None:
            raise NotFoundError("Store not found")
        if store.status is StoreStatus.DELETING:
            raise ConflictError("Store is already being deleted")
        validate_transition(store.status, StoreStatus.DELETING)

        updated = self._transition(store_id, StoreStatus.DELETING, expected=[store.status])
        if updated is None:
            raise ConflictError("Store changed state during the request, please retry")

        self.resume_teardown(updated)
        try:
            self._event(store_id, EventType.INFO, "Store deletion initiated", StoreStatus.DELETING.value)
            self.repository.append_audit(
                "DELETE_STORE",
                {"name": store.name, "engine": store.engine, "previousStatus": store.status.value},
                ip_address=ip_address,
                store_id=store_id,
            )
        except Exception as e:
            logger.error(f"Could not record deletion of store {store_id}: {e}")
        return {"message": "Store deletion initiated", "storeId": store_id}

    def resume_teardown(self, store: Store) -> bool:
        """Spawn teardown for a Deleting store unless one is already running."""
        key = teardown_key(store.id)
        if self.tasks.is_running(key):
            return False
        self.tasks.spawn(key, self._teardown_store(store))
        return True

    async def _teardown_store(self, store: Store) -> None:
        """Teardown workflow. Never raises."""
        try:
            await self.deployer.uninstall(release_id(store), store.namespace)
            self._event(store.id, EventType.INFO, "Helm release uninstalled")
            await self.cluster.delete_namespace(store.namespace)
            if self.repository.mark_deleted(store.id) is not None:
                self._event(
                    store.id, EventType.SUCCESS, "Store and all resources deleted",
                    StoreStatus.DELETED.value,
                )
                metrics.record_delete()
                self.publisher.forget(store.id)
                logger.info(f"Store {store.id} deleted successfully")
        except Exception as e:
            logger.error(f"Delete failed for store {store.id}: {e}")
            try:
                updated = self._transition(
                    store.id,
                    StoreStatus.FAILED,
                    expected=[StoreStatus.DELETING],
                    error_message=f"Delete failed: {e}",
                )
                if updated is not None:
                    self._event(store.id, EventType.ERROR, f"Deletion failed: {e}",
                                StoreStatus.FAILED.value)
            except Exception as record_err:
                # Left in Deleting; the reconciler resumes teardown later
                logger.error(f"Could not record delete failure for store {store.id}: {record_err}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_store_details(self, store_id: str) -> StoreDetail:
        """Store record plus a live snapshot of its pods and cluster events."""
        store = self.repository.get(store_id)
        if store is None:
            raise NotFoundError("Store not found")

        pods, k8s_events = [], []
        try:
            pods = await self.cluster.list_pods(store.namespace)
            k8s_events = await self.cluster.list_recent_events(store.namespace, 20)
        except ExternalToolError as e:
            logger.debug(f"Could not fetch K8s data for {store_id}: {e}")

        return StoreDetail(
            **store.model_dump(),
            pods=pods,
            k8sEvents=k8s_events,
            events=self.repository.list_events(store_id),
        )

    def metrics(self) -> PlatformMetrics:
        snapshot = self.repository.metrics()
        snapshot.activeProvisions = self.admission.active_count()
        return snapshot

    async def shutdown(self) -> None:
        await self.tasks.shutdown(self.settings.SHUTDOWN_GRACE)
