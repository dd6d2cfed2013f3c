"""Pytest configuration and shared fixtures."""
import asyncio
import dataclasses
from typing import Optional

import pytest

from store_platform.config import Settings
from store_platform.exceptions import ClusterUnavailableError
from store_platform.models import ClusterEvent, InstallResult, PodStatus
from store_platform.services.helm_service import InstallParameters
from store_platform.services.repository import StoreRepository
from store_platform.services.store_manager import StoreManager


class FakeCluster:
    """In-process stand-in for ClusterClient."""

    def __init__(self):
        self.namespaces: dict[str, dict[str, str]] = {}
        self.pods_ready = False
        self.ingress: dict[str, list[str]] = {}
        self.unavailable: set[str] = set()
        self.deleted: list[str] = []

    def _check(self, namespace: str) -> None:
        if namespace in self.unavailable:
            raise ClusterUnavailableError("Kubernetes API unreachable: connection refused")

    async def ensure_namespace_exists(self, name, labels):
        self._check(name)
        if name in self.namespaces:
            return False
        self.namespaces[name] = labels
        return True

    async def namespace_exists(self, name):
        self._check(name)
        return name in self.namespaces

    async def delete_namespace(self, name):
        self._check(name)
        self.namespaces.pop(name, None)
        self.deleted.append(name)

    async def list_managed_namespaces(self, label_selector=None):
        return sorted(self.namespaces)

    async def list_pods(self, namespace):
        self._check(namespace)
        if namespace not in self.namespaces:
            return []
        return [
            PodStatus(name="mysql-0", phase="Running", ready=self.pods_ready),
            PodStatus(name="wordpress-setup-x1", phase="Succeeded", ready=False),
        ]

    async def all_pods_ready(self, namespace):
        self._check(namespace)
        return namespace in self.namespaces and self.pods_ready

    async def list_recent_events(self, namespace, limit=50):
        self._check(namespace)
        if namespace not in self.namespaces:
            return []
        return [ClusterEvent(type="Normal", reason="Scheduled", message="assigned", object="Pod/mysql-0")]

    async def list_ingress_urls(self, namespace):
        self._check(namespace)
        return list(self.ingress.get(namespace, []))


class FakeDeployer:
    """In-process stand-in for PackageDeployer."""

    def __init__(self):
        self.releases: dict[tuple[str, str], InstallResult] = {}
        self.install_calls: list[str] = []
        self.uninstall_calls: list[str] = []
        self.install_error: Optional[Exception] = None
        self.uninstall_error: Optional[Exception] = None
        self.install_gate: Optional[asyncio.Event] = None
        self.uninstall_gate: Optional[asyncio.Event] = None
        self.install_started = asyncio.Event()

    async def release_exists(self, release_id, namespace):
        return (release_id, namespace) in self.releases

    async def install(self, release_id, namespace, params: InstallParameters):
        self.install_calls.append(release_id)
        self.install_started.set()
        if self.install_gate is not None:
            await self.install_gate.wait()
        if self.install_error is not None:
            raise self.install_error
        return self.releases.setdefault((release_id, namespace), params.urls)

    async def uninstall(self, release_id, namespace):
        self.uninstall_calls.append(release_id)
        if self.uninstall_gate is not None:
            await self.uninstall_gate.wait()
        if self.uninstall_error is not None:
            raise self.uninstall_error
        self.releases.pop((release_id, namespace), None)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite://",
        REDIS_URL="",
        DOMAIN_SUFFIX="store.localhost",
        STORE_NS_PREFIX="store-",
        PROVISION_TIMEOUT=5,
        READINESS_POLL_INTERVAL=0.01,
        RECONCILE_INTERVAL=0.05,
        NAMESPACE_DELETE_TIMEOUT=0.1,
        MAX_STORES_GLOBAL=5,
        MAX_STORES_PER_OWNER=5,
        MAX_CONCURRENT_PROVISIONS=3,
        SHUTDOWN_GRACE=1,
        RATE_LIMIT_ENABLED=False,
    )


@pytest.fixture
def repository():
    """Fresh in-memory database for each test."""
    repo = StoreRepository.from_url("sqlite://")
    repo.init_schema()
    yield repo
    repo.engine.dispose()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def deployer() -> FakeDeployer:
    return FakeDeployer()


@pytest.fixture
async def make_manager(settings, repository, cluster, deployer):
    """Build a StoreManager with settings overrides; drains its workflows afterwards."""
    built: list[StoreManager] = []

    def _make(**overrides) -> StoreManager:
        manager = StoreManager(
            dataclasses.replace(settings, **overrides),
            repository=repository,
            cluster=cluster,
            deployer=deployer,
        )
        built.append(manager)
        return manager

    yield _make

    for manager in built:
        await manager.tasks.shutdown(0.5)


@pytest.fixture
async def manager(make_manager) -> StoreManager:
    return make_manager()
