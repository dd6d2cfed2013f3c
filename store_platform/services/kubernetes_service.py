"""
Kubernetes service layer — cluster client for store namespaces.

Design principles:
  - Idempotent: create treats "already exists" as success, delete treats
    "not found" as success
  - Absent is not an error: any query against a missing namespace
    returns an empty result
  - Transport failures (timeouts, unreachable or failing control plane)
    surface as ClusterUnavailableError so callers can tell "absent" from
    "cannot tell"
  - Blocking kubernetes client calls run in a worker thread
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException

from store_platform.config import Settings
from store_platform.exceptions import ClusterUnavailableError, ExternalToolError
from store_platform.models import ClusterEvent, PodStatus

logger = logging.getLogger("kubernetes_service")

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "store-platform"
MANAGED_SELECTOR = f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"

_NAMESPACE_GONE_POLL = 2.0


class _NotFound(Exception):
    """Internal marker for a 404 from the API server."""


def store_labels(store_id: str, store_name: str, engine: str) -> dict[str, str]:
    """Ownership labels stamped on every store namespace."""
    return {
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        "store-platform/store-id": store_id,
        "store-platform/store-name": store_name,
        "store-platform/engine": engine,
    }


def _event_time(event: Any) -> Optional[datetime]:
    return (
        getattr(event, "last_timestamp", None)
        or getattr(event, "event_time", None)
        or event.metadata.creation_timestamp
    )


def _event_sort_key(event: Any) -> float:
    ts = _event_time(event)
    return ts.timestamp() if ts else 0.0


class ClusterClient:
    """Read/write operations against the cluster control plane. Stateless."""

    def __init__(
        self,
        settings: Settings,
        core_api: Optional[client.CoreV1Api] = None,
        networking_api: Optional[client.NetworkingV1Api] = None,
    ):
        self.settings = settings
        self._core = core_api
        self._networking = networking_api
        self._k8s_loaded = core_api is not None

    # ------------------------------------------------------------------
    # Client plumbing
    # ------------------------------------------------------------------

    def _ensure_k8s(self):
        """Load Kubernetes config exactly once."""
        if self._k8s_loaded:
            return
        if self.settings.IN_CLUSTER:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=self.settings.KUBECONFIG or None)
        self._k8s_loaded = True

    @property
    def core(self) -> client.CoreV1Api:
        if self._core is None:
            self._ensure_k8s()
            self._core = client.CoreV1Api()
        return self._core

    @property
    def networking(self) -> client.NetworkingV1Api:
        if self._networking is None:
            self._ensure_k8s()
            self._networking = client.NetworkingV1Api()
        return self._networking

    def _invoke(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run one API call, translating failures into domain errors."""
        kwargs.setdefault("_request_timeout", self.settings.K8S_REQUEST_TIMEOUT)
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise _NotFound() from e
            if not e.status or e.status >= 500:
                raise ClusterUnavailableError(
                    f"Kubernetes API unavailable ({e.status}): {e.reason}"
                ) from e
            raise ExternalToolError(f"Kubernetes API error ({e.status}): {e.reason}") from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise ClusterUnavailableError(f"Kubernetes API unreachable: {e}") from e

    async def _call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        return await asyncio.to_thread(self._invoke, fn, *args, **kwargs)

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------

    async def ensure_namespace_exists(self, name: str, labels: dict[str, str]) -> bool:
        """Create namespace idempotently. Returns True if created, False if existed."""
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels))
        try:
            await self._call(self.core.create_namespace, body)
        except ExternalToolError as e:
            cause = e.__cause__
            if isinstance(cause, ApiException) and cause.status == 409:
                logger.info(f"Namespace {name} already exists")
                return False
            raise
        logger.info(f"Namespace {name} created")
        return True

    async def namespace_exists(self, name: str) -> bool:
        try:
            await self._call(self.core.read_namespace, name)
        except _NotFound:
            return False
        return True

    async def delete_namespace(self, name: str) -> None:
        """Delete namespace, ignore 404, wait a bounded time for it to go away."""
        try:
            await self._call(self.core.delete_namespace, name)
        except _NotFound:
            logger.info(f"Namespace {name} already gone")
            return
        logger.info(f"Namespace {name} deletion initiated")

        deadline = time.monotonic() + self.settings.NAMESPACE_DELETE_TIMEOUT
        while time.monotonic() < deadline:
            if not await self.namespace_exists(name):
                logger.info(f"Namespace {name} deleted")
                return
            await asyncio.sleep(min(_NAMESPACE_GONE_POLL, self.settings.NAMESPACE_DELETE_TIMEOUT))
        logger.warning(
            f"Namespace {name} still terminating after "
            f"{self.settings.NAMESPACE_DELETE_TIMEOUT:.0f}s — continuing"
        )

    async def list_managed_namespaces(self, label_selector: str = MANAGED_SELECTOR) -> list[str]:
        result = await self._call(self.core.list_namespace, label_selector=label_selector)
        return [ns.metadata.name for ns in result.items]

    # ------------------------------------------------------------------
    # Pods
    # ------------------------------------------------------------------

    async def list_pods(self, namespace: str) -> list[PodStatus]:
        try:
            result = await self._call(self.core.list_namespaced_pod, namespace)
        except _NotFound:
            return []
        pods = []
        for pod in result.items:
            status = pod.status
            conditions = status.conditions or []
            ready = any(c.type == "Ready" and c.status == "True" for c in conditions)
            restarts = sum(cs.restart_count or 0 for cs in (status.container_statuses or []))
            pods.append(PodStatus(
                name=pod.metadata.name,
                phase=status.phase or "Unknown",
                ready=ready,
                restartCount=restarts,
            ))
        return pods

    async def all_pods_ready(self, namespace: str) -> bool:
        """
        True iff at least one non-Succeeded pod exists and all of them are ready.
        Completed one-shot pods (setup jobs) do not vote.
        """
        pods = await self.list_pods(namespace)
        running = [p for p in pods if p.phase != "Succeeded"]
        return bool(running) and all(p.ready for p in running)

    # ------------------------------------------------------------------
    # Events & ingress
    # ------------------------------------------------------------------

    async def list_recent_events(self, namespace: str, limit: int = 50) -> list[ClusterEvent]:
        """Namespace events, newest first."""
        try:
            result = await self._call(self.core.list_namespaced_event, namespace)
        except _NotFound:
            return []
        items = sorted(result.items, key=_event_sort_key, reverse=True)
        events = []
        for event in items[:limit]:
            involved = event.involved_object
            events.append(ClusterEvent(
                type=event.type,
                reason=event.reason,
                message=event.message,
                object=f"{involved.kind}/{involved.name}" if involved else "",
                timestamp=_event_time(event),
            ))
        return events

    async def list_ingress_urls(self, namespace: str) -> list[str]:
        """URLs from ingress rule hosts; https only when TLS covers that host."""
        try:
            result = await self._call(self.networking.list_namespaced_ingress, namespace)
        except _NotFound:
            return []
        urls = []
        for ingress in result.items:
            spec = ingress.spec
            if not spec or not spec.rules:
                continue
            tls_hosts = {h for tls in (spec.tls or []) for h in (tls.hosts or [])}
            for rule in spec.rules:
                if rule.host:
                    scheme = "https" if rule.host in tls_hosts else "http"
                    urls.append(f"{scheme}://{rule.host}")
        return urls
