"""Tests for ClusterClient against an in-memory CoreV1Api/NetworkingV1Api."""
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import urllib3
from kubernetes.client import ApiException

from store_platform.exceptions import ClusterUnavailableError, ExternalToolError
from store_platform.services.kubernetes_service import (
    MANAGED_SELECTOR,
    ClusterClient,
    store_labels,
)


def _meta(name, created=None):
    return SimpleNamespace(name=name, creation_timestamp=created)


def _pod(name, phase, ready, restarts=0):
    return SimpleNamespace(
        metadata=_meta(name),
        status=SimpleNamespace(
            phase=phase,
            conditions=[SimpleNamespace(type="Ready", status="True" if ready else "False")],
            container_statuses=[SimpleNamespace(restart_count=restarts)],
        ),
    )


def _event(reason, ts):
    return SimpleNamespace(
        type="Normal",
        reason=reason,
        message=f"{reason} happened",
        involved_object=SimpleNamespace(kind="Pod", name="mysql-0"),
        last_timestamp=ts,
        event_time=None,
        metadata=_meta(reason),
    )


class FakeCoreApi:
    """Namespaces, pods and events kept in dicts; errors injected per call."""

    def __init__(self):
        self.namespaces = {}
        self.pods = {}
        self.events = {}
        self.errors = {}
        self.terminating = False
        self.timeouts = []

    def _maybe_fail(self, op, kwargs):
        self.timeouts.append(kwargs.get("_request_timeout"))
        if op in self.errors:
            raise self.errors[op]

    def create_namespace(self, body, **kwargs):
        self._maybe_fail("create_namespace", kwargs)
        name = body.metadata.name
        if name in self.namespaces:
            raise ApiException(status=409, reason="Conflict")
        self.namespaces[name] = body.metadata.labels

    def read_namespace(self, name, **kwargs):
        self._maybe_fail("read_namespace", kwargs)
        if name not in self.namespaces:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(metadata=_meta(name))

    def delete_namespace(self, name, **kwargs):
        self._maybe_fail("delete_namespace", kwargs)
        if name not in self.namespaces:
            raise ApiException(status=404, reason="Not Found")
        if not self.terminating:
            del self.namespaces[name]

    def list_namespace(self, label_selector=None, **kwargs):
        self._maybe_fail("list_namespace", kwargs)
        return SimpleNamespace(items=[SimpleNamespace(metadata=_meta(n)) for n in self.namespaces])

    def list_namespaced_pod(self, namespace, **kwargs):
        self._maybe_fail("list_namespaced_pod", kwargs)
        if namespace not in self.namespaces:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(items=self.pods.get(namespace, []))

    def list_namespaced_event(self, namespace, **kwargs):
        self._maybe_fail("list_namespaced_event", kwargs)
        return SimpleNamespace(items=self.events.get(namespace, []))


class FakeNetworkingApi:

    def __init__(self):
        self.ingresses = {}

    def list_namespaced_ingress(self, namespace, **kwargs):
        return SimpleNamespace(items=self.ingresses.get(namespace, []))


@pytest.fixture
def core():
    return FakeCoreApi()


@pytest.fixture
def networking():
    return FakeNetworkingApi()


@pytest.fixture
def client(settings, core, networking):
    return ClusterClient(settings, core_api=core, networking_api=networking)


class TestNamespaces:

    async def test_ensure_is_idempotent(self, client, core):
        labels = store_labels("abc", "acme", "woocommerce")
        assert await client.ensure_namespace_exists("store-abc", labels) is True
        assert await client.ensure_namespace_exists("store-abc", labels) is False
        assert core.namespaces["store-abc"]["app.kubernetes.io/managed-by"] == "store-platform"

    async def test_request_timeout_passed(self, client, core, settings):
        await client.namespace_exists("store-abc")
        assert core.timeouts == [settings.K8S_REQUEST_TIMEOUT]

    async def test_exists(self, client, core):
        assert not await client.namespace_exists("store-abc")
        core.namespaces["store-abc"] = {}
        assert await client.namespace_exists("store-abc")

    async def test_delete_missing_is_ok(self, client):
        await client.delete_namespace("store-gone")

    async def test_delete_waits_until_gone(self, client, core):
        core.namespaces["store-abc"] = {}
        await client.delete_namespace("store-abc")
        assert "store-abc" not in core.namespaces

    async def test_delete_gives_up_after_timeout(self, client, core, caplog):
        core.namespaces["store-abc"] = {}
        core.terminating = True
        await client.delete_namespace("store-abc")
        assert "still terminating" in caplog.text

    async def test_list_managed(self, client, core):
        core.namespaces = {"store-a": {}, "store-b": {}}
        assert await client.list_managed_namespaces() == ["store-a", "store-b"]
        assert MANAGED_SELECTOR == "app.kubernetes.io/managed-by=store-platform"


class TestErrors:

    async def test_server_error_is_unavailable(self, client, core):
        core.errors["read_namespace"] = ApiException(status=503, reason="Service Unavailable")
        with pytest.raises(ClusterUnavailableError):
            await client.namespace_exists("store-abc")

    async def test_transport_error_is_unavailable(self, client, core):
        core.errors["list_namespaced_pod"] = urllib3.exceptions.ProtocolError("Connection aborted")
        with pytest.raises(ClusterUnavailableError, match="unreachable"):
            await client.list_pods("store-abc")

    async def test_client_error_is_external_tool_error(self, client, core):
        core.errors["create_namespace"] = ApiException(status=403, reason="Forbidden")
        with pytest.raises(ExternalToolError, match="403") as exc:
            await client.ensure_namespace_exists("store-abc", {})
        assert not isinstance(exc.value, ClusterUnavailableError)

    async def test_unavailable_is_not_absent(self, client, core):
        """A failing control plane must not read as a missing namespace."""
        core.namespaces["store-abc"] = {}
        core.errors["read_namespace"] = ApiException(status=500, reason="Internal Server Error")
        with pytest.raises(ClusterUnavailableError):
            await client.namespace_exists("store-abc")


class TestPods:

    async def test_missing_namespace_has_no_pods(self, client):
        assert await client.list_pods("store-none") == []
        assert not await client.all_pods_ready("store-none")

    async def test_pod_status(self, client, core):
        core.namespaces["ns"] = {}
        core.pods["ns"] = [_pod("mysql-0", "Running", True, restarts=2)]
        pods = await client.list_pods("ns")
        assert pods[0].name == "mysql-0"
        assert pods[0].ready
        assert pods[0].restartCount == 2

    async def test_completed_pods_do_not_vote(self, client, core):
        core.namespaces["ns"] = {}
        core.pods["ns"] = [
            _pod("wordpress-0", "Running", True),
            _pod("setup-x1", "Succeeded", False),
        ]
        assert await client.all_pods_ready("ns")

    async def test_one_unready_pod(self, client, core):
        core.namespaces["ns"] = {}
        core.pods["ns"] = [_pod("wordpress-0", "Running", True), _pod("mysql-0", "Pending", False)]
        assert not await client.all_pods_ready("ns")

    async def test_only_completed_pods_is_not_ready(self, client, core):
        core.namespaces["ns"] = {}
        core.pods["ns"] = [_pod("setup-x1", "Succeeded", False)]
        assert not await client.all_pods_ready("ns")


class TestEventsAndIngress:

    async def test_events_newest_first_with_limit(self, client, core):
        t = lambda minute: datetime(2024, 1, 1, 12, minute, tzinfo=timezone.utc)  # noqa: E731
        core.events["ns"] = [_event("Pulled", t(1)), _event("Started", t(3)), _event("Scheduled", t(0))]
        events = await client.list_recent_events("ns", limit=2)
        assert [e.reason for e in events] == ["Started", "Pulled"]
        assert events[0].object == "Pod/mysql-0"

    async def test_ingress_scheme_follows_tls(self, client, networking):
        networking.ingresses["ns"] = [
            SimpleNamespace(spec=SimpleNamespace(
                rules=[SimpleNamespace(host="secure.example.com"), SimpleNamespace(host="plain.example.com")],
                tls=[SimpleNamespace(hosts=["secure.example.com"])],
            )),
            SimpleNamespace(spec=SimpleNamespace(rules=None, tls=None)),
        ]
        assert await client.list_ingress_urls("ns") == [
            "https://secure.example.com",
            "http://plain.example.com",
        ]
