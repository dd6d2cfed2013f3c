"""Prometheus metrics for the store platform."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

from store_platform.models import PlatformMetrics, StoreStatus

STORES_CREATED = Counter(
    "store_platform_stores_created_total",
    "Total stores created",
    ["engine"],
)
STORES_DELETED = Counter(
    "store_platform_stores_deleted_total",
    "Total stores deleted",
)
PROVISION_FAILURES = Counter(
    "store_platform_provisioning_failures_total",
    "Total provisioning failures",
)
STORES_TOTAL = Gauge(
    "store_platform_stores_total",
    "Current stores by status",
    ["phase"],
)
ACTIVE_PROVISIONS = Gauge(
    "store_platform_active_provisions",
    "Provisioning workflows holding an admission slot",
)


def record_create(engine: str) -> None:
    STORES_CREATED.labels(engine=engine).inc()


def record_delete() -> None:
    STORES_DELETED.inc()


def record_failure() -> None:
    PROVISION_FAILURES.inc()


def update_gauges(snapshot: PlatformMetrics) -> None:
    for status in StoreStatus:
        if status is StoreStatus.DELETED:
            continue
        STORES_TOTAL.labels(phase=status.value).set(snapshot.byStatus.get(status.value, 0))
    ACTIVE_PROVISIONS.set(snapshot.activeProvisions)


def exposition() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
