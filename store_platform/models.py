"""
Pydantic models for API request/response validation, plus the store
lifecycle enums and transition table.
"""
import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional, List

from pydantic import BaseModel, Field

from store_platform.exceptions import InvalidTransitionError

# Lowercase alphanumeric and hyphens, 1-63 chars, no leading/trailing hyphen
STORE_NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


class EngineType(str, Enum):
    WOOCOMMERCE = "woocommerce"
    MEDUSA = "medusa"

    @property
    def supported(self) -> bool:
        return self is EngineType.WOOCOMMERCE

    @property
    def release_prefix(self) -> str:
        return "woo" if self is EngineType.WOOCOMMERCE else "medusa"

    @property
    def admin_path(self) -> str:
        return "/wp-admin" if self is EngineType.WOOCOMMERCE else "/app"


class StoreStatus(str, Enum):
    PROVISIONING = "Provisioning"
    READY = "Ready"
    FAILED = "Failed"
    DELETING = "Deleting"
    DELETED = "Deleted"


# Every permitted status change. Deleted is terminal.
TRANSITIONS: dict[StoreStatus, frozenset[StoreStatus]] = {
    StoreStatus.PROVISIONING: frozenset(
        {StoreStatus.READY, StoreStatus.FAILED, StoreStatus.DELETING}
    ),
    StoreStatus.READY: frozenset({StoreStatus.DELETING}),
    StoreStatus.FAILED: frozenset({StoreStatus.DELETING}),
    StoreStatus.DELETING: frozenset({StoreStatus.DELETED, StoreStatus.FAILED}),
    StoreStatus.DELETED: frozenset(),
}


def can_transition(current: StoreStatus, target: StoreStatus) -> bool:
    return target in TRANSITIONS[StoreStatus(current)]


def validate_transition(current: StoreStatus, target: StoreStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is in the table."""
    if not can_transition(current, target):
        raise InvalidTransitionError(StoreStatus(current).value, StoreStatus(target).value)


def sources_of(target: StoreStatus) -> frozenset[StoreStatus]:
    """All statuses from which target may be entered."""
    return frozenset(s for s, targets in TRANSITIONS.items() if target in targets)


class EventType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


class StoreCreateRequest(BaseModel):
    """Request to create a new store.

    Name and engine are validated by the store manager so that bad input
    maps to a 400 with a readable message rather than a schema error.
    """
    name: str = Field(
        ...,
        description="Store name (lowercase alphanumeric and hyphens, 1-63 chars)",
        examples=["my-store", "demo-shop"],
    )
    engine: Optional[str] = Field(
        default=None,
        description="E-commerce engine (woocommerce; medusa is not yet implemented)",
    )


class Store(BaseModel):
    """Store record returned to the dashboard."""
    id: str
    name: str
    engine: str
    status: StoreStatus
    namespace: str
    owner: str = "anonymous"
    storeUrl: Optional[str] = None
    adminUrl: Optional[str] = None
    errorMessage: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime
    readyAt: Optional[datetime] = None
    deletedAt: Optional[datetime] = None


class StoreEvent(BaseModel):
    id: int
    storeId: str
    eventType: EventType
    message: str
    createdAt: datetime


class AuditEntry(BaseModel):
    id: int
    storeId: Optional[str] = None
    action: str
    details: Optional[dict[str, Any]] = None
    ipAddress: Optional[str] = None
    createdAt: datetime


class PodStatus(BaseModel):
    name: str
    phase: str
    ready: bool
    restartCount: int = 0


class ClusterEvent(BaseModel):
    type: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    object: str = ""
    timestamp: Optional[datetime] = None


class InstallResult(BaseModel):
    storeUrl: str
    adminUrl: str


class StoreDetail(Store):
    pods: List[PodStatus] = []
    k8sEvents: List[ClusterEvent] = []
    events: List[StoreEvent] = []


class StoreResponse(BaseModel):
    store: Store


class StoreDetailResponse(BaseModel):
    store: StoreDetail


class StoreListResponse(BaseModel):
    stores: List[Store]
    total: int


class DeleteResponse(BaseModel):
    message: str
    storeId: str


class EventListResponse(BaseModel):
    events: List[StoreEvent]


class AuditLogResponse(BaseModel):
    auditLog: List[AuditEntry]


class PlatformMetrics(BaseModel):
    totalActive: int
    totalCreated: int
    totalDeleted: int
    byStatus: dict[str, int]
    avgProvisionTimeSeconds: Optional[int] = None
    activeProvisions: int = 0


class MetricsResponse(BaseModel):
    metrics: PlatformMetrics


class ErrorResponse(BaseModel):
    error: str
