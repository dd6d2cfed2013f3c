"""
Store repository — durable record of store metadata, lifecycle events and
the platform audit trail.

Design principles:
  - Status writes are compare-and-set: an UPDATE only applies while the row
    is still in one of the statuses the transition table allows (optionally
    narrowed by the caller), so a late writer never clobbers a newer state
  - Deleted rows are terminal and invisible to get/get_by_name/list_active
  - Every method opens and closes its own session; callers get detached
    pydantic models, never ORM objects
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from store_platform.database import (
    AuditRecord,
    Base,
    StoreEventRecord,
    StoreRecord,
    make_engine,
    make_session_factory,
)
from store_platform.exceptions import ConflictError
from store_platform.models import (
    AuditEntry,
    EventType,
    PlatformMetrics,
    Store,
    StoreEvent,
    StoreStatus,
    sources_of,
)

logger = logging.getLogger("repository")


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo, so we never store it)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_store(record: StoreRecord) -> Store:
    return Store(
        id=record.id,
        name=record.name,
        engine=record.engine,
        status=StoreStatus(record.status),
        namespace=record.namespace,
        owner=record.owner,
        storeUrl=record.store_url,
        adminUrl=record.admin_url,
        errorMessage=record.error_message,
        createdAt=record.created_at,
        updatedAt=record.updated_at,
        readyAt=record.ready_at,
        deletedAt=record.deleted_at,
    )


def _to_event(record: StoreEventRecord) -> StoreEvent:
    return StoreEvent(
        id=record.id,
        storeId=record.store_id,
        eventType=EventType(record.event_type),
        message=record.message,
        createdAt=record.created_at,
    )


def _to_audit(record: AuditRecord) -> AuditEntry:
    return AuditEntry(
        id=record.id,
        storeId=record.store_id,
        action=record.action,
        details=record.details,
        ipAddress=record.ip_address,
        createdAt=record.created_at,
    )


class StoreRepository:
    """SQLAlchemy-backed store repository."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = make_session_factory(engine)

    @classmethod
    def from_url(cls, url: str) -> "StoreRepository":
        return cls(make_engine(url))

    def init_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("Database schema initialized")

    def ping(self) -> bool:
        with self._sessions() as db:
            db.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    def create(
        self,
        store_id: str,
        name: str,
        engine: str,
        namespace: str,
        owner: str = "anonymous",
    ) -> Store:
        """Insert a new store in Provisioning. Raises ConflictError on a live duplicate name."""
        now = utcnow()
        record = StoreRecord(
            id=store_id,
            name=name,
            engine=engine,
            status=StoreStatus.PROVISIONING.value,
            namespace=namespace,
            owner=owner,
            created_at=now,
            updated_at=now,
        )
        with self._sessions() as db:
            db.add(record)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConflictError(f'Store with name "{name}" already exists') from e
            return _to_store(record)

    def get(self, store_id: str, include_deleted: bool = False) -> Optional[Store]:
        with self._sessions() as db:
            record = db.get(StoreRecord, store_id)
            if record is None or (record.deleted_at is not None and not include_deleted):
                return None
            return _to_store(record)

    def get_by_name(self, name: str) -> Optional[Store]:
        with self._sessions() as db:
            record = db.scalars(
                select(StoreRecord).where(
                    StoreRecord.name == name, StoreRecord.deleted_at.is_(None)
                )
            ).first()
            return _to_store(record) if record else None

    def list_active(self) -> list[Store]:
        with self._sessions() as db:
            records = db.scalars(
                select(StoreRecord)
                .where(StoreRecord.deleted_at.is_(None))
                .order_by(StoreRecord.created_at.desc(), StoreRecord.id)
            ).all()
            return [_to_store(r) for r in records]

    def list_where_status(self, status: StoreStatus) -> list[Store]:
        with self._sessions() as db:
            records = db.scalars(
                select(StoreRecord)
                .where(
                    StoreRecord.status == StoreStatus(status).value,
                    StoreRecord.deleted_at.is_(None),
                )
                .order_by(StoreRecord.created_at)
            ).all()
            return [_to_store(r) for r in records]

    def count_active(self, owner: Optional[str] = None) -> int:
        """Count stores holding quota: not deleted and not Failed."""
        stmt = select(func.count()).select_from(StoreRecord).where(
            StoreRecord.deleted_at.is_(None),
            StoreRecord.status != StoreStatus.FAILED.value,
        )
        if owner is not None:
            stmt = stmt.where(StoreRecord.owner == owner)
        with self._sessions() as db:
            return db.scalar(stmt) or 0

    def update_status(
        self,
        store_id: str,
        status: StoreStatus,
        *,
        expected: Optional[Iterable[StoreStatus]] = None,
        store_url: Optional[str] = None,
        admin_url: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Store]:
        """
        Move a store to `status` if it is currently in an allowed source state.

        Allowed sources are those the transition table permits, narrowed to
        `expected` when given. Returns the updated store, or None when the
        row is missing, deleted, or no longer in an allowed state.
        """
        status = StoreStatus(status)
        allowed = set(sources_of(status))
        if expected is not None:
            allowed &= {StoreStatus(s) for s in expected}
        if not allowed:
            return None

        now = utcnow()
        values: dict[str, Any] = {
            "status": status.value,
            "updated_at": now,
            # Only a Failed store carries an error message
            "error_message": error_message if status is StoreStatus.FAILED else None,
        }
        if store_url is not None:
            values["store_url"] = store_url
        if admin_url is not None:
            values["admin_url"] = admin_url
        if status is StoreStatus.READY:
            values["ready_at"] = func.coalesce(StoreRecord.ready_at, now)
        if status is StoreStatus.DELETED:
            values["deleted_at"] = now

        stmt = (
            update(StoreRecord)
            .where(
                StoreRecord.id == store_id,
                StoreRecord.deleted_at.is_(None),
                StoreRecord.status.in_([s.value for s in allowed]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self._sessions() as db:
            result = db.execute(stmt)
            db.commit()
            if result.rowcount == 0:
                return None
        return self.get(store_id, include_deleted=True)

    def mark_deleted(self, store_id: str) -> Optional[Store]:
        return self.update_status(
            store_id, StoreStatus.DELETED, expected=[StoreStatus.DELETING]
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append_event(self, store_id: str, event_type: EventType, message: str) -> StoreEvent:
        record = StoreEventRecord(
            store_id=store_id,
            event_type=EventType(event_type).value,
            message=message,
            created_at=utcnow(),
        )
        with self._sessions() as db:
            db.add(record)
            db.commit()
            return _to_event(record)

    def list_events(self, store_id: str, limit: int = 50) -> list[StoreEvent]:
        with self._sessions() as db:
            records = db.scalars(
                select(StoreEventRecord)
                .where(StoreEventRecord.store_id == store_id)
                .order_by(StoreEventRecord.id.desc())
                .limit(limit)
            ).all()
            return [_to_event(r) for r in records]

    def list_all_events(self, limit: int = 100) -> list[StoreEvent]:
        with self._sessions() as db:
            records = db.scalars(
                select(StoreEventRecord).order_by(StoreEventRecord.id.desc()).limit(limit)
            ).all()
            return [_to_event(r) for r in records]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def append_audit(
        self,
        action: str,
        details: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        store_id: Optional[str] = None,
    ) -> AuditEntry:
        record = AuditRecord(
            store_id=store_id,
            action=action,
            details=details,
            ip_address=ip_address,
            created_at=utcnow(),
        )
        with self._sessions() as db:
            db.add(record)
            db.commit()
            return _to_audit(record)

    def list_audit(self, limit: int = 100) -> list[AuditEntry]:
        with self._sessions() as db:
            records = db.scalars(
                select(AuditRecord).order_by(AuditRecord.id.desc()).limit(limit)
            ).all()
            return [_to_audit(r) for r in records]

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def metrics(self) -> PlatformMetrics:
        with self._sessions() as db:
            by_status = {
                status: count
                for status, count in db.execute(
                    select(StoreRecord.status, func.count())
                    .where(StoreRecord.deleted_at.is_(None))
                    .group_by(StoreRecord.status)
                ).all()
            }
            total_created = db.scalar(select(func.count()).select_from(StoreRecord)) or 0
            total_deleted = db.scalar(
                select(func.count())
                .select_from(StoreRecord)
                .where(StoreRecord.deleted_at.is_not(None))
            ) or 0
            timings = db.execute(
                select(StoreRecord.created_at, StoreRecord.ready_at).where(
                    StoreRecord.ready_at.is_not(None)
                )
            ).all()

        avg_seconds = None
        if timings:
            total = sum((ready - created).total_seconds() for created, ready in timings)
            avg_seconds = round(total / len(timings))

        return PlatformMetrics(
            totalActive=sum(by_status.values()),
            totalCreated=total_created,
            totalDeleted=total_deleted,
            byStatus=by_status,
            avgProvisionTimeSeconds=avg_seconds,
        )
