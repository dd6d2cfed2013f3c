"""Database configuration and table definitions for the store repository."""
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


class StoreRecord(Base):
    """One provisioned store and its lifecycle timestamps.

    Invariants:
    - name is unique among rows with deleted_at IS NULL
    - ready_at and deleted_at are each written at most once
    """
    __tablename__ = "stores"

    id = Column(String(16), primary_key=True)
    name = Column(String(63), nullable=False, index=True)
    engine = Column(String(32), nullable=False, default="woocommerce")
    status = Column(String(16), nullable=False, default="Provisioning", index=True)
    namespace = Column(String(80), nullable=False)
    owner = Column(String(64), nullable=False, default="anonymous", index=True)
    store_url = Column(String(255), nullable=True)
    admin_url = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    ready_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "ux_stores_active_name",
            "name",
            unique=True,
            sqlite_where=deleted_at.is_(None),
            postgresql_where=deleted_at.is_(None),
        ),
    )


class StoreEventRecord(Base):
    """Append-only audit trail of a single store's lifecycle."""
    __tablename__ = "store_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String(16), ForeignKey("stores.id"), nullable=False, index=True)
    event_type = Column(String(16), nullable=False)  # info | success | error
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, index=True)


class AuditRecord(Base):
    """Append-only record of a mutating external request."""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String(16), nullable=True, index=True)
    action = Column(String(128), nullable=False)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)


def normalize_url(url: str) -> str:
    # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def make_engine(url: str) -> Engine:
    """Build an engine for SQLite (local/tests) or PostgreSQL (production)."""
    url = normalize_url(url)
    if url in ("sqlite://", "sqlite:///:memory:"):
        # Single shared connection so every session sees the same in-memory db
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
