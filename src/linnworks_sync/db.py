"""SQLAlchemy models for the local order store.

Orders and their line items are the synced data. Failed-sync records, the
shared rate-limit window and the session-token row are pipeline state that
has to survive restarts and be visible to every worker process.

Datetimes are stored naive in UTC.
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
    sessionmaker,
)


def utc_naive(dt: datetime | None = None) -> datetime:
    """Current (or given) time as naive UTC for storage."""
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


class SyncStatus(str, Enum):
    """Outcome of the last sync pass that touched an order."""

    synced = "synced"
    processed_check = "processed_check"


class FailedSyncStatus(str, Enum):
    """Lifecycle: pending -> resolved | exhausted"""

    pending = "pending"
    resolved = "resolved"
    exhausted = "exhausted"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Order(Base):
    """Canonical local order.

    Identified by vendor_order_id or order_number; lookups fall back from
    the first to the second. Never deleted by the sync pipeline.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vendor_order_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    order_number: Mapped[Optional[int]] = mapped_column(Integer, unique=True, nullable=True)
    channel_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    channel: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sub_source: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="GBP")
    total_charge: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    sync_status: Mapped[str] = mapped_column(String(32), nullable=False, default=SyncStatus.synced.value)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    __table_args__ = (
        Index("idx_orders_received_at", "received_at"),
        Index("idx_orders_is_open", "is_open"),
        Index("idx_orders_channel", "channel"),
    )

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, vendor_order_id={self.vendor_order_id!r}, number={self.order_number})>"


class OrderItem(Base):
    """Line item, owned by its Order and replaced as a set on reimport."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    sku: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unit_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    price_per_unit: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    line_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (Index("idx_order_items_order_id", "order_id"),)


class FailedSyncRecord(Base):
    """An order whose import threw, kept with its raw payload for retry."""

    __tablename__ = "failed_sync_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    raw_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # OrderSource value of the feed the payload was fetched from
    source: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_retry_eligible_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=FailedSyncStatus.pending.value
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)

    __table_args__ = (Index("idx_failed_sync_status_next", "status", "next_retry_eligible_at"),)


class RateLimitWindow(Base):
    """Shared request counter for one fixed wall-clock window."""

    __tablename__ = "rate_limit_windows"

    window_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_expires_at: Mapped[float] = mapped_column(Float, nullable=False)


class SessionTokenRow(Base):
    """Shared session token for one account."""

    __tablename__ = "session_tokens"

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    token: Mapped[str] = mapped_column(String(255), nullable=False)
    server_host: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# Seconds a SQLite connection waits for the write lock before failing
SQLITE_BUSY_TIMEOUT = 30.0


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite issues its own BEGIN lazily, which breaks SAVEPOINT; take over.
    # IMMEDIATE takes the write lock up front so concurrent writers wait on
    # the busy timeout instead of deadlocking on a lock upgrade.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_store(database_url: str, echo: bool = False) -> sessionmaker:
    """
    Open (and create if needed) the order store.

    Returns a session factory. `~` in a SQLite path is expanded and the
    parent directory created.
    """
    connect_args: dict[str, Any] = {}
    is_sqlite = database_url.startswith("sqlite")

    if is_sqlite:
        prefix = "sqlite:///"
        if database_url.startswith(prefix) and database_url != "sqlite:///:memory:":
            path = Path(database_url[len(prefix):]).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            database_url = f"{prefix}{path}"
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT

    engine = create_engine(database_url, echo=echo, connect_args=connect_args)
    if is_sqlite:
        _enable_sqlite_savepoints(engine)

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
