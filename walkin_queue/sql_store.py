"""SQLAlchemy-backed record store.

Every call runs inside one database transaction. On SQLite the transaction
is opened with ``BEGIN IMMEDIATE`` so the write lock is taken up front and
"read max position, insert row" cannot interleave across processes; other
dialects run at ``SERIALIZABLE`` isolation with server-side lock and statement
timeouts derived from the store timeout. Inside one process calls are
additionally serialized by a lock whose acquisition is bounded by the store
timeout, as is SQLite's busy wait.
"""

from __future__ import annotations

import logging
import math
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    event,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .errors import (
    AlreadyServing,
    DuplicateActiveCustomer,
    InvalidState,
    NotFound,
    StoreTimeout,
    StoreUnavailable,
)
from .models import ACTIVE_STATUSES, EntryStatus, QueueEntry, utcnow
from .store import UPDATABLE_FIELDS, PositionPlan, RecordStore

logger = logging.getLogger(__name__)

metadata = MetaData()

queue_entries = Table(
    "queue_entries",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(32), nullable=False, unique=True),
    Column("customer_id", String(100), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("phone", String(20), nullable=False),
    Column("position", Integer, nullable=False),
    Column("status", String(16), nullable=False),
    Column("entry_time", DateTime(timezone=True), nullable=False),
    Column("estimated_service_minutes", Integer, nullable=False),
    Column("service_duration_minutes", Integer, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ix_queue_entries_status_position", "status", "position"),
)

ACTIVE_VALUES = [s.value for s in ACTIVE_STATUSES]

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_entry(row: Any) -> QueueEntry:
    m = row._mapping
    return QueueEntry(
        id=m["id"],
        customer_id=m["customer_id"],
        name=m["name"],
        phone=m["phone"],
        position=m["position"],
        status=EntryStatus(m["status"]),
        entry_time=_as_utc(m["entry_time"]),
        estimated_service_minutes=m["estimated_service_minutes"],
        service_duration_minutes=m["service_duration_minutes"],
        created_at=_as_utc(m["created_at"]),
        updated_at=_as_utc(m["updated_at"]),
        seq=m["seq"],
    )


# SQLSTATEs (PostgreSQL) and error numbers (MySQL) raised when a server-side
# lock wait or statement limit expires.
_TIMEOUT_SQLSTATES = frozenset({"55P03", "57014"})
_TIMEOUT_MYSQL_ERRNOS = frozenset({1205, 3024})


def server_timeout_args(url: str, timeout: float) -> dict[str, Any]:
    """DBAPI connect arguments that bound lock waits and statements on the server."""
    backend = make_url(url).get_backend_name()
    millis = max(int(timeout * 1000), 1)
    if backend == "postgresql":
        return {"options": f"-c lock_timeout={millis} -c statement_timeout={millis}"}
    if backend in ("mysql", "mariadb"):
        seconds = max(int(math.ceil(timeout)), 1)
        return {
            "connect_timeout": seconds,
            "init_command": f"SET SESSION innodb_lock_wait_timeout={seconds}",
        }
    return {}


def is_timeout_error(exc: OperationalError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _TIMEOUT_SQLSTATES:
        return True
    args = getattr(orig, "args", ())
    if args and args[0] in _TIMEOUT_MYSQL_ERRNOS:
        return True
    # sqlite3 only reports "database is locked" as text.
    text = str(orig).lower()
    return "locked" in text or "timeout" in text or "timed out" in text


def build_engine(url: str, *, timeout: float) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(
            url,
            isolation_level="SERIALIZABLE",
            pool_timeout=timeout,
            connect_args=server_timeout_args(url, timeout),
        )

    kwargs: dict[str, Any] = {"connect_args": {"timeout": timeout, "check_same_thread": False}}
    if url in _MEMORY_URLS:
        # One shared connection, otherwise every checkout sees an empty database.
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class SqlRecordStore(RecordStore):
    """Queue entries in a SQL table, one transaction per call."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._clock = clock
        self._lock = threading.RLock()
        self._engine = build_engine(url, timeout=timeout)
        metadata.create_all(self._engine)

    def close(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        if not self._lock.acquire(timeout=self.timeout):
            raise StoreTimeout(f"record store busy for more than {self.timeout}s")
        try:
            with self._engine.begin() as conn:
                yield conn
        except OperationalError as exc:
            if is_timeout_error(exc):
                raise StoreTimeout(f"record store timed out: {exc.orig}") from exc
            logger.error("record store operational error: %s", exc)
            raise StoreUnavailable("record store unavailable") from exc
        except SQLAlchemyError as exc:
            logger.error("record store error: %s", exc)
            raise StoreUnavailable("record store unavailable") from exc
        finally:
            self._lock.release()

    # -------------------- inserts --------------------

    def insert_entry_atomic(
        self, customer_id: str, name: str, phone: str, estimated_minutes: int
    ) -> QueueEntry:
        with self._transaction() as conn:
            self._reject_duplicate(conn, customer_id)
            position = self._max_active(conn) + 1
            return self._insert(conn, customer_id, name, phone, estimated_minutes, position)

    def max_active_position(self) -> int:
        with self._transaction() as conn:
            return self._max_active(conn)

    def insert_entry(
        self, customer_id: str, name: str, phone: str, estimated_minutes: int, position: int
    ) -> QueueEntry:
        with self._transaction() as conn:
            self._reject_duplicate(conn, customer_id)
            return self._insert(conn, customer_id, name, phone, estimated_minutes, position)

    @staticmethod
    def _max_active(conn: Connection) -> int:
        stmt = select(func.coalesce(func.max(queue_entries.c.position), 0)).where(
            queue_entries.c.status.in_(ACTIVE_VALUES)
        )
        return int(conn.execute(stmt).scalar_one())

    @staticmethod
    def _reject_duplicate(conn: Connection, customer_id: str) -> None:
        stmt = select(func.count()).where(
            queue_entries.c.customer_id == customer_id,
            queue_entries.c.status.in_(ACTIVE_VALUES),
        )
        if conn.execute(stmt).scalar_one():
            raise DuplicateActiveCustomer("customer is already in the queue")

    def _insert(
        self,
        conn: Connection,
        customer_id: str,
        name: str,
        phone: str,
        estimated_minutes: int,
        position: int,
    ) -> QueueEntry:
        now = _as_utc(self._clock())
        entry_id = uuid.uuid4().hex
        result = conn.execute(
            insert(queue_entries).values(
                id=entry_id,
                customer_id=customer_id,
                name=name,
                phone=phone,
                position=position,
                status=EntryStatus.WAITING.value,
                entry_time=now,
                estimated_service_minutes=estimated_minutes,
                created_at=now,
                updated_at=now,
            )
        )
        return QueueEntry(
            id=entry_id,
            customer_id=customer_id,
            name=name,
            phone=phone,
            position=position,
            status=EntryStatus.WAITING,
            entry_time=now,
            estimated_service_minutes=estimated_minutes,
            created_at=now,
            updated_at=now,
            seq=result.inserted_primary_key[0],
        )

    # -------------------- reads --------------------

    @staticmethod
    def _select_active(conn: Connection) -> list[QueueEntry]:
        stmt = (
            select(queue_entries)
            .where(queue_entries.c.status.in_(ACTIVE_VALUES))
            .order_by(queue_entries.c.position, queue_entries.c.entry_time, queue_entries.c.seq)
        )
        return [_to_entry(row) for row in conn.execute(stmt)]

    @staticmethod
    def _get(conn: Connection, entry_id: str) -> QueueEntry | None:
        row = conn.execute(select(queue_entries).where(queue_entries.c.id == entry_id)).first()
        return _to_entry(row) if row is not None else None

    def select_active(self) -> list[QueueEntry]:
        with self._transaction() as conn:
            return self._select_active(conn)

    def get(self, entry_id: str) -> QueueEntry | None:
        with self._transaction() as conn:
            return self._get(conn, entry_id)

    def find_active_by_customer(self, customer_id: str) -> QueueEntry | None:
        stmt = select(queue_entries).where(
            queue_entries.c.customer_id == customer_id,
            queue_entries.c.status.in_(ACTIVE_VALUES),
        )
        with self._transaction() as conn:
            row = conn.execute(stmt).first()
            return _to_entry(row) if row is not None else None

    def find_latest_by_customer(self, customer_id: str) -> QueueEntry | None:
        stmt = (
            select(queue_entries)
            .where(queue_entries.c.customer_id == customer_id)
            .order_by(queue_entries.c.seq.desc())
            .limit(1)
        )
        with self._transaction() as conn:
            row = conn.execute(stmt).first()
            return _to_entry(row) if row is not None else None

    def completed_since(self, since: datetime) -> list[QueueEntry]:
        stmt = select(queue_entries).where(
            queue_entries.c.status == EntryStatus.COMPLETED.value,
            queue_entries.c.updated_at >= _as_utc(since),
        )
        with self._transaction() as conn:
            return [_to_entry(row) for row in conn.execute(stmt)]

    # -------------------- writes --------------------

    def update_status(
        self,
        entry_id: str,
        new_status: EntryStatus,
        *,
        expected_status: EntryStatus,
        fields: dict[str, Any] | None = None,
        exclusive: bool = False,
    ) -> QueueEntry:
        extra = dict(fields or {})
        unknown = set(extra) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        with self._transaction() as conn:
            current = self._get(conn, entry_id)
            if current is None:
                raise NotFound(f"queue entry {entry_id} not found")
            if current.status is not expected_status:
                raise InvalidState(
                    f"queue entry {entry_id} is {current.status.value}, expected {expected_status.value}"
                )
            if exclusive:
                others = conn.execute(
                    select(func.count()).where(
                        queue_entries.c.status == new_status.value,
                        queue_entries.c.id != entry_id,
                    )
                ).scalar_one()
                if others:
                    raise AlreadyServing(f"another entry is already {new_status.value}")
            conn.execute(
                update(queue_entries)
                .where(
                    queue_entries.c.id == entry_id,
                    queue_entries.c.status == expected_status.value,
                )
                .values(status=new_status.value, updated_at=_as_utc(self._clock()), **extra)
            )
            updated = self._get(conn, entry_id)
            if updated is None:
                raise NotFound(f"queue entry {entry_id} disappeared during update")
            return updated

    def apply_positions(self, plan: PositionPlan) -> list[QueueEntry]:
        with self._transaction() as conn:
            changes = plan(self._select_active(conn))
            now = _as_utc(self._clock())
            for entry_id, position in changes.items():
                conn.execute(
                    update(queue_entries)
                    .where(queue_entries.c.id == entry_id, queue_entries.c.position != position)
                    .values(position=position, updated_at=now)
                )
            return self._select_active(conn)

    def delete_entry(self, entry_id: str) -> bool:
        with self._transaction() as conn:
            result = conn.execute(delete(queue_entries).where(queue_entries.c.id == entry_id))
            return bool(result.rowcount)
