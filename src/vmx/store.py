"""State store: durable records for machines, images and volumes.

One StateStore owns one engine and serializes every unit of work through
an asyncio.Lock; blocking SQLAlchemy calls run in a worker thread so the
event loop keeps supervising subprocesses. The store is constructed
explicitly, opened (which applies pending migrations) and closed by its
owner, then handed to each manager.

Lookups accept the stable id or the record's natural key (name,
repository:tag, path, digest) interchangeably; the first match wins.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Self, TypeVar
from uuid import uuid4

from sqlalchemy import create_engine, event, or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from vmx._logging import get_logger
from vmx.exceptions import (
    ImageNotFoundError,
    NotFoundError,
    StorageError,
    VmNotFoundError,
    VolumeNotFoundError,
)
from vmx.migrations import IMMEDIATE_OPTION, migrate_to_latest
from vmx.models import Image, ImageRef, Machine, Volume, VmStatus
from vmx.schema import ImageRow, MachineRow, VolumeRow, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable

    from pydantic import BaseModel
    from sqlalchemy.engine import Engine
    from sqlalchemy.sql import ColumnElement

    from vmx.schema import Base
    from vmx.settings import Settings

logger = get_logger(__name__)

T = TypeVar("T")


def new_id() -> str:
    """Stable record identifier."""
    return uuid4().hex


def create_state_engine(url: str) -> Engine:
    """Create an engine with transactional DDL and enforced foreign keys on SQLite.

    pysqlite does not emit BEGIN before DDL on its own; the connect/begin
    hooks hand transaction control to SQLAlchemy so each migration step is
    atomic. PRAGMA foreign_keys makes volume rows cascade with their image.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url)

    kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if parsed.database in (None, "", ":memory:"):
        kwargs["poolclass"] = StaticPool  # one shared in-memory database across threads
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # noqa: ARG001
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        # IMMEDIATE takes the write lock up front (used by migration steps)
        immediate = conn.get_execution_options().get(IMMEDIATE_OPTION, False)
        conn.exec_driver_sql("BEGIN IMMEDIATE" if immediate else "BEGIN")

    return engine


class StateStore:
    """Single storage handle shared by every manager.

    Usage:
        async with StateStore.from_settings(settings) as store:
            machine = await store.machines.get("web1")
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Session] | None = None
        self._lock = asyncio.Lock()

        self.machines = MachineRepository(self)
        self.images = ImageRepository(self)
        self.volumes = VolumeRepository(self)

    @classmethod
    def from_settings(cls, settings: Settings) -> Self:
        return cls(settings.resolved_database_url)

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    async def open(self) -> None:
        """Create the engine and apply pending migrations.

        Raises:
            MigrationError: Schema could not be brought to the latest version
        """
        if self._engine is not None:
            return

        database = make_url(self.url).database
        if database and database != ":memory:":
            await asyncio.to_thread(Path(database).parent.mkdir, parents=True, exist_ok=True)

        engine = create_state_engine(self.url)
        try:
            applied = await asyncio.to_thread(migrate_to_latest, engine)
        except BaseException:
            engine.dispose()
            raise
        if applied:
            logger.info(f"State store migrated to version {applied[-1]}", extra={"applied": applied})

        self._engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    async def close(self) -> None:
        """Dispose of the engine. Safe to call twice."""
        if self._engine is None:
            return
        async with self._lock:
            engine, self._engine, self._sessions = self._engine, None, None
            await asyncio.to_thread(engine.dispose)

    async def __aenter__(self) -> Self:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def run(self, work: Callable[[Session], T]) -> T:
        """Run one unit of work in its own transaction.

        Raises:
            StorageError: Store is closed, a constraint was violated or the driver failed
        """
        async with self._lock:
            if self._sessions is None:
                raise StorageError("State store is not open")
            return await asyncio.to_thread(self._run_sync, self._sessions, work)

    @staticmethod
    def _run_sync(sessions: sessionmaker[Session], work: Callable[[Session], T]) -> T:
        try:
            with sessions.begin() as session:
                return work(session)
        except IntegrityError as e:
            raise StorageError(f"Constraint violated: {e.orig}", context={"statement": e.statement}) from e
        except SQLAlchemyError as e:
            raise StorageError(f"Storage failure: {e}") from e


class _Repository:
    """get/list/insert/update/delete over one table, returning immutable records."""

    row_type: ClassVar[type[Base]]
    record_type: ClassVar[type[BaseModel]]
    not_found: ClassVar[type[NotFoundError]]
    label: ClassVar[str]

    def __init__(self, store: StateStore) -> None:
        self._store = store

    def _key_clause(self, key: str) -> ColumnElement[bool]:
        raise NotImplementedError

    def _order(self) -> tuple[Any, ...]:
        return (self.row_type.created_at, self.row_type.id)  # type: ignore[attr-defined]

    def _to_record(self, row: Base) -> Any:
        return self.record_type.model_validate(row)

    async def get(self, key: str) -> Any | None:
        """Record matching key (id or natural key), or None."""

        def work(session: Session) -> Any | None:
            row = session.scalars(select(self.row_type).where(self._key_clause(key)).limit(1)).first()
            return self._to_record(row) if row is not None else None

        return await self._store.run(work)

    async def require(self, key: str) -> Any:
        """Like get() but raises the table's NotFoundError."""
        record = await self.get(key)
        if record is None:
            raise self.not_found(f"{self.label} '{key}' not found", context={"key": key})
        return record

    async def list(self, predicate: Callable[[Any], bool] | None = None) -> list[Any]:
        """All records in creation order, optionally filtered."""

        def work(session: Session) -> list[Any]:
            rows = session.scalars(select(self.row_type).order_by(*self._order())).all()
            return [self._to_record(row) for row in rows]

        records = await self._store.run(work)
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    async def insert(self, **values: Any) -> Any:
        """Insert a row; id defaults to a fresh identifier.

        Raises:
            StorageError: Uniqueness or foreign-key violation
        """
        values.setdefault("id", new_id())

        def work(session: Session) -> Any:
            row = self.row_type(**values)
            session.add(row)
            session.flush()
            session.refresh(row)
            return self._to_record(row)

        return await self._store.run(work)

    async def update(self, record_id: str, **fields: Any) -> Any:
        """Apply partial fields to the row with this id and return the new record."""

        def work(session: Session) -> Any:
            row = session.get(self.row_type, record_id)
            if row is None:
                raise self.not_found(f"{self.label} '{record_id}' not found", context={"id": record_id})
            for name, value in fields.items():
                setattr(row, name, value)
            session.flush()
            session.refresh(row)
            return self._to_record(row)

        return await self._store.run(work)

    async def delete(self, record_id: str) -> None:
        """Delete the row with this id."""

        def work(session: Session) -> None:
            row = session.get(self.row_type, record_id)
            if row is None:
                raise self.not_found(f"{self.label} '{record_id}' not found", context={"id": record_id})
            session.delete(row)

        await self._store.run(work)


class MachineRepository(_Repository):
    row_type = MachineRow
    record_type = Machine
    not_found = VmNotFoundError
    label = "Virtual machine"

    def _key_clause(self, key: str) -> ColumnElement[bool]:
        return or_(MachineRow.name == key, MachineRow.id == key)

    async def list_running(self) -> list[Machine]:
        return await self.list(lambda m: m.status is VmStatus.RUNNING)

    async def set_state(self, record_id: str, status: VmStatus, pid: int | None = None) -> Machine:
        """Write status and, when given, pid. A None pid keeps the last known value."""
        fields: dict[str, Any] = {"status": status.value}
        if pid is not None:
            fields["pid"] = pid
        return await self.update(record_id, **fields)


class ImageRepository(_Repository):
    row_type = ImageRow
    record_type = Image
    not_found = ImageNotFoundError
    label = "Image"

    def _key_clause(self, key: str) -> ColumnElement[bool]:
        clauses: list[ColumnElement[bool]] = [ImageRow.id == key, ImageRow.digest == key]
        try:
            ref = ImageRef.parse(key)
        except ValueError:
            pass  # not a repository[:tag]; digests and ids still match
        else:
            clauses.insert(0, (ImageRow.repository == ref.repository) & (ImageRow.tag == ref.tag))
        return or_(*clauses)

    async def get_by_path(self, path: str) -> Image | None:
        def work(session: Session) -> Image | None:
            row = session.scalars(select(ImageRow).where(ImageRow.path == path).limit(1)).first()
            return Image.model_validate(row) if row is not None else None

        return await self._store.run(work)

    async def upsert(
        self,
        *,
        repository: str,
        tag: str,
        size: int,
        path: str,
        format: str,
        digest: str | None = None,
    ) -> Image:
        """Insert or, on a (repository, tag) conflict, update size/path/format/digest in place."""

        def work(session: Session) -> Image:
            stmt = sqlite_insert(ImageRow).values(
                id=new_id(),
                repository=repository,
                tag=tag,
                size=size,
                path=path,
                format=format,
                digest=digest,
                created_at=utcnow(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[ImageRow.repository, ImageRow.tag],
                set_={
                    "size": stmt.excluded.size,
                    "path": stmt.excluded.path,
                    "format": stmt.excluded.format,
                    "digest": stmt.excluded.digest,
                },
            )
            session.execute(stmt)
            row = session.scalars(
                select(ImageRow).where(ImageRow.repository == repository, ImageRow.tag == tag)
            ).one()
            return Image.model_validate(row)

        return await self._store.run(work)


class VolumeRepository(_Repository):
    row_type = VolumeRow
    record_type = Volume
    not_found = VolumeNotFoundError
    label = "Volume"

    def _key_clause(self, key: str) -> ColumnElement[bool]:
        return or_(VolumeRow.name == key, VolumeRow.id == key, VolumeRow.path == key)

    async def list_by_image(self, image_id: str) -> list[Volume]:
        return await self.list(lambda v: v.base_image_id == image_id)
