"""SQLAlchemy implementation of the change store."""

import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Iterator

import structlog
from sqlalchemy import Engine, delete, func, select, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from roster_changes.errors import StorageError
from roster_changes.history.backends import ChangeStore
from roster_changes.history.models import ChangeHistoryQuery, CompressedChangeRecord
from roster_changes.history.orm import Base, ChangeRecordRow, CompressedChangeRecordRow
from roster_changes.models.changes import ChangeRecord, ensure_utc

log = structlog.stdlib.get_logger()


def _to_db(value: datetime) -> datetime:
    return ensure_utc(value).astimezone(timezone.utc).replace(tzinfo=None)


def _to_row(record: ChangeRecord) -> ChangeRecordRow:
    return ChangeRecordRow(
        id=record.id,
        integration_id=record.integration_id,
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        external_id=record.external_id,
        change_type=record.change_type,
        significance=record.significance,
        change_score=record.change_score,
        previous_hash=record.previous_hash,
        current_hash=record.current_hash,
        payload=record.model_dump(mode="json"),
        is_processed=record.is_processed,
        created_at=_to_db(record.created_at),
    )


def _from_row(row: ChangeRecordRow) -> ChangeRecord:
    return ChangeRecord.model_validate(row.payload)


class SqlChangeStore(ChangeStore):
    """Relational change store (PostgreSQL, SQLite, ...) via SQLAlchemy."""

    def __init__(self, engine: Engine, create_tables: bool = True):
        """
        Initialize the SQL change store.

        Args:
            engine: SQLAlchemy engine
            create_tables: Create the ledger tables if they do not exist

        Raises:
            StorageError: If table creation fails
        """
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        # A StaticPool hands every thread the same DBAPI connection
        self._shared_connection = isinstance(engine.pool, StaticPool)
        self._lock = threading.RLock() if self._shared_connection else nullcontext()

        if create_tables:
            with self._translate_errors("create_tables"):
                Base.metadata.create_all(engine)

        log.info(
            "sql_change_store_initialized",
            dialect=engine.dialect.name,
            shared_connection=self._shared_connection,
        )

    @property
    def supports_concurrent_writes(self) -> bool:
        return not self._shared_connection

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            with self._lock:
                yield
        except StorageError:
            raise
        except IntegrityError as e:
            log.error("change_store_integrity_error", operation=operation, error=str(e.orig))
            raise StorageError(f"{operation} failed: {e.orig}") from e
        except OperationalError as e:
            log.error("change_store_operational_error", operation=operation, error=str(e.orig))
            raise StorageError(f"{operation} failed: {e.orig}", retryable=True) from e
        except SQLAlchemyError as e:
            log.error("change_store_error", operation=operation, error=str(e))
            raise StorageError(f"{operation} failed: {e}") from e

    @staticmethod
    def _conditions(query: ChangeHistoryQuery) -> list:
        conditions = []
        if query.integration_id is not None:
            conditions.append(ChangeRecordRow.integration_id == query.integration_id)
        if query.entity_type is not None:
            conditions.append(ChangeRecordRow.entity_type == query.entity_type)
        if query.entity_id is not None:
            conditions.append(ChangeRecordRow.entity_id == query.entity_id)
        if query.change_types:
            conditions.append(ChangeRecordRow.change_type.in_(query.change_types))
        if query.significance:
            conditions.append(ChangeRecordRow.significance.in_(query.significance))
        if query.start_date is not None:
            conditions.append(ChangeRecordRow.created_at >= _to_db(query.start_date))
        if query.end_date is not None:
            conditions.append(ChangeRecordRow.created_at <= _to_db(query.end_date))
        return conditions

    def add(self, record: ChangeRecord) -> None:
        with self._translate_errors("add"):
            with self._session_factory.begin() as session:
                session.add(_to_row(record))

    def add_many(self, records: list[ChangeRecord]) -> int:
        if not records:
            return 0

        with self._translate_errors("add_many"):
            with self._session_factory.begin() as session:
                ids = [r.id for r in records]
                existing = set(
                    session.scalars(select(ChangeRecordRow.id).where(ChangeRecordRow.id.in_(ids)))
                )
                seen: set[str] = set()
                rows = []
                for record in records:
                    if record.id in existing or record.id in seen:
                        continue
                    seen.add(record.id)
                    rows.append(_to_row(record))
                session.add_all(rows)
                return len(rows)

    def find(
        self, query: ChangeHistoryQuery, offset: int, limit: int
    ) -> tuple[list[ChangeRecord], int]:
        conditions = self._conditions(query)
        with self._translate_errors("find"):
            with self._session_factory() as session:
                total = session.scalar(
                    select(func.count()).select_from(ChangeRecordRow).where(*conditions)
                )
                stmt = (
                    select(ChangeRecordRow)
                    .where(*conditions)
                    .order_by(ChangeRecordRow.created_at.desc(), ChangeRecordRow.id.desc())
                    .offset(offset)
                    .limit(limit)
                )
                rows = session.scalars(stmt).all()
                return [_from_row(row) for row in rows], int(total or 0)

    def find_all(self, query: ChangeHistoryQuery) -> list[ChangeRecord]:
        stmt = (
            select(ChangeRecordRow)
            .where(*self._conditions(query))
            .order_by(ChangeRecordRow.created_at.desc(), ChangeRecordRow.id.desc())
        )
        with self._translate_errors("find_all"):
            with self._session_factory() as session:
                return [_from_row(row) for row in session.scalars(stmt).all()]

    def find_older_than(self, cutoff: datetime) -> list[ChangeRecord]:
        stmt = (
            select(ChangeRecordRow)
            .where(ChangeRecordRow.created_at < _to_db(cutoff))
            .order_by(ChangeRecordRow.created_at.asc(), ChangeRecordRow.id.asc())
        )
        with self._translate_errors("find_older_than"):
            with self._session_factory() as session:
                return [_from_row(row) for row in session.scalars(stmt).all()]

    def delete_older_than(self, cutoff: datetime) -> int:
        stmt = delete(ChangeRecordRow).where(ChangeRecordRow.created_at < _to_db(cutoff))
        with self._translate_errors("delete_older_than"):
            with self._session_factory.begin() as session:
                result = session.execute(stmt)
                return int(result.rowcount or 0)

    def delete_ids(self, record_ids: list[str]) -> int:
        if not record_ids:
            return 0
        stmt = delete(ChangeRecordRow).where(ChangeRecordRow.id.in_(record_ids))
        with self._translate_errors("delete_ids"):
            with self._session_factory.begin() as session:
                result = session.execute(stmt)
                return int(result.rowcount or 0)

    def save_compressed(self, record: CompressedChangeRecord) -> None:
        row = CompressedChangeRecordRow(
            id=record.id,
            integration_id=record.integration_id,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            payload=record.model_dump(mode="json"),
            compressed_at=_to_db(record.compressed_at),
        )
        with self._translate_errors("save_compressed"):
            with self._session_factory.begin() as session:
                session.merge(row)

    def list_compressed(self, integration_id: str | None = None) -> list[CompressedChangeRecord]:
        stmt = select(CompressedChangeRecordRow).order_by(
            CompressedChangeRecordRow.compressed_at.asc()
        )
        if integration_id is not None:
            stmt = stmt.where(CompressedChangeRecordRow.integration_id == integration_id)
        with self._translate_errors("list_compressed"):
            with self._session_factory() as session:
                return [
                    CompressedChangeRecord.model_validate(row.payload)
                    for row in session.scalars(stmt).all()
                ]

    def optimize(self) -> None:
        statement = (
            "ANALYZE TABLE change_records" if self._engine.dialect.name == "mysql" else "ANALYZE"
        )
        with self._translate_errors("optimize"):
            with self._engine.begin() as connection:
                connection.execute(text(statement))
