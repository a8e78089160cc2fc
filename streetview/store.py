"""SQLite persistence for the durable processing table and search records."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator

from sqlalchemy import delete, update
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from streetview.schemas import JobStatus
from streetview.settings import get_settings


class ProcessingRecord(SQLModel, table=True):
    """Best-effort mirror of in-flight and failed capture jobs."""

    __tablename__ = "streetview_processing"

    target_id: str = Field(primary_key=True)
    address: str
    original_address: str | None = None
    started_at: datetime
    status: str = Field(default=JobStatus.PROCESSING.value, index=True)
    completed_at: datetime | None = None
    error: str | None = None


class SearchRecord(SQLModel, table=True):
    """Denormalized search history rows that carry the cached image key."""

    __tablename__ = "search_history"

    id: int | None = Field(default=None, primary_key=True)
    target_id: str = Field(index=True)
    query: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    street_view_image: str | None = None


@dataclass(frozen=True)
class StorageConfig:
    """Resolved database location."""

    db_path: Path

    @classmethod
    def from_env(cls) -> StorageConfig:
        return cls(db_path=get_settings().storage.db_path)


class Store:
    """Facade around the SQLite tables used for status visibility."""

    def __init__(self, config: StorageConfig | None = None) -> None:
        self.config = config or StorageConfig.from_env()
        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = _create_engine(self.config.db_path)
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    def upsert_processing(
        self,
        *,
        target_id: str,
        address: str,
        original_address: str | None,
        started_at: datetime,
    ) -> None:
        """Insert or reset the processing row for ``target_id``."""

        with self.session() as session:
            record = session.get(ProcessingRecord, target_id)
            if record is None:
                record = ProcessingRecord(target_id=target_id, address=address, started_at=started_at)
            record.address = address
            record.original_address = original_address
            record.started_at = started_at
            record.status = JobStatus.PROCESSING.value
            record.completed_at = None
            record.error = None
            session.add(record)
            session.commit()

    def mark_failed(self, *, target_id: str, error: str, completed_at: datetime) -> None:
        with self.session() as session:
            session.exec(
                update(ProcessingRecord)
                .where(col(ProcessingRecord.target_id) == target_id)
                .values(status=JobStatus.FAILED.value, completed_at=completed_at, error=error)
            )
            session.commit()

    def delete_processing(self, target_id: str) -> bool:
        with self.session() as session:
            result = session.exec(
                delete(ProcessingRecord).where(col(ProcessingRecord.target_id) == target_id)
            )
            session.commit()
            return bool(result.rowcount)

    def fetch_processing(self, target_id: str) -> ProcessingRecord | None:
        with self.session() as session:
            return session.get(ProcessingRecord, target_id)

    def list_processing(self, status: str | Enum | None = JobStatus.PROCESSING) -> list[ProcessingRecord]:
        statement = select(ProcessingRecord)
        if status is not None:
            statement = statement.where(ProcessingRecord.status == _coerce_state(status))
        with self.session() as session:
            return list(session.exec(statement.order_by(col(ProcessingRecord.started_at))).all())

    def add_search(self, *, target_id: str, query: str) -> SearchRecord:
        record = SearchRecord(target_id=target_id, query=query)
        with self.session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def propagate_result(self, *, target_id: str, result_key: str) -> int:
        """Point every search record for ``target_id`` at ``result_key``."""

        with self.session() as session:
            result = session.exec(
                update(SearchRecord)
                .where(col(SearchRecord.target_id) == target_id)
                .values(street_view_image=result_key)
            )
            session.commit()
            return int(result.rowcount or 0)

    def find_result_key(self, target_id: str) -> str | None:
        statement = (
            select(SearchRecord)
            .where(SearchRecord.target_id == target_id)
            .where(col(SearchRecord.street_view_image).is_not(None))
            .order_by(col(SearchRecord.created_at).desc())
        )
        with self.session() as session:
            record = session.exec(statement).first()
            return record.street_view_image if record else None

    def recent_with_images(self, limit: int = 10) -> list[SearchRecord]:
        statement = (
            select(SearchRecord)
            .where(col(SearchRecord.street_view_image).is_not(None))
            .order_by(col(SearchRecord.created_at).desc())
            .limit(limit)
        )
        with self.session() as session:
            return list(session.exec(statement).all())


def build_store(config: StorageConfig | None = None) -> Store:
    return Store(config=config)


def _create_engine(db_path: Path):
    return create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )


def _coerce_state(value: str | Enum) -> str:
    if isinstance(value, Enum):
        return value.value
    return str(value)


__all__ = [
    "ProcessingRecord",
    "SearchRecord",
    "StorageConfig",
    "Store",
    "build_store",
]
