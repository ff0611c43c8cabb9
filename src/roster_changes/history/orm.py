"""SQLAlchemy tables backing the SQL change store."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ChangeRecordRow(Base):
    """One persisted change record. Timestamps are stored as naive UTC."""

    __tablename__ = "change_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    integration_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    change_type: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    significance: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    change_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    current_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)

    __table_args__ = (
        Index("ix_change_records_integration_created", "integration_id", "created_at"),
    )


class CompressedChangeRecordRow(Base):
    """Summary row replacing a group of aged change records."""

    __tablename__ = "compressed_change_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    integration_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    compressed_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
