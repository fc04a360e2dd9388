"""SQLAlchemy 2.0 async models for reclaimed-tab history."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.constants import DB_SCHEMA


class Base(DeclarativeBase):
    pass


class ReclaimedTabRecord(Base):
    """One closed tab, kept for restoration from the history list."""

    __tablename__ = "reclaimed_tabs"
    __table_args__ = (
        Index("idx_reclaimed_tabs_reclaimed_at", "reclaimed_at"),
        {"schema": DB_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tab_id: Mapped[int] = mapped_column(Integer, index=True)
    title: Mapped[str] = mapped_column(Text, default="")
    url: Mapped[str] = mapped_column(Text, default="")
    favicon: Mapped[str] = mapped_column(Text, default="")
    reason: Mapped[str] = mapped_column(String(16), default="reclaimed")  # reclaimed|user_closed
    recovery_hint: Mapped[str | None] = mapped_column(String(128), nullable=True, default=None)
    reclaimed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class ReaperMetadata(Base):
    """Key/value metadata (last browser session id, manual-clear marker)."""

    __tablename__ = "reaper_metadata"
    __table_args__ = {"schema": DB_SCHEMA}

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
