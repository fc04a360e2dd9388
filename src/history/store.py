from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.history.models import ReaperMetadata, ReclaimedTabRecord
from src.infra.errors import HistoryError
from src.reclaim.gateway import HistorySink, ReclaimedTab

logger = structlog.get_logger()

_LAST_SESSION_KEY = "last_session_id"
_MANUALLY_CLEARED_KEY = "was_manually_cleared"


@dataclass(frozen=True)
class HistoryEntry:
    """A stored history row: database id plus the record itself."""

    id: int
    tab: ReclaimedTab


def _to_entry(row: ReclaimedTabRecord) -> HistoryEntry:
    return HistoryEntry(
        id=row.id,
        tab=ReclaimedTab(
            tab_id=row.tab_id,
            title=row.title,
            url=row.url,
            favicon=row.favicon,
            reclaimed_at=row.reclaimed_at,
            recovery_hint=row.recovery_hint,
            reason=row.reason,  # type: ignore[arg-type]
        ),
    )


class HistoryStore(HistorySink):
    """PostgreSQL-backed reclaimed-tab history and browser-session marker."""

    def __init__(self, db_session_factory: async_sessionmaker) -> None:
        self._db = db_session_factory

    async def record(self, entry: ReclaimedTab) -> None:
        """Persist one record. Raises HistoryError on database failure."""
        try:
            async with self._db() as db_session:
                db_session.add(
                    ReclaimedTabRecord(
                        tab_id=entry.tab_id,
                        title=entry.title,
                        url=entry.url,
                        favicon=entry.favicon,
                        reason=entry.reason,
                        recovery_hint=entry.recovery_hint,
                        reclaimed_at=entry.reclaimed_at,
                    )
                )
                await db_session.commit()
        except SQLAlchemyError as e:
            raise HistoryError(f"Failed to record tab {entry.tab_id}: {e}") from e
        logger.debug("history_recorded", tab_id=entry.tab_id, reason=entry.reason)

    async def list_recent(self, limit: int = 50) -> list[HistoryEntry]:
        """Most recent records first."""
        async with self._db() as db_session:
            result = await db_session.execute(
                select(ReclaimedTabRecord)
                .order_by(ReclaimedTabRecord.reclaimed_at.desc(), ReclaimedTabRecord.id.desc())
                .limit(limit)
            )
            return [_to_entry(row) for row in result.scalars().all()]

    async def delete(self, entry_id: int) -> bool:
        """Remove one record (e.g. after it was restored). False if absent."""
        async with self._db() as db_session:
            result = await db_session.execute(
                delete(ReclaimedTabRecord).where(ReclaimedTabRecord.id == entry_id)
            )
            await db_session.commit()
            return result.rowcount > 0

    async def clear(self) -> int:
        """Delete all history and remember that the user cleared it."""
        async with self._db() as db_session:
            result = await db_session.execute(delete(ReclaimedTabRecord))
            await self._set_meta(db_session, _MANUALLY_CLEARED_KEY, "1")
            await db_session.commit()
        logger.info("history_cleared", removed=result.rowcount)
        return result.rowcount

    async def was_manually_cleared(self) -> bool:
        return await self._get_meta(_MANUALLY_CLEARED_KEY) == "1"

    async def purge_older_than(self, days: int, *, now: datetime | None = None) -> int:
        """Delete records older than the retention window. Returns rows removed."""
        cutoff = (now or datetime.now(UTC)) - timedelta(days=days)
        async with self._db() as db_session:
            result = await db_session.execute(
                delete(ReclaimedTabRecord).where(ReclaimedTabRecord.reclaimed_at < cutoff)
            )
            await db_session.commit()
        if result.rowcount:
            logger.info("history_purged", removed=result.rowcount, retention_days=days)
        return result.rowcount

    async def is_new_session(self, session_id: str) -> bool:
        """Compare with the stored browser session id, then store the new one.

        True when no session was stored yet or the id differs.
        """
        previous = await self._get_meta(_LAST_SESSION_KEY)
        if previous == session_id:
            return False
        async with self._db() as db_session:
            await self._set_meta(db_session, _LAST_SESSION_KEY, session_id)
            await db_session.commit()
        return True

    async def _get_meta(self, key: str) -> str | None:
        async with self._db() as db_session:
            result = await db_session.execute(
                select(ReaperMetadata.value).where(ReaperMetadata.key == key)
            )
            return result.scalar_one_or_none()

    @staticmethod
    async def _set_meta(db_session, key: str, value: str) -> None:
        from sqlalchemy.dialects.postgresql import insert as pg_insert

        stmt = (
            pg_insert(ReaperMetadata)
            .values(key=key, value=value)
            .on_conflict_do_update(
                index_elements=["key"],
                set_={"value": value, "updated_at": func.now()},
            )
        )
        await db_session.execute(stmt)
