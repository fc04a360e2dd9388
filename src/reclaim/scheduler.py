"""Countdown and batched reclamation of inactive tabs.

Eligibility is re-checked at every stage up to the irreversible close:
on countdown entry, when the batch queue is pre-filtered, on the final batch
subset, and once more inside close_one right before the destroy call.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

import structlog

from src.config.policy import ReaperConfig
from src.infra.errors import ReclaimError
from src.reclaim.gateway import HistorySink, ReclaimedTab, TabGateway
from src.scoring.engine import ScoreEngine

logger = structlog.get_logger()

# Backlogs of this size or more are drained LARGE_BATCH tabs at a time.
LARGE_BACKLOG = 10
LARGE_BATCH = 5
SMALL_BATCH = 2

# A closed tab whose removal event has not arrived by then is evaluated again.
REMOVAL_GRACE_MINUTES = 5.0


class TabPhase(StrEnum):
    live = "live"
    counting_down = "counting_down"
    queued = "queued"
    closing = "closing"
    closed = "closed"


@dataclass(frozen=True)
class SchedulerSnapshot:
    """Read-only view of queue state for observability."""

    countdown: dict[int, float]  # tab_id -> minutes left
    batch_queue: tuple[int, ...]
    in_flight: frozenset[int]
    last_batch_time: float | None
    processing: bool


def batch_size(queue_length: int) -> int:
    """Number of tabs to reclaim in one pass for a queue of the given length."""
    if queue_length <= 0:
        return 0
    return min(queue_length, LARGE_BATCH if queue_length >= LARGE_BACKLOG else SMALL_BATCH)


def is_excluded_url(url: str, prefixes: tuple[str, ...]) -> bool:
    url = url.lower()
    return any(url.startswith(p.lower()) for p in prefixes)


class ReclamationScheduler:
    """Moves tabs through countdown → batch queue → closing → closed.

    A tab id is in at most one of {countdown, batch queue, in-flight} at a time.
    """

    def __init__(
        self,
        engine: ScoreEngine,
        gateway: TabGateway,
        history_sink: HistorySink,
        config: ReaperConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._engine = engine
        self._gateway = gateway
        self._history = history_sink
        self._config = config
        self._clock = clock

        self._countdown: dict[int, float] = {}
        self._batch_queue: list[int] = []
        self._in_flight: set[int] = set()
        self._reclaimed: dict[int, float] = {}  # closed by us -> close time, awaiting removal
        self._last_batch_time: float | None = None
        self._processing = False

    @property
    def config(self) -> ReaperConfig:
        return self._config

    @property
    def is_processing(self) -> bool:
        return self._processing

    def update_config(self, config: ReaperConfig) -> None:
        """Replace the active config. A running batch keeps the config it started with."""
        self._config = config
        policy = config.policy
        logger.info(
            "scheduler_config_updated",
            inactive_threshold=policy.inactive_threshold,
            countdown_minutes=policy.countdown_minutes,
            batch_interval_minutes=policy.batch_interval_minutes,
        )

    def _is_eligible(self, tab_id: int, threshold: float) -> bool:
        state = self._engine.get_state(tab_id)
        if state is None or state.is_shielded:
            return False
        return self._engine.get_score(tab_id) <= threshold

    def _is_managed(self, tab_id: int) -> bool:
        return (
            tab_id in self._countdown
            or tab_id in self._batch_queue
            or tab_id in self._in_flight
        )

    def _escape(self, tab_id: int) -> None:
        if tab_id in self._countdown:
            del self._countdown[tab_id]
            logger.info(
                "countdown_cancelled",
                tab_id=tab_id,
                score=round(self._engine.get_score(tab_id), 4),
            )
        if tab_id in self._batch_queue:
            self._batch_queue.remove(tab_id)
            logger.info("batch_entry_cancelled", tab_id=tab_id)
        # close_one aborts once its in-flight marker is gone
        self._in_flight.discard(tab_id)

    def _awaiting_removal(self, tab_id: int) -> bool:
        closed_at = self._reclaimed.get(tab_id)
        if closed_at is None:
            return False
        if (self._clock() - closed_at) / 60 < REMOVAL_GRACE_MINUTES:
            return True
        del self._reclaimed[tab_id]
        logger.warning("reclaim_unconfirmed", tab_id=tab_id, grace_minutes=REMOVAL_GRACE_MINUTES)
        return False

    def check_inactivity(self, tab_id: int) -> None:
        """Start a countdown for a sub-threshold tab, or cancel one for a live tab."""
        state = self._engine.get_state(tab_id)
        if state is None or self._awaiting_removal(tab_id):
            return

        threshold = self._config.policy.inactive_threshold
        score = self._engine.get_score(tab_id)

        if state.is_shielded or score > threshold:
            self._escape(tab_id)
            return

        if not self._is_managed(tab_id):
            self._countdown[tab_id] = self._clock()
            logger.info(
                "countdown_started",
                tab_id=tab_id,
                title=state.title,
                score=round(score, 4),
                threshold=threshold,
                countdown_minutes=self._config.policy.countdown_minutes,
            )

    async def process_batch(self) -> None:
        """Promote finished countdowns and reclaim one throttled batch.

        Single-flight: a call made while another is running returns immediately.
        """
        if self._processing:
            logger.debug("batch_skipped_in_progress")
            return
        self._processing = True
        try:
            await self._process_batch(self._config)
        finally:
            self._processing = False

    async def _process_batch(self, config: ReaperConfig) -> None:
        policy = config.policy
        threshold = policy.inactive_threshold
        now = self._clock()

        for tab_id, started in list(self._countdown.items()):
            if not self._is_eligible(tab_id, threshold):
                del self._countdown[tab_id]
                logger.info("countdown_cancelled", tab_id=tab_id, stage="batch")
                continue
            if (now - started) / 60 >= policy.countdown_minutes:
                del self._countdown[tab_id]
                if tab_id not in self._batch_queue:
                    self._batch_queue.append(tab_id)
                logger.info("countdown_complete", tab_id=tab_id)

        kept: list[int] = []
        for tab_id in self._batch_queue:
            if self._is_eligible(tab_id, threshold):
                kept.append(tab_id)
            else:
                logger.info("batch_entry_dropped", tab_id=tab_id, stage="prefilter")
        self._batch_queue = kept

        if not self._batch_queue:
            return
        if self._last_batch_time is not None:
            since_last = (now - self._last_batch_time) / 60
            if since_last < policy.batch_interval_minutes:
                return

        size = batch_size(len(self._batch_queue))
        batch = self._batch_queue[:size]
        del self._batch_queue[:size]

        eligible: list[int] = []
        for tab_id in batch:
            if self._is_eligible(tab_id, threshold):
                eligible.append(tab_id)
            else:
                logger.info("batch_entry_dropped", tab_id=tab_id, stage="final")

        self._last_batch_time = now
        if not eligible:
            return

        self._in_flight.update(eligible)
        logger.info(
            "batch_processing",
            tabs=eligible,
            remaining=len(self._batch_queue),
        )

        closed = 0
        for tab_id in eligible:
            if await self._close_marked(tab_id, config):
                closed += 1
        logger.info("batch_processed", closed=closed, attempted=len(eligible))

    async def close_one(self, tab_id: int) -> bool:
        """Reclaim a single tab now. Returns True if the tab was destroyed."""
        self._countdown.pop(tab_id, None)
        if tab_id in self._batch_queue:
            self._batch_queue.remove(tab_id)
        self._in_flight.add(tab_id)
        return await self._close_marked(tab_id, self._config)

    async def _close_marked(self, tab_id: int, config: ReaperConfig) -> bool:
        threshold = config.policy.inactive_threshold
        try:
            if tab_id not in self._in_flight or not self._is_eligible(tab_id, threshold):
                logger.info(
                    "reclaim_skipped",
                    tab_id=tab_id,
                    score=round(self._engine.get_score(tab_id), 4),
                    threshold=threshold,
                )
                return False

            try:
                info = await self._gateway.lookup(tab_id)
            except Exception:
                logger.exception("reclaim_lookup_failed", tab_id=tab_id)
                return False
            if info is None:
                logger.info("reclaim_aborted", tab_id=tab_id, reason="tab_gone")
                return False
            if is_excluded_url(info.url, config.policy.excluded_url_prefixes):
                logger.info("reclaim_aborted", tab_id=tab_id, reason="excluded_url")
                return False

            # Last check: the lookup awaited, activity may have arrived meanwhile
            state = self._engine.get_state(tab_id)
            if (
                state is None
                or tab_id not in self._in_flight
                or not self._is_eligible(tab_id, threshold)
            ):
                logger.info("reclaim_aborted", tab_id=tab_id, reason="became_active")
                return False

            entry = ReclaimedTab(
                tab_id=tab_id,
                title=info.title or state.title,
                url=info.url or state.url,
                favicon=info.favicon or state.favicon,
                reclaimed_at=datetime.fromtimestamp(self._clock(), UTC),
                recovery_hint=info.recovery_hint,
            )
            # History first: once destroyed, the tab can no longer be queried
            try:
                await self._history.record(entry)
            except Exception:
                logger.exception("history_record_failed", tab_id=tab_id)

            try:
                await self._gateway.destroy(tab_id)
            except ReclaimError as exc:
                logger.warning("reclaim_failed", tab_id=tab_id, code=exc.code, error=str(exc))
                return False
            except Exception:
                logger.exception("reclaim_failed", tab_id=tab_id)
                return False

            self._reclaimed[tab_id] = self._clock()
            logger.info("tab_reclaimed", tab_id=tab_id, title=entry.title, url=entry.url)
            return True
        finally:
            self._in_flight.discard(tab_id)

    def forget(self, tab_id: int) -> bool:
        """Purge a removed tab from every queue. True if we closed it ourselves."""
        self._countdown.pop(tab_id, None)
        if tab_id in self._batch_queue:
            self._batch_queue.remove(tab_id)
        self._in_flight.discard(tab_id)
        return self._reclaimed.pop(tab_id, None) is not None

    def phase(self, tab_id: int) -> TabPhase:
        if tab_id in self._reclaimed:
            return TabPhase.closed
        if tab_id in self._in_flight:
            return TabPhase.closing
        if tab_id in self._batch_queue:
            return TabPhase.queued
        if tab_id in self._countdown:
            return TabPhase.counting_down
        return TabPhase.live

    def snapshot(self) -> SchedulerSnapshot:
        now = self._clock()
        countdown_minutes = self._config.policy.countdown_minutes
        return SchedulerSnapshot(
            countdown={
                tab_id: max(0.0, countdown_minutes - (now - started) / 60)
                for tab_id, started in self._countdown.items()
            },
            batch_queue=tuple(self._batch_queue),
            in_flight=frozenset(self._in_flight),
            last_batch_time=self._last_batch_time,
            processing=self._processing,
        )
