"""Runtime driver: one event queue, one consumer, a periodic tick.

All tab-state mutations (activity events, config swaps, score ticks) are
applied by the single consumer task, so the engine and scheduler never see
a half-applied change. Batch reclamation runs as a separate task so a slow
browser never delays the next tick; the scheduler itself is single-flight.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from src.reclaim.gateway import HistorySink, ReclaimedTab, TabGateway
from src.reclaim.scheduler import ReclamationScheduler
from src.runtime.events import (
    ConfigUpdated,
    FormDirtyChanged,
    MediaChanged,
    PinnedChanged,
    ReaperEvent,
    SessionStarted,
    TabActivated,
    TabCreated,
    TabRemoved,
    TabUpdated,
    Tick,
    TransferEnded,
    TransferStarted,
)
from src.scoring.engine import ScoreEngine
from src.tabs.domains import domain_from_url
from src.tabs.models import TabState, TabStateUpdate

logger = structlog.get_logger()


class TabReaper:
    """Owns the visible-tab set and feeds events and ticks to engine and scheduler."""

    def __init__(
        self,
        *,
        engine: ScoreEngine,
        scheduler: ReclamationScheduler,
        gateway: TabGateway,
        history_sink: HistorySink,
        tick_interval_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._engine = engine
        self._scheduler = scheduler
        self._gateway = gateway
        self._history = history_sink
        self._tick_interval_s = tick_interval_s
        self._clock = clock

        self._visible: set[int] = set()
        self._transfers: dict[int, int] = {}  # tab_id -> active transfer count
        self._queue: asyncio.Queue[ReaperEvent] = asyncio.Queue()
        self._last_tick = clock()

        self._consumer_task: asyncio.Task | None = None
        self._ticker_task: asyncio.Task | None = None
        self._batch_task: asyncio.Task | None = None

    @property
    def engine(self) -> ScoreEngine:
        return self._engine

    @property
    def scheduler(self) -> ReclamationScheduler:
        return self._scheduler

    @property
    def visible_tabs(self) -> frozenset[int]:
        return frozenset(self._visible)

    @property
    def running(self) -> bool:
        return self._consumer_task is not None and not self._consumer_task.done()

    # -- lifecycle ---------------------------------------------------------

    async def start(self, *, bootstrap: bool = True) -> None:
        if self.running:
            return
        if bootstrap:
            await self.bootstrap()
        self._last_tick = self._clock()
        self._consumer_task = asyncio.create_task(self.run(), name="reaper_consumer")
        self._ticker_task = asyncio.create_task(self._tick_loop(), name="reaper_ticker")
        logger.info("reaper_started", tick_interval_s=self._tick_interval_s)

    async def stop(self) -> None:
        for task in (self._ticker_task, self._consumer_task, self._batch_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._ticker_task = self._consumer_task = self._batch_task = None
        logger.info("reaper_stopped")

    async def bootstrap(self) -> int:
        """Track every tab the browser currently has open."""
        try:
            tabs = await self._gateway.list_open()
        except Exception:
            logger.exception("bootstrap_failed")
            return 0
        for info in tabs:
            await self.handle(
                TabCreated(
                    tab_id=info.tab_id,
                    url=info.url,
                    title=info.title,
                    favicon=info.favicon,
                    active=info.active,
                )
            )
        logger.info("bootstrap_complete", tabs=len(tabs))
        return len(tabs)

    def submit(self, event: ReaperEvent) -> None:
        """Enqueue an event for the consumer task. Safe to call from any coroutine."""
        self._queue.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every submitted event has been handled."""
        await self._queue.join()

    async def run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.handle(event)
            except Exception:
                logger.exception("event_handling_failed", event=type(event).__name__)
            finally:
                self._queue.task_done()

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval_s)
            self.submit(Tick())

    # -- event handling ----------------------------------------------------

    async def handle(self, event: ReaperEvent) -> None:
        """Apply one event. Called only from the consumer (or directly in tests)."""
        if isinstance(event, Tick):
            self.tick()
        elif isinstance(event, TabCreated):
            self._on_created(event)
        elif isinstance(event, TabRemoved):
            await self._on_removed(event.tab_id)
        elif isinstance(event, TabActivated):
            self._visible.clear()
            self._visible.add(event.tab_id)
            self._engine.mark_active(event.tab_id)
        elif isinstance(event, TabUpdated):
            update = TabStateUpdate(url=event.url, title=event.title, favicon=event.favicon)
            if not update.is_empty():
                self._engine.apply_state_update(event.tab_id, update)
        elif isinstance(event, MediaChanged):
            self._engine.apply_state_update(event.tab_id, TabStateUpdate(is_playing=event.playing))
        elif isinstance(event, FormDirtyChanged):
            self._engine.apply_state_update(
                event.tab_id, TabStateUpdate(has_unsaved_input=event.dirty)
            )
        elif isinstance(event, PinnedChanged):
            self._engine.apply_state_update(
                event.tab_id, TabStateUpdate(is_protected=event.pinned)
            )
        elif isinstance(event, TransferStarted):
            self._on_transfer(event.tab_id, delta=1)
        elif isinstance(event, TransferEnded):
            self._on_transfer(event.tab_id, delta=-1)
        elif isinstance(event, ConfigUpdated):
            # Both swaps happen in this one step; no tick can observe a mix
            self._engine.update_config(event.config)
            self._scheduler.update_config(event.config)
        elif isinstance(event, SessionStarted):
            logger.info("browser_session_started", session_id=event.session_id)
            self._engine.reset_all()
        else:
            logger.warning("event_unknown", event=type(event).__name__)

    def _on_created(self, event: TabCreated) -> None:
        # A reused id starts over with clean queue membership
        self._scheduler.forget(event.tab_id)
        self._transfers.pop(event.tab_id, None)
        self._engine.track(
            event.tab_id,
            domain_from_url(event.url),
            title=event.title,
            url=event.url,
            favicon=event.favicon,
        )
        if event.active:
            self._visible.add(event.tab_id)

    async def _on_removed(self, tab_id: int) -> None:
        state = self._engine.get_state(tab_id)
        closed_by_us = self._scheduler.forget(tab_id)
        if state is not None and not closed_by_us:
            await self._record_user_close(state)
        self._engine.untrack(tab_id)
        self._visible.discard(tab_id)
        self._transfers.pop(tab_id, None)

    async def _record_user_close(self, state: TabState) -> None:
        entry = ReclaimedTab(
            tab_id=state.tab_id,
            title=state.title,
            url=state.url,
            favicon=state.favicon,
            reclaimed_at=datetime.fromtimestamp(self._clock(), UTC),
            reason="user_closed",
        )
        try:
            await self._history.record(entry)
        except Exception:
            logger.exception("history_record_failed", tab_id=state.tab_id)

    def _on_transfer(self, tab_id: int, *, delta: int) -> None:
        if self._engine.get_state(tab_id) is None:
            return
        count = max(0, self._transfers.get(tab_id, 0) + delta)
        if count:
            self._transfers[tab_id] = count
        else:
            self._transfers.pop(tab_id, None)
        self._engine.apply_state_update(
            tab_id, TabStateUpdate(has_pending_transfer=count > 0)
        )

    # -- tick ------------------------------------------------------------

    def tick(self) -> asyncio.Task | None:
        """Rescore every tab, sweep for inactivity, then kick off a batch pass.

        Returns the batch task if one was started.
        """
        now = self._clock()
        elapsed_minutes = max(0.0, (now - self._last_tick) / 60)
        self._last_tick = now

        visible = frozenset(self._visible)
        for tab_id in self._engine.table.tab_ids():
            self._engine.update_score(tab_id, elapsed_minutes, visible)
            self._scheduler.check_inactivity(tab_id)

        logger.debug(
            "tick",
            tabs=len(self._engine.table),
            elapsed_minutes=round(elapsed_minutes, 3),
        )

        if self._batch_task is not None and not self._batch_task.done():
            return None
        self._batch_task = asyncio.create_task(
            self._scheduler.process_batch(), name="reclaim_batch"
        )
        self._batch_task.add_done_callback(_log_batch_failure)
        return self._batch_task

    async def wait_for_batch(self) -> None:
        if self._batch_task is not None:
            await self._batch_task

    # -- observability -----------------------------------------------------

    def describe_tab(self, tab_id: int) -> dict[str, Any] | None:
        state = self._engine.get_state(tab_id)
        if state is None:
            return None
        visible = self._visible
        return {
            "tab_id": tab_id,
            "title": state.title,
            "url": state.url,
            "domain": state.domain,
            "score": round(self._engine.get_score(tab_id), 4),
            "decay": round(self._engine.decay_rate(tab_id, visible), 4),
            "boost": round(self._engine.boost(tab_id, visible), 4),
            "phase": self._scheduler.phase(tab_id).value,
            "visible": tab_id in visible,
            "is_playing": state.is_playing,
            "has_unsaved_input": state.has_unsaved_input,
            "has_pending_transfer": state.has_pending_transfer,
            "is_protected": state.is_protected,
        }

    def status(self) -> dict[str, Any]:
        snapshot = self._scheduler.snapshot()
        tabs = [self.describe_tab(tab_id) for tab_id in self._engine.table.tab_ids()]
        return {
            "tabs": [t for t in tabs if t is not None],
            "countdown": {str(k): round(v, 2) for k, v in snapshot.countdown.items()},
            "batch_queue": list(snapshot.batch_queue),
            "in_flight": sorted(snapshot.in_flight),
            "last_batch_time": snapshot.last_batch_time,
            "processing": snapshot.processing,
            "visible": sorted(self._visible),
        }


def _log_batch_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("batch_task_failed", error=str(exc), exc_info=exc)
