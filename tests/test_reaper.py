"""Tests for TabReaper: event handling, ticks, and the consumer loop."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from src.reclaim.gateway import TabInfo
from src.reclaim.scheduler import TabPhase
from src.runtime.events import (
    ConfigUpdated,
    FormDirtyChanged,
    MediaChanged,
    PinnedChanged,
    SessionStarted,
    TabActivated,
    TabCreated,
    TabRemoved,
    TabUpdated,
    Tick,
    TransferEnded,
    TransferStarted,
)
from src.runtime.reaper import TabReaper
from tests.conftest import make_config


@pytest.fixture
def reaper(engine, scheduler, gateway, sink, clock) -> TabReaper:
    return TabReaper(
        engine=engine,
        scheduler=scheduler,
        gateway=gateway,
        history_sink=sink,
        clock=clock,
    )


async def _open(reaper: TabReaper, gateway, tab_id: int, url: str, *, active: bool = False):
    gateway.open(tab_id, url)
    await reaper.handle(TabCreated(tab_id=tab_id, url=url, title=f"Tab {tab_id}", active=active))


async def _run_minutes(reaper: TabReaper, clock, minutes: int, on_tick=None) -> None:
    for minute in range(1, minutes + 1):
        clock.advance_minutes(1)
        reaper.tick()
        await reaper.wait_for_batch()
        if on_tick is not None:
            on_tick(minute)


# ---------------------------------------------------------------------------
# End-to-end scenarios driven by ticks
# ---------------------------------------------------------------------------


class TestIdleScenarios:
    async def test_idle_tab_decays_then_is_reclaimed(
        self, reaper, engine, scheduler, gateway, sink, clock
    ) -> None:
        await _open(reaper, gateway, 1, "https://other.org/", active=True)
        await _open(reaper, gateway, 2, "https://example.com/")

        reached_zero: list[int] = []
        destroyed_at: list[int] = []

        def observe(minute: int) -> None:
            if not reached_zero and engine.get_score(2) == 0.0:
                reached_zero.append(minute)
            if not destroyed_at and gateway.destroyed:
                destroyed_at.append(minute)

        await _run_minutes(reaper, clock, 90, observe)

        assert reached_zero and reached_zero[0] < 30
        assert destroyed_at == [reached_zero[0] + 30]
        assert gateway.destroyed == [2]
        assert scheduler.phase(2) is TabPhase.closed
        assert [r.reason for r in sink.records] == ["reclaimed"]

        # The browser's removal event for a tab we closed is not a user close
        await reaper.handle(TabRemoved(tab_id=2))
        assert len(sink.records) == 1
        assert engine.get_state(2) is None

    async def test_playing_tab_stays_at_ceiling(self, reaper, engine, scheduler, gateway, clock) -> None:
        await _open(reaper, gateway, 1, "https://other.org/", active=True)
        await _open(reaper, gateway, 2, "https://radio.example.com/")
        await reaper.handle(MediaChanged(tab_id=2, playing=True))

        await _run_minutes(reaper, clock, 90)

        assert engine.get_score(2) == 2.0
        assert scheduler.phase(2) is TabPhase.live
        assert gateway.destroyed == []

    async def test_shared_domain_declines_slower(self, reaper, engine, gateway, clock) -> None:
        await _open(reaper, gateway, 1, "https://docs.example.com/", active=True)
        await _open(reaper, gateway, 2, "https://example.com/")
        await _open(reaper, gateway, 3, "https://isolated.org/")

        await _run_minutes(reaper, clock, 10)

        assert engine.get_score(1) == 2.0
        assert engine.get_score(2) > engine.get_score(3)

    async def test_visible_tab_never_queued(self, reaper, scheduler, gateway, clock) -> None:
        await _open(reaper, gateway, 1, "https://example.com/", active=True)
        await _run_minutes(reaper, clock, 120)
        assert scheduler.phase(1) is TabPhase.live
        assert gateway.destroyed == []


# ---------------------------------------------------------------------------
# Event handling
# ---------------------------------------------------------------------------


class TestEvents:
    async def test_created_tracks_with_default_score(self, reaper, engine, gateway) -> None:
        await _open(reaper, gateway, 1, "https://Example.com/page")
        state = engine.get_state(1)
        assert state.domain == "example.com"
        assert state.title == "Tab 1"
        assert engine.get_score(1) == 2.0

    async def test_activated_replaces_visible_set(self, reaper, engine, gateway, clock) -> None:
        await _open(reaper, gateway, 1, "https://a.com/", active=True)
        await _open(reaper, gateway, 2, "https://b.com/")
        clock.advance_minutes(5)

        await reaper.handle(TabActivated(tab_id=2))

        assert reaper.visible_tabs == frozenset({2})
        assert engine.get_state(2).last_active == clock.now

    async def test_updated_url_changes_domain(self, reaper, engine, gateway) -> None:
        await _open(reaper, gateway, 1, "https://a.com/")
        await reaper.handle(TabUpdated(tab_id=1, url="https://news.b.org/", title="B"))
        state = engine.get_state(1)
        assert state.domain == "news.b.org"
        assert state.title == "B"

    async def test_updated_without_fields_is_ignored(
        self, reaper, engine, gateway, monkeypatch
    ) -> None:
        await _open(reaper, gateway, 1, "https://a.com/")
        apply = MagicMock()
        monkeypatch.setattr(engine, "apply_state_update", apply)

        await reaper.handle(TabUpdated(tab_id=1))

        apply.assert_not_called()
        assert engine.get_state(1).domain == "a.com"

    async def test_flag_events(self, reaper, engine, gateway) -> None:
        await _open(reaper, gateway, 1, "https://a.com/")
        await reaper.handle(MediaChanged(tab_id=1, playing=True))
        await reaper.handle(FormDirtyChanged(tab_id=1, dirty=True))
        await reaper.handle(PinnedChanged(tab_id=1, pinned=True))
        state = engine.get_state(1)
        assert state.is_playing and state.has_unsaved_input and state.is_protected

        await reaper.handle(MediaChanged(tab_id=1, playing=False))
        assert engine.get_state(1).is_playing is False

    async def test_transfers_are_counted(self, reaper, engine, gateway) -> None:
        await _open(reaper, gateway, 1, "https://files.example.com/")
        await reaper.handle(TransferStarted(tab_id=1))
        await reaper.handle(TransferStarted(tab_id=1))
        await reaper.handle(TransferEnded(tab_id=1))
        assert engine.get_state(1).has_pending_transfer is True

        await reaper.handle(TransferEnded(tab_id=1))
        assert engine.get_state(1).has_pending_transfer is False

        # Extra end events never go negative
        await reaper.handle(TransferEnded(tab_id=1))
        await reaper.handle(TransferStarted(tab_id=1))
        assert engine.get_state(1).has_pending_transfer is True

    async def test_events_for_unknown_tab_are_ignored(self, reaper, engine) -> None:
        await reaper.handle(TransferStarted(tab_id=9))
        await reaper.handle(MediaChanged(tab_id=9, playing=True))
        await reaper.handle(TabRemoved(tab_id=9))
        assert engine.get_state(9) is None

    async def test_user_close_is_recorded(self, reaper, engine, gateway, sink) -> None:
        await _open(reaper, gateway, 1, "https://a.com/", active=True)
        await reaper.handle(TabRemoved(tab_id=1))

        assert [(r.tab_id, r.reason) for r in sink.records] == [(1, "user_closed")]
        assert engine.get_state(1) is None
        assert reaper.visible_tabs == frozenset()

    async def test_user_close_survives_history_failure(self, reaper, engine, gateway, sink) -> None:
        await _open(reaper, gateway, 1, "https://a.com/")
        sink.fail = True
        await reaper.handle(TabRemoved(tab_id=1))
        assert engine.get_state(1) is None

    async def test_reused_id_starts_clean(self, reaper, engine, scheduler, gateway) -> None:
        await _open(reaper, gateway, 1, "https://a.com/")
        engine.table.set_score(1, 0.0)
        scheduler.check_inactivity(1)
        assert scheduler.phase(1) is TabPhase.counting_down

        await _open(reaper, gateway, 1, "https://b.com/")
        assert scheduler.phase(1) is TabPhase.live
        assert engine.get_score(1) == 2.0

    async def test_config_swap_reaches_both_components(self, reaper, engine, scheduler) -> None:
        new = make_config(countdown_minutes=5.0, protected_domains=frozenset())
        await reaper.handle(ConfigUpdated(config=new))
        assert engine.config is new
        assert scheduler.config is new

    async def test_session_start_resets_scores(self, reaper, engine, gateway) -> None:
        await _open(reaper, gateway, 1, "https://a.com/")
        engine.table.set_score(1, 0.3)
        await reaper.handle(SessionStarted(session_id="s-2"))
        assert engine.get_score(1) == 2.0


# ---------------------------------------------------------------------------
# Tick / lifecycle
# ---------------------------------------------------------------------------


class TestTick:
    async def test_tick_is_single_flight(self, reaper) -> None:
        first = reaper.tick()
        assert first is not None
        assert reaper.tick() is None
        await reaper.wait_for_batch()

    async def test_tick_event_runs_tick(self, reaper, engine, gateway, clock) -> None:
        await _open(reaper, gateway, 1, "https://a.com/")
        clock.advance_minutes(1)
        await reaper.handle(Tick())
        await reaper.wait_for_batch()
        assert engine.get_score(1) == pytest.approx(2.0 - 0.067 * (1 + 1 / 60))


class TestLifecycle:
    async def test_bootstrap_tracks_open_tabs(self, reaper, engine, gateway) -> None:
        gateway.tabs[1] = TabInfo(tab_id=1, url="https://a.com/", title="A", active=True)
        gateway.tabs[2] = TabInfo(tab_id=2, url="https://b.com/", title="B")

        assert await reaper.bootstrap() == 2
        assert engine.get_state(1).title == "A"
        assert engine.get_state(2) is not None
        assert reaper.visible_tabs == frozenset({1})

    async def test_bootstrap_failure_is_tolerated(self, reaper, gateway, monkeypatch) -> None:
        monkeypatch.setattr(gateway, "list_open", MagicMock(side_effect=RuntimeError("down")))
        assert await reaper.bootstrap() == 0

    async def test_consumer_applies_submitted_events(self, reaper, engine, gateway) -> None:
        gateway.open(1, "https://a.com/")
        await reaper.start()
        try:
            assert reaper.running
            assert engine.get_state(1) is not None  # from bootstrap

            reaper.submit(TabCreated(tab_id=2, url="https://b.com/"))
            reaper.submit(TabActivated(tab_id=2))
            await reaper.drain()
            assert reaper.visible_tabs == frozenset({2})
        finally:
            await reaper.stop()
        assert not reaper.running

    async def test_consumer_survives_handler_error(
        self, reaper, engine, monkeypatch
    ) -> None:
        monkeypatch.setattr(engine, "mark_active", MagicMock(side_effect=RuntimeError("boom")))
        await reaper.start(bootstrap=False)
        try:
            reaper.submit(TabActivated(tab_id=1))
            reaper.submit(TabCreated(tab_id=2, url="https://b.com/"))
            await reaper.drain()
            assert engine.get_state(2) is not None
        finally:
            await reaper.stop()


class TestObservability:
    async def test_describe_tab(self, reaper, engine, gateway) -> None:
        await _open(reaper, gateway, 1, "https://a.com/", active=True)
        detail = reaper.describe_tab(1)
        assert detail["score"] == 2.0
        assert detail["phase"] == "live"
        assert detail["visible"] is True
        assert detail["boost"] == pytest.approx(0.7)
        assert detail["decay"] == 0.0

    async def test_describe_unknown_tab(self, reaper) -> None:
        assert reaper.describe_tab(5) is None

    async def test_status(self, reaper, engine, scheduler, gateway) -> None:
        await _open(reaper, gateway, 1, "https://a.com/", active=True)
        await _open(reaper, gateway, 2, "https://b.com/")
        engine.table.set_score(2, 0.0)
        scheduler.check_inactivity(2)

        status = reaper.status()
        assert [t["tab_id"] for t in status["tabs"]] == [1, 2]
        assert status["countdown"] == {"2": 30.0}
        assert status["batch_queue"] == []
        assert status["visible"] == [1]
        assert status["processing"] is False
