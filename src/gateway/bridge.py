"""TabGateway backed by the browser bridge connected over the WebSocket.

The bridge (a small browser extension) pushes tab events in and receives
``tab.close`` commands out. Each command is settled by a ``command.ack``
request from the bridge; ``destroy`` only succeeds once the browser confirms.
Lookups are answered from a mirror of the tab metadata it has reported, so
they never need a round trip.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace

import structlog

from src.gateway.protocol import RPCCommand, TabEventParams
from src.infra.errors import ReclaimError
from src.reclaim.gateway import TabGateway, TabInfo

logger = structlog.get_logger()

Sender = Callable[[str], Awaitable[None]]


class BridgeGateway(TabGateway):
    def __init__(self, *, ack_timeout_s: float = 10.0) -> None:
        self._tabs: dict[int, TabInfo] = {}
        self._sender: Sender | None = None
        self._ack_timeout_s = ack_timeout_s
        self._pending: dict[str, asyncio.Future[None]] = {}  # command id -> ack

    @property
    def connected(self) -> bool:
        return self._sender is not None

    def attach(self, sender: Sender) -> None:
        """Route commands to a newly connected bridge. Replaces any previous one."""
        self._sender = sender
        logger.info("bridge_attached", known_tabs=len(self._tabs))

    def detach(self, sender: Sender | None = None) -> None:
        """Forget the bridge. With ``sender``, only if it is still the active one."""
        if sender is not None and sender is not self._sender:
            return
        self._sender = None
        for ack in self._pending.values():
            if not ack.done():
                ack.set_exception(
                    ReclaimError("Browser bridge disconnected", code="BRIDGE_DISCONNECTED")
                )
        logger.info("bridge_detached", pending_commands=len(self._pending))

    def observe(self, params: TabEventParams) -> None:
        """Keep the metadata mirror in step with an incoming tab event."""
        tab_id = params.tab_id
        if params.kind == "created":
            self._tabs[tab_id] = TabInfo(
                tab_id=tab_id,
                url=params.url or "",
                title=params.title or "",
                favicon=params.favicon or "",
                active=params.active,
                recovery_hint=params.recovery_hint,
            )
        elif params.kind == "removed":
            self._tabs.pop(tab_id, None)
        elif params.kind in ("updated", "activated"):
            current = self._tabs.get(tab_id)
            if current is None:
                return
            changes: dict[str, object] = {}
            if params.url is not None:
                changes["url"] = params.url
            if params.title is not None:
                changes["title"] = params.title
            if params.favicon is not None:
                changes["favicon"] = params.favicon
            if params.recovery_hint is not None:
                changes["recovery_hint"] = params.recovery_hint
            if changes:
                self._tabs[tab_id] = replace(current, **changes)

    async def lookup(self, tab_id: int) -> TabInfo | None:
        return self._tabs.get(tab_id)

    async def list_open(self) -> list[TabInfo]:
        return list(self._tabs.values())

    async def destroy(self, tab_id: int) -> None:
        """Send ``tab.close`` and wait for the bridge to confirm the close.

        The mirror entry is left alone; the ``removed`` event drops it.
        """
        sender = self._sender
        if sender is None:
            raise ReclaimError("No browser bridge connected", code="BRIDGE_DISCONNECTED")
        if tab_id not in self._tabs:
            raise ReclaimError(f"Tab {tab_id} no longer exists", code="TAB_GONE")

        command = RPCCommand(method="tab.close", params={"tab_id": tab_id})
        ack: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending[command.id] = ack
        try:
            try:
                await sender(command.model_dump_json())
            except Exception as exc:
                raise ReclaimError(
                    f"Failed to send close command for tab {tab_id}: {exc}",
                    code="BRIDGE_SEND_FAILED",
                ) from exc
            try:
                await asyncio.wait_for(ack, timeout=self._ack_timeout_s)
            except TimeoutError as exc:
                raise ReclaimError(
                    f"Browser did not confirm closing tab {tab_id}",
                    code="BRIDGE_TIMEOUT",
                ) from exc
        finally:
            self._pending.pop(command.id, None)
        logger.debug("close_confirmed", tab_id=tab_id, command_id=command.id)

    def acknowledge(self, command_id: str, *, ok: bool, error: str | None = None) -> bool:
        """Settle a pending command. False if it is unknown or already settled."""
        ack = self._pending.get(command_id)
        if ack is None or ack.done():
            logger.warning("command_ack_unknown", command_id=command_id)
            return False
        if ok:
            ack.set_result(None)
        else:
            message = error or "Browser refused to close the tab"
            ack.set_exception(ReclaimError(message, code="BRIDGE_CLOSE_FAILED"))
        return True
