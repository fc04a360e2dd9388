from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from src.config.settings import build_reaper_config, get_settings
from src.gateway.bridge import BridgeGateway
from src.gateway.protocol import (
    CommandAckParams,
    ConfigUpdateParams,
    RPCError,
    RPCErrorData,
    RPCResponse,
    SessionHelloParams,
    TabEventParams,
    parse_rpc_request,
)
from src.history.database import create_db_engine, ensure_schema, make_session_factory
from src.history.store import HistoryStore
from src.infra.errors import GatewayError, TabFlowError
from src.infra.logging import setup_logging
from src.reclaim.scheduler import ReclamationScheduler
from src.runtime.events import ConfigUpdated, SessionStarted
from src.runtime.reaper import TabReaper
from src.scoring.engine import ScoreEngine
from src.tabs.table import TabTable

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: wire the reaper and its collaborators."""
    settings = get_settings()
    setup_logging(json_output=settings.runtime.log_json, log_level=settings.runtime.log_level)

    # History is mandatory; startup fails if DB/schema unavailable.
    db_engine = await create_db_engine(settings.database)
    await ensure_schema(db_engine, settings.database.schema_)
    history_store = HistoryStore(make_session_factory(db_engine))
    await history_store.purge_older_than(settings.runtime.history_retention_days)
    logger.info("db_connected")

    config = build_reaper_config(settings)
    bridge = BridgeGateway(ack_timeout_s=settings.gateway.close_ack_timeout_s)
    score_engine = ScoreEngine(TabTable(), config)
    scheduler = ReclamationScheduler(score_engine, bridge, history_store, config)
    reaper = TabReaper(
        engine=score_engine,
        scheduler=scheduler,
        gateway=bridge,
        history_sink=history_store,
        tick_interval_s=settings.runtime.tick_interval_s,
    )
    await reaper.start()

    app.state.reaper = reaper
    app.state.bridge = bridge
    app.state.history_store = history_store
    logger.info(
        "gateway_started",
        host=settings.gateway.host,
        port=settings.gateway.port,
        aggressiveness=settings.policy.aggressiveness,
        countdown_minutes=config.policy.countdown_minutes,
        batch_interval_minutes=config.policy.batch_interval_minutes,
    )

    yield

    # Cleanup
    await reaper.stop()
    await db_engine.dispose()
    logger.info("db_engine_disposed")


app = FastAPI(title="TabFlow Gateway", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/status")
async def status(request: Request) -> dict[str, Any]:
    reaper: TabReaper = request.app.state.reaper
    bridge: BridgeGateway = request.app.state.bridge
    return {**reaper.status(), "bridge_connected": bridge.connected}


@app.get("/tabs/{tab_id}")
async def tab_detail(request: Request, tab_id: int) -> dict[str, Any]:
    reaper: TabReaper = request.app.state.reaper
    detail = reaper.describe_tab(tab_id)
    if detail is None:
        raise HTTPException(status_code=404, detail=f"Tab {tab_id} is not tracked")
    return detail


@app.get("/history")
async def history(request: Request, limit: int = 50) -> dict[str, Any]:
    history_store: HistoryStore = request.app.state.history_store
    entries = await history_store.list_recent(limit=max(1, min(limit, 500)))
    return {
        "manually_cleared": await history_store.was_manually_cleared(),
        "tabs": [
            {
                "id": e.id,
                "tab_id": e.tab.tab_id,
                "title": e.tab.title,
                "url": e.tab.url,
                "favicon": e.tab.favicon,
                "reclaimed_at": e.tab.reclaimed_at.isoformat(),
                "recovery_hint": e.tab.recovery_hint,
                "reason": e.tab.reason,
            }
            for e in entries
        ]
    }


@app.delete("/history/{entry_id}")
async def delete_history_entry(request: Request, entry_id: int) -> dict[str, Any]:
    """Drop one entry, e.g. after the tab was restored."""
    history_store: HistoryStore = request.app.state.history_store
    if not await history_store.delete(entry_id):
        raise HTTPException(status_code=404, detail=f"History entry {entry_id} not found")
    return {"deleted": entry_id}


@app.delete("/history")
async def clear_history(request: Request) -> dict[str, Any]:
    history_store: HistoryStore = request.app.state.history_store
    removed = await history_store.clear()
    logger.info("history_clear_requested", removed=removed)
    return {"removed": removed}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    await websocket.accept()
    bridge: BridgeGateway = websocket.app.state.bridge
    sender = websocket.send_text
    bridge.attach(sender)
    logger.info("ws_connected")
    try:
        while True:
            raw = await websocket.receive_text()
            await _handle_rpc_message(websocket, raw)
    except WebSocketDisconnect:
        logger.info("ws_disconnected")
    finally:
        bridge.detach(sender)


def _validate(model: type[BaseModel], params: dict) -> Any:
    try:
        return model.model_validate(params)
    except ValidationError as e:
        raise GatewayError(str(e), code="INVALID_PARAMS") from e


async def _handle_rpc_message(websocket: WebSocket, raw: str) -> None:
    """Parse an RPC request from the bridge, apply it, send one reply frame."""
    request_id = "unknown"
    try:
        request = parse_rpc_request(raw)
        request_id = request.id

        if request.method == "tab.event":
            data = _handle_tab_event(websocket, request.params)
        elif request.method == "config.update":
            data = _handle_config_update(websocket, request.params)
        elif request.method == "session.hello":
            data = await _handle_session_hello(websocket, request.params)
        elif request.method == "command.ack":
            data = _handle_command_ack(websocket, request.params)
        elif request.method == "status.get":
            data = websocket.app.state.reaper.status()
        else:
            error = RPCError(
                id=request_id,
                error=RPCErrorData(
                    code="METHOD_NOT_FOUND",
                    message=f"Unknown method: {request.method}",
                ),
            )
            await websocket.send_text(error.model_dump_json())
            return

        response = RPCResponse(id=request_id, data=data)
        await websocket.send_text(response.model_dump_json())

    except TabFlowError as e:
        logger.warning("request_error", code=e.code, error=str(e), request_id=request_id)
        error = RPCError(
            id=request_id,
            error=RPCErrorData(code=e.code, message=str(e)),
        )
        await websocket.send_text(error.model_dump_json())
    except Exception:
        logger.exception("unhandled_error", request_id=request_id)
        error = RPCError(
            id=request_id,
            error=RPCErrorData(code="INTERNAL_ERROR", message="An internal error occurred"),
        )
        await websocket.send_text(error.model_dump_json())


def _handle_tab_event(websocket: WebSocket, params: dict) -> dict[str, Any]:
    """Handle tab.event: update the bridge mirror, queue the event for the reaper."""
    parsed: TabEventParams = _validate(TabEventParams, params)
    bridge: BridgeGateway = websocket.app.state.bridge
    reaper: TabReaper = websocket.app.state.reaper

    bridge.observe(parsed)
    reaper.submit(parsed.to_event())
    return {"accepted": True}


def _handle_config_update(websocket: WebSocket, params: dict) -> dict[str, Any]:
    """Handle config.update: validated full replacement of the active policy."""
    parsed: ConfigUpdateParams = _validate(ConfigUpdateParams, params)
    reaper: TabReaper = websocket.app.state.reaper

    reaper.submit(ConfigUpdated(config=parsed.to_config()))
    logger.info("config_update_queued")
    return {"accepted": True}


async def _handle_session_hello(websocket: WebSocket, params: dict) -> dict[str, Any]:
    """Handle session.hello: reset scores when the browser session is new."""
    parsed: SessionHelloParams = _validate(SessionHelloParams, params)
    history_store: HistoryStore = websocket.app.state.history_store
    reaper: TabReaper = websocket.app.state.reaper

    is_new = await history_store.is_new_session(parsed.session_id)
    if is_new:
        reaper.submit(SessionStarted(session_id=parsed.session_id))
    return {"new_session": is_new}


def _handle_command_ack(websocket: WebSocket, params: dict) -> dict[str, Any]:
    """Handle command.ack: settle a pending tab.close command."""
    parsed: CommandAckParams = _validate(CommandAckParams, params)
    bridge: BridgeGateway = websocket.app.state.bridge

    known = bridge.acknowledge(parsed.command_id, ok=parsed.ok, error=parsed.error)
    return {"acknowledged": known}
