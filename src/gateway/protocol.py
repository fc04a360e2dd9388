from __future__ import annotations

import json
import uuid
from typing import Any, Literal, Self

from pydantic import BaseModel, Field, field_validator, model_validator

from src.config.policy import DecayConfig, PolicyConfig, ReaperConfig
from src.constants import MAX_SCORE, MIN_SCORE
from src.runtime.events import (
    FormDirtyChanged,
    MediaChanged,
    PinnedChanged,
    TabActivated,
    TabCreated,
    TabEvent,
    TabRemoved,
    TabUpdated,
    TransferEnded,
    TransferStarted,
)
from src.tabs.domains import parse_domain_list

TabEventKind = Literal[
    "created",
    "removed",
    "activated",
    "updated",
    "media",
    "form",
    "pinned",
    "transfer_started",
    "transfer_ended",
]

# Kinds that carry a boolean flag in ``value``
_FLAG_KINDS = frozenset({"media", "form", "pinned"})


class TabEventParams(BaseModel):
    """Activity feed entry sent by the browser bridge."""

    kind: TabEventKind
    tab_id: int = Field(gt=0)
    url: str | None = None
    title: str | None = None
    favicon: str | None = None
    active: bool = False
    value: bool | None = None
    recovery_hint: str | None = None

    @model_validator(mode="after")
    def _validate_value(self) -> Self:
        if self.kind in _FLAG_KINDS and self.value is None:
            raise ValueError(f"'{self.kind}' events require a boolean 'value'")
        return self

    def to_event(self) -> TabEvent:
        tab_id = self.tab_id
        if self.kind == "created":
            return TabCreated(
                tab_id=tab_id,
                url=self.url or "",
                title=self.title or "",
                favicon=self.favicon or "",
                active=self.active,
            )
        if self.kind == "removed":
            return TabRemoved(tab_id=tab_id)
        if self.kind == "activated":
            return TabActivated(tab_id=tab_id)
        if self.kind == "updated":
            return TabUpdated(tab_id=tab_id, url=self.url, title=self.title, favicon=self.favicon)
        if self.kind == "media":
            return MediaChanged(tab_id=tab_id, playing=bool(self.value))
        if self.kind == "form":
            return FormDirtyChanged(tab_id=tab_id, dirty=bool(self.value))
        if self.kind == "pinned":
            return PinnedChanged(tab_id=tab_id, pinned=bool(self.value))
        if self.kind == "transfer_started":
            return TransferStarted(tab_id=tab_id)
        return TransferEnded(tab_id=tab_id)


class DecayRatesParams(BaseModel):
    normal: float = Field(lt=0)
    special: float = Field(lt=0)


class ConfigUpdateParams(BaseModel):
    """Full policy replacement pushed by the settings UI."""

    countdown_minutes: float = Field(ge=0)
    inactive_threshold: float = Field(ge=MIN_SCORE, le=MAX_SCORE)
    batch_interval_minutes: float = Field(ge=0)
    protected_domains: list[str] = Field(default_factory=list)
    excluded_url_prefixes: list[str] = Field(default_factory=lambda: ["chrome://"])
    decay_rates: DecayRatesParams

    def to_config(self) -> ReaperConfig:
        return ReaperConfig(
            policy=PolicyConfig(
                inactive_threshold=self.inactive_threshold,
                countdown_minutes=self.countdown_minutes,
                batch_interval_minutes=self.batch_interval_minutes,
                protected_domains=parse_domain_list(self.protected_domains),
                excluded_url_prefixes=tuple(p for p in self.excluded_url_prefixes if p),
            ),
            decay=DecayConfig(
                normal_rate=self.decay_rates.normal,
                protected_domain_rate=self.decay_rates.special,
            ),
        )


class SessionHelloParams(BaseModel):
    session_id: str

    @field_validator("session_id")
    @classmethod
    def _validate_session_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("session_id must not be empty")
        return v


class CommandAckParams(BaseModel):
    """Bridge reply settling a server command such as ``tab.close``."""

    command_id: str
    ok: bool
    error: str | None = None


class RPCRequest(BaseModel):
    """Generic RPC request. method determines which params to expect."""

    type: Literal["request"] = "request"
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


class RPCResponse(BaseModel):
    type: Literal["response"] = "response"
    id: str
    data: dict[str, Any] = Field(default_factory=dict)


class RPCCommand(BaseModel):
    """Server-to-bridge instruction, e.g. ``tab.close``."""

    type: Literal["command"] = "command"
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


class RPCErrorData(BaseModel):
    code: str
    message: str


class RPCError(BaseModel):
    type: Literal["error"] = "error"
    id: str
    error: RPCErrorData


def parse_rpc_request(raw: str) -> RPCRequest:
    """Parse a raw JSON string into an RPCRequest.

    Raises GatewayError(code="PARSE_ERROR") on invalid JSON or schema mismatch.
    """
    from src.infra.errors import GatewayError

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise GatewayError(f"Invalid JSON: {e}", code="PARSE_ERROR") from e
    try:
        return RPCRequest.model_validate(data)
    except Exception as e:
        raise GatewayError(f"Invalid RPC request: {e}", code="PARSE_ERROR") from e
