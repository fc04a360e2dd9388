from __future__ import annotations

from dataclasses import dataclass

from src.config.policy import ReaperConfig


@dataclass(frozen=True)
class TabCreated:
    tab_id: int
    url: str = ""
    title: str = ""
    favicon: str = ""
    active: bool = False


@dataclass(frozen=True)
class TabRemoved:
    tab_id: int


@dataclass(frozen=True)
class TabActivated:
    """The tab gained focus and becomes the only visible tab."""

    tab_id: int


@dataclass(frozen=True)
class TabUpdated:
    """Metadata change (navigation, title, favicon). None = unchanged."""

    tab_id: int
    url: str | None = None
    title: str | None = None
    favicon: str | None = None


@dataclass(frozen=True)
class MediaChanged:
    tab_id: int
    playing: bool


@dataclass(frozen=True)
class FormDirtyChanged:
    tab_id: int
    dirty: bool


@dataclass(frozen=True)
class TransferStarted:
    tab_id: int


@dataclass(frozen=True)
class TransferEnded:
    tab_id: int


@dataclass(frozen=True)
class PinnedChanged:
    tab_id: int
    pinned: bool


@dataclass(frozen=True)
class ConfigUpdated:
    config: ReaperConfig


@dataclass(frozen=True)
class SessionStarted:
    """The browser restarted; scores go back to the ceiling."""

    session_id: str = ""


@dataclass(frozen=True)
class Tick:
    pass


TabEvent = (
    TabCreated
    | TabRemoved
    | TabActivated
    | TabUpdated
    | MediaChanged
    | FormDirtyChanged
    | TransferStarted
    | TransferEnded
    | PinnedChanged
)
ReaperEvent = TabEvent | ConfigUpdated | SessionStarted | Tick
