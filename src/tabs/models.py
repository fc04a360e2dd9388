"""In-memory tab state and the tagged update applied by activity events."""

from __future__ import annotations

from dataclasses import dataclass, fields

from src.tabs.domains import domain_from_url


@dataclass
class TabState:
    tab_id: int
    domain: str
    title: str = ""
    url: str = ""
    favicon: str = ""
    last_active: float = 0.0  # epoch seconds
    is_playing: bool = False
    has_unsaved_input: bool = False
    has_pending_transfer: bool = False
    is_protected: bool = False  # pinned; never reclaimed

    @property
    def is_shielded(self) -> bool:
        """Any signal that makes the tab ineligible for reclamation."""
        return (
            self.is_protected
            or self.is_playing
            or self.has_unsaved_input
            or self.has_pending_transfer
        )


@dataclass(frozen=True)
class TabStateUpdate:
    """Partial update of a TabState. None means "leave unchanged".

    Only the fields listed here are mutable after creation. Setting ``url``
    also re-derives ``domain``.
    """

    is_playing: bool | None = None
    has_unsaved_input: bool | None = None
    has_pending_transfer: bool | None = None
    is_protected: bool | None = None
    title: str | None = None
    url: str | None = None
    favicon: str | None = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def apply(self, state: TabState) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                setattr(state, f.name, value)
        if self.url is not None:
            state.domain = domain_from_url(self.url)
