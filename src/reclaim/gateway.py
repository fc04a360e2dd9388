"""Contracts between the scheduler and its external collaborators.

The scheduler only sees these narrow interfaces: it never holds a reference
to the runtime driver or to the browser bridge implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

ReclaimReason = Literal["reclaimed", "user_closed"]


@dataclass(frozen=True)
class TabInfo:
    """Live view of a tab as reported by the browser."""

    tab_id: int
    url: str = ""
    title: str = ""
    favicon: str = ""
    active: bool = False
    recovery_hint: str | None = None  # e.g. browser session id for restore


@dataclass(frozen=True)
class ReclaimedTab:
    """History record written before a tab is destroyed."""

    tab_id: int
    title: str
    url: str
    favicon: str = ""
    reclaimed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    recovery_hint: str | None = None
    reason: ReclaimReason = "reclaimed"


class TabGateway(ABC):
    """Browser-side capability used by reclamation."""

    @abstractmethod
    async def lookup(self, tab_id: int) -> TabInfo | None:
        """Return the tab if it still exists, else None."""
        ...

    @abstractmethod
    async def destroy(self, tab_id: int) -> None:
        """Irreversibly close the tab. Raises ReclaimError on failure."""
        ...

    @abstractmethod
    async def list_open(self) -> list[TabInfo]:
        """All tabs currently open in the browser."""
        ...


class HistorySink(ABC):
    """Receives reclaimed-tab records for later restoration."""

    @abstractmethod
    async def record(self, entry: ReclaimedTab) -> None: ...
