"""Custom exception hierarchy for TabFlow.

All application-specific exceptions inherit from TabFlowError,
which carries an error code for RPC error frame mapping.
"""

from __future__ import annotations


class TabFlowError(Exception):
    """Base exception for all TabFlow errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class GatewayError(TabFlowError):
    """Errors in the Gateway / WebSocket layer."""

    def __init__(self, message: str, *, code: str = "GATEWAY_ERROR") -> None:
        super().__init__(message, code=code)


class ReclaimError(TabFlowError):
    """A tab could not be looked up or closed by the browser gateway."""

    def __init__(self, message: str, *, code: str = "RECLAIM_FAILED") -> None:
        super().__init__(message, code=code)


class HistoryError(TabFlowError):
    """Errors in the reclaimed-tab history store."""

    def __init__(self, message: str, *, code: str = "HISTORY_ERROR") -> None:
        super().__init__(message, code=code)
