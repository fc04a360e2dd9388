"""Immutable runtime configuration consumed by the score engine and scheduler.

A ReaperConfig is never mutated. Config changes build a new instance and
swap the reference in both components within one event-loop step.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DecayConfig:
    """Per-minute decay rates (both negative)."""

    normal_rate: float = -0.067
    protected_domain_rate: float = -0.033


@dataclass(frozen=True)
class PolicyConfig:
    """Thresholds and timers that drive countdown and batch reclamation."""

    inactive_threshold: float = 0.0
    countdown_minutes: float = 30.0
    batch_interval_minutes: float = 1.0
    protected_domains: frozenset[str] = frozenset({"mail.google.com", "web.whatsapp.com"})
    excluded_url_prefixes: tuple[str, ...] = ("chrome://",)


@dataclass(frozen=True)
class ReaperConfig:
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    decay: DecayConfig = field(default_factory=DecayConfig)
