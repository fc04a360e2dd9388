"""Host normalization and domain matching rules."""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import urlsplit


def normalize_domain(host: str) -> str:
    return host.strip().lower().rstrip(".")


def domain_from_url(url: str) -> str:
    """Extract the normalized host of a URL. Returns "" for hostless URLs."""
    if not url:
        return ""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return ""
    return normalize_domain(host or "")


def parse_domain_list(raw: str | Iterable[str]) -> frozenset[str]:
    """Parse a comma-separated string (or iterable) into normalized domains."""
    parts = raw.split(",") if isinstance(raw, str) else raw
    return frozenset(d for d in (normalize_domain(p) for p in parts) if d)


def matches_listed_domain(domain: str, listed: Iterable[str]) -> bool:
    """True if domain equals a listed entry or is a subdomain of one.

    Only the subdomain direction matches: ``mail.google.com`` matches a listed
    ``google.com``, but ``google.com`` does not match a listed ``mail.google.com``.
    """
    domain = normalize_domain(domain)
    if not domain:
        return False
    for entry in listed:
        entry = normalize_domain(entry)
        if entry and (domain == entry or domain.endswith("." + entry)):
            return True
    return False


def are_related_domains(a: str, b: str) -> bool:
    """Symmetric relation: equal, or one is a subdomain of the other.

    Sibling subdomains (``a.example.com`` / ``b.example.com``) are not related.
    """
    a = normalize_domain(a)
    b = normalize_domain(b)
    if not a or not b:
        return False
    return a == b or a.endswith("." + b) or b.endswith("." + a)
