from __future__ import annotations

import ipaddress
from typing import Any, Iterable, List, Optional, Sequence, Set, TypeVar
from urllib.parse import urlparse

from ..core.settings import DEFAULT_SITE_TARGETS

T = TypeVar("T")


def format_host_for_url(host: str) -> str:
    """Format host part for URL / identity keys.

    - Wrap IPv6 literals in brackets: 2001:db8::1 -> [2001:db8::1]
    - Leave hostnames and IPv4 untouched
    """
    h = (host or "").strip()
    if not h:
        return h
    if h.startswith("[") and h.endswith("]"):
        return h
    if ":" in h:
        core = h.split("%", 1)[0]
        try:
            if ipaddress.ip_address(core).version == 6:
                return f"[{h}]"
        except ValueError:
            if h.count(":") > 1:
                return f"[{h}]"
    return h


def node_key(server: str, port: Any) -> str:
    """Identity key of a proxy endpoint. Tags never take part in it."""
    try:
        p = int(port)
    except Exception:
        p = 0
    return f"{format_host_for_url(str(server or '').strip())}:{p}"


def dedupe_by_key(items: Iterable[T]) -> List[T]:
    """Keep the first item per identity key (items expose ``key``)."""
    seen: Set[str] = set()
    out: List[T] = []
    for it in items:
        k = getattr(it, "key")
        if k in seen:
            continue
        seen.add(k)
        out.append(it)
    return out


def parse_tag_set(values: Optional[Sequence[Any]]) -> Set[str]:
    out: Set[str] = set()
    for v in values or []:
        s = str(v or "").strip()
        if s:
            out.add(s)
    return out


def normalize_site_target(site: str) -> str:
    s = (site or "").strip()
    if not s:
        return ""
    # plain hostname
    if "://" not in s and "/" not in s:
        return s.lower()
    raw = s if "://" in s else f"https://{s}"
    try:
        host = urlparse(raw).hostname or ""
    except ValueError:
        host = ""
    if host:
        return host.lower()
    for prefix in ("https://", "http://"):
        if s.startswith(prefix):
            s = s[len(prefix):]
    return s.split("/", 1)[0].lower()


def sanitize_site_targets(raw: Optional[Sequence[str]]) -> List[str]:
    items = list(raw or []) or list(DEFAULT_SITE_TARGETS)
    out: List[str] = []
    for site in items:
        t = normalize_site_target(str(site))
        if t and t not in out:
            out.append(t)
    return out


def normalize_site_check_url(site: str) -> str:
    s = (site or "").strip()
    if not s:
        return ""
    if s.startswith("http://") or s.startswith("https://"):
        return s
    return f"https://{s}"


def country_emoji(code: str) -> str:
    c = (code or "").strip().upper()
    if len(c) != 2 or not c.isalpha():
        return "\U0001F3F3"
    return "".join(chr(0x1F1E6 + ord(ch) - ord("A")) for ch in c)
