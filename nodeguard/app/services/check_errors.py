"""
sing-box ``check`` output parser - 配置校验错误解析

Turns the engine's error text into exclusions addressable by outbound index
or by tag. Matching rules live here only, so the probe manager never touches
a regex.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

KIND_OUTBOUND_INDEX = "outbound_index"
KIND_DUPLICATE_TAG = "duplicate_tag"

# e.g. "outbounds[5].transport: unknown transport type: xhttp"
#      "initialize outbound[3]: missing password"
_OUTBOUND_RE = re.compile(r"outbounds?\[(\d+)\]\.?([^:]*?):\s*(.+)")
_DUPLICATE_TAG_RE = re.compile(r"duplicate outbound/endpoint tag:\s*(.+)")


@dataclass(frozen=True)
class Exclusion:
    kind: str
    message: str
    index: int = -1
    field: str = ""
    tag: str = ""


class CheckErrorParser:
    """parse(output) -> exclusions, in output order, deduplicated."""

    def parse(self, output: str) -> List[Exclusion]:
        out: List[Exclusion] = []
        for line in (output or "").splitlines():
            line = line.strip()
            if not line:
                continue
            ex = self._parse_line(line)
            if ex is not None and ex not in out:
                out.append(ex)
        return out

    def _parse_line(self, line: str) -> Optional[Exclusion]:
        m = _DUPLICATE_TAG_RE.search(line)
        if m:
            tag = m.group(1).strip()
            return Exclusion(kind=KIND_DUPLICATE_TAG, tag=tag, message=f"duplicate tag: {tag}")
        m = _OUTBOUND_RE.search(line)
        if m:
            try:
                idx = int(m.group(1))
            except ValueError:
                return None
            return Exclusion(
                kind=KIND_OUTBOUND_INDEX,
                index=idx,
                field=m.group(2).strip(),
                message=m.group(3).strip(),
            )
        return None
