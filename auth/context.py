"""
auth/context.py -- Per-request identity context.

Guards never reach for a framework global to find "the current user". The
web and API layers build a RequestContext from the incoming request and pass
it explicitly to every guard and service call.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True)
class RequestContext:
    session_token: str | None = None
    path: str = "/"
    query_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    verification_id: str | None = None

    @property
    def full_path(self) -> str:
        return f"{self.path}?{self.query_string}" if self.query_string else self.path
