"""
web/toast.py -- One-shot notification messages carried across a redirect.

The toast rides in the signed Starlette session: set it right before a
redirect, pop it on the next GET loader. Popping removes it, so a toast is
shown exactly once.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from fastapi import Request
from fastapi.responses import RedirectResponse

TOAST_SESSION_KEY = "toast"


@dataclass(frozen=True)
class Toast:
    type: str  # "success" | "message" | "error"
    title: str
    description: str = ""


def redirect_with_toast(request: Request, url: str, toast: Toast, status_code: int = 302) -> RedirectResponse:
    request.session[TOAST_SESSION_KEY] = asdict(toast)
    return RedirectResponse(url, status_code=status_code)


def pop_toast(request: Request) -> dict | None:
    return request.session.pop(TOAST_SESSION_KEY, None)
