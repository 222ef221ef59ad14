"""
mailer.py -- Outbound email for out-of-band notifications.

Email is best-effort: a failed send is logged and swallowed, never raised.
Callers (signup, password reset) must not depend on delivery for correctness --
the one-time code also lives server-side and expires on its own.

Two transports:
  HttpEmailTransport    -- POSTs a JSON message to an HTTP email API
                           (EMAIL_API_URL / EMAIL_API_KEY).
  LoggingEmailTransport -- keeps the message in memory and logs who it was for.
                           Used when no API URL is configured, and only in
                           DEBUG mode (local development, tests).
"""

import logging
from collections import deque
from typing import Optional, Protocol

import requests

from core.config import get_settings

logger = logging.getLogger("staffwise.mailer")


class EmailTransport(Protocol):
    def send(self, to: str, subject: str, plain_text: str, html: Optional[str] = None) -> None: ...


class HttpEmailTransport:
    """Send mail through an HTTP email API.

    A dedicated requests.Session pools connections. max_redirects=3 keeps a
    misconfigured endpoint from bouncing credentials through a redirect chain.
    """

    def __init__(self, api_url: str, api_key: str, sender: str, timeout: int = 10) -> None:
        self.api_url = api_url
        self.sender = sender
        self.timeout = timeout
        self._session = requests.Session()
        self._session.max_redirects = 3
        if api_key:
            self._session.headers["Authorization"] = f"Bearer {api_key}"

    def send(self, to: str, subject: str, plain_text: str, html: Optional[str] = None) -> None:
        message = {
            "senderAddress": self.sender,
            "recipients": {"to": [{"address": to}]},
            "content": {"subject": subject, "plainText": plain_text, "html": html},
        }
        try:
            resp = self._session.post(self.api_url, json=message, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Failed to send email %r to %s: %s", subject, to, e)
            return
        logger.info("Sent email %r to %s", subject, to)


class LoggingEmailTransport:
    """Record outgoing mail in memory instead of sending it. Development only.

    The last `keep` messages stay in .outbox (a bounded deque) so a developer
    or a test can read the one-time codes. The log line carries recipient and
    subject only; message bodies hold codes and never reach the log.
    """

    def __init__(self, keep: int = 100) -> None:
        self.outbox: deque[dict] = deque(maxlen=keep)

    def send(self, to: str, subject: str, plain_text: str, html: Optional[str] = None) -> None:
        self.outbox.append({"to": to, "subject": subject, "plain_text": plain_text, "html": html})
        logger.info("Email to %s: %s (not sent, kept in outbox)", to, subject)


def build_transport() -> EmailTransport:
    """Pick the transport from settings: HTTP when EMAIL_API_URL is set.

    Without EMAIL_API_URL the in-memory transport is used, but only with
    DEBUG=true. In production that would silently drop signup and reset
    codes, so startup fails instead.
    """
    cfg = get_settings()
    if cfg.email_api_url:
        return HttpEmailTransport(cfg.email_api_url, cfg.email_api_key, cfg.email_sender)
    if not cfg.debug:
        raise RuntimeError(
            "EMAIL_API_URL is required in production mode. "
            "Set EMAIL_API_URL (and EMAIL_API_KEY), or set DEBUG=true for local development."
        )
    logger.warning("EMAIL_API_URL not set -- outgoing email is kept in memory, not sent")
    return LoggingEmailTransport()
