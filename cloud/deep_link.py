"""
``gestvault://connect?token=...&server=...`` deep links.

A link can arrive before the UI is ready or before any vault is unlocked, so
it is queued and processed later. Only the most recent link is kept.
"""

import logging
import threading
from typing import Any, Callable, Optional
from dataclasses import dataclass
from urllib.parse import urlsplit, parse_qs

import httpx

from config import config
from cloud.account import CloudAccount
from errors import GestVaultError
from tenants.session import Session

logger = logging.getLogger(__name__)

CONNECTED_EVENT = "deep-link:connected"


@dataclass
class DeepLink:
    token: str
    server: str


def parse_deep_link(url: str, scheme: Optional[str] = None) -> Optional[DeepLink]:
    """Return the link data, or None for anything that is not a valid connect link."""
    scheme = scheme or config.DEEP_LINK_SCHEME
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if parts.scheme.lower() != scheme:
        return None
    if parts.netloc != "connect" and parts.path.strip("/") != "connect":
        return None

    query = parse_qs(parts.query)
    token = (query.get("token") or [""])[0]
    server = (query.get("server") or [""])[0]
    if not token or not server:
        return None
    if urlsplit(server).scheme not in ("http", "https"):
        return None
    return DeepLink(token=token, server=server.rstrip("/"))


class DeepLinkQueue:
    """Holds at most one pending link."""

    def __init__(self):
        self._pending: Optional[DeepLink] = None
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def submit(self, url: str) -> bool:
        link = parse_deep_link(url)
        if link is None:
            logger.warning("Ignoring malformed deep link")
            return False
        with self._lock:
            self._pending = link
        logger.info(f"Deep link queued for server {link.server}")
        return True

    def take(self) -> Optional[DeepLink]:
        """Remove and return the pending link."""
        with self._lock:
            link, self._pending = self._pending, None
        return link


async def process_pending(
    queue: DeepLinkQueue,
    session: Session,
    publish: Callable[[str, dict[str, Any]], None],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[dict[str, Any]]:
    """
    Confirm the queued link for the unlocked tenant and publish the result.

    The queue is emptied before the network call so a link is never
    confirmed twice.
    """
    link = queue.take()
    if link is None:
        return None

    try:
        result = await CloudAccount(session, transport=transport).link_with_token(link.server, link.token)
        payload = {"success": True, "user": result["user"], "server": result["server_url"]}
    except GestVaultError as e:
        logger.warning(f"Deep link confirmation failed: {e.code}")
        payload = {"success": False, "error": e.code, "message": e.user_message}

    publish(CONNECTED_EVENT, payload)
    return payload
