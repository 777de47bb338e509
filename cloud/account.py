"""
Cloud account connection for GestVault Companion.

Manages:
- Server URL and API token, stored in the tenant's encrypted database
- Token verification against the cloud
- Device linking via deep-link token or pairing code
"""

import logging
from typing import Any, Optional

import httpx

from cloud.client import CloudSyncClient
from errors import AuthExpired, CloudNotConfigured
from tenants.session import Session

logger = logging.getLogger(__name__)

SERVER_KEY = "cloud_server_url"
TOKEN_KEY = "cloud_token"


class CloudAccount:
    """Cloud credentials of the unlocked tenant. They exist only while it is unlocked."""

    def __init__(self, session: Session, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            session: The unlocked tenant session
            transport: Custom httpx transport handed to every client (tests)
        """
        self.session = session
        self.transport = transport

    # ------------------------------------------------------------------
    # Stored credentials
    # ------------------------------------------------------------------

    def _get_value(self, key: str) -> Optional[str]:
        rows = self.session.db.query("SELECT valor FROM configuracion WHERE clave = ?", (key,))
        return rows[0]["valor"] if rows else None

    def _save(self, server_url: str, token: str) -> None:
        db = self.session.db
        for key, value in ((SERVER_KEY, server_url.rstrip("/")), (TOKEN_KEY, token)):
            db.execute(
                "INSERT INTO configuracion (clave, valor, actualizado_en) VALUES (?, ?, CURRENT_TIMESTAMP) "
                "ON CONFLICT(clave) DO UPDATE SET valor = excluded.valor, actualizado_en = CURRENT_TIMESTAMP",
                (key, value),
            )
        db.commit()

    def get_config(self) -> Optional[dict[str, str]]:
        server_url = self._get_value(SERVER_KEY)
        token = self._get_value(TOKEN_KEY)
        if not server_url or not token:
            return None
        return {"server_url": server_url, "token": token}

    @property
    def is_connected(self) -> bool:
        return self.get_config() is not None

    def client(self) -> CloudSyncClient:
        """
        Raises:
            CloudNotConfigured: No server/token stored for this tenant
        """
        cfg = self.get_config()
        if cfg is None:
            raise CloudNotConfigured()
        return CloudSyncClient(cfg["server_url"], cfg["token"], transport=self.transport)

    def disconnect(self) -> None:
        db = self.session.db
        db.execute("DELETE FROM configuracion WHERE clave IN (?, ?)", (SERVER_KEY, TOKEN_KEY))
        db.commit()
        logger.info(f"Cloud disconnected for tenant {self.session.tenant_id}")

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    async def configure(self, server_url: str, token: str) -> dict[str, Any]:
        """
        Verify a token with the server and store it.

        Raises:
            AuthExpired: Token rejected
            NetworkError: Server unreachable
        """
        async with CloudSyncClient(server_url, token, transport=self.transport) as client:
            result = await client.check_auth()
        if not result["authenticated"]:
            raise AuthExpired("Invalid or expired token")
        self._save(server_url, token)
        logger.info(f"Cloud configured for tenant {self.session.tenant_id}")
        return {"user": result["user"], "server_url": server_url.rstrip("/")}

    async def status(self) -> dict[str, Any]:
        """Stored connection plus a best-effort auth check."""
        cfg = self.get_config()
        if cfg is None:
            return {"connected": False}
        async with self.client() as client:
            result = await client.check_auth()
        return {
            "connected": True,
            "server_url": cfg["server_url"],
            "authenticated": result["authenticated"],
            "user": result["user"],
        }

    async def link_with_token(self, server_url: str, link_token: str) -> dict[str, Any]:
        """Complete a deep-link pairing and store the issued API token."""
        async with CloudSyncClient(server_url, transport=self.transport) as client:
            result = await client.confirm_device_link(link_token)
        self._save(server_url, result["api_token"])
        logger.info(f"Device linked for tenant {self.session.tenant_id}")
        return {"user": result["user"], "server_url": server_url.rstrip("/")}

    async def link_with_code(self, server_url: str, code: str) -> dict[str, Any]:
        """Complete a manual pairing with the code from the web panel."""
        async with CloudSyncClient(server_url, transport=self.transport) as client:
            result = await client.verify_device_code(code)
        self._save(server_url, result["api_token"])
        logger.info(f"Device linked with pairing code for tenant {self.session.tenant_id}")
        return {"user": result["user"], "server_url": server_url.rstrip("/")}
