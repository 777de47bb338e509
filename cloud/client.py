"""
Cloud backup API client for GestVault Companion.

Talks to the remote backup service under ``/api/v1``:
- Listing, uploading, downloading and deleting backups
- Auth check and plan/usage information
- Device linking (deep-link token or manual pairing code)

Certificates are validated against the operating system trust store.
"""

import os
import ssl
import json
import hashlib
import logging
from pathlib import Path
from typing import Any, BinaryIO, Optional
from dataclasses import dataclass, field

import httpx
import truststore

from config import config
from cloud.progress import CancelToken, ProgressReporter
from errors import (
    AuthExpired,
    CloudError,
    CloudNotConfigured,
    LinkRejected,
    NetworkError,
    QuotaExceeded,
    RateLimited,
    RemoteNotFound,
    TokenExpired,
    TransferCancelled,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


@dataclass
class RemoteBackup:
    """A backup as known to the cloud service."""
    id: int
    original_filename: str = ""
    size_bytes: int = 0
    checksum_sha256: str = ""
    notes: Optional[str] = None
    created_at: str = ""
    uploaded_at: str = ""
    encryption_metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteBackup":
        return cls(
            id=data["id"],
            original_filename=data.get("original_filename") or "",
            size_bytes=int(data.get("size_bytes") or data.get("size") or 0),
            checksum_sha256=data.get("checksum_sha256") or "",
            notes=data.get("notes"),
            created_at=data.get("created_at") or "",
            uploaded_at=data.get("uploaded_at") or data.get("created_at") or "",
            encryption_metadata=data.get("encryption_metadata") or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_filename": self.original_filename,
            "size_bytes": self.size_bytes,
            "checksum_sha256": self.checksum_sha256,
            "notes": self.notes,
            "created_at": self.created_at,
            "uploaded_at": self.uploaded_at,
            "encryption_metadata": self.encryption_metadata,
        }


def tls_context() -> ssl.SSLContext:
    """TLS context that validates certificates against the OS trust store."""
    return truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)


def _error_body(response: httpx.Response) -> tuple[Optional[str], dict]:
    try:
        data = response.json()
    except ValueError:
        return None, {}
    if not isinstance(data, dict):
        return None, {}
    message = data.get("message") or data.get("error") or data.get("detail")
    return message, data.get("errors") or {}


def raise_for_status(response: httpx.Response, device_link: bool = False) -> None:
    """Map a non-2xx response onto the cloud error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return
    message, errors = _error_body(response)
    logger.warning(f"Cloud request {response.request.method} {response.request.url.path} failed: {status}")

    if device_link:
        if status in (401, 404, 410):
            raise TokenExpired(message)
        if status in (403, 422):
            raise LinkRejected(message)

    if status == 401:
        raise AuthExpired(message)
    if status == 403:
        raise QuotaExceeded(message)
    if status == 404:
        raise RemoteNotFound(message)
    if status == 422:
        raise ValidationFailed(message, errors)
    if status == 429:
        raise RateLimited(message)
    raise CloudError(message or f"Server error {status}")


class ProgressFile:
    """
    Binary file wrapper handed to httpx's multipart encoder.

    Every read reports the bytes consumed so far and checks for cancellation.
    """

    def __init__(self, f: BinaryIO, total: int, progress: ProgressReporter, cancel: CancelToken):
        self._file = f
        self.total = total
        self.progress = progress
        self.cancel = cancel
        self._sent = 0

    def read(self, size: int = -1) -> bytes:
        self.cancel.raise_if_cancelled()
        chunk = self._file.read(size)
        self._sent += len(chunk)
        self.progress.update(self._sent, self.total)
        return chunk

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        self._sent = self._file.seek(offset, whence)
        return self._sent

    def tell(self) -> int:
        return self._file.tell()

    def fileno(self) -> int:
        return self._file.fileno()


class CloudSyncClient:
    """Handles requests to the GestVault cloud API."""

    def __init__(
        self,
        server_url: str,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        chunk_size: Optional[int] = None,
    ):
        """
        Args:
            server_url: Base URL of the cloud service
            token: API token of this device (not needed for device linking)
            transport: Custom httpx transport (tests)
            timeout: Timeout for regular requests in seconds
            chunk_size: Download and checksum chunk size in bytes
        """
        if not server_url:
            raise CloudNotConfigured()
        self.server_url = server_url.rstrip("/")
        self.token = token
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.chunk_size = chunk_size or config.UPLOAD_CHUNK_SIZE
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_headers(self, auth: bool = True) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if auth:
            if not self.token:
                raise CloudNotConfigured()
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.server_url,
                timeout=self.timeout,
                verify=tls_context(),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        auth: bool = True,
        device_link: bool = False,
        **kwargs,
    ) -> httpx.Response:
        client = await self._get_client()
        headers = self._get_headers(auth)
        headers.update(kwargs.pop("headers", {}))
        try:
            response = await client.request(method, f"{API_PREFIX}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"Cloud request {method} {path} timed out")
            raise NetworkError("The cloud server did not answer in time") from e
        except httpx.TransportError as e:
            logger.warning(f"Cloud request {method} {path} failed: {e}")
            raise NetworkError() from e
        raise_for_status(response, device_link=device_link)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise CloudError("Invalid response from the server") from e

    # ------------------------------------------------------------------
    # Auth & account
    # ------------------------------------------------------------------

    async def check_auth(self) -> dict[str, Any]:
        """
        Returns:
            {"authenticated": bool, "user": {...} | None}
        """
        try:
            response = await self._request("GET", "/auth/check")
        except AuthExpired:
            return {"authenticated": False, "user": None}
        data = self._json(response)
        return {"authenticated": bool(data.get("authenticated", True)), "user": data.get("user")}

    async def get_plan(self) -> dict[str, Any]:
        """Plan, usage and license information of the linked account."""
        return self._json(await self._request("GET", "/account/plan"))

    async def create_license_checkout(self) -> str:
        """
        Start a license purchase on the web.

        Returns:
            The checkout URL to open in the browser
        """
        data = self._json(await self._request("POST", "/license/checkout", json={}))
        if not isinstance(data, dict) or not data.get("checkout_url"):
            raise CloudError("The server did not return a checkout address")
        return data["checkout_url"]

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    async def list_backups(self, page: int = 1) -> dict[str, Any]:
        """
        Returns:
            {"backups": [RemoteBackup], "meta": {current_page, last_page, per_page, total}}
        """
        data = self._json(await self._request("GET", "/backups", params={"page": max(1, int(page))}))
        items = data.get("data", []) if isinstance(data, dict) else data
        return {
            "backups": [RemoteBackup.from_dict(item) for item in items],
            "meta": {
                "current_page": data.get("current_page", page) if isinstance(data, dict) else page,
                "last_page": data.get("last_page", page) if isinstance(data, dict) else page,
                "per_page": data.get("per_page", len(items)) if isinstance(data, dict) else len(items),
                "total": data.get("total", len(items)) if isinstance(data, dict) else len(items),
            },
        }

    async def get_backup(self, backup_id: int) -> RemoteBackup:
        return RemoteBackup.from_dict(self._json(await self._request("GET", f"/backups/{backup_id}")))

    async def delete_remote(self, backup_id: int) -> None:
        await self._request("DELETE", f"/backups/{backup_id}")
        logger.info(f"Deleted remote backup {backup_id}")

    async def upload(
        self,
        archive_path: Path,
        original_filename: str,
        encryption_metadata: dict[str, Any],
        notes: Optional[str] = None,
        progress: Optional[ProgressReporter] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RemoteBackup:
        """
        Upload an archive as multipart/form-data, streamed in chunks.

        Progress follows bytes handed to the transport and reaches 100 only
        after the server accepted the upload. Never retried automatically.

        Raises:
            AuthExpired, QuotaExceeded, ValidationFailed, NetworkError, TransferCancelled
        """
        archive_path = Path(archive_path)
        progress = progress or ProgressReporter()
        cancel = cancel or CancelToken()

        checksum = hashlib.sha256()
        with open(archive_path, "rb") as f:
            for chunk in iter(lambda: f.read(self.chunk_size), b""):
                checksum.update(chunk)
        file_size = archive_path.stat().st_size

        fields = {
            "original_filename": original_filename,
            "checksum_sha256": checksum.hexdigest(),
            "encryption_metadata": json.dumps(encryption_metadata),
        }
        if notes:
            fields["notes"] = notes

        progress.set(0)
        logger.info(f"Uploading {original_filename} ({file_size} bytes)")
        try:
            with open(archive_path, "rb") as f:
                body = ProgressFile(f, file_size, progress, cancel)
                response = await self._request(
                    "POST",
                    "/backups",
                    data=fields,
                    files={"file": (original_filename, body, "application/octet-stream")},
                    timeout=config.TRANSFER_TIMEOUT,
                )
        except TransferCancelled:
            logger.info(f"Upload of {original_filename} cancelled")
            raise

        backup = RemoteBackup.from_dict(self._json(response))
        progress.complete()
        logger.info(f"Upload complete, remote id {backup.id}")
        return backup

    async def download(
        self,
        backup_id: int,
        dest: Path,
        progress: Optional[ProgressReporter] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Path:
        """
        Stream a backup to dest via ``dest.part``; the part file is removed on
        any failure, so dest only ever appears complete.

        Raises:
            RemoteNotFound, AuthExpired, NetworkError, TransferCancelled
        """
        dest = Path(dest)
        part = dest.with_name(dest.name + ".part")
        progress = progress or ProgressReporter()
        cancel = cancel or CancelToken()
        client = await self._get_client()

        progress.set(0)
        try:
            try:
                async with client.stream(
                    "GET",
                    f"{API_PREFIX}/backups/{backup_id}/download",
                    headers=self._get_headers(),
                    timeout=config.TRANSFER_TIMEOUT,
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise_for_status(response)
                    total = int(response.headers.get("content-length") or 0)
                    received = 0
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    with open(part, "wb") as out:
                        async for chunk in response.aiter_bytes(self.chunk_size):
                            cancel.raise_if_cancelled()
                            out.write(chunk)
                            received += len(chunk)
                            progress.update(received, total)
                        out.flush()
                        os.fsync(out.fileno())
                    if total and received != total:
                        raise NetworkError("The download was interrupted")
            except httpx.TimeoutException as e:
                raise NetworkError("The cloud server did not answer in time") from e
            except httpx.TransportError as e:
                raise NetworkError() from e
            except OSError as e:
                raise CloudError(f"Could not write the downloaded file: {e}") from e
            os.replace(part, dest)
        except BaseException:
            try:
                part.unlink()
            except FileNotFoundError:
                pass
            raise

        progress.complete()
        logger.info(f"Downloaded backup {backup_id} to {dest}")
        return dest

    # ------------------------------------------------------------------
    # Device linking (no API token yet)
    # ------------------------------------------------------------------

    async def confirm_device_link(self, link_token: str, device_name: Optional[str] = None) -> dict[str, Any]:
        """
        Exchange a short-lived deep-link token for this device's API token.

        Returns:
            {"api_token": str, "user": {...}}

        Raises:
            TokenExpired: Token unknown, used or expired
            LinkRejected: Server refused to link this device
        """
        response = await self._request(
            "POST",
            "/device-link/confirm",
            auth=False,
            device_link=True,
            json={"token": link_token, "device_name": device_name or config.DEVICE_NAME},
        )
        return self._link_result(response)

    async def verify_device_code(self, code: str, device_name: Optional[str] = None) -> dict[str, Any]:
        """Manual pairing: exchange the code shown on the web panel."""
        response = await self._request(
            "POST",
            "/device-link/verify-code",
            auth=False,
            device_link=True,
            json={"code": code.strip().upper(), "device_name": device_name or config.DEVICE_NAME},
        )
        return self._link_result(response)

    def _link_result(self, response: httpx.Response) -> dict[str, Any]:
        data = self._json(response)
        if not isinstance(data, dict) or not data.get("api_token"):
            raise LinkRejected("The server did not return a device token")
        return {"api_token": data["api_token"], "user": data.get("user")}
