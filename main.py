"""
GestVault Companion - Main Entry Point

Local FastAPI service behind the accounting UI. Owns the single unlocked
company session and exposes vault, backup and cloud operations.
Runs on http://127.0.0.1:18422.
"""

import json
import asyncio
import logging
from pathlib import Path
from typing import Any, Optional
from contextlib import asynccontextmanager
from datetime import datetime

import httpx
from fastapi import FastAPI, Request, UploadFile, File, Form
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware

from config import config, VERSION
from backup import BackupPackager, DataRelocator
from backup.relocate import detect_volumes
from cloud import CloudAccount, CancelToken, DeepLinkQueue, ProgressStream
from cloud.deep_link import process_pending
from cloud import transfers
from crypto import KeyDerivation, SecretStore
from errors import CloudError, GestVaultError, InvalidRequest
from tenants import Session, TenantRegistry, VaultManager

logger = logging.getLogger(__name__)

__version__ = VERSION

UPLOAD_PROGRESS = "cloud:upload-progress"
DOWNLOAD_PROGRESS = "cloud:download-progress"


# Global state
class AppState:
    """Application state container. The vault manager is the single owner of the session."""
    registry: Optional[TenantRegistry] = None
    vault: Optional[VaultManager] = None
    packager: Optional[BackupPackager] = None
    relocator: Optional[DataRelocator] = None
    temp_dir: Optional[Path] = None
    cloud_transport: Optional[httpx.AsyncBaseTransport] = None
    deep_links: DeepLinkQueue
    processing_logs: list[dict]
    ui_ready: bool = False

    def __init__(self):
        self.deep_links = DeepLinkQueue()
        self.processing_logs = []
        self._subscribers: list[asyncio.Queue] = []
        self._transfer: Optional[CancelToken] = None

    def init(
        self,
        storage_dir: Optional[Path] = None,
        kdf: Optional[KeyDerivation] = None,
        secret_store: Optional[SecretStore] = None,
        cloud_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Build the service objects. Arguments override config (used by tests)."""
        if storage_dir is None:
            self.registry = TenantRegistry(config.index_path, config.tenants_dir)
            self.temp_dir = config.temp_dir
        else:
            storage_dir = Path(storage_dir)
            self.registry = TenantRegistry(storage_dir / "tenants.json", storage_dir / "tenants")
            self.temp_dir = storage_dir / "tmp"
            self.temp_dir.mkdir(parents=True, exist_ok=True)

        self.vault = VaultManager(self.registry, kdf=kdf, secret_store=secret_store)
        self.packager = BackupPackager(self.vault)
        self.relocator = DataRelocator(self.vault)
        self.cloud_transport = cloud_transport
        self.deep_links = DeepLinkQueue()
        self.ui_ready = False

    @property
    def initialized(self) -> bool:
        return self.vault is not None

    def current_session(self) -> Optional[Session]:
        return self.vault.current_session() if self.vault else None

    def require_session(self) -> Session:
        return self.vault.require_session()

    def cloud_account(self) -> CloudAccount:
        return CloudAccount(self.require_session(), transport=self.cloud_transport)

    def add_log(self, level: str, message: str, details: str = ""):
        """Add a log entry."""
        self.processing_logs.append({
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "message": message,
            "details": details,
        })
        # Keep only last 100 logs
        if len(self.processing_logs) > 100:
            self.processing_logs = self.processing_logs[-100:]

    # Event channel (server-sent events)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=256)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, channel: str, payload: Any):
        for queue in list(self._subscribers):
            try:
                queue.put_nowait((channel, payload))
            except asyncio.QueueFull:
                logger.warning(f"Dropping {channel} event for a slow subscriber")

    # Transfers

    def begin_transfer(self) -> CancelToken:
        if self._transfer is not None:
            raise CloudError("Another transfer is already running")
        self._transfer = CancelToken()
        return self._transfer

    def end_transfer(self, token: CancelToken):
        if self._transfer is token:
            self._transfer = None

    def cancel_transfer(self) -> bool:
        if self._transfer is None:
            return False
        self._transfer.cancel()
        return True

    def shutdown(self):
        """Cancel transfers and lock the vault."""
        self.cancel_transfer()
        if self.vault is not None:
            try:
                self.vault.lock()
            except GestVaultError as e:
                logger.error(f"Locking on shutdown failed: {e.user_message}")


app_state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    if not app_state.initialized:
        app_state.init()
    app_state.add_log("info", "GestVault Companion started", f"Server running on http://{config.HOST}:{config.PORT}")

    yield

    # Shutdown - cancel transfers, seal and lock
    app_state.shutdown()
    app_state.add_log("info", "GestVault Companion stopped", "Vault locked")


# Create FastAPI app
app = FastAPI(
    title="GestVault Companion",
    description="Local encrypted vault service for the GestVault accounting app",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware (the UI is served from its own origin)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Must be False when allow_origins is "*"
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GestVaultError)
async def gestvault_error_handler(request: Request, exc: GestVaultError):
    """Every library error becomes a typed failure result."""
    app_state.add_log("warning", exc.user_message, f"{request.method} {request.url.path}: {exc.code}")
    content = {"success": False, "error": exc.code, "message": exc.user_message}
    errors = getattr(exc, "errors", None)
    if errors:
        content["errors"] = errors
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error in {request.method} {request.url.path}")
    app_state.add_log("error", "Unexpected error", f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "internal_error", "message": "An unexpected error occurred"},
    )


def ok(data: Any = None, message: Optional[str] = None) -> dict:
    result = {"success": True, "data": data}
    if message:
        result["message"] = message
    return result


async def read_json(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def required(data: dict, name: str) -> Any:
    value = data.get(name)
    if value is None or value == "":
        raise InvalidRequest(f"Missing parameter: {name}")
    return value


async def try_process_deep_link() -> Optional[dict]:
    """Confirm a queued deep link once the UI listens and a company is unlocked."""
    if not app_state.ui_ready or not app_state.deep_links.pending:
        return None
    session = app_state.current_session()
    if session is None:
        return None
    result = await process_pending(app_state.deep_links, session, app_state.publish, app_state.cloud_transport)
    if result is not None:
        level = "info" if result["success"] else "warning"
        app_state.add_log(level, "Device link processed", "linked" if result["success"] else result["error"])
    return result


async def forward_progress(stream: ProgressStream, channel: str):
    async for percent in stream:
        app_state.publish(channel, {"percent": percent})


# ============================================================================
# Companies (tenants)
# ============================================================================

@app.get("/api/tenants")
async def list_tenants():
    """List companies. Works while everything is locked."""
    registry = app_state.registry
    return ok({
        "tenants": [t.to_dict() for t in registry.list_tenants()],
        "last_tenant_id": registry.last_tenant_id,
    })


@app.post("/api/tenants")
async def add_tenant(request: Request):
    data = await read_json(request)
    info = app_state.registry.add(required(data, "name"), data.get("data_path"))
    app_state.add_log("info", "Company added", info.name)
    return ok(info.to_dict())


@app.patch("/api/tenants/{tenant_id}")
async def rename_tenant(tenant_id: str, request: Request):
    data = await read_json(request)
    info = app_state.registry.rename(tenant_id, required(data, "name"))
    session = app_state.current_session()
    if session is not None and session.tenant_id == tenant_id:
        session.tenant = info
    return ok(info.to_dict())


@app.delete("/api/tenants/{tenant_id}")
async def delete_tenant(tenant_id: str):
    await asyncio.to_thread(app_state.vault.delete_tenant, tenant_id)
    app_state.add_log("info", "Company deleted", tenant_id)
    return ok()


# ============================================================================
# Vault API
# ============================================================================

@app.get("/api/tenants/{tenant_id}/status")
async def vault_status(tenant_id: str):
    return ok(app_state.vault.status(tenant_id))


@app.post("/api/tenants/{tenant_id}/create")
async def create_vault(tenant_id: str, request: Request):
    data = await read_json(request)
    session = await asyncio.to_thread(app_state.vault.create, tenant_id, data.get("password", ""))
    app_state.add_log("info", "Encrypted database created", session.tenant.name)
    await try_process_deep_link()
    return ok(session.info(), "Company configured")


@app.post("/api/tenants/{tenant_id}/unlock")
async def unlock_vault(tenant_id: str, request: Request):
    data = await read_json(request)
    session = await asyncio.to_thread(app_state.vault.unlock, tenant_id, data.get("password", ""))
    app_state.add_log("info", "Company unlocked", session.tenant.name)
    await try_process_deep_link()
    return ok(session.info())


@app.post("/api/tenants/{tenant_id}/unlock-passkey")
async def unlock_vault_passkey(tenant_id: str):
    session = await asyncio.to_thread(app_state.vault.unlock_with_secret_store, tenant_id)
    app_state.add_log("info", "Company unlocked with passkey", session.tenant.name)
    await try_process_deep_link()
    return ok(session.info())


@app.post("/api/lock")
async def lock_vault():
    """Seal and lock the current company. Safe to call when nothing is unlocked."""
    app_state.cancel_transfer()
    await asyncio.to_thread(app_state.vault.lock)
    app_state.add_log("info", "Company locked", "Key cleared from memory")
    return ok(message="Locked")


@app.get("/api/session")
async def get_session():
    session = app_state.current_session()
    return ok(session.info() if session else None)


@app.post("/api/tenants/{tenant_id}/change-password")
async def change_password(tenant_id: str, request: Request):
    data = await read_json(request)
    await asyncio.to_thread(
        app_state.vault.change_secret,
        tenant_id,
        data.get("current_password", ""),
        data.get("new_password", ""),
    )
    app_state.add_log("info", "Password changed", tenant_id)
    return ok(message="Password changed")


@app.get("/api/tenants/{tenant_id}/passkey")
async def passkey_status(tenant_id: str):
    return ok(app_state.vault.passkey_info(tenant_id))


@app.post("/api/tenants/{tenant_id}/passkey")
async def enable_passkey(tenant_id: str, request: Request):
    data = await read_json(request)
    await asyncio.to_thread(app_state.vault.enable_passkey, tenant_id, data.get("password", ""))
    app_state.add_log("info", "Passkey enabled", tenant_id)
    return ok(message="Passkey enabled")


@app.delete("/api/tenants/{tenant_id}/passkey")
async def disable_passkey(tenant_id: str):
    app_state.vault.disable_passkey(tenant_id)
    app_state.add_log("info", "Passkey disabled", tenant_id)
    return ok(message="Passkey disabled")


# ============================================================================
# Attachments API
# ============================================================================

@app.get("/api/attachments")
async def list_attachments(expense_id: Optional[int] = None):
    return ok(app_state.require_session().list_attachments(expense_id))


@app.post("/api/attachments")
async def upload_attachment(file: UploadFile = File(...), expense_id: Optional[int] = Form(None)):
    """Encrypt an uploaded document into the current company."""
    session = app_state.require_session()
    content = await file.read()
    record = await asyncio.to_thread(
        session.store_attachment,
        file.filename or "document",
        content,
        file.content_type,
        expense_id,
    )
    app_state.add_log("info", "Attachment stored", f"{len(content)} bytes")
    return ok(record)


@app.get("/api/attachments/{opaque_name}")
async def get_attachment(opaque_name: str):
    session = app_state.require_session()
    record = session.attachment_record(opaque_name)
    content = await asyncio.to_thread(session.decrypt_attachment, opaque_name)
    filename = record["nombre_original"].replace('"', "")
    return Response(
        content=content,
        media_type=record.get("tipo_mime") or "application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.delete("/api/attachments/{opaque_name}")
async def delete_attachment(opaque_name: str):
    app_state.require_session().remove_attachment(opaque_name)
    return ok()


# ============================================================================
# Backup API
# ============================================================================

@app.post("/api/backup/export")
async def export_backup(request: Request):
    data = await read_json(request)
    session = app_state.require_session()
    dest = Path(required(data, "dest_path")).expanduser()
    manifest = await asyncio.to_thread(app_state.packager.export, session.tenant_id, dest, data.get("note", ""))
    app_state.add_log("info", "Backup exported", str(dest))
    return ok({"path": str(dest), "manifest": manifest})


@app.post("/api/backup/inspect")
async def inspect_backup(request: Request):
    data = await read_json(request)
    manifest = await asyncio.to_thread(app_state.packager.inspect, Path(required(data, "archive_path")))
    return ok(manifest)


@app.post("/api/backup/import")
async def import_backup(request: Request):
    data = await read_json(request)
    info, message = await asyncio.to_thread(
        app_state.packager.import_,
        Path(required(data, "archive_path")),
        data.get("target_tenant_id"),
        bool(data.get("replace", False)),
        data.get("name"),
    )
    app_state.add_log("info", "Backup imported", message)
    return ok(info.to_dict(), message)


@app.get("/api/tenants/{tenant_id}/data-path")
async def data_path_info(tenant_id: str):
    return ok(app_state.packager.data_path_info(tenant_id))


@app.get("/api/data-path/default")
async def default_data_path():
    return ok({"path": str(app_state.relocator.default_path())})


@app.get("/api/data-path/volumes")
async def list_volumes():
    """External drives a company can be moved to, with a write check each."""
    return ok(await asyncio.to_thread(detect_volumes))


@app.post("/api/tenants/{tenant_id}/data-path/migrate")
async def migrate_data(tenant_id: str, request: Request):
    data = await read_json(request)
    info = await asyncio.to_thread(app_state.relocator.migrate, tenant_id, Path(required(data, "new_path")))
    app_state.add_log("info", "Company data moved", info.data_path or "")
    return ok(info.to_dict(), "Data moved")


@app.post("/api/tenants/{tenant_id}/data-path/reset")
async def reset_data_path(tenant_id: str):
    info = await asyncio.to_thread(app_state.relocator.reset_to_default, tenant_id)
    app_state.add_log("info", "Company data moved to default location", tenant_id)
    return ok(info.to_dict(), "Data moved")


# ============================================================================
# Cloud API
# ============================================================================

@app.get("/api/cloud/config")
async def cloud_config():
    account = app_state.cloud_account()
    cfg = account.get_config()
    if cfg is None:
        return ok({"connected": False})
    try:
        return ok(await account.status())
    except CloudError as e:
        # Connection stays configured even if the server cannot confirm it now
        return ok({"connected": True, "server_url": cfg["server_url"], "authenticated": None, "error": e.code})


@app.post("/api/cloud/configure")
async def cloud_configure(request: Request):
    data = await read_json(request)
    server_url = data.get("server_url") or config.CLOUD_API_URL
    result = await app_state.cloud_account().configure(server_url, required(data, "token"))
    app_state.add_log("info", "Cloud connected", result["server_url"])
    return ok(result)


@app.post("/api/cloud/disconnect")
async def cloud_disconnect():
    app_state.cloud_account().disconnect()
    app_state.add_log("info", "Cloud disconnected")
    return ok()


@app.get("/api/cloud/check-auth")
async def cloud_check_auth():
    async with app_state.cloud_account().client() as client:
        return ok(await client.check_auth())


@app.get("/api/cloud/plan")
async def cloud_plan():
    async with app_state.cloud_account().client() as client:
        return ok(await client.get_plan())


@app.post("/api/cloud/license/checkout")
async def cloud_license_checkout():
    async with app_state.cloud_account().client() as client:
        checkout_url = await client.create_license_checkout()
    return ok({"checkout_url": checkout_url})


@app.get("/api/cloud/backups")
async def cloud_list_backups(page: int = 1):
    async with app_state.cloud_account().client() as client:
        result = await client.list_backups(page)
    return ok({"backups": [b.to_dict() for b in result["backups"]], "meta": result["meta"]})


@app.get("/api/cloud/backups/{backup_id}")
async def cloud_get_backup(backup_id: int):
    async with app_state.cloud_account().client() as client:
        return ok((await client.get_backup(backup_id)).to_dict())


@app.delete("/api/cloud/backups/{backup_id}")
async def cloud_delete_backup(backup_id: int):
    async with app_state.cloud_account().client() as client:
        await client.delete_remote(backup_id)
    app_state.add_log("info", "Cloud backup deleted", str(backup_id))
    return ok()


@app.post("/api/cloud/upload")
async def cloud_upload(request: Request):
    """Seal the current company end-to-end and upload it. Progress on cloud:upload-progress."""
    data = await read_json(request)
    session = app_state.require_session()
    account = app_state.cloud_account()
    cancel = app_state.begin_transfer()
    stream = ProgressStream()
    forwarder = asyncio.create_task(forward_progress(stream, UPLOAD_PROGRESS))
    try:
        backup = await transfers.upload_backup(
            session, app_state.packager, account, app_state.temp_dir,
            notes=data.get("notes"), progress=stream.reporter(), cancel=cancel,
        )
    finally:
        stream.close()
        await forwarder
        app_state.end_transfer(cancel)
    app_state.add_log("info", "Cloud backup uploaded", f"Remote id {backup.id}")
    return ok(backup.to_dict())


@app.post("/api/cloud/backups/{backup_id}/download")
async def cloud_download(backup_id: int, request: Request):
    """Download a backup, unseal it and save it as a regular archive."""
    data = await read_json(request)
    session = app_state.require_session()
    account = app_state.cloud_account()
    dest = Path(required(data, "dest_path")).expanduser()
    cancel = app_state.begin_transfer()
    stream = ProgressStream()
    forwarder = asyncio.create_task(forward_progress(stream, DOWNLOAD_PROGRESS))
    try:
        await transfers.download_backup(
            session, app_state.packager, account, backup_id, dest, app_state.temp_dir,
            secret=data.get("password"), progress=stream.reporter(), cancel=cancel,
        )
    finally:
        stream.close()
        await forwarder
        app_state.end_transfer(cancel)
    app_state.add_log("info", "Cloud backup downloaded", str(dest))
    return ok({"path": str(dest)})


@app.post("/api/cloud/backups/{backup_id}/import")
async def cloud_import(backup_id: int, request: Request):
    """Download, unseal, validate and restore a cloud backup."""
    data = await read_json(request)
    session = app_state.require_session()
    account = app_state.cloud_account()
    cancel = app_state.begin_transfer()
    stream = ProgressStream()
    forwarder = asyncio.create_task(forward_progress(stream, DOWNLOAD_PROGRESS))
    try:
        info, message = await transfers.import_backup(
            session, app_state.packager, account, backup_id, app_state.temp_dir,
            secret=data.get("password"), replace=bool(data.get("replace", False)),
            progress=stream.reporter(), cancel=cancel,
        )
    finally:
        stream.close()
        await forwarder
        app_state.end_transfer(cancel)
    app_state.add_log("info", "Cloud backup imported", message)
    return ok(info.to_dict(), message)


@app.post("/api/cloud/cancel")
async def cloud_cancel():
    return ok({"cancelled": app_state.cancel_transfer()})


@app.post("/api/cloud/verify-code")
async def cloud_verify_code(request: Request):
    """Manual device pairing with the code shown on the web panel."""
    data = await read_json(request)
    server_url = data.get("server_url") or config.CLOUD_API_URL
    result = await app_state.cloud_account().link_with_code(server_url, required(data, "code"))
    app_state.add_log("info", "Device linked", result["server_url"])
    return ok(result)


# ============================================================================
# Deep links & events
# ============================================================================

@app.post("/api/deep-link")
async def receive_deep_link(request: Request):
    """Queue a gestvault://connect link handed over by the desktop shell."""
    data = await read_json(request)
    queued = app_state.deep_links.submit(required(data, "url"))
    if not queued:
        raise InvalidRequest("Not a valid connect link")
    result = await try_process_deep_link()
    return ok({"queued": True, "processed": result is not None})


@app.post("/api/ui-ready")
async def ui_ready():
    """The UI is listening for events; queued deep links may now be processed."""
    app_state.ui_ready = True
    result = await try_process_deep_link()
    return ok({"processed": result is not None})


@app.get("/api/events")
async def events(request: Request):
    """Server-sent events: upload/download progress and device-link results."""
    queue = app_state.subscribe()
    app_state.ui_ready = True

    async def stream():
        try:
            yield ": connected\n\n"
            await try_process_deep_link()
            while not await request.is_disconnected():
                try:
                    channel, payload = await asyncio.wait_for(queue.get(), timeout=15)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {channel}\ndata: {json.dumps(payload)}\n\n"
        finally:
            app_state.unsubscribe(queue)

    return StreamingResponse(stream(), media_type="text/event-stream")


# ============================================================================
# Logs & version
# ============================================================================

@app.get("/api/logs")
async def get_logs(limit: int = 50):
    """Get recent activity logs."""
    logs = app_state.processing_logs[-limit:]
    return {"logs": logs}


@app.delete("/api/logs")
async def clear_logs():
    """Clear activity logs."""
    app_state.processing_logs = []
    return {"success": True, "message": "Logs cleared"}


@app.get("/api/version")
async def get_version():
    """Get current application version."""
    return {
        "version": __version__,
        "app_name": "GestVault Companion",
    }


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(config.logs_dir / "companion.log", encoding="utf-8")],
    )
    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        reload=False,
        log_level="info",
    )
