import httpx
import pytest
from fastapi.testclient import TestClient

import main
from config import config
from backup.relocate import detect_volumes
from conftest import FAST_ITERATIONS, MemoryKeyring
from crypto import KeyDerivation, SecretStore

SERVER = "https://cloud.example.test"


def cloud_handler(request):
    path = request.url.path
    if path == "/api/v1/auth/check":
        return httpx.Response(200, json={"authenticated": True, "user": {"name": "Ana"}})
    if path in ("/api/v1/device-link/confirm", "/api/v1/device-link/verify-code"):
        return httpx.Response(200, json={"api_token": "linked-token", "user": {"name": "Ana"}})
    if path == "/api/v1/backups" and request.method == "GET":
        return httpx.Response(200, json={"data": [], "current_page": 1, "last_page": 1, "per_page": 15, "total": 0})
    if path == "/api/v1/backups" and request.method == "POST":
        return httpx.Response(201, json={"id": 3, "original_filename": "x.zip.enc"})
    if path == "/api/v1/license/checkout" and request.method == "POST":
        return httpx.Response(200, json={"checkout_url": "https://pay.example.test/s/42"})
    return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture
def state(tmp_path, monkeypatch):
    app_state = main.AppState()
    app_state.init(
        storage_dir=tmp_path / "home",
        kdf=KeyDerivation(iterations=FAST_ITERATIONS),
        secret_store=SecretStore(service="gestvault-test", backend=MemoryKeyring()),
        cloud_transport=httpx.MockTransport(cloud_handler),
    )
    monkeypatch.setattr(main, "app_state", app_state)
    return app_state


@pytest.fixture
def client(state):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def tenant_id(client):
    response = client.post("/api/tenants", json={"name": "Acme"})
    assert response.status_code == 200
    tid = response.json()["data"]["id"]
    assert client.post(f"/api/tenants/{tid}/create", json={"password": "correct-horse"}).json()["success"]
    return tid


def test_version(client):
    assert client.get("/api/version").json() == {"version": main.__version__, "app_name": "GestVault Companion"}


def test_vault_lifecycle(client, tenant_id):
    status = client.get(f"/api/tenants/{tenant_id}/status").json()["data"]
    assert status["is_configured"] and status["is_unlocked"]

    assert client.post("/api/lock").json()["success"]
    assert client.post("/api/lock").json()["success"]
    assert client.get("/api/session").json()["data"] is None

    response = client.post(f"/api/tenants/{tenant_id}/unlock", json={"password": "wrong"})
    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "error": "invalid_credentials",
        "message": "Incorrect password or damaged data",
    }

    response = client.post(f"/api/tenants/{tenant_id}/unlock", json={"password": "correct-horse"})
    assert response.json()["data"]["tenant_name"] == "Acme"
    assert client.get("/api/session").json()["data"]["tenant_id"] == tenant_id


def test_tenant_list_works_while_locked(client, tenant_id):
    client.post("/api/lock")
    data = client.get("/api/tenants").json()["data"]
    assert [t["name"] for t in data["tenants"]] == ["Acme"]
    assert data["last_tenant_id"] == tenant_id


def test_second_create_is_rejected(client, tenant_id):
    response = client.post(f"/api/tenants/{tenant_id}/create", json={"password": "other-secret"})
    assert response.status_code == 409
    assert response.json()["error"] == "already_configured"


def test_change_password(client, tenant_id):
    response = client.post(
        f"/api/tenants/{tenant_id}/change-password",
        json={"current_password": "correct-horse", "new_password": "battery-staple"},
    )
    assert response.json()["success"]
    client.post("/api/lock")
    assert client.post(f"/api/tenants/{tenant_id}/unlock", json={"password": "battery-staple"}).json()["success"]


def test_passkey_endpoints(client, tenant_id):
    assert client.post(f"/api/tenants/{tenant_id}/passkey", json={"password": "correct-horse"}).json()["success"]
    assert client.get(f"/api/tenants/{tenant_id}/passkey").json()["data"] == {"supported": True, "enabled": True}
    client.post("/api/lock")
    assert client.post(f"/api/tenants/{tenant_id}/unlock-passkey").json()["data"]["via"] == "passkey"
    client.delete(f"/api/tenants/{tenant_id}/passkey")
    assert client.get(f"/api/tenants/{tenant_id}/passkey").json()["data"]["enabled"] is False


def test_attachments(client, tenant_id):
    response = client.post(
        "/api/attachments",
        files={"file": ("ticket.pdf", b"%PDF-1.4 ticket", "application/pdf")},
    )
    record = response.json()["data"]
    assert record["nombre_original"] == "ticket.pdf"

    name = record["nombre_cifrado"]
    download = client.get(f"/api/attachments/{name}")
    assert download.content == b"%PDF-1.4 ticket"
    assert download.headers["content-type"] == "application/pdf"

    assert client.delete(f"/api/attachments/{name}").json()["success"]
    response = client.get(f"/api/attachments/{name}")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_attachments_need_session(client, tenant_id):
    client.post("/api/lock")
    response = client.get("/api/attachments")
    assert response.status_code == 401
    assert response.json()["error"] == "session_required"


def test_export_inspect_import(client, tenant_id, tmp_path):
    dest = tmp_path / "acme.zip"
    exported = client.post("/api/backup/export", json={"dest_path": str(dest), "note": "q1"}).json()
    assert exported["data"]["manifest"]["note"] == "q1"

    manifest = client.post("/api/backup/inspect", json={"archive_path": str(dest)}).json()["data"]
    assert manifest["tenantId"] == tenant_id

    imported = client.post("/api/backup/import", json={"archive_path": str(dest)}).json()
    assert imported["data"]["name"] == "Acme (restored)"
    assert "restored" in imported["message"]

    response = client.post("/api/backup/import", json={"archive_path": str(dest), "target_tenant_id": tenant_id})
    assert response.status_code == 409
    assert response.json()["error"] == "target_exists"


def test_missing_parameter(client, tenant_id):
    response = client.post("/api/backup/export", json={})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_data_path_migration(client, tenant_id, tmp_path):
    usb = tmp_path / "usb"
    usb.mkdir()
    moved = client.post(f"/api/tenants/{tenant_id}/data-path/migrate", json={"new_path": str(usb)}).json()
    assert moved["data"]["data_path"] == str(usb / f"GestVault-{tenant_id}")
    info = client.get(f"/api/tenants/{tenant_id}/data-path").json()["data"]
    assert info["is_custom"] is True
    reset = client.post(f"/api/tenants/{tenant_id}/data-path/reset").json()
    assert reset["data"]["data_path"] is None


def test_cloud_flow(client, tenant_id):
    assert client.get("/api/cloud/config").json()["data"] == {"connected": False}
    response = client.get("/api/cloud/backups")
    assert response.json()["error"] == "cloud_not_configured"

    configured = client.post("/api/cloud/configure", json={"server_url": SERVER, "token": "abc"}).json()
    assert configured["data"]["server_url"] == SERVER
    assert client.get("/api/cloud/backups").json()["data"]["meta"]["total"] == 0

    uploaded = client.post("/api/cloud/upload", json={"notes": "cierre"}).json()
    assert uploaded["data"]["id"] == 3
    assert client.post("/api/cloud/cancel").json()["data"] == {"cancelled": False}

    assert client.post("/api/cloud/disconnect").json()["success"]
    assert client.get("/api/cloud/config").json()["data"] == {"connected": False}


def test_deep_link_waits_for_ui_and_session(client, state):
    response = client.post("/api/deep-link", json={"url": "https://not-a-link"})
    assert response.status_code == 400

    url = f"gestvault://connect?token=link-1&server={SERVER}"
    assert client.post("/api/deep-link", json={"url": url}).json()["data"] == {"queued": True, "processed": False}

    tid = client.post("/api/tenants", json={"name": "Acme"}).json()["data"]["id"]
    client.post(f"/api/tenants/{tid}/create", json={"password": "correct-horse"})
    # UI not ready yet
    assert state.deep_links.pending

    assert client.post("/api/ui-ready").json()["data"] == {"processed": True}
    assert not state.deep_links.pending
    config = client.get("/api/cloud/config").json()["data"]
    assert config["connected"] is True and config["server_url"] == SERVER


def test_logs(client, tenant_id):
    logs = client.get("/api/logs").json()["logs"]
    assert any(entry["message"] == "Encrypted database created" for entry in logs)
    client.delete("/api/logs")
    assert client.get("/api/logs").json()["logs"] == []


def test_shutdown_locks_vault(state, tmp_path):
    with TestClient(main.app) as c:
        tid = c.post("/api/tenants", json={"name": "Acme"}).json()["data"]["id"]
        c.post(f"/api/tenants/{tid}/create", json={"password": "correct-horse"})
        assert state.current_session() is not None
    assert state.current_session() is None


def test_license_checkout(client, tenant_id):
    client.post("/api/cloud/configure", json={"server_url": SERVER, "token": "abc"})
    response = client.post("/api/cloud/license/checkout").json()
    assert response["data"] == {"checkout_url": "https://pay.example.test/s/42"}


def test_cloud_url_defaults_to_configured_server(client, tenant_id, monkeypatch):
    monkeypatch.setattr(config, "CLOUD_API_URL", SERVER)
    configured = client.post("/api/cloud/configure", json={"token": "abc"}).json()
    assert configured["data"]["server_url"] == SERVER

    client.post("/api/cloud/disconnect")
    linked = client.post("/api/cloud/verify-code", json={"code": "ab12cd"}).json()
    assert linked["data"]["server_url"] == SERVER
    assert client.get("/api/cloud/config").json()["data"]["connected"] is True


def test_default_path_and_volumes(client, state, monkeypatch, tmp_path):
    assert client.get("/api/data-path/default").json()["data"] == {"path": str(tmp_path / "home" / "tenants")}

    mounts = tmp_path / "Volumes"
    (mounts / "BACKUP").mkdir(parents=True)
    monkeypatch.setattr(main, "detect_volumes", lambda: detect_volumes([mounts]))
    volumes = client.get("/api/data-path/volumes").json()["data"]
    assert volumes == [{"name": "BACKUP", "path": str(mounts / "BACKUP"), "available": True}]


def test_unexpected_error_is_typed(state, monkeypatch):
    def broken():
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(state.registry, "list_tenants", broken)
    with TestClient(main.app, raise_server_exceptions=False) as c:
        response = c.get("/api/tenants")
    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": "internal_error",
        "message": "An unexpected error occurred",
    }
    assert state.processing_logs[-1]["message"] == "Unexpected error"
