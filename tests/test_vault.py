import os
import threading

import pytest

from conftest import add_invoice
from errors import (
    AlreadyConfigured,
    InvalidCredentials,
    NotConfigured,
    PasskeyUnavailable,
    SessionRequired,
    StorageError,
    TenantBusy,
    WeakSecret,
)
from tenants import VaultManager, VaultState
from tenants.lockfile import TenantLock


class Crash(Exception):
    """Stands in for the process dying mid-operation."""


def fresh_manager(registry, kdf, secret_store):
    return VaultManager(registry, kdf=kdf, secret_store=secret_store)


def invoice_numbers(session):
    return [r["numero"] for r in session.db.query("SELECT numero FROM facturas ORDER BY id")]


# ---------------------------------------------------------------------------
# Create / unlock / lock
# ---------------------------------------------------------------------------

def test_acme_scenario(vault, tenant):
    vault.create(tenant.id, "correct-horse")
    vault.lock()
    assert vault.state == VaultState.LOCKED

    session = vault.unlock(tenant.id, "correct-horse")
    assert session.tenant.name == "Acme"
    assert vault.state == VaultState.UNLOCKED
    vault.lock()

    with pytest.raises(InvalidCredentials):
        vault.unlock(tenant.id, "wrong")
    assert vault.current_session() is None
    assert vault.state == VaultState.LOCKED


def test_create_layout(vault, session):
    data_dir = session.data_dir
    assert (data_dir / "db.enc").is_file()
    assert len((data_dir / "salt").read_bytes()) == 32
    assert (data_dir / "attachments").is_dir()
    tables = {r["name"] for r in session.db.query("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"clientes", "facturas", "adjuntos", "configuracion"} <= tables


def test_data_survives_lock_and_unlock(vault, session):
    add_invoice(session)
    tenant_id = session.tenant_id
    vault.lock()
    reopened = vault.unlock(tenant_id, "correct-horse")
    assert invoice_numbers(reopened) == ["F-2024-001"]


def test_uncommitted_changes_are_sealed_on_lock(vault, session):
    session.db.execute("INSERT INTO clientes (nombre) VALUES (?)", ("Pending",))
    tenant_id = session.tenant_id
    vault.lock()
    reopened = vault.unlock(tenant_id, "correct-horse")
    assert reopened.db.query("SELECT nombre FROM clientes") == [{"nombre": "Pending"}]


def test_lock_is_idempotent(vault, session):
    vault.lock()
    vault.lock()
    assert vault.current_session() is None
    assert session.key is None
    assert session.db.closed
    with pytest.raises(SessionRequired):
        vault.require_session()


def test_second_create_is_rejected(vault, session):
    add_invoice(session)
    data_dir = session.data_dir
    before = (data_dir / "db.enc").read_bytes()
    salt = (data_dir / "salt").read_bytes()

    with pytest.raises(AlreadyConfigured):
        vault.create(session.tenant_id, "another-secret")
    assert (data_dir / "db.enc").read_bytes() == before
    assert (data_dir / "salt").read_bytes() == salt
    assert invoice_numbers(vault.require_session()) == ["F-2024-001"]


def test_create_rejects_short_secret(vault, tenant, registry):
    with pytest.raises(WeakSecret):
        vault.create(tenant.id, "abc")
    assert not registry.data_dir(tenant).exists()


def test_unlock_unconfigured_tenant_looks_like_wrong_password(vault, tenant):
    with pytest.raises(InvalidCredentials) as exc:
        vault.unlock(tenant.id, "correct-horse")
    assert exc.value.user_message == InvalidCredentials().user_message


def test_unlock_tampered_database(vault, session):
    data_dir = session.data_dir
    tenant_id = session.tenant_id
    vault.lock()
    blob = bytearray((data_dir / "db.enc").read_bytes())
    blob[20] ^= 0xFF
    (data_dir / "db.enc").write_bytes(bytes(blob))
    with pytest.raises(InvalidCredentials) as exc:
        vault.unlock(tenant_id, "correct-horse")
    assert exc.value.reason == "tag-mismatch"


def test_no_plaintext_on_disk(vault, session):
    add_invoice(session)
    session.store_attachment("ticket.txt", b"Gasolinera Cliente Uno 45,00 EUR")
    vault.seal()
    for path in session.data_dir.rglob("*"):
        if path.is_file():
            content = path.read_bytes()
            assert b"SQLite format 3" not in content
            assert b"Cliente Uno" not in content


def test_second_process_gets_tenant_busy(vault, tenant):
    vault.create(tenant.id, "correct-horse")
    data_dir = vault.require_session().data_dir
    vault.lock()

    other = TenantLock(data_dir)
    other.acquire()
    try:
        with pytest.raises(TenantBusy):
            vault.unlock(tenant.id, "correct-horse")
        assert vault.state == VaultState.LOCKED
    finally:
        other.release()
    vault.unlock(tenant.id, "correct-horse")


def test_unlocking_another_tenant_locks_the_first(vault, registry, session):
    other = registry.add("Beta")
    second = vault.create(other.id, "beta-secret")
    assert session.key is None
    assert vault.current_session() is second


def test_wrong_secret_for_another_tenant_keeps_session(vault, registry, session):
    other = registry.add("Beta")
    vault.create(other.id, "beta-secret")
    acme = vault.unlock(session.tenant_id, "correct-horse")

    with pytest.raises(InvalidCredentials):
        vault.unlock(other.id, "wrong")
    assert vault.current_session() is acme
    assert vault.state == VaultState.UNLOCKED
    add_invoice(acme)
    assert invoice_numbers(acme) == ["F-2024-001"]


def test_reentering_secret_of_open_tenant(vault, session):
    add_invoice(session)
    tenant_id = session.tenant_id

    with pytest.raises(InvalidCredentials):
        vault.unlock(tenant_id, "wrong")
    assert vault.current_session() is session
    assert session.is_active

    session.db.execute("INSERT INTO clientes (nombre) VALUES (?)", ("Pending",))
    reopened = vault.unlock(tenant_id, "correct-horse")
    assert reopened is not session
    assert not session.is_active
    assert invoice_numbers(reopened) == ["F-2024-001"]
    assert {"nombre": "Pending"} in reopened.db.query("SELECT nombre FROM clientes")

    # Tenant lock still held by this process
    with pytest.raises(TenantBusy):
        TenantLock(reopened.data_dir).acquire()
    vault.lock()
    other = TenantLock(reopened.data_dir)
    other.acquire()
    other.release()


def test_lock_waits_for_unlock_in_progress(vault, session, kdf, monkeypatch):
    tenant_id = session.tenant_id
    vault.lock()
    deriving = threading.Event()
    proceed = threading.Event()
    real_derive = kdf.derive

    def slow_derive(secret, salt):
        deriving.set()
        proceed.wait(5)
        return real_derive(secret, salt)

    monkeypatch.setattr(kdf, "derive", slow_derive)
    unlocker = threading.Thread(target=vault.unlock, args=(tenant_id, "correct-horse"))
    unlocker.start()
    assert deriving.wait(5)
    assert vault.state == VaultState.UNLOCKING

    locker = threading.Thread(target=vault.lock)
    locker.start()
    locker.join(0.3)
    assert locker.is_alive()

    proceed.set()
    unlocker.join(5)
    locker.join(5)
    assert not locker.is_alive()
    assert vault.current_session() is None
    assert vault.state == VaultState.LOCKED


def test_create_failure_leaves_nothing_behind(vault, tenant, registry, monkeypatch):
    import tenants.vault as vault_module

    real_write = vault_module.atomic_write_bytes

    def disk_full(path, data):
        if path.name == "db.enc":
            raise OSError(28, "No space left on device")
        return real_write(path, data)

    monkeypatch.setattr(vault_module, "atomic_write_bytes", disk_full)
    with pytest.raises(StorageError):
        vault.create(tenant.id, "correct-horse")

    data_dir = registry.data_dir(tenant)
    assert not data_dir.exists()
    assert list(data_dir.parent.glob(".*staging*")) == []
    assert vault.state == VaultState.LOCKED
    assert vault.current_session() is None

    monkeypatch.undo()
    assert vault.create(tenant.id, "correct-horse").is_active


def test_create_failure_on_final_rename(vault, tenant, registry, monkeypatch):
    real_replace = os.replace

    def refuse_staging(src, dst):
        if ".staging-" in str(src):
            raise OSError(13, "Permission denied")
        return real_replace(src, dst)

    monkeypatch.setattr(os, "replace", refuse_staging)
    with pytest.raises(StorageError):
        vault.create(tenant.id, "correct-horse")
    monkeypatch.undo()

    data_dir = registry.data_dir(tenant)
    assert not data_dir.exists()
    assert list(data_dir.parent.glob(".*staging*")) == []
    assert not vault.status(tenant.id)["is_configured"]


def test_status(vault, tenant, secret_store):
    assert vault.status(tenant.id) == {
        "is_configured": False,
        "has_encrypted_db": False,
        "is_unlocked": False,
        "passkey_supported": True,
        "passkey_enabled": False,
    }
    vault.create(tenant.id, "correct-horse")
    status = vault.status(tenant.id)
    assert status["is_configured"] and status["has_encrypted_db"] and status["is_unlocked"]


def test_delete_active_tenant_is_refused(vault, session, registry):
    with pytest.raises(TenantBusy):
        vault.delete_tenant(session.tenant_id)
    tenant_id = session.tenant_id
    data_dir = session.data_dir
    vault.lock()
    vault.delete_tenant(tenant_id)
    assert not registry.exists(tenant_id)
    assert not data_dir.exists()


# ---------------------------------------------------------------------------
# Attachments through the session
# ---------------------------------------------------------------------------

def test_session_attachment_index(session):
    record = session.store_attachment("factura-luz.pdf", b"%PDF-1.4", "application/pdf")
    name = record["nombre_cifrado"]
    assert record["nombre_original"] == "factura-luz.pdf"
    assert record["tamano"] == 8
    assert session.decrypt_attachment(name) == b"%PDF-1.4"
    assert [r["nombre_cifrado"] for r in session.list_attachments()] == [name]

    session.remove_attachment(name)
    assert session.list_attachments() == []
    assert not (session.attachments_dir / name).exists()


# ---------------------------------------------------------------------------
# Password change
# ---------------------------------------------------------------------------

def test_change_secret(vault, session):
    add_invoice(session)
    record = session.store_attachment("logo.png", b"\x89PNG logo")
    tenant_id = session.tenant_id
    old_salt = session.salt

    vault.change_secret(tenant_id, "correct-horse", "battery-staple")
    assert session.salt != old_salt
    assert not (session.data_dir / ".rekey").exists()
    # The open session keeps working under the new key
    add_invoice(session, "F-2024-002")
    vault.lock()

    with pytest.raises(InvalidCredentials):
        vault.unlock(tenant_id, "correct-horse")
    reopened = vault.unlock(tenant_id, "battery-staple")
    assert invoice_numbers(reopened) == ["F-2024-001", "F-2024-002"]
    assert reopened.decrypt_attachment(record["nombre_cifrado"]) == b"\x89PNG logo"


def test_change_secret_of_locked_tenant(vault, session):
    tenant_id = session.tenant_id
    vault.lock()
    vault.change_secret(tenant_id, "correct-horse", "battery-staple")
    vault.unlock(tenant_id, "battery-staple")


def test_change_secret_rejects_wrong_current(vault, session):
    with pytest.raises(InvalidCredentials):
        vault.change_secret(session.tenant_id, "wrong", "battery-staple")
    with pytest.raises(WeakSecret):
        vault.change_secret(session.tenant_id, "correct-horse", "abc")


def test_change_secret_unconfigured(vault, tenant):
    with pytest.raises(NotConfigured):
        vault.change_secret(tenant.id, "correct-horse", "battery-staple")


def test_crash_before_swap_keeps_old_secret(vault, session, registry, kdf, secret_store, monkeypatch):
    add_invoice(session)
    tenant_id = session.tenant_id
    data_dir = session.data_dir

    def crash(self, data_dir):
        raise Crash()

    monkeypatch.setattr(VaultManager, "_swap_in", crash)
    with pytest.raises(Crash):
        vault.change_secret(tenant_id, "correct-horse", "battery-staple")
    monkeypatch.undo()
    assert (data_dir / ".rekey" / "new" / "db.enc").exists()
    vault.lock()

    manager = fresh_manager(registry, kdf, secret_store)
    reopened = manager.unlock(tenant_id, "correct-horse")
    assert invoice_numbers(reopened) == ["F-2024-001"]
    assert not (data_dir / ".rekey").exists()
    manager.lock()
    with pytest.raises(InvalidCredentials):
        manager.unlock(tenant_id, "battery-staple")


def test_crash_mid_swap_keeps_old_secret(vault, session, registry, kdf, secret_store, monkeypatch):
    add_invoice(session)
    record = session.store_attachment("ticket.jpg", b"jpeg bytes")
    tenant_id = session.tenant_id
    data_dir = session.data_dir

    def partial_swap(self, data_dir):
        # New database moved in, old salt still live
        old_root = data_dir / ".rekey" / "old"
        old_root.mkdir(parents=True)
        os.replace(data_dir / "db.enc", old_root / "db.enc")
        os.replace(data_dir / ".rekey" / "new" / "db.enc", data_dir / "db.enc")
        raise Crash()

    monkeypatch.setattr(VaultManager, "_swap_in", partial_swap)
    with pytest.raises(Crash):
        vault.change_secret(tenant_id, "correct-horse", "battery-staple")
    monkeypatch.undo()
    vault.lock()

    manager = fresh_manager(registry, kdf, secret_store)
    reopened = manager.unlock(tenant_id, "correct-horse")
    assert invoice_numbers(reopened) == ["F-2024-001"]
    assert reopened.decrypt_attachment(record["nombre_cifrado"]) == b"jpeg bytes"
    manager.lock()


def test_crash_after_swap_keeps_new_secret(vault, session, registry, kdf, secret_store, monkeypatch):
    tenant_id = session.tenant_id
    data_dir = session.data_dir
    original = VaultManager._swap_in

    def swap_then_crash(self, data_dir):
        original(self, data_dir)
        raise Crash()

    monkeypatch.setattr(VaultManager, "_swap_in", swap_then_crash)
    with pytest.raises(Crash):
        vault.change_secret(tenant_id, "correct-horse", "battery-staple")
    monkeypatch.undo()
    assert (data_dir / ".rekey" / "DONE").exists()
    vault.lock()

    manager = fresh_manager(registry, kdf, secret_store)
    manager.unlock(tenant_id, "battery-staple")
    assert not (data_dir / ".rekey").exists()
    manager.lock()


def test_commit_during_password_change_uses_new_key(vault, session, registry, kdf, secret_store, monkeypatch):
    tenant_id = session.tenant_id
    original = VaultManager._swap_in
    writer = threading.Thread(target=add_invoice, args=(session, "F-RACE"))
    seen = {}

    def swap_with_concurrent_commit(self, data_dir):
        original(self, data_dir)
        writer.start()
        writer.join(0.3)
        seen["blocked"] = writer.is_alive()

    monkeypatch.setattr(VaultManager, "_swap_in", swap_with_concurrent_commit)
    vault.change_secret(tenant_id, "correct-horse", "battery-staple")
    writer.join(5)
    monkeypatch.undo()
    assert seen["blocked"]
    vault.lock()

    manager = fresh_manager(registry, kdf, secret_store)
    reopened = manager.unlock(tenant_id, "battery-staple")
    assert invoice_numbers(reopened) == ["F-RACE"]
    manager.lock()


def test_attachment_stored_during_password_change(vault, session, registry, kdf, secret_store, monkeypatch):
    tenant_id = session.tenant_id
    original = VaultManager._stage_rekey
    stored = []
    writer = threading.Thread(target=lambda: stored.append(session.store_attachment("ticket.pdf", b"receipt")))
    seen = {}

    def stage_with_concurrent_store(self, *args):
        writer.start()
        writer.join(0.3)
        seen["blocked"] = writer.is_alive()
        original(self, *args)

    monkeypatch.setattr(VaultManager, "_stage_rekey", stage_with_concurrent_store)
    vault.change_secret(tenant_id, "correct-horse", "battery-staple")
    writer.join(5)
    monkeypatch.undo()
    assert seen["blocked"]

    name = stored[0]["nombre_cifrado"]
    assert session.decrypt_attachment(name) == b"receipt"
    vault.lock()

    manager = fresh_manager(registry, kdf, secret_store)
    reopened = manager.unlock(tenant_id, "battery-staple")
    assert reopened.decrypt_attachment(name) == b"receipt"
    manager.lock()


# ---------------------------------------------------------------------------
# Passkey
# ---------------------------------------------------------------------------

def test_passkey_unlock(vault, session):
    tenant_id = session.tenant_id
    vault.enable_passkey(tenant_id, "correct-horse")
    assert vault.passkey_info(tenant_id) == {"supported": True, "enabled": True}
    vault.lock()

    reopened = vault.unlock_with_secret_store(tenant_id)
    assert reopened.via == "passkey"


def test_passkey_requires_correct_secret(vault, session):
    with pytest.raises(InvalidCredentials):
        vault.enable_passkey(session.tenant_id, "wrong")
    assert not vault.passkey_info(session.tenant_id)["enabled"]


def test_passkey_not_enabled(vault, session):
    tenant_id = session.tenant_id
    vault.lock()
    with pytest.raises(PasskeyUnavailable):
        vault.unlock_with_secret_store(tenant_id)


def test_stale_passkey_is_disabled(vault, session, keyring_backend):
    tenant_id = session.tenant_id
    vault.enable_passkey(tenant_id, "correct-horse")
    vault.lock()
    keyring_backend.set_password("gestvault-test", f"tenant:{tenant_id}", os.urandom(32).hex())

    with pytest.raises(PasskeyUnavailable):
        vault.unlock_with_secret_store(tenant_id)
    assert not vault.passkey_info(tenant_id)["enabled"]
    assert vault.unlock(tenant_id, "correct-horse").via == "password"


def test_passkey_follows_password_change(vault, session):
    tenant_id = session.tenant_id
    vault.enable_passkey(tenant_id, "correct-horse")
    vault.change_secret(tenant_id, "correct-horse", "battery-staple")
    vault.lock()
    assert vault.unlock_with_secret_store(tenant_id).via == "passkey"


def test_disable_passkey_keeps_vault(vault, session, keyring_backend):
    tenant_id = session.tenant_id
    vault.enable_passkey(tenant_id, "correct-horse")
    salt = (session.data_dir / "salt").read_bytes()
    vault.disable_passkey(tenant_id)
    assert keyring_backend.entries == {}
    assert (session.data_dir / "salt").read_bytes() == salt
    vault.lock()
    vault.unlock(tenant_id, "correct-horse")
