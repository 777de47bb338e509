import sys
import pathlib

import pytest
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

# Make the project root importable when running from the tests folder
ROOT = pathlib.Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from crypto import KeyDerivation, SecretStore
from tenants import TenantRegistry, VaultManager

# Keeps PBKDF2 fast in tests; production default is checked separately
FAST_ITERATIONS = 1000


class MemoryKeyring(KeyringBackend):
    """In-memory stand-in for the OS credential vault."""

    priority = 1

    def __init__(self):
        super().__init__()
        self.entries = {}

    def get_password(self, service, username):
        return self.entries.get((service, username))

    def set_password(self, service, username, password):
        self.entries[(service, username)] = password

    def delete_password(self, service, username):
        try:
            del self.entries[(service, username)]
        except KeyError:
            raise PasswordDeleteError("not found")


@pytest.fixture
def kdf():
    return KeyDerivation(iterations=FAST_ITERATIONS)


@pytest.fixture
def keyring_backend():
    return MemoryKeyring()


@pytest.fixture
def secret_store(keyring_backend):
    return SecretStore(service="gestvault-test", backend=keyring_backend)


@pytest.fixture
def registry(tmp_path):
    return TenantRegistry(tmp_path / "tenants.json", tmp_path / "tenants")


@pytest.fixture
def vault(registry, kdf, secret_store):
    manager = VaultManager(registry, kdf=kdf, secret_store=secret_store)
    yield manager
    manager.lock()


@pytest.fixture
def tenant(registry):
    return registry.add("Acme")


@pytest.fixture
def session(vault, tenant):
    """Acme, configured and unlocked with "correct-horse"."""
    return vault.create(tenant.id, "correct-horse")


def add_invoice(session, numero="F-2024-001"):
    """Insert one client and one invoice for it."""
    db = session.db
    cur = db.execute("INSERT INTO clientes (nombre, nif) VALUES (?, ?)", ("Cliente Uno", "B12345678"))
    db.execute(
        "INSERT INTO facturas (numero, cliente_id, fecha, base_imponible, total_iva, total) VALUES (?, ?, ?, ?, ?, ?)",
        (numero, cur.lastrowid, "2024-03-01", 100.0, 21.0, 121.0),
    )
    db.commit()
