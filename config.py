"""
Configuration for GestVault Companion.
"""

import os
from pathlib import Path
from dataclasses import dataclass

# Application version - update this for each release
VERSION = "1.0.0"

# Highest backup archive format this build can read and the one it writes
ARCHIVE_FORMAT_VERSION = 1


@dataclass
class Config:
    """Application configuration."""

    # Server settings
    HOST: str = "127.0.0.1"
    PORT: int = 18422

    # Cloud API settings
    CLOUD_API_URL: str = os.getenv("GESTVAULT_CLOUD_URL", "https://cloud.gestvault.app")
    DEVICE_NAME: str = os.getenv("GESTVAULT_DEVICE_NAME", "GestVault Desktop")
    HTTP_TIMEOUT: float = 30.0
    TRANSFER_TIMEOUT: float = 300.0
    UPLOAD_CHUNK_SIZE: int = 64 * 1024

    # Storage paths
    STORAGE_DIR: Path = Path(os.getenv("GESTVAULT_HOME", str(Path.home() / ".gestvault")))

    # Cryptographic settings
    PBKDF2_ITERATIONS: int = 100_000
    SALT_LEN: int = 32
    KEYRING_SERVICE: str = os.getenv("GESTVAULT_KEYRING_SERVICE", "gestvault")
    MIN_SECRET_LEN: int = 4

    # Deep link scheme registered by the desktop shell (gestvault://connect?...)
    DEEP_LINK_SCHEME: str = "gestvault"

    def __post_init__(self):
        """Ensure storage directory exists."""
        self.STORAGE_DIR = Path(self.STORAGE_DIR)
        self.STORAGE_DIR.mkdir(parents=True, exist_ok=True)

    @property
    def tenants_dir(self) -> Path:
        """Default parent directory for tenant data directories."""
        path = self.STORAGE_DIR / "tenants"
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def index_path(self) -> Path:
        """Tenant index, readable before any vault is unlocked."""
        return self.STORAGE_DIR / "tenants.json"

    @property
    def logs_dir(self) -> Path:
        """Directory for log files."""
        path = self.STORAGE_DIR / "logs"
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def temp_dir(self) -> Path:
        """Scratch space for archives on their way to or from the cloud."""
        path = self.STORAGE_DIR / "tmp"
        path.mkdir(parents=True, exist_ok=True)
        return path


# Global config instance
config = Config()
