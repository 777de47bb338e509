"""
Error taxonomy for GestVault Companion.

Library code raises these; the HTTP boundary in main.py turns every one of
them into a ``{"success": false, "error": code, "message": ...}`` result.
"""

from typing import Optional


class GestVaultError(Exception):
    """Base class for all errors surfaced to the UI."""

    code = "error"
    status_code = 400
    default_message = "Operation failed"

    def __init__(self, message: Optional[str] = None):
        self.user_message = message or self.default_message
        super().__init__(self.user_message)


# ---------------------------------------------------------------------------
# Vault / credentials
# ---------------------------------------------------------------------------

class InvalidRequest(GestVaultError):
    code = "invalid_request"
    status_code = 400
    default_message = "Missing or invalid parameters"


class InvalidCredentials(GestVaultError):
    """Wrong secret, missing vault or corrupt vault.

    The user-facing message is identical for every cause; ``reason`` is kept
    for diagnostics only.
    """

    code = "invalid_credentials"
    status_code = 401
    default_message = "Incorrect password or damaged data"

    def __init__(self, reason: str = "unknown"):
        self.reason = reason
        super().__init__()


class AlreadyConfigured(GestVaultError):
    code = "already_configured"
    status_code = 409
    default_message = "This company already has an encrypted database"


class NotConfigured(GestVaultError):
    code = "not_configured"
    status_code = 409
    default_message = "This company has not been set up yet"


class SessionRequired(GestVaultError):
    code = "session_required"
    status_code = 401
    default_message = "Unlock the company first"


class TenantBusy(GestVaultError):
    code = "tenant_busy"
    status_code = 409
    default_message = "The company data is open in another instance of the application"


class TenantNotFound(GestVaultError):
    code = "tenant_not_found"
    status_code = 404
    default_message = "Company not found"


class WeakSecret(GestVaultError):
    code = "weak_secret"
    status_code = 400
    default_message = "The password must have at least 4 characters"


class CapabilityUnavailable(GestVaultError):
    code = "capability_unavailable"
    status_code = 400
    default_message = "Secure credential storage is not available on this device"


class PasskeyUnavailable(GestVaultError):
    code = "passkey_unavailable"
    status_code = 401
    default_message = "Passkey unlock is not available. Use your password."


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

class DecryptionFailed(GestVaultError):
    code = "decryption_failed"
    status_code = 422
    default_message = "The file could not be decrypted"


class AttachmentNotFound(GestVaultError):
    code = "not_found"
    status_code = 404
    default_message = "File not found"


# ---------------------------------------------------------------------------
# Backup / relocation
# ---------------------------------------------------------------------------

class ExportFailed(GestVaultError):
    code = "export_failed"
    status_code = 500
    default_message = "The backup could not be written"


class ImportFailed(GestVaultError):
    code = "import_failed"
    status_code = 500
    default_message = "The backup could not be restored"


class CorruptArchive(GestVaultError):
    code = "corrupt_archive"
    status_code = 422
    default_message = "The backup file is damaged"


class UnsupportedFormat(GestVaultError):
    code = "unsupported_format"
    status_code = 422
    default_message = "The backup was created by a newer version of the application"


class TargetExists(GestVaultError):
    code = "target_exists"
    status_code = 409
    default_message = "The destination already contains data"


class RelocationFailed(GestVaultError):
    code = "relocation_failed"
    status_code = 500
    default_message = "The data could not be moved"


# ---------------------------------------------------------------------------
# Cloud
# ---------------------------------------------------------------------------

class CloudError(GestVaultError):
    code = "cloud_error"
    status_code = 502
    default_message = "Cloud request failed"


class CloudNotConfigured(CloudError):
    code = "cloud_not_configured"
    status_code = 400
    default_message = "Cloud backup is not connected"


class NetworkError(CloudError):
    code = "network_error"
    status_code = 503
    default_message = "Could not reach the cloud server"


class AuthExpired(CloudError):
    code = "auth_expired"
    status_code = 401
    default_message = "Cloud session expired. Link this device again."


class QuotaExceeded(CloudError):
    code = "quota_exceeded"
    status_code = 403
    default_message = "Cloud storage quota exceeded. Upgrade your plan or delete old backups."


class RemoteNotFound(CloudError):
    code = "not_found"
    status_code = 404
    default_message = "Backup not found"


class RateLimited(CloudError):
    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests, wait a moment"


class ValidationFailed(CloudError):
    code = "validation_failed"
    status_code = 422
    default_message = "The server rejected the request"

    def __init__(self, message: Optional[str] = None, errors: Optional[dict] = None):
        self.errors = errors or {}
        super().__init__(message)


class TokenExpired(CloudError):
    code = "token_expired"
    status_code = 401
    default_message = "The link has expired. Request a new one from the web panel."


class LinkRejected(CloudError):
    code = "link_rejected"
    status_code = 403
    default_message = "The server rejected the device link"


class TransferCancelled(CloudError):
    code = "cancelled"
    status_code = 499
    default_message = "Transfer cancelled"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageError(GestVaultError):
    code = "storage_error"
    status_code = 500
    default_message = "The company data could not be written to disk"
