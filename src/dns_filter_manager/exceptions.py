"""
Error taxonomy for the DNS filter manager.

Every error is raised at the point where the failure is observed and
carries a short human-readable ``user_message`` plus a ``retryable``
flag, so callers never have to classify errors by matching text.

Hierarchy:
- ManagerError
  - ValidationError
  - NotFoundError
    - ServerNotFound
  - CredentialError
    - InvalidInput
    - MalformedInput
    - EncryptionError
      - EncryptionFailed
    - DecryptionFailed
  - RequestError
    - NetworkError
    - TimedOut
    - HTTPError
    - MalformedResponse
"""

from typing import List, Optional


class ManagerError(Exception):
    """Base exception for all manager errors."""

    user_message: str = "Unexpected error"
    retryable: bool = False

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message


class ValidationError(ManagerError):
    """Input failed shape or required-field validation."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(", ".join(self.errors))


class NotFoundError(ManagerError):
    """Referenced record does not exist."""

    user_message = "Not found"


class ServerNotFound(NotFoundError):
    """Appliance record does not exist."""

    user_message = "Server not found"

    def __init__(self, server_id: Optional[str] = None):
        self.server_id = server_id
        super().__init__("Server not found")


# ============================================================================
# Credential codec
# ============================================================================


class CredentialError(ManagerError):
    """Base exception for credential codec failures."""
    pass


class InvalidInput(CredentialError):
    """Plaintext is empty or not a string."""

    user_message = "Plaintext must be a non-empty string"


class MalformedInput(CredentialError):
    """Encrypted blob is not shaped like an EncryptedSecret."""

    user_message = "Missing ciphertext or IV"


class EncryptionError(CredentialError):
    """Encryption could not be performed."""

    user_message = "Failed to encrypt data"


class EncryptionFailed(EncryptionError):
    """Password encryption failed; the record was not persisted."""

    user_message = "Failed to encrypt password. Server not saved."


class DecryptionFailed(CredentialError):
    """Authentication failed: wrong key, corrupted blob, or foreign device."""

    user_message = "Failed to decrypt data. Data may be corrupted."


# ============================================================================
# Outbound requests
# ============================================================================


class RequestError(ManagerError):
    """Base exception for appliance request failures."""

    retryable = True


class NetworkError(RequestError):
    """Appliance could not be reached."""

    user_message = "Network error. Check server URL and connectivity."


class TimedOut(RequestError):
    """Request did not complete within the allotted time."""

    user_message = "Request timed out. Check server connectivity."

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        super().__init__()


_STATUS_MESSAGES = {
    401: ("Authentication failed. Check your credentials.", False),
    403: ("Access denied. You may not have permission.", False),
    404: ("Endpoint not found. Server may not support this feature.", False),
    429: ("Too many requests. Please wait and try again.", True),
}


class HTTPError(RequestError):
    """Appliance answered with a non-2xx status."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        message, retryable = _STATUS_MESSAGES.get(
            status,
            ("Server error. The appliance encountered a problem.", status >= 500)
        )
        self.retryable = retryable
        super().__init__(f"HTTP {status}: {body or message}")
        self.user_message = message


class MalformedResponse(RequestError):
    """Appliance response did not have the expected shape."""

    user_message = "Unexpected response from server"
    retryable = False
