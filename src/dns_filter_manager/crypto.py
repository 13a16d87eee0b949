"""
At-rest encryption for appliance passwords.

Passwords are encrypted with AES-256-GCM. The key is derived with
PBKDF2-HMAC-SHA256 from two local entropy sources:

1. Instance identity - a stable, non-secret per-installation id
   (configured, or /etc/machine-id, or a MAC address)
2. Device secret - 32 random bytes generated on first run and kept in
   the key-value store; never leaves the device

A blob encrypted on one installation cannot be decrypted on another.
Each blob carries a version tag so older key-derivation generations are
rejected explicitly instead of being decrypted with the wrong key.
"""

import asyncio
import base64
import binascii
import logging
import secrets
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import (
    DecryptionFailed,
    EncryptionError,
    InvalidInput,
    MalformedInput,
)
from .kv_store import KeyValueStore
from .models import EncryptedSecret

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # AES-256
IV_LENGTH = 12  # 96 bits, recommended for AES-GCM
PBKDF2_ITERATIONS = 100_000
VERSION = 2
SUPPORTED_VERSIONS = frozenset({VERSION})
SALT = b"adguard-home-manager-v2"

DEVICE_SECRET_KEY = "_deviceSecret"
DEVICE_SECRET_LENGTH = 32


def get_machine_id() -> str:
    """Get a stable machine identifier.

    Tries /etc/machine-id (systemd) first, falls back to MAC address.
    """
    try:
        machine_id_path = Path("/etc/machine-id")
        if machine_id_path.exists():
            machine_id = machine_id_path.read_text().strip()
            if machine_id:
                return machine_id
    except OSError:
        pass

    try:
        for iface in sorted(Path("/sys/class/net").iterdir()):
            if iface.name in ("lo", "docker0"):
                continue
            addr_file = iface / "address"
            if addr_file.exists():
                mac = addr_file.read_text().strip()
                if mac and mac != "00:00:00:00:00:00":
                    return mac
    except OSError:
        pass

    return "fallback-machine-id"


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def is_encrypted(value: Any) -> bool:
    """True if value is structurally an EncryptedSecret.

    Used to tell legacy plaintext passwords from encrypted ones without
    attempting decryption.
    """
    if isinstance(value, EncryptedSecret):
        value = value.model_dump()
    if not isinstance(value, Mapping):
        return False

    ciphertext = value.get("ciphertext")
    iv = value.get("iv")
    return (
        isinstance(ciphertext, str)
        and isinstance(iv, str)
        and len(ciphertext) > 0
        and len(iv) > 0
    )


class CredentialCodec:
    """AES-GCM codec with a lazily derived, cached key.

    Usage:
        codec = CredentialCodec(store, instance_id="...")
        secret = await codec.encrypt("hunter2")
        plaintext = await codec.decrypt(secret)
    """

    def __init__(
        self,
        store: KeyValueStore,
        instance_id: Optional[str] = None,
        iterations: int = PBKDF2_ITERATIONS,
    ):
        if iterations < PBKDF2_ITERATIONS:
            raise ValueError(f"PBKDF2 iterations must be at least {PBKDF2_ITERATIONS}")
        self._store = store
        self._instance_id = instance_id or get_machine_id()
        self._iterations = iterations
        self._key: Optional[bytes] = None
        self._key_lock = asyncio.Lock()

    @property
    def instance_id(self) -> str:
        return self._instance_id

    async def get_or_create_device_secret(self) -> bytes:
        """Return the device secret, generating and persisting it on first use."""
        stored = await self._store.get(DEVICE_SECRET_KEY)

        if stored:
            if isinstance(stored, list):
                # Older installs kept the secret as a list of byte values
                return bytes(stored)
            return _b64decode(stored)

        device_secret = secrets.token_bytes(DEVICE_SECRET_LENGTH)
        await self._store.set(DEVICE_SECRET_KEY, _b64encode(device_secret))
        logger.info(f"Device-specific secret generated ({DEVICE_SECRET_LENGTH} bytes)")
        return device_secret

    async def derive_key(self) -> bytes:
        """Derive the AES key, caching it for the lifetime of this codec."""
        if self._key is not None:
            return self._key

        async with self._key_lock:
            if self._key is not None:
                return self._key

            device_secret = await self.get_or_create_device_secret()
            material = self._instance_id.encode("utf-8") + device_secret

            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=KEY_LENGTH,
                salt=SALT,
                iterations=self._iterations,
            )

            loop = asyncio.get_running_loop()
            self._key = await loop.run_in_executor(None, kdf.derive, material)
            logger.debug("Encryption key derived")
            return self._key

    async def encrypt(self, plaintext: str) -> EncryptedSecret:
        """Encrypt a non-empty string.

        Raises:
            InvalidInput: If plaintext is empty or not a string
            EncryptionError: If key derivation or encryption fails
        """
        if not isinstance(plaintext, str) or not plaintext:
            raise InvalidInput()

        try:
            key = await self.derive_key()
            # IV must be unique for every encryption under the same key
            iv = secrets.token_bytes(IV_LENGTH)
            ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        except Exception as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionError() from e

        return EncryptedSecret(
            ciphertext=_b64encode(ciphertext),
            iv=_b64encode(iv),
            version=VERSION,
        )

    async def decrypt(self, secret: Union[EncryptedSecret, Mapping[str, Any]]) -> str:
        """Decrypt an EncryptedSecret back to its plaintext.

        Raises:
            MalformedInput: If ciphertext or IV is missing
            DecryptionFailed: If authentication fails or the blob is corrupt
        """
        if isinstance(secret, EncryptedSecret):
            secret = secret.model_dump()
        if not isinstance(secret, Mapping):
            raise MalformedInput("Encrypted data must be an object")
        if not secret.get("ciphertext") or not secret.get("iv"):
            raise MalformedInput()

        version = secret.get("version", VERSION)
        if version not in SUPPORTED_VERSIONS:
            raise DecryptionFailed(f"Unsupported encrypted secret version: {version}")

        try:
            iv = _b64decode(secret["iv"])
            ciphertext = _b64decode(secret["ciphertext"])
        except (binascii.Error, ValueError, TypeError, AttributeError) as e:
            raise DecryptionFailed() from e

        if len(iv) != IV_LENGTH:
            raise DecryptionFailed()

        key = await self.derive_key()
        try:
            decrypted = AESGCM(key).decrypt(iv, ciphertext, None)
            return decrypted.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError, ValueError) as e:
            logger.warning("Decryption failed: authentication check did not pass")
            raise DecryptionFailed() from e

    async def migrate_password(self, value: Any) -> EncryptedSecret:
        """Encrypt a legacy plaintext password; encrypted values pass through."""
        if is_encrypted(value):
            if isinstance(value, EncryptedSecret):
                return value
            return EncryptedSecret.model_validate(value)
        return await self.encrypt(value)

    async def self_test(self, sample: str = "test-password-123") -> bool:
        """Round-trip check used by diagnostics."""
        try:
            encrypted = await self.encrypt(sample)
            return await self.decrypt(encrypted) == sample
        except Exception as e:
            logger.error(f"Encryption self-test failed: {e}")
            return False
