"""
Appliance record storage with transparent password encryption.

Records are kept as a list under the ``servers`` key. A persisted
password is always an EncryptedSecret; plaintext never reaches the
key-value store through this class.

Passwords written by older releases as plaintext are migrated on read:
the record is returned with its plaintext password and, in a separate
step, re-persisted with the password encrypted.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import pydantic

from .crypto import CredentialCodec, is_encrypted
from .exceptions import CredentialError, EncryptionFailed, ValidationError
from .kv_store import KeyValueStore
from .models import ApplianceRecord, utc_now
from .rule_cache import RuleCache

logger = logging.getLogger(__name__)

SERVERS_KEY = "servers"


class PasswordState(str, Enum):
    """How a stored password is represented."""
    ABSENT = "absent"
    ENCRYPTED = "encrypted"
    LEGACY = "legacy"
    INVALID = "invalid"


def classify_password(value: Any) -> PasswordState:
    if value is None or value == "":
        return PasswordState.ABSENT
    if is_encrypted(value):
        return PasswordState.ENCRYPTED
    if isinstance(value, str):
        return PasswordState.LEGACY
    return PasswordState.INVALID


class CredentialStore:
    """CRUD for appliance records.

    Usage:
        store = CredentialStore(kv, codec, rule_cache)
        await store.save({"id": "a1", "host": "https://10.0.0.1", ...})
        record = await store.get("a1")   # record.password is plaintext
    """

    def __init__(
        self,
        store: KeyValueStore,
        codec: CredentialCodec,
        rule_cache: RuleCache,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._codec = codec
        self._rule_cache = rule_cache
        self._clock = clock

    async def _load_raw(self) -> List[Dict[str, Any]]:
        servers = await self._store.get(SERVERS_KEY)
        if not isinstance(servers, list):
            return []
        return [s for s in servers if isinstance(s, dict)]

    async def _find_raw(self, appliance_id: str) -> Optional[Dict[str, Any]]:
        for raw in await self._load_raw():
            if raw.get("id") == appliance_id:
                return raw
        return None

    async def _resolve(self, raw: Dict[str, Any]) -> Tuple[ApplianceRecord, PasswordState]:
        """Phase one: build the caller-facing record without writing anything."""
        data = dict(raw)
        stored_password = data.pop("password", None)
        state = classify_password(stored_password)

        if state == PasswordState.ENCRYPTED:
            try:
                data["password"] = await self._codec.decrypt(stored_password)
            except CredentialError as e:
                # Return the record without a password rather than failing the read
                logger.error(f"Failed to decrypt password for server {raw.get('id')}: {e}")
        elif state == PasswordState.LEGACY:
            data["password"] = stored_password
        elif state == PasswordState.INVALID:
            logger.error(f"Stored password for server {raw.get('id')} has an unknown format")

        try:
            return ApplianceRecord.model_validate(data), state
        except pydantic.ValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            logger.error(f"Stored server {raw.get('id')} is invalid: {', '.join(errors)}")
            raise ValidationError(errors) from e

    async def migrate_legacy_password(self, appliance_id: str) -> bool:
        """Phase two: encrypt a plaintext password found in storage.

        Safe to call repeatedly; records that are already encrypted (for
        example by an interleaved read) are left alone.

        Returns:
            True if a record was rewritten
        """
        servers = await self._load_raw()
        for raw in servers:
            if raw.get("id") != appliance_id:
                continue
            if classify_password(raw.get("password")) != PasswordState.LEGACY:
                return False

            try:
                encrypted = await self._codec.migrate_password(raw["password"])
            except CredentialError as e:
                logger.error(f"Failed to migrate password for server {appliance_id}: {e}")
                return False

            # Re-read so the write applies to the latest list
            latest = await self._load_raw()
            for candidate in latest:
                if (
                    candidate.get("id") == appliance_id
                    and classify_password(candidate.get("password")) == PasswordState.LEGACY
                ):
                    candidate["password"] = encrypted.model_dump()
                    await self._store.set(SERVERS_KEY, latest)
                    logger.info(f"Migrated password for server {appliance_id} to encrypted format")
                    return True
            return False

        return False

    async def get(self, appliance_id: str) -> Optional[ApplianceRecord]:
        """Decrypted record, or None if absent.

        Raises:
            ValidationError: If the stored record is missing required fields
        """
        raw = await self._find_raw(appliance_id)
        if raw is None:
            return None

        record, state = await self._resolve(raw)
        if state == PasswordState.LEGACY:
            await self.migrate_legacy_password(appliance_id)
        return record

    async def list(self) -> List[ApplianceRecord]:
        """All records, decrypted, with legacy passwords migrated.

        Records that fail validation are logged and skipped.
        """
        records = []
        for raw in await self._load_raw():
            if not raw.get("id"):
                continue
            try:
                record, state = await self._resolve(raw)
            except ValidationError:
                continue
            if state == PasswordState.LEGACY:
                await self.migrate_legacy_password(record.id)
            records.append(record)
        return records

    async def save(
        self,
        record: Union[ApplianceRecord, Mapping[str, Any]],
    ) -> ApplianceRecord:
        """Persist a record, encrypting its password first.

        Returns the caller's record (plaintext password) with timestamps.

        Raises:
            EncryptionFailed: If the password could not be encrypted; nothing
                is written in that case
        """
        if isinstance(record, ApplianceRecord):
            incoming = record.to_dict()
        else:
            incoming = ApplianceRecord.model_validate(dict(record)).to_dict()

        to_store = dict(incoming)
        password = to_store.get("password")

        if password:
            try:
                to_store["password"] = (await self._codec.encrypt(password)).model_dump()
            except CredentialError as e:
                logger.error(f"Failed to encrypt password: {e}")
                raise EncryptionFailed() from e
        else:
            to_store.pop("password", None)

        now = self._clock().isoformat()
        servers = await self._load_raw()
        index = next(
            (i for i, s in enumerate(servers) if s.get("id") == to_store["id"]),
            None,
        )

        if index is not None:
            existing = servers[index]
            if not password and is_encrypted(existing.get("password")):
                # No new password supplied: keep the stored secret
                to_store["password"] = existing["password"]
            to_store["createdAt"] = existing.get("createdAt") or now
            to_store["updatedAt"] = now
            servers[index] = to_store
        else:
            to_store["createdAt"] = now
            to_store["updatedAt"] = now
            servers.append(to_store)

        await self._store.set(SERVERS_KEY, servers)
        logger.info(f"Saved server {to_store['id']}")

        incoming["createdAt"] = to_store["createdAt"]
        incoming["updatedAt"] = to_store["updatedAt"]
        return ApplianceRecord.model_validate(incoming)

    async def delete(self, appliance_id: str) -> bool:
        """Remove a record together with its cached rules.

        Returns:
            True if a record was removed
        """
        servers = await self._load_raw()
        filtered = [s for s in servers if s.get("id") != appliance_id]
        await self._store.set(SERVERS_KEY, filtered)
        if appliance_id:
            await self._rule_cache.clear(appliance_id)

        removed = len(filtered) != len(servers)
        if removed:
            logger.info(f"Deleted server {appliance_id}")
        return removed
