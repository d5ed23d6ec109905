"""Todoist token encryption with a versioned keyring.

Every ciphertext is stored next to the id of the key that produced it, so a
new default key can be introduced without breaking older rows; rotation
re-encrypts rows under the current default.
"""
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.models import ExternalIntegration, TODOIST_PROVIDER, utc_now

logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32


class ReconnectRequiredError(Exception):
    """Stored credential is missing or cannot be decrypted; the user must reconnect."""

    def __init__(self, message: str = "Todoist integration reconnection required."):
        super().__init__(message)


class KeyringConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class EncryptedToken:
    ciphertext: str
    iv: str
    tag: str
    key_id: str


@dataclass(frozen=True)
class Keyring:
    keys: Dict[str, bytes]
    default_key_id: str

    def key_for(self, key_id: str) -> bytes:
        key = self.keys.get(key_id)
        if key is None:
            raise ReconnectRequiredError(
                f"Todoist integration reconnection required: encryption key '{key_id}' is not available."
            )
        return key


def load_keyring() -> Keyring:
    raw_keys = settings.encryption_keys
    if not raw_keys:
        raise KeyringConfigError("TODOIST_ENCRYPTION_KEY or TODOIST_ENCRYPTION_KEYS is required for Todoist token encryption.")

    keys: Dict[str, bytes] = {}
    for key_id, material in raw_keys.items():
        try:
            key = bytes.fromhex(material)
        except ValueError as exc:
            raise KeyringConfigError(f"Encryption key '{key_id}' is not valid hex.") from exc
        if len(key) != KEY_LENGTH:
            raise KeyringConfigError(f"Encryption key '{key_id}' must be a 64-character hex string.")
        keys[key_id] = key

    default_key_id = (settings.TODOIST_ENCRYPTION_KEY_ID or "").strip() or list(keys)[-1]
    if default_key_id not in keys:
        raise KeyringConfigError(f"TODOIST_ENCRYPTION_KEY_ID '{default_key_id}' is not in the keyring.")
    return Keyring(keys=keys, default_key_id=default_key_id)


def encrypt_token(token: str, keyring: Optional[Keyring] = None) -> EncryptedToken:
    ring = keyring or load_keyring()
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(ring.key_for(ring.default_key_id)).encrypt(iv, token.encode("utf-8"), None)
    # AESGCM appends the tag; it is stored in its own column.
    return EncryptedToken(
        ciphertext=sealed[:-TAG_LENGTH].hex(),
        iv=iv.hex(),
        tag=sealed[-TAG_LENGTH:].hex(),
        key_id=ring.default_key_id,
    )


def decrypt_token(payload: EncryptedToken, keyring: Optional[Keyring] = None) -> str:
    ring = keyring or load_keyring()
    key = ring.key_for(payload.key_id)
    try:
        plaintext = AESGCM(key).decrypt(
            bytes.fromhex(payload.iv),
            bytes.fromhex(payload.ciphertext) + bytes.fromhex(payload.tag),
            None,
        )
    except (InvalidTag, ValueError) as exc:
        raise ReconnectRequiredError(
            "Todoist integration reconnection required: stored token could not be decrypted."
        ) from exc
    return plaintext.decode("utf-8")


def access_token_payload(integration: ExternalIntegration) -> EncryptedToken:
    return EncryptedToken(
        ciphertext=integration.access_token_encrypted,
        iv=integration.access_token_iv,
        tag=integration.access_token_tag,
        key_id=integration.access_token_key_id or "default",
    )


def refresh_token_payload(integration: ExternalIntegration) -> Optional[EncryptedToken]:
    if not integration.refresh_token_encrypted:
        return None
    return EncryptedToken(
        ciphertext=integration.refresh_token_encrypted,
        iv=integration.refresh_token_iv,
        tag=integration.refresh_token_tag,
        key_id=integration.refresh_token_key_id or integration.access_token_key_id or "default",
    )


def store_access_token(integration: ExternalIntegration, encrypted: EncryptedToken) -> None:
    integration.access_token_encrypted = encrypted.ciphertext
    integration.access_token_iv = encrypted.iv
    integration.access_token_tag = encrypted.tag
    integration.access_token_key_id = encrypted.key_id


def store_refresh_token(integration: ExternalIntegration, encrypted: Optional[EncryptedToken]) -> None:
    integration.refresh_token_encrypted = encrypted.ciphertext if encrypted else None
    integration.refresh_token_iv = encrypted.iv if encrypted else None
    integration.refresh_token_tag = encrypted.tag if encrypted else None
    integration.refresh_token_key_id = encrypted.key_id if encrypted else None


async def get_integration(db: AsyncSession, user_id: str) -> Optional[ExternalIntegration]:
    stmt = select(ExternalIntegration).where(
        ExternalIntegration.user_id == user_id,
        ExternalIntegration.provider == TODOIST_PROVIDER,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_access_token(db: AsyncSession, user_id: str) -> str:
    integration = await get_integration(db, user_id)
    if integration is None:
        raise ReconnectRequiredError("Todoist integration not connected.")
    return decrypt_token(access_token_payload(integration))


async def rotate_tokens(db: AsyncSession, user_id: str) -> Optional[str]:
    """Re-encrypt the stored tokens under the current default key.

    Returns the key id now in use, or None when the user has no integration.
    """
    integration = await get_integration(db, user_id)
    if integration is None:
        return None

    ring = load_keyring()
    access_token = decrypt_token(access_token_payload(integration), ring)
    refresh_payload = refresh_token_payload(integration)
    refresh_token = decrypt_token(refresh_payload, ring) if refresh_payload else None

    previous_key_id = integration.access_token_key_id
    store_access_token(integration, encrypt_token(access_token, ring))
    store_refresh_token(integration, encrypt_token(refresh_token, ring) if refresh_token is not None else None)
    integration.updated_at = utc_now()
    await db.commit()
    logger.info(f"Rotated Todoist tokens for user {user_id} from key {previous_key_id} to {ring.default_key_id}")
    return ring.default_key_id
