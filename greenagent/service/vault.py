from __future__ import annotations

import hashlib
import json
import os
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from greenagent.config import Settings
from greenagent.logging import get_logger
from greenagent.service.errors import DecryptionError

logger = get_logger(__name__)


@dataclass(frozen=True)
class MigrationResult:
    plaintext: str
    needs_migration: bool


class CredentialVault:
    """Authenticated encryption for custodial private keys at rest.

    Envelopes are JSON documents holding hex-encoded salt, IV, ciphertext and
    GCM tag. Each encryption draws a fresh salt and IV, and the AES-256 key is
    derived from the master secret with PBKDF2-HMAC-SHA256.
    """

    VERSION = 1
    ALGORITHM = "aes-256-gcm"
    SALT_BYTES = 32
    IV_BYTES = 12
    KEY_BYTES = 32
    TAG_BYTES = 16
    MIN_ITERATIONS = 100_000
    _ENVELOPE_KEYS = frozenset({"version", "salt", "iv", "ciphertext", "authTag"})
    _MAX_CACHED_KEYS = 256

    def __init__(self, master_secret: str, *, iterations: int = MIN_ITERATIONS) -> None:
        if not master_secret:
            raise ValueError("master secret must not be empty")
        if iterations < self.MIN_ITERATIONS:
            raise ValueError(
                f"PBKDF2 iterations must be at least {self.MIN_ITERATIONS}"
            )
        self._secret = master_secret.encode("utf-8")
        self.iterations = iterations
        # Derived keys by salt; decrypting the same row repeatedly skips PBKDF2
        self._key_cache: "OrderedDict[bytes, bytes]" = OrderedDict()
        self._key_cache_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVault":
        """Build a vault from configuration, falling back to the bot token.

        Raises ``RuntimeError`` when neither secret is configured.
        """
        if settings.encryption_secret:
            return cls(settings.encryption_secret)
        if settings.bot_token:
            logger.warning(
                "vault_fallback_secret",
                message=(
                    "ENCRYPTION_SECRET is not set; deriving the vault secret from "
                    "TELEGRAM_BOT_TOKEN. Set a dedicated ENCRYPTION_SECRET in production."
                ),
            )
            return cls(hashlib.sha256(settings.bot_token.encode("utf-8")).hexdigest())
        raise RuntimeError(
            "No encryption secret configured; set ENCRYPTION_SECRET (or TELEGRAM_BOT_TOKEN as a fallback)"
        )

    def _derive_key(self, salt: bytes) -> bytes:
        with self._key_cache_lock:
            cached = self._key_cache.get(salt)
            if cached is not None:
                self._key_cache.move_to_end(salt)
                return cached
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_BYTES,
            salt=salt,
            iterations=self.iterations,
        )
        key = kdf.derive(self._secret)
        with self._key_cache_lock:
            self._key_cache[salt] = key
            while len(self._key_cache) > self._MAX_CACHED_KEYS:
                self._key_cache.popitem(last=False)
        return key

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(self.SALT_BYTES)
        iv = os.urandom(self.IV_BYTES)
        sealed = AESGCM(self._derive_key(salt)).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[: -self.TAG_BYTES], sealed[-self.TAG_BYTES :]
        return json.dumps(
            {
                "version": self.VERSION,
                "algorithm": self.ALGORITHM,
                "salt": salt.hex(),
                "iv": iv.hex(),
                "ciphertext": ciphertext.hex(),
                "authTag": tag.hex(),
            }
        )

    def decrypt(self, envelope: str) -> str:
        """Return the plaintext, or raise ``DecryptionError`` if the tag does not verify."""
        data = self._parse_envelope(envelope)
        if data is None:
            raise DecryptionError("value is not an encrypted envelope")
        if data.get("version") != self.VERSION:
            raise DecryptionError(
                "unsupported envelope version", detail={"version": data.get("version")}
            )
        try:
            salt = bytes.fromhex(data["salt"])
            iv = bytes.fromhex(data["iv"])
            ciphertext = bytes.fromhex(data["ciphertext"])
            tag = bytes.fromhex(data["authTag"])
        except (TypeError, ValueError) as exc:
            raise DecryptionError("envelope fields are not valid hex") from exc
        if len(tag) != self.TAG_BYTES or len(salt) != self.SALT_BYTES:
            raise DecryptionError("envelope has malformed salt or tag")
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(iv, ciphertext + tag, None)
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError("authentication tag mismatch") from exc
        return plaintext.decode("utf-8")

    @classmethod
    def _parse_envelope(cls, raw: object) -> Optional[dict]:
        if not isinstance(raw, str) or not raw.lstrip().startswith("{"):
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(data, dict) or not cls._ENVELOPE_KEYS.issubset(data):
            return None
        return data

    @classmethod
    def is_encrypted_envelope(cls, raw: object) -> bool:
        return cls._parse_envelope(raw) is not None

    def migrate_if_needed(self, raw: str) -> MigrationResult:
        """Decrypt an envelope, or flag a legacy plaintext value for re-encryption."""
        if self.is_encrypted_envelope(raw):
            return MigrationResult(plaintext=self.decrypt(raw), needs_migration=False)
        return MigrationResult(plaintext=raw, needs_migration=True)


__all__ = ["CredentialVault", "MigrationResult"]
