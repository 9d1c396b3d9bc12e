"""
Token and cryptography utilities for the sharing layer.

This module issues and validates the two credentials a remote user
presents (user token, access token) and provides the symmetric
encryption used to keep those credentials encrypted at rest.
"""

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.exceptions import InvalidTag
from dataclasses import dataclass
import hashlib
import hmac
import logging
import os
import re
import secrets
import time
import uuid
from typing import Optional, List

from common.constants import (
    TOKEN_CLOCK_SKEW_MS,
    USER_TOKEN_MAX_AGE_MS,
    ACCESS_TOKEN_MAX_AGE_MS,
    PBKDF2_ITERATIONS,
    PBKDF2_KEY_LENGTH,
    HOST_SECRET_BYTES,
)

logger = logging.getLogger(__name__)

_PLAIN_USER_TOKEN = re.compile(r"^[0-9a-f]{32,64}$", re.IGNORECASE)
_PLAIN_ACCESS_TOKEN = re.compile(r"^[0-9a-f]{64}$", re.IGNORECASE)
_HEX = re.compile(r"^[0-9a-f]+$", re.IGNORECASE)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TokenValidation:
    """Result of a structural token check."""
    valid: bool
    timestamp: Optional[int] = None
    user_id: Optional[str] = None


class TokenAuth:
    """Issues and checks user/access tokens; symmetric crypto helpers."""

    @staticmethod
    def get_hardware_id() -> str:
        """
        Return a SHA-256 digest of this machine's identifier.

        Falls back to a random value (logged) when no machine id can be read,
        which means tokens minted in that state won't survive a restart.
        """
        machine_id = None
        for candidate in ("/etc/machine-id", "/var/lib/dbus/machine-id"):
            try:
                with open(candidate, "r") as f:
                    machine_id = f.read().strip() or None
            except OSError:
                continue
            if machine_id:
                break
        if not machine_id:
            node = uuid.getnode()
            # getnode() sets the multicast bit when it had to invent a MAC
            if not (node >> 40) & 1:
                machine_id = f"{node:012x}"
        if not machine_id:
            logger.warning("No machine id available, using a random hardware id")
            return secrets.token_hex(32)
        return hashlib.sha256(machine_id.encode()).hexdigest()

    @staticmethod
    def generate_user_token(hardware_id: str, timestamp: Optional[int] = None) -> str:
        """
        Generate a user token: ``timestamp.salt.signature``.

        Args:
            hardware_id: Key material for the HMAC (see get_hardware_id)
            timestamp: Milliseconds since the epoch, defaults to now

        Returns:
            Token string
        """
        ts = str(timestamp if timestamp is not None else now_ms())
        salt = secrets.token_hex(16)
        signature = hmac.new(hardware_id.encode(), (ts + salt).encode(), hashlib.sha256).hexdigest()
        return f"{ts}.{salt}.{signature}"

    @staticmethod
    def generate_access_token(user_token: str, host_secret: str, permissions: List[str],
                              user_id: str, timestamp: Optional[int] = None) -> str:
        """
        Generate a host-issued access token: ``userId.timestamp.signature``.

        The signature covers the user token, the granted permission list, the
        user id and the timestamp, keyed by the host secret.
        """
        ts = str(timestamp if timestamp is not None else now_ms())
        message = user_token + ",".join(permissions) + user_id + ts
        signature = hmac.new(host_secret.encode(), message.encode(), hashlib.sha256).hexdigest()
        return f"{user_id}.{ts}.{signature}"

    @staticmethod
    def _check_age(timestamp_str: str, max_age_ms: int, now: Optional[int]) -> Optional[int]:
        try:
            timestamp = int(timestamp_str)
        except (TypeError, ValueError):
            return None
        current = now if now is not None else now_ms()
        if timestamp > current + TOKEN_CLOCK_SKEW_MS:
            return None
        if current - timestamp > max_age_ms:
            return None
        return timestamp

    @staticmethod
    def validate_user_token(token: str, now: Optional[int] = None) -> TokenValidation:
        """
        Check a user token's shape and age.

        Accepts ``timestamp.salt.signature`` (at most 5 minutes in the future,
        at most 30 days old) or a bare 32-64 character hex string. The
        signature is not recomputed here; the token pair is matched against
        the stored user record instead.
        """
        if not token or not isinstance(token, str):
            return TokenValidation(False)
        parts = token.split(".")
        if len(parts) == 1 and _PLAIN_USER_TOKEN.match(token):
            return TokenValidation(True)
        if len(parts) != 3:
            return TokenValidation(False)
        timestamp = TokenAuth._check_age(parts[0], USER_TOKEN_MAX_AGE_MS, now)
        if timestamp is None:
            return TokenValidation(False)
        return TokenValidation(True, timestamp=timestamp)

    @staticmethod
    def validate_access_token(token: str, now: Optional[int] = None) -> TokenValidation:
        """
        Check an access token's shape and age.

        Accepts ``userId.timestamp.signature`` (at most 5 minutes in the
        future, at most 90 days old) or a bare 64 character hex string.
        """
        if not token or not isinstance(token, str):
            return TokenValidation(False)
        parts = token.split(".")
        if len(parts) == 1 and _PLAIN_ACCESS_TOKEN.match(token):
            return TokenValidation(True)
        if len(parts) != 3:
            return TokenValidation(False)
        timestamp = TokenAuth._check_age(parts[1], ACCESS_TOKEN_MAX_AGE_MS, now)
        if timestamp is None:
            return TokenValidation(False)
        return TokenValidation(True, timestamp=timestamp, user_id=parts[0])

    @staticmethod
    def generate_host_secret() -> str:
        return secrets.token_hex(HOST_SECRET_BYTES)

    @staticmethod
    def generate_secure_random(length: int = 32) -> str:
        return secrets.token_hex(length)

    @staticmethod
    def _aes_key(key: str) -> bytes:
        # 64 hex characters -> 32 byte AES-256 key
        return bytes.fromhex(key[:64])

    @staticmethod
    def encrypt(data: str, key: str) -> str:
        """
        Encrypt string data with AES-256-GCM.

        Args:
            data: Plain text
            key: At least 64 hex characters; the first 64 form the key

        Returns:
            ``iv.authTag.ciphertext``, each part hex encoded
        """
        iv = os.urandom(16)
        sealed = AESGCM(TokenAuth._aes_key(key)).encrypt(iv, data.encode("utf-8"), None)
        ciphertext, tag = sealed[:-16], sealed[-16:]
        return f"{iv.hex()}.{tag.hex()}.{ciphertext.hex()}"

    @staticmethod
    def decrypt(encrypted_data: str, key: str) -> Optional[str]:
        """
        Decrypt data produced by ``encrypt``.

        Returns:
            Decrypted string, or None if the data was tampered with, the key
            is wrong, or the input is malformed
        """
        try:
            parts = encrypted_data.split(".")
            if len(parts) != 3:
                return None
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
            plain = AESGCM(TokenAuth._aes_key(key)).decrypt(iv, ciphertext + tag, None)
            return plain.decode("utf-8")
        except (InvalidTag, ValueError, AttributeError) as e:
            logger.debug(f"Decryption failed: {e!r}")
            return None

    @staticmethod
    def looks_encrypted(value: str) -> bool:
        """True for ``iv.authTag.ciphertext`` shaped strings."""
        if not value or not isinstance(value, str):
            return False
        parts = value.split(".")
        return len(parts) == 3 and all(_HEX.match(p) for p in parts)

    @staticmethod
    def derive_key(password: str, salt: str) -> str:
        """
        Derive an encryption key from a password using PBKDF2-HMAC-SHA256.

        Args:
            password: Password
            salt: Caller-supplied salt

        Returns:
            32 byte key, hex encoded
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=PBKDF2_KEY_LENGTH,
            salt=salt.encode(),
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(password.encode()).hex()
