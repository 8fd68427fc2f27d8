"""
Credential Vault
================

AES-256-GCM encryption for exchange API keys at rest. The key comes from
ENCRYPTION_KEY; a missing key fails at startup rather than at first use.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import string
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from oracly.config import settings
from oracly.exceptions import DecryptionError, VaultConfigurationError

NONCE_SIZE = 12  # 96-bit GCM nonce
KEY_SIZE = 32  # AES-256
TAG_SIZE = 16


def derive_key(secret: str) -> bytes:
    """
    Turn the configured secret into a 32-byte AES key.

    Accepted forms, in order: 64 hex characters, base64 that decodes to exactly
    32 bytes, or any other passphrase (SHA-256 of its UTF-8 bytes). Surrounding
    whitespace is ignored in every form.
    """
    candidate = secret.strip()
    if len(candidate) == KEY_SIZE * 2 and all(c in string.hexdigits for c in candidate):
        return bytes.fromhex(candidate)
    try:
        decoded = base64.b64decode(candidate, validate=True)
        if len(decoded) == KEY_SIZE:
            return decoded
    except (binascii.Error, ValueError):
        pass
    return hashlib.sha256(candidate.encode("utf-8")).digest()


class CredentialVault:
    """
    Authenticated encryption for credentials at rest (AES-256-GCM).

    Stored form is base64(nonce + ciphertext + tag), so decrypting needs only the key.
    """

    def __init__(self, key_override: Optional[str] = None):
        secret = key_override or settings.ENCRYPTION_KEY
        if not secret:
            raise VaultConfigurationError(
                "ENCRYPTION_KEY is not configured; credentials cannot be stored"
            )
        self._aesgcm = AESGCM(derive_key(secret))

    def encrypt_text(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt_text(self, token: str) -> str:
        try:
            data = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError) as e:
            raise DecryptionError("Ciphertext is not valid base64") from e
        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Ciphertext is truncated")
        try:
            plain = self._aesgcm.decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)
        except InvalidTag as e:
            raise DecryptionError("Ciphertext failed authentication") from e
        return plain.decode("utf-8")

    # Short names used by the sync engine
    encrypt = encrypt_text
    decrypt = decrypt_text

    def encrypt_dict(self, payload: Dict[str, Any]) -> str:
        serialized = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        return self.encrypt_text(serialized)

    def decrypt_dict(self, token: str) -> Dict[str, Any]:
        text = self.decrypt_text(token)
        obj = json.loads(text) if text else {}
        if not isinstance(obj, dict):
            raise DecryptionError("Decrypted payload is not a JSON object")
        return obj


_vault: Optional[CredentialVault] = None


def get_credential_vault() -> CredentialVault:
    """Process-wide vault, built once from ENCRYPTION_KEY."""
    global _vault
    if _vault is None:
        _vault = CredentialVault()
    return _vault


def reset_credential_vault() -> None:
    """Forget the cached vault (key rotation in tests or after reconfiguration)."""
    global _vault
    _vault = None
