"""Optional Fernet encryption for FHIR documents at rest.

Full resource documents are encrypted before writing to SQLite when a key
is configured. Indexed columns (dates, status, codes) stay plaintext so the
local query path never has to decrypt rows it will not return.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""


class DocumentCipher:
    """Serializes JSON documents, encrypting them when a Fernet key is set.

    Without a key documents are stored as compact JSON. A keyed cipher still
    reads plaintext rows written before the key was configured.

    Usage::

        cipher = DocumentCipher(key="...")
        token = cipher.encrypt({"resourceType": "Observation"})
        cipher.decrypt(token)  # {"resourceType": "Observation"}
    """

    def __init__(self, key: str = "") -> None:
        """Initialize with an optional Fernet key.

        Args:
            key: A Fernet key string, or empty for plaintext storage.
                Generate with ``DocumentCipher.generate_key()``.

        Raises:
            EncryptionError: If a non-empty key is invalid.
        """
        self._fernet: Fernet | None = None
        if key and key.strip():
            try:
                self._fernet = Fernet(key.strip().encode())
            except (ValueError, TypeError) as exc:
                raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, data: Any) -> str:
        """Serialize ``data`` to JSON and encrypt it when a key is configured.

        Raises:
            EncryptionError: If serialization or encryption fails.
        """
        try:
            plaintext = json.dumps(data, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Document is not JSON-serializable: {exc}") from exc
        if self._fernet is None:
            return plaintext
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> Any:
        """Decode a stored document back to a Python object.

        Raises:
            EncryptionError: If the token is invalid, the key is wrong, or an
                encrypted row is read without a key.
        """
        if not token:
            return None
        if token.lstrip().startswith(("{", "[")):
            try:
                return json.loads(token)
            except json.JSONDecodeError as exc:
                raise EncryptionError(f"Corrupt stored document: {exc}") from exc
        if self._fernet is None:
            raise EncryptionError("Document is encrypted but no encryption key is configured")
        try:
            return json.loads(self._fernet.decrypt(token.encode("utf-8")))
        except InvalidToken as exc:
            raise EncryptionError("Decryption failed: invalid token or wrong key") from exc
        except json.JSONDecodeError as exc:
            raise EncryptionError(f"Decryption failed: {exc}") from exc

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key."""
        return Fernet.generate_key().decode("utf-8")
