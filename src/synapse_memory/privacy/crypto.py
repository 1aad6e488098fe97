"""Per-subject encryption at rest.

Each subject gets its own AES-256-GCM key, derived with PBKDF2-HMAC-SHA256
from the subject identifier and a deployment-wide secret salt. Without the
salt, stored content cannot be read even with direct database access.

Ciphertext format: "v1:" + base64(nonce || ciphertext+tag). The subject id
is bound as associated data so a row copied into another subject's graph
fails to decrypt.
"""

import base64
import logging
import os
import threading
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from synapse_memory.errors import PrivacyViolation

logger = logging.getLogger(__name__)

CIPHERTEXT_PREFIX = "v1:"
NONCE_BYTES = 12
KEY_BYTES = 32
DEFAULT_ITERATIONS = 250_000


class SubjectKeyring:
    """Derives, caches and applies per-subject content keys.

    Args:
        salt: Secret salt shared by the deployment (never stored with the data)
        iterations: PBKDF2 iteration count (default: 250000)

    Example:
        >>> keyring = SubjectKeyring(salt="deployment-secret", iterations=1000)
        >>> token = keyring.encrypt("subject-1", "likes chess")
        >>> keyring.decrypt("subject-1", token)
        'likes chess'
    """

    def __init__(self, salt: str | bytes, iterations: int = DEFAULT_ITERATIONS):
        if not salt:
            raise ValueError("Encryption salt cannot be empty")
        self._salt = salt.encode("utf-8") if isinstance(salt, str) else salt
        self.iterations = iterations
        self._keys: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def derive_key(self, subject_id: str) -> bytes:
        """Derive (or return the cached) 256-bit key for a subject."""
        if not subject_id:
            raise ValueError("Subject id cannot be empty")
        with self._lock:
            key = self._keys.get(subject_id)
            if key is None:
                kdf = PBKDF2HMAC(
                    algorithm=hashes.SHA256(),
                    length=KEY_BYTES,
                    salt=self._salt,
                    iterations=self.iterations,
                )
                key = kdf.derive(subject_id.encode("utf-8"))
                self._keys[subject_id] = key
                logger.debug(f"Derived content key for subject {subject_id}")
            return key

    def forget(self, subject_id: Optional[str] = None) -> None:
        """Drop cached keys (all of them when subject_id is None)."""
        with self._lock:
            if subject_id is None:
                self._keys.clear()
            else:
                self._keys.pop(subject_id, None)

    def encrypt(self, subject_id: str, plaintext: str) -> str:
        aesgcm = AESGCM(self.derive_key(subject_id))
        nonce = os.urandom(NONCE_BYTES)
        sealed = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), subject_id.encode("utf-8"))
        return CIPHERTEXT_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, subject_id: str, token: str) -> str:
        """Decrypt a value produced by encrypt().

        Raises:
            PrivacyViolation: If the token is malformed or the key does not match
        """
        if not is_encrypted(token):
            raise PrivacyViolation("Value is not an encrypted token")
        try:
            raw = base64.b64decode(token[len(CIPHERTEXT_PREFIX):], validate=True)
        except ValueError as e:
            raise PrivacyViolation(f"Malformed encrypted token: {e}") from e
        if len(raw) <= NONCE_BYTES:
            raise PrivacyViolation("Malformed encrypted token: too short")
        nonce, sealed = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
        try:
            plaintext = AESGCM(self.derive_key(subject_id)).decrypt(
                nonce, sealed, subject_id.encode("utf-8")
            )
        except InvalidTag as e:
            raise PrivacyViolation(
                f"Content cannot be decrypted with the key of subject {subject_id}"
            ) from e
        return plaintext.decode("utf-8")


def is_encrypted(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(CIPHERTEXT_PREFIX)
