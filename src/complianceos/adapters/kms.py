"""Local key provider: wraps tenant data keys under a configured master key.

Data keys are 256-bit AES keys generated per tenant key version. The wrapped
form is nonce (12 bytes) || AES-256-GCM ciphertext of the data key, with the
provider key id as associated data, so a wrapped key cannot be unwrapped
under a different master key id.

Other back-ends (HSM, cloud KMS, BYOK) implement IKeyProvider the same way
and are selected at startup.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from complianceos.common.errors import ValidationError
from complianceos.common.observability import get_logger

logger = get_logger(__name__)

NONCE_BYTES = 12
DATA_KEY_BITS = 256


class LocalMasterKeyProvider:
    """IKeyProvider backed by a 32-byte master key held in configuration.

    Args:
        master_key_b64: Base64-encoded 32-byte master key.
        key_id: Identifier recorded alongside each wrapped key.

    Raises:
        ValueError: If the master key is not valid base64 of exactly 32 bytes.
    """

    def __init__(self, master_key_b64: str, key_id: str = "local-master-1") -> None:
        try:
            master_key = base64.b64decode(master_key_b64, validate=True)
        except binascii.Error as exc:
            raise ValueError("Encryption master key is not valid base64") from exc
        if len(master_key) != 32:
            raise ValueError(f"Encryption master key must be 32 bytes, got {len(master_key)}")
        self._aesgcm = AESGCM(master_key)
        self._key_id = key_id

    @property
    def key_id(self) -> str:
        return self._key_id

    def generate_data_key(self) -> tuple[bytes, bytes]:
        """Return (plaintext_key, wrapped_key) for a fresh AES-256 data key."""
        plaintext = AESGCM.generate_key(bit_length=DATA_KEY_BITS)
        nonce = os.urandom(NONCE_BYTES)
        wrapped = nonce + self._aesgcm.encrypt(nonce, plaintext, self._key_id.encode("utf-8"))
        return plaintext, wrapped

    def unwrap(self, wrapped_key: bytes) -> bytes:
        """Return the plaintext data key.

        Raises:
            ValidationError: If the wrapped key was not produced by this master key.
        """
        nonce, ciphertext = wrapped_key[:NONCE_BYTES], wrapped_key[NONCE_BYTES:]
        try:
            return self._aesgcm.decrypt(nonce, ciphertext, self._key_id.encode("utf-8"))
        except InvalidTag as exc:
            logger.error("Data key unwrap failed", key_id=self._key_id)
            raise ValidationError(message="Wrapped data key failed authentication", field="wrapped_key") from exc
