"""AES-256-GCM encryption of provenance token metadata."""

from __future__ import annotations

import json
import os
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import EncryptionError
from .models import EncryptedMetadata

KEY_SIZE = 32
NONCE_SIZE = 12
ALGORITHM = "AES-256-GCM"


def _cipher(key: bytes) -> AESGCM:
    if len(key) != KEY_SIZE:
        raise EncryptionError(f"key must be {KEY_SIZE} bytes, got {len(key)}")
    return AESGCM(key)


def encrypt_metadata(key: bytes, key_id: str, metadata: Dict[str, Any]) -> EncryptedMetadata:
    """Encrypt ``metadata`` as JSON under ``key`` with a new random nonce."""
    cipher = _cipher(key)
    nonce = os.urandom(NONCE_SIZE)
    plaintext = json.dumps(metadata, sort_keys=True).encode("utf-8")
    return EncryptedMetadata(
        ciphertext=cipher.encrypt(nonce, plaintext, None),
        nonce=nonce,
        key_id=key_id,
        algorithm=ALGORITHM,
    )


def decrypt_metadata(key: bytes, encrypted: EncryptedMetadata) -> Dict[str, Any]:
    if encrypted.algorithm != ALGORITHM:
        raise EncryptionError(f"unsupported algorithm {encrypted.algorithm}")
    cipher = _cipher(key)
    try:
        plaintext = cipher.decrypt(encrypted.nonce, encrypted.ciphertext, None)
    except InvalidTag as exc:
        raise EncryptionError(f"cannot decrypt metadata with key {encrypted.key_id}") from exc
    return json.loads(plaintext)
