import os

import pytest

from inference_agent.crypto import decrypt_metadata, encrypt_metadata
from inference_agent.errors import EncryptionError
from inference_agent.models import EncryptedMetadata


META = {"task_id": "t-1", "model_id": "m-1", "nested": {"a": [1, 2]}}


def test_round_trip():
    key = os.urandom(32)
    encrypted = encrypt_metadata(key, "k1", META)
    assert encrypted.key_id == "k1"
    assert encrypted.algorithm == "AES-256-GCM"
    assert len(encrypted.nonce) == 12
    assert decrypt_metadata(key, encrypted) == META


def test_fresh_nonce_every_call():
    key = os.urandom(32)
    first = encrypt_metadata(key, "k1", META)
    second = encrypt_metadata(key, "k1", META)
    assert first.nonce != second.nonce
    assert first.ciphertext != second.ciphertext


def test_wrong_key_fails():
    encrypted = encrypt_metadata(os.urandom(32), "k1", META)
    with pytest.raises(EncryptionError):
        decrypt_metadata(os.urandom(32), encrypted)


@pytest.mark.parametrize("size", [0, 16, 24, 31, 33, 64])
def test_key_size_enforced(size):
    with pytest.raises(EncryptionError):
        encrypt_metadata(b"k" * size, "k1", META)


def test_serialised_form_survives():
    key = os.urandom(32)
    encrypted = encrypt_metadata(key, "rotated", META)
    restored = EncryptedMetadata.from_dict(encrypted.to_dict())
    assert decrypt_metadata(key, restored) == META
