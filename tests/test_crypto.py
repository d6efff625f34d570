import pytest

from chatstream_gateway.crypto import decrypt_secret, encrypt_secret, generate_key
from chatstream_gateway.errors import CredentialDecryptionError


def test_encrypt_decrypt_roundtrip():
    key = "rYdGvZpTz4l7mOZ1m3cQ3EJ4xJ8k2bq7d2H1m1v7QkA="
    token = encrypt_secret(key, "sk-test-123")
    assert token != "sk-test-123"
    assert decrypt_secret(key, token) == "sk-test-123"


def test_decrypt_with_wrong_key_raises():
    token = encrypt_secret(generate_key(), "sk-test-123")
    with pytest.raises(CredentialDecryptionError):
        decrypt_secret(generate_key(), token)


def test_decrypt_garbage_raises():
    with pytest.raises(CredentialDecryptionError):
        decrypt_secret(generate_key(), "not-a-fernet-token")
