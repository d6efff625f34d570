from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from .errors import CredentialDecryptionError


def fernet_from_key_str(key_str: str) -> Fernet:
    return Fernet(key_str.encode("utf-8"))


def generate_key() -> str:
    return Fernet.generate_key().decode("ascii")


def encrypt_secret(key_str: str, plaintext: str) -> str:
    return fernet_from_key_str(key_str).encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_secret(key_str: str, token: str) -> str:
    try:
        raw = fernet_from_key_str(key_str).decrypt(token.encode("ascii"))
    except (InvalidToken, UnicodeEncodeError) as e:
        raise CredentialDecryptionError("Failed to decrypt credential (wrong key or corrupted value).") from e
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CredentialDecryptionError("Decrypted credential is not valid UTF-8.") from e
