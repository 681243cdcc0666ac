"""Account password encryption — AES-256-CBC, stored as "ivhex:cipherhex"."""

import os
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from label_engine.config import settings

IV_LENGTH = 16  # AES block size


class PasswordCipher:
    """Symmetric cipher for stored mailbox passwords."""

    def __init__(self, key_hex: Optional[str] = None):
        key_hex = key_hex if key_hex is not None else settings.encryption_key
        try:
            self._key = bytes.fromhex(key_hex or "")
        except ValueError as e:
            raise ValueError("ENCRYPTION_KEY must be a hex string") from e
        if len(self._key) != 32:
            raise ValueError("ENCRYPTION_KEY must be a 32-byte hex string (64 hex characters)")

    def encrypt(self, password: str) -> str:
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        data = padder.update(password.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        encrypted = encryptor.update(data) + encryptor.finalize()
        return f"{iv.hex()}:{encrypted.hex()}"

    def decrypt(self, encrypted_password: str) -> str:
        parts = (encrypted_password or "").split(":")
        if len(parts) != 2:
            raise ValueError("Invalid encrypted password format")

        iv, encrypted = bytes.fromhex(parts[0]), bytes.fromhex(parts[1])
        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        data = decryptor.update(encrypted) + decryptor.finalize()

        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return (unpadder.update(data) + unpadder.finalize()).decode("utf-8")


def decrypt_password(encrypted_password: str) -> str:
    """Decrypt with the configured key."""
    return PasswordCipher().decrypt(encrypted_password)
