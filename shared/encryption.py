"""Encryption utilities for stored OAuth tokens."""

import logging
import os
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

KEY_SIZE = 32
IV_SIZE = 16
DELIMITER = ":"


class EncryptionService:
    """Handles AES-256-CBC encryption and decryption of tokens.

    Each encrypted value is stored as ``hex(iv):hex(ciphertext)`` so that it can
    be decrypted on its own, without any other stored state.
    """

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Initialize encryption service.

        Args:
            encryption_key: 64 hex characters or a 32-byte string. If not provided,
                          will attempt to load from TOKEN_ENCRYPTION_KEY env var
                          or generate a new key (not recommended for production)
        """
        if not encryption_key:
            encryption_key = os.getenv('TOKEN_ENCRYPTION_KEY')

        if not encryption_key:
            # Generate a key (only for development/testing)
            logger.warning("TOKEN_ENCRYPTION_KEY not set, generating an ephemeral key")
            encryption_key = self.generate_key()

        self.key = self._parse_key(encryption_key)

    @staticmethod
    def _parse_key(encryption_key: str) -> bytes:
        if len(encryption_key) == KEY_SIZE * 2:
            try:
                return bytes.fromhex(encryption_key)
            except ValueError:
                pass

        key = encryption_key.encode()
        if len(key) != KEY_SIZE:
            raise ValueError(
                f"Encryption key must be {KEY_SIZE * 2} hex characters or {KEY_SIZE} bytes"
            )
        return key

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext string.

        Args:
            plaintext: The string to encrypt

        Returns:
            ``hex(iv):hex(ciphertext)``
        """
        if not plaintext:
            return ""

        iv = os.urandom(IV_SIZE)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode('utf-8')) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self.key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return f"{iv.hex()}{DELIMITER}{ciphertext.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt an encrypted string.

        Args:
            ciphertext: ``hex(iv):hex(ciphertext)`` as produced by encrypt()

        Returns:
            Decrypted plaintext string

        Raises:
            ValueError: If the value is malformed or was encrypted with another key
        """
        if not ciphertext:
            return ""

        parts = ciphertext.split(DELIMITER)
        if len(parts) != 2:
            raise ValueError("Invalid encrypted token format")

        iv = bytes.fromhex(parts[0])
        encrypted = bytes.fromhex(parts[1])
        if len(iv) != IV_SIZE:
            raise ValueError("Invalid initialization vector length")

        decryptor = Cipher(algorithms.AES(self.key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(encrypted) + decryptor.finalize()

        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        data = unpadder.update(padded) + unpadder.finalize()
        return data.decode('utf-8')

    @staticmethod
    def generate_key() -> str:
        """
        Generate a new encryption key.

        Returns:
            64-character hex encryption key
        """
        return os.urandom(KEY_SIZE).hex()
