"""
Encryption utilities for securing stored database passwords.
Uses Fernet symmetric encryption with a key kept in a local key file.
"""

import base64
import binascii
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken


class EncryptionError(Exception):
    """Raised when a password cannot be encrypted or decrypted."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"encryption error during {operation}: {message}")


class PasswordEncryptor:
    """Handles encryption and decryption of database passwords."""

    def __init__(self, key_path: str):
        """
        Args:
            key_path: Path of the key file, generated on first use
        """
        self.key_path = Path(key_path).expanduser()
        self._fernet = None

    def _load_or_generate_key(self) -> bytes:
        """
        Read the key file, creating it (mode 0600, parent 0700) if missing.

        Raises:
            EncryptionError: If the key cannot be read or written
        """
        try:
            if self.key_path.exists():
                return self.key_path.read_bytes().strip()

            key = Fernet.generate_key()
            self.key_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(str(self.key_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, 'wb') as f:
                f.write(key)
            return key
        except FileExistsError:
            # Another process created it first
            return self.key_path.read_bytes().strip()
        except OSError as e:
            raise EncryptionError('load key', str(e)) from e

    @property
    def fernet(self) -> Fernet:
        if self._fernet is None:
            try:
                self._fernet = Fernet(self._load_or_generate_key())
            except (ValueError, binascii.Error) as e:
                raise EncryptionError('load key', f"invalid key file {self.key_path}: {e}") from e
        return self._fernet

    def encrypt_password(self, plaintext: str) -> str:
        """
        Encrypt a password.

        Args:
            plaintext: Password to encrypt

        Returns:
            Base64-encoded encrypted string
        """
        encrypted_bytes = self.fernet.encrypt(plaintext.encode())
        return base64.urlsafe_b64encode(encrypted_bytes).decode()

    def decrypt_password(self, encrypted: str) -> str:
        """
        Decrypt a password.

        Args:
            encrypted: Base64-encoded encrypted string

        Returns:
            Decrypted plaintext password

        Raises:
            EncryptionError: If the value is malformed or the key is wrong
        """
        try:
            encrypted_bytes = base64.urlsafe_b64decode(encrypted.encode())
            return self.fernet.decrypt(encrypted_bytes).decode()
        except (InvalidToken, binascii.Error, ValueError) as e:
            raise EncryptionError('decrypt', 'invalid encrypted password') from e
