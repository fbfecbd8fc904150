"""Account credential storage.

``CredentialStore`` is the persistence boundary for account records. The
encrypted file store keeps one file per account, encrypted with a key
derived from a per-store random master secret and the account key.
"""

import hashlib
import logging
import secrets
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from .exceptions import (
    CredentialDecryptionError,
    CredentialEncryptionError,
    CredentialStoreError,
)
from .models import Account, AccountKey

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Durable storage for ``Account`` records keyed by ``AccountKey``."""

    @abstractmethod
    def save(self, account: Account) -> None:
        """Persist an account, replacing any record with the same key."""

    @abstractmethod
    def load(self, key: AccountKey) -> Optional[Account]:
        """Return the stored account or None when absent."""

    @abstractmethod
    def delete(self, key: AccountKey) -> bool:
        """Delete an account. Returns True if a record was removed."""

    @abstractmethod
    def list_accounts(self) -> List[Account]:
        """Return every stored account."""


class InMemoryCredentialStore(CredentialStore):
    """Process-local store, used in tests and for ephemeral sessions."""

    def __init__(self):
        self._accounts: Dict[AccountKey, Account] = {}
        self._lock = threading.RLock()

    def save(self, account: Account) -> None:
        with self._lock:
            self._accounts[account.key] = account

    def load(self, key: AccountKey) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(key)

    def delete(self, key: AccountKey) -> bool:
        with self._lock:
            return self._accounts.pop(key, None) is not None

    def list_accounts(self) -> List[Account]:
        with self._lock:
            return list(self._accounts.values())


class EncryptedFileCredentialStore(CredentialStore):
    """Encrypted per-account files under a private directory.

    Uses PBKDF2 with SHA-256 for key derivation and AES-256-CBC for
    encryption. The derivation input combines the store's master secret with
    the account key, so a file copied between stores or renamed to another
    account's slot fails to decrypt.
    """

    MASTER_SECRET_NAME = ".master"
    FILE_SUFFIX = ".cred"

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.iterations = 100_000  # PBKDF2 iterations for security
        self.key_length = 32  # AES-256 key length in bytes
        self.salt_length = 32  # Salt length for PBKDF2
        self.iv_length = 16  # AES block size for CBC mode
        self.master_secret_length = 32
        self._lock = threading.RLock()
        self._master_secret: Optional[bytes] = None

    # Public API

    def save(self, account: Account) -> None:
        with self._lock:
            encrypted = self._encrypt(account.key, account.model_dump_json().encode())
            self._atomic_write(self._path_for(account.key), encrypted)
            logger.debug(f"Stored credentials for {account.key}")

    def load(self, key: AccountKey) -> Optional[Account]:
        with self._lock:
            path = self._path_for(key)
            if not path.exists():
                return None
            return self._read_account(key, path)

    def delete(self, key: AccountKey) -> bool:
        with self._lock:
            path = self._path_for(key)
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise CredentialStoreError(f"Failed to delete credentials: {e}")
            logger.debug(f"Deleted credentials for {key}")
            return True

    def list_accounts(self) -> List[Account]:
        with self._lock:
            if not self.directory.exists():
                return []

            accounts = []
            for path in sorted(self.directory.glob(f"*{self.FILE_SUFFIX}")):
                try:
                    data = path.read_bytes()
                    account = self._decode_any(data)
                except (OSError, CredentialDecryptionError) as e:
                    logger.warning(f"Skipping unreadable credential file {path.name}: {e}")
                    continue
                accounts.append(account)
            return accounts

    # Encryption

    def _derive_key(self, key: AccountKey, salt: bytes) -> bytes:
        """Derive the per-account encryption key.

        Args:
            key: The account the record belongs to
            salt: Cryptographic salt for key derivation

        Returns:
            bytes: Derived encryption key
        """
        key_input = self._get_master_secret() + str(key).encode("utf-8")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.key_length,
            salt=salt,
            iterations=self.iterations,
        )
        derived_key: bytes = kdf.derive(key_input)
        return derived_key

    def _encrypt(self, key: AccountKey, plaintext: bytes) -> bytes:
        """Encrypt a record; returns salt + iv + key hint + ciphertext.

        Raises:
            CredentialEncryptionError: If encryption fails
        """
        try:
            salt = secrets.token_bytes(self.salt_length)
            iv = secrets.token_bytes(self.iv_length)
            derived = self._derive_key(key, salt)

            # The account key travels with the record so list_accounts can
            # derive the decryption key without a separate index.
            key_text = str(key).encode("utf-8")
            header = len(key_text).to_bytes(2, "big") + key_text

            cipher = Cipher(algorithms.AES(derived), modes.CBC(iv))
            encryptor = cipher.encryptor()

            # PKCS7 padding
            pad_length = 16 - (len(plaintext) % 16)
            padded = plaintext + bytes([pad_length]) * pad_length

            ciphertext = encryptor.update(padded) + encryptor.finalize()
            del derived, padded
            return salt + iv + header + ciphertext

        except Exception as e:
            raise CredentialEncryptionError(f"Failed to encrypt credentials: {str(e)}")

    def _decrypt(self, data: bytes) -> tuple:
        """Decrypt a record written by ``_encrypt``.

        Returns:
            tuple: (account key text, plaintext bytes)

        Raises:
            CredentialDecryptionError: If decryption fails
        """
        try:
            min_length = self.salt_length + self.iv_length + 2
            if len(data) < min_length:
                raise ValueError("Encrypted data too short")

            salt = data[: self.salt_length]
            iv = data[self.salt_length : self.salt_length + self.iv_length]
            offset = self.salt_length + self.iv_length
            key_len = int.from_bytes(data[offset : offset + 2], "big")
            key_text = data[offset + 2 : offset + 2 + key_len].decode("utf-8")
            ciphertext = data[offset + 2 + key_len :]

            derived = self._derive_key(AccountKey.parse(key_text), salt)

            cipher = Cipher(algorithms.AES(derived), modes.CBC(iv))
            decryptor = cipher.decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()

            # Remove PKCS7 padding
            pad_length = padded[-1]
            if pad_length > 16 or pad_length == 0:
                raise ValueError("Invalid padding")

            plaintext = padded[:-pad_length]
            del derived, padded
            return key_text, plaintext

        except Exception as e:
            raise CredentialDecryptionError(f"Failed to decrypt credentials: {str(e)}")

    def _decode_any(self, data: bytes) -> Account:
        _, plaintext = self._decrypt(data)
        try:
            return Account.model_validate_json(plaintext)
        except ValidationError as e:
            raise CredentialDecryptionError(f"Corrupt credential record: {e}")

    def _read_account(self, key: AccountKey, path: Path) -> Account:
        try:
            data = path.read_bytes()
        except OSError as e:
            raise CredentialStoreError(f"Failed to read credentials: {e}")

        key_text, plaintext = self._decrypt(data)
        if key_text != str(key):
            raise CredentialDecryptionError(
                f"Credential file for {key} belongs to another account"
            )
        try:
            return Account.model_validate_json(plaintext)
        except ValidationError as e:
            raise CredentialDecryptionError(f"Corrupt credential record: {e}")

    # Files

    def _path_for(self, key: AccountKey) -> Path:
        digest = hashlib.sha256(str(key).encode("utf-8")).hexdigest()
        return self.directory / f"{digest}{self.FILE_SUFFIX}"

    def _ensure_directory(self) -> None:
        self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)

    def _get_master_secret(self) -> bytes:
        if self._master_secret is not None:
            return self._master_secret

        path = self.directory / self.MASTER_SECRET_NAME
        if path.exists():
            # Verify and fix file permissions
            if path.stat().st_mode & 0o077:
                path.chmod(0o600)
            secret = path.read_bytes()
            if len(secret) != self.master_secret_length:
                raise CredentialStoreError("Credential store master secret is corrupt")
        else:
            self._ensure_directory()
            secret = secrets.token_bytes(self.master_secret_length)
            self._atomic_write(path, secret)
            logger.info(f"Created credential store at {self.directory}")

        self._master_secret = secret
        return secret

    def _atomic_write(self, path: Path, data: bytes) -> None:
        self._ensure_directory()
        temp_path = path.with_suffix(".tmp")
        try:
            with open(temp_path, "wb") as f:
                f.write(data)

            # Set secure permissions (user read/write only)
            temp_path.chmod(0o600)

            # Atomic move to final location
            temp_path.replace(path)

        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise CredentialStoreError(f"Failed to write {path.name}: {e}")
