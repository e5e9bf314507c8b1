"""Encrypted at-rest storage for BareMCP credentials.

Credentials are stored as a single JSON document:

    {"version": 1, "iv": "<hex>", "data": "<hex ciphertext + GCM tag>"}

using:
- AES-256-GCM, which gives confidentiality and tamper detection in one step
- A key derived with scrypt from the home directory and OS user name, so the
  file only decrypts for the same account on the same machine
- File permissions (0600 file, 0700 directory) for defense in depth

The key material is not secret. This protects against casual disclosure and
detects tampering or foreign files, but does not stop a determined local
attacker who can reproduce the derivation.
"""

import json
import logging
import os
import secrets
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ..errors import IntegrityError
from .credentials import CredentialFormatError, StoredCredentials

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
KEY_SALT = b"baremcp-creds-v1"
KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16

# scrypt cost parameters
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


def _current_user() -> str:
    return os.environ.get("USER") or os.environ.get("USERNAME") or "user"


def derive_key(home: Path | None = None, username: str | None = None) -> bytes:
    """Derive the vault key from machine identity.

    Args:
        home: Home directory (defaults to Path.home())
        username: OS user name (defaults to $USER, then $USERNAME)

    Returns:
        32-byte AES key
    """
    home_dir = str(home if home is not None else Path.home())
    user = username if username is not None else _current_user()
    material = f"{home_dir}-{user}".encode("utf-8")

    kdf = Scrypt(salt=KEY_SALT, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(material)


@dataclass(frozen=True)
class EncryptedBlob:
    """A versioned AES-GCM payload.

    Attributes:
        version: Format version; only FORMAT_VERSION is accepted
        iv: 16-byte nonce, unique per encryption
        data: Ciphertext with the 16-byte authentication tag appended
    """

    version: int
    iv: bytes
    data: bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "iv": self.iv.hex(),
            "data": self.data.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptedBlob":
        """Parse the on-disk representation.

        Raises:
            IntegrityError: If a field is missing or not valid hex
        """
        try:
            return cls(
                version=data["version"],
                iv=bytes.fromhex(data["iv"]),
                data=bytes.fromhex(data["data"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise IntegrityError(f"Malformed encrypted credential data: {e}") from e

    @staticmethod
    def looks_like(data: Any) -> bool:
        """Check whether parsed JSON has the encrypted-blob shape."""
        return (
            isinstance(data, dict)
            and bool(data.get("version"))
            and bool(data.get("iv"))
            and bool(data.get("data"))
        )


def encrypt(plaintext: str, key: bytes) -> EncryptedBlob:
    """Encrypt a string with AES-256-GCM under a fresh random IV."""
    iv = secrets.token_bytes(IV_LENGTH)
    ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return EncryptedBlob(version=FORMAT_VERSION, iv=iv, data=ciphertext)


def decrypt(blob: EncryptedBlob, key: bytes) -> str:
    """Decrypt and authenticate a blob.

    Raises:
        IntegrityError: If the version is unsupported or the tag does not
            verify (tampered data or a key from another machine)
    """
    if blob.version != FORMAT_VERSION:
        raise IntegrityError(f"Unsupported credential format version: {blob.version}")
    if len(blob.iv) != IV_LENGTH or len(blob.data) < TAG_LENGTH:
        raise IntegrityError("Encrypted credential data is truncated")

    try:
        plaintext = AESGCM(key).decrypt(blob.iv, blob.data, None)
    except InvalidTag as e:
        raise IntegrityError(
            "Credential authentication failed (tampered, corrupt, or from another machine)"
        ) from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise IntegrityError("Decrypted credentials are not valid UTF-8") from e


class CredentialVaultError(Exception):
    """Credentials could not be written to disk."""

    pass


@dataclass(frozen=True)
class VaultLoad:
    """Outcome of reading the credential file.

    Exactly one of ``credentials`` and ``reason`` is set.

    Attributes:
        credentials: Loaded credentials on success
        reason: Why nothing usable was loaded ("missing", "unreadable",
            "invalid_json", "integrity", "invalid_schema", "unrecognized")
        legacy: True when the file was in the old plaintext format
    """

    credentials: StoredCredentials | None = None
    reason: str | None = None
    legacy: bool = False

    @property
    def ok(self) -> bool:
        return self.credentials is not None


class CredentialVault:
    """Encrypted storage for a single StoredCredentials record.

    Usage:
        vault = CredentialVault(Path.home() / ".baremcp" / "credentials.json")
        vault.save(creds)
        creds = vault.load()   # None if missing, corrupt or foreign
        vault.clear()
    """

    def __init__(
        self,
        path: Path,
        home: Path | None = None,
        username: str | None = None,
    ):
        """Initialize the vault.

        Args:
            path: Credential file location
            home: Home directory used for key derivation (defaults to Path.home())
            username: User name used for key derivation (defaults to $USER)
        """
        self.path = path
        self._home = home
        self._username = username

    def derive_key(self) -> bytes:
        """Recompute the key; nothing is cached between calls."""
        return derive_key(self._home, self._username)

    def encrypt(self, plaintext: str) -> EncryptedBlob:
        return encrypt(plaintext, self.derive_key())

    def decrypt(self, blob: EncryptedBlob) -> str:
        return decrypt(blob, self.derive_key())

    def _ensure_dir(self) -> None:
        directory = self.path.parent
        if directory.exists():
            return
        directory.mkdir(parents=True, mode=stat.S_IRWXU)
        # mkdir honours the umask
        try:
            directory.chmod(stat.S_IRWXU)  # 0700
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def save(self, creds: StoredCredentials) -> None:
        """Encrypt and write credentials with owner-only permissions.

        Raises:
            CredentialVaultError: If the file cannot be written
        """
        blob = self.encrypt(json.dumps(creds.to_dict()))
        content = json.dumps(blob.to_dict(), indent=2)

        try:
            self._ensure_dir()
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            raise CredentialVaultError(f"Failed to write credentials to {self.path}: {e}") from e

        try:
            self.path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
        except OSError as e:
            logger.warning(f"Could not set file permissions: {e}")

        logger.debug(f"Saved credentials for store {creds.store_id}")

    def load_result(self) -> VaultLoad:
        """Read the credential file without raising.

        Legacy plaintext files are returned as-is; the next save() writes
        them back encrypted.
        """
        if not self.path.exists():
            return VaultLoad(reason="missing")

        try:
            raw = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read credentials file: {e}")
            return VaultLoad(reason="unreadable")

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Could not load credentials (file is not valid JSON)")
            return VaultLoad(reason="invalid_json")

        if EncryptedBlob.looks_like(parsed):
            try:
                decrypted = self.decrypt(EncryptedBlob.from_dict(parsed))
                data = json.loads(decrypted)
            except IntegrityError as e:
                logger.warning(
                    f"Could not load credentials (may be corrupt or from another machine): {e}"
                )
                return VaultLoad(reason="integrity")
            except json.JSONDecodeError:
                logger.warning("Could not load credentials (decrypted data is not valid JSON)")
                return VaultLoad(reason="invalid_json")

            try:
                return VaultLoad(credentials=StoredCredentials.from_dict(data))
            except CredentialFormatError as e:
                logger.warning(f"Invalid credential structure in stored file: {e}")
                return VaultLoad(reason="invalid_schema")

        try:
            creds = StoredCredentials.from_dict(parsed)
        except CredentialFormatError:
            logger.warning("Could not load credentials (unrecognized file format)")
            return VaultLoad(reason="unrecognized")

        logger.info("Loaded legacy unencrypted credentials; they will be encrypted on next save")
        return VaultLoad(credentials=creds, legacy=True)

    def load(self) -> StoredCredentials | None:
        """Load credentials, or None if there are no valid credentials."""
        return self.load_result().credentials

    def exists(self) -> bool:
        return self.path.exists()

    def clear(self) -> bool:
        """Delete the credential file.

        Returns:
            True if a file was deleted, False if there was none
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not delete credentials file: {e}")
            return False

        logger.info("Cleared stored credentials")
        return True
