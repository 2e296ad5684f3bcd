"""Per-product RSA key storage.

:class:`KeyRepository` is the narrow interface the validation pipeline and
the generation strategies consume.  :class:`FileKeyStore` implements it on
the local filesystem::

    ~/.licensor/keys/
        <product_id>_private.pem   (0600)
        <product_id>_public.pem    (0600)

A missing key is reported as ``None``.  Keys that exist but cannot be
read or parsed raise :class:`KeyStoreError`.
"""

from __future__ import annotations

import logging
import os
import re
import stat
import sys
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from licensor.crypto import (
    DEFAULT_KEY_SIZE,
    decrypt_private_key,
    encrypt_private_key,
    extract_public_key,
    generate_key_pair,
    validate_private_key,
    validate_public_key,
)

logger = logging.getLogger(__name__)

_DEFAULT_KEY_DIR = os.path.join(str(Path.home()), ".licensor", "keys")
_PRODUCT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_ENCRYPTED_MARKER = "ENCRYPTED"


class KeyStoreError(Exception):
    """Raised when a stored key exists but cannot be used."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class KeyRepository(ABC):
    """Source of per-product RSA keys in PEM form."""

    @abstractmethod
    def get_public_key(self, product_id: str) -> Optional[str]:
        """Return the public key PEM for *product_id*, or ``None``."""

    @abstractmethod
    def get_private_key(self, product_id: str) -> Optional[str]:
        """Return the unencrypted private key PEM for *product_id*, or ``None``."""

    @abstractmethod
    def generate_key_pair_for_product(self, product_id: str) -> str:
        """Create and persist a key pair, returning the new public key PEM."""


# ---------------------------------------------------------------------------
# Filesystem implementation
# ---------------------------------------------------------------------------


class FileKeyStore(KeyRepository):
    """Filesystem-backed :class:`KeyRepository`.

    :param root: Directory holding the PEM files.  Created on first write.
    :param key_size: RSA modulus size for generated key pairs.
    :param passphrase: When set, private keys are written as encrypted
        PKCS#8 and decrypted on read.
    """

    def __init__(
        self,
        root: Optional[str | os.PathLike[str]] = None,
        *,
        key_size: int = DEFAULT_KEY_SIZE,
        passphrase: Optional[str] = None,
    ) -> None:
        self._root = Path(root) if root is not None else Path(_DEFAULT_KEY_DIR)
        self._key_size = key_size
        self._passphrase = passphrase or None
        self._write_lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @staticmethod
    def _check_product_id(product_id: str) -> str:
        if not product_id or not product_id.strip():
            raise ValueError("Product id cannot be empty")
        product_id = product_id.strip()
        if not _PRODUCT_ID_RE.match(product_id):
            raise ValueError(f"Invalid product id for key storage: {product_id!r}")
        return product_id

    def private_key_path(self, product_id: str) -> Path:
        return self._root / f"{self._check_product_id(product_id)}_private.pem"

    def public_key_path(self, product_id: str) -> Path:
        return self._root / f"{self._check_product_id(product_id)}_public.pem"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _read(self, path: Path) -> Optional[str]:
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise KeyStoreError(f"Unable to read key file {path}: {exc}", code="KEY_UNREADABLE") from exc

    def get_public_key(self, product_id: str) -> Optional[str]:
        path = self.public_key_path(product_id)
        pem = self._read(path)
        if pem is None:
            logger.debug("No public key stored for product %s", product_id)
            return None
        if not validate_public_key(pem):
            raise KeyStoreError(f"Stored public key for {product_id!r} is invalid", code="KEY_INVALID")
        return pem

    def get_private_key(self, product_id: str) -> Optional[str]:
        path = self.private_key_path(product_id)
        pem = self._read(path)
        if pem is None:
            logger.debug("No private key stored for product %s", product_id)
            return None
        if _ENCRYPTED_MARKER in pem:
            if not self._passphrase:
                raise KeyStoreError(
                    f"Private key for {product_id!r} is encrypted and no passphrase is configured",
                    code="KEY_ENCRYPTED",
                )
            try:
                pem = decrypt_private_key(pem, self._passphrase)
            except ValueError as exc:
                raise KeyStoreError(
                    f"Unable to decrypt private key for {product_id!r}: {exc}",
                    code="KEY_DECRYPT_FAILED",
                ) from exc
        if not validate_private_key(pem):
            raise KeyStoreError(f"Stored private key for {product_id!r} is invalid", code="KEY_INVALID")
        return pem

    def has_valid_keys(self, product_id: str) -> bool:
        """Return ``True`` if both keys exist and load cleanly."""
        try:
            return (
                self.get_private_key(product_id) is not None
                and self.get_public_key(product_id) is not None
            )
        except KeyStoreError as exc:
            logger.warning("Stored keys for %s are unusable: %s", product_id, exc)
            return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write_secure(self, path: Path, text: str) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        if sys.platform == "win32":
            return
        try:
            path.chmod(0o600)
            root_mode = stat.S_IMODE(os.stat(self._root).st_mode)
            if root_mode & 0o077:
                os.chmod(self._root, 0o700)
        except OSError as exc:
            logger.warning("Unable to set permissions on %s: %s", path, exc)

    def store_key_pair(self, product_id: str, private_key_pem: str, public_key_pem: str) -> None:
        """Persist a key pair for *product_id*, replacing any existing one.

        :raises ValueError: If either key fails validation.
        """
        if not validate_private_key(private_key_pem):
            raise ValueError("Invalid private key")
        if not validate_public_key(public_key_pem):
            raise ValueError("Invalid public key")
        stored_private = private_key_pem
        if self._passphrase:
            stored_private = encrypt_private_key(private_key_pem, self._passphrase)
        with self._write_lock:
            self._write_secure(self.private_key_path(product_id), stored_private)
            self._write_secure(self.public_key_path(product_id), public_key_pem)
        logger.info("Stored key pair for product %s", product_id)

    def store_private_key(self, product_id: str, private_key_pem: str) -> str:
        """Persist an existing private key and its derived public key.

        :returns: The derived public key PEM.
        """
        if not validate_private_key(private_key_pem):
            raise ValueError("Invalid private key")
        public_key_pem = extract_public_key(private_key_pem)
        self.store_key_pair(product_id, private_key_pem, public_key_pem)
        return public_key_pem

    def generate_key_pair_for_product(self, product_id: str) -> str:
        self._check_product_id(product_id)
        pair = generate_key_pair(self._key_size)
        self.store_key_pair(product_id, pair.private_key_pem, pair.public_key_pem)
        logger.info(
            "Generated %d-bit key pair %s for product %s",
            pair.key_size,
            pair.key_id,
            product_id,
        )
        return pair.public_key_pem
