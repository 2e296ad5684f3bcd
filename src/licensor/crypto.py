"""RSA key handling and license signatures.

Signatures are RSA with SHA-256 and PKCS#1 v1.5 padding over the ASCII
bytes of the base64 ``licenseData`` string.  Keys travel as PEM text:
private keys in traditional ``RSA PRIVATE KEY`` form (or encrypted PKCS#8
when a passphrase is used) and public keys in PKCS#1 ``RSA PUBLIC KEY``
form.  Loading accepts either PKCS#1 or SubjectPublicKeyInfo public keys.

Verification is fail-closed: :func:`verify_signature` never raises and
returns ``False`` for any malformed key, signature or algorithm mismatch.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from licensor.models import format_datetime, utc_now

logger = logging.getLogger(__name__)

MIN_KEY_SIZE = 2048
DEFAULT_KEY_SIZE = 2048


# ---------------------------------------------------------------------------
# Key pairs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeyPair:
    """A freshly generated RSA key pair in PEM form."""

    private_key_pem: str
    public_key_pem: str
    key_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    key_size: int = DEFAULT_KEY_SIZE
    algorithm: str = "RSA"
    generated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Public view of the key pair.  Never includes the private key."""
        return {
            "key_id": self.key_id,
            "key_size": self.key_size,
            "algorithm": self.algorithm,
            "generated_at": format_datetime(self.generated_at),
            "public_key": self.public_key_pem,
            "thumbprint": compute_thumbprint(self.public_key_pem),
        }


def generate_key_pair(key_size: int = DEFAULT_KEY_SIZE) -> KeyPair:
    """Generate a new RSA key pair.

    :param key_size: Modulus size in bits; at least 2048.
    :raises ValueError: If *key_size* is too small.
    """
    if key_size < MIN_KEY_SIZE:
        raise ValueError(f"RSA key size must be at least {MIN_KEY_SIZE} bits, got {key_size}")
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return KeyPair(
        private_key_pem=_private_pem(private_key),
        public_key_pem=_public_pem(private_key.public_key()),
        key_size=key_size,
    )


def _private_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _public_pem(key: rsa.RSAPublicKey) -> str:
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.PKCS1,
    ).decode("ascii")


def _passphrase_bytes(passphrase: Optional[str]) -> Optional[bytes]:
    return passphrase.encode("utf-8") if passphrase else None


def load_private_key(pem: str, passphrase: Optional[str] = None) -> rsa.RSAPrivateKey:
    """Load an RSA private key from PEM text.

    :raises ValueError: If the PEM is empty, malformed, encrypted without a
        passphrase, or not an RSA key.
    """
    if not pem or not pem.strip():
        raise ValueError("Empty private key")
    try:
        key = serialization.load_pem_private_key(
            pem.strip().encode("ascii"), password=_passphrase_bytes(passphrase)
        )
    except (TypeError, UnsupportedAlgorithm) as exc:
        raise ValueError(f"Unable to load private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"Expected an RSA private key, got {type(key).__name__}")
    return key


def load_public_key(pem: str) -> rsa.RSAPublicKey:
    """Load an RSA public key from PKCS#1 or SubjectPublicKeyInfo PEM.

    :raises ValueError: If the PEM is empty, malformed or not an RSA key.
    """
    if not pem or not pem.strip():
        raise ValueError("Empty public key")
    try:
        key = serialization.load_pem_public_key(pem.strip().encode("ascii"))
    except UnsupportedAlgorithm as exc:
        raise ValueError(f"Unable to load public key: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError(f"Expected an RSA public key, got {type(key).__name__}")
    return key


def extract_public_key(private_key_pem: str, passphrase: Optional[str] = None) -> str:
    """Derive the PKCS#1 public key PEM from a private key PEM."""
    return _public_pem(load_private_key(private_key_pem, passphrase).public_key())


def validate_private_key(pem: str, passphrase: Optional[str] = None) -> bool:
    """Return ``True`` if *pem* is a usable RSA private key."""
    try:
        key = load_private_key(pem, passphrase)
    except (ValueError, UnicodeEncodeError) as exc:
        logger.debug("Private key validation failed: %s", exc)
        return False
    return key.key_size >= MIN_KEY_SIZE


def validate_public_key(pem: str) -> bool:
    """Return ``True`` if *pem* is a usable RSA public key."""
    try:
        key = load_public_key(pem)
    except (ValueError, UnicodeEncodeError) as exc:
        logger.debug("Public key validation failed: %s", exc)
        return False
    return key.key_size >= MIN_KEY_SIZE


def encrypt_private_key(private_key_pem: str, passphrase: str) -> str:
    """Re-encode a private key as passphrase-encrypted PKCS#8 PEM."""
    if not passphrase:
        raise ValueError("Passphrase is required to encrypt a private key")
    key = load_private_key(private_key_pem)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(passphrase.encode("utf-8")),
    ).decode("ascii")


def decrypt_private_key(encrypted_pem: str, passphrase: str) -> str:
    """Decrypt an encrypted private key back to unencrypted PEM.

    :raises ValueError: On a wrong passphrase or malformed key.
    """
    return _private_pem(load_private_key(encrypted_pem, passphrase))


# ---------------------------------------------------------------------------
# Signing and verification
# ---------------------------------------------------------------------------


def sign_data(data: bytes, private_key_pem: str, passphrase: Optional[str] = None) -> str:
    """Sign *data* and return the base64 signature.

    :raises ValueError: If the private key cannot be loaded.
    """
    key = load_private_key(private_key_pem, passphrase)
    signature = key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def verify_signature(data: bytes, signature_b64: str, public_key_pem: str) -> bool:
    """Verify a base64 RSA-SHA256 signature over *data*.

    Never raises.  Every failure, including a malformed key or
    signature, is logged and reported as ``False``.
    """
    try:
        signature = base64.b64decode(signature_b64, validate=True)
        key = load_public_key(public_key_pem)
        key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        return True
    except InvalidSignature:
        logger.warning("License signature verification failed: signature mismatch")
        return False
    except (binascii.Error, ValueError, TypeError) as exc:
        logger.warning("License signature verification failed: %s", exc)
        return False
    except Exception as exc:
        logger.error("Unexpected error during signature verification: %s", exc)
        return False


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------


def compute_thumbprint(public_key_pem: str) -> str:
    """Base64 SHA-256 of the public key PEM text."""
    digest = hashlib.sha256(public_key_pem.strip().encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def compute_checksum(license_data: str) -> str:
    """Base64 SHA-256 of the base64 license payload string."""
    digest = hashlib.sha256(license_data.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")
