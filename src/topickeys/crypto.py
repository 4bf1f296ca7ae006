"""Cryptographic primitives for topickeys.

Includes:
- RSA-OAEP (SHA-256) for wrapping topic keys under a participant's identity
- AES-256-GCM for topic content (titles, posts) under the topic key
- PBKDF2-HMAC-SHA256 + AES-256-GCM for passphrase-protected identity exports
- Ed25519 (PyNaCl) signing keys for version 1 identities

Everything above this module treats these as opaque capabilities: callers hand
in keys and bytes and get bytes back. Authentication failures surface as
DecryptionFailed, never as the underlying library's exception type.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from nacl.signing import SigningKey, VerifyKey

from .errors import DecryptionFailed

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537

TOPIC_KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16

PASSPHRASE_SALT_SIZE = 16
PASSPHRASE_ITERATIONS = 128_000

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


def bytes_to_base64url(data: bytes) -> str:
    """Encode bytes to base64url (URL-safe, no padding)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_to_bytes(s: str) -> bytes:
    """Decode base64url string to bytes (handles missing padding).

    Raises:
        ValueError: If the input is not valid base64url
    """
    padding_len = 4 - (len(s) % 4)
    if padding_len != 4:
        s += "=" * padding_len
    try:
        return base64.urlsafe_b64decode(s.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64url data: {e}") from e


# =============================================================================
# Identity key material
# =============================================================================


def generate_encryption_keypair() -> tuple[rsa.RSAPublicKey, rsa.RSAPrivateKey]:
    """Generate a fresh RSA keypair for wrapping topic keys."""
    private_key = rsa.generate_private_key(
        public_exponent=RSA_PUBLIC_EXPONENT,
        key_size=RSA_KEY_SIZE,
    )
    return private_key.public_key(), private_key


def generate_signing_keypair() -> tuple[VerifyKey, SigningKey]:
    """Generate a fresh Ed25519 keypair."""
    signing_key = SigningKey.generate()
    return signing_key.verify_key, signing_key


def serialize_encryption_public(key: rsa.RSAPublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def serialize_encryption_private(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_encryption_public(data: bytes) -> rsa.RSAPublicKey:
    """Load an RSA public key from DER.

    Raises:
        ValueError: If the data is not a DER-encoded RSA public key
    """
    key = serialization.load_der_public_key(data)
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("Not an RSA public key")
    return key


def load_encryption_private(data: bytes) -> rsa.RSAPrivateKey:
    """Load an RSA private key from DER.

    Raises:
        ValueError: If the data is not a DER-encoded RSA private key
    """
    key = serialization.load_der_private_key(data, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("Not an RSA private key")
    return key


def load_signing_public(data: bytes) -> VerifyKey:
    if len(data) != 32:
        raise ValueError("Ed25519 public key must be 32 bytes")
    return VerifyKey(data)


def load_signing_private(data: bytes) -> SigningKey:
    if len(data) != 32:
        raise ValueError("Ed25519 seed must be 32 bytes")
    return SigningKey(data)


# =============================================================================
# Topic keys
# =============================================================================


def generate_topic_key() -> bytes:
    """Generate a random 256-bit topic key."""
    return os.urandom(TOPIC_KEY_SIZE)


def wrap_topic_key(topic_key: bytes, public_key: rsa.RSAPublicKey) -> str:
    """
    Wrap a topic key for one participant.

    Args:
        topic_key: 32-byte symmetric topic key
        public_key: The participant's RSA encryption public key

    Returns:
        base64url RSA-OAEP ciphertext
    """
    return bytes_to_base64url(public_key.encrypt(topic_key, _OAEP))


def unwrap_topic_key(wrapped_key: str, private_key: rsa.RSAPrivateKey) -> bytes:
    """
    Unwrap a topic key with the participant's private key.

    Raises:
        DecryptionFailed: If the key was wrapped for someone else or is corrupt
    """
    try:
        ciphertext = base64url_to_bytes(wrapped_key)
        return private_key.decrypt(ciphertext, _OAEP)
    except ValueError as e:
        raise DecryptionFailed("Unable to unwrap topic key") from e


def encrypt_text(plaintext: str, key: bytes) -> str:
    """
    Encrypt text with AES-256-GCM.

    Returns:
        base64url of nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return bytes_to_base64url(nonce + ciphertext)


def decrypt_text(encrypted: str, key: bytes) -> str:
    """
    Decrypt text produced by encrypt_text.

    Raises:
        DecryptionFailed: If the key is wrong or the data was tampered with
    """
    try:
        data = base64url_to_bytes(encrypted)
    except ValueError as e:
        raise DecryptionFailed("Encrypted text is not valid base64url") from e
    if len(data) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionFailed("Encrypted text is too short")

    try:
        plaintext = AESGCM(key).decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)
    except InvalidTag as e:
        raise DecryptionFailed("Unable to decrypt text") from e
    return plaintext.decode("utf-8")


# =============================================================================
# Passphrase protection
# =============================================================================


def derive_passphrase_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a 256-bit key from a passphrase with PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=PASSPHRASE_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_with_passphrase(plaintext: bytes, passphrase: str) -> bytes:
    """
    Encrypt data under a passphrase.

    A fresh salt and nonce are generated on every call and prefixed to the
    ciphertext, so the result decrypts with nothing but the passphrase.

    Returns:
        salt (16 bytes) + nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    salt = os.urandom(PASSPHRASE_SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    key = derive_passphrase_key(passphrase, salt)
    return salt + nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def decrypt_with_passphrase(data: bytes, passphrase: str) -> bytes:
    """
    Decrypt data produced by encrypt_with_passphrase.

    Raises:
        ValueError: If the data is too short to hold salt, nonce and tag
        DecryptionFailed: If the passphrase is wrong or the data was tampered with
    """
    header = PASSPHRASE_SALT_SIZE + NONCE_SIZE
    if len(data) < header + TAG_SIZE:
        raise ValueError("Passphrase-protected data is too short")

    salt = data[:PASSPHRASE_SALT_SIZE]
    nonce = data[PASSPHRASE_SALT_SIZE:header]
    key = derive_passphrase_key(passphrase, salt)
    try:
        return AESGCM(key).decrypt(nonce, data[header:], None)
    except InvalidTag as e:
        raise DecryptionFailed("Wrong passphrase") from e
