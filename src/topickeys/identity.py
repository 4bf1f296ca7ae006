"""Identity model and codec.

An identity is a user's asymmetric key material plus a version tag:

- version 0 (legacy): RSA encryption keypair only
- version 1: RSA encryption keypair + Ed25519 signing keypair

Transport format is a ``$``-delimited string of base64url fields, version
first. Fields are positional, so a public identity (only the public halves)
and a full identity of the same version differ in field count:

    0$<encrypt_public>                                         public, v0
    0$<encrypt_public>$<encrypt_private>                       full, v0
    1$<encrypt_public>$<sign_public>                           public, v1
    1$<encrypt_public>$<encrypt_private>$<sign_public>$<sign_private>   full, v1

Exports for server-side storage keep the public half in clear and encrypt the
full identity under a passphrase (see crypto.encrypt_with_passphrase).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa
from nacl.signing import SigningKey, VerifyKey

from . import crypto
from .errors import MalformedIdentity

LEGACY_VERSION = 0
CURRENT_VERSION = 1
DELIMITER = "$"

# Field order per version; public layouts are the public halves in the same order
_FULL_FIELDS: dict[int, tuple[str, ...]] = {
    0: ("encrypt_public", "encrypt_private"),
    1: ("encrypt_public", "encrypt_private", "sign_public", "sign_private"),
}
_PUBLIC_FIELDS: dict[int, tuple[str, ...]] = {
    0: ("encrypt_public",),
    1: ("encrypt_public", "sign_public"),
}

_KEY_LOADERS = {
    "encrypt_public": crypto.load_encryption_public,
    "encrypt_private": crypto.load_encryption_private,
    "sign_public": crypto.load_signing_public,
    "sign_private": crypto.load_signing_private,
}


@dataclass(frozen=True)
class Identity:
    """A versioned identity.

    Key components are held serialized (DER for RSA, raw 32 bytes for
    Ed25519) so identities compare and hash by value. A public identity has
    no private halves.
    """

    version: int
    encrypt_public: bytes
    encrypt_private: bytes | None = field(default=None, repr=False)
    sign_public: bytes | None = None
    sign_private: bytes | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.version not in _FULL_FIELDS:
            raise MalformedIdentity(f"Unsupported identity version {self.version}")
        if self.version >= 1:
            if self.sign_public is None:
                raise MalformedIdentity("Version 1+ identity requires a signing public key")
            if self.encrypt_private is not None and self.sign_private is None:
                raise MalformedIdentity("Version 1+ identity requires a signing private key")

    @property
    def is_public(self) -> bool:
        """True if this identity carries no private key material."""
        return self.encrypt_private is None

    @property
    def is_legacy(self) -> bool:
        return self.version == LEGACY_VERSION

    def public(self) -> Identity:
        """Return the public half of this identity."""
        return Identity(
            version=self.version,
            encrypt_public=self.encrypt_public,
            sign_public=self.sign_public,
        )

    def encryption_public_key(self) -> rsa.RSAPublicKey:
        return crypto.load_encryption_public(self.encrypt_public)

    def encryption_private_key(self) -> rsa.RSAPrivateKey:
        if self.encrypt_private is None:
            raise ValueError("Public identity has no encryption private key")
        return crypto.load_encryption_private(self.encrypt_private)

    def verify_key(self) -> VerifyKey | None:
        return crypto.load_signing_public(self.sign_public) if self.sign_public else None

    def signing_key(self) -> SigningKey | None:
        return crypto.load_signing_private(self.sign_private) if self.sign_private else None

    def wrap_topic_key(self, topic_key: bytes) -> str:
        """Wrap a topic key so only the holder of this identity can read it."""
        return crypto.wrap_topic_key(topic_key, self.encryption_public_key())

    def unwrap_topic_key(self, wrapped_key: str) -> bytes:
        """Unwrap a topic key wrapped for this identity.

        Raises:
            DecryptionFailed: If the key was not wrapped for this identity
        """
        return crypto.unwrap_topic_key(wrapped_key, self.encryption_private_key())


@dataclass(frozen=True)
class ExportedIdentity:
    """Identity export as stored server-side.

    ``public`` is the encoded public identity; ``private`` is the base64url
    passphrase-protected full identity.
    """

    public: str
    private: str

    def to_dict(self) -> dict[str, str]:
        return {"public": self.public, "private": self.private}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExportedIdentity:
        try:
            return cls(public=data["public"], private=data["private"])
        except (KeyError, TypeError) as e:
            raise MalformedIdentity(f"Invalid identity export: {e}") from e


# =============================================================================
# Transport encoding
# =============================================================================


def encode(identity: Identity) -> str:
    """Encode an identity (public or full) to its transport string."""
    layout = _PUBLIC_FIELDS if identity.is_public else _FULL_FIELDS
    parts = [str(identity.version)]
    for name in layout[identity.version]:
        parts.append(crypto.bytes_to_base64url(getattr(identity, name)))
    return DELIMITER.join(parts)


def decode(encoded: str) -> Identity:
    """Decode a transport string produced by encode().

    Raises:
        MalformedIdentity: If the version is unparseable or unknown, the field
            count does not match the version, or any key fails to load
    """
    if not isinstance(encoded, str) or not encoded:
        raise MalformedIdentity("Encoded identity must be a non-empty string")

    version_token, *fields = encoded.split(DELIMITER)
    try:
        version = int(version_token)
    except ValueError as e:
        raise MalformedIdentity(f"Invalid identity version {version_token!r}") from e

    if version not in _FULL_FIELDS:
        raise MalformedIdentity(f"Unsupported identity version {version}")

    if len(fields) == len(_FULL_FIELDS[version]):
        names = _FULL_FIELDS[version]
    elif len(fields) == len(_PUBLIC_FIELDS[version]):
        names = _PUBLIC_FIELDS[version]
    else:
        raise MalformedIdentity(
            f"Version {version} identity has {len(fields)} fields, expected "
            f"{len(_PUBLIC_FIELDS[version])} or {len(_FULL_FIELDS[version])}"
        )

    components: dict[str, bytes] = {}
    for name, value in zip(names, fields):
        try:
            raw = crypto.base64url_to_bytes(value)
            _KEY_LOADERS[name](raw)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise MalformedIdentity(f"Invalid {name} in identity: {e}") from e
        components[name] = raw

    return Identity(version=version, **components)


# =============================================================================
# Passphrase-protected export
# =============================================================================


def export_encrypted(identity: Identity, passphrase: str) -> ExportedIdentity:
    """
    Export an identity for server-side storage.

    Args:
        identity: A full identity (must carry private keys)
        passphrase: Passphrase protecting the private half

    Returns:
        ExportedIdentity with the public half in clear and the full identity
        encrypted under a key derived from the passphrase and a fresh salt
    """
    if identity.is_public:
        raise ValueError("Cannot export a public identity")

    sealed = crypto.encrypt_with_passphrase(encode(identity).encode("utf-8"), passphrase)
    return ExportedIdentity(
        public=encode(identity.public()),
        private=crypto.bytes_to_base64url(sealed),
    )


def import_encrypted(blob: ExportedIdentity | str, passphrase: str) -> Identity:
    """
    Import an identity exported with export_encrypted.

    Args:
        blob: The ExportedIdentity, or just its private string
        passphrase: Passphrase used at export time

    Raises:
        DecryptionFailed: If the passphrase is wrong
        MalformedIdentity: If the blob is structurally invalid
    """
    private = blob.private if isinstance(blob, ExportedIdentity) else blob
    if not isinstance(private, str):
        raise MalformedIdentity("Identity export must be a string")

    try:
        sealed = crypto.base64url_to_bytes(private)
        plaintext = crypto.decrypt_with_passphrase(sealed, passphrase)
    except ValueError as e:
        raise MalformedIdentity(f"Invalid identity export: {e}") from e

    try:
        encoded = plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedIdentity("Identity export is not valid UTF-8") from e

    identity = decode(encoded)
    if identity.is_public:
        raise MalformedIdentity("Identity export carries no private keys")
    return identity


# =============================================================================
# Generation and upgrade
# =============================================================================


def generate_identity(version: int = CURRENT_VERSION) -> Identity:
    """
    Generate fresh key material for an identity.

    Version 1+ always includes a signing keypair.

    Raises:
        ValueError: If the version is not supported
    """
    if version not in _FULL_FIELDS:
        raise ValueError(f"Unsupported identity version {version}")

    encrypt_public, encrypt_private = crypto.generate_encryption_keypair()
    sign_public = sign_private = None
    if version >= 1:
        verify_key, signing_key = crypto.generate_signing_keypair()
        sign_public, sign_private = bytes(verify_key), bytes(signing_key)

    return Identity(
        version=version,
        encrypt_public=crypto.serialize_encryption_public(encrypt_public),
        encrypt_private=crypto.serialize_encryption_private(encrypt_private),
        sign_public=sign_public,
        sign_private=sign_private,
    )


def upgrade_identity(identity: Identity) -> Identity:
    """
    Upgrade an identity to the current version.

    The encryption keypair is preserved (topic keys already wrapped for this
    user stay readable); a fresh signing keypair is generated. Identities
    already at the current version are returned unchanged.
    """
    if identity.version >= CURRENT_VERSION:
        return identity
    if identity.is_public:
        raise ValueError("Cannot upgrade a public identity")

    verify_key, signing_key = crypto.generate_signing_keypair()
    return Identity(
        version=CURRENT_VERSION,
        encrypt_public=identity.encrypt_public,
        encrypt_private=identity.encrypt_private,
        sign_public=bytes(verify_key),
        sign_private=bytes(signing_key),
    )
