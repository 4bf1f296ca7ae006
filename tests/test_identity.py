"""Tests for the identity model and codec."""

import pytest

from topickeys import crypto
from topickeys.errors import DecryptionFailed, MalformedIdentity
from topickeys.identity import (
    CURRENT_VERSION,
    ExportedIdentity,
    Identity,
    decode,
    encode,
    export_encrypted,
    generate_identity,
    import_encrypted,
    upgrade_identity,
)


class TestGenerate:
    def test_current_version_has_both_keypairs(self, alice_identity):
        assert alice_identity.version == CURRENT_VERSION
        assert alice_identity.encrypt_private is not None
        assert alice_identity.sign_public is not None
        assert alice_identity.sign_private is not None

    def test_legacy_has_no_signing_keys(self, legacy_identity):
        assert legacy_identity.is_legacy
        assert legacy_identity.sign_public is None
        assert legacy_identity.sign_private is None

    def test_unsupported_version(self):
        with pytest.raises(ValueError):
            generate_identity(version=7)

    def test_v1_requires_signing_keys(self, legacy_identity):
        with pytest.raises(MalformedIdentity):
            Identity(
                version=1,
                encrypt_public=legacy_identity.encrypt_public,
                encrypt_private=legacy_identity.encrypt_private,
            )

    def test_private_keys_hidden_from_repr(self, alice_identity):
        assert "encrypt_private" not in repr(alice_identity)


class TestEncoding:
    def test_roundtrip_v1(self, alice_identity):
        assert decode(encode(alice_identity)) == alice_identity

    def test_roundtrip_v0(self, legacy_identity):
        assert decode(encode(legacy_identity)) == legacy_identity

    def test_field_counts(self, alice_identity, legacy_identity):
        assert encode(alice_identity).count("$") == 4
        assert encode(alice_identity.public()).count("$") == 2
        assert encode(legacy_identity).count("$") == 2
        assert encode(legacy_identity.public()).count("$") == 1

    def test_version_first(self, alice_identity):
        assert encode(alice_identity).startswith("1$")

    def test_public_roundtrip(self, alice_identity):
        public = decode(encode(alice_identity.public()))
        assert public.is_public
        assert public == alice_identity.public()

    def test_unparseable_version(self, alice_identity):
        encoded = encode(alice_identity)
        with pytest.raises(MalformedIdentity):
            decode("x" + encoded[1:])

    def test_unknown_version(self, alice_identity):
        encoded = encode(alice_identity)
        with pytest.raises(MalformedIdentity):
            decode("9" + encoded[1:])

    def test_wrong_field_count(self, alice_identity):
        fields = encode(alice_identity).split("$")
        with pytest.raises(MalformedIdentity):
            decode("$".join(fields[:4]))

    def test_bad_key_material(self, alice_identity):
        fields = encode(alice_identity).split("$")
        fields[1] = crypto.bytes_to_base64url(b"not a key")
        with pytest.raises(MalformedIdentity):
            decode("$".join(fields))

    def test_empty(self):
        with pytest.raises(MalformedIdentity):
            decode("")


class TestExport:
    def test_import_roundtrip(self, alice_identity):
        exported = export_encrypted(alice_identity, "correct horse")
        assert import_encrypted(exported, "correct horse") == alice_identity

    def test_public_half_in_clear(self, alice_identity):
        exported = export_encrypted(alice_identity, "correct horse")
        assert decode(exported.public) == alice_identity.public()

    def test_import_from_private_string(self, legacy_identity):
        exported = export_encrypted(legacy_identity, "pw")
        assert import_encrypted(exported.private, "pw") == legacy_identity

    def test_wrong_passphrase(self, alice_identity):
        exported = export_encrypted(alice_identity, "p1")
        with pytest.raises(DecryptionFailed):
            import_encrypted(exported, "p2")

    def test_structurally_invalid(self):
        with pytest.raises(MalformedIdentity):
            import_encrypted(crypto.bytes_to_base64url(b"tiny"), "pw")

    def test_export_public_identity_rejected(self, alice_identity):
        with pytest.raises(ValueError):
            export_encrypted(alice_identity.public(), "pw")

    def test_exported_dict_roundtrip(self, alice_identity):
        exported = export_encrypted(alice_identity, "pw")
        assert ExportedIdentity.from_dict(exported.to_dict()) == exported

    def test_exported_from_dict_missing_field(self):
        with pytest.raises(MalformedIdentity):
            ExportedIdentity.from_dict({"public": "1$abc"})


class TestUpgrade:
    def test_upgrade_keeps_encryption_keys(self, legacy_identity):
        upgraded = upgrade_identity(legacy_identity)
        assert upgraded.version == CURRENT_VERSION
        assert upgraded.encrypt_public == legacy_identity.encrypt_public
        assert upgraded.encrypt_private == legacy_identity.encrypt_private
        assert upgraded.sign_public is not None

    def test_upgrade_twice_same_encryption_keys(self, legacy_identity):
        first = upgrade_identity(legacy_identity)
        second = upgrade_identity(legacy_identity)
        assert first.encrypt_public == second.encrypt_public
        assert first.encrypt_private == second.encrypt_private

    def test_upgrade_current_is_noop(self, alice_identity):
        assert upgrade_identity(alice_identity) is alice_identity

    def test_upgraded_still_unwraps_old_keys(self, legacy_identity):
        topic_key = crypto.generate_topic_key()
        wrapped = legacy_identity.public().wrap_topic_key(topic_key)
        assert upgrade_identity(legacy_identity).unwrap_topic_key(wrapped) == topic_key
