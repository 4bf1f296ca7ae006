"""Tests for encryption status resolution."""

from topickeys.status import CapabilityFlags, EncryptionStatus, can_enable, encryption_status

WITH_KEYS = {"encrypt_public": "1$pub$sig", "encrypt_private": {"passphrase": "blob"}}


class TestEncryptionStatus:
    def test_feature_off(self):
        flags = CapabilityFlags(encrypt_enabled=False, **WITH_KEYS)
        assert encryption_status(flags, identity_present=True) == EncryptionStatus.DISABLED
        assert encryption_status(flags, identity_present=False) == EncryptionStatus.DISABLED

    def test_no_server_keys(self):
        flags = CapabilityFlags(encrypt_enabled=True)
        assert encryption_status(flags, identity_present=True) == EncryptionStatus.DISABLED

    def test_public_key_only_is_not_enough(self):
        flags = CapabilityFlags(encrypt_enabled=True, encrypt_public="1$pub$sig")
        assert encryption_status(flags, identity_present=True) == EncryptionStatus.DISABLED

    def test_server_keys_without_local_identity(self):
        flags = CapabilityFlags(encrypt_enabled=True, **WITH_KEYS)
        assert encryption_status(flags, identity_present=False) == EncryptionStatus.ENABLED

    def test_active(self):
        flags = CapabilityFlags(encrypt_enabled=True, **WITH_KEYS)
        assert encryption_status(flags, identity_present=True) == EncryptionStatus.ACTIVE

    def test_from_dict(self):
        flags = CapabilityFlags.from_dict(
            {
                "encrypt_enabled": True,
                "allowed_groups": ["staff"],
                "user_groups": None,
                **WITH_KEYS,
            }
        )
        assert flags.has_server_keys
        assert flags.allowed_groups == ("staff",)
        assert flags.user_groups == ()


class TestCanEnable:
    def test_already_enabled(self):
        assert can_enable(EncryptionStatus.ENABLED, False, ["staff"], [])
        assert can_enable(EncryptionStatus.ACTIVE, False, [], [])

    def test_feature_off(self):
        assert not can_enable(EncryptionStatus.DISABLED, False, [], ["staff"])

    def test_no_group_restriction(self):
        assert can_enable(EncryptionStatus.DISABLED, True, [], [])

    def test_member_of_allowed_group(self):
        assert can_enable(EncryptionStatus.DISABLED, True, ["Staff"], ["staff", "other"])

    def test_not_in_allowed_group(self):
        assert not can_enable(EncryptionStatus.DISABLED, True, ["staff"], ["trust_level_1"])
