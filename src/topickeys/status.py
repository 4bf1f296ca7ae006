"""Encryption status resolution.

    DISABLED  the feature is off, or the user has no keys on the server
    ENABLED   the user has server-side keys but no identity on this device
    ACTIVE    both
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import IntEnum
from typing import Any


class EncryptionStatus(IntEnum):
    DISABLED = 0
    ENABLED = 1
    ACTIVE = 2


@dataclass(frozen=True)
class CapabilityFlags:
    """Server-declared flags for the current user."""

    encrypt_enabled: bool = False
    encrypt_public: str | None = None
    encrypt_private: dict[str, str] | None = None
    allowed_groups: tuple[str, ...] = ()
    user_groups: tuple[str, ...] = ()

    @property
    def has_server_keys(self) -> bool:
        return bool(self.encrypt_public) and bool(self.encrypt_private)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CapabilityFlags:
        return cls(
            encrypt_enabled=bool(data.get("encrypt_enabled", False)),
            encrypt_public=data.get("encrypt_public"),
            encrypt_private=data.get("encrypt_private"),
            allowed_groups=tuple(data.get("allowed_groups") or ()),
            user_groups=tuple(data.get("user_groups") or ()),
        )


def encryption_status(flags: CapabilityFlags, identity_present: bool) -> EncryptionStatus:
    """Compute the encryption status for a user on this device."""
    if not flags.encrypt_enabled or not flags.has_server_keys:
        return EncryptionStatus.DISABLED
    if not identity_present:
        return EncryptionStatus.ENABLED
    return EncryptionStatus.ACTIVE


def can_enable(
    status: EncryptionStatus,
    feature_enabled: bool,
    allowed_groups: Iterable[str],
    user_groups: Iterable[str],
) -> bool:
    """Whether the user may turn encryption on (or already has it)."""
    if status != EncryptionStatus.DISABLED:
        return True
    if not feature_enabled:
        return False
    allowed = {g.lower() for g in allowed_groups if g}
    if not allowed:
        return True
    return any(g.lower() in allowed for g in user_groups)
