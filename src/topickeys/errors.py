"""Exceptions raised by topickeys."""

from __future__ import annotations


class TopicKeysError(Exception):
    """Base class for all topickeys errors."""


class MalformedIdentity(TopicKeysError):
    """An encoded or exported identity is structurally invalid."""


class DecryptionFailed(TopicKeysError):
    """Authenticated decryption failed (wrong passphrase or tampered data)."""


class ActivationFailed(TopicKeysError):
    """None of the candidate private key blobs could be decrypted."""


class IdentityMissing(TopicKeysError):
    """An operation needs the local identity, but none is stored."""


class UnknownIdentity(TopicKeysError):
    """The remote lookup has no public identity for a username."""

    def __init__(self, username: str):
        super().__init__(f"No identity found for user {username!r}")
        self.username = username


class NoKeyForTopic(TopicKeysError):
    """No wrapped or resolved key was ever stored for a topic."""

    def __init__(self, topic_id: int):
        super().__init__(f"No key for topic {topic_id}")
        self.topic_id = topic_id


class NoTitleForTopic(TopicKeysError):
    """No encrypted title was ever stored for a topic."""

    def __init__(self, topic_id: int):
        super().__init__(f"No encrypted title for topic {topic_id}")
        self.topic_id = topic_id


class ApiError(TopicKeysError):
    """The server answered a remote call with a non-2xx status."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"API error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
