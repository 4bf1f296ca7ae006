"""topickeys - Key distribution for end-to-end encrypted topics.

Usage:
    from topickeys import EncryptSession, FileLocalStore, TopicKeysClient

    client = TopicKeysClient("http://localhost:8000", username="alice")
    async with EncryptSession(client, FileLocalStore("~/.config/topickeys/identity")) as session:
        await session.enable("correct horse battery staple")
        topic_id = await session.create_topic("Quarterly plans")
        await session.invite(topic_id, "bob")

Server side:
    from topickeys import jobs
    jobs.encrypt_consistency()  # align participants with topic keys
"""

from topickeys._version import __version__
from topickeys.client import TopicKeysClient
from topickeys.errors import (
    ActivationFailed,
    ApiError,
    DecryptionFailed,
    IdentityMissing,
    MalformedIdentity,
    NoKeyForTopic,
    NoTitleForTopic,
    TopicKeysError,
    UnknownIdentity,
)
from topickeys.identity import ExportedIdentity, Identity
from topickeys.identity_manager import IdentityManager
from topickeys.session import EncryptSession
from topickeys.status import EncryptionStatus
from topickeys.storage import FileLocalStore, InMemoryLocalStore, LocalStore

__all__ = [
    "__version__",
    "ActivationFailed",
    "ApiError",
    "DecryptionFailed",
    "EncryptSession",
    "EncryptionStatus",
    "ExportedIdentity",
    "FileLocalStore",
    "Identity",
    "IdentityManager",
    "IdentityMissing",
    "InMemoryLocalStore",
    "LocalStore",
    "MalformedIdentity",
    "NoKeyForTopic",
    "NoTitleForTopic",
    "TopicKeysClient",
    "TopicKeysError",
    "UnknownIdentity",
]
