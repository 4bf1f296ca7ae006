"""Client-side encryption session.

Wires the identity manager, the user identity cache and the topic key cache
to one remote client for the acting user:

    async with EncryptSession(client, FileLocalStore(path)) as session:
        await session.activate("passphrase")
        topic_id = await session.create_topic("Quarterly plans")
        await session.invite(topic_id, "bob")
        title = await session.decrypt_title(topic_id)
"""

from __future__ import annotations

import logging

from .client import TopicKeysClient
from .crypto import encrypt_text, generate_topic_key
from .debounce import DEFAULT_DELAY
from .errors import ActivationFailed
from .identity import CURRENT_VERSION, Identity
from .identity_manager import IdentityManager
from .status import CapabilityFlags, EncryptionStatus, encryption_status
from .storage import LocalStore
from .topic_keys import TopicKeyCache
from .user_identities import UserIdentityCache

logger = logging.getLogger(__name__)

# Plaintext title stored next to the encrypted one
PLACEHOLDER_TITLE = "Encrypted topic"


class EncryptSession:
    """Everything one user needs to read and share encrypted topics.

    Args:
        client: Remote client acting as the session's user
        store: Local store holding the user's identity
        debounce_delay: Quiet period for debounced identity lookups
    """

    def __init__(
        self,
        client: TopicKeysClient,
        store: LocalStore,
        debounce_delay: float = DEFAULT_DELAY,
    ):
        self.client = client
        self.identities = IdentityManager(store, remote=client)
        self.user_identities = UserIdentityCache(client.fetch_user_identities, debounce_delay)
        self.topic_keys = TopicKeyCache(self.identities)

    async def __aenter__(self) -> EncryptSession:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        self.user_identities.clear()
        self.topic_keys.clear()
        await self.client.aclose()

    # --- Status & Activation ---

    async def capabilities(self) -> CapabilityFlags:
        return CapabilityFlags.from_dict(await self.client.get_capabilities())

    async def status(self) -> EncryptionStatus:
        flags = await self.capabilities()
        return encryption_status(flags, await self.identities.has_identity())

    async def enable(self, passphrase: str, version: int = CURRENT_VERSION) -> Identity:
        """First-time setup: create an identity and publish its export."""
        return await self.identities.setup(passphrase, version)

    async def activate(self, passphrase: str) -> Identity:
        """Unlock the server-stored identity on this device.

        Raises:
            ActivationFailed: If the server holds no keys, or none decrypts
        """
        flags = await self.capabilities()
        if not flags.encrypt_private:
            raise ActivationFailed("No keys stored on the server")
        return await self.identities.activate(passphrase, flags.encrypt_private)

    async def logout(self) -> None:
        """Forget the local identity and every cached key."""
        await self.identities.forget_identity()
        self.topic_keys.clear()
        self.user_identities.clear()

    # --- Topics ---

    async def create_topic(self, title: str) -> int:
        """Create an encrypted topic owned by the acting user.

        Returns:
            The new topic's id
        """
        identity = await self.identities.require_identity()
        topic_key = generate_topic_key()
        encrypted_title = encrypt_text(title, topic_key)

        topic = await self.client.create_topic(
            PLACEHOLDER_TITLE,
            encrypted_title=encrypted_title,
            key=identity.wrap_topic_key(topic_key),
        )
        topic_id = topic["id"]
        self.topic_keys.put(topic_id, topic_key)
        self.topic_keys.put_title(topic_id, encrypted_title)
        logger.debug(f"Created encrypted topic {topic_id}")
        return topic_id

    async def load_topic(self, topic_id: int) -> None:
        """Fetch the acting user's wrapped key and the encrypted title."""
        info = await self.client.get_topic_key(topic_id)
        self.topic_keys.put(topic_id, info["topic_key"])
        if info.get("encrypted_title"):
            self.topic_keys.put_title(topic_id, info["encrypted_title"])

    async def decrypt_title(self, topic_id: int) -> str:
        """
        Raises:
            NoTitleForTopic: If the topic's title was never loaded
        """
        return await self.topic_keys.get_title(topic_id)

    async def update_title(self, topic_id: int, title: str) -> None:
        """Re-encrypt a topic's title with its topic key and store it."""
        topic_key = await self.topic_keys.get(topic_id)
        encrypted_title = encrypt_text(title, topic_key)
        await self.client.update_encrypted_title(topic_id, encrypted_title)
        self.topic_keys.forget_title(topic_id)
        self.topic_keys.put_title(topic_id, encrypted_title)

    # --- Access ---

    async def invite(self, topic_id: int, username: str) -> None:
        """Wrap the topic key for another user and grant them access.

        Raises:
            NoKeyForTopic: If the acting user has no key for the topic
            UnknownIdentity: If the invitee has no published identity
        """
        topic_key = await self.topic_keys.get(topic_id)
        recipient = await self.user_identities.lookup(username)
        await self.client.invite(topic_id, username, recipient.wrap_topic_key(topic_key))
        logger.debug(f"Invited {username} to topic {topic_id}")

    async def remove_access(self, topic_id: int, username: str) -> None:
        await self.client.remove_access(topic_id, username)
