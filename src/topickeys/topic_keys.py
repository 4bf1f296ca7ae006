"""Per-topic symmetric key cache.

Topic keys arrive wrapped (RSA-OAEP under the current user's identity) and
are unwrapped lazily the first time something needs them. Encrypted topic
titles are cached alongside and decrypted once their topic key is usable.

Both caches are first-write-wins and resolve each topic at most once at a
time; see cache.SingleFlightCache.
"""

from __future__ import annotations

import functools
import logging

from .cache import SingleFlightCache
from .crypto import decrypt_text
from .errors import NoKeyForTopic, NoTitleForTopic
from .identity_manager import IdentityManager
from .metrics import metrics

logger = logging.getLogger(__name__)


class TopicKeyCache:
    """Topic keys and decrypted titles for the current user.

    Args:
        identities: Source of the private key used to unwrap topic keys
    """

    def __init__(self, identities: IdentityManager):
        self._identities = identities
        self._keys: SingleFlightCache[bytes] = SingleFlightCache("topic_key")
        self._titles: SingleFlightCache[str] = SingleFlightCache("topic_title")

    def put(self, topic_id: int, key: str | bytes) -> bool:
        """Store a wrapped key (str) or a usable key (bytes) for a topic.

        Later puts for a topic that already has a value are ignored.

        Returns:
            True if stored.
        """
        if isinstance(key, bytes):
            return self._keys.put_resolved(topic_id, key)
        return self._keys.put(topic_id, key)

    def has_key(self, topic_id: int) -> bool:
        return topic_id in self._keys

    async def get(self, topic_id: int) -> bytes:
        """Get the usable key for a topic, unwrapping it on first use.

        Raises:
            NoKeyForTopic: If no key was ever stored for the topic
            IdentityMissing: If the key is wrapped and there is no local identity
            DecryptionFailed: If the key was not wrapped for this identity
        """
        try:
            return await self._keys.get(topic_id, self._unwrap)
        except KeyError:
            raise NoKeyForTopic(topic_id) from None

    async def _unwrap(self, wrapped_key: str) -> bytes:
        identity = await self._identities.require_identity()
        metrics.increment("unwrap")
        return identity.unwrap_topic_key(wrapped_key)

    def put_title(self, topic_id: int, encrypted_title: str) -> bool:
        """Store a topic's encrypted title. First write wins."""
        return self._titles.put(topic_id, encrypted_title)

    def has_title(self, topic_id: int) -> bool:
        return topic_id in self._titles

    async def get_title(self, topic_id: int) -> str:
        """Get a topic's decrypted title.

        Raises:
            NoTitleForTopic: If no encrypted title was ever stored
            NoKeyForTopic: If the title is stored but its key is not
        """
        if topic_id not in self._titles:
            raise NoTitleForTopic(topic_id)
        return await self._titles.get(topic_id, functools.partial(self._decrypt_title, topic_id))

    def forget_title(self, topic_id: int) -> bool:
        """Drop a topic's title so a newer encrypted title can be stored."""
        return self._titles.delete(topic_id)

    async def _decrypt_title(self, topic_id: int, encrypted_title: str) -> str:
        key = await self.get(topic_id)
        return decrypt_text(encrypted_title, key)

    def clear(self) -> None:
        """Forget every key and title (e.g. on logout)."""
        self._keys.clear()
        self._titles.clear()
