"""Tests for the topic key and title cache."""

import asyncio

import pytest
import pytest_asyncio

from topickeys.crypto import encrypt_text, generate_topic_key
from topickeys.errors import DecryptionFailed, IdentityMissing, NoKeyForTopic, NoTitleForTopic
from topickeys.identity_manager import IdentityManager
from topickeys.metrics import metrics
from topickeys.storage import InMemoryLocalStore
from topickeys.topic_keys import TopicKeyCache


@pytest_asyncio.fixture
async def alice_keys(alice_identity):
    manager = IdentityManager(InMemoryLocalStore())
    await manager.save_identity(alice_identity)
    return TopicKeyCache(manager)


class TestTopicKeys:
    @pytest.mark.asyncio
    async def test_no_key(self, alice_keys):
        with pytest.raises(NoKeyForTopic) as exc_info:
            await alice_keys.get(1)
        assert exc_info.value.topic_id == 1

    @pytest.mark.asyncio
    async def test_unwraps_on_first_get(self, alice_keys, alice_identity):
        topic_key = generate_topic_key()
        alice_keys.put(1, alice_identity.wrap_topic_key(topic_key))
        assert alice_keys.has_key(1)
        assert await alice_keys.get(1) == topic_key

    @pytest.mark.asyncio
    async def test_concurrent_gets_unwrap_once(self, alice_keys, alice_identity):
        topic_key = generate_topic_key()
        alice_keys.put(1, alice_identity.wrap_topic_key(topic_key))

        first, second = await asyncio.gather(alice_keys.get(1), alice_keys.get(1))

        assert first == second == topic_key
        assert metrics.counters["unwrap"] == 1

    @pytest.mark.asyncio
    async def test_first_write_wins(self, alice_keys, alice_identity):
        key_a, key_b = generate_topic_key(), generate_topic_key()
        assert alice_keys.put(1, alice_identity.wrap_topic_key(key_a))
        assert not alice_keys.put(1, alice_identity.wrap_topic_key(key_b))
        assert await alice_keys.get(1) == key_a

    @pytest.mark.asyncio
    async def test_usable_key_needs_no_unwrap(self, alice_keys):
        topic_key = generate_topic_key()
        alice_keys.put(1, topic_key)
        assert await alice_keys.get(1) == topic_key
        assert metrics.counters.get("unwrap", 0) == 0

    @pytest.mark.asyncio
    async def test_key_for_someone_else(self, alice_keys, bob_identity):
        alice_keys.put(1, bob_identity.wrap_topic_key(generate_topic_key()))
        with pytest.raises(DecryptionFailed):
            await alice_keys.get(1)

    @pytest.mark.asyncio
    async def test_no_local_identity(self, alice_identity):
        keys = TopicKeyCache(IdentityManager(InMemoryLocalStore()))
        keys.put(1, alice_identity.wrap_topic_key(generate_topic_key()))
        with pytest.raises(IdentityMissing):
            await keys.get(1)


class TestTitles:
    @pytest.mark.asyncio
    async def test_no_title(self, alice_keys):
        with pytest.raises(NoTitleForTopic):
            await alice_keys.get_title(1)

    @pytest.mark.asyncio
    async def test_decrypts_title(self, alice_keys, alice_identity):
        topic_key = generate_topic_key()
        alice_keys.put(1, alice_identity.wrap_topic_key(topic_key))
        alice_keys.put_title(1, encrypt_text("Quarterly plans", topic_key))

        assert alice_keys.has_title(1)
        assert await alice_keys.get_title(1) == "Quarterly plans"

    @pytest.mark.asyncio
    async def test_title_without_key(self, alice_keys):
        alice_keys.put_title(1, encrypt_text("Quarterly plans", generate_topic_key()))
        with pytest.raises(NoKeyForTopic):
            await alice_keys.get_title(1)

    @pytest.mark.asyncio
    async def test_concurrent_titles_decrypt_once(self, alice_keys, alice_identity):
        topic_key = generate_topic_key()
        alice_keys.put(1, alice_identity.wrap_topic_key(topic_key))
        alice_keys.put_title(1, encrypt_text("Quarterly plans", topic_key))

        titles = await asyncio.gather(*(alice_keys.get_title(1) for _ in range(3)))

        assert titles == ["Quarterly plans"] * 3
        assert metrics.cache_stats["topic_title"].misses == 3
        assert metrics.counters["unwrap"] == 1

    @pytest.mark.asyncio
    async def test_title_first_write_wins(self, alice_keys):
        topic_key = generate_topic_key()
        alice_keys.put(1, topic_key)
        alice_keys.put_title(1, encrypt_text("first", topic_key))
        alice_keys.put_title(1, encrypt_text("second", topic_key))
        assert await alice_keys.get_title(1) == "first"

    @pytest.mark.asyncio
    async def test_forget_title_allows_replacement(self, alice_keys):
        topic_key = generate_topic_key()
        alice_keys.put(1, topic_key)
        alice_keys.put_title(1, encrypt_text("first", topic_key))
        await alice_keys.get_title(1)

        alice_keys.forget_title(1)
        alice_keys.put_title(1, encrypt_text("second", topic_key))
        assert await alice_keys.get_title(1) == "second"

    @pytest.mark.asyncio
    async def test_clear(self, alice_keys):
        alice_keys.put(1, generate_topic_key())
        alice_keys.put_title(1, "x")
        alice_keys.clear()
        assert not alice_keys.has_key(1)
        assert not alice_keys.has_title(1)
