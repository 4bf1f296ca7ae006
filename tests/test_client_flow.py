"""End-to-end tests: EncryptSession and TopicKeysClient against the API in-process."""

import httpx
import pytest

from topickeys import db
from topickeys.api import app
from topickeys.client import TopicKeysClient
from topickeys.crypto import decrypt_text
from topickeys.errors import ActivationFailed, ApiError, UnknownIdentity
from topickeys.identity import CURRENT_VERSION, decode, export_encrypted
from topickeys.session import EncryptSession
from topickeys.status import EncryptionStatus
from topickeys.storage import InMemoryLocalStore


def make_client(username):
    return TopicKeysClient(
        "http://testserver",
        username=username,
        admin_token="test-admin-token",
        transport=httpx.ASGITransport(app=app),
    )


def make_session(username, store=None):
    return EncryptSession(make_client(username), store or InMemoryLocalStore(), debounce_delay=0.01)


@pytest.fixture
def users():
    return {name: db.create_user(name)["id"] for name in ("alice", "bob", "carol")}


class TestClient:
    @pytest.mark.asyncio
    async def test_api_error(self, users):
        async with make_client("alice") as client:
            with pytest.raises(ApiError) as exc_info:
                await client.invite(999, "bob", "wrapped")
        assert exc_info.value.status_code == 404
        assert exc_info.value.detail == "Topic not found"

    @pytest.mark.asyncio
    async def test_fetch_identities_skips_empty_request(self, users):
        async with make_client("alice") as client:
            assert await client.fetch_user_identities([]) == {}

    @pytest.mark.asyncio
    async def test_admin_routes(self):
        async with make_client(None) as client:
            user = await client.create_user("dave", ["staff"])
            assert user["username"] == "dave"
            await client.run_encrypt_consistency()


class TestEncryptedTopicFlow:
    @pytest.mark.asyncio
    async def test_status_progression(self, users):
        async with make_session("alice") as session:
            assert await session.status() == EncryptionStatus.DISABLED
            await session.enable("pw")
            assert await session.status() == EncryptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_enable_with_requested_version(self, users):
        async with make_session("alice") as session:
            identity = await session.enable("pw", version=0)

        assert identity.version == 0
        assert decode(db.get_user_keys(users["alice"])["public"]).version == 0

    @pytest.mark.asyncio
    async def test_create_invite_and_read(self, users):
        async with make_session("alice") as alice, make_session("bob") as bob:
            await alice.enable("alice-pw")
            await bob.enable("bob-pw")

            topic_id = await alice.create_topic("Quarterly plans")
            assert await alice.decrypt_title(topic_id) == "Quarterly plans"

            await alice.invite(topic_id, "bob")
            assert db.participants_of(topic_id) == {users["alice"], users["bob"]}

            await bob.load_topic(topic_id)
            assert await bob.decrypt_title(topic_id) == "Quarterly plans"
            assert await bob.topic_keys.get(topic_id) == await alice.topic_keys.get(topic_id)

    @pytest.mark.asyncio
    async def test_invite_user_without_identity(self, users):
        async with make_session("alice") as alice:
            await alice.enable("pw")
            topic_id = await alice.create_topic("Quarterly plans")

            with pytest.raises(UnknownIdentity):
                await alice.invite(topic_id, "carol")
            assert not db.is_participant(topic_id, users["carol"])

    @pytest.mark.asyncio
    async def test_update_title(self, users):
        async with make_session("alice") as alice:
            await alice.enable("pw")
            topic_id = await alice.create_topic("Draft")

            await alice.update_title(topic_id, "Final")

            assert await alice.decrypt_title(topic_id) == "Final"
            stored = db.get_topic(topic_id)["encrypted_title"]
            assert decrypt_text(stored, await alice.topic_keys.get(topic_id)) == "Final"

    @pytest.mark.asyncio
    async def test_removed_user_loses_key(self, users):
        async with make_session("alice") as alice, make_session("bob") as bob:
            await alice.enable("alice-pw")
            await bob.enable("bob-pw")
            topic_id = await alice.create_topic("Quarterly plans")
            await alice.invite(topic_id, "bob")

            await alice.remove_access(topic_id, "bob")

            with pytest.raises(ApiError) as exc_info:
                await bob.load_topic(topic_id)
            assert exc_info.value.status_code == 404


class TestActivation:
    @pytest.mark.asyncio
    async def test_activate_on_second_device(self, users):
        async with make_session("alice") as laptop:
            original = await laptop.enable("pw")
            topic_id = await laptop.create_topic("Quarterly plans")

        async with make_session("alice") as phone:
            assert await phone.status() == EncryptionStatus.ENABLED
            assert await phone.activate("pw") == original
            assert await phone.status() == EncryptionStatus.ACTIVE

            await phone.load_topic(topic_id)
            assert await phone.decrypt_title(topic_id) == "Quarterly plans"

    @pytest.mark.asyncio
    async def test_wrong_passphrase(self, users):
        async with make_session("alice") as laptop:
            await laptop.enable("pw")

        async with make_session("alice") as phone:
            with pytest.raises(ActivationFailed):
                await phone.activate("not-pw")
            assert await phone.status() == EncryptionStatus.ENABLED

    @pytest.mark.asyncio
    async def test_activate_without_server_keys(self, users):
        async with make_session("alice") as session:
            with pytest.raises(ActivationFailed):
                await session.activate("pw")

    @pytest.mark.asyncio
    async def test_legacy_identity_upgraded_on_server(self, users, legacy_identity):
        exported = export_encrypted(legacy_identity, "pw")
        db.set_user_keys(users["alice"], exported.public, {"passphrase": exported.private})

        async with make_session("alice") as session:
            identity = await session.activate("pw")

        assert identity.version == CURRENT_VERSION
        assert identity.encrypt_public == legacy_identity.encrypt_public
        stored = db.get_user_keys(users["alice"])
        assert decode(stored["public"]).version == CURRENT_VERSION

    @pytest.mark.asyncio
    async def test_enable_twice_conflicts(self, users):
        async with make_session("alice") as laptop:
            await laptop.enable("pw")

        async with make_session("alice") as phone:
            with pytest.raises(ApiError) as exc_info:
                await phone.enable("pw")
            assert exc_info.value.status_code == 409
            # The conflicting identity was not activated locally
            assert not await phone.identities.has_identity()
