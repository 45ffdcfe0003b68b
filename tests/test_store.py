"""Tests for the conversation store."""

from datetime import timedelta

import pytest

from chatkeep.errors import ConversationNotFoundError
from chatkeep.models.conversation import DEFAULT_TITLE
from chatkeep.store import ConversationStore

SCOPE = "neural_text"


class TestConversations:
    """Conversation records."""

    async def test_create_and_list(self, store):
        first = await store.create_conversation("u1", SCOPE, "First")
        second = await store.create_conversation("u1", SCOPE)
        await store.create_conversation("u2", SCOPE, "Other user")
        await store.create_conversation("u1", "other_app", "Other scope")

        listed = await store.list_conversations("u1", SCOPE)

        assert [c.id for c in listed] == [second.id, first.id]
        assert second.title == DEFAULT_TITLE
        assert first.id != second.id

    async def test_list_is_stable_without_mutation(self, store):
        for i in range(3):
            await store.create_conversation("u1", SCOPE, f"Chat {i}")

        once = [c.id for c in await store.list_conversations("u1", SCOPE)]
        twice = [c.id for c in await store.list_conversations("u1", SCOPE)]
        assert once == twice

    async def test_rename_replaces_title_only(self, store):
        conv = await store.create_conversation("u1", SCOPE, "Old")
        await store.set_conversation_metadata(conv.id, "sum", ["k"])

        await store.rename_conversation(conv.id, "New")

        renamed = await store.get_conversation(conv.id)
        assert renamed.title == "New"
        assert renamed.timestamp == conv.timestamp
        assert renamed.metadata.summary == "sum"

    async def test_rename_and_metadata_on_missing_id_are_noops(self, store):
        await store.rename_conversation("missing", "Title")
        await store.set_conversation_metadata("missing", "s", [])

        assert await store.get_conversation("missing") is None

    async def test_metadata_replaced_wholesale(self, store):
        conv = await store.create_conversation("u1", SCOPE)
        await store.set_conversation_metadata(conv.id, "first", ["a", "b"])
        await store.set_conversation_metadata(conv.id, "second", ["c"])

        stored = await store.get_conversation(conv.id)
        assert stored.metadata.summary == "second"
        assert stored.metadata.keywords == ["c"]

    async def test_delete_cascades_to_messages(self, store):
        conv = await store.create_conversation("u1", SCOPE)
        keep = await store.create_conversation("u1", SCOPE)
        for text in ("one", "two", "three"):
            await store.append_message(conv.id, "u1", SCOPE, text, True)
        await store.append_message(keep.id, "u1", SCOPE, "stays", True)

        await store.delete_conversation(conv.id)

        assert await store.get_conversation(conv.id) is None
        assert await store.list_messages(conv.id) == []
        assert len(await store.list_messages(keep.id)) == 1


class TestMessages:
    """Message records."""

    async def test_hello_hi_there_scenario(self, store):
        conv = await store.create_conversation("u1", SCOPE)
        await store.append_message(conv.id, "u1", SCOPE, "Hello", True)
        await store.append_message(conv.id, "u1", SCOPE, "Hi there", False)

        messages = await store.list_messages(conv.id)

        assert [(m.content, m.is_user) for m in messages] == [("Hello", True), ("Hi there", False)]
        assert all(m.user_id == "u1" and m.app_scope == SCOPE for m in messages)

    async def test_timestamps_non_decreasing(self, store):
        conv = await store.create_conversation("u1", SCOPE)
        for i in range(10):
            await store.append_message(conv.id, "u1", SCOPE, f"m{i}", i % 2 == 0)

        messages = await store.list_messages(conv.id)

        assert [m.content for m in messages] == [f"m{i}" for i in range(10)]
        stamps = [m.timestamp for m in messages]
        assert stamps == sorted(stamps)

    async def test_update_content_keeps_id_and_stays_last(self, store):
        conv = await store.create_conversation("u1", SCOPE)
        await store.append_message(conv.id, "u1", SCOPE, "Hello", True)
        answer = await store.append_message(conv.id, "u1", SCOPE, "Hi", False)

        updated = await store.update_message_content(answer.id, "Hello again")

        messages = await store.list_messages(conv.id)
        assert len(messages) == 2
        assert messages[-1].id == answer.id
        assert messages[-1].content == "Hello again"
        assert updated.timestamp >= answer.timestamp

    async def test_append_never_precedes_latest(self, store):
        """A message stamped in the future still sorts before later appends."""
        conv = await store.create_conversation("u1", SCOPE)
        first = await store.append_message(conv.id, "u1", SCOPE, "first", True)
        await store.db.messages.update_one(
            {"_id": first.id}, {"$set": {"timestamp": first.timestamp + timedelta(hours=1)}}
        )

        await store.append_message(conv.id, "u1", SCOPE, "second", False)

        assert [m.content for m in await store.list_messages(conv.id)] == ["first", "second"]

    async def test_append_to_deleted_conversation_is_rejected(self, store):
        conv = await store.create_conversation("u1", SCOPE)
        await store.delete_conversation(conv.id)

        with pytest.raises(ConversationNotFoundError):
            await store.append_message(conv.id, "u1", SCOPE, "late", False)
        assert await store.count_messages(conv.id) == 0

    async def test_update_missing_message_is_noop(self, store):
        assert await store.update_message_content("missing", "x") is None

    async def test_get_last_message(self, store):
        conv = await store.create_conversation("u1", SCOPE)
        assert await store.get_last_message(conv.id) is None

        await store.append_message(conv.id, "u1", SCOPE, "a", True)
        last = await store.append_message(conv.id, "u1", SCOPE, "b", False)

        assert (await store.get_last_message(conv.id)).id == last.id


class TestProviderConfig:
    """Per-user provider configuration."""

    async def test_save_creates_then_updates_in_place(self, store):
        created = await store.save_provider_config("u1", "openrouter", "k1", None)
        updated = await store.save_provider_config("u1", "openrouter", "k2", None)

        assert created.id == updated.id
        assert updated.api_key == "k2"
        assert await store.db.provider_settings.count_documents({"userId": "u1"}) == 1

    async def test_credential_encrypted_at_rest(self, store):
        await store.save_provider_config("u1", "openai", "sk-secret-value", None)

        raw = await store.db.provider_settings.find_one({"userId": "u1"})
        assert raw["apiKey"] != "sk-secret-value"
        assert "sk-secret-value" not in str(raw["retained"])
        assert (await store.get_provider_config("u1")).api_key == "sk-secret-value"

    async def test_wrong_key_reads_as_unset(self, store, db):
        await store.save_provider_config("u1", "openai", "sk-secret", None)

        other = ConversationStore(db, "a-different-key")
        config = await other.get_provider_config("u1")

        assert config.provider == "openai"
        assert config.api_key is None

    async def test_switch_back_restores_credentials(self, store):
        await store.save_provider_config("u1", "openrouter", "k1", None)

        switched = await store.select_provider("u1", "lmstudio")
        assert switched.api_key is None
        assert switched.base_url is None

        await store.save_provider_config("u1", "lmstudio", None, "http://localhost:1234/v1")
        back = await store.select_provider("u1", "openrouter")

        assert back.provider == "openrouter"
        assert back.api_key == "k1"
        assert back.base_url is None
        again = await store.select_provider("u1", "lmstudio")
        assert again.base_url == "http://localhost:1234/v1"

    async def test_switch_to_unconfigured_provider_is_empty(self, store):
        await store.save_provider_config("u1", "openrouter", "k1", None)

        config = await store.select_provider("u1", "openai")

        assert config.provider == "openai"
        assert config.api_key is None

    async def test_reselecting_current_provider_changes_nothing(self, store):
        saved = await store.save_provider_config("u1", "openrouter", "k1", None)

        config = await store.select_provider("u1", "openrouter")

        assert config.api_key == "k1"
        assert config.updated_at == saved.updated_at

    async def test_select_without_record_creates_one(self, store):
        config = await store.select_provider("u1", "ollama")

        assert config.provider == "ollama"
        assert not config.has_credentials

    async def test_clear_keeps_id_and_provider(self, store):
        saved = await store.save_provider_config("u1", "openrouter", "k1", "https://example.test/v1")

        cleared = await store.clear_provider_credential("u1")

        assert cleared.id == saved.id
        assert cleared.provider == "openrouter"
        assert cleared.api_key is None
        assert cleared.base_url is None

        # Forgotten for a later switch back as well
        await store.select_provider("u1", "openai")
        assert (await store.select_provider("u1", "openrouter")).api_key is None

    async def test_clear_without_record_is_noop(self, store):
        assert await store.clear_provider_credential("u1") is None
        assert await store.get_provider_config("u1") is None
