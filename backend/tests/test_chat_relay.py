import asyncio

import pytest

from chatrelay.core.exceptions import AuthorizationError, InvalidRequestError, ProviderError
from chatrelay.models.user import User
from chatrelay.services import conversation_service as store
from chatrelay.services.chat_service import TEMPERATURE, ChatRelay, ConversationLocks
from conftest import DEFAULT_MODEL, FIXED_NOW, GPT, HAIKU


async def collect(stream):
    return [fragment async for fragment in stream]


async def reload_user(session_factory, user_id):
    async with session_factory() as session:
        return await session.get(User, user_id)


class TestStartConversation:
    @pytest.mark.asyncio
    async def test_first_turn_persists_both_messages_and_generates_title(self, relay, provider, db, user):
        conv, user_msg, assistant_msg = await relay.start_conversation(db, user, "What is a monad?", GPT)

        assert conv.model == GPT
        assert conv.title == "Friendly greeting"
        assert (user_msg.role, user_msg.content) == ("user", "What is a monad?")
        assert (assistant_msg.role, assistant_msg.content) == ("assistant", "Hello! How can I help?")

        messages, model, temperature = provider.chat_calls[0]
        assert model == GPT
        assert temperature == TEMPERATURE
        assert messages[0]["role"] == "system"
        assert "Monday 15 January 2024 09:30" in messages[0]["content"]
        assert "Ada Lovelace" in messages[0]["content"]
        assert messages[1:] == [{"role": "user", "content": "What is a monad?"}]

    @pytest.mark.asyncio
    async def test_valid_model_becomes_preference(self, relay, db, user, session_factory):
        await relay.start_conversation(db, user, "hi", HAIKU)

        assert (await reload_user(session_factory, user.id)).preferred_model == HAIKU

    @pytest.mark.asyncio
    async def test_unknown_model_falls_back_to_default(self, relay, provider, db, user, session_factory):
        conv, _, _ = await relay.start_conversation(db, user, "hi", "made-up/model")

        assert conv.model == DEFAULT_MODEL
        assert provider.chat_calls[0][1] == DEFAULT_MODEL
        assert (await reload_user(session_factory, user.id)).preferred_model is None

    @pytest.mark.asyncio
    async def test_long_message_gets_provisional_title_when_title_fails(self, relay, provider, db, user):
        provider.fail_titles = True
        text = "Please explain the difference between concurrency and parallelism in detail"

        conv, _, _ = await relay.start_conversation(db, user, text, GPT)

        assert conv.title == text[:50] + "..."

    @pytest.mark.asyncio
    async def test_blank_message_is_rejected_before_anything_is_stored(self, relay, provider, db, user):
        with pytest.raises(InvalidRequestError) as excinfo:
            await relay.start_conversation(db, user, "   ", GPT)

        assert excinfo.value.fields == ["message"]
        assert await store.list_conversations(db, user.id) == []
        assert provider.complete_calls == []

    @pytest.mark.asyncio
    async def test_empty_conversation_has_default_title(self, relay, db, user):
        conv = await relay.create_empty_conversation(db, user, GPT)

        assert conv.title == "New conversation"
        assert await store.get_messages(db, conv.id) == []


class TestCompleteTurn:
    @pytest.mark.asyncio
    async def test_history_is_sent_in_order_behind_a_fresh_system_message(self, relay, provider, db, user):
        conv, _, _ = await relay.start_conversation(db, user, "first", GPT)
        provider.reply = "second reply"

        await relay.complete_turn(db, user, conv, "second")

        messages = provider.chat_calls[-1][0]
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert [m["content"] for m in messages[1:]] == ["first", "Hello! How can I help?", "second"]

    @pytest.mark.asyncio
    async def test_title_is_only_generated_on_the_first_turn(self, relay, provider, db, user):
        conv, _, _ = await relay.start_conversation(db, user, "first", GPT)
        provider.title = "Another title"

        await relay.complete_turn(db, user, conv, "second")

        assert len(provider.title_calls) == 1
        assert conv.title == "Friendly greeting"

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_user_message(self, relay, provider, db, user):
        conv = await relay.create_empty_conversation(db, user, GPT)
        provider.fail_complete = True

        with pytest.raises(ProviderError):
            await relay.complete_turn(db, user, conv, "are you there?")

        history = await store.get_history(db, conv.id)
        assert history == [{"role": "user", "content": "are you there?"}]

        provider.fail_complete = False
        await relay.complete_turn(db, user, conv, "are you there?")
        retry_messages = provider.chat_calls[-1][0]
        assert [m["content"] for m in retry_messages[1:]] == ["are you there?", "are you there?"]

    @pytest.mark.asyncio
    async def test_supplied_model_rebinds_conversation(self, relay, provider, db, user, session_factory):
        conv = await relay.create_empty_conversation(db, user, GPT)

        await relay.complete_turn(db, user, conv, "hi", HAIKU)

        assert conv.model == HAIKU
        assert provider.chat_calls[-1][1] == HAIKU
        assert (await reload_user(session_factory, user.id)).preferred_model == HAIKU

    @pytest.mark.asyncio
    async def test_invalid_supplied_model_uses_default_without_rebinding(self, relay, provider, db, user):
        conv = await relay.create_empty_conversation(db, user, GPT)

        await relay.complete_turn(db, user, conv, "hi", "made-up/model")

        assert conv.model == GPT
        assert provider.chat_calls[-1][1] == DEFAULT_MODEL


class TestTitles:
    @pytest.mark.asyncio
    async def test_title_is_stripped_and_truncated(self, relay, provider, db, user):
        conv = await relay.create_empty_conversation(db, user, GPT)
        provider.title = "  " + "T" * 150 + "\n"

        conv = await relay.regenerate_title(db, user, conv, "q", "a")

        assert conv.title == "T" * 100

    @pytest.mark.asyncio
    async def test_title_prompt_quotes_both_messages(self, relay, provider, db, user):
        conv = await relay.create_empty_conversation(db, user, GPT)

        await relay.regenerate_title(db, user, conv, "How do I boil an egg?", "Put it in water.")

        messages, model, _ = provider.title_calls[0]
        assert model == GPT
        assert messages[0]["role"] == "system"
        assert "User message: How do I boil an egg?" in messages[-1]["content"]
        assert "AI reply: Put it in water." in messages[-1]["content"]

    @pytest.mark.asyncio
    async def test_empty_title_keeps_current_one(self, relay, provider, db, user):
        conv = await relay.create_empty_conversation(db, user, GPT)
        provider.title = "   "

        conv = await relay.regenerate_title(db, user, conv, "q", "a")

        assert conv.title == "New conversation"


class TestStreamTurn:
    @pytest.mark.asyncio
    async def test_streamed_reply_equals_concatenated_fragments(self, relay, provider, db, user, session_factory):
        conv = await relay.create_empty_conversation(db, user, GPT)

        sent = await collect(relay.stream_turn(user, conv.id, "tell me"))

        assert sent == ["Hel", "lo", " there"]
        async with session_factory() as session:
            history = await store.get_history(session, conv.id)
            refreshed = await store.get_owned_conversation(session, conv.id, user.id)
        assert history == [
            {"role": "user", "content": "tell me"},
            {"role": "assistant", "content": "Hello there"},
        ]
        assert refreshed.title == "Friendly greeting"
        assert provider.stream_calls[0][0][0]["role"] == "system"

    @pytest.mark.asyncio
    async def test_interrupted_stream_persists_the_prefix(self, relay, provider, db, user, session_factory):
        conv = await relay.create_empty_conversation(db, user, GPT)
        provider.fail_stream_after = 2

        sent = await collect(relay.stream_turn(user, conv.id, "tell me"))

        assert sent == ["Hel", "lo"]
        async with session_factory() as session:
            history = await store.get_history(session, conv.id)
            refreshed = await store.get_owned_conversation(session, conv.id, user.id)
        assert history[-1] == {"role": "assistant", "content": "Hello"}
        assert refreshed.title == "New conversation"
        assert provider.title_calls == []

    @pytest.mark.asyncio
    async def test_failure_before_first_fragment_stores_only_user_message(
        self, relay, provider, db, user, session_factory
    ):
        conv = await relay.create_empty_conversation(db, user, GPT)
        provider.fail_stream_after = 0

        assert await collect(relay.stream_turn(user, conv.id, "tell me")) == []

        async with session_factory() as session:
            assert await store.get_history(session, conv.id) == [{"role": "user", "content": "tell me"}]

    @pytest.mark.asyncio
    async def test_client_disconnect_persists_forwarded_text(self, relay, db, user, session_factory):
        conv = await relay.create_empty_conversation(db, user, GPT)
        stream = relay.stream_turn(user, conv.id, "tell me")

        assert await anext(stream) == "Hel"
        await stream.aclose()

        async with session_factory() as session:
            history = await store.get_history(session, conv.id)
        assert history[-1] == {"role": "assistant", "content": "Hel"}
        assert not relay.locks.is_locked(conv.id)

    @pytest.mark.asyncio
    async def test_stream_checks_ownership(self, relay, db, user, other_user):
        conv = await relay.create_empty_conversation(db, user, GPT)

        with pytest.raises(AuthorizationError):
            await collect(relay.stream_turn(other_user, conv.id, "let me in"))


class TestConversationLocks:
    @pytest.mark.asyncio
    async def test_turns_on_one_conversation_do_not_interleave(self, catalog, session_factory, db, user):
        order = []
        started = asyncio.Event()
        release = asyncio.Event()

        class SlowProvider:
            async def complete(self, messages, model, temperature):
                if messages[-1]["content"].startswith("Generate a short title"):
                    return "Title"
                text = messages[-1]["content"]
                order.append(f"start {text}")
                if text == "one":
                    started.set()
                    await release.wait()
                order.append(f"end {text}")
                return f"reply to {text}"

        relay = ChatRelay(SlowProvider(), catalog, session_factory, clock=lambda: FIXED_NOW)
        conv = await relay.create_empty_conversation(db, user, GPT)

        async def turn(text):
            async with session_factory() as session:
                owned = await store.get_owned_conversation(session, conv.id, user.id)
                await relay.complete_turn(session, user, owned, text)

        first = asyncio.create_task(turn("one"))
        await started.wait()
        second = asyncio.create_task(turn("two"))
        await asyncio.sleep(0.05)
        assert relay.locks.is_locked(conv.id)
        release.set()
        await asyncio.gather(first, second)

        assert order == ["start one", "end one", "start two", "end two"]
        async with session_factory() as session:
            history = await store.get_history(session, conv.id)
        assert [m["content"] for m in history] == ["one", "reply to one", "two", "reply to two"]

    @pytest.mark.asyncio
    async def test_lock_entries_are_released(self):
        locks = ConversationLocks()

        async with locks.hold("abc"):
            assert locks.is_locked("abc")

        assert not locks.is_locked("abc")
        assert locks._locks == {}


class TestOwnership:
    @pytest.mark.asyncio
    async def test_turn_on_someone_elses_conversation_stores_nothing(self, relay, provider, db, user, other_user):
        conv = await relay.create_empty_conversation(db, user, GPT)

        with pytest.raises(AuthorizationError):
            await relay.complete_turn(db, other_user, conv, "intruder text")

        assert await store.get_messages(db, conv.id) == []
        assert provider.complete_calls == []

    @pytest.mark.asyncio
    async def test_model_and_title_updates_require_the_owner(self, relay, provider, db, user, other_user):
        conv = await relay.create_empty_conversation(db, user, GPT)

        with pytest.raises(AuthorizationError):
            await relay.update_model(db, other_user, conv, HAIKU)
        with pytest.raises(AuthorizationError):
            await relay.regenerate_title(db, other_user, conv, "q", "a")

        assert conv.model == GPT
        assert conv.title == "New conversation"
        assert provider.title_calls == []
