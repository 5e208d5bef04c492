"""Chat relay: runs a conversation turn against the LLM provider.

A turn is: check ownership, persist the user message, rebind the model,
load the full history, prepend the system prompt, call the provider
(synchronously or streaming), then persist the assistant reply. The user
message is committed before the provider is called so it survives any
provider failure and a retry re-sends the same history.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing, asynccontextmanager
from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.core.exceptions import AuthorizationError, InvalidRequestError, ProviderError
from chatrelay.models.conversation import Conversation, Message
from chatrelay.models.user import User
from chatrelay.services import conversation_service
from chatrelay.services.model_catalog import ModelCatalog
from chatrelay.services.streaming import relay_fragments
from chatrelay.services.system_prompt import with_system_message

logger = logging.getLogger(__name__)

# Fixed sampling policy for every call; not user-configurable.
TEMPERATURE = 0.7
TITLE_MAX_LENGTH = 100

TITLE_PROMPT = (
    "Generate a short title (maximum 5 words) for a conversation based on this user message "
    "and this AI reply. Do not put quotation marks around the title.\n\n"
    "User message: {user_text}\n\n"
    "AI reply: {assistant_text}"
)


class ChatProvider(Protocol):
    async def complete(self, messages: list[dict], model: str, temperature: float) -> str: ...

    def stream(self, messages: list[dict], model: str, temperature: float) -> AsyncIterator[str]: ...


class ConversationLocks:
    """In-process mutual exclusion per conversation id.

    A turn holds its conversation's lock from persisting the user message to
    persisting the assistant reply, so concurrent turns on one conversation
    cannot interleave their history. Entries are dropped once nobody holds
    or waits for them.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: str):
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[conversation_id] -= 1
            if self._users[conversation_id] == 0:
                del self._users[conversation_id]
                del self._locks[conversation_id]

    def is_locked(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()


class ChatRelay:
    def __init__(
        self,
        provider: ChatProvider,
        catalog: ModelCatalog,
        session_factory: async_sessionmaker[AsyncSession],
        locks: ConversationLocks | None = None,
        stream_deadline: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.provider = provider
        self.catalog = catalog
        self.session_factory = session_factory
        self.locks = locks or ConversationLocks()
        self.stream_deadline = stream_deadline
        self.clock = clock

    # --- Conversations ---

    async def start_conversation(
        self, db: AsyncSession, user: User, text: str, model_id: str
    ) -> tuple[Conversation, Message, Message]:
        """Create a conversation from its first message and run the first turn."""
        _require_text(text)
        if not model_id:
            raise InvalidRequestError("A model is required", fields=["model"])

        model = await self._resolve_supplied_model(db, user, model_id)
        conversation = await conversation_service.create_conversation(
            db, user.id, model, title=conversation_service.provisional_title(text)
        )
        user_msg, assistant_msg = await self.complete_turn(db, user, conversation, text)
        return conversation, user_msg, assistant_msg

    async def create_empty_conversation(self, db: AsyncSession, user: User, model_id: str) -> Conversation:
        if not model_id:
            raise InvalidRequestError("A model is required", fields=["model"])
        model = await self._resolve_supplied_model(db, user, model_id)
        return await conversation_service.create_conversation(db, user.id, model)

    async def update_model(
        self, db: AsyncSession, user: User, conversation: Conversation, model_id: str
    ) -> Conversation:
        _require_owner(user, conversation)
        if not model_id:
            raise InvalidRequestError("A model is required", fields=["model"])
        await conversation_service.remember_preferred_model(db, user.id, model_id)
        return await conversation_service.update_conversation(db, conversation, model=model_id)

    # --- Turns ---

    async def complete_turn(
        self,
        db: AsyncSession,
        user: User,
        conversation: Conversation,
        text: str,
        model_id: str | None = None,
    ) -> tuple[Message, Message]:
        """Synchronous turn. Raises ProviderError after the user message is stored."""
        _require_owner(user, conversation)
        _require_text(text)
        async with self.locks.hold(conversation.id):
            first_turn = await conversation_service.count_assistant_messages(db, conversation.id) == 0
            user_msg = await self._record_user_message(db, user, conversation, text, model_id)
            messages, model = await self._prepare_request(db, user, conversation, model_id)

            try:
                reply = await self.provider.complete(messages, model, TEMPERATURE)
            except ProviderError:
                logger.exception("Provider call failed for conversation %s", conversation.id)
                raise

            assistant_msg = await conversation_service.append_message(
                db, conversation.id, "assistant", reply
            )

            if first_turn:
                await self.regenerate_title(db, user, conversation, text, reply)

        return user_msg, assistant_msg

    async def stream_turn(
        self,
        user: User,
        conversation_id: str,
        text: str,
        model_id: str | None = None,
    ) -> AsyncIterator[str]:
        """Streaming turn, yielding raw text fragments as the provider sends them.

        Runs on its own sessions since the request's session is closed once the
        response starts. Provider failures end the stream; whatever was
        forwarded before the failure is persisted as the assistant reply.
        """
        _require_text(text)
        async with self.locks.hold(conversation_id):
            async with self.session_factory() as db:
                conversation = await conversation_service.get_owned_conversation(db, conversation_id, user.id)
                first_turn = await conversation_service.count_assistant_messages(db, conversation.id) == 0
                await self._record_user_message(db, user, conversation, text, model_id)
                messages, model = await self._prepare_request(db, user, conversation, model_id)

            outcome: dict = {}

            async def finalize(reply: str, completed: bool) -> None:
                outcome.update(reply=reply, completed=completed)
                await self._store_streamed_reply(conversation_id, reply, completed)

            relay = relay_fragments(
                self.provider.stream(messages, model, TEMPERATURE),
                finalize,
                deadline=self.stream_deadline,
            )
            try:
                async with aclosing(relay):
                    async for fragment in relay:
                        yield fragment
            except ProviderError as e:
                logger.error("Stream for conversation %s failed: %s", conversation_id, e)
                return

            if first_turn and outcome.get("completed"):
                async with self.session_factory() as db:
                    conversation = await conversation_service.get_owned_conversation(
                        db, conversation_id, user.id
                    )
                    await self.regenerate_title(db, user, conversation, text, outcome["reply"])

    # --- Titles ---

    async def regenerate_title(
        self,
        db: AsyncSession,
        user: User,
        conversation: Conversation,
        user_text: str,
        assistant_text: str,
    ) -> Conversation:
        """Ask the provider for a short title. Failures keep the current title."""
        _require_owner(user, conversation)
        prompt = TITLE_PROMPT.format(user_text=user_text, assistant_text=assistant_text)
        model = await self.catalog.resolve(conversation.model)
        messages = with_system_message([{"role": "user", "content": prompt}], user, now=self._now())

        try:
            title = await self.provider.complete(messages, model, TEMPERATURE)
        except ProviderError as e:
            logger.error("Title generation failed for conversation %s: %s", conversation.id, e)
            return conversation

        title = title.strip()[:TITLE_MAX_LENGTH]
        if not title:
            logger.warning("Provider returned an empty title for conversation %s", conversation.id)
            return conversation
        return await conversation_service.update_conversation(db, conversation, title=title)

    # --- Helpers ---

    async def _resolve_supplied_model(self, db: AsyncSession, user: User, model_id: str) -> str:
        """Effective model for a new conversation; only a valid id becomes the user's preference."""
        model = await self.catalog.resolve(model_id)
        if model == model_id:
            await conversation_service.remember_preferred_model(db, user.id, model)
        return model

    async def _record_user_message(
        self,
        db: AsyncSession,
        user: User,
        conversation: Conversation,
        text: str,
        model_id: str | None,
    ) -> Message:
        """Persist the user's input and rebind the model when a valid one was supplied."""
        if model_id and await self.catalog.is_available(model_id):
            await conversation_service.remember_preferred_model(db, user.id, model_id)
            conversation.model = model_id
        elif model_id:
            logger.info("Ignoring unknown model %r for conversation %s", model_id, conversation.id)

        return await conversation_service.append_message(db, conversation.id, "user", text)

    async def _prepare_request(
        self,
        db: AsyncSession,
        user: User,
        conversation: Conversation,
        model_id: str | None,
    ) -> tuple[list[dict], str]:
        history = await conversation_service.get_history(db, conversation.id)
        model = await self.catalog.resolve(model_id or conversation.model)
        return with_system_message(history, user, now=self._now()), model

    async def _store_streamed_reply(self, conversation_id: str, reply: str, completed: bool) -> None:
        if not completed and not reply:
            logger.info("No assistant output to persist for conversation %s", conversation_id)
            return
        async with self.session_factory() as db:
            await conversation_service.append_message(db, conversation_id, "assistant", reply)

    def _now(self) -> datetime | None:
        return self.clock() if self.clock else None


def _require_owner(user: User, conversation: Conversation) -> None:
    if conversation.user_id != user.id:
        raise AuthorizationError()


def _require_text(text: str | None) -> None:
    if not text or not text.strip():
        raise InvalidRequestError("The message field is required", fields=["message"])

