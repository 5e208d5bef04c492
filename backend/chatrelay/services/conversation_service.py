"""Conversation store: ownership-checked CRUD over conversations and their messages."""

from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.core.exceptions import AuthorizationError, ConversationNotFoundError, InvalidRequestError
from chatrelay.models.conversation import Conversation, Message
from chatrelay.models.user import User

DEFAULT_TITLE = "New conversation"
PROVISIONAL_TITLE_LENGTH = 50


def provisional_title(text: str) -> str:
    """First 50 characters of the opening message, with an ellipsis when cut."""
    if len(text) > PROVISIONAL_TITLE_LENGTH:
        return text[:PROVISIONAL_TITLE_LENGTH] + "..."
    return text


# --- Conversation CRUD ---

async def create_conversation(
    db: AsyncSession, user_id: str, model: str, title: str = DEFAULT_TITLE
) -> Conversation:
    conv = Conversation(
        user_id=user_id,
        title=title,
        model=model,
        last_activity_at=datetime.now(timezone.utc),
    )
    db.add(conv)
    await db.commit()
    return conv


async def get_owned_conversation(db: AsyncSession, conversation_id: str, user_id: str) -> Conversation:
    """Fetch a conversation and verify the requester owns it."""
    conv = await db.get(Conversation, conversation_id)
    if conv is None:
        raise ConversationNotFoundError()
    if conv.user_id != user_id:
        raise AuthorizationError()
    return conv


async def list_conversations(db: AsyncSession, user_id: str) -> list[dict]:
    """Favorites first, then most recent activity, each with a last-message preview."""
    last_message = (
        select(Message.content)
        .where(Message.conversation_id == Conversation.id)
        .order_by(Message.created_at.desc())
        .limit(1)
        .correlate(Conversation)
        .scalar_subquery()
    )
    result = await db.execute(
        select(Conversation, last_message.label("last_message"))
        .where(Conversation.user_id == user_id)
        .order_by(Conversation.is_favorite.desc(), Conversation.last_activity_at.desc())
    )
    return [
        {**serialize_conversation(conv), "last_message": preview}
        for conv, preview in result.all()
    ]


async def update_conversation(
    db: AsyncSession,
    conversation: Conversation,
    *,
    title: str | None = None,
    model: str | None = None,
    last_activity_at: datetime | None = None,
    is_favorite: bool | None = None,
) -> Conversation:
    if title is not None:
        conversation.title = title
    if model is not None:
        conversation.model = model
    if last_activity_at is not None:
        conversation.last_activity_at = last_activity_at
    if is_favorite is not None:
        conversation.is_favorite = is_favorite
    await db.commit()
    return conversation


async def toggle_favorite(db: AsyncSession, conversation: Conversation) -> Conversation:
    return await update_conversation(db, conversation, is_favorite=not conversation.is_favorite)


async def touch_conversation(db: AsyncSession, conversation_id: str) -> None:
    """Bump last activity without loading the row."""
    await db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(last_activity_at=datetime.now(timezone.utc))
    )


async def delete_conversation(db: AsyncSession, conversation: Conversation) -> None:
    """Delete a conversation and all its messages."""
    await db.execute(delete(Message).where(Message.conversation_id == conversation.id))
    await db.delete(conversation)
    await db.commit()


async def delete_conversations(db: AsyncSession, conversation_ids: list[str], user_id: str) -> int:
    """Delete several conversations, all or nothing.

    Every id must exist and belong to user_id; otherwise nothing is deleted.
    """
    ids = list(dict.fromkeys(conversation_ids))
    if not ids:
        raise InvalidRequestError("conversation_ids must not be empty", fields=["conversation_ids"])

    result = await db.execute(
        select(Conversation.id, Conversation.user_id).where(Conversation.id.in_(ids))
    )
    owners = dict(result.all())

    missing = [i for i in ids if i not in owners]
    if missing:
        raise InvalidRequestError(
            f"Unknown conversation ids: {', '.join(missing)}", fields=["conversation_ids"]
        )
    if any(owner != user_id for owner in owners.values()):
        raise AuthorizationError("You can only delete your own conversations")

    await db.execute(delete(Message).where(Message.conversation_id.in_(ids)))
    await db.execute(delete(Conversation).where(Conversation.id.in_(ids)))
    await db.commit()
    return len(ids)


# --- Messages ---

async def append_message(
    db: AsyncSession,
    conversation_id: str,
    role: str,
    content: str,
    tokens: int | None = None,
) -> Message:
    """Persist one message and bump the conversation's last activity."""
    msg = Message(
        conversation_id=conversation_id,
        role=role,
        content=content,
        tokens=tokens,
        created_at=datetime.now(timezone.utc),
    )
    db.add(msg)
    await touch_conversation(db, conversation_id)
    await db.commit()
    return msg


async def get_messages(db: AsyncSession, conversation_id: str) -> list[Message]:
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc())
    )
    return list(result.scalars().all())


async def get_history(db: AsyncSession, conversation_id: str) -> list[dict]:
    """Full ordered history in provider format. No windowing is applied."""
    return [
        {"role": m.role, "content": m.content}
        for m in await get_messages(db, conversation_id)
    ]


async def latest_assistant_message(db: AsyncSession, conversation_id: str) -> Message | None:
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id, Message.role == "assistant")
        .order_by(Message.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def count_assistant_messages(db: AsyncSession, conversation_id: str) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Message)
        .where(Message.conversation_id == conversation_id, Message.role == "assistant")
    )
    return result.scalar_one()


# --- User preferences ---

async def remember_preferred_model(db: AsyncSession, user_id: str, model: str) -> None:
    await db.execute(update(User).where(User.id == user_id).values(preferred_model=model))


# --- Serializers ---

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_conversation(conv: Conversation, messages: list[Message] | None = None) -> dict:
    data = {
        "id": conv.id,
        "user_id": conv.user_id,
        "title": conv.title,
        "model": conv.model,
        "is_favorite": conv.is_favorite,
        "last_activity_at": _iso(conv.last_activity_at),
        "created_at": _iso(conv.created_at),
        "updated_at": _iso(conv.updated_at),
    }
    if messages is not None:
        data["messages"] = [serialize_message(m) for m in messages]
    return data


def serialize_message(msg: Message) -> dict:
    return {
        "id": msg.id,
        "conversation_id": msg.conversation_id,
        "role": msg.role,
        "content": msg.content,
        "tokens": msg.tokens,
        "created_at": _iso(msg.created_at),
    }
