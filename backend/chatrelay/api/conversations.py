"""Conversation API endpoints: conversation management, turns and streaming."""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.api.deps import get_catalog, get_relay, redirect_back, redirect_to, wants_json
from chatrelay.core.database import get_db
from chatrelay.core.exceptions import InvalidRequestError
from chatrelay.core.security import get_current_user
from chatrelay.models.user import User
from chatrelay.services.chat_service import ChatRelay
from chatrelay.services.conversation_service import (
    delete_conversation,
    delete_conversations,
    get_messages,
    get_owned_conversation,
    latest_assistant_message,
    list_conversations,
    serialize_conversation,
    serialize_message,
    toggle_favorite,
)
from chatrelay.services.model_catalog import ModelCatalog
from chatrelay.services.streaming import STREAM_HEADERS

router = APIRouter(prefix="/conversations", tags=["conversations"])


# --- Schemas ---

class CreateConversationRequest(BaseModel):
    message: str = Field(min_length=1)
    model: str = Field(min_length=1)


class CreateEmptyConversationRequest(BaseModel):
    model: str = Field(min_length=1)


class SendMessageRequest(BaseModel):
    message: str = Field(min_length=1)
    model: str | None = None


class UpdateModelRequest(BaseModel):
    model: str = Field(min_length=1)


class UpdateTitleRequest(BaseModel):
    message: str = Field(min_length=1)


class DeleteConversationsRequest(BaseModel):
    conversation_ids: list[str] = Field(min_length=1)


# --- Conversation Routes ---

@router.get("")
async def api_list_conversations(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List the user's conversations, favorites first."""
    return {"conversations": await list_conversations(db, user.id)}


@router.post("")
async def api_create_conversation(
    body: CreateConversationRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    relay: ChatRelay = Depends(get_relay),
):
    """Create a conversation with its first message and the assistant's reply."""
    conv, user_msg, assistant_msg = await relay.start_conversation(db, user, body.message, body.model)

    if not wants_json(request):
        return redirect_to(f"/conversations/{conv.id}")

    messages = await get_messages(db, conv.id)
    return {
        "conversation": serialize_conversation(conv, messages),
        "user_message": serialize_message(user_msg),
        "assistant_message": serialize_message(assistant_msg),
    }


@router.post("/empty")
async def api_create_empty_conversation(
    body: CreateEmptyConversationRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    relay: ChatRelay = Depends(get_relay),
):
    """Create a conversation without a first message."""
    conv = await relay.create_empty_conversation(db, user, body.model)

    if not wants_json(request):
        return redirect_to(f"/conversations/{conv.id}")
    return {"conversation": serialize_conversation(conv, [])}


@router.get("/{conversation_id}")
async def api_get_conversation(
    conversation_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    catalog: ModelCatalog = Depends(get_catalog),
):
    """Get a conversation with all of its messages."""
    conv = await get_owned_conversation(db, conversation_id, user.id)
    messages = await get_messages(db, conv.id)
    return {
        "conversation": serialize_conversation(conv, messages),
        "models": await catalog.get_models(),
        "selected_model": conv.model,
    }


@router.delete("")
async def api_delete_conversations(
    body: DeleteConversationsRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete several conversations; fails as a whole if any is not the user's."""
    deleted = await delete_conversations(db, body.conversation_ids, user.id)

    if not wants_json(request):
        return redirect_to("/conversations")
    return {
        "success": True,
        "message": "Conversations deleted",
        "deleted_count": deleted,
    }


@router.delete("/{conversation_id}")
async def api_delete_conversation(
    conversation_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete a conversation and its messages."""
    conv = await get_owned_conversation(db, conversation_id, user.id)
    await delete_conversation(db, conv)

    if not wants_json(request):
        return redirect_to("/conversations")
    return {"success": True, "deleted_count": 1}


@router.post("/{conversation_id}/update-model")
async def api_update_model(
    conversation_id: str,
    body: UpdateModelRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    relay: ChatRelay = Depends(get_relay),
):
    """Bind another model to the conversation and remember it as the user's preference."""
    conv = await get_owned_conversation(db, conversation_id, user.id)
    conv = await relay.update_model(db, user, conv, body.model)
    return {"success": True, "model": conv.model}


@router.post("/{conversation_id}/update-title")
async def api_update_title(
    conversation_id: str,
    body: UpdateTitleRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    relay: ChatRelay = Depends(get_relay),
):
    """Regenerate the title from the given user message and the latest assistant reply."""
    conv = await get_owned_conversation(db, conversation_id, user.id)
    reply = await latest_assistant_message(db, conv.id)
    if reply is None:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "No assistant reply to generate a title from"},
        )

    conv = await relay.regenerate_title(db, user, conv, body.message, reply.content)
    return {"success": True, "conversation": serialize_conversation(conv)}


@router.post("/{conversation_id}/toggle-favorite")
async def api_toggle_favorite(
    conversation_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    conv = await get_owned_conversation(db, conversation_id, user.id)
    conv = await toggle_favorite(db, conv)

    if not wants_json(request):
        return redirect_back(request, fallback=f"/conversations/{conv.id}")
    return {"success": True, "is_favorite": conv.is_favorite}


# --- Message Routes ---

@router.post("/{conversation_id}/messages")
async def api_send_message(
    conversation_id: str,
    body: SendMessageRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    relay: ChatRelay = Depends(get_relay),
):
    """Send a message and wait for the complete assistant reply."""
    conv = await get_owned_conversation(db, conversation_id, user.id)
    user_msg, assistant_msg = await relay.complete_turn(db, user, conv, body.message, body.model)

    if not wants_json(request):
        return redirect_back(request, fallback=f"/conversations/{conv.id}")
    return {
        "user_message": serialize_message(user_msg),
        "assistant_message": serialize_message(assistant_msg),
    }


@router.api_route("/{conversation_id}/stream", methods=["GET", "POST"])
async def api_stream_message(
    conversation_id: str,
    request: Request,
    message: str | None = Query(None),
    model: str | None = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    relay: ChatRelay = Depends(get_relay),
):
    """Send a message and stream the assistant reply as raw text.

    GET reads `message`/`model` from the query string (EventSource clients),
    POST from a JSON body (fetch clients). The body is plain text fragments,
    not `data:` framed events.
    """
    if request.method == "POST":
        try:
            data = await request.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        message = data.get("message")
        model = data.get("model")

    conv = await get_owned_conversation(db, conversation_id, user.id)
    if not isinstance(message, str) or not message.strip():
        raise InvalidRequestError("The message field is required", fields=["message"])
    if model is not None and not isinstance(model, str):
        raise InvalidRequestError("The model field must be a string", fields=["model"])

    return StreamingResponse(
        relay.stream_turn(user, conv.id, message, model or None),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )
