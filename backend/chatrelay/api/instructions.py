"""Custom instructions API: what the assistant should know and how it should respond."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.core.database import get_db
from chatrelay.core.security import get_current_user
from chatrelay.models.user import User
from chatrelay.services.instructions_service import get_instructions, save_instructions

router = APIRouter(prefix="/custom-instructions", tags=["instructions"])


# --- Schemas ---

class CustomCommand(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    command: str = Field(min_length=2, max_length=20, pattern=r"^/[a-zA-Z0-9_-]+$")
    description: str = Field(min_length=1, max_length=200)


class InstructionsRequest(BaseModel):
    about_you: str | None = Field(None, max_length=2000)
    assistant_behavior: str | None = Field(None, max_length=2000)
    custom_commands: list[CustomCommand] = []


# --- Routes ---

@router.get("")
async def api_get_instructions(user: User = Depends(get_current_user)):
    return get_instructions(user)


@router.put("")
async def api_save_instructions(
    body: InstructionsRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await save_instructions(
        db,
        user,
        about_you=body.about_you,
        assistant_behavior=body.assistant_behavior,
        custom_commands=[c.model_dump() for c in body.custom_commands],
    )
