"""Custom instructions: the per-user profile fed into the system prompt."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.models.user import User

logger = logging.getLogger(__name__)


def get_instructions(user: User) -> dict:
    return {
        "about_you": user.about_you or "",
        "assistant_behavior": user.assistant_behavior or "",
        "custom_commands": list(user.custom_commands or []),
    }


async def save_instructions(
    db: AsyncSession,
    user: User,
    about_you: str | None,
    assistant_behavior: str | None,
    custom_commands: list[dict],
) -> dict:
    """Replace the user's instructions. Blank texts are stored as NULL."""
    user.about_you = (about_you or "").strip() or None
    user.assistant_behavior = (assistant_behavior or "").strip() or None
    user.custom_commands = custom_commands or None
    await db.commit()

    logger.info("Saved custom instructions for user %s (%d commands)", user.id, len(custom_commands))
    return get_instructions(user)
