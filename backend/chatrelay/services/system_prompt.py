"""System prompt composition.

The system message is a pure function of the current time and the acting
user's profile (display name, "about you", desired behaviour, custom
commands). It is rebuilt for every provider call and never persisted, since
it embeds the current timestamp.
"""

from datetime import datetime
from zoneinfo import ZoneInfo

from chatrelay.core.config import settings

GUEST_NAME = "Guest"
DATETIME_FORMAT = "%A %d %B %Y %H:%M"

FRAMING_TEMPLATE = (
    "You are a chat assistant. The current date and time is {now}.\n"
    "You are currently being used by {name}."
)
ABOUT_TEMPLATE = "About the user:\n{about_you}"
BEHAVIOR_TEMPLATE = "Desired assistant behaviour:\n{assistant_behavior}"
COMMANDS_TEMPLATE = (
    "Available custom commands:\n"
    "{command_lines}\n"
    "When the user uses one of these commands, carry out the corresponding action as described."
)
COMMAND_LINE_TEMPLATE = "- {command}: {description}"


def _render_commands(commands: list[dict]) -> str:
    return "\n".join(
        COMMAND_LINE_TEMPLATE.format(command=c["command"], description=c["description"])
        for c in commands
    )


def render_system_prompt(
    now: datetime,
    name: str,
    about_you: str | None = None,
    assistant_behavior: str | None = None,
    custom_commands: list[dict] | None = None,
) -> str:
    sections = [FRAMING_TEMPLATE.format(now=now.strftime(DATETIME_FORMAT), name=name)]
    if about_you:
        sections.append(ABOUT_TEMPLATE.format(about_you=about_you))
    if assistant_behavior:
        sections.append(BEHAVIOR_TEMPLATE.format(assistant_behavior=assistant_behavior))
    if custom_commands:
        sections.append(COMMANDS_TEMPLATE.format(command_lines=_render_commands(custom_commands)))
    return "\n\n".join(sections).strip()


def build_system_message(user=None, now: datetime | None = None, tz: str | None = None) -> dict:
    """Build the system-role message that leads every provider request."""
    if now is None:
        now = datetime.now(ZoneInfo(tz or settings.timezone))

    if user is None:
        content = render_system_prompt(now, GUEST_NAME)
    else:
        content = render_system_prompt(
            now,
            user.full_name,
            about_you=user.about_you,
            assistant_behavior=user.assistant_behavior,
            custom_commands=user.custom_commands,
        )
    return {"role": "system", "content": content}


def with_system_message(history: list[dict], user=None, now: datetime | None = None) -> list[dict]:
    """Prepend a freshly built system message (position 0) to the history."""
    return [build_system_message(user, now=now), *history]
