from chatrelay.models.user import User
from chatrelay.models.conversation import Conversation, Message

__all__ = ["User", "Conversation", "Message"]
