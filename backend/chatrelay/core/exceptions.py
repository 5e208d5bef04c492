"""Errors raised by the chat services and mapped to HTTP responses in main.py."""


class ChatServiceError(Exception):
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ConversationNotFoundError(ChatServiceError):
    status_code = 404

    def __init__(self, message: str = "Conversation not found"):
        super().__init__(message)


class AuthorizationError(ChatServiceError):
    """The requester does not own the target conversation(s)."""

    status_code = 403

    def __init__(self, message: str = "You can only access your own conversations"):
        super().__init__(message)


class InvalidRequestError(ChatServiceError):
    """Missing or malformed input. Raised before anything is persisted."""

    status_code = 422

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = fields or []


class ProviderError(ChatServiceError):
    """The LLM provider call failed (network, non-2xx, malformed payload, timeout)."""

    status_code = 502


class CatalogUnavailable(ChatServiceError):
    """The model listing could not be fetched. Never leaves the model catalog."""
