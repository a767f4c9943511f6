"""Exception hierarchy for Parley."""

from typing import Optional


class ParleyError(Exception):
    """Base exception for all Parley errors."""

    exit_code = 1

    def __init__(self, message: str, exit_code: int | None = None, hint: str | None = None):
        """
        Initialize exception with optional exit code and hint.

        Args:
            message: Error message
            exit_code: Override default exit code
            hint: Helpful hint for resolving the error (uses Python 3.11+ __notes__)
        """
        super().__init__(message)
        if exit_code:
            self.exit_code = exit_code
        if hint:
            if hasattr(self, "add_note"):
                self.add_note(hint)


class ConfigurationError(ParleyError):
    """Missing or invalid configuration (API keys, endpoints, config.yaml)."""

    exit_code = 78


class ResourceError(ParleyError):
    """External resources unavailable (API, network, files)."""

    exit_code = 75


class TransportError(ResourceError):
    """Timeout or connection failure talking to a provider."""

    pass


class ProviderError(ResourceError):
    """Provider rejected the request or returned a malformed payload."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        hint: str | None = None,
    ):
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.body = body


class PersistenceError(ResourceError):
    """Reading or writing stored conversations failed."""

    exit_code = 74


class ConversationNotFoundError(ResourceError):
    """Requested conversation does not exist."""

    exit_code = 66

    def __init__(self, conversation_id: Optional[str]):
        if conversation_id:
            message = f"Conversation '{conversation_id}' not found"
        else:
            message = "No active conversation"
        super().__init__(message, hint="Run 'parley chats' to list conversations")
        self.conversation_id = conversation_id


class ConversationBusyError(ResourceError):
    """A completion is already streaming for this conversation."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation '{conversation_id}' is already waiting for a response")
        self.conversation_id = conversation_id


class ValidationError(ParleyError):
    """Malformed input such as an import payload or an empty message."""

    exit_code = 65
