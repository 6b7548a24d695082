"""Custom exceptions for chatstream."""

USER_CANCELLED_MESSAGE = "common.error.userCanceledGeneration"


class ChatStreamError(Exception):
    """Base exception for chatstream."""

    pass


class ConfigurationError(ChatStreamError):
    """Configuration-related errors."""

    pass


class GenerationCancelledError(ChatStreamError):
    """Raised at a checkpoint once a generation has been cancelled.

    This is the cancellation sentinel: entry points swallow it instead of
    reporting a failure.
    """

    def __init__(self, message_id: str | None = None):
        super().__init__(USER_CANCELLED_MESSAGE)
        self.message_id = message_id


class GenerationStateError(ChatStreamError):
    """No generating state exists for a message."""

    def __init__(self, message_id: str):
        super().__init__(f"Generation state not found: {message_id}")
        self.message_id = message_id


class LLMError(ChatStreamError):
    """LLM-related errors."""

    pass


class ProviderStreamError(LLMError):
    """Provider stream failed (transport, HTTP status, malformed payload)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PermissionFlowError(ChatStreamError):
    """Permission flow errors."""

    pass


class PermissionBlockNotFoundError(PermissionFlowError):
    """No permission block matches a permission response."""

    def __init__(self, message_id: str, tool_call_id: str):
        super().__init__(
            f"Permission block not found for tool call {tool_call_id} in message {message_id}"
        )
        self.message_id = message_id
        self.tool_call_id = tool_call_id


class PermissionGrantError(PermissionFlowError):
    """Granting a permission or resuming after a grant failed."""

    def __init__(self, message: str, server_name: str | None = None):
        super().__init__(message)
        self.server_name = server_name


class ToolError(ChatStreamError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in the runtime."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class StorageError(ChatStreamError):
    """Storage-related errors."""

    pass


class MessageNotFoundError(StorageError):
    """Message not found."""

    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class ConversationNotFoundError(StorageError):
    """Conversation not found."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id
