"""Custom exceptions for Recall Chat."""


class RecallChatError(Exception):
    """Base exception for Recall Chat."""

    pass


class ConfigurationError(RecallChatError):
    """Configuration-related errors."""

    pass


class LLMError(RecallChatError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CapabilityError(RecallChatError):
    """Capability invocation errors."""

    pass


class CapabilityValidationError(CapabilityError):
    """Capability input failed its contract."""

    def __init__(self, name: str, violations: list[str]):
        super().__init__(f"Invalid input for '{name}': {'; '.join(violations)}")
        self.name = name
        self.violations = list(violations)


class CapabilityExecutionError(CapabilityError):
    """Capability execution failed."""

    def __init__(self, name: str, message: str):
        super().__init__(f"Capability '{name}' failed: {message}")
        self.name = name


class CapabilityNotFoundError(CapabilityError):
    """Capability not found in registry."""

    def __init__(self, name: str):
        super().__init__(f"Capability not found: {name}")
        self.name = name


class StoreError(RecallChatError):
    """Persistence errors."""

    pass


class ConversationNotFoundError(StoreError):
    """Conversation not found."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class UserNotFoundError(StoreError):
    """User not found."""

    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class MemoryNotFoundError(StoreError):
    """Memory not found, already forgotten, or owned by someone else."""

    def __init__(self, memory_id: str):
        super().__init__(f"Memory not found: {memory_id}")
        self.memory_id = memory_id
