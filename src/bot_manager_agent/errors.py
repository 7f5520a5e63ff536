"""
Exceptions raised by the conversation-state core.

Read-path problems (missing or corrupt files) never raise; they degrade to
empty values and are logged. Only the cases below reach callers.
"""


class AgentCoreError(Exception):
    """Base class for all errors raised by this package."""


class StorageError(AgentCoreError):
    """Persisting a session, context log or index failed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to write {path}: {reason}")


class OperationCancelled(AgentCoreError):
    """A tracked operation observed its cancellation flag."""

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__("Operation cancelled by user")


class AgentRunError(AgentCoreError):
    """The external agent loop finished without a usable result."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(errors[0] if errors else "Task could not be completed")
