"""
Error taxonomy for the task board.

Validation errors are raised before any store or network call. Transient
store errors are retried with backoff. Not-found errors are never retried.
Upstream AI errors leave the conversation untouched so the prompt can be
sent again.
"""


class TaskboardError(Exception):
    """Base class for every error raised by the task board."""
    pass


class ConfigError(TaskboardError):
    """Raised when configuration is invalid or incomplete."""
    pass


class ValidationError(TaskboardError, ValueError):
    """Raised when task fields, dates or request parameters are malformed."""
    pass


class NotFoundError(TaskboardError):
    """Raised when a task or chat session does not exist for the user."""
    pass


class TransientStoreError(TaskboardError):
    """Raised when the task store is temporarily unreachable or failing."""
    pass


class UpstreamAIError(TaskboardError):
    """Raised when the language-model service fails or returns garbage."""
    pass
