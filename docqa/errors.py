"""Exception taxonomy for the retrieval-augmented pipeline.

- ConfigError: invalid component configuration (e.g. chunk overlap >= size).
- ValidationError: malformed record input; never retried.
- NotFoundError: missing document or tenant resource (404-equivalent).
- TransientServiceError: rate limits / timeouts; retried with backoff.
- QuotaExceededError: provider quota exhausted; not retried.
- SchemaConflictError: vector store rejected a batch because of backend drift.
- ContextTooLargeError: completion service rejected the prompt length.
- CompletionError / EmbeddingError / VectorStoreError: generic service failures.
- PartialDeleteError: a batch delete that could not be confirmed in full.

Errors that leave a retry ladder carry ``step`` (where it failed) and a
``user_message`` safe to show to an end user.
"""
from typing import List, Optional


class DocQAError(Exception):
    """Base class for all pipeline errors."""

    user_message = "The request could not be completed."

    def __init__(self, message: str = "", *, step: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.step = step


class ConfigError(DocQAError):
    user_message = "Invalid configuration."


class ValidationError(DocQAError):
    user_message = "The submitted data is invalid."


class NotFoundError(DocQAError):
    user_message = "The requested resource was not found."


class TransientServiceError(DocQAError):
    user_message = "Service temporarily unavailable. Please try again in a moment."


class RateLimitError(TransientServiceError):
    user_message = "Rate limit exceeded. Please wait a moment before trying again."


class ServiceTimeoutError(TransientServiceError):
    pass


class QuotaExceededError(DocQAError):
    user_message = "Service quota exceeded. Please check the provider plan."


class SchemaConflictError(DocQAError):
    user_message = "The vector store rejected the data for this collection."


class ContextTooLargeError(DocQAError):
    user_message = "Query context is too large. Try asking a narrower question."


class CompletionError(DocQAError):
    user_message = "Answer generation failed."


class EmbeddingError(DocQAError):
    user_message = "Embedding service failed."


class VectorStoreError(DocQAError):
    user_message = "Vector database is temporarily unavailable."


class CollectionExistsError(VectorStoreError):
    """Raised by the store adapter when a create races with another creator."""


class PartialDeleteError(VectorStoreError):
    """A delete whose outcome is only partially known."""

    def __init__(self, message: str, *, requested: List[str], deleted: int = 0):
        super().__init__(message)
        self.requested = requested
        self.deleted = deleted
