"""Error taxonomy for the synchronization engine.

Adapter-facing classification (raised by PlatformAdapter implementations):
- ValidationError: malformed/incomplete entity, never retried
- NotFoundError: entity missing on one side
- RateLimitedError: throttled by the platform, retried honoring retry_after
- TransientError: network/timeout, retried with exponential backoff
- ConflictWriteError: target changed concurrently, retried once with fresh state
- FatalError: auth failure or schema mismatch, never retried

Engine failures:
- MappingConflictError, TaskAlreadyRunningError, NoActiveTaskError,
  TaskNotFoundError, WebhookSignatureError
"""

from __future__ import annotations


class SyncEngineError(Exception):
    """Base class for every error the engine raises or classifies.

    Attributes:
        retryable: Whether the retry policy may re-attempt the call.
    """

    retryable: bool = False

    def __init__(self, message: str, *, entity_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id


class ValidationError(SyncEngineError):
    """Entity is malformed or incomplete."""


class NotFoundError(SyncEngineError):
    """Entity does not exist on the platform that was asked for it."""


class RateLimitedError(SyncEngineError):
    """Platform throttled the call.

    Args:
        retry_after: Platform-supplied delay hint in seconds, if any.
    """

    retryable = True

    def __init__(
        self,
        message: str = "rate limited",
        *,
        retry_after: float | None = None,
        entity_id: str | None = None,
    ) -> None:
        super().__init__(message, entity_id=entity_id)
        self.retry_after = retry_after


class TransientError(SyncEngineError):
    """Network failure, timeout, or 5xx from the platform."""

    retryable = True


class ConflictWriteError(SyncEngineError):
    """Target entity changed between read and write."""


class FatalError(SyncEngineError):
    """Authentication failure or schema mismatch."""


class MappingConflictError(SyncEngineError):
    """Upsert would map one target id to two different source ids."""


class TaskAlreadyRunningError(SyncEngineError):
    """Another task already holds the running slot for (entity_type, direction)."""

    def __init__(self, running_key: str, holder_task_id: str | None = None) -> None:
        msg = f"A sync task is already running for {running_key}"
        if holder_task_id:
            msg = f"{msg} (task {holder_task_id})"
        super().__init__(msg)
        self.running_key = running_key
        self.holder_task_id = holder_task_id


class NoActiveTaskError(SyncEngineError):
    """Progress update or completion without a preceding start."""


class TaskNotFoundError(SyncEngineError):
    """No persisted task with the given id."""


class WebhookSignatureError(SyncEngineError):
    """Inbound webhook failed signature verification."""
