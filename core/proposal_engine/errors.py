"""
Engine Errors - Exception taxonomy for the workflow engine.

Node-local errors (validation, transient I/O, parsing) are captured into the
errors channel by the executor so a thread stays resumable. Engine-level
errors (recursion limit, checkpoint store failure) and sequencing errors
(unknown thread, resume without interrupt) propagate to the caller.
"""


class EngineError(Exception):
    """Base class for every error raised by the engine."""


# === NODE-LOCAL ERRORS ===


class ValidationError(EngineError):
    """A required channel is missing or malformed. Never retried."""

    def __init__(self, message: str, channel: str | None = None):
        super().__init__(message)
        self.channel = channel


class InvalidUpdateError(ValidationError):
    """A node returned an update for a channel the state does not declare."""


class ContentParseError(ValidationError):
    """No parser, primary or fallback, produced usable content."""


class TransientIOError(EngineError):
    """Timeout, rate limit or server-side failure. Retried with backoff."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NodeTimeoutError(TransientIOError):
    """An external call made by a node exceeded its time budget."""


class NonRetryableError(EngineError):
    """Failure that retrying cannot fix (malformed payload, permission, not found)."""


class DocumentNotFoundError(NonRetryableError):
    """The referenced document does not exist."""


class DocumentForbiddenError(NonRetryableError):
    """The caller is not allowed to read the referenced document."""


# === ENGINE-LEVEL ERRORS ===


class RecursionLimitExceeded(EngineError):
    """A run executed more node steps than the configured limit."""

    def __init__(self, limit: int, thread_id: str):
        super().__init__(
            f"Recursion limit of {limit} steps exceeded for thread '{thread_id}'"
        )
        self.limit = limit
        self.thread_id = thread_id


class CheckpointStoreError(EngineError):
    """The checkpoint backend failed after retries, or rejected a payload."""


class BackendUnavailableError(CheckpointStoreError):
    """The durable checkpoint backend could not be reached."""


class GraphBuildError(EngineError):
    """The graph definition is invalid. Raised at build time, never at runtime."""

    def __init__(self, errors: list[str]):
        super().__init__("Invalid graph: " + "; ".join(errors))
        self.errors = errors


class RoutingError(EngineError):
    """A router or directive chose a destination outside the static adjacency map."""


# === SEQUENCING ERRORS ===


class SequencingError(EngineError):
    """An operation was called in a state that does not permit it."""


class ThreadNotFound(SequencingError):
    def __init__(self, thread_id: str):
        super().__init__(f"Thread '{thread_id}' has no checkpoints")
        self.thread_id = thread_id


class ThreadNotInterrupted(SequencingError):
    def __init__(self, thread_id: str):
        super().__init__(f"Thread '{thread_id}' is not interrupted")
        self.thread_id = thread_id


class FeedbackMissing(SequencingError):
    def __init__(self, thread_id: str):
        super().__init__(f"Thread '{thread_id}' has no pending feedback to apply")
        self.thread_id = thread_id


class InvalidThreadKey(SequencingError):
    """An owner, subject or kind key cannot be used to build a thread id."""
