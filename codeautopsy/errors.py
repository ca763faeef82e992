from __future__ import annotations


class CodeAutopsyError(Exception):
    """Base class for errors raised by the diagnosis/orchestration core."""


class CollaboratorError(CodeAutopsyError):
    """An external collaborator call failed. Aborts the current job attempt; the queue decides on retry."""


class LogUnavailableError(CollaboratorError):
    pass


class RetrievalError(CollaboratorError):
    pass


class FixGenerationError(CollaboratorError):
    pass


class PublishError(CollaboratorError):
    pass


class StorageError(CodeAutopsyError):
    pass


class InvalidTransitionError(CodeAutopsyError):
    """A signal arrived that the event's current state does not accept."""
