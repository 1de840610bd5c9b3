"""
Error taxonomy shared by the engine and its collaborators.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""


class AnitaError(Exception):
    """Base class for all orchestrator errors."""


class AccessDenied(AnitaError):
    """A path resolved outside the configured workspace root."""

    def __init__(self, path: str, root: str):
        super().__init__(f"Access denied: {path} is outside workspace {root}")
        self.path = path
        self.root = root


class PlanParseError(AnitaError):
    """No recoverable plan structure was found in a completion."""


class TaskExecutionError(AnitaError):
    """A file or command step failed."""


class UserDeclined(AnitaError):
    """The user refused to approve a terminal command."""


class TransportError(AnitaError):
    """The completion or command service failed after retries."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class AbortError(AnitaError):
    """The request was cancelled by the user."""


class ConversationBusy(AnitaError):
    """A plan is already executing for the conversation."""
