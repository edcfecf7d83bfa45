"""Error taxonomy shared by the engine, the services and the router.

Every error is local to one interaction: callers report it back to the
conversation (or HTTP client) that triggered it and carry on.
"""
from __future__ import annotations


class EpicScoreError(Exception):
    """Base class for all domain errors."""


class ValidationError(EpicScoreError):
    """Input is out of range or the target is in the wrong state. Nothing was written."""


class MalformedTokenError(ValidationError):
    """An action token does not match the token grammar."""

    def __init__(self, token: str, reason: str):
        super().__init__(f"Malformed action token {token!r}: {reason}")
        self.token = token
        self.reason = reason


class TokenTooLongError(ValidationError):
    """Encoding would exceed the transport's payload ceiling."""

    def __init__(self, token: str, limit: int):
        super().__init__(f"Action token is {len(token.encode())} bytes, limit is {limit}")
        self.token = token
        self.limit = limit


class NotFoundError(EpicScoreError):
    """Referenced participant, team, role, epic or risk does not exist."""

    def __init__(self, label: str, key: object):
        super().__init__(f"{label} {key} not found")
        self.label = label
        self.key = key


class SessionExpiredError(EpicScoreError):
    """A step continuation arrived but the conversation has no live session."""

    def __init__(self, message: str = "Session expired, please start the command again"):
        super().__init__(message)


class PermissionDeniedError(EpicScoreError):
    """Caller lacks the privilege the action requires."""


class PersistenceError(EpicScoreError):
    """The store rejected a read or write."""
