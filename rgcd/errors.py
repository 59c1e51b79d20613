"""Exception hierarchy for rgcd.

Every rejection a client can see is a ChatError carrying a stable,
machine-checkable ``reason`` and a human-readable message. The router turns
these into RESPONSE frames; anything else is treated as an internal fault.
"""

from __future__ import annotations

from .constants import (
    R_ALREADY_AUTHENTICATED,
    R_ALREADY_ONLINE,
    R_BAD_CREDENTIALS,
    R_CODE_EXISTS,
    R_CONFLICT,
    R_FORBIDDEN,
    R_INTERNAL,
    R_INVALID_CODE,
    R_INVALID_CREDENTIAL,
    R_MUTED,
    R_NOT_AUTHENTICATED,
    R_NOT_AUTHORIZED,
    R_NOT_FOUND,
    R_NOT_ONLINE,
    R_RATE_LIMITED,
    R_STORAGE,
    R_USERNAME_TAKEN,
    R_VALIDATION,
)


class ChatError(Exception):
    """Base exception for all rgcd errors reported to clients."""

    reason = R_INTERNAL
    default_message = "internal error"

    def __init__(self, message: str | None = None):
        """Initialize the exception.

        Args:
            message: Human-readable text; falls back to the class default.
        """
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ChatError):
    """Raised when request input is missing or malformed."""

    reason = R_VALIDATION
    default_message = "invalid request"

    def __init__(self, message: str | None = None, *, field: str | None = None):
        self.field = field
        if message and field:
            message = f"{field}: {message}"
        super().__init__(message)


class AuthenticationError(ChatError):
    """Raised when the caller cannot be authenticated."""

    reason = R_BAD_CREDENTIALS
    default_message = "authentication failed"


class BadCredentialsError(AuthenticationError):
    """Raised on a wrong username or password. Both cases look identical."""

    reason = R_BAD_CREDENTIALS
    default_message = "invalid username or password"


class InvalidCredentialError(AuthenticationError):
    """Raised when a session token cannot be accepted."""

    reason = R_INVALID_CREDENTIAL
    default_message = "invalid or expired token"

    def __init__(self, message: str | None = None):
        # Callers never learn which check failed.
        super().__init__(None)
        self.detail = message


class ExpiredCredentialError(InvalidCredentialError):
    """Raised when a token is past its expiry."""


class MalformedCredentialError(InvalidCredentialError):
    """Raised when a token fails to decode or verify."""


class AuthorizationError(ChatError):
    """Raised when a non-admin calls an admin-only operation."""

    reason = R_NOT_AUTHORIZED
    default_message = "not authorized"


class ForbiddenError(AuthorizationError):
    """Raised when an operation is never allowed, such as demoting the root admin."""

    reason = R_FORBIDDEN
    default_message = "forbidden"


class ConflictError(ChatError):
    """Raised when a request collides with existing state."""

    reason = R_CONFLICT
    default_message = "conflict"


class AlreadyOnlineError(ConflictError):
    """Raised when the username already holds a live session."""

    reason = R_ALREADY_ONLINE

    def __init__(self, username: str):
        self.username = username
        super().__init__(f"user '{username}' is already online")


class UsernameTakenError(ConflictError):
    """Raised when registering a username that already exists."""

    reason = R_USERNAME_TAKEN

    def __init__(self, username: str):
        self.username = username
        super().__init__(f"username '{username}' is already taken")


class InvitationCodeExistsError(ConflictError):
    """Raised when creating an invitation code that already exists."""

    reason = R_CODE_EXISTS

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"invitation code '{code}' already exists")


class InvalidInvitationCodeError(ConflictError):
    """Raised when an invitation code is unknown or has no uses left."""

    reason = R_INVALID_CODE
    default_message = "invalid or exhausted invitation code"

    def __init__(self, code: str | None = None):
        self.code = code
        super().__init__(None)


class StateError(ChatError):
    """Raised when the caller's current state does not permit the operation."""

    reason = R_NOT_AUTHENTICATED
    default_message = "operation not allowed in this state"


class MutedError(StateError):
    """Raised when a muted user tries to send a message."""

    reason = R_MUTED
    default_message = "you are muted"


class NotOnlineError(StateError):
    """Raised when a valid token's user has no live session."""

    reason = R_NOT_ONLINE
    default_message = "not online; log in again"


class NotAuthenticatedError(StateError):
    reason = R_NOT_AUTHENTICATED
    default_message = "log in first"


class AlreadyAuthenticatedError(StateError):
    reason = R_ALREADY_AUTHENTICATED
    default_message = "connection is already logged in"


class RateLimitedError(StateError):
    reason = R_RATE_LIMITED
    default_message = "rate limited"


class NotFoundError(ChatError):
    """Raised when a named user or plugin does not exist."""

    reason = R_NOT_FOUND
    default_message = "not found"


class StorageError(ChatError):
    """Raised when persistence fails.

    The detail is kept for the server log only; clients see a generic text.
    """

    reason = R_STORAGE
    default_message = "storage failure"

    def __init__(self, detail: str | None = None):
        self.detail = detail
        super().__init__(None)


class PluginError(ChatError):
    """Raised (and logged) when a plugin interceptor fails."""

    reason = R_INTERNAL
    default_message = "plugin failure"

    def __init__(self, plugin: str, detail: str | None = None):
        self.plugin = plugin
        self.detail = detail
        super().__init__(f"plugin '{plugin}' failed")
