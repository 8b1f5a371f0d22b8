"""Exception hierarchy for the rotation handler.

Every error raised on purpose by this package derives from RotationError.
Only DatabaseConnectionError is transient; the trigger decides whether and
when to re-invoke a failed phase.
"""


class RotationError(Exception):
    """Base class for all rotation failures."""

    is_transient = False


class InvalidLength(RotationError, ValueError):
    """Requested password length cannot satisfy the composition rules."""


class PasswordPolicyError(RotationError, ValueError):
    """Excluded characters leave a required character class empty."""


class ConfigurationError(RotationError, ValueError):
    """An environment variable holds an unusable value."""


class InvalidEvent(RotationError, ValueError):
    """The rotation event is missing a required key."""


class UnsupportedPhase(RotationError, ValueError):
    """The rotation event names a step this handler does not know."""


class NotFound(RotationError):
    """No secret version carries the requested stage label."""


class MalformedPayload(RotationError, ValueError):
    """A stored secret value or its metadata cannot be parsed."""


class AlreadyCurrent(RotationError):
    """The version being promoted already holds AWSCURRENT.

    Not a failure: finish treats it as success so retries are harmless.
    """


class CandidateConflict(RotationError):
    """A version with the same token exists but holds different content."""


class DatabaseError(RotationError):
    """Base class for failures talking to the target database."""


class DatabaseConnectionError(DatabaseError):
    """Connection refused, timed out or dropped."""

    is_transient = True


class AuthenticationError(DatabaseError):
    """The database rejected the credentials."""


class StatementError(DatabaseError):
    """The database rejected a statement after authenticating."""
