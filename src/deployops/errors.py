"""Error taxonomy for autofix, rollback and merge runs.

Every failure a run can surface maps to one ErrorKind so the API layer can
pick a status code and the UI can show something actionable.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of run failures."""
    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    CONFLICT = "conflict"
    TRANSIENT_IO = "transient_io"
    AGENT_FAILURE = "agent_failure"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    HOST_API = "host_api"
    INTERNAL = "internal"


BAD_CREDENTIALS_HINT = (
    "GitHub Bad Credentials: the GitHub token is invalid or expired. "
    "Sign in again or update the project's token."
)


class DeployOpsError(Exception):
    """Base error for all orchestration failures."""
    kind = ErrorKind.INTERNAL


class ConfigurationError(DeployOpsError):
    """A required secret or setting is missing."""
    kind = ErrorKind.CONFIGURATION


class AuthenticationError(DeployOpsError):
    """The source-control host rejected the credentials."""
    kind = ErrorKind.AUTHENTICATION


class ConflictError(DeployOpsError):
    """The host refused an operation because of repository state."""
    kind = ErrorKind.CONFLICT


class TransientIOError(DeployOpsError):
    """Network or subprocess failure (clone, fetch, push, host timeout)."""
    kind = ErrorKind.TRANSIENT_IO


class AgentFailure(DeployOpsError):
    """The AI fix invoker failed or produced no usable result."""
    kind = ErrorKind.AGENT_FAILURE


class RunTimeoutError(AgentFailure):
    """A run exceeded its wall-clock budget."""


class ValidationError(DeployOpsError):
    """The request is not allowed in the current state."""
    kind = ErrorKind.VALIDATION


class NotFoundError(DeployOpsError):
    """A referenced record does not exist."""
    kind = ErrorKind.NOT_FOUND


def is_bad_credentials(message: str) -> bool:
    return "bad credentials" in (message or "").lower()


def classify(exc: BaseException) -> ErrorKind:
    """Map any exception to an ErrorKind."""
    if isinstance(exc, DeployOpsError):
        return exc.kind
    if is_bad_credentials(str(exc)):
        return ErrorKind.AUTHENTICATION
    return ErrorKind.INTERNAL


def describe(exc: BaseException) -> str:
    """Build the user-facing message for a failure.

    Credential rejections are rewritten into an actionable hint; everything
    else keeps the originating message.
    """
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, AuthenticationError) or is_bad_credentials(message):
        if message.startswith("GitHub Bad Credentials"):
            return message
        return f"{BAD_CREDENTIALS_HINT} ({message})"
    return message
