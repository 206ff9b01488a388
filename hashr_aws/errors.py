"""
Error types raised by the AWS image importer.

Every error derives from HashrAwsError so callers can catch the importer's
failures without catching unrelated exceptions.
"""

from typing import Optional


class HashrAwsError(Exception):
    """Base class for all importer errors."""


class TransientQueryError(HashrAwsError):
    """A query failed in a way that is worth retrying inside a wait loop."""


class WaitTimeoutError(HashrAwsError, TimeoutError):
    """A polled condition was not satisfied within its attempt budget."""

    def __init__(self, description: str, attempts: int):
        self.description = description
        self.attempts = attempts
        super().__init__(f"Timed out waiting for {description} after {attempts} attempts")


class ResourceStateError(HashrAwsError):
    """A resource reached an unexpected terminal state."""

    def __init__(self, resource_id: str, state: str, expected: str):
        self.resource_id = resource_id
        self.state = state
        self.expected = expected
        super().__init__(f"{resource_id} is in state {state}, expected {expected}")


class PreconditionError(HashrAwsError):
    """A required identifier or descriptor is missing or ambiguous."""


class NotFoundError(HashrAwsError):
    """A describe call found zero matches where exactly one was required."""


class RemoteAPIError(HashrAwsError):
    """The control plane rejected a request."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(f"{message} ({code})" if code else message)


class RemoteConnectionError(HashrAwsError, ConnectionError):
    """A command session could not be opened against the worker host."""


class RemoteExecutionError(HashrAwsError):
    """A remote command finished with a non-zero exit status."""

    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"Command '{command}' exited with status {exit_code}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class ResourceExhaustedError(HashrAwsError):
    """No free device name is left on the worker host."""


class TransferError(HashrAwsError):
    """An object could not be transferred from or removed in object storage."""


class WorkflowError(HashrAwsError):
    """
    A workflow phase failed.

    Wraps the first error raised by the phase together with the phase name
    and the source image it was processing.
    """

    def __init__(self, phase: str, source_image_id: str, cause: BaseException):
        self.phase = phase
        self.source_image_id = source_image_id
        self.cause = cause
        super().__init__(f"{phase} failed for image {source_image_id}: {cause}")
