"""Custom exceptions for Windows-VM-Manager."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class PreconditionError(ManagerError):
    """A required artifact or host tool is missing."""


class PollTimeout(ManagerError):
    """A readiness probe did not succeed within its bound."""


class ProcessDied(ManagerError):
    """The VM process exited while the orchestrator still depended on it."""


class RemoteError(ManagerError):
    """The guest control channel could not be reached or rejected the session."""


class ReconcileError(ManagerError):
    """A required guest-side command returned a non-zero exit status."""

    def __init__(self, message: str, result=None) -> None:
        super().__init__(message)
        self.result = result


class DiskError(ManagerError):
    """Neither the overlay nor the full-copy strategy could produce a disk."""


class BuildError(ManagerError):
    """The template build did not complete."""


class ShutdownRequested(BaseException):
    """Raised from the signal handler to unwind into the shutdown protocol.

    Derives from BaseException (like KeyboardInterrupt) so that handlers for
    transport or command errors never absorb it.
    """

    def __init__(self, signum: int) -> None:
        super().__init__(signum)
        self.signum = signum
