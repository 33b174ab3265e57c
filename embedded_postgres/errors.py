"""Exception hierarchy shared by every embedded PostgreSQL component."""

from __future__ import annotations

from typing import Iterable


STDERR_TAIL_LINES = 20


def tail_lines(text: str | bytes | None, limit: int = STDERR_TAIL_LINES) -> str:
    """Return the last ``limit`` non-empty lines of ``text``."""

    if not text:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    lines = [line.rstrip() for line in text.splitlines() if line.strip()]
    return "\n".join(lines[-limit:])


class EmbeddedPostgresError(RuntimeError):
    """Base class for all errors raised by this package."""


class NotFound(EmbeddedPostgresError):
    """No catalog release matches the requested version and target."""


class CatalogUnavailable(EmbeddedPostgresError):
    """The release catalog could not be retrieved."""


class DownloadFailed(EmbeddedPostgresError):
    """An archive or checksum download failed permanently."""

    def __init__(self, message: str, *, url: str | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class IntegrityError(EmbeddedPostgresError):
    """Downloaded bytes did not match the published checksum."""

    def __init__(self, message: str, *, expected: str = "", actual: str = "") -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ExtractionError(EmbeddedPostgresError):
    """An archive could not be unpacked into a valid installation."""


class InUse(EmbeddedPostgresError):
    """An installation is still referenced by a live server instance."""


class InvalidConfiguration(EmbeddedPostgresError):
    """Options or settings were invalid or mutually exclusive."""


class InvalidVersionRequirement(InvalidConfiguration):
    """A version requirement string could not be parsed."""


class InvalidStateError(EmbeddedPostgresError):
    """A lifecycle operation was requested from a state that forbids it."""

    def __init__(self, operation: str, state: object) -> None:
        super().__init__(f"Cannot {operation} while instance is {getattr(state, 'value', state)}")
        self.operation = operation
        self.state = state


class AlreadyRunning(InvalidStateError):
    """``start()`` was called on an instance that is already running."""

    def __init__(self, state: object) -> None:
        super().__init__("start", state)


class ProcessError(EmbeddedPostgresError):
    """Base class for failures of a spawned executable."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stderr_tail: str = "",
    ) -> None:
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        detail = message
        if returncode is not None:
            detail = f"{detail} (exit code {returncode})"
        if stderr_tail:
            detail = f"{detail}\n{stderr_tail}"
        super().__init__(detail)


class InitializationError(ProcessError):
    """``initdb`` failed to create the data directory."""


class StartupTimeout(ProcessError):
    """The server did not become ready within the startup timeout."""


class ProcessExited(ProcessError):
    """The server process exited on its own, before or after it became ready."""


class StartupAborted(ProcessError):
    """Readiness polling was interrupted by a concurrent stop or destroy."""


class ShutdownFailed(ProcessError):
    """The server process could not be confirmed as exited."""


class CommandFailed(ProcessError):
    """An auxiliary client command exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        *,
        argv: Iterable[str] = (),
        returncode: int | None = None,
        stderr_tail: str = "",
    ) -> None:
        super().__init__(message, returncode=returncode, stderr_tail=stderr_tail)
        self.argv = tuple(argv)


__all__ = [
    "AlreadyRunning",
    "CatalogUnavailable",
    "CommandFailed",
    "DownloadFailed",
    "EmbeddedPostgresError",
    "ExtractionError",
    "InUse",
    "InitializationError",
    "IntegrityError",
    "InvalidConfiguration",
    "InvalidStateError",
    "InvalidVersionRequirement",
    "NotFound",
    "ProcessError",
    "ProcessExited",
    "ShutdownFailed",
    "StartupAborted",
    "StartupTimeout",
    "tail_lines",
]
