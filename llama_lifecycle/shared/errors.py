"""
Error hierarchy for toolchain acquisition, resource planning, process launch,
supervision and transport calls.

Every error carries an ``exit_code`` so the command line tools can map a
failure family to a distinct process exit status.
"""
from pathlib import Path
from typing import Any, Optional

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_INVALID_CONFIG = 2
EXIT_ACQUISITION = 3
EXIT_PLANNING = 4
EXIT_LAUNCH = 5
EXIT_CONNECTION = 6
EXIT_INTERRUPTED = 130


class LlamaLifecycleError(Exception):
    """Base class for all errors raised by llama_lifecycle."""

    exit_code = EXIT_UNEXPECTED


class InvalidConfig(LlamaLifecycleError):
    exit_code = EXIT_INVALID_CONFIG

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid configuration for '{field}': {reason}")


class InvalidRequest(LlamaLifecycleError):
    """A typed endpoint request failed validation before it was sent."""

    exit_code = EXIT_INVALID_CONFIG


class FileSystemError(LlamaLifecycleError):
    exit_code = EXIT_ACQUISITION

    def __init__(self, operation: str, path: Path | str, source: Optional[BaseException] = None):
        self.operation = operation
        self.path = Path(path)
        self.source = source
        detail = f": {source}" if source else ""
        super().__init__(f"File system error during '{operation}' at {self.path}{detail}")


class InternalError(LlamaLifecycleError):
    pass


# Acquisition


class AcquisitionError(LlamaLifecycleError):
    exit_code = EXIT_ACQUISITION


class BuildUnavailable(AcquisitionError):
    pass


class Unsupported(AcquisitionError):
    pass


class BackendUnavailable(AcquisitionError):
    def __init__(self, what: str, os_name: str, arch: str, reason: str):
        self.what = what
        self.os_name = os_name
        self.arch = arch
        self.reason = reason
        super().__init__(f"{what} is unavailable on {os_name}/{arch}: {reason}")


class IntegrityError(AcquisitionError):
    def __init__(self, path: Path | str, expected: Optional[str], actual: Optional[str]):
        self.path = Path(path)
        self.expected = expected
        self.actual = actual
        if expected is None:
            message = f"No published checksum for {self.path.name}; refusing unverified archive"
        else:
            message = f"Checksum mismatch for {self.path.name}: expected {expected}, got {actual}"
        super().__init__(message)


class DownloadFailed(AcquisitionError):
    def __init__(self, url: str, attempts: int, reason: str):
        self.url = url
        self.attempts = attempts
        self.reason = reason
        super().__init__(f"Download of {url} failed after {attempts} attempt(s): {reason}")


class ResolveTimeout(AcquisitionError):
    """Another process held the cache entry lock for longer than the allowed wait."""


class BuildFailed(AcquisitionError):
    def __init__(self, command: str, stderr: str = ""):
        self.command = command
        self.stderr = stderr
        tail = stderr.strip().splitlines()[-20:]
        detail = ("\n" + "\n".join(tail)) if tail else ""
        super().__init__(f"Build command failed: {command}{detail}")


# Planning


class PlanningError(LlamaLifecycleError):
    exit_code = EXIT_PLANNING


class InsufficientResources(PlanningError):
    def __init__(self, message: str, required: Optional[int] = None, available: Optional[int] = None):
        self.required = required
        self.available = available
        super().__init__(message)


# Launch


class LaunchError(LlamaLifecycleError):
    exit_code = EXIT_LAUNCH


class LaunchFailed(LaunchError):
    def __init__(self, message: str, stderr: str = ""):
        self.stderr = stderr
        super().__init__(message)


class ReadinessTimeout(LaunchError):
    def __init__(self, elapsed: float, last_status: Any = None):
        self.elapsed = elapsed
        self.last_status = last_status
        super().__init__(f"Server did not become ready within {elapsed:.1f}s (last status: {last_status})")


class PortOrSocketUnavailable(LaunchError):
    pass


class ModelMismatch(LaunchError):
    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Server is running model '{actual}', expected '{expected}'")


# Runtime


class RuntimeServerError(LlamaLifecycleError):
    exit_code = EXIT_CONNECTION


class ServerCrashed(RuntimeServerError):
    def __init__(self, pid: int, exit_code_value: Optional[int]):
        self.pid = pid
        self.returncode = exit_code_value
        super().__init__(f"Server process {pid} exited unexpectedly with code {exit_code_value}")


class Disconnected(RuntimeServerError):
    pass


class TerminationTimeout(RuntimeServerError):
    def __init__(self, operation: str, elapsed: float, leftovers: list[int]):
        self.operation = operation
        self.elapsed = elapsed
        self.leftovers = leftovers
        super().__init__(f"{operation} timed out after {elapsed:.1f}s; still running: {leftovers}")


# Transport


class TransportError(LlamaLifecycleError):
    exit_code = EXIT_CONNECTION


class ServerConnectionRefused(TransportError):
    pass


class TransportTimeout(TransportError):
    pass


class ProtocolError(TransportError):
    pass


class RemoteError(TransportError):
    """Non-success status returned by the server, with its decoded error body."""

    def __init__(self, code: int, message: str, body: Any = None, error_type: Optional[str] = None):
        self.code = code
        self.message = message
        self.body = body
        self.error_type = error_type
        super().__init__(f"Server returned {code}: {message}")


def exit_code_for(error: BaseException) -> int:
    """Map an exception to the process exit code used by the command line tools."""
    if isinstance(error, KeyboardInterrupt):
        return EXIT_INTERRUPTED
    if isinstance(error, LlamaLifecycleError):
        return error.exit_code
    return EXIT_UNEXPECTED
