"""
Custom exceptions for the Nexus worker supervisor.

Process-level failures (spawn, build, crash) end the current worker session
and are raised to the caller of ``initialize()`` / ``restart()``.
Command-level failures are only ever delivered through the future of the
command that caused them.

Usage:
    from nexus_supervisor.exceptions import (
        BuildFailedError,
        CommandTimeoutError,
        WorkerCrashedError,
    )

    try:
        reply = await supervisor.deploy_artifact("T1")
    except CommandTimeoutError:
        # Recoverable, the caller may retry
        ...
    except WorkerCrashedError:
        # Worker died while the command was in flight
        ...
"""

from typing import Optional


class NexusSupervisorError(Exception):
    """Base exception for all supervisor errors."""

    pass


# =============================================================================
# Worker Process Errors
# =============================================================================


class WorkerProcessError(NexusSupervisorError):
    """Base exception for worker process failures."""

    pass


class SpawnError(WorkerProcessError):
    """The worker executable is missing or the OS refused to start it."""

    pass


class WriteError(WorkerProcessError):
    """A command frame could not be written to the worker's stdin."""

    pass


class ClosedPipeError(WriteError):
    """The worker has exited or its stdin pipe is closed."""

    pass


class WorkerCrashedError(WorkerProcessError):
    """The worker exited while requests were in flight."""

    pass


class WorkerShutdownError(WorkerProcessError):
    """The supervisor is shutting down; outstanding requests were cancelled."""

    pass


# =============================================================================
# Session Errors
# =============================================================================


class BuildFailedError(NexusSupervisorError):
    """The external build step exited with a non-zero code."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class InitializationTimeoutError(NexusSupervisorError, TimeoutError):
    """The worker did not report readiness before the initialization deadline."""

    pass


class SupervisorStateError(NexusSupervisorError):
    """Operation is not allowed in the supervisor's current state."""

    pass


# =============================================================================
# Command Errors
# =============================================================================


class CommandError(NexusSupervisorError):
    """Base exception for per-command failures."""

    pass


class CommandTimeoutError(CommandError, TimeoutError):
    """No reply arrived for a command before its deadline."""

    pass


class WorkerNotReadyError(CommandError):
    """Commands are only accepted while the supervisor is READY."""

    pass


# =============================================================================
# Protocol Errors
# =============================================================================


class ProtocolError(NexusSupervisorError):
    """Base exception for stdout/stdin protocol errors."""

    pass


class LineTooLongError(ProtocolError):
    """A worker output line exceeded the configured maximum length."""

    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(NexusSupervisorError):
    """Error in configuration."""

    pass


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    pass
