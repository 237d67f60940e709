"""
Nexus worker supervisor.

Builds, launches and supervises the external Nexus trader worker, exchanges
newline-delimited commands and status lines with it over its standard
streams, and keeps a live view of the worker's status.
"""

from .config import SupervisorConfig, load_config
from .correlator import Reply, RequestCorrelator
from .exceptions import (
    BuildFailedError,
    CommandTimeoutError,
    InitializationTimeoutError,
    NexusSupervisorError,
    SpawnError,
    WorkerCrashedError,
    WorkerNotReadyError,
    WorkerShutdownError,
)
from .persistence import LoggingMetricsSink, SQLiteMetricsStore
from .supervisor import SupervisorNotification, SupervisorState, WorkerStatus, WorkerSupervisor

__version__ = "0.1.0"

__all__ = [
    "BuildFailedError",
    "CommandTimeoutError",
    "InitializationTimeoutError",
    "LoggingMetricsSink",
    "NexusSupervisorError",
    "Reply",
    "RequestCorrelator",
    "SQLiteMetricsStore",
    "SpawnError",
    "SupervisorConfig",
    "SupervisorNotification",
    "SupervisorState",
    "WorkerCrashedError",
    "WorkerNotReadyError",
    "WorkerShutdownError",
    "WorkerStatus",
    "WorkerSupervisor",
    "load_config",
]
