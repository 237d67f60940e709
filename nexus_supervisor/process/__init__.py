"""Worker process management."""

from .handle import ProcessExit, ProcessLifecycleState, WorkerProcessHandle

__all__ = ["ProcessExit", "ProcessLifecycleState", "WorkerProcessHandle"]
