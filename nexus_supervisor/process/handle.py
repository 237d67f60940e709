"""
Worker Process Handle

Owns the worker's OS process, its three pipes and its lifecycle state.

Uses threading for subprocess I/O instead of asyncio.create_subprocess_exec:
blocking reads on dedicated threads keep pipe draining independent of how
busy the caller's event loop is. Listeners are called from those threads;
callers that need loop affinity must hop back themselves.

The handle is policy-free: it never decides to kill the worker on its own.
Escalating a graceful stop to a force-kill is the supervisor's job.
"""

import signal
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from ..exceptions import ClosedPipeError, SpawnError, WriteError
from ..logger import LogEvent, get_logger

logger = get_logger(__name__)


class ProcessLifecycleState(Enum):
    """Lifecycle of one worker process."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


@dataclass(frozen=True)
class ProcessExit:
    """Exit notification payload."""

    pid: int
    returncode: int
    signal_name: Optional[str]
    clean: bool


StreamListener = Callable[[bytes], None]
ExitListener = Callable[[ProcessExit], None]


def _signal_name(returncode: int) -> Optional[str]:
    if returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


class WorkerProcessHandle:
    """
    Handle on a single worker process.

    ``on_stdout`` / ``on_stderr`` receive raw byte chunks in the order they
    were read; an empty chunk marks the end of that stream. ``on_exit`` fires
    exactly once, after both streams have been drained (bounded by
    ``READER_JOIN_TIMEOUT``).
    """

    READER_JOIN_TIMEOUT = 2.0

    def __init__(
        self,
        on_stdout: Optional[StreamListener] = None,
        on_stderr: Optional[StreamListener] = None,
        on_exit: Optional[ExitListener] = None,
        read_chunk_size: int = 4096,
        name: str = "worker",
    ):
        self.name = name
        self.read_chunk_size = read_chunk_size
        self.process: Optional[subprocess.Popen] = None
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr
        self._on_exit = on_exit
        self._state = ProcessLifecycleState.NOT_STARTED
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._terminate_requested = False
        self._exit_info: Optional[ProcessExit] = None
        self._exited = threading.Event()
        self._stdout_thread: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None
        self._waiter_thread: Optional[threading.Thread] = None

    @property
    def state(self) -> ProcessLifecycleState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def exit_info(self) -> Optional[ProcessExit]:
        return self._exit_info

    @property
    def is_alive(self) -> bool:
        return self.process is not None and not self._exited.is_set()

    def start(
        self,
        executable: str,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> "WorkerProcessHandle":
        """
        Spawn the worker with piped stdin/stdout/stderr.

        Raises:
            SpawnError: If the handle was already started, the executable is
                missing, or the OS refuses to create the process
        """
        with self._lock:
            if self._state != ProcessLifecycleState.NOT_STARTED:
                raise SpawnError(f"Worker handle already used (state={self._state.value})")
            self._state = ProcessLifecycleState.STARTING

        command: List[str] = [executable, *args]
        logger.info("Starting worker process", executable=executable, args=list(args), cwd=cwd)

        try:
            self.process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                cwd=cwd,
                close_fds=True,  # Don't inherit file descriptors
            )
        except OSError as e:
            with self._lock:
                self._state = ProcessLifecycleState.CRASHED
            logger.error("Failed to spawn worker", executable=executable, error=str(e))
            raise SpawnError(f"Failed to spawn {executable}: {e}") from e

        # RUNNING must be set before the waiter can observe an exit
        with self._lock:
            self._state = ProcessLifecycleState.RUNNING

        self._stdout_thread = threading.Thread(
            target=self._pump,
            args=(self.process.stdout, self._on_stdout, "stdout"),
            daemon=True,
            name=f"{self.name}-stdout-reader",
        )
        self._stderr_thread = threading.Thread(
            target=self._pump,
            args=(self.process.stderr, self._on_stderr, "stderr"),
            daemon=True,
            name=f"{self.name}-stderr-reader",
        )
        self._waiter_thread = threading.Thread(
            target=self._wait_for_exit, daemon=True, name=f"{self.name}-exit-waiter"
        )
        self._stdout_thread.start()
        self._stderr_thread.start()
        self._waiter_thread.start()

        logger.info(LogEvent.WORKER_SPAWNED.value, pid=self.process.pid, executable=executable)
        return self

    def _pump(self, stream, listener: Optional[StreamListener], stream_name: str) -> None:
        """Thread function to forward one output stream in raw chunks."""
        try:
            while True:
                chunk = stream.read1(self.read_chunk_size)
                if not chunk:
                    break
                self._deliver(listener, chunk, stream_name)
        except (OSError, ValueError) as e:
            logger.error("Reader thread error", stream=stream_name, error=str(e))
        finally:
            self._deliver(listener, b"", stream_name)
            logger.debug("Reader thread exiting", stream=stream_name)

    def _deliver(self, listener: Optional[StreamListener], chunk: bytes, stream_name: str) -> None:
        if listener is None:
            return
        try:
            listener(chunk)
        except Exception as e:
            logger.error("Stream listener failed", stream=stream_name, error=str(e))

    def _wait_for_exit(self) -> None:
        """Thread function that reaps the process and fires the exit notification."""
        returncode = self.process.wait()

        # Deliver everything the worker printed before announcing the exit
        for thread in (self._stdout_thread, self._stderr_thread):
            if thread is not None:
                thread.join(self.READER_JOIN_TIMEOUT)

        with self._lock:
            if self._exit_info is not None:
                return
            clean = returncode == 0 or self._terminate_requested
            self._state = ProcessLifecycleState.STOPPED if clean else ProcessLifecycleState.CRASHED
            self._exit_info = ProcessExit(
                pid=self.process.pid,
                returncode=returncode,
                signal_name=_signal_name(returncode),
                clean=clean,
            )
            exit_info = self._exit_info

        self._exited.set()

        if clean:
            logger.info(LogEvent.WORKER_EXITED.value, pid=exit_info.pid, returncode=returncode)
        else:
            logger.warning(
                LogEvent.WORKER_CRASHED.value,
                pid=exit_info.pid,
                returncode=returncode,
                signal=exit_info.signal_name,
            )

        if self._on_exit is not None:
            try:
                self._on_exit(exit_info)
            except Exception as e:
                logger.error("Exit listener failed", error=str(e))

    def write_line(self, data: bytes) -> None:
        """
        Write one command frame to the worker's stdin.

        Raises:
            ClosedPipeError: If the worker has exited or its stdin is closed
            WriteError: For any other OS-level write failure
        """
        if not data.endswith(b"\n"):
            data += b"\n"

        with self._write_lock:
            if self.process is None or self._exited.is_set() or self.process.stdin is None:
                raise ClosedPipeError("Worker process is not running")
            if self.process.stdin.closed:
                raise ClosedPipeError("Worker stdin is closed")
            try:
                self.process.stdin.write(data)
                self.process.stdin.flush()
            except (BrokenPipeError, ValueError) as e:
                raise ClosedPipeError(f"Worker stdin closed: {e}") from e
            except OSError as e:
                raise WriteError(f"Failed to write to worker: {e}") from e

    def terminate(self, graceful: bool = True) -> bool:
        """
        Ask the worker to stop.

        Graceful sends SIGTERM; otherwise SIGKILL is sent immediately.

        Returns:
            False if there was no live process to signal
        """
        with self._lock:
            if self.process is None or self._exit_info is not None:
                return False
            self._terminate_requested = True
            if self._state == ProcessLifecycleState.RUNNING:
                self._state = ProcessLifecycleState.STOPPING

        try:
            if graceful:
                logger.debug("Sending SIGTERM to worker process", pid=self.process.pid)
                self.process.terminate()
            else:
                logger.warning("Sending SIGKILL to worker process", pid=self.process.pid)
                self.process.kill()
        except ProcessLookupError:
            logger.debug("Worker already gone when signalled", pid=self.process.pid)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the exit notification has fired. Returns False on timeout."""
        return self._exited.wait(timeout)

    def close(self, timeout: float = READER_JOIN_TIMEOUT) -> None:
        """Close stdin and join the I/O threads. Does not signal the process."""
        if self.process is None:
            return

        if self.is_alive:
            logger.warning("Closing handle of a live worker", pid=self.process.pid)

        with self._write_lock:
            if self.process.stdin and not self.process.stdin.closed:
                try:
                    self.process.stdin.close()
                except OSError as e:
                    logger.debug("Error closing worker stdin", error=str(e))

        for thread in (self._stdout_thread, self._stderr_thread, self._waiter_thread):
            if thread is not None and thread.is_alive():
                thread.join(timeout)

        # A reader still blocked in read1() holds the buffer lock; leave its stream open
        for stream, thread in (
            (self.process.stdout, self._stdout_thread),
            (self.process.stderr, self._stderr_thread),
        ):
            if stream is None or stream.closed:
                continue
            if thread is not None and thread.is_alive():
                logger.warning("Reader thread still running, leaving stream open", pid=self.pid)
                continue
            stream.close()
