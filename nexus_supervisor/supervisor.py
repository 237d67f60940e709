"""
Worker Supervisor

Builds, launches and supervises the external Nexus trader worker:

    IDLE -> BUILDING -> LAUNCHING -> READY -> DEGRADED -> SHUTTING_DOWN -> TERMINATED

Worker stdout flows through the line decoder and the status classifier into
the live ``WorkerStatus`` and the request correlator. Commands flow through
the correlator to the worker's stdin.

The event loop is the single owner of all mutable state. The process
handle's reader threads never touch it directly; they hop onto the loop with
``call_soon_threadsafe``, which also preserves the order in which output was
read.
"""

import asyncio
import functools
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .build import BuildStep
from .config import SupervisorConfig
from .correlator import Reply, RequestCorrelator
from .exceptions import (
    BuildFailedError,
    InitializationTimeoutError,
    LineTooLongError,
    SpawnError,
    SupervisorStateError,
    WorkerCrashedError,
    WorkerNotReadyError,
    WorkerShutdownError,
)
from .logger import LogEvent, get_logger, log_state_change, log_system_event
from .persistence import ArtifactRecord, MetricsRecord, MetricsSink
from .process.handle import ProcessExit, WorkerProcessHandle
from .protocol.classifier import (
    ArtifactDeployed,
    CommandReply,
    EngineReady,
    StatusClassifier,
    StatusEvent,
    StrategyActivated,
    TradeExecuted,
)
from .protocol.commands import CommandAction
from .protocol.decoder import LineDecoder
from .retry import retry_async

logger = get_logger(__name__)


class SupervisorState(Enum):
    """Supervisor state machine."""

    IDLE = "idle"
    BUILDING = "building"
    LAUNCHING = "launching"
    READY = "ready"
    DEGRADED = "degraded"  # Worker crashed, awaiting restart policy
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class WorkerStatus:
    """
    Derived status of the worker.

    Immutable: the supervisor replaces the whole object on every update, so
    any instance handed out is a consistent snapshot.
    """

    running: bool = False
    cumulative_balance: float = 0.0
    total_profit: float = 0.0
    active_strategy_count: int = 0
    core_engine_active: bool = False
    deployed_artifact_count: int = 0
    executed_trade_count: int = 0
    last_trade_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_trade_at"] = self.last_trade_at.isoformat() if self.last_trade_at else None
        return data


@dataclass(frozen=True)
class SupervisorNotification:
    """Delivered to status subscribers on every state change and status event."""

    kind: str  # "state_changed", "status_event" or "worker_exited"
    state: SupervisorState
    status: WorkerStatus
    event: Optional[StatusEvent] = None
    detail: Optional[str] = None


HandleFactory = Callable[..., WorkerProcessHandle]


class WorkerSupervisor:
    """
    Supervises one external worker process.

    Every instance is independent: it owns its configuration, process handle,
    correlator and status. Use ``async with WorkerSupervisor(config)`` or call
    ``initialize()`` / ``shutdown()`` explicitly.
    """

    def __init__(
        self,
        config: Optional[SupervisorConfig] = None,
        classifier: Optional[StatusClassifier] = None,
        build_step: Optional[BuildStep] = None,
        handle_factory: Optional[HandleFactory] = None,
    ):
        self.config = config or SupervisorConfig()
        self.classifier = classifier or StatusClassifier()
        if build_step is None and self.config.build.enabled:
            build_step = BuildStep.from_config(self.config.build)
        self.build_step = build_step
        self._handle_factory = handle_factory or WorkerProcessHandle
        self.correlator = RequestCorrelator(sweep_interval=self.config.timeouts.sweep_interval)

        protocol = self.config.protocol
        self._stdout_decoder = LineDecoder(protocol.max_line_length, protocol.encoding)
        self._stderr_decoder = LineDecoder(protocol.max_line_length, protocol.encoding)

        self._state = SupervisorState.IDLE
        self._status = WorkerStatus()
        self._handle: Optional[WorkerProcessHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._session = 0
        self._ready_future: Optional[asyncio.Future] = None
        self._exit_event: Optional[asyncio.Event] = None
        self._last_exit: Optional[ProcessExit] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._terminated = asyncio.Event()
        self._subscribers: List[asyncio.Queue] = []
        self._artifacts: Dict[tuple, ArtifactRecord] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self._handle else None

    @property
    def restart_pending(self) -> bool:
        """True while an automatic relaunch is scheduled or in progress."""
        return self._restart_task is not None and not self._restart_task.done()

    @property
    def last_exit(self) -> Optional[ProcessExit]:
        return self._last_exit

    def get_status(self) -> WorkerStatus:
        """Return an immutable snapshot of the worker status."""
        return self._status

    def is_ready(self) -> bool:
        return self._state == SupervisorState.READY and self._status.running

    def confirmed_artifacts(self) -> List[ArtifactRecord]:
        return list(self._artifacts.values())

    async def wait_terminated(self) -> None:
        await self._terminated.wait()

    # ------------------------------------------------------------------
    # Status subscription
    # ------------------------------------------------------------------

    def subscribe(self, maxsize: int = 100) -> asyncio.Queue:
        """
        Register for status notifications.

        Notifications arrive in order. When the queue is full new
        notifications are dropped (and logged) rather than blocking the
        supervisor.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _notify(
        self, kind: str, event: Optional[StatusEvent] = None, detail: Optional[str] = None
    ) -> None:
        if not self._subscribers:
            return
        notification = SupervisorNotification(
            kind=kind, state=self._state, status=self._status, event=event, detail=detail
        )
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(notification)
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full, dropping notification", kind=kind)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> WorkerStatus:
        """
        Build and launch the worker, then wait for it to report readiness.

        Raises:
            BuildFailedError: Build exited non-zero (no automatic retry)
            SpawnError: Worker executable could not be started
            InitializationTimeoutError: No ready marker before the deadline,
                or the worker exited first
            SupervisorStateError: Not called from IDLE, or shutdown was
                requested while building
        """
        if self._state != SupervisorState.IDLE:
            raise SupervisorStateError(f"initialize() requires IDLE, state is {self._state.value}")

        self._loop = asyncio.get_running_loop()
        log_system_event(logger, LogEvent.BUILD_STARTED, "Initializing Nexus worker")

        self._set_state(SupervisorState.BUILDING)
        try:
            if self.build_step is not None:
                await self._loop.run_in_executor(None, self.build_step.run)
            else:
                logger.info("Build step disabled, launching existing worker binary")
        except BuildFailedError:
            if self._state == SupervisorState.BUILDING:
                self._terminate_now(reason="build_failed")
            raise

        if self._state != SupervisorState.BUILDING:
            raise SupervisorStateError("Shutdown requested during initialization")

        self._set_state(SupervisorState.LAUNCHING)
        try:
            await self._launch()
        except (SpawnError, InitializationTimeoutError) as e:
            if self._state == SupervisorState.LAUNCHING:
                logger.error("Worker launch failed", error=str(e))
                await self._stop_worker(graceful=False)
                await self.correlator.stop()
                self._terminate_now(reason=type(e).__name__)
            raise

        self._mark_ready()
        log_system_event(logger, LogEvent.WORKER_READY, "Nexus worker initialized", pid=self.pid)
        return self._status

    async def restart(self) -> WorkerStatus:
        """
        Relaunch the worker after a crash. The build step is not rerun.

        A failed relaunch leaves the supervisor DEGRADED.

        Raises:
            SupervisorStateError: If not DEGRADED
            SpawnError, InitializationTimeoutError: If the relaunch fails
        """
        if self._state != SupervisorState.DEGRADED:
            raise SupervisorStateError(f"restart() requires DEGRADED, state is {self._state.value}")

        self._set_state(SupervisorState.LAUNCHING, reason="restart")
        await self._release_handle()
        try:
            await self._launch()
        except (SpawnError, InitializationTimeoutError) as e:
            if self._state == SupervisorState.LAUNCHING:
                logger.error("Worker relaunch failed", error=str(e))
                await self._stop_worker(graceful=False)
                self._set_state(SupervisorState.DEGRADED, reason="restart_failed")
            raise

        self._mark_ready()
        log_system_event(logger, LogEvent.WORKER_RESTARTED, "Nexus worker relaunched", pid=self.pid)
        return self._status

    async def shutdown(self) -> None:
        """
        Stop the worker and terminate the supervisor.

        Safe to call from any state and any number of times; every call waits
        for the same shutdown sequence.
        """
        if self._shutdown_task is None:
            if self._loop is None:
                self._loop = asyncio.get_running_loop()
            self._shutdown_task = self._loop.create_task(
                self._shutdown_sequence(), name="worker-supervisor-shutdown"
            )
        await asyncio.shield(self._shutdown_task)

    async def _shutdown_sequence(self) -> None:
        previous = self._state
        if previous == SupervisorState.TERMINATED:
            await self._release_handle()
            await self.correlator.stop()
            return

        self._set_state(SupervisorState.SHUTTING_DOWN, previous=previous.value)
        log_system_event(
            logger, LogEvent.SHUTDOWN_STARTED, "Shutting down Nexus worker", pid=self.pid
        )

        self.correlator.fail_all(WorkerShutdownError, "Supervisor shutting down")
        if self._ready_future is not None and not self._ready_future.done():
            self._ready_future.set_exception(
                WorkerShutdownError("Shutdown requested before the worker became ready")
            )

        restart_task = self._restart_task
        if restart_task is not None and not restart_task.done():
            restart_task.cancel()
            try:
                await restart_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("Restart task ended with error during shutdown", error=str(e))

        try:
            await self._stop_worker(graceful=True)
        finally:
            await self.correlator.stop()
            self._update_status(running=False, core_engine_active=False)
            self._terminate_now(reason="shutdown")
            log_system_event(logger, LogEvent.SHUTDOWN_COMPLETE, "Nexus worker shutdown complete")

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def execute_command(
        self,
        action: Union[str, CommandAction],
        payload: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Reply:
        """
        Send a command and wait for the worker's correlated reply.

        Raises:
            WorkerNotReadyError: If the supervisor is not READY
            CommandTimeoutError: If no reply arrives in time
            WorkerCrashedError: If the worker exits first
            WriteError: If the command could not be written
        """
        if self._state != SupervisorState.READY:
            raise WorkerNotReadyError(f"Worker is not ready (state={self._state.value})")
        if timeout is None:
            timeout = self.config.timeouts.command
        future = self.correlator.send(action, payload, timeout)
        return await future

    async def execute_strategy(
        self, strategy: str, amount: float, timeout: Optional[float] = None
    ) -> Reply:
        return await self.execute_command(
            CommandAction.EXECUTE_STRATEGY, {"strategy": strategy, "amount": amount}, timeout
        )

    async def deploy_artifact(self, artifact_id: str, timeout: Optional[float] = None) -> Reply:
        reply = await self.execute_command(
            CommandAction.DEPLOY_ARTIFACT, {"id": artifact_id}, timeout
        )
        if self._reply_confirms(reply):
            self._record_artifact(artifact_id, "artifact")
        return reply

    async def activate_agent(self, agent_id: str, timeout: Optional[float] = None) -> Reply:
        reply = await self.execute_command(
            CommandAction.ACTIVATE_AGENT, {"agent_id": agent_id}, timeout
        )
        if self._reply_confirms(reply):
            self._record_artifact(agent_id, "agent")
        return reply

    async def update_configuration(
        self, settings: Mapping[str, Any], timeout: Optional[float] = None
    ) -> Reply:
        return await self.execute_command(
            CommandAction.UPDATE_CONFIGURATION, {"settings": dict(settings)}, timeout
        )

    async def sync_metrics(self, sink: MetricsSink) -> MetricsRecord:
        """Hand the current metrics and confirmed artifacts to ``sink``."""
        status = self._status
        record = MetricsRecord(
            cumulative_balance=status.cumulative_balance,
            total_profit=status.total_profit,
            active_strategy_count=status.active_strategy_count,
            deployed_artifact_count=status.deployed_artifact_count,
            executed_trade_count=status.executed_trade_count,
            core_engine_active=status.core_engine_active,
            running=status.running,
            recorded_at=datetime.now(),
        )
        await sink.save_metrics(record)
        artifacts = self.confirmed_artifacts()
        await sink.save_artifacts(artifacts)
        log_system_event(
            logger, LogEvent.METRICS_SYNCED, "Metrics sync completed", artifacts=len(artifacts)
        )
        return record

    # ------------------------------------------------------------------
    # Worker session
    # ------------------------------------------------------------------

    async def _launch(self) -> None:
        self._session += 1
        session = self._session
        self._stdout_decoder.reset()
        self._stderr_decoder.reset()
        self._ready_future = self._loop.create_future()
        self._exit_event = asyncio.Event()

        handle = self._handle_factory(
            on_stdout=functools.partial(self._from_thread, self._on_stdout_chunk, session),
            on_stderr=functools.partial(self._from_thread, self._on_stderr_chunk, session),
            on_exit=functools.partial(self._from_thread, self._on_process_exit, session),
            read_chunk_size=self.config.protocol.read_chunk_size,
            name="nexus-worker",
        )
        self._handle = handle

        worker = self.config.worker
        handle.start(worker.executable, worker.args, env=worker.build_env(), cwd=worker.cwd)
        self.correlator.set_transport(handle.write_line)
        self.correlator.start()

        timeout = self.config.timeouts.initialization
        try:
            await asyncio.wait_for(self._ready_future, timeout=timeout)
        except InitializationTimeoutError:
            raise
        except asyncio.TimeoutError as e:
            raise InitializationTimeoutError(f"Worker not ready after {timeout}s") from e

    def _mark_ready(self) -> None:
        self._update_status(running=True)
        self._set_state(SupervisorState.READY)

    async def _stop_worker(self, graceful: bool) -> None:
        """Stop the current worker, escalating to SIGKILL after the grace window."""
        handle = self._handle
        if handle is None:
            return

        grace = self.config.timeouts.grace_window
        if handle.is_alive:
            handle.terminate(graceful=graceful)
            exited = await self._wait_for_exit(grace)
            if not exited and graceful:
                log_system_event(
                    logger,
                    LogEvent.SHUTDOWN_ESCALATED,
                    f"Worker did not exit within {grace}s, sending SIGKILL",
                    pid=handle.pid,
                )
                handle.terminate(graceful=False)
                exited = await self._wait_for_exit(grace)
            if not exited:
                logger.error("Worker did not exit after SIGKILL", pid=handle.pid)

        await self._release_handle()

    async def _wait_for_exit(self, timeout: float) -> bool:
        if self._exit_event is None:
            return True
        try:
            await asyncio.wait_for(self._exit_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _release_handle(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self.correlator.set_transport(None)
        await self._loop.run_in_executor(None, handle.close)

    def _terminate_now(self, reason: str) -> None:
        self._set_state(SupervisorState.TERMINATED, reason=reason)
        self._terminated.set()

    def _set_state(self, new_state: SupervisorState, **context) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        log_state_change(logger, old_state.value, new_state.value, **context)
        self._notify("state_changed", detail=context.get("reason"))

    def _update_status(self, **changes) -> None:
        self._status = replace(self._status, **changes)

    def _record_artifact(self, artifact_id: str, kind: str) -> None:
        key = (kind, artifact_id)
        if key not in self._artifacts:
            self._artifacts[key] = ArtifactRecord(
                artifact_id=artifact_id, kind=kind, confirmed_at=datetime.now()
            )

    # ------------------------------------------------------------------
    # Thread -> loop bridge
    # ------------------------------------------------------------------

    def _from_thread(self, callback: Callable, session: int, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(callback, session, *args)
        except RuntimeError:
            # Loop closed between the check and the call
            logger.debug("Event loop closed, dropping worker callback")

    def _on_stdout_chunk(self, session: int, chunk: bytes) -> None:
        if session != self._session:
            return
        if chunk:
            lines = self._decode(self._stdout_decoder, chunk, "stdout")
        else:
            lines = self._stdout_decoder.flush()
        for line in lines:
            self._handle_line(line)

    def _on_stderr_chunk(self, session: int, chunk: bytes) -> None:
        if session != self._session:
            return
        if chunk:
            lines = self._decode(self._stderr_decoder, chunk, "stderr")
        else:
            lines = self._stderr_decoder.flush()
        for line in lines:
            self._log_stderr(line)

    def _decode(self, decoder: LineDecoder, chunk: bytes, stream_name: str) -> List[str]:
        lines: List[str] = []
        data = chunk
        while True:
            try:
                for line in decoder.feed(data):
                    lines.append(line)
                return lines
            except LineTooLongError as e:
                logger.warning(
                    "Dropped oversized worker output line", stream=stream_name, error=str(e)
                )
                data = b""

    def _on_process_exit(self, session: int, exit_info: ProcessExit) -> None:
        if session != self._session:
            return

        self._last_exit = exit_info
        self._update_status(running=False, core_engine_active=False)
        self.correlator.set_transport(None)
        if self._exit_event is not None:
            self._exit_event.set()

        detail = f"code {exit_info.returncode}" + (
            f" ({exit_info.signal_name})" if exit_info.signal_name else ""
        )

        if self._state == SupervisorState.LAUNCHING:
            if self._ready_future is not None and not self._ready_future.done():
                self._ready_future.set_exception(
                    InitializationTimeoutError(f"Worker exited before becoming ready ({detail})")
                )
        elif self._state == SupervisorState.READY:
            failed = self.correlator.fail_all(
                WorkerCrashedError, f"Worker exited unexpectedly ({detail})"
            )
            logger.error(
                LogEvent.WORKER_CRASHED.value,
                returncode=exit_info.returncode,
                signal=exit_info.signal_name,
                failed_requests=failed,
            )
            self._set_state(SupervisorState.DEGRADED, reason=detail)
            if self.config.restart.auto_restart and self.config.restart.max_restarts > 0:
                self._restart_task = self._loop.create_task(
                    self._auto_restart(), name="worker-supervisor-auto-restart"
                )

        # Anything still pending can never be answered by this session
        self.correlator.fail_all(WorkerCrashedError, f"Worker exited ({detail})")
        self._notify("worker_exited", detail=detail)

    async def _auto_restart(self) -> None:
        policy = self.config.restart
        try:
            await retry_async(
                self.restart,
                retries=policy.max_restarts - 1,
                base_delay=policy.base_delay,
                max_delay=policy.max_delay,
                retry_on=(SpawnError, InitializationTimeoutError),
                operation="worker restart",
            )
        except SupervisorStateError as e:
            logger.info("Auto-restart abandoned", reason=str(e))
        except (SpawnError, InitializationTimeoutError) as e:
            logger.error(
                "Auto-restart attempts exhausted", attempts=policy.max_restarts, error=str(e)
            )

    # ------------------------------------------------------------------
    # Line handling
    # ------------------------------------------------------------------

    def _handle_line(self, line: str) -> None:
        if not line.strip():
            return
        event = self.classifier.classify(line)
        logger.debug(LogEvent.WORKER_STDOUT.value, line=line, kind=event.kind)

        self._apply_event(event)
        if event.token is not None:
            self.correlator.on_reply(event.token, self._to_reply(event))
        self._notify("status_event", event=event)

    def _apply_event(self, event: StatusEvent) -> None:
        status = self._status

        if isinstance(event, EngineReady):
            self._update_status(core_engine_active=True)
            logger.info(LogEvent.ENGINE_READY.value, line=event.raw)
            if (
                self._state == SupervisorState.LAUNCHING
                and self._ready_future is not None
                and not self._ready_future.done()
            ):
                self._ready_future.set_result(event)

        elif isinstance(event, TradeExecuted):
            if event.profit is None:
                logger.warning("Trade marker without a parseable amount", line=event.raw)
                self._update_status(
                    executed_trade_count=status.executed_trade_count + 1,
                    last_trade_at=datetime.now(),
                )
                return
            self._update_status(
                cumulative_balance=status.cumulative_balance + event.profit,
                total_profit=status.total_profit + max(event.profit, 0.0),
                executed_trade_count=status.executed_trade_count + 1,
                last_trade_at=datetime.now(),
            )
            logger.info(
                LogEvent.TRADE_EXECUTED.value,
                profit=event.profit,
                cumulative_balance=self._status.cumulative_balance,
            )

        elif isinstance(event, ArtifactDeployed):
            self._update_status(deployed_artifact_count=status.deployed_artifact_count + 1)
            if event.artifact_id:
                self._record_artifact(event.artifact_id, "artifact")
            logger.info(LogEvent.ARTIFACT_DEPLOYED.value, artifact_id=event.artifact_id)

        elif isinstance(event, StrategyActivated):
            self._update_status(active_strategy_count=status.active_strategy_count + 1)
            logger.info(LogEvent.STRATEGY_ACTIVATED.value, marker=event.marker)

    @staticmethod
    def _reply_confirms(reply: Reply) -> bool:
        # Status markers always confirm; JSON replies may carry ok=false
        if reply.kind in (ArtifactDeployed.kind, StrategyActivated.kind):
            return True
        return bool(reply.payload.get("ok", True))

    @staticmethod
    def _to_reply(event: StatusEvent) -> Reply:
        if isinstance(event, CommandReply):
            return Reply(
                token=event.token,
                kind=event.action or event.kind,
                payload=dict(event.payload),
                raw=event.raw,
            )
        fields = {k: v for k, v in asdict(event).items() if k not in ("raw", "token")}
        return Reply(token=event.token, kind=event.kind, payload=fields, raw=event.raw)

    def _log_stderr(self, line: str) -> None:
        if not line.strip():
            return
        if "ERROR" in line or "panicked" in line:
            logger.error(LogEvent.WORKER_STDERR.value, line=line)
        elif "WARN" in line:
            logger.warning(LogEvent.WORKER_STDERR.value, line=line)
        elif "DEBUG" in line or "TRACE" in line:
            logger.debug(LogEvent.WORKER_STDERR.value, line=line)
        else:
            logger.info(LogEvent.WORKER_STDERR.value, line=line)
