"""End-to-end tests for the worker supervisor using the scripted fake worker."""

import asyncio
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

from nexus_supervisor.exceptions import (
    BuildFailedError,
    CommandTimeoutError,
    InitializationTimeoutError,
    SpawnError,
    SupervisorStateError,
    WorkerCrashedError,
    WorkerNotReadyError,
    WorkerShutdownError,
)
from nexus_supervisor.persistence import LoggingMetricsSink
from nexus_supervisor.protocol.classifier import ArtifactDeployed
from nexus_supervisor.supervisor import SupervisorState, WorkerStatus, WorkerSupervisor


async def wait_for_state(supervisor, state, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while supervisor.state != state:
        if loop.time() > deadline:
            raise AssertionError(f"state is {supervisor.state}, expected {state}")
        await asyncio.sleep(0.02)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_and_shutdown(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        assert supervisor.state == SupervisorState.IDLE
        assert supervisor.get_status() == WorkerStatus()

        try:
            status = await supervisor.initialize()
            assert supervisor.state == SupervisorState.READY
            assert supervisor.is_ready()
            assert status.running is True
            assert status.core_engine_active is True
            assert supervisor.pid is not None
        finally:
            await supervisor.shutdown()

        assert supervisor.state == SupervisorState.TERMINATED
        assert supervisor.get_status().running is False
        assert supervisor.last_exit is not None
        assert not supervisor.is_ready()

    @pytest.mark.asyncio
    async def test_context_manager(self, make_config):
        async with WorkerSupervisor(make_config()) as supervisor:
            assert supervisor.state == SupervisorState.READY
        assert supervisor.state == SupervisorState.TERMINATED

    @pytest.mark.asyncio
    async def test_successful_build_runs_first(self, make_config):
        config = make_config(build_command=[sys.executable, "-c", "print('Finished release')"])
        supervisor = WorkerSupervisor(config)
        try:
            await supervisor.initialize()
            assert supervisor.state == SupervisorState.READY
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_build_failure_terminates_without_launch(self, make_config):
        config = make_config(
            build_command=[
                sys.executable,
                "-c",
                "import sys; print('error: could not compile'); sys.exit(1)",
            ]
        )
        supervisor = WorkerSupervisor(config)

        with pytest.raises(BuildFailedError) as exc_info:
            await supervisor.initialize()

        assert exc_info.value.returncode == 1
        assert "could not compile" in exc_info.value.output
        assert supervisor.state == SupervisorState.TERMINATED
        assert supervisor.pid is None
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_spawn_failure(self, make_config):
        config = make_config()
        config.worker.executable = "/nonexistent/solana-nexus-trader"
        supervisor = WorkerSupervisor(config)

        with pytest.raises(SpawnError):
            await supervisor.initialize()
        assert supervisor.state == SupervisorState.TERMINATED
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_initialization_timeout(self, make_config):
        supervisor = WorkerSupervisor(make_config(worker_args=["--no-ready"], initialization=0.5))

        with pytest.raises(InitializationTimeoutError):
            await supervisor.initialize()

        assert supervisor.state == SupervisorState.TERMINATED
        # The unresponsive worker was stopped
        assert supervisor.last_exit is not None
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_exit_before_ready_fails_fast(self, make_config):
        supervisor = WorkerSupervisor(make_config(worker_args=["--exit-before-ready"]))
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(InitializationTimeoutError, match="exited before"):
            await supervisor.initialize()

        assert loop.time() - started < 4.0
        assert supervisor.last_exit.returncode == 3
        assert supervisor.state == SupervisorState.TERMINATED

    @pytest.mark.asyncio
    async def test_initialize_twice(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        try:
            await supervisor.initialize()
            with pytest.raises(SupervisorStateError):
                await supervisor.initialize()
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        await supervisor.initialize()

        await asyncio.gather(supervisor.shutdown(), supervisor.shutdown())
        await supervisor.shutdown()

        assert supervisor.state == SupervisorState.TERMINATED
        await asyncio.wait_for(supervisor.wait_terminated(), timeout=1)

    @pytest.mark.asyncio
    async def test_shutdown_from_idle(self):
        supervisor = WorkerSupervisor()
        await supervisor.shutdown()
        assert supervisor.state == SupervisorState.TERMINATED

    @pytest.mark.asyncio
    async def test_shutdown_escalates_to_kill(self, make_config):
        config = make_config(worker_args=["--ignore-sigterm"], grace_window=0.3)
        supervisor = WorkerSupervisor(config)
        await supervisor.initialize()

        loop = asyncio.get_running_loop()
        started = loop.time()
        await supervisor.shutdown()

        assert loop.time() - started < 3.0
        assert supervisor.state == SupervisorState.TERMINATED
        assert supervisor.last_exit.signal_name == "SIGKILL"


class TestCommands:
    @pytest.mark.asyncio
    async def test_commands_require_ready(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        with pytest.raises(WorkerNotReadyError):
            await supervisor.deploy_artifact("T1")

    @pytest.mark.asyncio
    async def test_deploy_artifact(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        try:
            await supervisor.initialize()
            before = supervisor.get_status()

            reply = await supervisor.deploy_artifact("T1")

            assert reply.kind == "artifact_deployed"
            assert reply.payload["artifact_id"] == "T1"
            status = supervisor.get_status()
            assert status.deployed_artifact_count == 1
            # Snapshots handed out earlier never change
            assert before.deployed_artifact_count == 0
            assert [(a.artifact_id, a.kind) for a in supervisor.confirmed_artifacts()] == [
                ("T1", "artifact")
            ]
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_execute_strategy_updates_balance(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        try:
            await supervisor.initialize()
            reply = await supervisor.execute_strategy("arbitrage", 3.5)

            assert reply.kind == "trade_executed"
            assert reply.payload["profit"] == 3.5
            status = supervisor.get_status()
            assert status.cumulative_balance == pytest.approx(3.5)
            assert status.total_profit == pytest.approx(3.5)
            assert status.executed_trade_count == 1
            assert status.last_trade_at is not None
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_activate_agent(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        try:
            await supervisor.initialize()
            reply = await supervisor.activate_agent("A7")

            assert reply.kind == "strategy_activated"
            assert supervisor.get_status().active_strategy_count == 1
            assert ("A7", "agent") in [
                (a.artifact_id, a.kind) for a in supervisor.confirmed_artifacts()
            ]
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_rejected_commands_are_not_confirmed(self, make_config):
        supervisor = WorkerSupervisor(make_config(worker_args=["--reject-commands"]))
        try:
            await supervisor.initialize()

            deployed = await supervisor.deploy_artifact("T1")
            activated = await supervisor.activate_agent("A7")

            assert deployed.payload == {"ok": False, "error": "rejected by worker"}
            assert activated.payload["ok"] is False
            assert supervisor.confirmed_artifacts() == []
            assert supervisor.get_status().deployed_artifact_count == 0
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_explicit_zero_timeout_is_rejected(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        try:
            await supervisor.initialize()

            with pytest.raises(ValueError, match="timeout must be positive"):
                await supervisor.execute_command("ignore", timeout=0)

            assert supervisor.state == SupervisorState.READY
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_update_configuration_json_reply(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        try:
            await supervisor.initialize()
            reply = await supervisor.update_configuration({"risk": "low"})

            assert reply.kind == "update_config"
            assert reply.payload["ok"] is True
            assert reply.payload["settings"] == {"risk": "low"}
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_unsolicited_status_lines(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        try:
            await supervisor.initialize()
            await supervisor.execute_command(
                "emit",
                {
                    "lines": [
                        "Sandwich executed: +2.0 SOL",
                        "Arbitrage executed: -0.5 SOL",
                        "Trade executed: +?? SOL",
                        "🥪 Sandwich strategy armed",
                        "some unrelated chatter",
                    ]
                },
            )

            status = supervisor.get_status()
            assert status.cumulative_balance == pytest.approx(1.5)
            assert status.total_profit == pytest.approx(2.0)
            assert status.executed_trade_count == 3
            assert status.active_strategy_count == 1
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_commands_resolve_independently(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        try:
            await supervisor.initialize()
            completed = []

            # The worker answers "defer" only after the next command's reply
            slow = asyncio.ensure_future(supervisor.execute_command("defer"))
            slow.add_done_callback(lambda _: completed.append("defer"))
            await asyncio.sleep(0.05)
            fast = asyncio.ensure_future(supervisor.deploy_artifact("T2"))
            fast.add_done_callback(lambda _: completed.append("deploy"))

            deployed, deferred = await asyncio.gather(fast, slow)

            assert deployed.payload["artifact_id"] == "T2"
            assert deferred.kind == "defer"
            assert deferred.payload["ok"] is True
            assert completed == ["deploy", "defer"]
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_command_timeout(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        try:
            await supervisor.initialize()
            loop = asyncio.get_running_loop()
            started = loop.time()

            with pytest.raises(CommandTimeoutError):
                await supervisor.execute_command("ignore", timeout=0.2)

            assert 0.15 <= loop.time() - started < 1.5
            # The worker stays usable
            assert supervisor.state == SupervisorState.READY
            reply = await supervisor.deploy_artifact("T3")
            assert reply.payload["artifact_id"] == "T3"
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_fails_pending_commands(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        await supervisor.initialize()
        pending = asyncio.ensure_future(supervisor.execute_command("ignore", timeout=5))
        await asyncio.sleep(0.1)

        await supervisor.shutdown()

        with pytest.raises(WorkerShutdownError):
            await pending


class TestCrashAndRestart:
    @pytest.mark.asyncio
    async def test_crash_fails_in_flight_and_degrades(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        try:
            await supervisor.initialize()
            pending = asyncio.ensure_future(supervisor.execute_command("ignore", timeout=5))
            await asyncio.sleep(0.05)

            with pytest.raises(WorkerCrashedError):
                await supervisor.execute_command("crash", {"code": 101})
            with pytest.raises(WorkerCrashedError):
                await pending

            assert supervisor.state == SupervisorState.DEGRADED
            assert supervisor.last_exit.returncode == 101
            assert supervisor.get_status().running is False
            with pytest.raises(WorkerNotReadyError):
                await supervisor.deploy_artifact("T1")
        finally:
            await supervisor.shutdown()
        assert supervisor.state == SupervisorState.TERMINATED

    @pytest.mark.asyncio
    async def test_manual_restart(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        try:
            await supervisor.initialize()
            await supervisor.deploy_artifact("T1")
            first_pid = supervisor.pid

            with pytest.raises(SupervisorStateError):
                await supervisor.restart()

            with pytest.raises(WorkerCrashedError):
                await supervisor.execute_command("crash")
            assert supervisor.state == SupervisorState.DEGRADED

            await supervisor.restart()
            assert supervisor.state == SupervisorState.READY
            assert supervisor.pid != first_pid

            reply = await supervisor.deploy_artifact("T2")
            assert reply.payload["artifact_id"] == "T2"
            # Counters carry over across worker sessions
            assert supervisor.get_status().deployed_artifact_count == 2
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_auto_restart(self, make_config):
        supervisor = WorkerSupervisor(make_config(auto_restart=True))
        try:
            await supervisor.initialize()
            with pytest.raises(WorkerCrashedError):
                await supervisor.execute_command("crash")

            await wait_for_state(supervisor, SupervisorState.READY)
            reply = await supervisor.deploy_artifact("T9")
            assert reply.payload["artifact_id"] == "T9"
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_auto_restart_exhausted_stays_degraded(self, make_config, tmp_path):
        config = make_config(
            worker_args=["--fail-relaunch", str(tmp_path / "launched")],
            auto_restart=True,
            max_restarts=2,
        )
        supervisor = WorkerSupervisor(config)
        try:
            await supervisor.initialize()
            assert supervisor.restart_pending is False

            with pytest.raises(WorkerCrashedError):
                await supervisor.execute_command("crash")
            assert supervisor.restart_pending is True

            loop = asyncio.get_running_loop()
            deadline = loop.time() + 5.0
            while supervisor.restart_pending:
                assert loop.time() < deadline, "auto-restart never finished"
                await asyncio.sleep(0.02)

            assert supervisor.state == SupervisorState.DEGRADED
            assert supervisor.last_exit.returncode == 3
        finally:
            await supervisor.shutdown()


class TestObservation:
    @pytest.mark.asyncio
    async def test_subscribe_receives_status_events(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        queue = supervisor.subscribe()
        try:
            await supervisor.initialize()
            await supervisor.deploy_artifact("T1")

            notifications = []
            while not queue.empty():
                notifications.append(queue.get_nowait())

            states = [n.state for n in notifications if n.kind == "state_changed"]
            assert states[:3] == [
                SupervisorState.BUILDING,
                SupervisorState.LAUNCHING,
                SupervisorState.READY,
            ]
            deployed = [n for n in notifications if isinstance(n.event, ArtifactDeployed)]
            assert len(deployed) == 1
            assert deployed[0].status.deployed_artifact_count == 1
        finally:
            supervisor.unsubscribe(queue)
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_full_subscriber_queue_does_not_block(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        queue = supervisor.subscribe(maxsize=1)
        try:
            await supervisor.initialize()
            await supervisor.deploy_artifact("T1")
            assert queue.qsize() == 1
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_sync_metrics(self, make_config):
        supervisor = WorkerSupervisor(make_config())
        sink = LoggingMetricsSink()
        try:
            await supervisor.initialize()
            await supervisor.execute_strategy("arbitrage", 1.25)
            await supervisor.deploy_artifact("T1")

            record = await supervisor.sync_metrics(sink)

            assert record.cumulative_balance == pytest.approx(1.25)
            assert record.deployed_artifact_count == 1
            assert record.executed_trade_count == 1
            assert record.running is True
            assert sink.metrics == [record]
            assert [a.artifact_id for a in sink.artifacts] == ["T1"]
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_sync_metrics_propagates_sink_failure(self):
        supervisor = WorkerSupervisor()
        sink = MagicMock()
        sink.save_metrics = AsyncMock(side_effect=OSError("disk full"))
        sink.save_artifacts = AsyncMock()

        with pytest.raises(OSError, match="disk full"):
            await supervisor.sync_metrics(sink)

        sink.save_metrics.assert_awaited_once()
        sink.save_artifacts.assert_not_awaited()
