"""Pytest fixtures and configuration for the test suite."""

import sys
from pathlib import Path

import pytest

from nexus_supervisor.config import (
    BuildConfig,
    RestartConfig,
    SupervisorConfig,
    TimeoutConfig,
    WorkerConfig,
)

FAKE_WORKER = Path(__file__).parent / "fake_worker.py"


@pytest.fixture
def fake_worker_path():
    """Path of the scripted fake worker."""
    return str(FAKE_WORKER)


@pytest.fixture
def fake_worker_command(fake_worker_path):
    """Executable and base arguments that launch the fake worker."""
    return sys.executable, ["-u", fake_worker_path]


@pytest.fixture
def make_config(fake_worker_path):
    """Factory for supervisor configs that launch the fake worker with short timeouts."""

    def _make(
        worker_args=(),
        build_command=None,
        initialization=5.0,
        grace_window=1.0,
        command_timeout=3.0,
        auto_restart=False,
        max_restarts=3,
    ) -> SupervisorConfig:
        build = (
            BuildConfig(enabled=True, command=list(build_command))
            if build_command is not None
            else BuildConfig(enabled=False)
        )
        return SupervisorConfig(
            worker=WorkerConfig(
                executable=sys.executable,
                args=["-u", fake_worker_path, *worker_args],
            ),
            build=build,
            timeouts=TimeoutConfig(
                initialization=initialization,
                grace_window=grace_window,
                command=command_timeout,
                sweep_interval=0.02,
            ),
            restart=RestartConfig(
                auto_restart=auto_restart,
                max_restarts=max_restarts,
                base_delay=0.05,
                max_delay=0.1,
            ),
        )

    return _make
