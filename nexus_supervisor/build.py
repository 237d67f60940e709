"""
Build step run before the worker is launched.

A single blocking external command (``cargo build --release`` by default).
Exit code 0 means success; anything else is fatal for the session and is
reported with the combined stdout/stderr output.
"""

import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

from .config import BuildConfig
from .exceptions import BuildFailedError
from .logger import LogEvent, get_logger

logger = get_logger(__name__)

# Keep log lines readable; the full output stays on the exception
OUTPUT_LOG_LIMIT = 4000


@dataclass(frozen=True)
class BuildResult:
    command: Sequence[str]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class BuildStep:
    """Runs the configured build command."""

    def __init__(
        self,
        command: Sequence[str],
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.command = list(command)
        self.cwd = cwd
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: BuildConfig) -> "BuildStep":
        return cls(config.command, cwd=config.cwd, timeout=config.timeout)

    def run(self) -> BuildResult:
        """
        Run the build and wait for it to finish.

        Raises:
            BuildFailedError: On a non-zero exit, a timeout, or if the build
                tool cannot be started
        """
        logger.info(LogEvent.BUILD_STARTED.value, command=self.command, cwd=self.cwd)

        try:
            completed = subprocess.run(
                self.command,
                cwd=self.cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            output = e.output or ""
            if isinstance(output, bytes):
                output = output.decode("utf-8", errors="replace")
            logger.error(LogEvent.BUILD_FAILED.value, reason="timeout", timeout=self.timeout)
            raise BuildFailedError(f"Build timed out after {self.timeout}s", None, output) from e
        except OSError as e:
            logger.error(LogEvent.BUILD_FAILED.value, reason="spawn", error=str(e))
            raise BuildFailedError(f"Could not run build command: {e}", None, "") from e

        result = BuildResult(
            command=self.command, returncode=completed.returncode, output=completed.stdout or ""
        )

        if not result.ok:
            logger.error(
                LogEvent.BUILD_FAILED.value,
                returncode=result.returncode,
                output=result.output[-OUTPUT_LOG_LIMIT:],
            )
            raise BuildFailedError(
                f"Build failed with code {result.returncode}", result.returncode, result.output
            )

        logger.info(LogEvent.BUILD_SUCCEEDED.value, command=self.command)
        return result
