"""
Request/Response Correlator

Ties each outbound command to its eventual reply through a correlation token.
Replies may arrive in any order, so matching is by token only, never by
position or by action.

All mutations of the pending map (``send``, ``on_reply``, ``sweep`` and
``fail_all``) run on the event loop thread, which makes them mutually
exclusive without a lock. Callers only ever hold the returned future.
"""

import asyncio
import functools
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, Union

from .exceptions import ClosedPipeError, CommandTimeoutError, WriteError
from .logger import LogEvent, get_logger
from .protocol.commands import CommandAction, OutboundCommand, action_name

logger = get_logger(__name__)

Transport = Callable[[bytes], None]


@dataclass(frozen=True)
class Reply:
    """Result a command future resolves with."""

    token: int
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    raw: str = ""


@dataclass
class PendingRequest:
    token: int
    action: str
    created_at: float
    deadline: float
    future: asyncio.Future

    @property
    def timeout(self) -> float:
        return self.deadline - self.created_at


class RequestCorrelator:
    """
    Tracks in-flight commands and resolves them exactly once.

    Each request ends in exactly one of: a reply (``on_reply``), a timeout
    (``sweep``), a bulk failure (``fail_all``), a transport failure, or
    cancellation by the caller. Whatever happens first wins; later
    outcomes for the same token are no-ops.
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        sweep_interval: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
        first_token: int = 1,
    ):
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be positive")
        self._transport = transport
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._tokens = itertools.count(first_token)
        self._pending: Dict[int, PendingRequest] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def set_transport(self, transport: Optional[Transport]) -> None:
        """Attach the write function of the current worker session (None detaches)."""
        self._transport = transport

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def pending_tokens(self) -> List[int]:
        return list(self._pending)

    def start(self) -> asyncio.Task:
        """Start the periodic timeout sweep on the running loop."""
        if self._sweep_task and not self._sweep_task.done():
            return self._sweep_task
        self._sweep_task = asyncio.get_running_loop().create_task(
            self._sweep_loop(), name="correlator-timeout-sweep"
        )
        return self._sweep_task

    async def stop(self) -> None:
        """Stop the timeout sweep. Pending requests are left untouched."""
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def send(
        self,
        action: Union[str, CommandAction],
        payload: Optional[Mapping[str, Any]] = None,
        timeout: float = 10.0,
    ) -> asyncio.Future:
        """
        Transmit a command and return a future for its reply.

        Transport failures are reported through the returned future, not
        raised.

        Raises:
            ValueError: If ``timeout`` is not positive or the payload uses a
                reserved field name
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        loop = asyncio.get_running_loop()
        token = next(self._tokens)
        command = OutboundCommand(
            action=action_name(action), payload=dict(payload or {}), token=token
        )

        now = self._clock()
        future = loop.create_future()
        self._pending[token] = PendingRequest(
            token=token,
            action=command.action,
            created_at=now,
            deadline=now + timeout,
            future=future,
        )
        future.add_done_callback(functools.partial(self._forget_cancelled, token))

        try:
            if self._transport is None:
                raise ClosedPipeError("No worker attached")
            self._transport(command.encode())
        except WriteError as e:
            logger.warning(
                LogEvent.COMMAND_FAILED.value, action=command.action, token=token, error=str(e)
            )
            self._settle(token, error=e)
            return future

        logger.debug(
            LogEvent.COMMAND_SENT.value, action=command.action, token=token, timeout=timeout
        )
        return future

    def on_reply(self, token: int, reply: Any) -> bool:
        """
        Resolve the request waiting for ``token``.

        Returns:
            False if no such request is pending (late, duplicate or
            unsolicited reply); the reply is discarded.
        """
        pending = self._pending.get(token)
        if pending is None:
            logger.debug(LogEvent.REPLY_UNMATCHED.value, token=token)
            return False

        resolved = self._settle(token, result=reply)
        if resolved:
            logger.debug(
                LogEvent.COMMAND_RESOLVED.value,
                action=pending.action,
                token=token,
                latency_ms=round((self._clock() - pending.created_at) * 1000, 2),
            )
        return resolved

    def sweep(self, now: Optional[float] = None) -> int:
        """Fail every request whose deadline has passed. Returns how many expired."""
        now = self._clock() if now is None else now
        expired = [p for p in self._pending.values() if p.deadline <= now]
        for pending in expired:
            error = CommandTimeoutError(
                f"No reply to '{pending.action}' (token {pending.token}) "
                f"after {pending.timeout:.3f}s"
            )
            if self._settle(pending.token, error=error):
                logger.warning(
                    LogEvent.COMMAND_TIMEOUT.value,
                    action=pending.action,
                    token=pending.token,
                    timeout=pending.timeout,
                )
        return len(expired)

    def fail_all(self, error_type: Type[Exception], message: str) -> int:
        """Fail every pending request with a fresh ``error_type(message)``."""
        tokens = list(self._pending)
        failed = 0
        for token in tokens:
            pending = self._pending[token]
            error = error_type(f"{message} (action '{pending.action}', token {token})")
            if self._settle(token, error=error):
                failed += 1
        if tokens:
            logger.warning(
                "Failed all pending requests", count=failed, error_type=error_type.__name__
            )
        return failed

    def _settle(
        self, token: int, result: Any = None, error: Optional[BaseException] = None
    ) -> bool:
        pending = self._pending.pop(token, None)
        if pending is None or pending.future.done():
            return False
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
        return True

    def _forget_cancelled(self, token: int, future: asyncio.Future) -> None:
        if future.cancelled() and self._pending.pop(token, None) is not None:
            logger.debug("Pending request cancelled by caller", token=token)
