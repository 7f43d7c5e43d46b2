from __future__ import annotations
import asyncio
import logging
from typing import Optional

from ..core.config import settings
from ..core.timeutil import now_utc
from ..domain.errors import CommandFailedError, TransportError
from ..domain.interfaces import CommandTransport
from ..domain.models import Command, CommandAck, CommandStatus
from ..domain.outlets import OutletStateStore

logger = logging.getLogger(__name__)


class CommandDispatcher:
    """
    Sends outlet commands with timeout, retry and rollback.

    One transport call in flight per outlet. A newer command for the same
    outlet cancels the older call before it is issued.
    """

    def __init__(
        self,
        transport: CommandTransport,
        store: OutletStateStore,
        timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_s: Optional[float] = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._timeout = settings.command_timeout_seconds if timeout_s is None else timeout_s
        self._max_retries = settings.command_max_retries if max_retries is None else max_retries
        self._backoff = settings.command_backoff_seconds if backoff_s is None else backoff_s
        self._inflight: dict[str, asyncio.Task] = {}

    def inflight(self, outlet_id: str) -> bool:
        task = self._inflight.get(outlet_id)
        return task is not None and not task.done()

    async def submit(self, outlet_id: str, desired_state: bool) -> Command:
        """
        Apply `desired_state` optimistically and drive the command to resolution.

        Returns the resolved command (ACKED or ABANDONED). Raises
        CommandFailedError once retries are exhausted.
        """
        command = self._store.begin_command(outlet_id, desired_state, now_utc())
        logger.info("outlet %s: command %s -> %s", outlet_id, command.id, "ON" if desired_state else "OFF")

        prev = self._inflight.get(outlet_id)
        if prev is not None and not prev.done():
            prev.cancel()
            await asyncio.wait({prev})

        try:
            return await self._run(command)
        except asyncio.CancelledError:
            self._store.resolve_failed(command, CommandStatus.ABANDONED, "cancelled")
            raise

    async def _run(self, command: Command) -> Command:
        while True:
            if not self._store.is_current(command):
                return self._abandoned(command)

            status, ack, error = await self._attempt(command)

            if status is CommandStatus.ACKED and ack is not None:
                if self._store.apply_ack(command, ack):
                    logger.info(
                        "outlet %s: ack %s state=%s (attempt %d)",
                        command.outlet_id, command.id, "ON" if ack.achieved_state else "OFF",
                        command.retry_count + 1,
                    )
                    return command
                return self._abandoned(command)

            if status is CommandStatus.ABANDONED or not self._store.is_current(command):
                return self._abandoned(command)

            self._store.rollback(command)
            if command.retry_count >= self._max_retries:
                self._store.resolve_failed(command, status, error)
                logger.error(
                    "outlet %s: command %s %s after %d attempt(s): %s",
                    command.outlet_id, command.id, status.value, command.retry_count + 1, error,
                )
                raise CommandFailedError(command.outlet_id, command.id, status.value, error)

            delay = self._backoff * (2 ** command.retry_count)
            command.retry_count += 1
            logger.warning(
                "outlet %s: command %s %s (%s), retry %d/%d in %.1fs",
                command.outlet_id, command.id, status.value, error,
                command.retry_count, self._max_retries, delay,
            )
            await asyncio.sleep(delay)
            self._store.retry_displayed(command)

    async def _attempt(self, command: Command) -> tuple[CommandStatus, Optional[CommandAck], Optional[str]]:
        task = asyncio.create_task(
            self._transport.submit(command.outlet_id, command.desired_state),
            name=f"command_{command.outlet_id}",
        )
        self._inflight[command.outlet_id] = task
        try:
            done, _ = await asyncio.wait({task}, timeout=self._timeout)
            if not done:
                # Let the lost call unwind before a retry goes out
                task.cancel()
                await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._inflight.get(command.outlet_id) is task:
                del self._inflight[command.outlet_id]

        if not done:
            return CommandStatus.TIMED_OUT, None, f"no ack within {self._timeout:.1f}s"
        if task.cancelled():
            return CommandStatus.ABANDONED, None, None
        exc = task.exception()
        if isinstance(exc, TransportError):
            return CommandStatus.FAILED, None, str(exc)
        if exc is not None:
            logger.warning("outlet %s: transport error", command.outlet_id, exc_info=exc)
            return CommandStatus.FAILED, None, f"{type(exc).__name__}: {exc}"

        ack = task.result()
        if ack.outlet_id != command.outlet_id:
            return CommandStatus.FAILED, None, f"ack for wrong outlet {ack.outlet_id}"
        return CommandStatus.ACKED, ack, None

    def _abandoned(self, command: Command) -> Command:
        if command.status is CommandStatus.PENDING:
            command.status = CommandStatus.ABANDONED
        logger.info("outlet %s: command %s abandoned", command.outlet_id, command.id)
        return command
