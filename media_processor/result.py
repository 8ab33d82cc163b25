"""
Result assembler.

Joins the child process and every feeder/drainer task of an invocation,
tears the invocation down on cancellation or failure, and packages exit
code, captured output and diagnostics into an InvocationResult.
"""

import asyncio
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from media_processor.channels import ChannelDirection, ChannelKind, ChannelSet, Transport
from media_processor.config import EngineConfig
from media_processor.exceptions import ChannelIOFailure, InvocationCancelled, NonZeroExit
from media_processor.pipes import PipeChannel, PipeProvisioner
from media_processor.process_supervisor import ProcessHandle, ProcessSupervisor
from media_processor.streams import ChannelReport

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
TIMEOUT = "timeout"
FAILURE = "failure"


@dataclass
class InvocationResult:
    """Outcome of one invocation."""

    exit_code: int
    captured_output: Optional[bytes] = None
    diagnostics: str = ""
    failure: Optional[ChannelIOFailure] = None
    channel_reports: List[ChannelReport] = field(default_factory=list)
    channel_outputs: Dict[str, bytes] = field(default_factory=dict)
    missing_outputs: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and self.failure is None

    def raise_for_status(self) -> "InvocationResult":
        """
        Raise if the invocation did not succeed.

        Raises:
            ChannelIOFailure: If a feeder or drainer failed
            NonZeroExit: If the child exited with a non-zero code
        """
        if self.failure is not None:
            raise self.failure
        if self.exit_code != 0:
            raise NonZeroExit(self.exit_code, self.diagnostics)
        return self


@dataclass
class Invocation:
    """Live state of one invocation, exclusively owned by the engine."""

    channels: ChannelSet
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    handle: Optional[ProcessHandle] = None
    provisioner: Optional[PipeProvisioner] = None
    pipes: Dict[str, PipeChannel] = field(default_factory=dict)
    reports: List[ChannelReport] = field(default_factory=list)
    tasks: List[asyncio.Task] = field(default_factory=list)
    diagnostics_task: Optional[asyncio.Task] = None
    executor: Optional[ThreadPoolExecutor] = None
    failures: List[ChannelIOFailure] = field(default_factory=list)
    cancel_reason: Optional[str] = None
    deadline: Optional[float] = None
    started: float = field(default_factory=time.monotonic)

    def cancel(self, reason: str = CANCELLED) -> None:
        """Request cancellation; the first reason wins."""
        if self.cancel_reason is None:
            self.cancel_reason = reason
            logger.info(f"Invocation cancellation requested ({reason})")
        self.cancel_event.set()

    def record_failure(self, failure: ChannelIOFailure) -> None:
        self.failures.append(failure)
        self.cancel(FAILURE)

    @property
    def aborted(self) -> bool:
        """True if the caller cancelled or the deadline passed."""
        return self.cancel_reason in (CANCELLED, TIMEOUT)


class ResultAssembler:
    """
    Waits for an invocation to finish and builds its result.

    Whatever path is taken, the child is not running and every channel has
    been released once ``await_result`` returns or raises.
    """

    RELEASE_INTERVAL = 0.05

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        config: Optional[EngineConfig] = None,
    ):
        if config is None:
            from media_processor.config import get_config

            config = get_config()

        self.supervisor = supervisor
        self.config = config

    async def await_result(self, invocation: Invocation) -> InvocationResult:
        """
        Join the process and all channel tasks.

        Returns:
            InvocationResult (also when a channel failed; see ``failure``)

        Raises:
            InvocationCancelled: If the caller cancelled or the deadline passed
        """
        try:
            if invocation.cancel_reason is None:
                await self._wait_for_exit(invocation)

            if invocation.cancel_reason is None or invocation.cancel_reason == FAILURE:
                await self._join_tasks(invocation)

            if invocation.aborted:
                await self.teardown(invocation)
                exit_code = invocation.handle.exit_code if invocation.handle else None
                raise InvocationCancelled(invocation.cancel_reason, exit_code)

            return self._assemble(invocation)

        finally:
            await self.teardown(invocation)

    async def _wait_for_exit(self, invocation: Invocation) -> None:
        loop = asyncio.get_running_loop()
        process_wait = asyncio.ensure_future(self.supervisor.join(invocation.handle))
        cancel_wait = asyncio.ensure_future(invocation.cancel_event.wait())

        timeout = None
        if invocation.deadline is not None:
            timeout = max(0.0, invocation.deadline - loop.time())

        try:
            done, _ = await asyncio.wait(
                {process_wait, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()
            if not process_wait.done():
                process_wait.cancel()

        if not done:
            logger.warning(f"Process {invocation.handle.pid} exceeded its deadline")
            invocation.cancel(TIMEOUT)

    async def _join_tasks(self, invocation: Invocation) -> None:
        """Let every channel task finish once the child has exited or failed."""
        loop = asyncio.get_running_loop()

        if invocation.cancel_reason == FAILURE:
            await self._stop_process(invocation)

        # Inputs are useless once the child is gone
        invocation.stop_event.set()

        pending = set(invocation.tasks)
        if invocation.diagnostics_task is not None:
            pending.add(invocation.diagnostics_task)

        while pending:
            # Channels the child never opened would block their task forever
            for pipe in invocation.pipes.values():
                pipe.release()

            _, pending = await asyncio.wait(pending, timeout=self.RELEASE_INTERVAL)

            if invocation.aborted:
                return
            if invocation.deadline is not None and loop.time() >= invocation.deadline:
                invocation.cancel(TIMEOUT)
                return

    async def _stop_process(self, invocation: Invocation) -> None:
        invocation.stop_event.set()
        for pipe in invocation.pipes.values():
            pipe.release()
        if invocation.handle is not None:
            await self.supervisor.kill(invocation.handle)

    async def teardown(self, invocation: Invocation) -> None:
        """
        Stop the child, finish or cancel every task and remove every channel.

        Safe to call at any point after the invocation was created, and more
        than once.
        """
        await self._stop_process(invocation)

        pending = {task for task in invocation.tasks if not task.done()}
        if invocation.diagnostics_task is not None and not invocation.diagnostics_task.done():
            pending.add(invocation.diagnostics_task)

        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + self.config.kill_timeout
        while pending and loop.time() < give_up_at:
            for pipe in invocation.pipes.values():
                pipe.release()
            _, pending = await asyncio.wait(pending, timeout=self.RELEASE_INTERVAL)

        if pending:
            logger.warning(f"Cancelling {len(pending)} channel task(s) that did not finish")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for pipe in invocation.pipes.values():
            if invocation.provisioner is not None and pipe.owned:
                invocation.provisioner.release(pipe)
            else:
                pipe.remove()
        invocation.pipes.clear()

        if invocation.provisioner is not None:
            invocation.provisioner.close()

        if invocation.executor is not None:
            invocation.executor.shutdown(wait=False)
            invocation.executor = None

    def _assemble(self, invocation: Invocation) -> InvocationResult:
        handle = invocation.handle
        exit_code = handle.exit_code if handle.exit_code is not None else -1

        diagnostics = b""
        task = invocation.diagnostics_task
        if task is not None and task.done() and not task.cancelled() and task.exception() is None:
            diagnostics = task.result()
        diagnostics_text = diagnostics.decode(self.config.diagnostics_encoding, errors="replace")

        failure = invocation.failures[0] if invocation.failures else None

        captured_output = None
        channel_outputs: Dict[str, bytes] = {}
        if failure is None:
            for report in invocation.reports:
                if report.direction != ChannelDirection.OUTPUT or report.captured is None:
                    continue
                if report.transport == Transport.STDOUT:
                    captured_output = report.captured
                else:
                    channel_outputs[report.name] = report.captured

        missing_outputs = []
        if exit_code == 0:
            for channel in invocation.channels.outputs:
                if channel.kind == ChannelKind.PATH and not os.path.exists(channel.identity):
                    missing_outputs.append(channel.identity)
                    logger.warning(f"Output file was not produced: {channel.identity}")
        elif failure is None:
            logger.warning(
                f"{handle.executable} exited with code {exit_code}: {diagnostics_text[-500:]}"
            )

        result = InvocationResult(
            exit_code=exit_code,
            captured_output=captured_output,
            diagnostics=diagnostics_text,
            failure=failure,
            channel_reports=list(invocation.reports),
            channel_outputs=channel_outputs,
            missing_outputs=missing_outputs,
            duration_seconds=time.monotonic() - invocation.started,
        )

        logger.info(
            f"Invocation of {handle.executable} finished: exit code {exit_code}, "
            f"success={result.success}, {len(invocation.reports)} channel(s)"
        )
        return result
