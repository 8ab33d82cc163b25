"""
Media processing engine.

Entry point that runs one external executable with a set of data channels:
binds and provisions the channels, launches the child, starts one copy task
per channel and hands everything to the result assembler.
"""

import asyncio
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from media_processor.channels import (
    ChannelDescriptor,
    ChannelDirection,
    ChannelKind,
    ChannelSet,
    Transport,
)
from media_processor.config import EngineConfig
from media_processor.exceptions import ChannelSetError, InvocationCancelled
from media_processor.pipes import (
    ExistingPipeChannel,
    PipeProvisioner,
    generate_channel_name,
    provisioner_for_platform,
)
from media_processor.process_supervisor import ProcessSupervisor, StdinMode, StdoutMode
from media_processor.result import CANCELLED, Invocation, InvocationResult, ResultAssembler
from media_processor.streams import (
    ChannelReport,
    PipeEndpoint,
    StdinEndpoint,
    StdoutEndpoint,
    drain,
    feed,
    read_diagnostics,
)

logger = logging.getLogger(__name__)

Channels = Union[ChannelSet, Iterable[ChannelDescriptor], None]


class CancellationToken:
    """
    Thread-safe cancellation signal for an invocation.

    Callers keep a reference and call ``cancel()`` from any thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)

        for callback in callbacks:
            callback()

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Call ``callback`` on cancellation (immediately if already cancelled).

        Returns:
            Function that unregisters the callback
        """
        with self._lock:
            already = self._cancelled
            if not already:
                self._callbacks.append(callback)

        if already:
            callback()

        def unregister() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unregister


class MediaProcessingEngine:
    """
    Runs external media tools with concurrent channel I/O.

    Example:
        >>> engine = MediaProcessingEngine()
        >>> source = ChannelDescriptor.from_bytes(png_bytes)
        >>> result = engine.execute("convert", "- jpg:-", [source])
        >>> result.raise_for_status().captured_output
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        provisioner_factory: Callable[[EngineConfig], PipeProvisioner] = provisioner_for_platform,
    ):
        """
        Initialize engine.

        Args:
            config: Engine configuration (creates default if not provided)
            supervisor: Process supervisor (creates default if not provided)
            provisioner_factory: Creates the pipe provisioner of an invocation
        """
        if config is None:
            from media_processor.config import get_config

            config = get_config()

        self.config = config
        self.supervisor = supervisor or ProcessSupervisor(config)
        self.assembler = ResultAssembler(self.supervisor, config)
        self.provisioner_factory = provisioner_factory

        logger.debug("Media processing engine initialized")

    def execute(
        self,
        executable: str,
        arguments: Union[str, Sequence[str]] = "",
        channels: Channels = None,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> InvocationResult:
        """
        Run the executable to completion and return its result.

        Runs its own event loop; use ``execute_async`` from async code.
        """
        return asyncio.run(
            self.execute_async(
                executable,
                arguments,
                channels,
                timeout=timeout,
                cancel_token=cancel_token,
                cwd=cwd,
                env=env,
            )
        )

    async def execute_async(
        self,
        executable: str,
        arguments: Union[str, Sequence[str]] = "",
        channels: Channels = None,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> InvocationResult:
        """
        Run the executable with the given channels.

        Args:
            executable: Path or name of the executable
            arguments: Finished argument string (or list) referencing channel paths
            channels: Channel descriptors; stdout is captured when none claims it
            timeout: Deadline in seconds (config default when not provided)
            cancel_token: Token that aborts the invocation when cancelled
            cwd: Working directory override
            env: Environment overrides

        Returns:
            InvocationResult

        Raises:
            ChannelSetError, NameCollision: Invalid channel set
            PlatformUnsupported, ResourceExhausted, ChannelAccessDenied: Channel provisioning failed
            LaunchFailure: The executable could not be spawned
            InvocationCancelled: Cancelled through the token or timed out
        """
        channel_set = self._compile(channels)
        invocation = Invocation(channels=channel_set)

        loop = asyncio.get_running_loop()
        if timeout is None:
            timeout = self.config.default_timeout
        if timeout is not None:
            invocation.deadline = loop.time() + timeout

        if cancel_token is not None and cancel_token.cancelled:
            raise InvocationCancelled(CANCELLED)

        unregister = None
        if cancel_token is not None:
            unregister = cancel_token.register(
                lambda: loop.call_soon_threadsafe(invocation.cancel, CANCELLED)
            )

        try:
            self._provision(invocation)

            stdin_mode, stdout_mode, stdout_path = self._standard_streams(channel_set)
            invocation.handle = await self.supervisor.launch(
                executable,
                arguments,
                stdin_mode=stdin_mode,
                stdout_mode=stdout_mode,
                stdout_path=stdout_path,
                cwd=cwd,
                env=env,
            )

            self._start_tasks(invocation)
            return await self.assembler.await_result(invocation)

        except BaseException:
            await self.assembler.teardown(invocation)
            raise

        finally:
            if unregister is not None:
                unregister()

    def bind(self, channels: Channels = None) -> ChannelSet:
        """
        Bind channels the way ``execute`` will.

        Use the returned set's ``references()`` to build the argument string:
        named channel paths then point into this engine's FIFO directory.

        Raises:
            ChannelSetError, NameCollision: Invalid channel set
        """
        return self._compile(channels)

    def references(self, channels: Channels = None) -> List[str]:
        """Argument references of ``channels``, in order, as ``execute`` will provision them."""
        descriptors = self._descriptors(channels)
        requested = {c.identity for c in descriptors}
        channel_set = self._compile(channels if isinstance(channels, ChannelSet) else descriptors)
        return [channel_set.reference(c) for c in channel_set if c.identity in requested]

    @staticmethod
    def _descriptors(channels: Channels) -> List[ChannelDescriptor]:
        if isinstance(channels, ChannelSet):
            return list(channels)
        return list(channels or ())

    def _compile(self, channels: Channels) -> ChannelSet:
        if isinstance(channels, ChannelSet) and channels.config is not self.config:
            fifo_dir = (channels.config or EngineConfig()).fifo_dir
            if os.name != "nt" and os.path.abspath(fifo_dir) != os.path.abspath(self.config.fifo_dir):
                raise ChannelSetError(
                    f"Channel set references FIFOs in {fifo_dir} but the engine provisions "
                    f"them in {self.config.fifo_dir}; bind it with MediaProcessingEngine.bind()"
                )

        descriptors = self._descriptors(channels)

        if not any(
            c.direction == ChannelDirection.OUTPUT and c.transport in (Transport.STDOUT, None)
            for c in descriptors
        ):
            identities = {c.identity for c in descriptors}
            name = "stdout"
            if name in identities:
                name = generate_channel_name(self.config.pipe_prefix)
            descriptors.append(ChannelDescriptor.capture_stdout(name=name))

        return ChannelSet(descriptors, config=self.config).bind()

    def _provision(self, invocation: Invocation) -> None:
        for descriptor in invocation.channels:
            if descriptor.needs_provisioning:
                if invocation.provisioner is None:
                    invocation.provisioner = self.provisioner_factory(self.config)
                pipe = invocation.provisioner.provision(descriptor.identity)
            elif descriptor.kind == ChannelKind.PRE_OPENED and descriptor.payload is not None:
                pipe = ExistingPipeChannel(descriptor.identity, descriptor.identity)
            else:
                continue
            invocation.pipes[descriptor.identity] = pipe

    @staticmethod
    def _standard_streams(channel_set: ChannelSet):
        stdin_mode = StdinMode.INHERIT_NOTHING
        stdout_mode = StdoutMode.DISCARD
        stdout_path = None

        for descriptor in channel_set:
            if descriptor.transport == Transport.STDIN:
                stdin_mode = StdinMode.REDIRECT_FROM_ENGINE
            elif descriptor.transport == Transport.STDOUT:
                if descriptor.kind == ChannelKind.PATH:
                    stdout_mode = StdoutMode.REDIRECT_TO_FILE
                    stdout_path = descriptor.identity
                else:
                    stdout_mode = StdoutMode.CAPTURE_TO_MEMORY

        return stdin_mode, stdout_mode, stdout_path

    def _start_tasks(self, invocation: Invocation) -> None:
        handle = invocation.handle
        chunk_size = self.config.chunk_size

        # One worker per named channel so a channel the child has not opened
        # yet never holds up another channel's blocking I/O
        if invocation.pipes:
            invocation.executor = ThreadPoolExecutor(
                max_workers=len(invocation.pipes),
                thread_name_prefix="media-channel",
            )

        for descriptor in invocation.channels:
            if not descriptor.is_streamed:
                continue

            report = ChannelReport(
                name=descriptor.identity,
                direction=descriptor.direction,
                transport=descriptor.transport,
            )
            invocation.reports.append(report)

            if descriptor.direction == ChannelDirection.INPUT:
                if descriptor.transport == Transport.STDIN:
                    endpoint = StdinEndpoint(handle.stdin)
                else:
                    endpoint = PipeEndpoint(
                        invocation.pipes[descriptor.identity], "wb", invocation.executor
                    )
                coro = feed(
                    descriptor.payload,
                    endpoint,
                    report,
                    chunk_size=chunk_size,
                    stop_event=invocation.stop_event,
                    on_failure=invocation.record_failure,
                )
            else:
                if descriptor.transport == Transport.STDOUT:
                    endpoint = StdoutEndpoint(handle.stdout)
                else:
                    endpoint = PipeEndpoint(
                        invocation.pipes[descriptor.identity], "rb", invocation.executor
                    )
                coro = drain(
                    endpoint,
                    descriptor.payload,
                    report,
                    chunk_size=chunk_size,
                    on_failure=invocation.record_failure,
                )

            invocation.tasks.append(
                asyncio.create_task(coro, name=f"channel-{descriptor.identity}")
            )

        invocation.diagnostics_task = asyncio.create_task(
            read_diagnostics(handle.stderr, self.config.diagnostics_limit),
            name=f"diagnostics-{handle.pid}",
        )

        logger.debug(f"Started {len(invocation.tasks)} channel task(s) for PID {handle.pid}")


def execute(
    executable: str,
    arguments: Union[str, Sequence[str]] = "",
    channels: Channels = None,
    timeout: Optional[float] = None,
    cancel_token: Optional[CancellationToken] = None,
    config: Optional[EngineConfig] = None,
) -> InvocationResult:
    """
    Run ``executable`` with a default-configured engine.

    Returns:
        InvocationResult
    """
    return MediaProcessingEngine(config).execute(
        executable,
        arguments,
        channels,
        timeout=timeout,
        cancel_token=cancel_token,
    )
