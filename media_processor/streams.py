"""
Concurrent stream feeders and drainers.

Each channel of an invocation gets exactly one copy task: a feeder moves
bytes from an engine-side source into the child (stdin or a named channel),
a drainer moves bytes the child produces (stdout or a named channel) into a
sink. Tasks block only on their own channel, so a child that ignores one
channel never stalls the others.
"""

import asyncio
import inspect
import logging
import os
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, BinaryIO, Callable, Optional

from media_processor.channels import ChannelDirection, Transport
from media_processor.exceptions import ChannelIOFailure
from media_processor.pipes import PipeChannel, is_broken_pipe

logger = logging.getLogger(__name__)

FailureCallback = Callable[[ChannelIOFailure], None]


@dataclass
class ChannelReport:
    """Outcome of one feeder or drainer task."""

    name: str
    direction: ChannelDirection
    transport: Transport
    bytes_transferred: int = 0
    completed: bool = False
    truncated: bool = False  # the child closed its end before the source ran out
    error: Optional[ChannelIOFailure] = None
    captured: Optional[bytes] = field(default=None, repr=False)


class ChannelStopped(Exception):
    """Raised inside a copy loop when the invocation asks feeders to stop."""

    pass


async def _interruptible(awaitable, stop_event: Optional[asyncio.Event]):
    """Await ``awaitable`` unless ``stop_event`` fires first."""
    if stop_event is None:
        return await awaitable

    work = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(stop_event.wait())
    try:
        done, _ = await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()
        if not work.done():
            # A worker thread may keep running; its result is discarded
            work.cancel()

    if work in done:
        return work.result()
    raise ChannelStopped()


def _write_all(stream: BinaryIO, data) -> None:
    view = memoryview(data)
    while view:
        written = stream.write(view)
        if written is None:
            written = len(view)
        view = view[written:]


class ChannelEndpoint:
    """Engine side of a channel: the child's std stream or a named channel."""

    name = "channel"

    async def open(self) -> bool:
        """Connect to the child. Returns False if the child will never connect."""
        return True

    async def write(self, data) -> None:
        raise NotImplementedError

    async def read(self, size: int) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class StdinEndpoint(ChannelEndpoint):
    """Writable end of the child's standard input."""

    name = "stdin"

    def __init__(self, writer: asyncio.StreamWriter):
        self.writer = writer

    async def write(self, data) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass


class StdoutEndpoint(ChannelEndpoint):
    """Readable end of the child's standard output."""

    name = "stdout"

    def __init__(self, reader: asyncio.StreamReader):
        self.reader = reader

    async def read(self, size: int) -> bytes:
        return await self.reader.read(size)


class PipeEndpoint(ChannelEndpoint):
    """
    Engine end of a named channel.

    Blocking open/read/write calls run in worker threads; a blocked open is
    released through the channel rather than by cancelling the task.
    """

    def __init__(
        self,
        channel: PipeChannel,
        mode: str,
        executor: Optional[Executor] = None,
    ):
        self.channel = channel
        self.mode = mode
        self.name = channel.name
        self.executor = executor
        self._file: Optional[BinaryIO] = None

    def _run(self, func, *args) -> "asyncio.Future":
        return asyncio.get_running_loop().run_in_executor(self.executor, func, *args)

    async def open(self) -> bool:
        if self.channel.released:
            return False

        future = self._run(self.channel.open, self.mode)
        try:
            self._file = await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(_close_opened)
            raise
        return True

    async def write(self, data) -> None:
        await self._run(_write_all, self._file, data)

    async def read(self, size: int) -> bytes:
        return await self._run(self._file.read, size)

    async def close(self) -> None:
        if self._file is None:
            return
        stream, self._file = self._file, None
        try:
            stream.close()
        except OSError as e:
            if not is_broken_pipe(e):
                raise


def _close_opened(future: "asyncio.Future") -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


async def _next_chunk(iterator: AsyncIterator[bytes]) -> Optional[bytes]:
    # None marks the end of the iterator
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _iter_source(
    source: Any,
    chunk_size: int,
    stop_event: Optional[asyncio.Event],
) -> AsyncIterator[bytes]:
    if isinstance(source, (bytes, bytearray, memoryview)):
        view = memoryview(source)
        for offset in range(0, len(view), chunk_size):
            yield view[offset:offset + chunk_size]
        return

    if hasattr(source, "__aiter__"):
        iterator = source.__aiter__()
        while True:
            chunk = await _interruptible(_next_chunk(iterator), stop_event)
            if chunk is None:
                return
            if chunk:
                yield chunk

    read = source.read
    while True:
        if inspect.iscoroutinefunction(read):
            chunk = await _interruptible(read(chunk_size), stop_event)
        else:
            chunk = await _interruptible(asyncio.to_thread(read, chunk_size), stop_event)
        if not chunk:
            return
        yield chunk


async def feed(
    source: Any,
    endpoint: ChannelEndpoint,
    report: ChannelReport,
    chunk_size: int = 81920,
    stop_event: Optional[asyncio.Event] = None,
    on_failure: Optional[FailureCallback] = None,
) -> ChannelReport:
    """
    Copy ``source`` into ``endpoint`` and close it so the child sees EOF.

    Args:
        source: bytes-like, readable binary stream or async iterable of bytes
        endpoint: Child stdin or a named channel opened for writing
        report: Report updated in place and returned
        chunk_size: Copy buffer size
        stop_event: Set when the invocation no longer needs this input
        on_failure: Called once if the source or the endpoint fails

    Returns:
        The channel report
    """

    def fail(exc: BaseException) -> None:
        report.error = ChannelIOFailure(report.name, exc)
        logger.error(f"Feeder for channel {report.name} failed: {exc}", exc_info=exc)
        if on_failure is not None:
            on_failure(report.error)

    try:
        if not await endpoint.open():
            report.truncated = True
            logger.debug(f"Channel {report.name} was never opened by the child")
            return report
    except OSError as e:
        fail(e)
        return report

    chunks = _iter_source(source, chunk_size, stop_event)
    try:
        while True:
            try:
                chunk = await chunks.__anext__()
            except StopAsyncIteration:
                report.completed = True
                break
            except ChannelStopped:
                raise
            except Exception as e:
                fail(e)
                break

            if stop_event is not None and stop_event.is_set():
                raise ChannelStopped()

            try:
                await endpoint.write(chunk)
            except Exception as e:
                if is_broken_pipe(e):
                    report.truncated = True
                    logger.debug(f"Child closed channel {report.name} before end of input")
                    break
                fail(e)
                break

            report.bytes_transferred += len(chunk)

    except ChannelStopped:
        report.truncated = True
        logger.debug(f"Feeder for channel {report.name} stopped")

    finally:
        await chunks.aclose()
        try:
            await endpoint.close()
        except OSError as e:
            if report.error is None:
                fail(e)

    logger.debug(f"Fed {report.bytes_transferred} bytes into channel {report.name}")
    return report


class _Sink:
    """Destination of a drainer: memory, a writable stream or a file path."""

    def __init__(self, target: Any):
        self.target = target
        self.buffer: Optional[bytearray] = None
        self._file: Optional[BinaryIO] = None
        self._write = None

    async def open(self) -> None:
        target = self.target
        if target is None:
            self.buffer = bytearray()
        elif isinstance(target, (str, os.PathLike)):
            self._file = await asyncio.to_thread(open, target, "wb")
            self._write = self._file.write
        else:
            self._write = target.write

    async def write(self, data: bytes) -> None:
        if self.buffer is not None:
            self.buffer.extend(data)
        elif inspect.iscoroutinefunction(self._write):
            await self._write(data)
        else:
            await asyncio.to_thread(self._write, data)

    async def close(self) -> None:
        if self._file is not None:
            await asyncio.to_thread(self._file.close)
            self._file = None
        elif self.target is not None and hasattr(self.target, "flush"):
            flush = self.target.flush
            if inspect.iscoroutinefunction(flush):
                await flush()
            else:
                await asyncio.to_thread(flush)


async def drain(
    endpoint: ChannelEndpoint,
    sink: Any,
    report: ChannelReport,
    chunk_size: int = 81920,
    on_failure: Optional[FailureCallback] = None,
) -> ChannelReport:
    """
    Copy everything the child writes to ``endpoint`` into ``sink``.

    Args:
        endpoint: Child stdout or a named channel opened for reading
        sink: None (capture into report.captured), writable stream or path
        report: Report updated in place and returned
        chunk_size: Copy buffer size
        on_failure: Called once if the endpoint or the sink fails

    Returns:
        The channel report
    """

    def fail(exc: BaseException) -> None:
        report.error = ChannelIOFailure(report.name, exc)
        logger.error(f"Drainer for channel {report.name} failed: {exc}", exc_info=exc)
        if on_failure is not None:
            on_failure(report.error)

    target = _Sink(sink)
    try:
        await target.open()
    except Exception as e:
        fail(e)
        return report

    try:
        opened = await endpoint.open()
        if not opened:
            report.completed = True
            logger.debug(f"Channel {report.name} was never opened by the child")

        while opened:
            try:
                chunk = await endpoint.read(chunk_size)
            except Exception as e:
                if is_broken_pipe(e):
                    chunk = b""
                else:
                    fail(e)
                    break

            if not chunk:
                report.completed = True
                break

            try:
                await target.write(chunk)
            except Exception as e:
                fail(e)
                break

            report.bytes_transferred += len(chunk)

    except OSError as e:
        fail(e)

    finally:
        try:
            await endpoint.close()
        except OSError as e:
            logger.debug(f"Error closing channel {report.name}: {e}")
        try:
            await target.close()
        except Exception as e:
            if report.error is None:
                fail(e)

    if target.buffer is not None:
        report.captured = bytes(target.buffer)

    logger.debug(f"Drained {report.bytes_transferred} bytes from channel {report.name}")
    return report


async def read_diagnostics(reader: asyncio.StreamReader, limit: int, chunk_size: int = 8192) -> bytes:
    """
    Read the child's stderr to EOF, keeping at most the last ``limit`` bytes.

    Draining stderr keeps a chatty child from blocking on a full pipe.
    """
    buffer = bytearray()
    while True:
        try:
            chunk = await reader.read(chunk_size)
        except (BrokenPipeError, ConnectionResetError):
            break
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > limit:
            del buffer[: len(buffer) - limit]
    return bytes(buffer)
