"""
Channel descriptors and channel sets.

A ChannelDescriptor identifies one input source or output sink of an
invocation and the transport that carries it to or from the child process.
A ChannelSet is the ordered collection compiled for a single invocation; it
binds streamed descriptors to transports and validates that stdin and stdout
are each used at most once and that channel identities are unique.
"""

import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable, Iterator, List, Optional, Union

from media_processor.config import EngineConfig
from media_processor.exceptions import ChannelSetError, NameCollision
from media_processor.pipes import generate_channel_name, pipe_path

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]

STANDARD_STREAM_REFERENCE = "-"


class ChannelKind(str, Enum):
    """Where a channel's data comes from or goes to."""

    PATH = "path"
    BYTE_SOURCE = "byte_source"
    PRE_OPENED = "pre_opened"


class ChannelDirection(str, Enum):
    """Direction of data relative to the child process."""

    INPUT = "input"
    OUTPUT = "output"


class Transport(str, Enum):
    """How a channel's bytes cross the process boundary."""

    FILE = "file"  # the child opens the path itself
    STDIN = "stdin"
    STDOUT = "stdout"
    NAMED_PIPE = "named_pipe"


@dataclass(frozen=True)
class ChannelDescriptor:
    """
    One input source or output sink of an invocation.

    Attributes:
        kind: Path, in-memory/streamed bytes, or caller-created pipe
        direction: Input or output relative to the child
        identity: Filesystem path or unique channel name
        payload: Input bytes/stream/async iterable, or output sink
            (None on an output means capture to memory)
        transport: Bound transport (None until the channel set binds it)
    """

    kind: ChannelKind
    direction: ChannelDirection
    identity: str
    payload: Any = None
    transport: Optional[Transport] = None

    @classmethod
    def from_path(cls, path: PathLike) -> "ChannelDescriptor":
        """Input file that the child opens itself."""
        return cls(
            kind=ChannelKind.PATH,
            direction=ChannelDirection.INPUT,
            identity=os.fspath(path),
            transport=Transport.FILE,
        )

    @classmethod
    def from_bytes(
        cls,
        data: Union[bytes, bytearray, memoryview],
        name: Optional[str] = None,
        transport: Optional[Transport] = None,
    ) -> "ChannelDescriptor":
        """In-memory input fed to the child over stdin or a named channel."""
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"Expected a bytes-like object, got {type(data).__name__}")
        return cls(
            kind=ChannelKind.BYTE_SOURCE,
            direction=ChannelDirection.INPUT,
            identity=name or generate_channel_name(),
            payload=bytes(data),
            transport=transport,
        )

    @classmethod
    def from_stream(
        cls,
        stream: Any,
        name: Optional[str] = None,
        transport: Optional[Transport] = None,
    ) -> "ChannelDescriptor":
        """Readable binary stream or async iterable of bytes fed to the child."""
        if not (hasattr(stream, "read") or hasattr(stream, "__aiter__")):
            raise TypeError("Stream source must have read() or be an async iterable")
        return cls(
            kind=ChannelKind.BYTE_SOURCE,
            direction=ChannelDirection.INPUT,
            identity=name or generate_channel_name(),
            payload=stream,
            transport=transport,
        )

    @classmethod
    def from_pipe(cls, path: PathLike, stream: Any = None) -> "ChannelDescriptor":
        """
        Caller-created named pipe.

        With a stream the engine feeds it into the pipe; without one the pipe
        is passed through to the child untouched.
        """
        return cls(
            kind=ChannelKind.PRE_OPENED,
            direction=ChannelDirection.INPUT,
            identity=os.fspath(path),
            payload=stream,
            transport=Transport.NAMED_PIPE if stream is not None else Transport.FILE,
        )

    @classmethod
    def output_file(cls, path: PathLike, redirect_stdout: bool = False) -> "ChannelDescriptor":
        """Output file written by the child, or stdout redirected into it."""
        return cls(
            kind=ChannelKind.PATH,
            direction=ChannelDirection.OUTPUT,
            identity=os.fspath(path),
            transport=Transport.STDOUT if redirect_stdout else Transport.FILE,
        )

    @classmethod
    def capture_stdout(cls, sink: Any = None, name: str = "stdout") -> "ChannelDescriptor":
        """Child stdout captured to memory, or copied into ``sink``."""
        return cls(
            kind=ChannelKind.BYTE_SOURCE,
            direction=ChannelDirection.OUTPUT,
            identity=name,
            payload=sink,
            transport=Transport.STDOUT,
        )

    @classmethod
    def output_pipe(cls, name: Optional[str] = None, sink: Any = None) -> "ChannelDescriptor":
        """Named channel the child writes to and the engine drains."""
        return cls(
            kind=ChannelKind.BYTE_SOURCE,
            direction=ChannelDirection.OUTPUT,
            identity=name or generate_channel_name(),
            payload=sink,
            transport=Transport.NAMED_PIPE,
        )

    @property
    def is_streamed(self) -> bool:
        """True if the engine moves this channel's bytes itself."""
        if self.kind == ChannelKind.BYTE_SOURCE:
            return True
        if self.kind == ChannelKind.PRE_OPENED:
            return self.payload is not None
        return False

    @property
    def needs_provisioning(self) -> bool:
        """True if the engine must create a named channel for this descriptor."""
        return self.kind == ChannelKind.BYTE_SOURCE and self.transport == Transport.NAMED_PIPE

    def bind(self, transport: Transport) -> "ChannelDescriptor":
        return replace(self, transport=transport)


class ChannelSet:
    """
    Ordered channel descriptors of one invocation.

    Binding rule for streamed inputs without an explicit transport: a single
    streamed input goes over stdin unless another descriptor has claimed it;
    with more than one streamed input, all of them use named channels.
    """

    def __init__(
        self,
        channels: Optional[Iterable[ChannelDescriptor]] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config
        self._channels: List[ChannelDescriptor] = []
        for channel in channels or ():
            self.add(channel)

    def add(self, channel: ChannelDescriptor) -> ChannelDescriptor:
        """
        Append a descriptor.

        Raises:
            NameCollision: If a descriptor with the same identity exists
        """
        if any(existing.identity == channel.identity for existing in self._channels):
            raise NameCollision(channel.identity)
        self._channels.append(channel)
        return channel

    def __iter__(self) -> Iterator[ChannelDescriptor]:
        return iter(self._channels)

    def __len__(self) -> int:
        return len(self._channels)

    def __getitem__(self, index: int) -> ChannelDescriptor:
        return self._channels[index]

    @property
    def inputs(self) -> List[ChannelDescriptor]:
        return [c for c in self._channels if c.direction == ChannelDirection.INPUT]

    @property
    def outputs(self) -> List[ChannelDescriptor]:
        return [c for c in self._channels if c.direction == ChannelDirection.OUTPUT]

    def bind(self) -> "ChannelSet":
        """
        Assign a transport to every descriptor and validate the result.

        Returns:
            A new ChannelSet whose descriptors all carry a transport

        Raises:
            ChannelSetError: If stdin or stdout is claimed more than once, or a
                descriptor asks for a transport that cannot carry it
        """
        explicit_stdin = [c for c in self._channels if c.transport == Transport.STDIN]
        unbound = [
            c
            for c in self._channels
            if c.transport is None and c.direction == ChannelDirection.INPUT
        ]

        if len(unbound) == 1 and not explicit_stdin:
            default = Transport.STDIN
        else:
            default = Transport.NAMED_PIPE

        bound = []
        for channel in self._channels:
            if channel.transport is None:
                if channel.direction == ChannelDirection.OUTPUT:
                    channel = channel.bind(Transport.STDOUT)
                else:
                    channel = channel.bind(default)
            bound.append(channel)

        result = ChannelSet(config=self.config)
        result._channels = bound
        result.validate()

        logger.debug(
            "Bound channel set: "
            + ", ".join(f"{c.identity}={c.transport.value}" for c in bound)
        )
        return result

    def validate(self) -> None:
        """Check the invariants of a bound channel set."""
        stdin = [c for c in self._channels if c.transport == Transport.STDIN]
        stdout = [c for c in self._channels if c.transport == Transport.STDOUT]

        if len(stdin) > 1:
            raise ChannelSetError(
                f"Only one channel may use standard input, got {len(stdin)}: "
                + ", ".join(c.identity for c in stdin)
            )
        if len(stdout) > 1:
            raise ChannelSetError(
                f"Only one channel may use standard output, got {len(stdout)}: "
                + ", ".join(c.identity for c in stdout)
            )

        for channel in self._channels:
            if channel.transport is None:
                raise ChannelSetError(f"Channel {channel.identity} has no transport")
            if channel.direction == ChannelDirection.INPUT and channel.transport == Transport.STDOUT:
                raise ChannelSetError(f"Input channel {channel.identity} cannot use stdout")
            if channel.direction == ChannelDirection.OUTPUT and channel.transport == Transport.STDIN:
                raise ChannelSetError(f"Output channel {channel.identity} cannot use stdin")
            if channel.kind == ChannelKind.BYTE_SOURCE and channel.transport == Transport.FILE:
                raise ChannelSetError(
                    f"Streamed channel {channel.identity} needs stdin, stdout or a named channel"
                )
            if channel.kind == ChannelKind.PATH and channel.transport == Transport.NAMED_PIPE:
                raise ChannelSetError(f"Path channel {channel.identity} cannot use a named channel")
            if (
                channel.kind == ChannelKind.PRE_OPENED
                and channel.payload is not None
                and channel.transport != Transport.NAMED_PIPE
            ):
                raise ChannelSetError(
                    f"Pre-opened channel {channel.identity} must be fed through its own pipe"
                )

    def reference(self, channel: ChannelDescriptor) -> str:
        """
        Return the string the argument list uses to refer to ``channel``.

        Paths are returned as-is, standard streams as "-", and provisioned
        channels as their platform pipe path.
        """
        if channel.transport in (Transport.STDIN, Transport.STDOUT):
            return STANDARD_STREAM_REFERENCE
        if channel.needs_provisioning:
            return pipe_path(channel.identity, self.config)
        return channel.identity

    def references(self) -> List[str]:
        return [self.reference(channel) for channel in self._channels]
