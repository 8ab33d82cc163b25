"""
Pipe provisioner.

Creates the OS-level named channels through which streamed inputs and
outputs reach the child process. On Windows a channel is a named pipe under
the reserved \\\\.\\pipe\\ namespace; on POSIX systems it is a FIFO special
file that is created before launch and removed after the invocation.
"""

import errno
import logging
import os
import stat
import uuid
from typing import BinaryIO, Dict, Optional

from media_processor.config import EngineConfig
from media_processor.exceptions import (
    ChannelAccessDenied,
    NameCollision,
    PlatformUnsupported,
    ResourceExhausted,
)

logger = logging.getLogger(__name__)

WINDOWS_PIPE_NAMESPACE = "\\\\.\\pipe\\"

# errno values that mean the OS refused to create another channel
_EXHAUSTION_ERRNOS = {
    errno.EMFILE,
    errno.ENFILE,
    errno.ENOSPC,
    errno.ENOMEM,
    errno.EDQUOT,
}

# errno values that mean the FIFO directory refuses new entries
_ACCESS_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}

# Windows error codes
_ERROR_ACCESS_DENIED = 5
_ERROR_BROKEN_PIPE = 109
_ERROR_NO_DATA = 232
_ERROR_PIPE_CONNECTED = 535


def generate_channel_name(prefix: str = "mfp") -> str:
    """Return a globally unique channel name."""
    return f"{prefix}-{uuid.uuid4().hex}"


def pipe_path(name: str, config: Optional[EngineConfig] = None) -> str:
    """
    Format the path a child process uses to open the channel called ``name``.

    Args:
        name: Channel name
        config: Engine configuration (FIFO directory)

    Returns:
        Platform-specific channel path

    Raises:
        PlatformUnsupported: If the platform has no named-channel primitive
    """
    if os.name == "nt":
        return f"{WINDOWS_PIPE_NAMESPACE}{name}"

    if hasattr(os, "mkfifo"):
        fifo_dir = config.fifo_dir if config is not None else EngineConfig().fifo_dir
        return os.path.join(fifo_dir, name)

    raise PlatformUnsupported(f"Named channels are not supported on platform {os.name!r}")


def is_broken_pipe(exc: BaseException) -> bool:
    """Return True if ``exc`` means the other end of a channel went away."""
    if isinstance(exc, (BrokenPipeError, ConnectionResetError)):
        return True
    if isinstance(exc, OSError):
        if exc.errno == errno.EPIPE:
            return True
        return getattr(exc, "winerror", None) in (_ERROR_BROKEN_PIPE, _ERROR_NO_DATA)
    return False


def _wake_fifo(path: str) -> None:
    # Opening the opposite end without blocking wakes a blocked opener.
    # ENXIO means no reader is waiting yet; callers retry until their task ends.
    for flags in (os.O_RDONLY | os.O_NONBLOCK, os.O_WRONLY | os.O_NONBLOCK):
        try:
            fd = os.open(path, flags)
        except OSError:
            continue
        os.close(fd)


class PipeChannel:
    """
    Engine-side handle of one named channel.

    The child process opens ``path`` itself. The engine opens the other end
    through ``open`` (which blocks until the child connects) and can release
    a blocked ``open`` at any time through ``release``.
    """

    def __init__(self, name: str, path: str, owned: bool = True):
        self.name = name
        self.path = path
        self.owned = owned
        self.released = False

    def open(self, mode: str) -> BinaryIO:
        """Open the engine end ("rb" or "wb"), blocking until the child connects."""
        raise NotImplementedError

    def release(self) -> None:
        """Unblock an ``open`` that is waiting for a child that will never connect."""
        raise NotImplementedError

    def remove(self) -> None:
        """Remove the channel's OS artifact."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, path={self.path!r})"


class FifoChannel(PipeChannel):
    """FIFO special file channel (POSIX)."""

    def open(self, mode: str) -> BinaryIO:
        stream = open(self.path, mode, buffering=0)
        if self.released:
            logger.debug(f"Channel {self.name} opened after release")
        return stream

    def release(self) -> None:
        self.released = True
        _wake_fifo(self.path)

    def remove(self) -> None:
        if not self.owned:
            return
        try:
            os.unlink(self.path)
            logger.debug(f"Removed FIFO {self.path}")
        except FileNotFoundError:
            pass


class NamedPipeChannel(PipeChannel):
    """Windows named pipe channel; the engine holds the server end."""

    def __init__(self, name: str, path: str, handle: int):
        super().__init__(name, path, owned=True)
        self._handle: Optional[int] = handle

    def open(self, mode: str) -> BinaryIO:
        import _winapi
        import msvcrt

        handle = self._handle
        if handle is None:
            raise OSError(errno.EBADF, f"Channel {self.name} is already open or removed")

        try:
            _winapi.ConnectNamedPipe(handle, False)
        except OSError as e:
            if getattr(e, "winerror", None) != _ERROR_PIPE_CONNECTED:
                raise

        self._handle = None
        flags = os.O_RDONLY if "r" in mode else os.O_WRONLY
        fd = msvcrt.open_osfhandle(handle, flags | os.O_BINARY)
        return open(fd, mode, buffering=0)

    def release(self) -> None:
        self.released = True
        try:
            # Connecting as a client completes a pending ConnectNamedPipe
            with open(self.path, "rb", buffering=0):
                pass
        except OSError:
            pass

    def remove(self) -> None:
        import _winapi

        if self._handle is not None:
            _winapi.CloseHandle(self._handle)
            self._handle = None


class ExistingPipeChannel(PipeChannel):
    """
    Channel created by the caller before the invocation.

    The engine opens it like any path and never removes it.
    """

    def __init__(self, name: str, path: str):
        super().__init__(name, path, owned=False)

    def open(self, mode: str) -> BinaryIO:
        return open(self.path, mode, buffering=0)

    def release(self) -> None:
        self.released = True
        if os.name == "nt":
            return
        try:
            if not stat.S_ISFIFO(os.stat(self.path).st_mode):
                return
        except OSError:
            return
        _wake_fifo(self.path)

    def remove(self) -> None:
        pass


class PipeProvisioner:
    """
    Allocates named channels for one invocation and removes them afterwards.

    Names are unique within the provisioner's namespace; generated names are
    uuid-based so separate invocations never collide.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        if config is None:
            from media_processor.config import get_config

            config = get_config()

        self.config = config
        self._channels: Dict[str, PipeChannel] = {}

    def generate_name(self) -> str:
        return generate_channel_name(self.config.pipe_prefix)

    def pipe_path(self, name: str) -> str:
        return pipe_path(name, self.config)

    def provision(self, name: Optional[str] = None) -> PipeChannel:
        """
        Create a named channel.

        Args:
            name: Channel name (generated when not provided)

        Returns:
            PipeChannel owned by the engine

        Raises:
            NameCollision: If the name is already provisioned or exists
            PlatformUnsupported: If the platform has no named-channel primitive
            ResourceExhausted: If the OS refuses to create the channel
            ChannelAccessDenied: If the FIFO directory is not writable
        """
        name = name or self.generate_name()
        if name in self._channels:
            raise NameCollision(name)

        channel = self._create(name)
        self._channels[name] = channel
        logger.debug(f"Provisioned channel {name} at {channel.path}")
        return channel

    def _create(self, name: str) -> PipeChannel:
        raise NotImplementedError

    def release(self, channel: PipeChannel) -> None:
        """Remove a channel's artifact and drop it from the namespace."""
        try:
            channel.remove()
        except OSError as e:
            logger.warning(f"Failed to remove channel {channel.name}: {e}")
        self._channels.pop(channel.name, None)

    def close(self) -> None:
        """Release every channel still held by this provisioner."""
        for channel in list(self._channels.values()):
            self.release(channel)

    @property
    def channels(self) -> Dict[str, PipeChannel]:
        return dict(self._channels)

    def __enter__(self) -> "PipeProvisioner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class FifoProvisioner(PipeProvisioner):
    """Provisions FIFO special files (POSIX)."""

    def _create(self, name: str) -> PipeChannel:
        if not hasattr(os, "mkfifo"):
            raise PlatformUnsupported("os.mkfifo is not available on this platform")

        path = self.pipe_path(name)
        try:
            os.mkfifo(path, 0o600)
        except FileExistsError:
            raise NameCollision(name)
        except OSError as e:
            if e.errno in _EXHAUSTION_ERRNOS:
                raise ResourceExhausted(f"Cannot create FIFO {path}: {e}") from e
            if e.errno in _ACCESS_ERRNOS:
                raise ChannelAccessDenied(f"Cannot create FIFO {path}: {e}") from e
            raise

        return FifoChannel(name, path, owned=True)


class NamedPipeProvisioner(PipeProvisioner):
    """Provisions Windows named pipes."""

    def _create(self, name: str) -> PipeChannel:
        if os.name != "nt":
            raise PlatformUnsupported("Windows named pipes are only available on Windows")

        import _winapi

        path = self.pipe_path(name)
        try:
            handle = _winapi.CreateNamedPipe(
                path,
                _winapi.PIPE_ACCESS_DUPLEX | _winapi.FILE_FLAG_FIRST_PIPE_INSTANCE,
                _winapi.PIPE_TYPE_BYTE | _winapi.PIPE_READMODE_BYTE | _winapi.PIPE_WAIT,
                1,
                self.config.chunk_size,
                self.config.chunk_size,
                _winapi.NMPWAIT_WAIT_FOREVER,
                _winapi.NULL,
            )
        except OSError as e:
            if getattr(e, "winerror", None) == _ERROR_ACCESS_DENIED:
                raise NameCollision(name)
            raise ResourceExhausted(f"Cannot create named pipe {path}: {e}") from e

        return NamedPipeChannel(name, path, handle)


def provisioner_for_platform(config: Optional[EngineConfig] = None) -> PipeProvisioner:
    """
    Create the pipe provisioner for the current platform.

    Raises:
        PlatformUnsupported: If the platform has no named-channel primitive
    """
    if os.name == "nt":
        return NamedPipeProvisioner(config)
    if hasattr(os, "mkfifo"):
        return FifoProvisioner(config)

    raise PlatformUnsupported(f"Named channels are not supported on platform {os.name!r}")
