"""
Exceptions raised by the media processing engine.

Provisioning, launch and validation errors are raised immediately. Errors
that happen while channels are being copied are captured per channel and
reported through the InvocationResult instead of being raised across task
boundaries.
"""

from typing import Optional


class MediaProcessorError(Exception):
    """Base exception for the media processing engine."""

    pass


class LaunchFailure(MediaProcessorError):
    """Exception raised when the executable cannot be found or spawned."""

    def __init__(self, executable: str, reason: str):
        self.executable = executable
        self.reason = reason
        super().__init__(f"Failed to launch {executable}: {reason}")


class ChannelProvisioningError(MediaProcessorError):
    """Base exception for channel provisioning failures."""

    pass


class PlatformUnsupported(ChannelProvisioningError):
    """Exception raised when the OS offers no named-pipe or FIFO primitive."""

    pass


class ResourceExhausted(ChannelProvisioningError):
    """Exception raised when the OS refuses to create a channel."""

    pass


class ChannelAccessDenied(ChannelProvisioningError):
    """Exception raised when the channel location is not writable by the engine."""

    pass


class NameCollision(ChannelProvisioningError):
    """Exception raised when a channel identity is already in use."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Channel name already in use: {name}")


class ChannelSetError(MediaProcessorError, ValueError):
    """Exception raised when a channel set cannot be bound to transports."""

    pass


class ChannelIOFailure(MediaProcessorError):
    """Exception recorded when a feeder or drainer fails mid-copy."""

    def __init__(self, channel: str, cause: BaseException):
        self.channel = channel
        self.cause = cause
        super().__init__(f"I/O failure on channel {channel}: {cause}")


class NonZeroExit(MediaProcessorError):
    """Exception raised by InvocationResult.raise_for_status for failed exits."""

    def __init__(self, exit_code: int, diagnostics: str = ""):
        self.exit_code = exit_code
        self.diagnostics = diagnostics
        message = f"Process exited with code {exit_code}"
        if diagnostics:
            message += f": {diagnostics.strip()[-500:]}"
        super().__init__(message)


class InvocationCancelled(MediaProcessorError):
    """Exception raised when an invocation is cancelled or times out."""

    def __init__(self, reason: str = "cancelled", exit_code: Optional[int] = None):
        self.reason = reason
        self.exit_code = exit_code
        super().__init__(f"Invocation {reason}")
