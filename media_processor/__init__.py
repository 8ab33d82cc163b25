"""
Media Processor

Multi-channel process I/O engine for external media tools (ffmpeg,
ImageMagick, pandoc and similar): launches the tool, feeds and drains every
stdin/stdout and named-pipe channel concurrently, and reports the result.

Version: 1.0.0
"""

__version__ = "1.0.0"

from media_processor.channels import (
    ChannelDescriptor,
    ChannelDirection,
    ChannelKind,
    ChannelSet,
    Transport,
)
from media_processor.config import EngineConfig
from media_processor.engine import CancellationToken, MediaProcessingEngine, execute
from media_processor.exceptions import (
    ChannelAccessDenied,
    ChannelIOFailure,
    ChannelSetError,
    InvocationCancelled,
    LaunchFailure,
    MediaProcessorError,
    NameCollision,
    NonZeroExit,
    PlatformUnsupported,
    ResourceExhausted,
)
from media_processor.pipes import PipeProvisioner, provisioner_for_platform
from media_processor.process_supervisor import ProcessSupervisor, StdinMode, StdoutMode
from media_processor.result import InvocationResult

__all__ = [
    "CancellationToken",
    "ChannelAccessDenied",
    "ChannelDescriptor",
    "ChannelDirection",
    "ChannelIOFailure",
    "ChannelKind",
    "ChannelSet",
    "ChannelSetError",
    "EngineConfig",
    "InvocationCancelled",
    "InvocationResult",
    "LaunchFailure",
    "MediaProcessingEngine",
    "MediaProcessorError",
    "NameCollision",
    "NonZeroExit",
    "PipeProvisioner",
    "PlatformUnsupported",
    "ProcessSupervisor",
    "ResourceExhausted",
    "StdinMode",
    "StdoutMode",
    "Transport",
    "execute",
    "provisioner_for_platform",
]
