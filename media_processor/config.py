"""
Engine configuration.

Settings for channel provisioning, copy buffers, process supervision and
diagnostics capture, loaded from environment variables.
"""

import tempfile
from typing import Optional

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


class EngineConfig(BaseSettings):
    """Media processing engine configuration from environment variables."""

    # Stream copying
    chunk_size: int = Field(
        default=81920,
        description="Buffer size in bytes for each feeder/drainer copy step",
        ge=1024,
        le=16 * 1024 * 1024,
    )

    # Channel provisioning
    fifo_dir: str = Field(
        default_factory=tempfile.gettempdir,
        description="Directory in which FIFO channels are created (POSIX only)",
    )

    pipe_prefix: str = Field(
        default="mfp",
        description="Prefix for generated channel names",
        min_length=1,
        max_length=32,
    )

    # Process management
    kill_timeout: float = Field(
        default=5.0,
        description="Seconds to wait for the child to exit after a termination signal",
        ge=0.1,
        le=60.0,
    )

    default_timeout: Optional[float] = Field(
        default=None,
        description="Default invocation deadline in seconds (None means no deadline)",
        gt=0.0,
    )

    # Diagnostics
    diagnostics_limit: int = Field(
        default=1024 * 1024,
        description="Maximum number of stderr bytes retained per invocation",
        ge=1024,
    )

    diagnostics_encoding: str = Field(
        default="utf-8",
        description="Encoding used to decode captured stderr",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level for the media_processor logger",
    )

    model_config = ConfigDict(
        env_prefix="MEDIA_ENGINE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra fields from environment
    )


def get_config() -> EngineConfig:
    """
    Get engine configuration from environment variables.

    Returns:
        EngineConfig: Configuration instance
    """
    return EngineConfig()
