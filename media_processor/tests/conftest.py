"""
Pytest configuration and fixtures for media processor tests.

Child processes are short Python scripts run with the current interpreter,
so the tests need no external media tools.
"""

import sys
import tempfile
from pathlib import Path
from typing import Callable, Generator, List

import pytest

from media_processor.config import EngineConfig
from media_processor.engine import MediaProcessingEngine
from media_processor.pipes import FifoProvisioner
from media_processor.process_supervisor import ProcessSupervisor


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fifo_dir(temp_dir: Path) -> Path:
    """Dedicated directory for FIFO channels, so leftovers are easy to spot."""
    path = temp_dir / "fifos"
    path.mkdir()
    return path


@pytest.fixture
def test_config(fifo_dir: Path) -> EngineConfig:
    """Create a test configuration."""
    return EngineConfig(
        chunk_size=4096,
        fifo_dir=str(fifo_dir),
        kill_timeout=5.0,
        diagnostics_limit=64 * 1024,
        log_level="DEBUG",
    )


@pytest.fixture
def engine(test_config: EngineConfig) -> MediaProcessingEngine:
    """Create an engine for testing."""
    return MediaProcessingEngine(config=test_config)


@pytest.fixture
def supervisor(test_config: EngineConfig) -> ProcessSupervisor:
    """Create a process supervisor for testing."""
    return ProcessSupervisor(config=test_config)


@pytest.fixture
def provisioner(test_config: EngineConfig) -> Generator[FifoProvisioner, None, None]:
    """Create a FIFO provisioner that is closed after the test."""
    with FifoProvisioner(test_config) as provisioner:
        yield provisioner


@pytest.fixture
def python_args() -> Callable[..., List[str]]:
    """Build an argument list that runs a Python snippet with extra arguments."""

    def build(script: str, *args: str) -> List[str]:
        return ["-c", script, *args]

    return build


@pytest.fixture
def python_executable() -> str:
    """Interpreter used as the child executable."""
    return sys.executable


@pytest.fixture
def sample_payload() -> bytes:
    """Binary payload larger than one copy chunk and than a pipe buffer."""
    return bytes(range(256)) * 1024
