"""
Tests for the media processing engine.

Every test runs real child processes (the current Python interpreter) so
channel binding, concurrent copying and teardown are exercised end to end.
"""

import asyncio
import io
import os
import sys
from pathlib import Path

import psutil
import pytest

from media_processor.channels import ChannelDescriptor, ChannelSet, Transport
from media_processor.config import EngineConfig
from media_processor.engine import CancellationToken, MediaProcessingEngine, execute
from media_processor.exceptions import (
    ChannelIOFailure,
    ChannelSetError,
    InvocationCancelled,
    LaunchFailure,
    NameCollision,
    NonZeroExit,
)
from media_processor.pipes import pipe_path
from media_processor.process_supervisor import ProcessSupervisor

posix_only = pytest.mark.skipif(
    not hasattr(os, "mkfifo"), reason="FIFO channels require a POSIX platform"
)

ECHO_STDIN = "import sys; sys.stdout.buffer.write(sys.stdin.buffer.read())"

JOIN_FILES = (
    "import sys\n"
    "parts = []\n"
    "for path in sys.argv[1:]:\n"
    "    with open(path, 'rb') as f:\n"
    "        parts.append(f.read())\n"
    "sys.stdout.buffer.write(b'|'.join(parts))\n"
)

SLEEP_WITH_PIDFILE = (
    "import os, sys, time\n"
    "with open(sys.argv[1], 'w') as f:\n"
    "    f.write(str(os.getpid()))\n"
    "time.sleep(30)\n"
)


class FailingStream:
    """Readable stream that fails after its first chunk."""

    def __init__(self):
        self.calls = 0

    def read(self, size: int) -> bytes:
        self.calls += 1
        if self.calls > 1:
            raise OSError(5, "Input/output error")
        return b"partial"


async def cancel_when_started(token: CancellationToken, pid_file: Path) -> None:
    for _ in range(200):
        if pid_file.exists() and pid_file.read_text():
            break
        await asyncio.sleep(0.05)
    token.cancel()


class CancellingSupervisor(ProcessSupervisor):
    """Supervisor whose token is cancelled while the child is being spawned."""

    def __init__(self, config: EngineConfig, token: CancellationToken):
        super().__init__(config)
        self.token = token
        self.handle = None

    async def launch(self, *args, **kwargs):
        asyncio.get_running_loop().call_soon(self.token.cancel)
        self.handle = await super().launch(*args, **kwargs)
        return self.handle


def read_pid(pid_file: Path) -> int:
    return int(pid_file.read_text())


def assert_process_gone(pid: int) -> None:
    if psutil.pid_exists(pid):
        assert psutil.Process(pid).status() == psutil.STATUS_ZOMBIE


class TestBasicInvocation:
    """Test invocations without named channels."""

    def test_initialization_with_defaults(self):
        """Test engine initialization with default config."""
        engine = MediaProcessingEngine()

        assert engine.config is not None
        assert engine.supervisor is not None
        assert engine.assembler is not None

    @pytest.mark.asyncio
    async def test_version_output(self, engine: MediaProcessingEngine, python_args):
        """Test capturing stdout of a tool run without input channels."""
        result = await engine.execute_async(
            sys.executable,
            python_args(
                "import sys\n"
                "if '--version' in sys.argv:\n"
                "    sys.stdout.write('scenario output')\n",
                "--version",
            ),
        )

        assert result.exit_code == 0
        assert result.success is True
        assert result.captured_output == b"scenario output"
        assert result.failure is None
        assert len(result.channel_reports) == 1
        assert result.channel_reports[0].transport == Transport.STDOUT
        assert result.raise_for_status() is result

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, engine: MediaProcessingEngine, python_args):
        """Test that a failing tool is reported, not raised."""
        result = await engine.execute_async(
            sys.executable,
            python_args("import sys; sys.stderr.write('bad flag'); sys.exit(1)", "--bogus"),
        )

        assert result.exit_code == 1
        assert result.success is False
        assert result.diagnostics == "bad flag"

        with pytest.raises(NonZeroExit) as exc_info:
            result.raise_for_status()
        assert exc_info.value.exit_code == 1
        assert "bad flag" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_stdin_round_trip(
        self, engine: MediaProcessingEngine, python_args, sample_payload: bytes
    ):
        """Test a single in-memory input fed over stdin."""
        source = ChannelDescriptor.from_bytes(sample_payload)

        result = await engine.execute_async(
            sys.executable, python_args(ECHO_STDIN), [source]
        )

        assert result.success
        assert result.captured_output == sample_payload
        stdin_report = result.channel_reports[0]
        assert stdin_report.transport == Transport.STDIN
        assert stdin_report.bytes_transferred == len(sample_payload)
        assert stdin_report.completed is True

    @pytest.mark.asyncio
    async def test_stream_source(
        self, engine: MediaProcessingEngine, python_args, sample_payload: bytes
    ):
        """Test feeding a blocking stream over stdin."""
        source = ChannelDescriptor.from_stream(io.BytesIO(sample_payload))

        result = await engine.execute_async(sys.executable, python_args(ECHO_STDIN), [source])

        assert result.captured_output == sample_payload

    @pytest.mark.asyncio
    async def test_stalled_async_source(self, engine: MediaProcessingEngine, python_args):
        """Test that an async source that goes quiet does not outlive the child."""
        never = asyncio.Event()

        async def stalled():
            yield b"first"
            await never.wait()
            yield b"never sent"

        source = ChannelDescriptor.from_stream(stalled())

        result = await asyncio.wait_for(
            engine.execute_async(
                sys.executable,
                python_args("import sys; sys.stdin.buffer.read(5); print('ok')"),
                [source],
            ),
            timeout=10,
        )

        assert result.success
        assert result.captured_output.strip() == b"ok"
        stdin_report = result.channel_reports[0]
        assert stdin_report.transport == Transport.STDIN
        assert stdin_report.bytes_transferred == 5
        assert stdin_report.truncated is True
        assert stdin_report.error is None

    @pytest.mark.asyncio
    async def test_input_named_stdout(
        self, engine: MediaProcessingEngine, python_args, sample_payload: bytes
    ):
        """Test that an input may be called "stdout" next to the implicit capture."""
        source = ChannelDescriptor.from_bytes(sample_payload, name="stdout")

        result = await engine.execute_async(sys.executable, python_args(ECHO_STDIN), [source])

        assert result.success
        assert result.captured_output == sample_payload
        names = [r.name for r in result.channel_reports]
        assert names[0] == "stdout"
        assert len(set(names)) == 2

    @pytest.mark.asyncio
    async def test_child_ignores_stdin(self, engine: MediaProcessingEngine, python_args):
        """Test that a child closing stdin early truncates the feed without failing."""
        source = ChannelDescriptor.from_bytes(b"x" * (4 * 1024 * 1024))

        result = await engine.execute_async(
            sys.executable,
            python_args("import os; os.close(0); print('done')"),
            [source],
        )

        assert result.success
        assert result.captured_output.strip() == b"done"
        assert result.channel_reports[0].error is None

    @pytest.mark.asyncio
    async def test_stdout_to_sink(self, engine: MediaProcessingEngine, python_args):
        """Test copying stdout into a caller stream."""
        sink = io.BytesIO()

        result = await engine.execute_async(
            sys.executable,
            python_args("print('into the sink')"),
            [ChannelDescriptor.capture_stdout(sink)],
        )

        assert result.success
        assert result.captured_output is None
        assert sink.getvalue().strip() == b"into the sink"

    @pytest.mark.asyncio
    async def test_stdout_redirected_to_file(
        self, engine: MediaProcessingEngine, python_args, temp_dir: Path
    ):
        """Test redirecting stdout straight into an output file."""
        target = temp_dir / "out.txt"

        result = await engine.execute_async(
            sys.executable,
            python_args("print('written by child')"),
            [ChannelDescriptor.output_file(target, redirect_stdout=True)],
        )

        assert result.success
        assert result.channel_reports == []
        assert target.read_text().strip() == "written by child"

    @pytest.mark.asyncio
    async def test_missing_output_file(
        self, engine: MediaProcessingEngine, python_args, temp_dir: Path
    ):
        """Test that declared output files the child did not write are listed."""
        target = temp_dir / "never.png"

        result = await engine.execute_async(
            sys.executable, python_args("pass"), [ChannelDescriptor.output_file(target)]
        )

        assert result.exit_code == 0
        assert result.missing_outputs == [str(target)]

    @pytest.mark.asyncio
    async def test_large_diagnostics(self, engine: MediaProcessingEngine, python_args):
        """Test that a chatty stderr neither blocks the child nor grows unbounded."""
        result = await engine.execute_async(
            sys.executable,
            python_args("import sys; sys.stderr.write('e' * 1000000 + 'tail')"),
        )

        assert result.success
        assert result.diagnostics.endswith("tail")
        assert len(result.diagnostics) <= engine.config.diagnostics_limit

    @pytest.mark.asyncio
    async def test_env_and_cwd(
        self, engine: MediaProcessingEngine, python_args, temp_dir: Path
    ):
        """Test working directory and environment overrides."""
        result = await engine.execute_async(
            sys.executable,
            python_args("import os; print(os.getcwd()); print(os.environ['MEDIA_JOB'])"),
            cwd=str(temp_dir),
            env={"MEDIA_JOB": "thumbnail"},
        )

        lines = result.captured_output.decode().split()
        assert os.path.samefile(lines[0], temp_dir)
        assert lines[1] == "thumbnail"

    def test_sync_execute(self, test_config: EngineConfig, python_args):
        """Test the blocking entry point."""
        result = execute(sys.executable, python_args("print('sync')"), config=test_config)

        assert result.captured_output.strip() == b"sync"

    @pytest.mark.asyncio
    async def test_concurrent_invocations(self, engine: MediaProcessingEngine, python_args):
        """Test that invocations sharing an engine stay independent."""
        payloads = [f"job-{i}".encode() * 1000 for i in range(5)]

        results = await asyncio.gather(
            *(
                engine.execute_async(
                    sys.executable,
                    python_args(ECHO_STDIN),
                    [ChannelDescriptor.from_bytes(payload)],
                )
                for payload in payloads
            )
        )

        assert [r.captured_output for r in results] == payloads


class TestValidationAndLaunch:
    """Test errors raised before the child runs."""

    @pytest.mark.asyncio
    async def test_duplicate_names(self, engine: MediaProcessingEngine, python_args):
        """Test that duplicate channel identities are rejected."""
        channels = [
            ChannelDescriptor.from_bytes(b"a", name="same"),
            ChannelDescriptor.from_bytes(b"b", name="same"),
        ]

        with pytest.raises(NameCollision):
            await engine.execute_async(sys.executable, python_args("pass"), channels)

    @pytest.mark.asyncio
    async def test_two_stdin_channels(self, engine: MediaProcessingEngine, python_args):
        """Test that stdin cannot be claimed twice."""
        channels = [
            ChannelDescriptor.from_bytes(b"a", transport=Transport.STDIN),
            ChannelDescriptor.from_bytes(b"b", transport=Transport.STDIN),
        ]

        with pytest.raises(ChannelSetError):
            await engine.execute_async(sys.executable, python_args("pass"), channels)

    @pytest.mark.asyncio
    async def test_launch_failure(
        self, engine: MediaProcessingEngine, temp_dir: Path, fifo_dir: Path
    ):
        """Test that a missing executable raises and leaves no channels behind."""
        channels = [ChannelDescriptor.from_bytes(b"a"), ChannelDescriptor.from_bytes(b"b")]

        with pytest.raises(LaunchFailure):
            await engine.execute_async(str(temp_dir / "missing-tool"), "", channels)

        assert os.listdir(fifo_dir) == []

    @pytest.mark.asyncio
    async def test_already_cancelled_token(self, engine: MediaProcessingEngine, python_args):
        """Test that a cancelled token stops the invocation before launch."""
        token = CancellationToken()
        token.cancel()

        with pytest.raises(InvocationCancelled) as exc_info:
            await engine.execute_async(sys.executable, python_args("pass"), cancel_token=token)

        assert exc_info.value.reason == "cancelled"


@posix_only
class TestNamedChannels:
    """Test invocations that use provisioned FIFO channels."""

    @pytest.mark.asyncio
    async def test_multiple_inputs(
        self,
        engine: MediaProcessingEngine,
        test_config: EngineConfig,
        python_args,
        sample_payload: bytes,
        fifo_dir: Path,
    ):
        """Test N streamed inputs plus captured stdout run as N+1 tasks."""
        first = sample_payload
        second = bytes(reversed(sample_payload))
        channels = ChannelSet(
            [
                ChannelDescriptor.from_bytes(first, name="first"),
                ChannelDescriptor.from_bytes(second, name="second"),
            ],
            config=test_config,
        )
        paths = [pipe_path("first", test_config), pipe_path("second", test_config)]

        result = await engine.execute_async(
            sys.executable, python_args(JOIN_FILES, *paths), channels
        )

        assert result.success, result.diagnostics
        assert result.captured_output == first + b"|" + second
        assert len(result.channel_reports) == 3
        assert [r.transport for r in result.channel_reports] == [
            Transport.NAMED_PIPE,
            Transport.NAMED_PIPE,
            Transport.STDOUT,
        ]
        assert os.listdir(fifo_dir) == []

    @pytest.mark.asyncio
    async def test_references_match_paths(self, test_config: EngineConfig):
        """Test that bound references are the provisioned paths."""
        channels = ChannelSet(
            [
                ChannelDescriptor.from_bytes(b"a", name="left"),
                ChannelDescriptor.from_bytes(b"b", name="right"),
            ],
            config=test_config,
        ).bind()

        assert channels.references() == [
            pipe_path("left", test_config),
            pipe_path("right", test_config),
        ]

    @pytest.mark.asyncio
    async def test_channel_set_bound_elsewhere(
        self, engine: MediaProcessingEngine, python_args, fifo_dir: Path
    ):
        """Test that a set whose paths point outside the engine's FIFO directory is rejected."""
        channels = ChannelSet(
            [
                ChannelDescriptor.from_bytes(b"a", name="left"),
                ChannelDescriptor.from_bytes(b"b", name="right"),
            ]
        )

        with pytest.raises(ChannelSetError):
            await engine.execute_async(
                sys.executable, python_args(JOIN_FILES, *channels.bind().references()), channels
            )

        assert os.listdir(fifo_dir) == []

    @pytest.mark.asyncio
    async def test_engine_references(
        self,
        engine: MediaProcessingEngine,
        test_config: EngineConfig,
        python_args,
        fifo_dir: Path,
    ):
        """Test building arguments from the engine's own binding."""
        channels = [
            ChannelDescriptor.from_bytes(b"left", name="left"),
            ChannelDescriptor.from_bytes(b"right", name="right"),
        ]
        expected = [pipe_path("left", test_config), pipe_path("right", test_config)]

        assert engine.references(channels) == expected
        bound = engine.bind(channels)
        assert bound.references() == expected + ["-"]

        result = await engine.execute_async(
            sys.executable, python_args(JOIN_FILES, *engine.references(channels)), bound
        )

        assert result.success, result.diagnostics
        assert result.captured_output == b"left|right"
        assert os.listdir(fifo_dir) == []

    @pytest.mark.asyncio
    async def test_stdin_and_fifo_inputs(
        self, engine: MediaProcessingEngine, test_config: EngineConfig, python_args
    ):
        """Test one input on stdin and another on a named channel."""
        channels = [
            ChannelDescriptor.from_bytes(b"from-stdin", transport=Transport.STDIN),
            ChannelDescriptor.from_bytes(b"from-fifo", name="side"),
        ]
        script = (
            "import sys\n"
            "with open(sys.argv[1], 'rb') as f:\n"
            "    side = f.read()\n"
            "sys.stdout.buffer.write(sys.stdin.buffer.read() + b'+' + side)\n"
        )

        result = await engine.execute_async(
            sys.executable, python_args(script, pipe_path("side", test_config)), channels
        )

        assert result.captured_output == b"from-stdin+from-fifo"

    @pytest.mark.asyncio
    async def test_unopened_channel_does_not_block(
        self,
        engine: MediaProcessingEngine,
        test_config: EngineConfig,
        python_args,
        sample_payload: bytes,
        fifo_dir: Path,
    ):
        """Test a child that never opens one of its channels."""
        channels = [
            ChannelDescriptor.from_bytes(sample_payload, name="used"),
            ChannelDescriptor.from_bytes(sample_payload, name="ignored"),
        ]
        paths = [pipe_path("used", test_config)]

        result = await engine.execute_async(
            sys.executable, python_args(JOIN_FILES, *paths), channels
        )

        assert result.success
        assert result.captured_output == sample_payload
        reports = {r.name: r for r in result.channel_reports}
        assert reports["used"].completed is True
        assert reports["ignored"].truncated is True
        assert reports["ignored"].error is None
        assert os.listdir(fifo_dir) == []

    @pytest.mark.asyncio
    async def test_output_pipe(
        self,
        engine: MediaProcessingEngine,
        test_config: EngineConfig,
        python_args,
        sample_payload: bytes,
    ):
        """Test draining a named output channel alongside stdout."""
        channels = [
            ChannelDescriptor.from_bytes(sample_payload),
            ChannelDescriptor.output_pipe(name="result"),
        ]
        script = (
            "import sys\n"
            "data = sys.stdin.buffer.read()\n"
            "with open(sys.argv[2], 'wb') as out:\n"
            "    out.write(data[::-1])\n"
            "print('ok')\n"
        )
        bound = ChannelSet(channels, config=test_config).bind()

        result = await engine.execute_async(
            sys.executable, python_args(script, *bound.references()), channels
        )

        assert result.success, result.diagnostics
        assert result.channel_outputs["result"] == sample_payload[::-1]
        assert result.captured_output.strip() == b"ok"

    @pytest.mark.asyncio
    async def test_name_collision_before_launch(
        self, engine: MediaProcessingEngine, python_args, fifo_dir: Path, temp_dir: Path
    ):
        """Test that a taken channel name aborts the invocation before launch."""
        (fifo_dir / "taken").touch()
        marker = temp_dir / "launched"
        channels = [
            ChannelDescriptor.from_bytes(b"a", name="fresh"),
            ChannelDescriptor.from_bytes(b"b", name="taken"),
        ]

        with pytest.raises(NameCollision):
            await engine.execute_async(
                sys.executable,
                python_args("import sys; open(sys.argv[1], 'w').close()", str(marker)),
                channels,
            )

        assert not marker.exists()
        assert os.listdir(fifo_dir) == ["taken"]

    @pytest.mark.asyncio
    async def test_pre_opened_pipe(
        self, engine: MediaProcessingEngine, python_args, temp_dir: Path
    ):
        """Test feeding a caller-created FIFO that the engine must not remove."""
        path = temp_dir / "caller.fifo"
        os.mkfifo(path)
        channels = [
            ChannelDescriptor.from_pipe(path, io.BytesIO(b"caller data")),
            ChannelDescriptor.from_bytes(b"stdin data", transport=Transport.STDIN),
        ]
        script = (
            "import sys\n"
            "side = open(sys.argv[1], 'rb').read()\n"
            "sys.stdout.buffer.write(side + sys.stdin.buffer.read())\n"
        )

        result = await engine.execute_async(
            sys.executable, python_args(script, str(path)), channels
        )

        assert result.captured_output == b"caller datastdin data"
        assert path.exists()


@posix_only
class TestCancellation:
    """Test cancellation, timeouts and channel failures."""

    @pytest.mark.asyncio
    async def test_cancel_token(
        self,
        engine: MediaProcessingEngine,
        python_args,
        temp_dir: Path,
        fifo_dir: Path,
    ):
        """Test that cancelling kills the child and removes its channels."""
        pid_file = temp_dir / "pid"
        token = CancellationToken()
        channels = [ChannelDescriptor.from_bytes(b"a"), ChannelDescriptor.from_bytes(b"b")]
        canceller = asyncio.create_task(cancel_when_started(token, pid_file))

        with pytest.raises(InvocationCancelled) as exc_info:
            await engine.execute_async(
                sys.executable,
                python_args(SLEEP_WITH_PIDFILE, str(pid_file)),
                channels,
                cancel_token=token,
            )
        await canceller

        assert exc_info.value.reason == "cancelled"
        assert_process_gone(read_pid(pid_file))
        assert os.listdir(fifo_dir) == []

    @pytest.mark.asyncio
    async def test_cancel_from_another_thread(
        self, engine: MediaProcessingEngine, python_args, temp_dir: Path
    ):
        """Test that the token may be cancelled from a different thread."""
        pid_file = temp_dir / "pid"
        token = CancellationToken()
        loop = asyncio.get_running_loop()

        async def cancel_in_thread():
            for _ in range(200):
                if pid_file.exists() and pid_file.read_text():
                    break
                await asyncio.sleep(0.05)
            await loop.run_in_executor(None, token.cancel)

        canceller = asyncio.create_task(cancel_in_thread())

        with pytest.raises(InvocationCancelled):
            await engine.execute_async(
                sys.executable,
                python_args(SLEEP_WITH_PIDFILE, str(pid_file)),
                cancel_token=token,
            )
        await canceller

        assert_process_gone(read_pid(pid_file))

    @pytest.mark.asyncio
    async def test_cancel_during_launch(
        self,
        test_config: EngineConfig,
        python_args,
        temp_dir: Path,
        fifo_dir: Path,
    ):
        """Test a cancellation that arrives while the child is being spawned."""
        token = CancellationToken()
        supervisor = CancellingSupervisor(test_config, token)
        engine = MediaProcessingEngine(config=test_config, supervisor=supervisor)
        channels = [ChannelDescriptor.from_bytes(b"a"), ChannelDescriptor.from_bytes(b"b")]

        with pytest.raises(InvocationCancelled) as exc_info:
            await asyncio.wait_for(
                engine.execute_async(
                    sys.executable,
                    python_args(SLEEP_WITH_PIDFILE, str(temp_dir / "pid")),
                    channels,
                    cancel_token=token,
                ),
                timeout=15,
            )

        assert exc_info.value.reason == "cancelled"
        assert supervisor.handle is not None
        assert supervisor.handle.finished
        assert_process_gone(supervisor.handle.pid)
        assert os.listdir(fifo_dir) == []

    @pytest.mark.asyncio
    async def test_timeout(
        self,
        engine: MediaProcessingEngine,
        test_config: EngineConfig,
        python_args,
        temp_dir: Path,
        fifo_dir: Path,
    ):
        """Test that an expired deadline kills the child."""
        pid_file = temp_dir / "pid"
        channels = [ChannelDescriptor.output_pipe(name="never-written")]

        with pytest.raises(InvocationCancelled) as exc_info:
            await engine.execute_async(
                sys.executable,
                python_args(SLEEP_WITH_PIDFILE, str(pid_file)),
                channels,
                timeout=2.0,
            )

        assert exc_info.value.reason == "timeout"
        assert_process_gone(read_pid(pid_file))
        assert os.listdir(fifo_dir) == []

    @pytest.mark.asyncio
    async def test_default_timeout_from_config(
        self, test_config: EngineConfig, python_args, temp_dir: Path
    ):
        """Test that the configured default deadline applies."""
        engine = MediaProcessingEngine(
            config=test_config.model_copy(update={"default_timeout": 0.5})
        )

        with pytest.raises(InvocationCancelled) as exc_info:
            await engine.execute_async(
                sys.executable,
                python_args(SLEEP_WITH_PIDFILE, str(temp_dir / "pid")),
            )

        assert exc_info.value.reason == "timeout"

    @pytest.mark.asyncio
    async def test_failing_source(self, engine: MediaProcessingEngine, python_args):
        """Test that a failing input is reported as a channel failure."""
        channels = [ChannelDescriptor.from_stream(FailingStream(), name="broken")]

        result = await engine.execute_async(
            sys.executable,
            python_args("import sys, time; sys.stdin.buffer.read(); time.sleep(30)"),
            channels,
        )

        assert result.success is False
        assert isinstance(result.failure, ChannelIOFailure)
        assert result.failure.channel == "broken"
        assert result.captured_output is None

        with pytest.raises(ChannelIOFailure):
            result.raise_for_status()
