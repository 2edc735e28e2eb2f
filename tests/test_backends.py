import asyncio
from pathlib import Path
from typing import Any

import pytest

from foreman.backends import BackendExecutionError, BackendProcessError, SubprocessHost
from foreman.backends.base import AgentBackend


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, content: bytes = b"") -> None:
        self._content = content

    async def read(self) -> bytes:
        return self._content


class FakeProcess:
    def __init__(self, lines: list[bytes], *, return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self._return_code = return_code
        self.returncode: int | None = None
        self.pid = 4242
        self.killed = False
        self.waited = False

    def kill(self) -> None:
        self.killed = True
        self._return_code = -9
        self.returncode = -9

    async def wait(self) -> int:
        self.waited = True
        self.returncode = self._return_code
        return self._return_code


class HangingStdout(FakeStdout):
    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            await asyncio.sleep(3600)
        return await super().__anext__()


class HangingProcess(FakeProcess):
    def __init__(self, lines: list[bytes] | None = None) -> None:
        super().__init__([])
        self.stdout = HangingStdout(lines or [])


def _install_process(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> dict[str, Any]:
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = list(args)
        captured["kwargs"] = kwargs
        with open(kwargs["env"]["CLAUDE_MD"], encoding="utf-8") as handle:
            captured["system_prompt"] = handle.read()
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return captured


async def _collect(backend: AgentBackend, **context: Any) -> str:
    return await backend.collect("You are precise.", "implement feature", context, ["Read", "Edit"])


def test_build_command_shape() -> None:
    host = SubprocessHost(binary="claude", working_directory=Path("."))

    command = host.build_command("implement feature", model="sonnet", tools=["Read", "Edit"])

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert command[3:5] == ["--output-format", "stream-json"]
    assert command[command.index("--model") + 1] == "sonnet"
    assert command[command.index("--allowedTools") + 1] == "Read,Edit"
    assert "--model" not in host.build_command("x")


def test_streams_json_events_and_plain_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(
        [
            b'{"type":"assistant","content":[{"type":"text","text":"hello "}]}\n',
            b"\n",
            b'{"type":"delta",\n',
            b'"delta":"wor"}\n',
            b"plain-line\n",
            b'{"type":"result","result":"ld"}\n',
        ]
    )
    captured = _install_process(monkeypatch, process)
    host = SubprocessHost(working_directory=Path("/tmp"))

    output = asyncio.run(_collect(host, model="sonnet"))

    assert output == "hello worplain-lineld"
    assert captured["args"][0] == "claude"
    assert "--allowedTools" in captured["args"]
    assert captured["kwargs"]["cwd"] == "/tmp"
    assert captured["system_prompt"] == "You are precise."
    assert process.killed is False


def test_glitch_marker_after_output_is_tolerated(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(
        [b'{"type":"result","result":"done"}\n'],
        return_code=1,
        stderr=b"SyntaxError: Unexpected EOF while parsing",
    )
    _install_process(monkeypatch, process)

    output = asyncio.run(_collect(SubprocessHost()))

    assert output == "done"


def test_glitch_marker_without_output_still_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([], return_code=1, stderr=b"Unexpected EOF")
    _install_process(monkeypatch, process)

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(_collect(SubprocessHost()))

    assert excinfo.value.exit_code == 1
    assert excinfo.value.retriable is True


def test_nonzero_exit_raises_with_stderr(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([b"partial\n"], return_code=2, stderr=b"rate limited")
    _install_process(monkeypatch, process)

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(_collect(SubprocessHost()))

    assert "rate limited" in str(excinfo.value)
    assert excinfo.value.backend == "subprocess"


def test_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def missing_binary(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", missing_binary)

    with pytest.raises(BackendProcessError) as excinfo:
        asyncio.run(_collect(SubprocessHost(binary="no-such-host")))

    assert excinfo.value.retriable is False
    assert "no-such-host" in str(excinfo.value)


def test_is_benign_failure_requires_output_and_marker() -> None:
    host = SubprocessHost(glitch_markers=("socket hang up",))

    assert host.is_benign_failure("error: socket hang up", produced_output=True) is True
    assert host.is_benign_failure("error: socket hang up", produced_output=False) is False
    assert host.is_benign_failure("Unexpected EOF", produced_output=True) is False


def test_timed_out_consumer_kills_host_process(monkeypatch: pytest.MonkeyPatch) -> None:
    process = HangingProcess()
    _install_process(monkeypatch, process)

    async def scenario() -> None:
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(_collect(SubprocessHost()), timeout=0.05)

    asyncio.run(scenario())

    assert process.killed is True
    assert process.waited is True


def test_closing_stream_early_kills_host_process(monkeypatch: pytest.MonkeyPatch) -> None:
    process = HangingProcess([b'{"type":"delta","delta":"first"}\n'])
    _install_process(monkeypatch, process)

    async def scenario() -> str:
        stream = SubprocessHost().execute("You are precise.", "implement feature", {})
        first = await stream.__anext__()
        await stream.aclose()
        return first

    assert asyncio.run(scenario()) == "first"
    assert process.killed is True
    assert process.waited is True
