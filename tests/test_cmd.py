import asyncio
import signal
import sys
from pathlib import Path

import pytest

from procshell import (
    AlreadyStartedError,
    AlreadyWaitedError,
    CaptureBuffer,
    CmdState,
    ExitError,
    InvalidWriterError,
    NopCloser,
    NotStartedError,
    ProcessExitedError,
    ProtocolError,
    Shell,
    ShellOpts,
    StdinConflictError,
    WaitTimeoutError,
)


class CountingWriter:
    def __init__(self) -> None:
        self.chunks = []
        self.closes = 0

    def write(self, data: bytes) -> int:
        self.chunks.append(data)
        return len(data)

    def close(self) -> None:
        self.closes += 1


@pytest.mark.asyncio
async def test_output_of_external_command(sh: Shell) -> None:
    stdout, stderr = await sh.cmd("sh", "-c", "echo out; echo err >&2").output()
    assert stdout == b"out\n"
    assert stderr == b"err\n"


@pytest.mark.asyncio
async def test_exit_error(sh: Shell) -> None:
    c = sh.cmd("sh", "-c", "exit 3")
    with pytest.raises(ExitError) as info:
        await c.run()
    assert info.value.returncode == 3
    assert "exit status 3" in str(info.value)
    assert c.state is CmdState.WAITED
    assert c.err is info.value


@pytest.mark.asyncio
async def test_exit_error_is_ok(sh: Shell) -> None:
    c = sh.cmd("sh", "-c", "exit 3")
    c.exit_error_is_ok = True
    await c.run()
    assert isinstance(c.err, ExitError)
    assert c.returncode == 3
    assert sh.err is None


@pytest.mark.asyncio
async def test_function_exit_status(sh: Shell) -> None:
    c = sh.fn("exit", 4)
    with pytest.raises(ExitError) as info:
        await c.run()
    assert info.value.returncode == 4


@pytest.mark.asyncio
async def test_lifecycle_errors(sh: Shell) -> None:
    c = sh.fn("sleep", 10)
    with pytest.raises(NotStartedError):
        await c.await_ready()
    with pytest.raises(NotStartedError):
        await c.wait()
    with pytest.raises(NotStartedError):
        c.signal(signal.SIGTERM)

    await c.start()
    assert c.state is CmdState.STARTED
    assert c.is_running()
    with pytest.raises(AlreadyStartedError):
        await c.start()
    with pytest.raises(AlreadyStartedError):
        c.add_stdout_writer(CaptureBuffer())

    await c.terminate(signal.SIGTERM)
    assert c.returncode in (-signal.SIGTERM, 128 + signal.SIGTERM)
    with pytest.raises(AlreadyWaitedError):
        await c.wait()
    with pytest.raises(AlreadyWaitedError):
        await c.await_ready()
    with pytest.raises(AlreadyWaitedError):
        c.signal(signal.SIGTERM)


@pytest.mark.asyncio
async def test_server_reports_vars_and_ready(sh: Shell) -> None:
    c = sh.fn("serve", "127.0.0.1:8000")
    out = CaptureBuffer()
    c.add_stdout_writer(out, filter_messages=True)
    await c.start()

    assert await c.await_vars("Addr", timeout=10) == {"Addr": "127.0.0.1:8000"}
    await c.await_ready(timeout=10)
    await c.await_ready(timeout=10)

    await c.shutdown(signal.SIGINT)
    assert c.returncode == 130
    assert out.getvalue() == b"starting\n"


@pytest.mark.asyncio
async def test_await_vars_returns_requested_keys(sh: Shell) -> None:
    c = sh.fn("report", {"A": "1", "B": "2", "C": "3"})
    await c.start()
    assert await c.await_vars("A", "C", timeout=10) == {"A": "1", "C": "3"}
    assert await c.await_vars(timeout=10) == {}
    await c.wait()


@pytest.mark.asyncio
async def test_process_exit_releases_waiters(sh: Shell) -> None:
    c = sh.fn("exit_before_ready")
    await c.start()
    with pytest.raises(ProcessExitedError):
        await c.await_ready(timeout=10)
    with pytest.raises(ProcessExitedError):
        await c.await_vars("Addr", timeout=10)
    await c.wait()


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["bad_message", "unknown_message"])
async def test_protocol_error_surfaces(sh: Shell, name: str) -> None:
    c = sh.fn(name)
    await c.start()
    with pytest.raises(ProtocolError):
        await c.await_ready(timeout=10)
    with pytest.raises(ProtocolError):
        await c.wait()


@pytest.mark.asyncio
async def test_protocol_error_keeps_stderr_flowing(sh: Shell) -> None:
    c = sh.fn("bad_message_then_stderr")
    err = CaptureBuffer()
    c.add_stderr_writer(err)
    await c.start()
    with pytest.raises(ProtocolError):
        await c.wait(timeout=10)
    assert err.getvalue().endswith(b"late-stderr\n")


@pytest.mark.asyncio
async def test_combined_output_matches_shared_writer(sh: Shell) -> None:
    combined = await sh.fn("write_ab", 3).combined_output()
    assert combined == b"ABABAB"

    c = sh.fn("write_ab", 3)
    shared = CaptureBuffer()
    c.add_stdout_writer(shared)
    c.add_stderr_writer(shared)
    await c.run()
    assert shared.getvalue() == combined


@pytest.mark.asyncio
async def test_writer_attached_twice_is_closed_once(sh: Shell) -> None:
    w = CountingWriter()
    c = sh.fn("write_ab", 1)
    c.add_stdout_writer(w)
    c.add_stderr_writer(w)
    await c.run()
    assert b"".join(w.chunks) == b"AB"
    assert w.closes == 1


@pytest.mark.asyncio
async def test_raw_std_streams_rejected(sh: Shell) -> None:
    c = sh.cmd("true")
    with pytest.raises(InvalidWriterError):
        c.add_stdout_writer(sys.stdout)
    with pytest.raises(InvalidWriterError):
        c.add_stderr_writer(sys.stderr)
    c.add_stdout_writer(NopCloser(sys.stdout))


@pytest.mark.asyncio
async def test_stdin_bytes(sh: Shell) -> None:
    c = sh.fn("cat")
    c.stdin = "hello"
    stdout, _ = await c.output()
    assert stdout == b"hello"


@pytest.mark.asyncio
async def test_stdin_pipe(sh: Shell) -> None:
    c = sh.fn("cat")
    out = c.stdout_pipe()
    w = c.stdin_pipe()
    assert c.stdin_pipe() is w
    await c.start()
    w.write(b"abc")
    w.close()
    assert await out.read(timeout=10) == b"abc"
    await c.wait()


@pytest.mark.asyncio
async def test_stdin_pipe_left_open(sh: Shell) -> None:
    c = sh.fn("read_line")
    w = c.stdin_pipe()
    out = c.stdout_pipe()
    await c.start()
    w.write(b"hi\n")
    await c.wait(timeout=10)
    assert await out.read() == b"hi\n"
    assert w.closed


@pytest.mark.asyncio
async def test_stdin_conflict(sh: Shell) -> None:
    c = sh.fn("cat")
    c.stdin = b"x"
    c.stdin_pipe()
    with pytest.raises(StdinConflictError):
        await c.start()
    assert c.state is CmdState.WAITED


@pytest.mark.asyncio
async def test_piping_one_command_into_another(sh: Shell) -> None:
    echo = sh.fn("echo", "foo", "bar")
    cat = sh.fn("cat")
    echo.add_stdout_writer(cat.stdin_pipe(), filter_messages=True)
    out = cat.stdout_pipe()
    await cat.start()
    await echo.start()
    await echo.wait()
    await cat.wait(timeout=10)
    assert await out.read() == b"foo bar\n"


@pytest.mark.asyncio
async def test_pipe_closed_without_wait(sh: Shell) -> None:
    c = sh.cmd("sh", "-c", "echo hi")
    out = c.stdout_pipe()
    await c.start()
    assert await out.read(timeout=10) == b"hi\n"
    await c.wait()


@pytest.mark.asyncio
async def test_output_dir(tmp_path: Path) -> None:
    sh = Shell(ShellOpts(suppress_child_output=True, child_output_dir=str(tmp_path), kill_delay_s=0.2))
    try:
        await sh.cmd("sh", "-c", "echo out; echo err >&2").run()
    finally:
        await sh.cleanup()

    stdout_logs = list(tmp_path.glob("sh.*.stdout"))
    stderr_logs = list(tmp_path.glob("sh.*.stderr"))
    assert len(stdout_logs) == 1
    assert len(stderr_logs) == 1
    assert stdout_logs[0].read_text() == "out\n"
    assert stderr_logs[0].read_text() == "err\n"


@pytest.mark.asyncio
async def test_missing_executable(sh: Shell) -> None:
    c = sh.cmd("procshell-no-such-program")
    with pytest.raises(FileNotFoundError):
        await c.start()
    assert c.state is CmdState.WAITED


@pytest.mark.asyncio
async def test_wait_timeout_keeps_command_waitable(sh: Shell) -> None:
    c = sh.fn("sleep", 10)
    await c.start()
    with pytest.raises(WaitTimeoutError):
        await c.wait(timeout=0.1)
    assert c.state is CmdState.STARTED
    await c.terminate(signal.SIGKILL)
    assert c.returncode == -signal.SIGKILL


@pytest.mark.asyncio
async def test_signal_after_exit_is_noop(sh: Shell) -> None:
    c = sh.cmd("true")
    await c.start()
    await asyncio.wait_for(c.exit_task, 10)
    c.signal(signal.SIGTERM)
    await c.wait()
    assert c.returncode == 0


@pytest.mark.asyncio
async def test_coroutine_function(sh: Shell) -> None:
    stdout, _ = await sh.fn("async_add", 2, 3).output()
    assert stdout == b"5\n"


@pytest.mark.asyncio
async def test_function_child_stderr_is_clean(sh: Shell) -> None:
    stdout, stderr = await sh.fn("echo", "hi").output()
    assert stdout == b"hi\n"
    assert stderr == b""
