import asyncio
import logging
import signal
from types import SimpleNamespace

import pytest

from procshell import ShellError
from procshell.shutdown import _await_exit, signal_name


def test_signal_name() -> None:
    assert signal_name(signal.SIGINT) == "SIGINT"
    assert signal_name(1000) == "signal 1000"


@pytest.mark.asyncio
async def test_late_exit_is_collected(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="procshell.shutdown")
    release = asyncio.Event()

    async def slow_exit() -> int:
        await release.wait()
        raise ShellError("output failed")

    task = asyncio.create_task(slow_exit())
    c = SimpleNamespace(path="slow", pid=4242, exit_task=task)

    await _await_exit([c], 0.01)
    assert not task.done()
    assert "did not finish within" in caplog.text

    release.set()
    await asyncio.wait([task])
    await asyncio.sleep(0)
    assert "slow (PID 4242) failed after cleanup: output failed" in caplog.text
