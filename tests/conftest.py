import logging

import pytest_asyncio

import child_fns  # noqa: F401
import procshell

logging.basicConfig(level=logging.DEBUG)

procshell.init_main()


@pytest_asyncio.fixture
async def sh():
    shell = procshell.Shell(procshell.ShellOpts(suppress_child_output=True, kill_delay_s=0.2))
    yield shell
    if not shell._cleanup_called:
        await shell.cleanup()
