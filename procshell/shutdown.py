from __future__ import annotations

import asyncio
import functools
import logging
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List

if TYPE_CHECKING:
    from .cmd import Cmd

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShutdownPolicy:
    interrupt_signal: int = signal.SIGINT
    interrupt_grace_s: float = 0.05
    kill_delay_s: float = 1.0
    kill_wait_s: float = 1.0


def signal_name(sig: int) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return f"signal {sig}"


async def shutdown_cmds(cmds: Iterable["Cmd"], *, policy: ShutdownPolicy) -> List["Cmd"]:
    """Stop every running command: interrupt first, SIGKILL whatever survives.

    Returns the commands that had to be killed. Commands that never started
    or already exited are left alone.
    """
    running = [c for c in cmds if c.is_running()]
    if not running:
        return []

    for c in running:
        c._deliver(policy.interrupt_signal)
    await asyncio.sleep(policy.interrupt_grace_s)

    survivors = [c for c in running if c.is_running()]
    if not survivors:
        await _await_exit(running, policy.kill_wait_s)
        return []

    name = signal_name(policy.interrupt_signal)
    for c in survivors:
        log.warning(f"{c.path} (PID {c.pid}) still running after {name}")
    await asyncio.sleep(policy.kill_delay_s)

    killed: List["Cmd"] = []
    for c in survivors:
        if not c.is_running():
            continue
        log.warning(f"sending SIGKILL to {c.path} (PID {c.pid})")
        c._deliver(signal.SIGKILL)
        killed.append(c)

    await _await_exit(running, policy.kill_wait_s)
    return killed


async def _await_exit(cmds: List["Cmd"], timeout_s: float) -> None:
    tasks = [c.exit_task for c in cmds if c.exit_task is not None]
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=timeout_s)
    for c in cmds:
        if c.exit_task in pending:
            log.warning(f"{c.path} (PID {c.pid}) did not finish within {timeout_s}s")
            c.exit_task.add_done_callback(functools.partial(_late_exit, c))


def _late_exit(c: "Cmd", task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.warning(f"{c.path} (PID {c.pid}) failed after cleanup: {exc}")
    else:
        log.debug(f"{c.path} (PID {c.pid}) exited with {task.result()} after cleanup")
