"""Functions started as child processes by the tests."""
import asyncio
import os
import signal
import sys
import time

import procshell
from procshell import register, send_ready, send_vars


@register("exit")
def exit_with(code: int) -> None:
    sys.exit(code)


@register("sleep")
def sleep(seconds: float) -> None:
    time.sleep(seconds)


@register("ignore_sigint")
def ignore_sigint(seconds: float) -> None:
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    send_ready()
    time.sleep(seconds)


@register("echo")
def echo(*words: str) -> None:
    print(" ".join(words))


@register("print_env")
def print_env(*names: str) -> None:
    for name in names:
        print(f"{name}={os.environ.get(name, '')}")


@register("write_ab")
def write_ab(rounds: int) -> None:
    for _ in range(rounds):
        sys.stdout.write("A")
        sys.stdout.flush()
        time.sleep(0.02)
        sys.stderr.write("B")
        sys.stderr.flush()
        time.sleep(0.02)


@register("cat")
def cat() -> None:
    data = sys.stdin.buffer.read()
    sys.stdout.buffer.write(data)
    sys.stdout.flush()


@register("read_line")
def read_line() -> None:
    print(sys.stdin.readline().strip())


@register("serve")
def serve(addr: str) -> None:
    print("starting")
    send_vars({"Addr": addr})
    send_ready()
    while True:
        time.sleep(0.05)


@register("report")
def report(values: dict) -> None:
    send_vars(values)


@register("exit_before_ready")
def exit_before_ready() -> None:
    print("not ready")


@register("bad_message")
def bad_message() -> None:
    sys.stdout.write("#! {not json\n")
    sys.stdout.flush()


@register("bad_message_then_stderr")
def bad_message_then_stderr() -> None:
    sys.stdout.write("#! {not json\n")
    sys.stdout.flush()
    time.sleep(0.2)
    sys.stderr.write("late-stderr\n")
    sys.stderr.flush()


@register("unknown_message")
def unknown_message() -> None:
    sys.stdout.write('#! {"type": "bogus"}\n')
    sys.stdout.flush()


@register("async_add")
async def async_add(a: int, b: int) -> None:
    await asyncio.sleep(0.01)
    print(a + b)


@register("nested_shell")
async def nested_shell() -> None:
    sh = procshell.Shell(procshell.ShellOpts(suppress_child_output=True, kill_delay_s=0.2))
    c = sh.cmd("sleep", "30")
    await c.start()
    send_vars({"pid": str(c.pid)})
    send_ready()
    await asyncio.sleep(30)
