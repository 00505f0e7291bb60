"""Child side of procshell.

A function started with `Shell.fn` runs in a fresh interpreter launched as
``python -m procshell._bootstrap``. The bootstrap decodes the invocation from
PROCSHELL_INVOCATION, imports the module that registered the function and
calls it. Programs that start functions must call `init_main()` once, early
in their entry point.
"""
from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import os
import runpy
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Mapping, Optional, Set

import psutil

from .config import ENV_INVOCATION
from .errors import InitMainNotCalledError, InvocationDecodeError, ShellError
from .invocation import Invocation, decode_invocation
from .message import TYPE_READY, TYPE_VARS, Message, encode_message
from .registry import Registry, default_registry

log = logging.getLogger(__name__)

_initialized = False

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def is_initialized() -> bool:
    return _initialized


def require_init_main() -> None:
    if not _initialized:
        raise InitMainNotCalledError()


def init_main() -> None:
    """Mark this program as able to start registered functions.

    When the process was started by `Shell.fn` this runs the requested
    function and exits instead of returning.
    """
    global _initialized
    _initialized = True
    token = os.environ.pop(ENV_INVOCATION, None)
    if token is None:
        return
    try:
        inv = decode_invocation(token)
    except ShellError as exc:
        log.error(f"cannot start function: {exc}")
        sys.exit(EXIT_FAILURE)
    sys.exit(_dispatch(inv))


# ------------------------------------------------------------------
# Messages to the parent

def _send(msg: Message) -> None:
    data = encode_message(msg)
    stream = sys.stdout
    stream.flush()
    buffer = getattr(stream, "buffer", None)
    if buffer is not None:
        buffer.write(data)
        buffer.flush()
    else:
        stream.write(data.decode("utf-8"))
        stream.flush()


def send_ready() -> None:
    """Tell the parent this process is ready. Output must be at a line start."""
    _send(Message(TYPE_READY))


def send_vars(vars: Mapping[str, str]) -> None:
    for key, value in vars.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise TypeError(f"vars must map strings to strings, got {key!r}: {value!r}")
    _send(Message(TYPE_VARS, dict(vars)))


# ------------------------------------------------------------------
# Parent watch

def watch_parent(interval_s: float = 1.0) -> threading.Thread:
    """Exit this process once its parent is gone."""
    ppid = os.getppid()
    try:
        parent: Optional[psutil.Process] = psutil.Process(ppid)
    except psutil.NoSuchProcess:
        parent = None

    def _watch() -> None:
        while True:
            if parent is None or os.getppid() != ppid or not parent.is_running():
                log.warning(f"parent process {ppid} is gone; exiting")
                os._exit(EXIT_OK)
            time.sleep(interval_s)

    thread = threading.Thread(target=_watch, name="procshell-watch-parent", daemon=True)
    thread.start()
    return thread


# ------------------------------------------------------------------
# Dispatch

def _exit_on_sigterm(signum, frame) -> None:
    raise SystemExit(128 + signum)


def _install_signal_handlers() -> None:
    if signal.getsignal(signal.SIGTERM) is signal.SIG_DFL:
        signal.signal(signal.SIGTERM, _exit_on_sigterm)


def run_invocation(inv: Invocation, registry: Optional[Registry] = None) -> int:
    """Call the invoked function; returns the process exit status."""
    registry = registry or default_registry()
    try:
        result = registry.call(inv.name, *inv.args)
        if inspect.iscoroutine(result):
            asyncio.run(result)
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except ShellError as exc:
        log.error(f"{inv.name}: {exc}")
        return EXIT_FAILURE
    except Exception:
        log.exception(f"{inv.name} failed")
        return EXIT_FAILURE
    return EXIT_OK


def _dispatch(inv: Invocation) -> int:
    watch_parent()
    _install_signal_handlers()
    return run_invocation(inv)


def _module_prefixes(module: str) -> Set[str]:
    parts = module.split(".")
    return {".".join(parts[:i]) for i in range(1, len(parts) + 1)}


def _import_root(path: str, module: str) -> str:
    p = Path(path).resolve()
    depth = len(module.split("."))
    levels = depth if p.name == "__init__.py" else depth - 1
    root = p.parent
    for _ in range(levels):
        root = root.parent
    return str(root)


def import_origin(inv: Invocation) -> None:
    """Import the module that registered `inv.name` so the registry has it."""
    if not inv.module:
        return
    if inv.module == "__main__":
        if not inv.path:
            raise InvocationDecodeError("cannot locate the parent's __main__ script")
        runpy.run_path(inv.path, run_name="__procshell_main__")
        return
    try:
        importlib.import_module(inv.module)
        return
    except ModuleNotFoundError as exc:
        if not inv.path or exc.name not in _module_prefixes(inv.module):
            raise
    root = _import_root(inv.path, inv.module)
    log.debug(f"adding {root} to sys.path to import {inv.module}")
    sys.path.insert(0, root)
    importlib.import_module(inv.module)


def main() -> int:
    global _initialized
    token = os.environ.pop(ENV_INVOCATION, None)
    if not token:
        print(f"procshell.child: {ENV_INVOCATION} is not set", file=sys.stderr)
        return 2
    try:
        inv = decode_invocation(token)
        import_origin(inv)
    except ShellError as exc:
        log.error(f"cannot start function: {exc}")
        return EXIT_FAILURE
    except Exception:
        log.exception("cannot import the function's module")
        return EXIT_FAILURE
    _initialized = True
    return _dispatch(inv)
