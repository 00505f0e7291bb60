from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import sys
import tempfile
import zipapp
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Mapping, Optional, Union

from .child import require_init_main
from .cmd import Cmd, CmdState
from .config import ENV_INVOCATION, INTERNAL_ENV_VARS, ShellOpts
from .errors import CleanupCalledError, DirStackEmptyError, ShellErrPendingError, ShellError, guarded
from .invocation import Invocation, encode_invocation
from .registry import Fn, default_registry
from .shutdown import shutdown_cmds, signal_name
from .writers import maybe_await

log = logging.getLogger(__name__)

CHILD_MODULE = "procshell._bootstrap"
EXIT_AFTER_SIGNAL = 1

_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)
_PACKAGE_ROOT = str(Path(__file__).resolve().parent.parent)

# Shells that have not been cleaned up yet, and the loop our signal
# handlers are installed on.
_live_shells: List["Shell"] = []
_signal_loop: Optional[asyncio.AbstractEventLoop] = None
_exiting = False
_exit_task: Optional[asyncio.Task] = None


class Shell:
    """Owns a set of child processes and temporary resources.

    Every command started from a Shell, every temp file and dir it handed out
    is reclaimed by `cleanup()`, which also runs when the process receives
    SIGINT, SIGTERM or SIGQUIT. Create it inside a running event loop::

        async with Shell() as sh:
            c = sh.cmd("echo", "hi")
            await c.run()
    """

    def __init__(self, opts: Optional[ShellOpts] = None) -> None:
        self._loop = asyncio.get_running_loop()
        self.opts = (opts or ShellOpts()).resolve()
        self.vars: Dict[str, str] = {}
        self.args: List[str] = []
        self.err: Optional[BaseException] = None

        self._cmds: List[Cmd] = []
        self._temp_files: List[IO[bytes]] = []
        self._temp_dirs: List[str] = []
        self._dir_stack: List[str] = []
        self._cleanup_handlers: List[Callable[[], Any]] = []
        self._cleanup_called = False
        self._cleanup_lock = asyncio.Lock()
        self._bin_dir: Optional[str] = self.opts.bin_dir

        default_registry().freeze()
        _track(self)

    def __repr__(self) -> str:
        return f"<Shell cmds={len(self._cmds)} cleanup_called={self._cleanup_called}>"

    async def __aenter__(self) -> "Shell":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self._cleanup_called:
            await self.cleanup()

    # ------------------------------------------------------------------
    # Error policy

    @property
    def shell(self) -> "Shell":
        return self

    def ok(self) -> None:
        """Raise if cleanup already ran or an earlier error is still recorded."""
        if self._cleanup_called:
            raise CleanupCalledError()
        if self.err is not None:
            raise ShellErrPendingError(self.err)

    def handle_error(self, err: BaseException) -> None:
        """Raise `err`, or record it and hand it to `opts.on_error`."""
        if self.opts.on_error is None:
            raise err
        self.err = err
        self.opts.on_error(err)

    # ------------------------------------------------------------------
    # Commands

    @guarded
    def cmd(self, name: str, *args: str, env: Optional[Mapping[str, str]] = None) -> Cmd:
        """Return an unstarted command running the program `name`."""
        return self._new_cmd(name, [str(a) for a in args], env)

    @guarded
    def fn(self, fn: Union[str, Fn, Callable[..., Any]], *args: Any,
           env: Optional[Mapping[str, str]] = None) -> Cmd:
        """Return an unstarted command running a registered function in a child process."""
        require_init_main()
        registry = default_registry()
        if isinstance(fn, Fn):
            target = fn
        elif isinstance(fn, str):
            target = registry.get(fn)
        else:
            target = registry.lookup(fn)
        checked = target.check_args(args)
        token = encode_invocation(Invocation(target.name, tuple(checked), target.module, target.path))

        child_env = dict(env or {})
        child_env[ENV_INVOCATION] = token
        child_env["PYTHONUNBUFFERED"] = "1"
        pythonpath = child_env.get("PYTHONPATH", self.vars.get("PYTHONPATH", os.environ.get("PYTHONPATH", "")))
        child_env["PYTHONPATH"] = os.pathsep.join(p for p in (_PACKAGE_ROOT, pythonpath) if p)
        return self._new_cmd(sys.executable, ["-m", CHILD_MODULE], child_env)

    def _new_cmd(self, path: str, args: List[str], env: Optional[Mapping[str, str]]) -> Cmd:
        vars = {k: v for k, v in os.environ.items() if k not in INTERNAL_ENV_VARS}
        vars.update(self.vars)
        vars.update(env or {})
        c = Cmd(
            self,
            path,
            args + list(self.args),
            vars,
            suppress_output=bool(self.opts.suppress_child_output),
            output_dir=self.opts.child_output_dir,
        )
        self._cmds.append(c)
        return c

    @guarded
    async def wait(self) -> None:
        """Wait for every started command that nobody waited for yet.

        Raises the first failure after all of them finished.
        """
        first: Optional[BaseException] = None
        for c in list(self._cmds):
            if c.state is not CmdState.STARTED:
                continue
            try:
                await c._wait(None)
            except ShellError as exc:
                log.warning(f"{c.path} (PID {c.pid}) failed: {exc}")
                if first is None:
                    first = exc
        if first is not None:
            raise first

    # ------------------------------------------------------------------
    # Temp resources, directories

    @guarded
    def make_temp_file(self, prefix: str = "procshell-", suffix: str = "") -> IO[bytes]:
        """Return an open temp file that is closed and deleted by cleanup."""
        f = tempfile.NamedTemporaryFile(prefix=prefix, suffix=suffix, delete=False)
        self._temp_files.append(f)
        return f

    @guarded
    def make_temp_dir(self, prefix: str = "procshell-") -> str:
        path = tempfile.mkdtemp(prefix=prefix)
        self._temp_dirs.append(path)
        return path

    @guarded
    def pushd(self, dir: Union[str, Path]) -> None:
        cwd = os.getcwd()
        os.chdir(dir)
        self._dir_stack.append(cwd)

    @guarded
    def popd(self) -> None:
        if not self._dir_stack:
            raise DirStackEmptyError()
        os.chdir(self._dir_stack[-1])
        self._dir_stack.pop()

    @guarded
    def add_cleanup_handler(self, handler: Callable[[], Any]) -> None:
        """Run `handler` (sync or async) at the end of cleanup, newest first."""
        self._cleanup_handlers.append(handler)

    @guarded
    async def build_zipapp(
        self,
        source: Union[str, Path],
        main: Optional[str] = None,
        name: Optional[str] = None,
    ) -> str:
        """Package `source` as `<name>.pyz` in the bin dir and return its path.

        An archive that already exists there is reused.
        """
        src = Path(source)
        target = Path(self._ensure_bin_dir()) / f"{name or src.name}.pyz"
        if target.exists():
            log.debug(f"reusing {target}")
            return str(target)
        partial = target.with_name(f".{target.name}.{os.getpid()}.tmp")
        try:
            await asyncio.to_thread(
                zipapp.create_archive,
                src,
                partial,
                interpreter="/usr/bin/env python3",
                main=main,
            )
        except zipapp.ZipAppError as exc:
            raise ShellError(f"cannot build {src}: {exc}") from exc
        os.replace(partial, target)
        log.debug(f"built {target}")
        return str(target)

    def _ensure_bin_dir(self) -> str:
        if self._bin_dir is None:
            self._bin_dir = tempfile.mkdtemp(prefix="procshell-bin-")
            self._temp_dirs.append(self._bin_dir)
        else:
            os.makedirs(self._bin_dir, exist_ok=True)
        return self._bin_dir

    # ------------------------------------------------------------------
    # Cleanup

    async def cleanup(self) -> None:
        """Stop all commands and release every resource this Shell owns.

        Calling it a second time is an error.
        """
        if self._cleanup_called:
            self.handle_error(CleanupCalledError())
            return
        await self._cleanup_once()

    async def _cleanup_once(self) -> None:
        if self._cleanup_called:
            # Already running elsewhere; wait for it to finish.
            async with self._cleanup_lock:
                return
        self._cleanup_called = True
        async with self._cleanup_lock:
            try:
                await self._cleanup()
            finally:
                _forget(self)

    async def _cleanup(self) -> None:
        try:
            await shutdown_cmds(self._cmds, policy=self.opts.shutdown_policy())
        except Exception:
            log.exception("stopping commands failed")

        for f in self._temp_files:
            try:
                f.close()
                os.remove(f.name)
            except OSError as exc:
                log.warning(f"removing temp file {f.name} failed: {exc}")
        self._temp_files = []

        for d in self._temp_dirs:
            try:
                shutil.rmtree(d)
            except OSError as exc:
                log.warning(f"removing temp dir {d} failed: {exc}")
        self._temp_dirs = []

        if self._dir_stack:
            try:
                os.chdir(self._dir_stack[0])
            except OSError as exc:
                log.warning(f"restoring working directory failed: {exc}")
            self._dir_stack = []

        while self._cleanup_handlers:
            handler = self._cleanup_handlers.pop()
            try:
                await maybe_await(handler())
            except Exception:
                log.exception(f"cleanup handler {handler!r} failed")


# ----------------------------------------------------------------------
# Signal listener

def _track(sh: Shell) -> None:
    _live_shells[:] = [s for s in _live_shells if not s._loop.is_closed()]
    _live_shells.append(sh)
    _install_signal_handlers(sh._loop)


def _forget(sh: Shell) -> None:
    _live_shells[:] = [s for s in _live_shells if s is not sh and not s._loop.is_closed()]
    if not any(s._loop is _signal_loop for s in _live_shells):
        _remove_signal_handlers()


def _install_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    global _signal_loop
    if _signal_loop is loop:
        return
    _remove_signal_handlers()
    try:
        for sig in _HANDLED_SIGNALS:
            loop.add_signal_handler(sig, _on_signal, sig)
    except (RuntimeError, ValueError) as exc:
        # Only possible from the main thread.
        log.debug(f"signal handlers not installed: {exc}")
        return
    _signal_loop = loop


def _remove_signal_handlers() -> None:
    global _signal_loop
    loop, _signal_loop = _signal_loop, None
    if loop is None or loop.is_closed():
        return
    for sig in _HANDLED_SIGNALS:
        try:
            loop.remove_signal_handler(sig)
        except (RuntimeError, ValueError) as exc:
            log.debug(f"removing handler for {signal_name(sig)} failed: {exc}")


def _on_signal(sig: int) -> None:
    global _exiting, _exit_task
    if _exiting:
        return
    _exiting = True
    log.error(f"received {signal_name(sig)}; cleaning up and exiting")
    _exit_task = asyncio.get_running_loop().create_task(_cleanup_all_and_exit())


async def _cleanup_all_and_exit() -> None:
    for sh in list(_live_shells):
        try:
            await sh._cleanup_once()
        except Exception:
            log.exception("cleanup after signal failed")
    for stream in (sys.stdout, sys.stderr):
        if stream is not None:
            stream.flush()
    logging.shutdown()
    os._exit(EXIT_AFTER_SIGNAL)
