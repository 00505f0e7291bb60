from __future__ import annotations

import asyncio
import errno
import logging
import os
import shutil
import time
from signal import SIGINT, SIGTERM
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

import aiofiles

from .errors import (
    AlreadyStartedError,
    AlreadyWaitedError,
    ExitError,
    InvalidWriterError,
    NotStartedError,
    ProcessExitedError,
    ShellError,
    StdinConflictError,
    guarded,
    with_timeout,
)
from .message import TYPE_READY, Message, MessageDecoder
from .pipe import BufferedPipe
from .writers import CaptureBuffer, Closers, MultiWriter, StdStreamWriter, is_raw_std_stream

if TYPE_CHECKING:
    from .shell import Shell

log = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024


class CmdState(Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    WAITED = "waited"


def _log_timestamp() -> str:
    now = time.time()
    micros = int((now - int(now)) * 1_000_000)
    return time.strftime("%Y%m%d.%H%M%S", time.gmtime(now)) + f".{micros:06d}"


class Cmd:
    """One child process owned by a Shell.

    Create with `Shell.cmd` or `Shell.fn`. Configure (`vars`, `args`,
    `stdin`, writers, pipes) before `start`; afterwards only the wait and
    signal methods apply. `start` runs at most once, `wait` at most once and
    only after `start`. A Cmd is meant to be driven from one task.
    """

    def __init__(
        self,
        sh: "Shell",
        path: str,
        args: List[str],
        vars: Dict[str, str],
        *,
        suppress_output: bool = False,
        output_dir: Optional[str] = None,
    ) -> None:
        self.path = path
        self.args = list(args)
        self.vars = dict(vars)
        self.suppress_output = suppress_output
        self.output_dir = output_dir
        self.exit_error_is_ok = False
        self.stdin: Optional[Union[bytes, str]] = None
        # Error from the last wait(), recorded even when exit_error_is_ok.
        self.err: Optional[BaseException] = None

        self._sh = sh
        self._state = CmdState.NOT_STARTED
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stdout_writers: List[Any] = []
        self._stderr_writers: List[Any] = []
        self._filtered_writers: List[Any] = []
        self._closers = Closers()
        self._stdin_pipe: Optional[BufferedPipe] = None

        self._cond = asyncio.Condition()
        self._fanout_lock = asyncio.Lock()
        self._ready = False
        self._reported: Dict[str, str] = {}
        self._exited = False
        self._stream_err: Optional[BaseException] = None

        self._readers: List[asyncio.Task] = []
        self._feeder: Optional[asyncio.Task] = None
        self._waiter: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<Cmd {self.path} state={self._state.value} pid={self.pid}>"

    # ------------------------------------------------------------------
    # Accessors

    @property
    def shell(self) -> "Shell":
        return self._sh

    @property
    def state(self) -> CmdState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    @property
    def exit_task(self) -> Optional[asyncio.Task]:
        """Completes once the process exited and its output was drained."""
        return self._waiter

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    # ------------------------------------------------------------------
    # Configuration (before start)

    @guarded
    def add_stdout_writer(self, writer: Any, *, filter_messages: bool = False) -> None:
        """Copy the child's stdout into `writer`; it is closed after the child exits.

        With `filter_messages` the writer sees stdout with protocol lines removed.
        """
        self._add_writer(writer, self._filtered_writers if filter_messages else self._stdout_writers)

    @guarded
    def add_stderr_writer(self, writer: Any) -> None:
        self._add_writer(writer, self._stderr_writers)

    @guarded
    def stdout_pipe(self) -> BufferedPipe:
        pipe = BufferedPipe()
        self._add_writer(pipe, self._stdout_writers)
        return pipe

    @guarded
    def stderr_pipe(self) -> BufferedPipe:
        pipe = BufferedPipe()
        self._add_writer(pipe, self._stderr_writers)
        return pipe

    @guarded
    def stdin_pipe(self) -> BufferedPipe:
        """Return a pipe whose contents become the child's stdin.

        Repeated calls return the same pipe. Close it to signal end of input.
        """
        if self._state is not CmdState.NOT_STARTED:
            raise AlreadyStartedError()
        if self._stdin_pipe is None:
            self._stdin_pipe = BufferedPipe()
            self._closers.add(self._stdin_pipe)
        return self._stdin_pipe

    def _add_writer(self, writer: Any, target: List[Any]) -> None:
        if self._state is not CmdState.NOT_STARTED:
            raise AlreadyStartedError()
        if is_raw_std_stream(writer):
            raise InvalidWriterError(
                "cannot attach sys.stdout/sys.stderr directly; wrap it in NopCloser"
            )
        if not callable(getattr(writer, "write", None)):
            raise InvalidWriterError(f"{writer!r} has no write method")
        target.append(writer)
        self._closers.add(writer)

    # ------------------------------------------------------------------
    # Lifecycle

    @guarded
    async def start(self) -> None:
        await self._start()

    @guarded
    async def await_ready(self, *, timeout: Optional[float] = None) -> None:
        """Block until the child sent its ready message."""
        self._check_waitable()
        await with_timeout(self._await_ready(), timeout, f"waiting for {self.path} to be ready")

    @guarded
    async def await_vars(self, *keys: str, timeout: Optional[float] = None) -> Dict[str, str]:
        """Block until the child reported every key; return exactly those keys."""
        self._check_waitable()
        return await with_timeout(
            self._await_vars(keys), timeout, f"waiting for {', '.join(keys)} from {self.path}"
        )

    @guarded
    async def wait(self, *, timeout: Optional[float] = None) -> None:
        await self._wait(timeout)

    @guarded
    async def run(self) -> None:
        await self._start()
        await self._wait(None)

    @guarded
    async def output(self) -> Tuple[bytes, bytes]:
        """Run the command and return its (stdout, stderr)."""
        stdout, stderr = CaptureBuffer(), CaptureBuffer()
        self._add_writer(stdout, self._stdout_writers)
        self._add_writer(stderr, self._stderr_writers)
        await self._start()
        await self._wait(None)
        return stdout.getvalue(), stderr.getvalue()

    @guarded
    async def combined_output(self) -> bytes:
        """Run the command and return stdout and stderr interleaved as written."""
        buf = CaptureBuffer()
        self._add_writer(buf, self._stdout_writers)
        self._add_writer(buf, self._stderr_writers)
        await self._start()
        await self._wait(None)
        return buf.getvalue()

    @guarded
    def signal(self, sig: int) -> None:
        """Send `sig`; does nothing if the process has already exited."""
        self._check_signalable()
        self._deliver(sig)

    @guarded
    async def terminate(self, sig: int = SIGTERM, *, timeout: Optional[float] = None) -> None:
        """Send `sig` and wait for the process; any exit status is accepted."""
        self._check_signalable()
        self._deliver(sig)
        await self._wait(timeout, exit_ok=True)

    @guarded
    async def shutdown(self, sig: int = SIGINT, *, timeout: Optional[float] = None) -> None:
        self._check_signalable()
        self._deliver(sig)
        await self._wait(timeout, exit_ok=True)

    # ------------------------------------------------------------------
    # Internals

    def _check_waitable(self) -> None:
        if self._state is CmdState.NOT_STARTED:
            raise NotStartedError()
        if self._state is CmdState.WAITED:
            raise AlreadyWaitedError()

    _check_signalable = _check_waitable

    def _deliver(self, sig: int) -> bool:
        if not self.is_running():
            return False
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            log.debug(f"{self.path} (PID {self.pid}) exited before signal {sig}")
            return False
        return True

    def _resolve_path(self) -> str:
        if os.path.basename(self.path) != self.path:
            return self.path
        found = shutil.which(self.path, path=self.vars.get("PATH", os.defpath))
        if found is None:
            raise FileNotFoundError(errno.ENOENT, "executable file not found in $PATH", self.path)
        return found

    async def _start(self) -> None:
        if self._state is not CmdState.NOT_STARTED:
            raise AlreadyStartedError()
        self._state = CmdState.STARTED
        try:
            if self.stdin is not None and self._stdin_pipe is not None:
                raise StdinConflictError()
            path = self._resolve_path()
            stdout, stderr, decoder = await self._build_consumers()
            self._proc = await asyncio.create_subprocess_exec(
                path,
                *self.args,
                env=self.vars,
                stdin=asyncio.subprocess.PIPE if self._wants_stdin() else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except BaseException:
            self._state = CmdState.WAITED
            self._exited = True
            await self._closers.close_all()
            raise

        log.debug(f"started {self.path} (PID {self._proc.pid})")
        self._readers = [
            asyncio.create_task(self._pump(self._proc.stdout, stdout, decoder)),
            asyncio.create_task(self._pump(self._proc.stderr, stderr, None)),
        ]
        if self._wants_stdin():
            source: Union[bytes, BufferedPipe]
            if self._stdin_pipe is not None:
                source = self._stdin_pipe
            else:
                source = self.stdin.encode("utf-8") if isinstance(self.stdin, str) else bytes(self.stdin)
            self._feeder = asyncio.create_task(self._feed_stdin(source))
        self._waiter = asyncio.create_task(self._wait_for_exit())

    def _wants_stdin(self) -> bool:
        return self.stdin is not None or self._stdin_pipe is not None

    async def _build_consumers(self) -> Tuple[MultiWriter, MultiWriter, MessageDecoder]:
        stdout: List[Any] = []
        stderr: List[Any] = []
        if not self.suppress_output:
            stdout.append(StdStreamWriter("stdout"))
            stderr.append(StdStreamWriter("stderr"))
        if self.output_dir:
            stamp = _log_timestamp()
            base = os.path.basename(self.path)
            for kind, target in (("stdout", stdout), ("stderr", stderr)):
                name = os.path.join(self.output_dir, f"{base}.{stamp}.{kind}")
                fh = await aiofiles.open(name, "xb")
                self._closers.add(fh)
                target.append(fh)
        stdout.extend(self._stdout_writers)
        stderr.extend(self._stderr_writers)

        downstream = MultiWriter(self._filtered_writers) if self._filtered_writers else None
        decoder = MessageDecoder(self._on_message, downstream)
        stdout.append(decoder)
        return MultiWriter(stdout), MultiWriter(stderr), decoder

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        writer: MultiWriter,
        decoder: Optional[MessageDecoder],
    ) -> None:
        failed = False
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            if failed:
                # Keep draining so the child never blocks on a full pipe.
                continue
            async with self._fanout_lock:
                try:
                    await writer.write(chunk)
                except Exception as exc:
                    failed = True
                    await self._fail_stream(exc)
        if decoder is not None and not failed:
            try:
                await decoder.flush()
            except Exception as exc:
                await self._fail_stream(exc)

    async def _fail_stream(self, exc: BaseException) -> None:
        if self._stream_err is None:
            self._stream_err = exc
            log.warning(f"output of {self.path} (PID {self.pid}) failed: {exc}")
        async with self._cond:
            self._cond.notify_all()

    async def _feed_stdin(self, source: Union[bytes, BufferedPipe]) -> None:
        w = self._proc.stdin
        try:
            if isinstance(source, BufferedPipe):
                while True:
                    chunk = await source.read(READ_CHUNK)
                    if not chunk:
                        break
                    w.write(chunk)
                    await w.drain()
            else:
                w.write(source)
                await w.drain()
        except (BrokenPipeError, ConnectionResetError):
            log.debug(f"{self.path} (PID {self.pid}) closed its stdin early")
        finally:
            w.close()

    async def _wait_for_exit(self) -> int:
        try:
            await asyncio.gather(*self._readers)
            returncode = await self._proc.wait()
        finally:
            if self._feeder is not None and not self._feeder.done():
                self._feeder.cancel()
            await self._closers.close_all()
            async with self._cond:
                self._exited = True
                self._cond.notify_all()
        log.debug(f"{self.path} (PID {self.pid}) exited with {returncode}")
        return returncode

    async def _on_message(self, msg: Message) -> None:
        async with self._cond:
            if msg.type == TYPE_READY:
                self._ready = True
            else:
                self._reported.update(msg.vars)
            self._cond.notify_all()

    def _released_error(self, waiting_for: str) -> BaseException:
        err = self._stream_err
        if err is None:
            return ProcessExitedError(f"{self.path} (PID {self.pid}) exited before {waiting_for}")
        if isinstance(err, ShellError):
            return err
        wrapped = ShellError(f"output of {self.path} failed: {err}")
        wrapped.__cause__ = err
        return wrapped

    async def _await_ready(self) -> None:
        async with self._cond:
            await self._cond.wait_for(
                lambda: self._ready or self._exited or self._stream_err is not None
            )
            if self._ready:
                return
        raise self._released_error("sending ready")

    async def _await_vars(self, keys: Tuple[str, ...]) -> Dict[str, str]:
        wanted = set(keys)

        def have_all() -> bool:
            return wanted.issubset(self._reported)

        async with self._cond:
            await self._cond.wait_for(
                lambda: have_all() or self._exited or self._stream_err is not None
            )
            if have_all():
                return {k: self._reported[k] for k in keys}
            missing = sorted(wanted.difference(self._reported))
        raise self._released_error(f"reporting {', '.join(missing)}")

    async def _wait(self, timeout: Optional[float], *, exit_ok: bool = False) -> None:
        self._check_waitable()
        returncode = await with_timeout(
            asyncio.shield(self._waiter), timeout, f"waiting for {self.path}"
        )
        self._state = CmdState.WAITED

        if self._stream_err is not None:
            self.err = self._released_error("finishing its output")
            raise self.err
        if returncode != 0:
            self.err = ExitError(self.path, returncode, self.pid)
            if not (exit_ok or self.exit_error_is_ok):
                raise self.err
        else:
            self.err = None
