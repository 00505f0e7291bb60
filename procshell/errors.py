from __future__ import annotations

import asyncio
import functools
import inspect
from typing import Any, Callable, Optional


class ShellError(Exception):
    """Base class for every error raised by procshell."""


# ------------------------------------------------------------------
# Usage errors

class AlreadyStartedError(ShellError):
    def __init__(self) -> None:
        super().__init__("already called start")


class AlreadyWaitedError(ShellError):
    def __init__(self) -> None:
        super().__init__("already called wait")


class NotStartedError(ShellError):
    def __init__(self) -> None:
        super().__init__("not started")


class CleanupCalledError(ShellError):
    def __init__(self) -> None:
        super().__init__("already called cleanup")


class ShellErrPendingError(ShellError):
    """Raised while a previous error is still recorded on the Shell."""

    def __init__(self, err: BaseException) -> None:
        super().__init__(f"shell has a pending error: {err}")
        self.err = err


class DirStackEmptyError(ShellError):
    def __init__(self) -> None:
        super().__init__("dir stack is empty")


class InitMainNotCalledError(ShellError):
    def __init__(self) -> None:
        super().__init__("did not call procshell.init_main()")


class DuplicateRegistrationError(ShellError):
    def __init__(self, name: str) -> None:
        super().__init__(f"already registered: {name}")
        self.name = name


class RegistryFrozenError(ShellError):
    def __init__(self, name: str) -> None:
        super().__init__(f"cannot register {name!r}: registry is frozen once a Shell exists")
        self.name = name


class UnknownFunctionError(ShellError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unknown function: {name}")
        self.name = name


class ArgumentCountError(ShellError):
    pass


class ArgumentTypeError(ShellError):
    pass


class InvalidWriterError(ShellError):
    pass


class StdinConflictError(ShellError):
    def __init__(self) -> None:
        super().__init__("cannot set both stdin and stdin_pipe()")


class InvocationEncodeError(ShellError):
    pass


class InvocationDecodeError(ShellError):
    pass


# ------------------------------------------------------------------
# Operational errors

class ExitError(ShellError):
    """A command exited with a non-zero status."""

    def __init__(self, path: str, returncode: int, pid: Optional[int] = None) -> None:
        if returncode < 0:
            detail = f"killed by signal {-returncode}"
        else:
            detail = f"exit status {returncode}"
        super().__init__(f"{path} (PID {pid}): {detail}")
        self.path = path
        self.returncode = returncode
        self.pid = pid


class ProcessExitedError(ShellError):
    """The process exited while a caller was waiting for a message from it."""


class WaitTimeoutError(ShellError):
    pass


class ClosedPipeError(ShellError):
    def __init__(self) -> None:
        super().__init__("write on closed pipe")


# ------------------------------------------------------------------
# Protocol errors

class ProtocolError(ShellError):
    """A child wrote a malformed or unknown message."""


# ------------------------------------------------------------------
# Routing

async def with_timeout(aw: Any, timeout: Optional[float], what: str) -> Any:
    """Await `aw`, raising `WaitTimeoutError` after `timeout` seconds."""
    if timeout is None:
        return await aw
    try:
        return await asyncio.wait_for(aw, timeout)
    except asyncio.TimeoutError as exc:
        raise WaitTimeoutError(f"{what} timed out after {timeout}s") from exc


def guarded(method: Callable) -> Callable:
    """Route ShellError/OSError raised by a Shell or Cmd method through
    `Shell.handle_error`.

    The owning shell is taken from `self.shell`. A pending shell error makes
    the call raise `ShellErrPendingError` before the method runs.
    """
    if inspect.iscoroutinefunction(method):
        @functools.wraps(method)
        async def async_wrapper(self, *args: Any, **kwargs: Any) -> Any:
            sh = self.shell
            sh.ok()
            try:
                return await method(self, *args, **kwargs)
            except (ShellError, OSError) as exc:
                sh.handle_error(exc)
                return None
        return async_wrapper

    @functools.wraps(method)
    def wrapper(self, *args: Any, **kwargs: Any) -> Any:
        sh = self.shell
        sh.ok()
        try:
            return method(self, *args, **kwargs)
        except (ShellError, OSError) as exc:
            sh.handle_error(exc)
            return None
    return wrapper
