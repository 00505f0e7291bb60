"""procshell - start, supervise and clean up child processes from asyncio."""

__version__ = "0.1.0"

from .errors import (
    AlreadyStartedError,
    AlreadyWaitedError,
    ArgumentCountError,
    ArgumentTypeError,
    CleanupCalledError,
    ClosedPipeError,
    DirStackEmptyError,
    DuplicateRegistrationError,
    ExitError,
    InitMainNotCalledError,
    InvalidWriterError,
    InvocationDecodeError,
    InvocationEncodeError,
    NotStartedError,
    ProcessExitedError,
    ProtocolError,
    RegistryFrozenError,
    ShellErrPendingError,
    ShellError,
    StdinConflictError,
    UnknownFunctionError,
    WaitTimeoutError,
)
from .pipe import BufferedPipe
from .message import Message, MessageDecoder, encode_message
from .writers import CaptureBuffer, MultiWriter, NopCloser, StdStreamWriter
from .cmd import Cmd, CmdState
from .shutdown import ShutdownPolicy
from .config import ShellOpts, load_opts
from .registry import Fn, Registry, call, default_registry, register
from .invocation import Invocation, decode_invocation, encode_invocation
from .child import init_main, send_ready, send_vars, watch_parent
from .shell import Shell
from .logging_utils import configure_logging

__all__ = [
    "Shell",
    "ShellOpts",
    "load_opts",
    "Cmd",
    "CmdState",
    "ShutdownPolicy",
    "BufferedPipe",
    "Message",
    "MessageDecoder",
    "encode_message",
    "CaptureBuffer",
    "MultiWriter",
    "NopCloser",
    "StdStreamWriter",
    "Fn",
    "Registry",
    "register",
    "call",
    "default_registry",
    "Invocation",
    "encode_invocation",
    "decode_invocation",
    "init_main",
    "send_ready",
    "send_vars",
    "watch_parent",
    "configure_logging",
    "ShellError",
    "AlreadyStartedError",
    "AlreadyWaitedError",
    "ArgumentCountError",
    "ArgumentTypeError",
    "CleanupCalledError",
    "ClosedPipeError",
    "DirStackEmptyError",
    "DuplicateRegistrationError",
    "ExitError",
    "InitMainNotCalledError",
    "InvalidWriterError",
    "InvocationDecodeError",
    "InvocationEncodeError",
    "NotStartedError",
    "ProcessExitedError",
    "ProtocolError",
    "RegistryFrozenError",
    "ShellErrPendingError",
    "StdinConflictError",
    "UnknownFunctionError",
    "WaitTimeoutError",
]
