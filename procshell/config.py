from __future__ import annotations

import dataclasses
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import yaml

from .shutdown import ShutdownPolicy

ENV_INVOCATION = "PROCSHELL_INVOCATION"
ENV_SUPPRESS_CHILD_OUTPUT = "PROCSHELL_SUPPRESS_CHILD_OUTPUT"
ENV_CHILD_OUTPUT_DIR = "PROCSHELL_CHILD_OUTPUT_DIR"
ENV_BIN_DIR = "PROCSHELL_BIN_DIR"
ENV_LOG_LEVEL = "PROCSHELL_LOG_LEVEL"

# Never inherited by commands started from a Shell.
INTERNAL_ENV_VARS = (ENV_INVOCATION,)


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    val = str(raw).strip().lower()
    return val in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class ShellOpts:
    """Options for a Shell. `None` means "take the default from the environment"."""

    suppress_child_output: Optional[bool] = None
    child_output_dir: Optional[str] = None
    bin_dir: Optional[str] = None
    on_error: Optional[Callable[[BaseException], Any]] = None
    interrupt_signal: int = signal.SIGINT
    interrupt_grace_s: float = 0.05
    kill_delay_s: float = 1.0
    kill_wait_s: float = 1.0

    def resolve(self) -> "ShellOpts":
        """Fill unset fields from PROCSHELL_* environment variables."""
        suppress = self.suppress_child_output
        if suppress is None:
            suppress = _truthy_env(ENV_SUPPRESS_CHILD_OUTPUT)
        output_dir = self.child_output_dir
        if output_dir is None:
            output_dir = os.environ.get(ENV_CHILD_OUTPUT_DIR) or None
        bin_dir = self.bin_dir
        if bin_dir is None:
            bin_dir = os.environ.get(ENV_BIN_DIR) or None
        return dataclasses.replace(
            self,
            suppress_child_output=suppress,
            child_output_dir=output_dir,
            bin_dir=bin_dir,
        )

    def shutdown_policy(self) -> ShutdownPolicy:
        return ShutdownPolicy(
            interrupt_signal=self.interrupt_signal,
            interrupt_grace_s=self.interrupt_grace_s,
            kill_delay_s=self.kill_delay_s,
            kill_wait_s=self.kill_wait_s,
        )


_YAML_FIELDS = {
    "suppress_child_output",
    "child_output_dir",
    "bin_dir",
    "interrupt_signal",
    "interrupt_grace_s",
    "kill_delay_s",
    "kill_wait_s",
}


def _parse_signal(raw: Any) -> int:
    if isinstance(raw, bool):
        raise ValueError(f"invalid interrupt_signal {raw!r}")
    if isinstance(raw, int):
        return int(signal.Signals(raw))
    if isinstance(raw, str):
        name = raw.strip().upper()
        if not name.startswith("SIG"):
            name = "SIG" + name
        try:
            return int(signal.Signals[name])
        except KeyError:
            raise ValueError(f"unknown signal {raw!r}") from None
    raise ValueError(f"invalid interrupt_signal {raw!r}")


def _parse_seconds(key: str, raw: Any) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValueError(f"{key} must be a number of seconds")
    if raw < 0:
        raise ValueError(f"{key} must not be negative")
    return float(raw)


def parse_opts_data(raw: Any) -> ShellOpts:
    """Build ShellOpts from an in-memory mapping (e.g. a parsed YAML document)."""
    if raw is None:
        return ShellOpts()
    if not isinstance(raw, dict):
        raise ValueError("shell options must be a mapping")
    unknown = sorted(str(k) for k in raw if k not in _YAML_FIELDS)
    if unknown:
        raise ValueError(f"unknown shell option(s): {', '.join(unknown)}")

    kwargs: Dict[str, Any] = {}
    if raw.get("suppress_child_output") is not None:
        kwargs["suppress_child_output"] = bool(raw["suppress_child_output"])
    for key in ("child_output_dir", "bin_dir"):
        if raw.get(key) is not None:
            kwargs[key] = os.path.expanduser(str(raw[key]))
    if raw.get("interrupt_signal") is not None:
        kwargs["interrupt_signal"] = _parse_signal(raw["interrupt_signal"])
    for key in ("interrupt_grace_s", "kill_delay_s", "kill_wait_s"):
        if raw.get(key) is not None:
            kwargs[key] = _parse_seconds(key, raw[key])
    return ShellOpts(**kwargs)


def load_opts(path: Union[str, Path]) -> ShellOpts:
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    return parse_opts_data(raw)
