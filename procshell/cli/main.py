import argparse
import asyncio
import dataclasses
import sys
from typing import Dict, List, Optional

from .. import __version__
from ..config import ShellOpts, load_opts
from ..errors import ShellError
from ..logging_utils import configure_logging
from ..shell import Shell

EXIT_COMMAND_NOT_FOUND = 127


def _parse_env_kv(pairs: Optional[List[str]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in pairs or []:
        if "=" not in item:
            raise ValueError(f"Invalid --env value {item!r} (expected KEY=VALUE)")
        k, v = item.split("=", 1)
        k = k.strip()
        if not k:
            raise ValueError(f"Invalid --env value {item!r} (empty KEY)")
        out[k] = v
    return out


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="procshell", description="Run and supervise child processes")
    parser.add_argument("--log-level", default=None, help="Log level (default: $PROCSHELL_LOG_LEVEL or WARNING)")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # procshell run [options] -- cmd args...
    run_parser = subparsers.add_parser("run", help="Run one command under a Shell")
    run_parser.add_argument("--config", default=None, help="YAML file with shell options")
    run_parser.add_argument("--suppress-output", action="store_true", help="Do not copy child output to this terminal")
    run_parser.add_argument("--output-dir", default=None, help="Also write child output to log files in DIR")
    run_parser.add_argument("--env", action="append", default=None, help="Environment override KEY=VALUE (repeatable)")
    run_parser.add_argument("--await-ready", action="store_true", help="Wait for the child to report readiness")
    run_parser.add_argument("--await-var", action="append", default=None, help="Wait for a reported variable and print KEY=VALUE (repeatable)")
    run_parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait for readiness/variables")
    run_parser.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to run (prefix with --)")

    subparsers.add_parser("version", help="Print the procshell version")
    return parser


def _run_opts(args: argparse.Namespace) -> ShellOpts:
    opts = load_opts(args.config) if args.config else ShellOpts()
    if args.suppress_output:
        opts = dataclasses.replace(opts, suppress_child_output=True)
    if args.output_dir:
        opts = dataclasses.replace(opts, child_output_dir=args.output_dir)
    return opts


async def run_async(args: argparse.Namespace) -> int:
    cmd = list(args.cmd or [])
    if cmd and cmd[0] == "--":
        cmd = cmd[1:]
    if not cmd:
        raise SystemExit("procshell run requires a command. Example: procshell run -- sleep 1")
    env = _parse_env_kv(args.env)

    async with Shell(_run_opts(args)) as sh:
        c = sh.cmd(cmd[0], *cmd[1:], env=env)
        c.exit_error_is_ok = True
        await c.start()
        if args.await_ready:
            await c.await_ready(timeout=args.timeout)
        if args.await_var:
            values = await c.await_vars(*args.await_var, timeout=args.timeout)
            for key in args.await_var:
                print(f"{key}={values[key]}", flush=True)
        await c.wait()
        returncode = c.returncode
    return returncode if returncode >= 0 else 128 - returncode


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "version":
        print(__version__)
        return 0

    configure_logging(args.log_level)
    try:
        return asyncio.run(run_async(args))
    except FileNotFoundError as exc:
        print(f"procshell: {exc}", file=sys.stderr)
        return EXIT_COMMAND_NOT_FOUND
    except (ShellError, OSError, ValueError) as exc:
        print(f"procshell: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
