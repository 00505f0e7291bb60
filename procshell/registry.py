"""Registry of functions that can be started as child processes.

Functions are registered at import time under a unique name::

    @procshell.register("serve")
    def serve(addr: str, workers: int = 1) -> None:
        ...

`Shell.fn("serve", ...)` then starts a fresh interpreter that imports the
registering module and calls the function with the given arguments.
"""
from __future__ import annotations

import datetime
import inspect
import logging
import sys
import types
import typing
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import (
    ArgumentCountError,
    ArgumentTypeError,
    DuplicateRegistrationError,
    RegistryFrozenError,
    UnknownFunctionError,
)

log = logging.getLogger(__name__)

_UNION_TYPES = (typing.Union, types.UnionType)

_ZERO_VALUES: Dict[Any, Any] = {
    bool: False,
    int: 0,
    float: 0.0,
    str: "",
    bytes: b"",
    list: [],
    tuple: (),
    dict: {},
    datetime.timedelta: datetime.timedelta(0),
}


@dataclass(frozen=True)
class Param:
    name: str
    annotation: Any = Any
    has_default: bool = False


def _is_any(annotation: Any) -> bool:
    return annotation is Any or annotation is inspect.Parameter.empty or annotation is None


def zero_value(annotation: Any) -> Any:
    """The value substituted for a None argument of the given type."""
    if _is_any(annotation):
        return None
    origin = typing.get_origin(annotation)
    if origin in _UNION_TYPES:
        return None
    key = origin or annotation
    if key in _ZERO_VALUES:
        value = _ZERO_VALUES[key]
        return type(value)() if isinstance(value, (list, dict)) else value
    if isinstance(key, type):
        try:
            return key()
        except TypeError as exc:
            raise ArgumentTypeError(f"no zero value for {key.__name__}") from exc
    raise ArgumentTypeError(f"no zero value for {annotation!r}")


def _type_name(annotation: Any) -> str:
    return getattr(annotation, "__name__", None) or repr(annotation)


def check_value(value: Any, annotation: Any, where: str) -> Any:
    """Validate `value` against `annotation`; returns it, possibly coerced."""
    if _is_any(annotation):
        return value

    origin = typing.get_origin(annotation)
    if origin in _UNION_TYPES:
        members = typing.get_args(annotation)
        if value is None and type(None) in members:
            return None
        for member in members:
            if member is type(None):
                continue
            try:
                return check_value(value, member, where)
            except ArgumentTypeError:
                continue
        raise ArgumentTypeError(f"{where}: {value!r} does not match {annotation!r}")

    if value is None:
        return zero_value(annotation)

    if annotation is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ArgumentTypeError(f"{where}: expected float, got {type(value).__name__}")
        return float(value)
    if annotation is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ArgumentTypeError(f"{where}: expected int, got {type(value).__name__}")
        return value

    if origin in (list, tuple, dict):
        if not isinstance(value, origin):
            raise ArgumentTypeError(
                f"{where}: expected {origin.__name__}, got {type(value).__name__}"
            )
        params = typing.get_args(annotation)
        if origin is list and params:
            return [check_value(v, params[0], f"{where}[{i}]") for i, v in enumerate(value)]
        if origin is dict and len(params) == 2:
            return {
                check_value(k, params[0], f"{where} key"): check_value(v, params[1], f"{where}[{k!r}]")
                for k, v in value.items()
            }
        if origin is tuple and params:
            if len(params) == 2 and params[1] is Ellipsis:
                return tuple(check_value(v, params[0], f"{where}[{i}]") for i, v in enumerate(value))
            if len(params) != len(value):
                raise ArgumentTypeError(f"{where}: expected {len(params)} items, got {len(value)}")
            return tuple(check_value(v, p, f"{where}[{i}]") for i, (v, p) in enumerate(zip(value, params)))
        return value

    check_type = origin or annotation
    if isinstance(check_type, type):
        if not isinstance(value, check_type):
            raise ArgumentTypeError(
                f"{where}: expected {_type_name(check_type)}, got {type(value).__name__}"
            )
        return value
    # Unsupported typing construct (TypeVar, Literal, ...): accept as is.
    return value


class Fn:
    """A registered function together with its parameter schema."""

    def __init__(self, name: str, func: Callable[..., Any]) -> None:
        if not callable(func):
            raise TypeError(f"cannot register {name!r}: {func!r} is not callable")
        self.name = name
        self.func = func
        self.params, self.variadic = _build_schema(name, func)
        self.module = getattr(func, "__module__", None) or "__main__"
        module = sys.modules.get(self.module)
        self.path: Optional[str] = getattr(module, "__file__", None)

    def __repr__(self) -> str:
        return f"<Fn {self.name} {self.module}>"

    def check_args(self, args: Tuple[Any, ...]) -> List[Any]:
        """Validate and coerce positional arguments against the schema."""
        want = len(self.params)
        required = sum(1 for p in self.params if not p.has_default)
        got = len(args)
        if got < required or (self.variadic is None and got > want):
            if self.variadic is not None:
                expected = f"at least {required}"
            elif required == want:
                expected = str(want)
            else:
                expected = f"{required} to {want}"
            raise ArgumentCountError(
                f"wrong number of arguments for {self.name!r}: got {got}, want {expected}"
            )
        out: List[Any] = []
        for i, value in enumerate(args):
            param = self.params[i] if i < want else self.variadic
            out.append(check_value(value, param.annotation, f"{self.name}: argument {i} ({param.name})"))
        return out

    def call(self, *args: Any) -> Any:
        return self.func(*self.check_args(args))


def _build_schema(name: str, func: Callable[..., Any]) -> Tuple[List[Param], Optional[Param]]:
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError) as exc:
        raise TypeError(f"cannot register {name!r}: {exc}") from exc
    try:
        hints = typing.get_type_hints(func)
    except (NameError, TypeError):
        hints = {}

    params: List[Param] = []
    variadic: Optional[Param] = None
    for p in sig.parameters.values():
        annotation = hints.get(p.name, Any)
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD):
            params.append(Param(p.name, annotation, p.default is not inspect.Parameter.empty))
        elif p.kind is p.VAR_POSITIONAL:
            variadic = Param(p.name, annotation)
        elif p.kind is p.KEYWORD_ONLY and p.default is inspect.Parameter.empty:
            raise TypeError(f"cannot register {name!r}: keyword-only parameter {p.name!r}")
        elif p.kind is p.VAR_KEYWORD:
            log.debug(f"{name}: **{p.name} is never filled by an invocation")
    return params, variadic


class Registry:
    def __init__(self) -> None:
        self._fns: Dict[str, Fn] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def __contains__(self, name: str) -> bool:
        return name in self._fns

    def __len__(self) -> int:
        return len(self._fns)

    def names(self) -> List[str]:
        return sorted(self._fns)

    def register(self, name: str, func: Optional[Callable[..., Any]] = None) -> Any:
        """Register `func` under `name`; without `func`, return a decorator."""
        if func is None:
            def decorator(f: Callable[..., Any]) -> Callable[..., Any]:
                self.register(name, f)
                return f
            return decorator

        if self._frozen:
            raise RegistryFrozenError(name)
        if name in self._fns:
            raise DuplicateRegistrationError(name)
        fn = Fn(name, func)
        self._fns[name] = fn
        return fn

    def get(self, name: str) -> Fn:
        fn = self._fns.get(name)
        if fn is None:
            raise UnknownFunctionError(name)
        return fn

    def lookup(self, func: Callable[..., Any]) -> Fn:
        """Find the registration of a function object."""
        for fn in self._fns.values():
            if fn.func is func:
                return fn
        raise UnknownFunctionError(getattr(func, "__qualname__", repr(func)))

    def call(self, name: str, *args: Any) -> Any:
        return self.get(name).call(*args)


_registry = Registry()


def default_registry() -> Registry:
    return _registry


def register(name: str, func: Optional[Callable[..., Any]] = None) -> Any:
    return _registry.register(name, func)


def call(name: str, *args: Any) -> Any:
    return _registry.call(name, *args)
