"""
Script Tools — Python callables exposed to the model through the tool catalog.

A catalog entry of kind ``script`` carries a function declaration such as
``calc_interest($1, $2)``. The function name is resolved against an explicit
ScriptRegistry built at composition time; the model's positional arguments are
passed through as strings. Callables may be sync or async.
"""

import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

ScriptFn = Callable[..., Union[str, Awaitable[str]]]

_PLACEHOLDER = re.compile(r"\$(\d+)")


class ScriptError(Exception):
    """Raised when a script declaration cannot be resolved."""
    pass


class ScriptRegistry:
    """Name -> callable table for script tools."""

    def __init__(self):
        self._scripts: dict[str, ScriptFn] = {}

    def register(self, name: str, fn: ScriptFn):
        """Register a callable under the name used in tool declarations."""
        if not name or not callable(fn):
            raise ValueError(f"invalid script registration: {name!r}")
        self._scripts[name] = fn

    def get(self, name: str) -> Optional[ScriptFn]:
        return self._scripts.get(name)

    def names(self) -> list[str]:
        return sorted(self._scripts)


def bind_declaration(declaration: str, args: list[str]) -> str:
    """Substitute $1..$N in a declaration. Unknown placeholders are left as-is."""
    def _sub(match: re.Match) -> str:
        idx = int(match.group(1))
        if 1 <= idx <= len(args):
            return args[idx - 1]
        return match.group(0)
    return _PLACEHOLDER.sub(_sub, declaration)


def declaration_name(declaration: str) -> str:
    """``calc_interest($1, $2)`` -> ``calc_interest``."""
    return declaration.split("(", 1)[0].strip()


async def run_script(registry: ScriptRegistry, declaration: str, args: list[str]) -> str:
    """Resolve and run a script tool, returning its output as text."""
    name = declaration_name(declaration)
    if not name:
        raise ScriptError("script tool has no function declaration")
    fn = registry.get(name)
    if fn is None:
        raise ScriptError(f"function '{name}' is not registered")

    logger.debug("Running script %s", bind_declaration(declaration, args))
    result = fn(*args)
    if asyncio.iscoroutine(result):
        result = await result
    return str(result)
