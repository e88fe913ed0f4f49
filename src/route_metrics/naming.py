"""Metric name construction and per-request template resolution."""

import re
from typing import (
    Any,
    Callable,
    Sequence,
    Union,
)

from route_metrics.core.exceptions import MetricNameFormatError

_PLACEHOLDER = re.compile(
    r"%(?:\([^)]*\))?[-#0 +]*(?:\*|\d+)?(?:\.(?:\*|\d+))?[hlL]?[diouxXeEfFgGcrsa%]"
)


def name(owner: Union[str, type], *names: str) -> str:
    """
    Join name parts with dots, skipping empty parts.

    A class owner expands to its fully qualified name.
    """
    if isinstance(owner, type):
        owner = f"{owner.__module__}.{owner.__qualname__}"
    return ".".join(part for part in (owner, *names) if part)


def declaring_name(func: Callable[..., Any]) -> str:
    """Qualified name of the class declaring ``func``, or its module for plain functions."""
    func = getattr(func, "__func__", func)
    module = getattr(func, "__module__", None) or ""
    qualname = getattr(func, "__qualname__", "")
    owner, _, _ = qualname.rpartition(".")
    return name(module, owner)


def choose_name(
    explicit_name: str,
    absolute: bool,
    func: Callable[..., Any],
    *suffixes: str,
) -> str:
    if explicit_name:
        if absolute:
            return explicit_name
        return name(declaring_name(func), explicit_name)
    return name(declaring_name(func), func.__name__, *suffixes)


def count_placeholders(template: str) -> int:
    """
    Count the positional placeholders in ``template``.

    Raises:
        ValueError: if a placeholder takes a mapping key or a ``*`` width or
            precision, neither of which can be filled from name parameters
    """
    count = 0
    for match in _PLACEHOLDER.finditer(template):
        spec = match.group()
        if spec == "%%":
            continue
        if spec.startswith("%(") or "*" in spec:
            raise ValueError(f"Unsupported placeholder '{spec}' in metric name '{template}'")
        count += 1
    return count


def format_name(template: str, args: Sequence[Any]) -> str:
    """Substitute ``args`` into the printf-style ``template``, in order."""
    values = tuple(args)
    try:
        return template % values
    except (TypeError, ValueError, KeyError) as e:
        raise MetricNameFormatError(template, values, e) from e
