"""
Metric declarations for route endpoints.

Endpoints opt into instrumentation with decorators placed *below* the route
decorator, and may feed request arguments into the metric name with a
``MetricNameParam`` marker in the parameter's ``Annotated`` metadata:

    @router.get("/orders/{region}")
    @timed(name="orders[%s]", absolute=True)
    @exception_metered(cause=OSError)
    async def list_orders(region: Annotated[str, MetricNameParam(0)]):
        ...

Each call to ``list_orders`` then updates the timer ``orders[<region>]``, and
the meter ``<module>.list_orders.exceptions`` whenever the call fails with an
``OSError`` (directly or as the explicit cause of the raised exception).
"""

from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    Optional,
    Type,
    TypeVar,
    Union,
)

F = TypeVar("F", bound=Callable[..., Any])

ANNOTATIONS_ATTRIBUTE = "__route_metrics__"


@dataclass(frozen=True)
class Timed:
    """Time every invocation of the endpoint."""

    name: str = ""
    absolute: bool = False


@dataclass(frozen=True)
class Metered:
    """Mark a meter once per invocation, before the endpoint body runs."""

    name: str = ""
    absolute: bool = False


@dataclass(frozen=True)
class ExceptionMetered:
    """Mark a meter when the endpoint raises ``cause`` (or wraps it)."""

    DEFAULT_NAME_SUFFIX = "exceptions"

    name: str = ""
    absolute: bool = False
    cause: Type[Exception] = Exception

    def __post_init__(self):
        if not (isinstance(self.cause, type) and issubclass(self.cause, Exception)):
            raise ValueError(f"ExceptionMetered cause must be an Exception subclass, got {self.cause!r}")


Declaration = Union[Timed, Metered, ExceptionMetered]


@dataclass(frozen=True)
class MetricNameParam:
    """
    Marks a parameter as an argument to inject into the metric name.

    ``index`` is the 0-based position of the value among the name template's
    placeholders. The indices declared on one endpoint must be contiguous.
    """

    index: int

    def __post_init__(self):
        if not isinstance(self.index, int) or self.index < 0:
            raise ValueError(f"MetricNameParam index must be a non-negative int, got {self.index!r}")


def _declare(declaration: Declaration) -> Callable[[F], F]:
    def decorator(func: F) -> F:
        declarations = dict(getattr(func, ANNOTATIONS_ATTRIBUTE, {}))
        declarations[type(declaration)] = declaration
        setattr(func, ANNOTATIONS_ATTRIBUTE, declarations)
        return func

    return decorator


def timed(name: str = "", absolute: bool = False) -> Callable[[F], F]:
    return _declare(Timed(name=name, absolute=absolute))


def metered(name: str = "", absolute: bool = False) -> Callable[[F], F]:
    return _declare(Metered(name=name, absolute=absolute))


def exception_metered(
    name: str = "",
    absolute: bool = False,
    cause: Type[Exception] = Exception,
) -> Callable[[F], F]:
    return _declare(ExceptionMetered(name=name, absolute=absolute, cause=cause))


def get_annotations(func: Callable[..., Any]) -> Dict[type, Declaration]:
    """Return all declarations attached to ``func``, keyed by declaration type."""
    func = getattr(func, "__func__", func)
    return dict(getattr(func, ANNOTATIONS_ATTRIBUTE, {}))


def get_annotation(func: Callable[..., Any], kind: Type[Declaration]) -> Optional[Declaration]:
    return get_annotations(func).get(kind)
