"""
Binding of endpoint declarations to metric providers.

Binding runs once per endpoint, at startup. It computes the metric's base
name, collects the parameters feeding a name template and validates them, then
produces a provider:

- ``Fixed``: the name has no placeholders to fill; the metric is created
  while binding and the same instance is returned for every request.
- ``Templated``: the name is filled from request arguments; the metric is
  looked up (or created) in the registry on every request.

Request-time helpers (``start_timer``, ``mark_meter``, ...) never let a metric
failure escape into request handling, with one exception: a template that
cannot be formatted raises ``MetricNameFormatError``.
"""

import functools
import inspect
import logging
import typing
from dataclasses import dataclass
from enum import Enum
from typing import (
    Annotated,
    Any,
    Callable,
    Dict,
    Mapping,
    Optional,
    Tuple,
    Type,
    Union,
)

from route_metrics.annotations import (
    Declaration,
    ExceptionMetered,
    Metered,
    MetricNameParam,
    Timed,
    get_annotations,
)
from route_metrics.core.exceptions import MetricConfigurationError, MetricNameFormatError
from route_metrics.model import Invocation
from route_metrics.naming import choose_name, count_placeholders, format_name
from route_metrics.telemetry.registry import Meter, Metric, MetricRegistry, Timer, TimerContext

logger = logging.getLogger(__name__)


class MetricKind(str, Enum):
    TIMER = "timer"
    METER = "meter"

    def build(self, registry: MetricRegistry, name: str) -> Metric:
        if self is MetricKind.TIMER:
            return registry.timer(name)
        return registry.meter(name)


@dataclass(frozen=True)
class NameParam:
    """An endpoint parameter feeding placeholder ``index`` of a name template."""

    index: int
    position: int
    name: str


@dataclass(frozen=True)
class Fixed:
    metric: Metric


@dataclass(frozen=True)
class Templated:
    template: str
    params: Tuple[NameParam, ...]
    kind: MetricKind
    registry: MetricRegistry


MetricProvider = Union[Fixed, Templated]


@dataclass(frozen=True)
class ExceptionMeterMetric:
    """Meter provider plus the exception type that should mark it."""

    provider: MetricProvider
    cause: Type[Exception]

    def matches(self, exc: BaseException) -> bool:
        if isinstance(exc, self.cause):
            return True
        return exc.__cause__ is not None and isinstance(exc.__cause__, self.cause)


@dataclass(frozen=True)
class MethodBinding:
    """All metric providers bound to one endpoint."""

    method: Callable[..., Any]
    timer: Optional[MetricProvider] = None
    meter: Optional[MetricProvider] = None
    exception_meter: Optional[ExceptionMeterMetric] = None


def endpoint_label(func: Callable[..., Any]) -> str:
    return f"{getattr(func, '__module__', '?')}.{getattr(func, '__qualname__', repr(func))}"


def collect_name_params(
    func: Callable[..., Any],
    extra: Optional[Mapping[str, int]] = None,
) -> Tuple[NameParam, ...]:
    """
    Collect the parameters of ``func`` that feed its metric name, ordered by
    placeholder index.

    Parameters are marked with ``Annotated[..., MetricNameParam(i)]``, or listed
    in ``extra`` as ``{parameter_name: index}``.

    Raises:
        MetricConfigurationError: if indices repeat, have gaps, or ``extra``
            names a parameter ``func`` does not have
    """
    label = endpoint_label(func)
    parameters = list(inspect.signature(func).parameters.values())
    hints: Optional[Dict[str, Any]] = None

    by_index: Dict[int, NameParam] = {}

    def add(index: int, position: int, param_name: str) -> None:
        if index in by_index:
            raise MetricConfigurationError(
                f"MetricNameParam index {index} declared more than once", endpoint=label)
        by_index[index] = NameParam(index=index, position=position, name=param_name)

    for position, parameter in enumerate(parameters):
        hint = parameter.annotation
        if isinstance(hint, str):
            # postponed evaluation of annotations
            if hints is None:
                hints = typing.get_type_hints(getattr(func, "__func__", func), include_extras=True)
            hint = hints.get(parameter.name, hint)
        if typing.get_origin(hint) is Annotated:
            for marker in hint.__metadata__:
                if isinstance(marker, MetricNameParam):
                    add(marker.index, position, parameter.name)

    if extra:
        positions = {parameter.name: position for position, parameter in enumerate(parameters)}
        for param_name, index in extra.items():
            if param_name not in positions:
                raise MetricConfigurationError(
                    f"Unknown metric name parameter '{param_name}'", endpoint=label)
            add(int(index), positions[param_name], param_name)

    ordered = []
    for index in range(len(by_index)):
        if index not in by_index:
            raise MetricConfigurationError(
                "Provided MetricNameParam values were non-contiguous", endpoint=label)
        ordered.append(by_index[index])
    return tuple(ordered)


def build_provider(
    registry: MetricRegistry,
    kind: MetricKind,
    name: str,
    params: Tuple[NameParam, ...],
) -> MetricProvider:
    """
    Build the provider for one declared metric of an endpoint.

    ``params`` are the endpoint's name parameters; they are shared by every
    declared kind, so a name without placeholders stays fixed even when the
    endpoint has them.
    """
    placeholders = 0
    if params:
        try:
            placeholders = count_placeholders(name)
        except ValueError as e:
            raise MetricConfigurationError(str(e)) from e

    if placeholders == 0:
        try:
            return Fixed(kind.build(registry, name))
        except ValueError as e:
            raise MetricConfigurationError(str(e)) from e

    if placeholders != len(params):
        raise MetricConfigurationError(
            f"Metric name '{name}' has {placeholders} placeholder(s) "
            f"but {len(params)} MetricNameParam parameter(s)")
    return Templated(template=name, params=params, kind=kind, registry=registry)


def resolve_metric(provider: MetricProvider, invocation: Optional[Invocation]) -> Metric:
    """Return the metric instance ``provider`` designates for this invocation."""
    match provider:
        case Fixed(metric=metric):
            return metric
        case Templated(template=template, params=params, kind=kind, registry=registry):
            values = [invocation.parameter_value(param.position) for param in params]
            return kind.build(registry, format_name(template, values))
    raise TypeError(f"Unknown metric provider: {provider!r}")


def bind_method(
    registry: MetricRegistry,
    func: Callable[..., Any],
    declarations: Optional[Mapping[type, Declaration]] = None,
    name_params: Optional[Mapping[str, int]] = None,
) -> Optional[MethodBinding]:
    """
    Bind the declarations of one endpoint.

    Args:
        registry: Registry owning the metrics
        func: The endpoint's defining function
        declarations: Declarations to bind; defaults to the ones attached to
                      ``func`` by the ``timed``/``metered``/``exception_metered``
                      decorators
        name_params: Explicit ``{parameter_name: index}`` name parameters, in
                     addition to ``MetricNameParam`` markers

    Returns:
        The binding, or None when the endpoint declares no metrics

    Raises:
        MetricConfigurationError: if the name parameters or templates are invalid
    """
    if declarations is None:
        declarations = get_annotations(func)
    if not declarations:
        return None

    params = collect_name_params(func, name_params)
    label = endpoint_label(func)

    def provider(kind: MetricKind, name: str) -> MetricProvider:
        try:
            return build_provider(registry, kind, name, params)
        except MetricConfigurationError as e:
            if e.endpoint:
                raise
            raise MetricConfigurationError(str(e), endpoint=label) from e

    timer = meter = exception_meter = None

    timed = declarations.get(Timed)
    if timed is not None:
        timer = provider(MetricKind.TIMER, choose_name(timed.name, timed.absolute, func))

    metered = declarations.get(Metered)
    if metered is not None:
        meter = provider(MetricKind.METER, choose_name(metered.name, metered.absolute, func))

    exception_metered = declarations.get(ExceptionMetered)
    if exception_metered is not None:
        name = choose_name(exception_metered.name, exception_metered.absolute, func,
                           ExceptionMetered.DEFAULT_NAME_SUFFIX)
        exception_meter = ExceptionMeterMetric(provider(MetricKind.METER, name), exception_metered.cause)

    logger.debug(
        f"Bound {label}: timer={timer is not None}, meter={meter is not None}, "
        f"exception_meter={exception_meter is not None}, name_params={len(params)}")
    return MethodBinding(method=func, timer=timer, meter=meter, exception_meter=exception_meter)


def safe_telemetry(func):
    """
    Decorator for request-time metric updates.

    Logs and swallows failures so instrumentation cannot fail a request.
    Name formatting failures are defects in binding and propagate.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except MetricNameFormatError:
            raise
        except Exception as e:
            logger.warning(f"Telemetry error in {func.__name__}: {e}")

    return wrapper


@safe_telemetry
def start_timer(provider: MetricProvider, invocation: Optional[Invocation]) -> Optional[TimerContext]:
    timer: Timer = resolve_metric(provider, invocation)
    return timer.time()


@safe_telemetry
def stop_timer(context: TimerContext) -> None:
    context.stop()


@safe_telemetry
def mark_meter(provider: MetricProvider, invocation: Optional[Invocation]) -> None:
    meter: Meter = resolve_metric(provider, invocation)
    meter.mark()


@safe_telemetry
def mark_exception(
    metric: ExceptionMeterMetric,
    invocation: Optional[Invocation],
    exc: BaseException,
) -> bool:
    if not metric.matches(exc):
        return False
    meter: Meter = resolve_metric(metric.provider, invocation)
    meter.mark()
    return True
