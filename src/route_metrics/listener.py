"""
Application event listener instrumentation.

``InstrumentedResourceMethodApplicationListener`` waits for the host to report
that application initialization has finished, then binds every resource
method that carries metric declarations into immutable maps keyed by the
method's defining function.

For each request the host asks it for a request listener. The returned
listener updates the relevant metrics when it is told a resource method is
about to be invoked, has just finished, or raised.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import (
    Any,
    Callable,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

from route_metrics.bindings import BindingTable, resolve_declarations
from route_metrics.model import (
    ApplicationEvent,
    ApplicationEventType,
    RequestEvent,
    RequestEventType,
)
from route_metrics.providers import (
    ExceptionMeterMetric,
    MetricProvider,
    bind_method,
    mark_exception,
    mark_meter,
    start_timer,
    stop_timer,
)
from route_metrics.telemetry.registry import MetricRegistry, TimerContext

logger = logging.getLogger(__name__)


def _empty() -> Mapping:
    return MappingProxyType({})


class RequestEventListener(Protocol):
    def on_event(self, event: RequestEvent) -> None:
        ...


@dataclass(frozen=True)
class ResourceMethodBindings:
    """Immutable snapshot of every bound resource method."""

    timers: Mapping[Callable[..., Any], MetricProvider] = field(default_factory=_empty)
    meters: Mapping[Callable[..., Any], MetricProvider] = field(default_factory=_empty)
    exception_meters: Mapping[Callable[..., Any], ExceptionMeterMetric] = field(default_factory=_empty)

    def __len__(self) -> int:
        return len(set(self.timers) | set(self.meters) | set(self.exception_meters))


class TimerRequestEventListener:
    def __init__(self, timers: Mapping[Callable[..., Any], MetricProvider]):
        self.timers = timers
        self.context: Optional[TimerContext] = None

    def on_event(self, event: RequestEvent) -> None:
        if event.type == RequestEventType.RESOURCE_METHOD_START:
            timer = self.timers.get(event.matched_method)
            if timer is not None:
                self.context = start_timer(timer, event.invocation)
        elif event.type == RequestEventType.RESOURCE_METHOD_FINISHED:
            if self.context is not None:
                stop_timer(self.context)


class MeterRequestEventListener:
    def __init__(self, meters: Mapping[Callable[..., Any], MetricProvider]):
        self.meters = meters

    def on_event(self, event: RequestEvent) -> None:
        if event.type == RequestEventType.RESOURCE_METHOD_START:
            meter = self.meters.get(event.matched_method)
            if meter is not None:
                mark_meter(meter, event.invocation)


class ExceptionMeterRequestEventListener:
    def __init__(self, exception_meters: Mapping[Callable[..., Any], ExceptionMeterMetric]):
        self.exception_meters = exception_meters

    def on_event(self, event: RequestEvent) -> None:
        if event.type == RequestEventType.ON_EXCEPTION and event.exception is not None:
            method = event.matched_method
            metric = self.exception_meters.get(method) if method is not None else None
            if metric is not None:
                mark_exception(metric, event.invocation, event.exception)


class ChainedRequestEventListener:
    """Passes every event to each listener, in order."""

    def __init__(self, *listeners: RequestEventListener):
        self.listeners: Sequence[RequestEventListener] = listeners

    def on_event(self, event: RequestEvent) -> None:
        for listener in self.listeners:
            listener.on_event(event)


class InstrumentedResourceMethodApplicationListener:
    """
    Binds annotated resource methods at startup and instruments their requests.

    Args:
        registry: Registry owning the metrics
        table: Optional declarative bindings, applied over decorator declarations
    """

    def __init__(self, registry: MetricRegistry, table: Optional[BindingTable] = None):
        self.registry = registry
        self.table = table
        self.bindings = ResourceMethodBindings()

    def on_event(self, event: ApplicationEvent) -> None:
        """
        Rebuild the bindings when initialization finishes.

        Raises:
            MetricConfigurationError: if any method's declarations are invalid;
                the previous bindings are kept
        """
        if event.type != ApplicationEventType.INITIALIZATION_APP_FINISHED:
            return

        timers = {}
        meters = {}
        exception_meters = {}

        for method in event.resource_model.all_methods():
            declarations, name_params = resolve_declarations(method, self.table)
            binding = bind_method(self.registry, method.definition_method, declarations, name_params)
            if binding is None:
                continue
            key = method.definition_method
            if binding.timer is not None:
                timers[key] = binding.timer
            if binding.meter is not None:
                meters[key] = binding.meter
            if binding.exception_meter is not None:
                exception_meters[key] = binding.exception_meter

        self.bindings = ResourceMethodBindings(
            timers=MappingProxyType(timers),
            meters=MappingProxyType(meters),
            exception_meters=MappingProxyType(exception_meters),
        )
        logger.info(
            f"Bound {len(self.bindings)} resource method(s): {len(timers)} timed, "
            f"{len(meters)} metered, {len(exception_meters)} exception-metered")

    def on_request(self, event: Optional[RequestEvent] = None) -> RequestEventListener:
        bindings = self.bindings
        return ChainedRequestEventListener(
            TimerRequestEventListener(bindings.timers),
            MeterRequestEventListener(bindings.meters),
            ExceptionMeterRequestEventListener(bindings.exception_meters),
        )
