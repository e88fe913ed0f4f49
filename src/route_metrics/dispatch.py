"""
Dispatch-provider instrumentation.

The host asks a dispatch provider for one request dispatcher per resource
method while it builds its routes. ``InstrumentedResourceMethodDispatchProvider``
wraps another provider and decorates the dispatchers it returns according to
the method's metric declarations. Binding, including name parameter
validation, therefore happens once per method, at route construction.

Every dispatcher offers a sync and an async entry point; the host uses the one
matching its endpoint.
"""

import inspect
import logging
from typing import (
    Any,
    Callable,
    Optional,
    Protocol,
)

from route_metrics.bindings import BindingTable, resolve_declarations
from route_metrics.model import Invocation, ResourceMethod
from route_metrics.providers import (
    ExceptionMeterMetric,
    MetricProvider,
    bind_method,
    mark_exception,
    mark_meter,
    start_timer,
    stop_timer,
)
from route_metrics.telemetry.registry import MetricRegistry

logger = logging.getLogger(__name__)


class RequestDispatcher(Protocol):
    def dispatch(self, invocation: Invocation) -> Any:
        ...

    async def dispatch_async(self, invocation: Invocation) -> Any:
        ...


class ResourceMethodDispatchProvider(Protocol):
    def create(self, method: ResourceMethod) -> Optional[RequestDispatcher]:
        ...


class EndpointDispatcher:
    """Calls the endpoint function itself."""

    def __init__(self, func: Callable[..., Any]):
        self.func = func

    def dispatch(self, invocation: Invocation) -> Any:
        return self.func(*invocation.args, **invocation.kwargs)

    async def dispatch_async(self, invocation: Invocation) -> Any:
        result = self.func(*invocation.args, **invocation.kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


class EndpointDispatchProvider:
    def create(self, method: ResourceMethod) -> Optional[RequestDispatcher]:
        return EndpointDispatcher(method.definition_method)


class TimedRequestDispatcher:
    def __init__(self, underlying: RequestDispatcher, provider: MetricProvider):
        self.underlying = underlying
        self.provider = provider

    def dispatch(self, invocation: Invocation) -> Any:
        context = start_timer(self.provider, invocation)
        try:
            return self.underlying.dispatch(invocation)
        finally:
            if context is not None:
                stop_timer(context)

    async def dispatch_async(self, invocation: Invocation) -> Any:
        context = start_timer(self.provider, invocation)
        try:
            return await self.underlying.dispatch_async(invocation)
        finally:
            if context is not None:
                stop_timer(context)


class MeteredRequestDispatcher:
    def __init__(self, underlying: RequestDispatcher, provider: MetricProvider):
        self.underlying = underlying
        self.provider = provider

    def dispatch(self, invocation: Invocation) -> Any:
        mark_meter(self.provider, invocation)
        return self.underlying.dispatch(invocation)

    async def dispatch_async(self, invocation: Invocation) -> Any:
        mark_meter(self.provider, invocation)
        return await self.underlying.dispatch_async(invocation)


class ExceptionMeteredRequestDispatcher:
    def __init__(self, underlying: RequestDispatcher, metric: ExceptionMeterMetric):
        self.underlying = underlying
        self.metric = metric

    def dispatch(self, invocation: Invocation) -> Any:
        try:
            return self.underlying.dispatch(invocation)
        except Exception as e:
            mark_exception(self.metric, invocation, e)
            raise

    async def dispatch_async(self, invocation: Invocation) -> Any:
        try:
            return await self.underlying.dispatch_async(invocation)
        except Exception as e:
            mark_exception(self.metric, invocation, e)
            raise


class InstrumentedResourceMethodDispatchProvider:
    """
    Decorates the dispatchers of another provider with timers and meters.

    Args:
        provider: Provider building the undecorated dispatchers
        registry: Registry owning the metrics
        table: Optional declarative bindings, applied over decorator declarations

    Raises (from ``create``):
        MetricConfigurationError: if a method's metric declarations are invalid
    """

    def __init__(
        self,
        provider: ResourceMethodDispatchProvider,
        registry: MetricRegistry,
        table: Optional[BindingTable] = None,
    ):
        self.provider = provider
        self.registry = registry
        self.table = table

    def create(self, method: ResourceMethod) -> Optional[RequestDispatcher]:
        dispatcher = self.provider.create(method)
        if dispatcher is None:
            return None

        declarations, name_params = resolve_declarations(method, self.table)
        binding = bind_method(self.registry, method.definition_method, declarations, name_params)
        if binding is None:
            return dispatcher

        if binding.timer is not None:
            dispatcher = TimedRequestDispatcher(dispatcher, binding.timer)
        if binding.meter is not None:
            dispatcher = MeteredRequestDispatcher(dispatcher, binding.meter)
        if binding.exception_meter is not None:
            dispatcher = ExceptionMeteredRequestDispatcher(dispatcher, binding.exception_meter)

        logger.info(f"Instrumented {method.name} ({method.path or 'unmounted'})")
        return dispatcher
