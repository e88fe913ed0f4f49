"""
FastAPI host integration.

Two ways to instrument routes, one per instrumentation generation:

Dispatch provider - endpoints are bound and wrapped when their route is built:

    registry = MetricRegistry()
    router = APIRouter(route_class=instrumented_route_class(registry))

Application listener - endpoints are bound once the application has started,
and every call emits request events to the listener:

    feature = MetricsFeature(registry)
    app = feature.install(FastAPI())
    router = APIRouter(route_class=feature.route_class)

In both cases the route class must serve the instrumented endpoints; routes
built by the plain ``APIRoute`` class are never instrumented.
"""

import functools
import inspect
import logging
from contextlib import asynccontextmanager
from typing import (
    Any,
    Callable,
    Optional,
    Sequence,
    Type,
)

from fastapi import FastAPI
from fastapi.routing import APIRoute
from starlette.routing import BaseRoute, Mount

from route_metrics.annotations import get_annotations
from route_metrics.bindings import BindingTable, load_binding_table
from route_metrics.core.config import Settings, settings as default_settings
from route_metrics.dispatch import (
    EndpointDispatcher,
    EndpointDispatchProvider,
    InstrumentedResourceMethodDispatchProvider,
    RequestDispatcher,
)
from route_metrics.listener import InstrumentedResourceMethodApplicationListener
from route_metrics.model import (
    ApplicationEvent,
    ApplicationEventType,
    Invocation,
    RequestEvent,
    RequestEventType,
    Resource,
    ResourceMethod,
    ResourceModel,
)
from route_metrics.telemetry import setup_metrics, shutdown_telemetry
from route_metrics.telemetry.registry import MetricRegistry

logger = logging.getLogger(__name__)

INSTRUMENTED_ATTRIBUTE = "__route_metrics_instrumented__"


def _definition_method(endpoint: Callable[..., Any]) -> Callable[..., Any]:
    """Undo our own wrapping, e.g. when ``include_router`` rebuilds a route."""
    while getattr(endpoint, INSTRUMENTED_ATTRIBUTE, False):
        endpoint = endpoint.__wrapped__
    return endpoint


def _http_methods(methods: Optional[Sequence[str]]) -> frozenset:
    return frozenset(m.upper() for m in (methods or ["GET"]))


def _mark_instrumented(wrapper: Callable[..., Any]) -> Callable[..., Any]:
    setattr(wrapper, INSTRUMENTED_ATTRIBUTE, True)
    return wrapper


def dispatching_endpoint(endpoint: Callable[..., Any], dispatcher: RequestDispatcher) -> Callable[..., Any]:
    """Endpoint with the same signature as ``endpoint`` that calls through ``dispatcher``."""
    if inspect.iscoroutinefunction(endpoint):
        @functools.wraps(endpoint)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            return await dispatcher.dispatch_async(Invocation(endpoint, args, kwargs))

        return _mark_instrumented(async_wrapper)

    @functools.wraps(endpoint)
    def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        return dispatcher.dispatch(Invocation(endpoint, args, kwargs))

    return _mark_instrumented(sync_wrapper)


def instrumented_route_class(
    registry: MetricRegistry,
    table: Optional[BindingTable] = None,
) -> Type[APIRoute]:
    """
    Build an ``APIRoute`` class that instruments endpoints through a dispatch provider.

    Declarations are bound as each route is constructed, so an invalid
    declaration fails while the application's routes are being defined.
    """
    provider = InstrumentedResourceMethodDispatchProvider(EndpointDispatchProvider(), registry, table)

    class InstrumentedAPIRoute(APIRoute):
        def __init__(self, path: str, endpoint: Callable[..., Any], **kwargs: Any):
            endpoint = _definition_method(endpoint)
            method = ResourceMethod(
                definition_method=endpoint,
                path=path,
                http_methods=_http_methods(kwargs.get("methods")),
            )
            dispatcher = provider.create(method)
            self.definition_method = endpoint
            if dispatcher is not None and not isinstance(dispatcher, EndpointDispatcher):
                endpoint = dispatching_endpoint(endpoint, dispatcher)
            super().__init__(path, endpoint, **kwargs)

    InstrumentedAPIRoute.dispatch_provider = provider
    return InstrumentedAPIRoute


def event_emitting_endpoint(
    endpoint: Callable[..., Any],
    listener: InstrumentedResourceMethodApplicationListener,
) -> Callable[..., Any]:
    """
    Endpoint with the same signature as ``endpoint`` that reports its calls to ``listener``.

    Per call: RESOURCE_METHOD_START before the body, RESOURCE_METHOD_FINISHED
    once it returns or raises, then ON_EXCEPTION if it raised. The endpoint's
    exception always propagates unchanged.
    """

    def start(args: tuple, kwargs: dict):
        invocation = Invocation(endpoint, args, kwargs)
        request_listener = listener.on_request(RequestEvent(RequestEventType.REQUEST_MATCHED, invocation))
        request_listener.on_event(RequestEvent(RequestEventType.RESOURCE_METHOD_START, invocation))
        return invocation, request_listener

    if inspect.iscoroutinefunction(endpoint):
        @functools.wraps(endpoint)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            invocation, request_listener = start(args, kwargs)
            try:
                try:
                    return await endpoint(*args, **kwargs)
                finally:
                    request_listener.on_event(RequestEvent(RequestEventType.RESOURCE_METHOD_FINISHED, invocation))
            except Exception as e:
                request_listener.on_event(RequestEvent(RequestEventType.ON_EXCEPTION, invocation, exception=e))
                raise

        return _mark_instrumented(async_wrapper)

    @functools.wraps(endpoint)
    def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        invocation, request_listener = start(args, kwargs)
        try:
            try:
                return endpoint(*args, **kwargs)
            finally:
                request_listener.on_event(RequestEvent(RequestEventType.RESOURCE_METHOD_FINISHED, invocation))
        except Exception as e:
            request_listener.on_event(RequestEvent(RequestEventType.ON_EXCEPTION, invocation, exception=e))
            raise

    return _mark_instrumented(sync_wrapper)


def build_resource_model(routes: Sequence[BaseRoute]) -> ResourceModel:
    """Describe ``routes`` as a resource model; mounts become child resources."""
    return ResourceModel(resources=(_resource("", routes),))


def _resource(path: str, routes: Sequence[BaseRoute]) -> Resource:
    methods = []
    children = []
    for route in routes:
        if isinstance(route, APIRoute):
            methods.append(ResourceMethod(
                definition_method=getattr(route, "definition_method", None) or _definition_method(route.endpoint),
                path=path + route.path,
                http_methods=frozenset(route.methods or ()),
            ))
        elif isinstance(route, Mount) and route.routes:
            children.append(_resource(path + route.path, route.routes))
    return Resource(path=path or "/", methods=tuple(methods), child_resources=tuple(children))


class MetricsFeature:
    """
    Registers the application listener with a FastAPI application.

    Args:
        registry: Registry owning the metrics; built from settings if omitted
        settings: Instrumentation settings
        table: Declarative bindings; loaded from ``settings.binding_table_path``
               if omitted
    """

    def __init__(
        self,
        registry: Optional[MetricRegistry] = None,
        settings: Optional[Settings] = None,
        table: Optional[BindingTable] = None,
    ):
        self.settings = settings or default_settings
        self.registry = registry or MetricRegistry(
            timer_instrument=self.settings.timer_instrument,
            meter_instrument=self.settings.meter_instrument,
        )
        if table is None and self.settings.binding_table_path:
            table = load_binding_table(self.settings.binding_table_path)
        self.listener = InstrumentedResourceMethodApplicationListener(self.registry, table)
        self.route_class = self._build_route_class()

    def _build_route_class(self) -> Type[APIRoute]:
        listener = self.listener

        class MonitoredAPIRoute(APIRoute):
            def __init__(self, path: str, endpoint: Callable[..., Any], **kwargs: Any):
                endpoint = _definition_method(endpoint)
                self.definition_method = endpoint
                super().__init__(path, event_emitting_endpoint(endpoint, listener), **kwargs)

        return MonitoredAPIRoute

    def install(self, app: FastAPI) -> FastAPI:
        """
        Serve routes added to ``app`` from now on with ``route_class``, and bind
        them once the application's own lifespan startup has completed.

        The lifespan also sets up metric export from ``settings`` and shuts it
        down when the application stops.
        """
        app.router.route_class = self.route_class
        original_lifespan = app.router.lifespan_context

        @asynccontextmanager
        async def lifespan(lifespan_app):
            provider = setup_metrics(
                self.settings.service_name,
                self.settings.otlp_endpoint,
                self.settings.enable_metrics,
                config=self.settings,
            )
            try:
                async with original_lifespan(lifespan_app) as state:
                    self.initialize(lifespan_app)
                    yield state
            finally:
                if provider is not None:
                    shutdown_telemetry(provider)

        app.router.lifespan_context = lifespan
        app.state.route_metrics = self
        return app

    def initialize(self, app: FastAPI) -> ResourceModel:
        """Send the initialization-finished event for ``app``'s current routes."""
        for route in _iter_api_routes(app.routes):
            if getattr(route.endpoint, INSTRUMENTED_ATTRIBUTE, False):
                continue
            if get_annotations(route.endpoint):
                logger.warning(
                    f"{route.path} declares metrics but its route is not built by "
                    f"{self.route_class.__name__}; it will not be instrumented")

        model = build_resource_model(app.routes)
        self.listener.on_event(ApplicationEvent(ApplicationEventType.INITIALIZATION_APP_FINISHED, model))
        return model


def _iter_api_routes(routes: Sequence[BaseRoute]):
    for route in routes:
        if isinstance(route, APIRoute):
            yield route
        elif isinstance(route, Mount) and route.routes:
            yield from _iter_api_routes(route.routes)
