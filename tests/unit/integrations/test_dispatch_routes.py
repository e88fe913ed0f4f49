"""
End-to-end tests for routes built by ``instrumented_route_class``.
"""

from typing import Annotated

import pytest
from fastapi import APIRouter, FastAPI
from fastapi.testclient import TestClient

from route_metrics.annotations import MetricNameParam, timed
from route_metrics.bindings import BindingTable, EndpointBinding
from route_metrics.core.exceptions import MetricConfigurationError
from route_metrics.integrations.fastapi import INSTRUMENTED_ATTRIBUTE, instrumented_route_class
from route_metrics.telemetry.registry import METRIC_NAME_ATTRIBUTE
from tests.unit import resources
from tests.unit.resources import build_router

PREFIX = resources.__name__


def metric_name(*parts: str) -> str:
    return ".".join((PREFIX, *parts))


@pytest.fixture
def route_class(registry):
    return instrumented_route_class(registry)


@pytest.fixture
def client(route_class):
    app = FastAPI()
    app.include_router(build_router(route_class))
    return TestClient(app)


@pytest.mark.integration
@pytest.mark.metrics
class TestInstrumentedRoutes:
    def test_timed_methods_are_timed(self, client, registry):
        response = client.get("/timed")

        assert response.status_code == 200
        assert response.json() == "yay"
        assert registry.timer(metric_name("timed_endpoint")).count == 1

    def test_async_timed_methods_are_timed(self, client, registry):
        client.get("/async-timed")
        client.get("/async-timed")

        assert registry.timer(metric_name("async_timed_endpoint")).count == 2

    def test_metered_methods_are_metered(self, client, registry):
        response = client.get("/metered")

        assert response.json() == "woo"
        assert registry.meter(metric_name("metered_endpoint")).count == 1

    def test_exception_metered_methods_are_exception_metered(self, client, registry):
        meter_name = metric_name("exception_metered_endpoint", "exceptions")

        assert client.get("/exception-metered").json() == "fuh"
        assert registry.meter(meter_name).count == 0

        with pytest.raises(OSError, match="AUGH"):
            client.get("/exception-metered", params={"splode": "true"})

        assert registry.meter(meter_name).count == 1

    def test_wrapped_cause_is_exception_metered(self, client, registry):
        with pytest.raises(RuntimeError, match="request failed"):
            client.get("/wrapped-exception", params={"splode": "true"})

        assert registry.meter(metric_name("wrapped_exception_endpoint", "exceptions")).count == 1

    def test_custom_metric_name_params(self, client, registry):
        for param in ("foo", "foo", "bar"):
            assert client.get("/customMetric", params={"param": param}).json() == param

        counters = {name: timer.count for name, timer in registry.get_timers().items()
                    if name.startswith("timedCounter")}
        assert counters == {"timedCounter[foo]": 2, "timedCounter[bar]": 1}

    def test_name_params_follow_declared_index(self, client, registry):
        client.get("/twoParams", params={"first": "x", "second": "y", "placeholder": "ignored"})
        client.get("/twoParams")

        assert registry.meter("hits[x][y]").count == 1
        assert registry.meter("hits[a][b]").count == 1

    def test_templated_timer_beside_default_exception_meter(self, client, registry):
        meter_name = metric_name("orders_for_region", "exceptions")

        assert client.get("/orders/eu").json() == "eu"
        client.get("/orders/us")
        with pytest.raises(OSError, match="region offline"):
            client.get("/orders/eu", params={"splode": "true"})

        assert registry.timer("orders[eu]").count == 2
        assert registry.timer("orders[us]").count == 1
        assert registry.meter(meter_name).count == 1
        assert not any(name.startswith("orders[%") for name in registry.get_names())

    def test_all_declarations_on_one_method(self, client, registry):
        client.post("/everything")
        with pytest.raises(ValueError, match="nope"):
            client.post("/everything", params={"fail": "true"})

        assert registry.timer(metric_name("everything")).count == 2
        assert registry.meter(metric_name("everything.calls")).count == 2
        assert registry.meter(metric_name("everything", "exceptions")).count == 1

    def test_unannotated_methods_are_not_instrumented(self, client, registry):
        names = registry.get_names()

        assert client.get("/plain").json() == "plain"
        assert registry.get_names() == names
        assert not any("unannotated" in name for name in names)

    def test_updates_reach_opentelemetry_instruments(self, client, otel_meter):
        client.get("/metered")

        counter = otel_meter.create_counter.return_value
        counter.add.assert_called_once_with(1, {METRIC_NAME_ATTRIBUTE: metric_name("metered_endpoint")})

    def test_openapi_schema_keeps_endpoint_parameters(self, client):
        schema = client.get("/openapi.json").json()

        parameters = schema["paths"]["/customMetric"]["get"]["parameters"]
        assert [p["name"] for p in parameters] == ["param"]


@pytest.mark.integration
@pytest.mark.metrics
class TestRouteConstruction:
    def test_fixed_metrics_exist_before_any_request(self, route_class, registry):
        build_router(route_class)

        assert metric_name("timed_endpoint") in registry
        assert metric_name("everything", "exceptions") in registry
        assert metric_name("orders_for_region", "exceptions") in registry
        assert not any(name.startswith("timedCounter") for name in registry.get_names())

    def test_unannotated_endpoint_is_left_unwrapped(self, route_class):
        router = build_router(route_class)

        endpoints = {route.path: route.endpoint for route in router.routes}
        assert endpoints["/plain"] is resources.unannotated
        assert getattr(endpoints["/timed"], INSTRUMENTED_ATTRIBUTE, False)
        assert endpoints["/timed"].__wrapped__ is resources.timed_endpoint

    def test_including_a_router_does_not_wrap_twice(self, route_class, registry):
        app = FastAPI()
        app.include_router(build_router(route_class), prefix="/api")

        with TestClient(app) as client:
            client.get("/api/timed")

        route = next(r for r in app.routes if getattr(r, "path", None) == "/api/timed")
        assert route.endpoint.__wrapped__ is resources.timed_endpoint
        assert registry.timer(metric_name("timed_endpoint")).count == 1

    def test_invalid_name_params_fail_when_route_is_added(self, route_class):
        @timed(name="broken[%s]", absolute=True)
        def broken(a: Annotated[str, MetricNameParam(1)]):
            return a

        router = APIRouter(route_class=route_class)

        with pytest.raises(MetricConfigurationError, match="non-contiguous"):
            router.add_api_route("/broken", broken)

    def test_binding_table_instruments_unannotated_route(self, registry):
        table = BindingTable(endpoints=[
            EndpointBinding(route="GET /plain", metered={"name": "plain.hits", "absolute": True}),
        ])
        app = FastAPI()
        app.include_router(build_router(instrumented_route_class(registry, table)))

        TestClient(app).get("/plain")

        assert registry.meter("plain.hits").count == 1
