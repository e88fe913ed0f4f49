"""
Host-neutral request model shared by both instrumentation generations.

A host framework describes its routes as a ``ResourceModel`` when the
application has finished initializing, and describes each call of a route
endpoint as an ``Invocation``. The invocation doubles as the per-request
value source for metric names built from endpoint arguments.
"""

import inspect
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    Optional,
    Tuple,
)


@dataclass(frozen=True)
class Invocation:
    """One call of a route endpoint with the arguments the host bound for it."""

    method: Callable[..., Any]
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)

    @cached_property
    def _parameters(self) -> Tuple[inspect.Parameter, ...]:
        return tuple(inspect.signature(self.method).parameters.values())

    @cached_property
    def arguments(self) -> Dict[str, Any]:
        bound = inspect.signature(self.method).bind_partial(*self.args, **self.kwargs)
        bound.apply_defaults()
        return dict(bound.arguments)

    def parameter_value(self, position: int) -> Any:
        """Value bound to the endpoint parameter at ``position`` for this call."""
        parameter = self._parameters[position]
        return self.arguments.get(parameter.name)

    def call(self) -> Any:
        return self.method(*self.args, **self.kwargs)


@dataclass(frozen=True)
class ResourceMethod:
    """A routable endpoint: the function that defines it plus where it is mounted."""

    definition_method: Callable[..., Any]
    path: str = ""
    http_methods: frozenset = frozenset()

    @property
    def name(self) -> str:
        return getattr(self.definition_method, "__qualname__", repr(self.definition_method))


@dataclass(frozen=True)
class Resource:
    path: str = ""
    methods: Tuple[ResourceMethod, ...] = ()
    child_resources: Tuple["Resource", ...] = ()

    def all_methods(self) -> Iterator[ResourceMethod]:
        """Methods of this resource followed by those of every nested child resource."""
        yield from self.methods
        for child in self.child_resources:
            yield from child.all_methods()


@dataclass(frozen=True)
class ResourceModel:
    resources: Tuple[Resource, ...] = ()

    def all_methods(self) -> Iterator[ResourceMethod]:
        for resource in self.resources:
            yield from resource.all_methods()


class ApplicationEventType(str, Enum):
    INITIALIZATION_START = "initialization_start"
    INITIALIZATION_APP_FINISHED = "initialization_app_finished"
    DESTROY_FINISHED = "destroy_finished"


@dataclass(frozen=True)
class ApplicationEvent:
    type: ApplicationEventType
    resource_model: ResourceModel = field(default_factory=ResourceModel)


class RequestEventType(str, Enum):
    REQUEST_MATCHED = "request_matched"
    RESOURCE_METHOD_START = "resource_method_start"
    RESOURCE_METHOD_FINISHED = "resource_method_finished"
    ON_EXCEPTION = "on_exception"
    FINISHED = "finished"


@dataclass(frozen=True)
class RequestEvent:
    type: RequestEventType
    invocation: Optional[Invocation] = None
    exception: Optional[BaseException] = None

    @property
    def matched_method(self) -> Optional[Callable[..., Any]]:
        return self.invocation.method if self.invocation is not None else None
