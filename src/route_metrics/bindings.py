"""
Declarative metric bindings.

Routes can be instrumented without touching their code by listing them in a
YAML table:

    endpoints:
      - route: "GET /orders/{region}"
        timed: {name: "orders[%s]", absolute: true}
        exception_metered: {cause: OSError}
        name_params: {region: 0}

Table entries override decorator declarations of the same kind. The table is
validated when loaded; name parameters are validated when routes are bound.
"""

import logging
from pathlib import Path
from typing import (
    Dict,
    List,
    Optional,
    Tuple,
    Type,
)

import yaml
from pydantic import BaseModel, ConfigDict, Field, ImportString, ValidationError, field_validator

from route_metrics.annotations import (
    Declaration,
    ExceptionMetered,
    Metered,
    Timed,
    get_annotations,
)
from route_metrics.core.exceptions import MetricConfigurationError
from route_metrics.model import ResourceMethod

logger = logging.getLogger(__name__)


class MetricSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = ""
    absolute: bool = False


class ExceptionMetricSpec(MetricSpec):
    cause: ImportString = Exception

    @field_validator("cause", mode="before")
    @classmethod
    def qualify_builtin(cls, value):
        if isinstance(value, str) and "." not in value and ":" not in value:
            return f"builtins.{value}"
        return value

    @field_validator("cause")
    @classmethod
    def must_be_exception(cls, value):
        if not (isinstance(value, type) and issubclass(value, Exception)):
            raise ValueError(f"{value!r} is not an Exception subclass")
        return value


class EndpointBinding(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    route: str
    timed: Optional[MetricSpec] = None
    metered: Optional[MetricSpec] = None
    exception_metered: Optional[ExceptionMetricSpec] = None
    name_params: Dict[str, int] = Field(default_factory=dict)

    @field_validator("route")
    @classmethod
    def normalize_route(cls, value: str) -> str:
        parts = value.split()
        if len(parts) == 1 and parts[0].startswith("/"):
            return parts[0]
        if len(parts) == 2 and parts[1].startswith("/"):
            return f"{parts[0].upper()} {parts[1]}"
        raise ValueError(f"Route must look like 'GET /path' or '/path', got {value!r}")

    @property
    def http_method(self) -> Optional[str]:
        method, _, path = self.route.rpartition(" ")
        return method or None

    @property
    def path(self) -> str:
        return self.route.rpartition(" ")[2]

    def matches(self, method: ResourceMethod) -> bool:
        if self.path != method.path:
            return False
        return self.http_method is None or self.http_method in method.http_methods

    def declarations(self) -> Dict[Type[Declaration], Declaration]:
        declarations: Dict[Type[Declaration], Declaration] = {}
        if self.timed is not None:
            declarations[Timed] = Timed(name=self.timed.name, absolute=self.timed.absolute)
        if self.metered is not None:
            declarations[Metered] = Metered(name=self.metered.name, absolute=self.metered.absolute)
        if self.exception_metered is not None:
            spec = self.exception_metered
            declarations[ExceptionMetered] = ExceptionMetered(
                name=spec.name, absolute=spec.absolute, cause=spec.cause)
        return declarations


class BindingTable(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    endpoints: List[EndpointBinding] = Field(default_factory=list)

    def lookup(self, method: ResourceMethod) -> Optional[EndpointBinding]:
        for entry in self.endpoints:
            if entry.matches(method):
                return entry
        return None


def load_binding_table(path: str | Path) -> Optional[BindingTable]:
    """
    Load a binding table from a YAML file.

    Returns:
        The table, or None if the file does not exist

    Raises:
        MetricConfigurationError: if the file is not valid YAML or not a valid table
    """
    path = Path(path)
    if not path.exists():
        logger.debug(f"Binding table not found at {path}, using decorator declarations only")
        return None

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        table = BindingTable.model_validate(data)
    except (yaml.YAMLError, ValidationError) as e:
        raise MetricConfigurationError(f"Invalid binding table {path}: {e}") from e

    logger.info(f"Loaded {len(table.endpoints)} endpoint binding(s) from {path}")
    return table


def resolve_declarations(
    method: ResourceMethod,
    table: Optional[BindingTable] = None,
) -> Tuple[Dict[Type[Declaration], Declaration], Optional[Dict[str, int]]]:
    """Declarations and explicit name parameters that apply to ``method``."""
    declarations = get_annotations(method.definition_method)
    name_params = None
    if table is not None:
        entry = table.lookup(method)
        if entry is not None:
            declarations.update(entry.declarations())
            name_params = dict(entry.name_params) or None
    return declarations, name_params
