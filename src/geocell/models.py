"""
Value types shared by the geocell codec, the search algorithms and the API.
"""
import operator
from functools import cached_property, total_ordering
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

MIN_LATITUDE = -90.0
MAX_LATITUDE = 90.0
MIN_LONGITUDE = -180.0
MAX_LONGITUDE = 180.0

# Comparison operators understood in a base query filter
FILTER_OPERATORS: Dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

FILTER_SEPARATOR = "&&"

MAX_BATCH_SIZE = 1000


@total_ordering
class Point(BaseModel):
    """Immutable lat/lon pair in degrees, ordered by (lat, lon)."""
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=MIN_LATITUDE, le=MAX_LATITUDE, allow_inf_nan=False)
    lon: float = Field(..., ge=MIN_LONGITUDE, le=MAX_LONGITUDE, allow_inf_nan=False)

    def __lt__(self, other: "Point") -> bool:
        if not isinstance(other, Point):
            return NotImplemented
        return (self.lat, self.lon) < (other.lat, other.lon)

    def __str__(self) -> str:
        return f"{self.lat:f},{self.lon:f}"


class BoundingBox(BaseModel):
    """
    Rectangular lat/lon region.

    A box whose east bound is smaller than its west bound wraps across the
    antimeridian. That is a valid box, not an error.
    """
    model_config = ConfigDict(frozen=True)

    north: float = Field(..., ge=MIN_LATITUDE, le=MAX_LATITUDE, allow_inf_nan=False)
    east: float = Field(..., ge=MIN_LONGITUDE, le=MAX_LONGITUDE, allow_inf_nan=False)
    south: float = Field(..., ge=MIN_LATITUDE, le=MAX_LATITUDE, allow_inf_nan=False)
    west: float = Field(..., ge=MIN_LONGITUDE, le=MAX_LONGITUDE, allow_inf_nan=False)

    @model_validator(mode="after")
    def check_latitude_order(self) -> "BoundingBox":
        if self.north < self.south:
            raise ValueError(f"north ({self.north}) must not be below south ({self.south})")
        return self

    @property
    def northeast(self) -> Point:
        return Point(lat=self.north, lon=self.east)

    @property
    def southwest(self) -> Point:
        return Point(lat=self.south, lon=self.west)

    @property
    def crosses_antimeridian(self) -> bool:
        return self.east < self.west

    def contains(self, point: Point) -> bool:
        """Whether the point lies inside the box (edges included)."""
        if not self.south <= point.lat <= self.north:
            return False
        if self.crosses_antimeridian:
            return point.lon >= self.west or point.lon <= self.east
        return self.west <= point.lon <= self.east


class QueryFilter(BaseModel):
    """One `field op value` condition of a base query."""
    model_config = ConfigDict(frozen=True)

    field: str
    op: str
    value: Any = None

    def apply(self, left: Any) -> Any:
        """
        Apply the comparison with `left` on the left-hand side.

        Works for plain Python values as well as for SQLAlchemy columns, which
        overload the comparison operators to build SQL expressions.
        """
        return FILTER_OPERATORS[self.op](left, self.value)


class GeocellQuery(BaseModel):
    """
    Base filter passed through a search to the query engine.

    The filter uses the JDO-like form the geocell libraries have always
    accepted, conditions joined by `&&` with one positional parameter each:

        GeocellQuery(
            base_query="category == categoryParam && rating >= ratingParam",
            parameters=["cafe", 4],
        )

    The parameter placeholder names are labels only; binding is positional.
    """
    model_config = ConfigDict(frozen=True)

    base_query: str = ""
    parameters: List[Any] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_parameters(self) -> "GeocellQuery":
        parse_filters(self.base_query, self.parameters)
        return self

    @cached_property
    def filters(self) -> List[QueryFilter]:
        return parse_filters(self.base_query, self.parameters)


def parse_filters(base_query: str, parameters: List[Any]) -> List[QueryFilter]:
    """
    Split a base query into conditions and bind parameters positionally.

    Raises:
        ValueError: If the filter count differs from the parameter count,
            a condition is not `field op param`, or the operator is unknown.
    """
    conditions = [c.strip() for c in base_query.split(FILTER_SEPARATOR)] if base_query.strip() else []

    if len(conditions) != len(parameters):
        raise ValueError(
            f"number of filters ({len(conditions)}) does not match "
            f"number of parameters ({len(parameters)})"
        )

    filters = []
    for condition, value in zip(conditions, parameters):
        tokens = condition.split()
        if len(tokens) != 3:
            raise ValueError(f"filter must look like 'field op param', got {condition!r}")
        field, op, _placeholder = tokens
        if op not in FILTER_OPERATORS:
            raise ValueError(f"unsupported operator {op!r} in filter {condition!r}")
        filters.append(QueryFilter(field=field, op=op, value=value))
    return filters


class Place(BaseModel):
    """A located entity stored by the service. Extra fields are kept as properties."""
    model_config = ConfigDict(extra="allow")

    key: str = Field(..., min_length=1, max_length=64, pattern=r"^[^:\s]+$")
    lat: float = Field(..., ge=MIN_LATITUDE, le=MAX_LATITUDE, allow_inf_nan=False)
    lon: float = Field(..., ge=MIN_LONGITUDE, le=MAX_LONGITUDE, allow_inf_nan=False)
    name: Optional[str] = None
    category: Optional[str] = None

    @property
    def location(self) -> Point:
        return Point(lat=self.lat, lon=self.lon)


class BatchPlaceRequest(BaseModel):
    """Batch of places for bulk indexing."""
    places: List[Place] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE, description="List of places (max 1000)")
