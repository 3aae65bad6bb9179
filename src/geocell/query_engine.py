"""
Contract between the geocell search algorithms and a storage backend.

The algorithms only ever ask one question: "which entities are indexed under
any of these geocells (and match this base filter)?". Backends answer it in
their own query language; see redis_engine.py and database.py.

Entities are arbitrary objects. Their location and identity are read by
reflection: a class can name its fields explicitly

    class Shop:
        __geocell_location__ = "position"
        __geocell_key__ = "shop_id"

or rely on the conventional names (`location`, `lat`/`lon`,
`latitude`/`longitude`, `key`, `id`, `geocells`).
"""
from typing import Any, Iterable, List, Optional, Protocol

from .grid import generate_geocells
from .models import GeocellQuery, Point

LOCATION_FIELD_ATTR = "__geocell_location__"
KEY_FIELD_ATTR = "__geocell_key__"
GEOCELLS_FIELD_ATTR = "__geocell_cells__"

DEFAULT_GEOCELLS_FIELD = "geocells"


class GeocellBackendError(RuntimeError):
    """A query engine failed to talk to its storage."""


class GeocellQueryEngine(Protocol):
    """Backend interface used by proximity and bounding-box searches."""

    def query(
        self,
        base_query: Optional[GeocellQuery],
        geocells: List[str],
        entity_type: Optional[type] = None,
        order_by: Optional[str] = None,
    ) -> List[Any]:
        """Return entities indexed under any of `geocells` that match `base_query`."""


def _as_point(value: Any) -> Point:
    if isinstance(value, Point):
        return value

    for lat_name, lon_name in (("lat", "lon"), ("latitude", "longitude")):
        if hasattr(value, lat_name) and hasattr(value, lon_name):
            return Point(lat=getattr(value, lat_name), lon=getattr(value, lon_name))

    if isinstance(value, (tuple, list)) and len(value) == 2:
        return Point(lat=value[0], lon=value[1])

    raise TypeError(f"cannot read a location from {type(value).__name__}")


def get_location(entity: Any) -> Point:
    """
    Read the location of an entity.

    Raises:
        TypeError: If no location can be found
        ValidationError: If the stored coordinates are out of range
    """
    field = getattr(type(entity), LOCATION_FIELD_ATTR, None)
    if field is not None:
        return _as_point(getattr(entity, field))

    location = getattr(entity, "location", None)
    if location is not None:
        return _as_point(location)

    return _as_point(entity)


def get_key_string(entity: Any) -> str:
    """
    Read the identity of an entity as a string, used to drop duplicates.

    Raises:
        TypeError: If the entity has no usable key
    """
    field = getattr(type(entity), KEY_FIELD_ATTR, None)
    names = (field,) if field is not None else ("key", "id")

    for name in names:
        value = getattr(entity, name, None)
        if value is not None:
            return str(value)

    raise TypeError(f"cannot read a key from {type(entity).__name__}")


def get_geocells(entity: Any) -> List[str]:
    """Stored geocells of an entity, or the cells generated from its location."""
    field = getattr(type(entity), GEOCELLS_FIELD_ATTR, DEFAULT_GEOCELLS_FIELD)
    cells = getattr(entity, field, None)
    if cells:
        return list(cells)
    return generate_geocells(get_location(entity))


def _coerce(value: Any, like: Any) -> Any:
    # Stores such as Redis hand everything back as strings
    if isinstance(value, str) and not isinstance(like, str) and like is not None:
        if isinstance(like, bool):
            return value.lower() in ("1", "true", "yes")
        return type(like)(value)
    return value


def matches_base_query(entity: Any, base_query: Optional[GeocellQuery]) -> bool:
    """Evaluate a base query against an in-memory entity."""
    if base_query is None:
        return True

    for query_filter in base_query.filters:
        value = getattr(entity, query_filter.field, None)
        if value is None:
            return False
        try:
            if not query_filter.apply(_coerce(value, query_filter.value)):
                return False
        except (TypeError, ValueError):
            # Values that cannot be compared with the parameter never match
            return False
    return True


def order_entities(entities: List[Any], order_by: Optional[str]) -> List[Any]:
    """Sort by a field name; a leading '-' sorts descending. Missing values go last."""
    if not order_by:
        return entities

    reverse = order_by.startswith("-")
    field = order_by.lstrip("-")
    present = [e for e in entities if getattr(e, field, None) is not None]
    missing = [e for e in entities if getattr(e, field, None) is None]
    return sorted(present, key=lambda e: getattr(e, field), reverse=reverse) + missing


class InMemoryGeocellQueryEngine:
    """
    Query engine over a list of entities held in memory.

    Handy for tests and for small, static datasets.
    """

    def __init__(self, entities: Iterable[Any] = ()) -> None:
        self._entities: List[Any] = []
        self._cells: List[frozenset] = []
        for entity in entities:
            self.add(entity)

    def __len__(self) -> int:
        return len(self._entities)

    def add(self, entity: Any) -> None:
        self._entities.append(entity)
        self._cells.append(frozenset(get_geocells(entity)))

    def query(
        self,
        base_query: Optional[GeocellQuery],
        geocells: List[str],
        entity_type: Optional[type] = None,
        order_by: Optional[str] = None,
    ) -> List[Any]:
        wanted = set(geocells)
        results = [
            entity
            for entity, cells in zip(self._entities, self._cells)
            if not wanted.isdisjoint(cells)
            and (entity_type is None or isinstance(entity, entity_type))
            and matches_base_query(entity, base_query)
        ]
        return order_entities(results, order_by)
