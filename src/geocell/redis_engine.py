"""
Geocell index stored in Redis.

Layout:
- entity:<key>                  hash with the place fields (lat, lon, name, ...)
- geocell:<cell>:entities       set of entity keys, one set per geocell

A place is added to the set of each of its 13 geocells, so a query for any
mix of resolutions is a union of set lookups followed by a batch of HGETALLs.
Both steps run in one pipeline round-trip each.

Extra place properties are stored JSON-encoded so they keep their type;
the fixed Place fields are stored as plain strings.
"""
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from redis import Redis
from redis.client import Pipeline
from redis.exceptions import RedisError

from . import metrics
from .grid import generate_geocells
from .models import GeocellQuery, Place
from .query_engine import GeocellBackendError, matches_base_query, order_entities

logger = logging.getLogger(__name__)


def get_entity_key(key: str) -> str:
    """Get Redis key for a place hash."""
    return f"entity:{key}"


def get_geocell_key(cell: str) -> str:
    """Get Redis key for the set of places indexed under a geocell."""
    return f"geocell:{cell}:entities"


def _to_hash(place: Place) -> Dict[str, str]:
    return {
        name: str(value) if name in Place.model_fields else json.dumps(value)
        for name, value in place.model_dump(exclude_none=True).items()
    }


def _from_hash(record: Dict[str, str]) -> Dict[str, Any]:
    return {
        name: value if name in Place.model_fields else json.loads(value)
        for name, value in record.items()
    }


def _unindex(pipe: Pipeline, place: Place) -> None:
    # Cells come from the stored location, which may differ from a new one
    for cell in generate_geocells(place.location):
        pipe.srem(get_geocell_key(cell), place.key)
    pipe.delete(get_entity_key(place.key))


def index_places(r: Redis, places: Iterable[Place]) -> Dict[str, List[str]]:
    """
    Store places and add them to their geocell sets.

    A key that is already indexed is replaced: its old hash is deleted and it
    leaves the geocell sets of its old location. When a batch repeats a key,
    the last occurrence wins.

    Costs two round-trips: one to load the current hashes, one pipeline for
    all writes.

    Args:
        r: Redis client
        places: Places to index

    Returns:
        Mapping of place key to the geocells it was indexed under
    """
    latest = {place.key: place for place in places}

    pipe = r.pipeline()
    for key in latest:
        pipe.hgetall(get_entity_key(key))
    previous = dict(zip(latest, pipe.execute()))

    pipe = r.pipeline()
    indexed = {}

    for key, place in latest.items():
        if previous[key]:
            _unindex(pipe, Place(**_from_hash(previous[key])))
        cells = generate_geocells(place.location)
        pipe.hset(get_entity_key(key), mapping=_to_hash(place))
        for cell in cells:
            pipe.sadd(get_geocell_key(cell), key)
        indexed[key] = cells

    pipe.execute()
    metrics.redis_operations_total.labels(operation="index_pipeline", status="success").inc()
    return indexed


def index_place(r: Redis, place: Place) -> List[str]:
    """Index a single place. Returns its geocells."""
    return index_places(r, [place])[place.key]


def get_place(r: Redis, key: str) -> Optional[Place]:
    """Load a stored place, or None if the key is unknown."""
    record = r.hgetall(get_entity_key(key))
    metrics.redis_operations_total.labels(operation="hgetall", status="success").inc()
    if not record:
        return None
    return Place(**_from_hash(record))


def remove_place(r: Redis, key: str) -> bool:
    """
    Delete a place and drop it from its geocell sets.

    Returns:
        True if the place existed, False otherwise
    """
    place = get_place(r, key)
    if place is None:
        return False

    pipe = r.pipeline()
    _unindex(pipe, place)
    pipe.execute()
    metrics.redis_operations_total.labels(operation="remove_pipeline", status="success").inc()
    return True


class RedisGeocellQueryEngine:
    """Query engine over the Redis geocell index."""

    def __init__(self, redis_client: Redis) -> None:
        self.redis_client = redis_client

    def query(
        self,
        base_query: Optional[GeocellQuery],
        geocells: List[str],
        entity_type: Optional[type] = None,
        order_by: Optional[str] = None,
    ) -> List[Any]:
        """
        Fetch the places indexed under any of the given geocells.

        The base query is evaluated client-side on the loaded hashes; stored
        strings are converted to the type of each filter parameter.

        Raises:
            GeocellBackendError: If Redis fails
        """
        entity_type = entity_type or Place

        try:
            pipe = self.redis_client.pipeline()
            for cell in geocells:
                pipe.smembers(get_geocell_key(cell))
            member_sets = pipe.execute()

            keys = sorted(set().union(*member_sets))

            pipe = self.redis_client.pipeline()
            for key in keys:
                pipe.hgetall(get_entity_key(key))
            records = pipe.execute()
        except RedisError as exc:
            metrics.redis_operations_total.labels(operation="query_pipeline", status="error").inc()
            logger.error("geocell query over %d cells failed: %s", len(geocells), exc)
            raise GeocellBackendError(f"Redis geocell query failed: {exc}") from exc

        metrics.redis_operations_total.labels(operation="query_pipeline", status="success").inc()

        # Hashes can vanish between the two round-trips
        entities = [entity_type(**_from_hash(record)) for record in records if record]
        entities = [entity for entity in entities if matches_base_query(entity, base_query)]
        return order_entities(entities, order_by)
