"""
Proximity search over geocells.

Finds the entities closest to a point using nothing but "entity has one of
these geocells" queries. The search is greedy: it starts with the
highest-resolution cell around the center and widens the searched region one
step at a time

    1 cell -> 2 cells -> 2x2 cells -> parent cells -> ... -> 16 top-level cells

until enough results are found, the distance limit is passed, or the whole
world has been searched.
"""
import logging
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from typing import Any, Generic, Iterator, List, Optional, Set, Tuple, TypeVar

from .grid import (
    MAX_GEOCELL_RESOLUTION,
    NO_DIRECTION,
    EdgeDistance,
    adjacent,
    cell_xy,
    children,
    compute,
    distance,
    distance_sorted_edges,
)
from .models import GeocellQuery, Point
from .query_engine import GeocellQueryEngine, get_key_string, get_location

logger = logging.getLogger(__name__)

T = TypeVar("T")

# last_distance of an empty result set
NO_RESULTS = -1.0


@dataclass(frozen=True)
class SearchResults(Generic[T]):
    """
    Outcome of a proximity search.

    `resolution` is the length of the cells searched last. Together with
    `last_distance` it lets a caller resume: search again from that resolution
    with `min_distance=last_distance` and drop the results already seen.
    """
    results: Tuple[T, ...] = ()
    distances: Tuple[float, ...] = ()
    resolution: int = 0

    @property
    def last_distance(self) -> float:
        return self.distances[-1] if self.distances else NO_RESULTS

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[T]:
        return iter(self.results)


@dataclass
class _SearchContext:
    """Working state of one proximity_search call."""
    center: Point
    max_results: int
    min_distance: float
    max_distance: float
    containing_cell: str
    cur_cells: List[str] = field(default_factory=list)
    searched_cells: Set[str] = field(default_factory=set)
    results: List[Any] = field(default_factory=list)
    distances: List[float] = field(default_factory=list)
    keys: List[str] = field(default_factory=list)
    sorted_edges: List[EdgeDistance] = field(default_factory=lambda: [EdgeDistance(NO_DIRECTION, 0.0)])
    done: bool = False

    @property
    def needs_more(self) -> bool:
        return bool(self.cur_cells) and len(self.results) < self.max_results

    def in_range(self, dist: float) -> bool:
        if dist < self.min_distance:
            return False
        return self.max_distance == 0 or dist < self.max_distance

    def merge(self, entity: Any) -> bool:
        """Insert an entity by distance. Returns False if it was skipped."""
        dist = distance(self.center, get_location(entity))
        if not self.in_range(dist):
            return False

        lo = bisect_left(self.distances, dist)
        hi = bisect_right(self.distances, dist)
        key = get_key_string(entity)
        # The same entity always lands at the same distance
        if key in self.keys[lo:hi]:
            return False

        self.results.insert(hi, entity)
        self.distances.insert(hi, dist)
        self.keys.insert(hi, key)

        # Drop the tail as we go so memory stays bounded by max_results
        if len(self.results) > self.max_results:
            del self.results[self.max_results:]
            del self.distances[self.max_results:]
            del self.keys[self.max_results:]
        return True

    def escalate(self) -> None:
        """Move the ring up to the parents of its cells."""
        self.containing_cell = self.containing_cell[:-1]
        if not self.containing_cell:
            # Last resort: every top-level cell
            self.cur_cells = children("")
            self.done = True
            return

        parents: List[str] = []
        for cell in self.cur_cells:
            parent = cell[:-1]
            if parent and parent not in parents:
                parents.append(parent)
        self.cur_cells = parents

    def extend_to_pair(self) -> None:
        """Add the nearest existing neighbour of a single-cell ring."""
        cell = self.cur_cells[0]
        for edge in self.sorted_edges:
            neighbour = adjacent(cell, edge.direction)
            if neighbour is not None:
                self.cur_cells.append(neighbour)
                return
        self.escalate()

    def extend_to_square(self) -> None:
        """Grow a two-cell ring into a 2x2 square on the side nearest the center."""
        (_, y1), (_, y2) = (cell_xy(cell) for cell in self.cur_cells)
        horizontal_pair = y1 == y2

        for edge in self.sorted_edges:
            # A horizontal pair grows vertically (dx == 0) and vice versa
            if (edge.direction[0] == 0) != horizontal_pair:
                continue
            neighbours = [adjacent(cell, edge.direction) for cell in self.cur_cells]
            if all(n is not None for n in neighbours):
                self.cur_cells.extend(neighbours)
                return
        self.escalate()


def proximity_search(
    center: Point,
    max_results: int,
    min_distance: float,
    max_distance: float,
    base_query: Optional[GeocellQuery],
    query_engine: GeocellQueryEngine,
    max_geocell_resolution: int = MAX_GEOCELL_RESOLUTION,
    entity_type: Optional[type] = None,
) -> SearchResults:
    """
    Find the entities nearest to a point, closest first.

    An entity is returned when min_distance <= distance and, if max_distance
    is not 0, distance < max_distance.

    Args:
        center: Point to search around
        max_results: Maximum number of entities to return (> 0)
        min_distance: Inclusive lower distance bound in meters
        max_distance: Exclusive upper distance bound in meters, 0 for none
        base_query: Optional extra filter passed to every backend query
        query_engine: Backend to run geocell queries against
        max_geocell_resolution: Resolution of the first searched cell. A lower
            value saves round-trips when matches are expected to be sparse.
        entity_type: Entity class passed to the backend

    Returns:
        SearchResults ordered by ascending distance

    Raises:
        ValueError: If an argument is out of range (before any query runs)
        GeocellBackendError: If a backend query fails; no partial results
    """
    if max_results <= 0:
        raise ValueError("max_results must be > 0")
    if not 1 <= max_geocell_resolution <= MAX_GEOCELL_RESOLUTION:
        raise ValueError(f"max_geocell_resolution must be between 1 and {MAX_GEOCELL_RESOLUTION}")
    if min_distance < 0 or max_distance < 0:
        raise ValueError("distances must be >= 0")

    containing_cell = compute(center, max_geocell_resolution)
    ctx = _SearchContext(
        center=center,
        max_results=max_results,
        min_distance=min_distance,
        max_distance=max_distance,
        containing_cell=containing_cell,
        cur_cells=[containing_cell],
    )

    while ctx.needs_more:
        closest_possible_next_result = ctx.sorted_edges[0].distance
        if max_distance > 0 and closest_possible_next_result > max_distance:
            logger.debug("next cells are at least %.1fm away, past max distance", closest_possible_next_result)
            break

        unsearched = [cell for cell in ctx.cur_cells if cell not in ctx.searched_cells]
        entities = query_engine.query(base_query, unsearched, entity_type) if unsearched else []
        logger.debug("fetch complete for: %s (%d entities)", ", ".join(unsearched), len(entities))

        ctx.searched_cells.update(ctx.cur_cells)

        for entity in entities:
            ctx.merge(entity)

        if ctx.done:
            break

        ctx.sorted_edges = distance_sorted_edges(ctx.cur_cells, center)

        if not entities or len(ctx.cur_cells) == 4:
            # Nothing here, or the 2x2 square is exhausted: go up a level
            ctx.escalate()
        elif len(ctx.cur_cells) == 1:
            ctx.extend_to_pair()
        elif len(ctx.cur_cells) == 2:
            ctx.extend_to_square()

        if len(ctx.results) < max_results:
            logger.debug("%d results found but want %d, continuing search", len(ctx.results), max_results)

    logger.debug("%d results found", len(ctx.results))
    return SearchResults(
        results=tuple(ctx.results),
        distances=tuple(ctx.distances),
        resolution=len(ctx.cur_cells[0]) if ctx.cur_cells else 0,
    )


def proximity_fetch(
    center: Point,
    max_results: int,
    max_distance: float,
    base_query: Optional[GeocellQuery],
    query_engine: GeocellQueryEngine,
    max_geocell_resolution: int = MAX_GEOCELL_RESOLUTION,
    entity_type: Optional[type] = None,
) -> List[Any]:
    """Entities nearest to `center`, without the SearchResults envelope."""
    search = proximity_search(
        center,
        max_results,
        0,
        max_distance,
        base_query,
        query_engine,
        max_geocell_resolution,
        entity_type,
    )
    return list(search.results)
