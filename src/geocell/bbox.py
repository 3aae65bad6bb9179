"""
Bounding-box queries over geocells.

A box is covered by a rectangle of same-resolution cells. Coarse resolutions
need few cells but match many entities outside the box; fine ones match
tightly but need many cells. A cost function arbitrates between the two.
"""
import logging
import math
from typing import Any, List, Optional

from .cost import CostFunction, default_cost_function
from .grid import MAX_GEOCELL_RESOLUTION, compute, interpolate, interpolation_count
from .models import MAX_LONGITUDE, MIN_LONGITUDE, BoundingBox, GeocellQuery
from .query_engine import GeocellQueryEngine, get_key_string, get_location

logger = logging.getLogger(__name__)

# Resolutions needing more cells than this are never considered
MAX_FEASIBLE_BBOX_SEARCH_CELLS = 300


def best_bbox_search_cells(bbox: BoundingBox, cost_function: Optional[CostFunction] = None) -> List[str]:
    """
    Return an efficient set of geocells to search for a bounding box.

    All returned cells share one resolution, except for a box crossing the
    antimeridian: it is split at ±180° and each half is solved on its own.

    The search walks from the coarsest resolution that can hold the box
    towards finer ones and stops at the first resolution whose cost rises
    above the best seen so far. With a cost curve that is not falling-then-
    rising this greedy stop can miss a cheaper, finer set.

    Args:
        bbox: Box to cover
        cost_function: Scores (num_cells, resolution); defaults to
            default_cost_function

    Returns:
        Sorted geocells whose union contains the box
    """
    if cost_function is None:
        cost_function = default_cost_function

    if bbox.crosses_antimeridian:
        west_half = BoundingBox(north=bbox.north, east=bbox.east, south=bbox.south, west=MIN_LONGITUDE)
        east_half = BoundingBox(north=bbox.north, east=MAX_LONGITUDE, south=bbox.south, west=bbox.west)
        return best_bbox_search_cells(west_half, cost_function) + best_bbox_search_cells(east_half, cost_function)

    cell_ne = compute(bbox.northeast, MAX_GEOCELL_RESOLUTION)
    cell_sw = compute(bbox.southwest, MAX_GEOCELL_RESOLUTION)

    # Below the common prefix length the whole box sits in a single cell
    min_resolution = 0
    while min_resolution < MAX_GEOCELL_RESOLUTION and cell_ne[min_resolution] == cell_sw[min_resolution]:
        min_resolution += 1

    min_cost = math.inf
    min_cost_cells: List[str] = []

    for resolution in range(min_resolution, MAX_GEOCELL_RESOLUTION + 1):
        cur_ne = cell_ne[:resolution]
        cur_sw = cell_sw[:resolution]

        num_cells = interpolation_count(cur_ne, cur_sw)
        if num_cells > MAX_FEASIBLE_BBOX_SEARCH_CELLS:
            continue

        cell_set = sorted(interpolate(cur_ne, cur_sw))
        cost = cost_function(len(cell_set), resolution)

        if cost <= min_cost:
            min_cost = cost
            min_cost_cells = cell_set
        else:
            if not min_cost_cells:
                min_cost_cells = cell_set
            # Once the cost starts rising it will not come back down
            break

    logger.info(
        "Calculated cells %s in box (%s,%s) (%s,%s)",
        ", ".join(min_cost_cells), bbox.south, bbox.west, bbox.north, bbox.east,
    )
    return min_cost_cells


def bounding_box_fetch(
    query_engine: GeocellQueryEngine,
    bbox: BoundingBox,
    base_query: Optional[GeocellQuery] = None,
    entity_type: Optional[type] = None,
    max_results: int = 1000,
    cost_function: Optional[CostFunction] = None,
) -> List[Any]:
    """
    Fetch entities located inside a bounding box.

    Entities matched by the covering cells but lying outside the box are
    dropped. Results keep the order returned by the query engine.

    Args:
        query_engine: Backend to run the geocell query against
        bbox: Box to search (may cross the antimeridian)
        base_query: Optional extra filter passed to the backend
        entity_type: Entity class passed to the backend
        max_results: Maximum number of entities to return
        cost_function: Passed to best_bbox_search_cells

    Returns:
        Up to max_results entities inside the box

    Raises:
        ValueError: If max_results is not positive
        GeocellBackendError: If the backend query fails
    """
    if max_results <= 0:
        raise ValueError("max_results must be > 0")

    cells = best_bbox_search_cells(bbox, cost_function)
    entities = query_engine.query(base_query, cells, entity_type)

    results = []
    seen = set()
    for entity in entities:
        key = get_key_string(entity)
        if key in seen or not bbox.contains(get_location(entity)):
            continue
        seen.add(key)
        results.append(entity)
        if len(results) >= max_results:
            logger.debug("bounding box fetch truncated at %d results", max_results)
            break

    return results
