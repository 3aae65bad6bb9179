"""
Cost functions for choosing bounding-box search cells.

A cost function scores querying `num_cells` cells of a given resolution.
best_bbox_search_cells stops as soon as the cost starts rising, so custom
functions should be flat or falling up to their minimum and rising after it.
"""
import math
from typing import Callable

from .grid import GEOCELL_GRID_SIZE

CostFunction = Callable[[int, int], float]


def default_cost_function(num_cells: int, resolution: int) -> float:
    """
    Free up to one full grid (16 cells), prohibitive beyond.

    Resolution does not matter here: among equal costs the finest one wins
    because ties keep refining.
    """
    return math.inf if num_cells > GEOCELL_GRID_SIZE ** 2 else 0.0
