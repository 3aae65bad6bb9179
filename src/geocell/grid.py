"""
Spatial indexing using hierarchical geocells.

A geocell is a hexadecimal string that names a rectangular region of the
[-90,90] x [-180,180] latitude/longitude space. Its length is its resolution.
Like geohashes, geocells are hierarchical: every prefix of a geocell is one of
its ancestors, and cell[:-1] is the immediate parent.

The first character picks one cell of a 4x4 grid laid over the whole space:

             +---+---+---+---+ (90, 180)
             | a | b | e | f |
             +---+---+---+---+
             | 8 | 9 | c | d |
             +---+---+---+---+
             | 2 | 3 | 6 | 7 |
             +---+---+---+---+
             | 0 | 1 | 4 | 5 |
  (-90,-180) +---+---+---+---+

The point (0, 0) sits where cells 3, 6, 9 and c meet, and cell 7 is the
rectangle from (-45, 90) to (0, 180). Each following character re-divides the
current rectangle into another 4x4 grid with the same layout, so '78a' lies in
the top-left sub-cell of '78', which lies in the left column of '7', and so on.

Resolution 13 (~0.3m x ~0.6m at the equator) is the finest practical level.
"""
import math
from typing import List, NamedTuple, Optional, Sequence, Tuple

from .models import (
    MAX_LATITUDE,
    MAX_LONGITUDE,
    MIN_LATITUDE,
    MIN_LONGITUDE,
    BoundingBox,
    Point,
)

# Finest geocell resolution worth computing
MAX_GEOCELL_RESOLUTION = 13

GEOCELL_GRID_SIZE = 4
GEOCELL_ALPHABET = "0123456789abcdef"

# Mean Earth radius used for haversine distances, in meters
EARTH_RADIUS_METERS = 6371010.0

# Direction vectors (dx, dy)
Direction = Tuple[int, int]

NORTHWEST: Direction = (-1, 1)
NORTH: Direction = (0, 1)
NORTHEAST: Direction = (1, 1)
EAST: Direction = (1, 0)
SOUTHEAST: Direction = (1, -1)
SOUTH: Direction = (0, -1)
SOUTHWEST: Direction = (-1, -1)
WEST: Direction = (-1, 0)
NO_DIRECTION: Direction = (0, 0)

ALL_DIRECTIONS = (NORTHWEST, NORTH, NORTHEAST, EAST, SOUTHEAST, SOUTH, SOUTHWEST, WEST)


class EdgeDistance(NamedTuple):
    """Distance from a point to one edge of a cell region."""
    direction: Direction
    distance: float


def _subdiv_char(x: int, y: int) -> str:
    # Symbol index bits are y1 x1 y0 x0; only valid for a 4x4 grid
    return GEOCELL_ALPHABET[
        (y & 2) << 2 |
        (x & 2) << 1 |
        (y & 1) << 1 |
        (x & 1)
    ]


def _subdiv_xy(char: str) -> Tuple[int, int]:
    index = GEOCELL_ALPHABET.find(char)
    if index < 0:
        raise ValueError(f"invalid geocell character {char!r}")
    return (
        (index & 4) >> 1 | (index & 1),
        (index & 8) >> 2 | (index & 2) >> 1,
    )


def _subdivide(north: float, east: float, south: float, west: float,
               x: int, y: int) -> Tuple[float, float, float, float]:
    # compute() and decode() both narrow through here so their bounds agree bit for bit
    lat_span = (north - south) / GEOCELL_GRID_SIZE
    lon_span = (east - west) / GEOCELL_GRID_SIZE
    return (
        min(south + lat_span * (y + 1), MAX_LATITUDE),
        min(west + lon_span * (x + 1), MAX_LONGITUDE),
        south + lat_span * y,
        west + lon_span * x,
    )


def cell_xy(cell: str) -> Tuple[int, int]:
    """Integer column/row of a cell in the grid of its own resolution."""
    x = y = 0
    for char in cell:
        cx, cy = _subdiv_xy(char)
        x = x * GEOCELL_GRID_SIZE + cx
        y = y * GEOCELL_GRID_SIZE + cy
    return x, y


def _cell_from_xy(x: int, y: int, resolution: int) -> str:
    chars = []
    for _ in range(resolution):
        chars.append(_subdiv_char(x % GEOCELL_GRID_SIZE, y % GEOCELL_GRID_SIZE))
        x //= GEOCELL_GRID_SIZE
        y //= GEOCELL_GRID_SIZE
    return "".join(reversed(chars))


def _grid_width(resolution: int) -> int:
    return GEOCELL_GRID_SIZE ** resolution


def is_valid(cell: str) -> bool:
    """Whether `cell` is a non-empty geocell of at most MAX_GEOCELL_RESOLUTION characters."""
    return (
        isinstance(cell, str)
        and 0 < len(cell) <= MAX_GEOCELL_RESOLUTION
        and all(char in GEOCELL_ALPHABET for char in cell)
    )


def compute(point: Point, resolution: int = MAX_GEOCELL_RESOLUTION) -> str:
    """
    Compute the geocell containing a point.

    Points on an edge shared by two cells belong to the north/east one; points
    on the north or east edge of the world fall into the last row/column.

    Args:
        point: Location to encode
        resolution: Length of the returned cell (capped at MAX_GEOCELL_RESOLUTION)

    Returns:
        Geocell string (e.g., "c0c1d3e4a5b67")
    """
    resolution = max(0, min(resolution, MAX_GEOCELL_RESOLUTION))
    north, east, south, west = MAX_LATITUDE, MAX_LONGITUDE, MIN_LATITUDE, MIN_LONGITUDE

    chars = []
    while len(chars) < resolution:
        x = min(max(int(GEOCELL_GRID_SIZE * (point.lon - west) / (east - west)), 0), GEOCELL_GRID_SIZE - 1)
        y = min(max(int(GEOCELL_GRID_SIZE * (point.lat - south) / (north - south)), 0), GEOCELL_GRID_SIZE - 1)
        chars.append(_subdiv_char(x, y))
        north, east, south, west = _subdivide(north, east, south, west, x, y)

    return "".join(chars)


def decode(cell: str) -> BoundingBox:
    """
    Compute the rectangular region of a geocell.

    The empty cell is the root and decodes to the whole world.

    Raises:
        ValueError: If the cell is too long or contains a non-hex character
    """
    if len(cell) > MAX_GEOCELL_RESOLUTION:
        raise ValueError(f"geocell {cell!r} is longer than {MAX_GEOCELL_RESOLUTION} characters")

    north, east, south, west = MAX_LATITUDE, MAX_LONGITUDE, MIN_LATITUDE, MIN_LONGITUDE
    for char in cell:
        x, y = _subdiv_xy(char)
        north, east, south, west = _subdivide(north, east, south, west, x, y)

    return BoundingBox(north=north, east=east, south=south, west=west)


def latlon_to_cell(lat: float, lon: float, resolution: int = MAX_GEOCELL_RESOLUTION) -> str:
    """
    Convert lat/lon to a geocell.

    Args:
        lat: Latitude
        lon: Longitude
        resolution: Geocell length

    Returns:
        Geocell string
    """
    return compute(Point(lat=lat, lon=lon), resolution)


def cell_to_latlon(cell: str) -> Tuple[float, float]:
    """
    Convert a geocell back to lat/lon (center of the cell).

    Returns:
        Tuple of (lat, lon)
    """
    box = decode(cell)
    return (box.north + box.south) / 2, (box.east + box.west) / 2


def generate_geocells(point: Point) -> List[str]:
    """
    Return the cells containing a point, one per resolution 1..MAX_GEOCELL_RESOLUTION.

    This is the list to store on an entity so that any geocell query can
    match it by set membership.
    """
    finest = compute(point, MAX_GEOCELL_RESOLUTION)
    return [finest[:resolution] for resolution in range(1, MAX_GEOCELL_RESOLUTION + 1)]


def contains_point(cell: str, point: Point) -> bool:
    return compute(point, len(cell)) == cell


def children(cell: str) -> List[str]:
    """The 16 sub-cells of a cell; children('') are the top-level cells."""
    return [cell + char for char in GEOCELL_ALPHABET]


def adjacent(cell: str, direction: Direction) -> Optional[str]:
    """
    Get the same-resolution cell next to `cell` in the given direction.

    The neighbour may have a different prefix than the cell itself (the
    eastern neighbour of '1f' is '4a').

    Args:
        cell: Geocell string
        direction: (dx, dy) vector, each component in {-1, 0, 1}

    Returns:
        Adjacent geocell, or None when the step would leave the grid across a
        pole or the ±180° meridian
    """
    dx, dy = direction
    width = _grid_width(len(cell))
    x, y = cell_xy(cell)
    x += dx
    y += dy

    if not (0 <= x < width and 0 <= y < width):
        return None

    return _cell_from_xy(x, y, len(cell))


def all_adjacents(cell: str) -> List[str]:
    """The up-to-8 cells around `cell`, clockwise from the north-west."""
    adjacents = (adjacent(cell, direction) for direction in ALL_DIRECTIONS)
    return [adj for adj in adjacents if adj is not None]


def get_neighbor_cells(cell: str, k: int = 1) -> List[str]:
    """
    Get all cells within k steps (including diagonals) of the given cell.

    Args:
        cell: Geocell string
        k: Number of steps (1 = immediate neighbors, 2 = 2-ring, etc.)

    Returns:
        List of geocells including the center cell, row by row from the
        south-west. Rings are clipped where they would leave the grid.

    Examples:
        k=0: 1 cell (just the center)
        k=1: 9 cells (center + 8 neighbors)
        k=2: 25 cells (center + 2-ring)
    """
    if k < 0:
        raise ValueError("k must be >= 0")

    width = _grid_width(len(cell))
    cx, cy = cell_xy(cell)
    return [
        _cell_from_xy(x, y, len(cell))
        for y in range(max(cy - k, 0), min(cy + k, width - 1) + 1)
        for x in range(max(cx - k, 0), min(cx + k, width - 1) + 1)
    ]


def _corner_xy(cell_ne: str, cell_sw: str) -> Tuple[int, int, int, int]:
    if len(cell_ne) != len(cell_sw):
        raise ValueError(f"corner cells {cell_ne!r} and {cell_sw!r} differ in resolution")

    x_ne, y_ne = cell_xy(cell_ne)
    x_sw, y_sw = cell_xy(cell_sw)
    if x_ne < x_sw or y_ne < y_sw:
        raise ValueError(f"{cell_ne!r} is not north-east of {cell_sw!r}")
    return x_ne, y_ne, x_sw, y_sw


def interpolation_count(cell_ne: str, cell_sw: str) -> int:
    """
    Count the cells in the rectangle whose corners are cell_ne and cell_sw.

    Raises:
        ValueError: If the corners differ in resolution or are swapped
    """
    x_ne, y_ne, x_sw, y_sw = _corner_xy(cell_ne, cell_sw)
    return (x_ne - x_sw + 1) * (y_ne - y_sw + 1)


def interpolate(cell_ne: str, cell_sw: str) -> List[str]:
    """
    List every cell in the rectangle whose corners are cell_ne and cell_sw.

    Cells are listed row by row starting at the south-west corner; both
    corners are included.

    Raises:
        ValueError: If the corners differ in resolution or are swapped
    """
    x_ne, y_ne, x_sw, y_sw = _corner_xy(cell_ne, cell_sw)
    resolution = len(cell_ne)
    return [
        _cell_from_xy(x, y, resolution)
        for y in range(y_sw, y_ne + 1)
        for x in range(x_sw, x_ne + 1)
    ]


def distance(p1: Point, p2: Point) -> float:
    """Great-circle distance in meters (haversine)."""
    lat1 = math.radians(p1.lat)
    lat2 = math.radians(p2.lat)
    delta_lat = lat1 - lat2
    delta_lon = math.radians(p1.lon) - math.radians(p2.lon)

    a = math.sin(delta_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(delta_lon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


def distance_sorted_edges(cells: Sequence[str], point: Point) -> List[EdgeDistance]:
    """
    Distances from a point to the edges of the region covered by some cells.

    Edges are measured along the point's meridian (south/north) or parallel
    (west/east). Equal distances keep the order south, north, west, east.

    Args:
        cells: Non-empty collection of cells forming a rectangle
        point: Reference point, usually inside the region

    Returns:
        EdgeDistance tuples, nearest edge first
    """
    if not cells:
        raise ValueError("cells must not be empty")

    boxes = [decode(cell) for cell in cells]
    north = max(box.north for box in boxes)
    east = max(box.east for box in boxes)
    south = min(box.south for box in boxes)
    west = min(box.west for box in boxes)

    edges = [
        EdgeDistance(SOUTH, distance(Point(lat=south, lon=point.lon), point)),
        EdgeDistance(NORTH, distance(Point(lat=north, lon=point.lon), point)),
        EdgeDistance(WEST, distance(Point(lat=point.lat, lon=west), point)),
        EdgeDistance(EAST, distance(Point(lat=point.lat, lon=east), point)),
    ]
    return sorted(edges, key=lambda edge: edge.distance)
