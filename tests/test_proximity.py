"""
Unit tests for proximity search.
"""
import math
from unittest.mock import Mock

import pytest

from src.geocell.grid import EARTH_RADIUS_METERS, EAST, NORTH, compute, distance, distance_sorted_edges
from src.geocell.models import GeocellQuery, Place, Point
from src.geocell.proximity import NO_RESULTS, SearchResults, _SearchContext, proximity_fetch, proximity_search
from src.geocell.query_engine import GeocellBackendError, InMemoryGeocellQueryEngine


def north_of(center, meters, key, **properties):
    """A place `meters` due north of `center`."""
    lat = center.lat + math.degrees(meters / EARTH_RADIUS_METERS)
    return Place(key=key, lat=lat, lon=center.lon, **properties)


@pytest.fixture
def origin():
    return Point(lat=0, lon=0)


@pytest.fixture
def origin_engine(origin):
    """Three places 100m, 5km and 20km north of (0, 0)."""
    return InMemoryGeocellQueryEngine([
        north_of(origin, 20000, "p20000", category="cafe"),
        north_of(origin, 100, "p100", category="bar"),
        north_of(origin, 5000, "p5000", category="cafe"),
    ])


@pytest.fixture
def center():
    """A point well inside its coarse cells."""
    return Point(lat=10.3, lon=20.7)


def make_context(center, cells, **kwargs):
    ctx = _SearchContext(
        center=center,
        max_results=kwargs.pop("max_results", 10),
        min_distance=kwargs.pop("min_distance", 0),
        max_distance=kwargs.pop("max_distance", 0),
        containing_cell=cells[0],
        cur_cells=list(cells),
    )
    ctx.sorted_edges = distance_sorted_edges(cells, center)
    return ctx


@pytest.mark.unit
class TestProximitySearch:
    """Test suite for proximity_search."""

    def test_finds_all_sorted(self, origin, origin_engine):
        """Test that every place is found, closest first."""
        search = proximity_search(origin, 5, 0, 0, None, origin_engine)

        assert [p.key for p in search] == ["p100", "p5000", "p20000"]
        assert search.distances == pytest.approx((100, 5000, 20000))
        assert search.last_distance == pytest.approx(20000)

    def test_max_results_caps_output(self, origin, origin_engine):
        """Test that no more than max_results are returned."""
        search = proximity_search(origin, 2, 0, 0, None, origin_engine)

        assert len(search) == 2
        assert [p.key for p in search] == ["p100", "p5000"]

    def test_distance_window(self, origin, origin_engine):
        """Test min_distance and max_distance filtering."""
        search = proximity_search(origin, 5, 1000, 10000, None, origin_engine)

        assert [p.key for p in search] == ["p5000"]

    def test_base_query_is_applied(self, origin, origin_engine):
        """Test that the base query reaches the engine."""
        query = GeocellQuery(base_query="category == c", parameters=["cafe"])

        search = proximity_search(origin, 5, 0, 0, query, origin_engine)

        assert [p.key for p in search] == ["p5000", "p20000"]

    def test_results_are_unique(self, origin, origin_engine):
        """Test that a place found at several resolutions is returned once."""
        search = proximity_search(origin, 10, 0, 0, None, origin_engine)

        keys = [p.key for p in search]
        assert len(keys) == len(set(keys)) == 3

    def test_equal_distance_entities_both_kept(self, origin):
        """Test that distinct entities at the same spot are not merged."""
        engine = InMemoryGeocellQueryEngine([
            north_of(origin, 300, "twin-a"),
            north_of(origin, 300, "twin-b"),
        ])

        search = proximity_search(origin, 5, 0, 0, None, engine)

        assert sorted(p.key for p in search) == ["twin-a", "twin-b"]

    def test_results_sorted_and_in_range(self, center):
        """Test the ordering and distance bounds on a denser dataset."""
        places = [
            Place(key=f"p{i}", lat=center.lat + 0.01 * (i % 7 - 3), lon=center.lon + 0.013 * (i % 5 - 2))
            for i in range(35)
        ]
        engine = InMemoryGeocellQueryEngine(places)

        search = proximity_search(center, 8, 500, 3000, None, engine)

        assert 0 < len(search) <= 8
        assert list(search.distances) == sorted(search.distances)
        assert all(500 <= d < 3000 for d in search.distances)
        for place, dist in zip(search.results, search.distances):
            assert dist == distance(center, place.location)

    def test_repeatable(self, origin, origin_engine):
        """Test that the same search gives the same result twice."""
        first = proximity_search(origin, 2, 0, 0, None, origin_engine)
        second = proximity_search(origin, 2, 0, 0, None, origin_engine)

        assert first == second

    def test_empty_index_searches_whole_world(self, center):
        """Test that an empty index ends after the top-level pass."""
        engine = Mock()
        engine.query.return_value = []

        search = proximity_search(center, 1, 0, 0, None, engine)

        assert len(search) == 0
        assert search.last_distance == NO_RESULTS
        assert search.resolution == 1
        # One query per resolution, then the 15 top-level cells not yet searched
        assert engine.query.call_count == 14
        last_cells = engine.query.call_args_list[-1].args[1]
        assert len(last_cells) == 15
        assert compute(center, 1) not in last_cells

    def test_starts_at_max_geocell_resolution(self, center):
        """Test that the first query uses the requested starting resolution."""
        engine = Mock()
        engine.query.return_value = []

        proximity_search(center, 1, 0, 0, None, engine, max_geocell_resolution=5)

        assert engine.query.call_args_list[0].args[1] == [compute(center, 5)]
        assert engine.query.call_count == 6

    def test_max_distance_stops_early(self, center):
        """Test that cells beyond max_distance are never queried."""
        engine = Mock(wraps=InMemoryGeocellQueryEngine([north_of(center, 20000, "far")]))

        search = proximity_search(center, 5, 0, 1000, None, engine)

        assert len(search) == 0
        queried = [cell for c in engine.query.call_args_list for cell in c.args[1]]
        assert min(len(cell) for cell in queried) >= 2

    def test_invalid_arguments(self, center):
        """Test that bad arguments fail before any query runs."""
        engine = Mock()

        with pytest.raises(ValueError):
            proximity_search(center, 0, 0, 0, None, engine)
        with pytest.raises(ValueError):
            proximity_search(center, 5, 0, 0, None, engine, max_geocell_resolution=14)
        with pytest.raises(ValueError):
            proximity_search(center, 5, 0, 0, None, engine, max_geocell_resolution=0)
        with pytest.raises(ValueError):
            proximity_search(center, 5, -1, 0, None, engine)

        engine.query.assert_not_called()

    def test_backend_error_propagates(self, center):
        """Test that a failing backend aborts the search."""
        engine = Mock()
        engine.query.side_effect = GeocellBackendError("connection refused")

        with pytest.raises(GeocellBackendError):
            proximity_search(center, 5, 0, 0, None, engine)

    def test_proximity_fetch_returns_list(self, origin, origin_engine):
        """Test the list-returning wrapper."""
        results = proximity_fetch(origin, 2, 0, None, origin_engine)

        assert isinstance(results, list)
        assert [p.key for p in results] == ["p100", "p5000"]


@pytest.mark.unit
class TestSearchContext:
    """Test suite for the ring expansion steps."""

    def test_in_range_bounds(self, center):
        """Test that min is inclusive and max is exclusive."""
        ctx = make_context(center, ["c"], min_distance=100, max_distance=200)

        assert ctx.in_range(100.0)
        assert ctx.in_range(199.9)
        assert not ctx.in_range(99.9)
        assert not ctx.in_range(200.0)

    def test_in_range_unbounded(self, center):
        """Test that max_distance 0 means no upper bound."""
        ctx = make_context(center, ["c"])

        assert ctx.in_range(1e9)

    def test_merge_keeps_tail_bounded(self, origin):
        """Test that merging never holds more than max_results."""
        ctx = make_context(origin, ["c"], max_results=2)

        for meters, key in [(300, "a"), (100, "b"), (200, "c"), (50, "d")]:
            ctx.merge(north_of(origin, meters, key))

        assert [p.key for p in ctx.results] == ["d", "b"]
        assert len(ctx.distances) == len(ctx.keys) == 2

    def test_merge_skips_same_entity(self, origin):
        """Test that an entity seen twice is merged once."""
        ctx = make_context(origin, ["c"])
        place = north_of(origin, 100, "a")

        assert ctx.merge(place)
        assert not ctx.merge(place)
        assert len(ctx.results) == 1

    def test_extend_to_pair_nearest_edge(self):
        """Test that a single cell grows towards its nearest edge."""
        ctx = make_context(Point(lat=-1, lon=-44), ["3"])

        ctx.extend_to_pair()

        assert ctx.sorted_edges[0].direction == NORTH
        assert ctx.cur_cells == ["3", "9"]

    def test_extend_to_pair_skips_missing_neighbours(self):
        """Test that edges leading off the grid are skipped."""
        ctx = make_context(Point(lat=89, lon=-179), ["a"])

        ctx.extend_to_pair()

        assert ctx.cur_cells == ["a", "b"]

    def test_extend_to_square_vertical_pair(self):
        """Test that a vertical pair grows sideways."""
        ctx = make_context(Point(lat=-1, lon=-44), ["3", "9"])

        ctx.extend_to_square()

        assert ctx.cur_cells == ["3", "9", "6", "c"]

    def test_extend_to_square_horizontal_pair(self):
        """Test that a horizontal pair grows up or down."""
        ctx = make_context(Point(lat=-44, lon=-1), ["3", "6"])

        ctx.extend_to_square()

        assert ctx.cur_cells == ["3", "6", "1", "4"]

    def test_extend_to_square_escalates_at_edge(self):
        """Test that a pair with no room to grow moves up a level."""
        ctx = make_context(Point(lat=89, lon=-179), ["aa", "ab"])
        ctx.containing_cell = "aa"
        ctx.sorted_edges = [e for e in ctx.sorted_edges if e.direction in (NORTH, EAST)]

        ctx.extend_to_square()

        assert ctx.cur_cells == ["a"]

    def test_escalate_to_parents(self):
        """Test that a 2x2 square is replaced by its parents."""
        ctx = make_context(Point(lat=1, lon=1), ["c0", "c1", "c2", "c3"])

        ctx.escalate()

        assert ctx.cur_cells == ["c"]
        assert ctx.containing_cell == "c"
        assert not ctx.done

    def test_escalate_to_top_level(self):
        """Test that escalating a top-level cell searches the whole grid."""
        ctx = make_context(Point(lat=1, lon=1), ["c"])

        ctx.escalate()

        assert len(ctx.cur_cells) == 16
        assert ctx.done


@pytest.mark.unit
class TestSearchResults:
    """Test suite for SearchResults."""

    def test_empty(self):
        """Test an empty result set."""
        results = SearchResults()

        assert len(results) == 0
        assert list(results) == []
        assert results.last_distance == NO_RESULTS

    def test_last_distance(self):
        """Test that last_distance is the farthest returned distance."""
        results = SearchResults(results=("a", "b"), distances=(1.0, 2.5), resolution=7)

        assert results.last_distance == 2.5
        assert list(results) == ["a", "b"]
