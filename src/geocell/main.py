"""
Geocell Search API
FastAPI application for indexing places and searching them by proximity or
bounding box, backed by a Redis geocell index.
"""
import logging
import os
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from src.geocell import metrics
from src.geocell.bbox import best_bbox_search_cells, bounding_box_fetch
from src.geocell.grid import MAX_GEOCELL_RESOLUTION, compute, decode, generate_geocells
from src.geocell.models import BatchPlaceRequest, BoundingBox, GeocellQuery, Place, Point
from src.geocell.proximity import proximity_search
from src.geocell.query_engine import GeocellBackendError
from src.geocell.redis_client import get_redis_client
from src.geocell.redis_engine import (
    RedisGeocellQueryEngine,
    get_place,
    index_place,
    index_places,
    remove_place,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 10
MAX_SEARCH_RESULTS = 1000


def get_query_engine() -> RedisGeocellQueryEngine:
    return RedisGeocellQueryEngine(get_redis_client())


def category_query(category: Optional[str]) -> Optional[GeocellQuery]:
    """Base query restricting a search to one category."""
    if category is None:
        return None
    return GeocellQuery(base_query="category == categoryParam", parameters=[category])


def make_bbox(north: float, east: float, south: float, west: float) -> BoundingBox:
    try:
        return BoundingBox(north=north, east=east, south=south, west=west)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


# Initialize FastAPI application
app = FastAPI(
    title="Geocell Search",
    description="Proximity and bounding-box search over places using hierarchical geocells",
    version="1.0.0"
)


@app.get("/metrics")
def get_metrics():
    """
    Prometheus metrics endpoint.

    Returns:
        Response: Prometheus-formatted metrics
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
        dict: API status and Redis connection status
    """
    try:
        redis_client = get_redis_client()
        redis_client.ping()
        redis_status = "connected"
        metrics.redis_operations_total.labels(operation="ping", status="success").inc()
    except RedisError:
        redis_status = "disconnected"
        metrics.redis_operations_total.labels(operation="ping", status="error").inc()

    return {"status": "healthy", "redis": redis_status}


@app.post("/v1/places")
def create_place(place: Place):
    """
    Index a place.

    The place is stored under its key and added to the geocell set of each
    of its 13 resolutions, so it can be found by any later search.

    Args:
        place: Place with key, lat, lon and optional properties

    Returns:
        dict: Confirmation with the place key and its geocells

    Raises:
        HTTPException 503: If Redis is unavailable
    """
    start_time = time.time()
    r = get_redis_client()

    try:
        geocells = index_place(r, place)
    except RedisError as exc:
        metrics.place_requests_total.labels(operation="create", status="error").inc()
        raise HTTPException(status_code=503, detail=f"Index unavailable: {exc}")

    metrics.place_requests_total.labels(operation="create", status="success").inc()
    metrics.request_duration_seconds.labels(endpoint="create_place").observe(time.time() - start_time)

    return {
        "message": "Place indexed",
        "key": place.key,
        "geocells": geocells,
    }


@app.post("/v1/places/batch")
def create_places_batch(batch: BatchPlaceRequest):
    """
    Index many places in a single request.

    The batch costs two Redis round-trips: one to load the places already
    stored under its keys, one pipeline for all writes. A key repeated in
    the batch is indexed with its last occurrence.

    Args:
        batch: BatchPlaceRequest containing list of Place objects (max 1000)

    Returns:
        dict: Summary with processed count and timing
    """
    start_time = time.time()
    r = get_redis_client()

    try:
        indexed = index_places(r, batch.places)
    except RedisError as exc:
        metrics.place_requests_total.labels(operation="batch", status="error").inc()
        raise HTTPException(status_code=503, detail=f"Index unavailable: {exc}")

    metrics.place_requests_total.labels(operation="batch", status="success").inc()
    metrics.request_duration_seconds.labels(endpoint="create_places_batch").observe(time.time() - start_time)

    return {
        "message": "Batch processed",
        "total_places": len(batch.places),
        "unique_keys": len(indexed),
        "processing_time_ms": round((time.time() - start_time) * 1000, 2)
    }


@app.get("/v1/places/nearby")
def places_nearby(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    max_results: int = Query(DEFAULT_MAX_RESULTS, gt=0, le=MAX_SEARCH_RESULTS),
    min_distance: float = Query(0, ge=0, description="Inclusive lower bound in meters"),
    max_distance: float = Query(0, ge=0, description="Exclusive upper bound in meters, 0 for none"),
    category: Optional[str] = None,
    max_resolution: int = Query(MAX_GEOCELL_RESOLUTION, ge=1, le=MAX_GEOCELL_RESOLUTION),
):
    """
    Find the places nearest to a point, closest first.

    Process:
    1. Start at the geocell of the point at max_resolution
    2. Widen to neighbouring and then parent cells until enough places are found
    3. Return places ordered by great-circle distance

    Args:
        lat: Latitude of the center
        lon: Longitude of the center
        max_results: Maximum number of places to return
        min_distance: Skip places closer than this (meters)
        max_distance: Skip places at or beyond this (meters, 0 = unbounded)
        category: Only return places of this category
        max_resolution: Resolution of the first searched cell

    Returns:
        dict: Places with their distances, plus the resolution the search ended at

    Raises:
        HTTPException 503: If Redis is unavailable
    """
    start_time = time.time()

    try:
        search = proximity_search(
            center=Point(lat=lat, lon=lon),
            max_results=max_results,
            min_distance=min_distance,
            max_distance=max_distance,
            base_query=category_query(category),
            query_engine=get_query_engine(),
            max_geocell_resolution=max_resolution,
        )
    except GeocellBackendError as exc:
        metrics.search_requests_total.labels(endpoint="nearby", status="error").inc()
        raise HTTPException(status_code=503, detail=str(exc))

    metrics.search_requests_total.labels(endpoint="nearby", status="success").inc()
    metrics.search_result_count.labels(endpoint="nearby").observe(len(search))
    metrics.search_final_resolution.observe(search.resolution)
    metrics.request_duration_seconds.labels(endpoint="places_nearby").observe(time.time() - start_time)

    return {
        "center": {"lat": lat, "lon": lon},
        "results": [
            {**place.model_dump(), "distance_m": round(dist, 2)}
            for place, dist in zip(search.results, search.distances)
        ],
        "count": len(search),
        "last_distance_m": search.last_distance,
        "resolution": search.resolution,
    }


@app.get("/v1/places/within")
def places_within(
    north: float,
    east: float,
    south: float,
    west: float,
    max_results: int = Query(MAX_SEARCH_RESULTS, gt=0, le=MAX_SEARCH_RESULTS),
    category: Optional[str] = None,
):
    """
    Find the places inside a bounding box.

    A box with east < west wraps across the antimeridian.

    Returns:
        dict: Places inside the box and the geocells that were queried
    """
    start_time = time.time()
    bbox = make_bbox(north, east, south, west)

    try:
        places = bounding_box_fetch(
            get_query_engine(),
            bbox,
            base_query=category_query(category),
            max_results=max_results,
        )
    except GeocellBackendError as exc:
        metrics.search_requests_total.labels(endpoint="within", status="error").inc()
        raise HTTPException(status_code=503, detail=str(exc))

    metrics.search_requests_total.labels(endpoint="within", status="success").inc()
    metrics.search_result_count.labels(endpoint="within").observe(len(places))
    metrics.request_duration_seconds.labels(endpoint="places_within").observe(time.time() - start_time)

    return {
        "bbox": bbox.model_dump(),
        "results": [place.model_dump() for place in places],
        "count": len(places),
    }


@app.get("/v1/places/{key}")
def read_place(key: str):
    """
    Get a stored place by key.

    Raises:
        HTTPException 404: If no place has this key
    """
    r = get_redis_client()

    try:
        place = get_place(r, key)
    except RedisError as exc:
        raise HTTPException(status_code=503, detail=f"Index unavailable: {exc}")

    if place is None:
        raise HTTPException(status_code=404, detail=f"Place {key!r} not found")

    return place.model_dump()


@app.delete("/v1/places/{key}")
def delete_place(key: str):
    """
    Remove a place from the index.

    Raises:
        HTTPException 404: If no place has this key
    """
    r = get_redis_client()

    try:
        removed = remove_place(r, key)
    except RedisError as exc:
        metrics.place_requests_total.labels(operation="delete", status="error").inc()
        raise HTTPException(status_code=503, detail=f"Index unavailable: {exc}")

    if not removed:
        metrics.place_requests_total.labels(operation="delete", status="not_found").inc()
        raise HTTPException(status_code=404, detail=f"Place {key!r} not found")

    metrics.place_requests_total.labels(operation="delete", status="success").inc()
    return {"message": "Place removed", "key": key}


@app.get("/v1/geocells")
def geocells_for_point(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    resolution: int = Query(MAX_GEOCELL_RESOLUTION, ge=1, le=MAX_GEOCELL_RESOLUTION),
):
    """
    Get the geocells of a point.

    Returns:
        dict: The cell at the requested resolution, its bounding box, and
            the cells at every resolution (what gets stored on an entity)
    """
    point = Point(lat=lat, lon=lon)
    cell = compute(point, resolution)

    return {
        "geocell": cell,
        "resolution": resolution,
        "bbox": decode(cell).model_dump(),
        "geocells": generate_geocells(point),
    }


@app.get("/v1/cells/bbox")
def cells_for_bbox(north: float, east: float, south: float, west: float):
    """
    Get the geocells that best cover a bounding box.

    Returns:
        dict: Cells to query and their resolutions (two resolutions are
            possible when the box crosses the antimeridian)
    """
    bbox = make_bbox(north, east, south, west)
    cells = best_bbox_search_cells(bbox)

    metrics.search_requests_total.labels(endpoint="cells_bbox", status="success").inc()

    return {
        "bbox": bbox.model_dump(),
        "cells": cells,
        "resolutions": sorted({len(cell) for cell in cells}),
        "crosses_antimeridian": bbox.crosses_antimeridian,
    }
