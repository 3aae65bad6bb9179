"""
Demo script to show proximity and bounding-box search over geocells.

This script indexes a handful of places around a location and then shows:
1. How a nearby search returns places closest first
2. How min/max distance and category narrow the results
3. Which geocells cover a bounding box, and what is found inside it

Usage:
    python scripts/demo_proximity.py
    python scripts/demo_proximity.py --count 200      # Index more random places
    python scripts/demo_proximity.py --radius 500     # Only show places within 500m
"""
import argparse
import math
import random

import requests

# Berlin Mitte - the center of the demo
DEMO_LOCATION = {
    "lat": 52.5163,
    "lon": 13.3777
}

CATEGORIES = ["cafe", "bar", "museum", "park", "shop"]

API_URL = "http://localhost:8000"

EARTH_RADIUS_METERS = 6371010.0


def random_place(i, spread_m):
    """A place at a random bearing and distance (up to spread_m) from the demo location."""
    bearing = random.uniform(0, 2 * math.pi)
    meters = random.uniform(0, spread_m)
    dlat = math.degrees(meters * math.cos(bearing) / EARTH_RADIUS_METERS)
    dlon = math.degrees(meters * math.sin(bearing) / EARTH_RADIUS_METERS) / math.cos(math.radians(DEMO_LOCATION["lat"]))
    return {
        "key": f"demo_{i:04d}",
        "lat": round(DEMO_LOCATION["lat"] + dlat, 6),
        "lon": round(DEMO_LOCATION["lon"] + dlon, 6),
        "name": f"Place {i}",
        "category": random.choice(CATEGORIES),
    }


def main():
    parser = argparse.ArgumentParser(description="Demo geocell proximity search")
    parser.add_argument("--count", type=int, default=50, help="Number of places to index (default: 50)")
    parser.add_argument("--spread", type=float, default=5000, help="Max distance of indexed places in meters (default: 5000)")
    parser.add_argument("--radius", type=float, default=0, help="Max search distance in meters, 0 for none (default: 0)")
    parser.add_argument("--category", choices=CATEGORIES, help="Only search this category")
    args = parser.parse_args()

    print("=" * 60)
    print("PROXIMITY DEMO - Hierarchical Geocell Search")
    print("=" * 60)
    print()
    print(f"Location: Berlin Mitte ({DEMO_LOCATION['lat']}, {DEMO_LOCATION['lon']})")
    print(f"Places:   {args.count} within {args.spread:.0f}m")
    print(f"Radius:   {args.radius:.0f}m" if args.radius else "Radius:   unbounded")
    print()
    print("The search starts at the finest geocell around the point and widens:")
    print("  1 cell -> 2 cells -> 2x2 cells -> parent cells -> ... -> 16 top-level cells")
    print("and stops as soon as enough places are found.")
    print()
    print("-" * 60)

    # Check API is running
    try:
        response = requests.get(f"{API_URL}/health", timeout=5)
        if response.status_code != 200:
            print("ERROR: API not healthy")
            return
        print("API is running")
    except requests.ConnectionError:
        print("ERROR: Cannot connect to API at", API_URL)
        print("Make sure to run: uvicorn src.geocell.main:app --reload")
        return

    # Index places in one batch
    places = [random_place(i, args.spread) for i in range(1, args.count + 1)]
    response = requests.post(f"{API_URL}/v1/places/batch", json={"places": places})
    data = response.json()
    print(f"Indexed {data['unique_keys']} places in {data['processing_time_ms']}ms")
    print()

    # Cell of the demo location
    response = requests.get(f"{API_URL}/v1/geocells", params=DEMO_LOCATION)
    data = response.json()
    print("GEOCELLS OF THE CENTER:")
    for cell in data["geocells"]:
        print(f"  res {len(cell):2d}: {cell}")
    print()

    # Nearby search
    params = {**DEMO_LOCATION, "max_results": 10, "max_distance": args.radius}
    if args.category:
        params["category"] = args.category
    response = requests.get(f"{API_URL}/v1/places/nearby", params=params)
    data = response.json()

    print("-" * 60)
    print("NEAREST PLACES:")
    for result in data["results"]:
        print(f"  {result['key']}  {result['category']:<7} {result['distance_m']:9.1f}m")
    print()
    print(f"  Found:         {data['count']}")
    print(f"  Farthest:      {data['last_distance_m']:.1f}m")
    print(f"  Stopped at:    resolution {data['resolution']}")
    print()

    # Bounding box around the center
    half_side = args.spread / 4
    dlat = math.degrees(half_side / EARTH_RADIUS_METERS)
    dlon = dlat / math.cos(math.radians(DEMO_LOCATION["lat"]))
    box = {
        "north": DEMO_LOCATION["lat"] + dlat,
        "east": DEMO_LOCATION["lon"] + dlon,
        "south": DEMO_LOCATION["lat"] - dlat,
        "west": DEMO_LOCATION["lon"] - dlon,
    }

    print("-" * 60)
    response = requests.get(f"{API_URL}/v1/cells/bbox", params=box)
    data = response.json()
    print(f"BOX OF {2 * half_side:.0f}m x {2 * half_side:.0f}m:")
    print(f"  Covering cells: {', '.join(data['cells'])}")
    print(f"  Resolution:     {data['resolutions']}")

    response = requests.get(f"{API_URL}/v1/places/within", params=box)
    data = response.json()
    print(f"  Places inside:  {data['count']}")
    print()

    # Clean up
    for place in places:
        requests.delete(f"{API_URL}/v1/places/{place['key']}")
    print(f"Removed {len(places)} demo places")


if __name__ == "__main__":
    main()
