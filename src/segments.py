"""
Route geometry utilities

Splits route pattern polylines into ~200m segments and snaps GPS positions
onto the nearest segment or stop.
"""

import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

EARTH_RADIUS_M = 6371000

DEFAULT_SEGMENT_LENGTH_M = 200.0
DEFAULT_SNAP_DISTANCE_M = 150.0
DEFAULT_STOP_DISTANCE_M = 80.0


@dataclass(frozen=True)
class SegmentDef:
    """A slice of a route pattern. Coordinates are [lon, lat] pairs."""

    id: str
    route: str
    direction_id: int
    segment_index: int
    start_lat: float
    start_lon: float
    end_lat: float
    end_lon: float
    mid_lat: float
    mid_lon: float
    length_m: float
    coordinates: tuple = field(default=(), compare=False)

    @property
    def geometry(self) -> dict:
        return {"type": "LineString", "coordinates": [list(c) for c in self.coordinates]}

    @classmethod
    def from_row(cls, row) -> "SegmentDef":
        geometry = row.geometry or {}
        return cls(
            id=row.id,
            route=row.route,
            direction_id=row.direction_id,
            segment_index=row.segment_index,
            start_lat=row.start_lat,
            start_lon=row.start_lon,
            end_lat=row.end_lat,
            end_lon=row.end_lon,
            mid_lat=row.mid_lat,
            mid_lon=row.mid_lon,
            length_m=row.length_m,
            coordinates=tuple(tuple(c) for c in geometry.get("coordinates", [])),
        )


@dataclass(frozen=True)
class StopDef:
    """A stop on a route pattern"""

    route: str
    direction_id: int
    stop_sequence: int
    stop_id: str
    lat: float
    lon: float
    stop_name: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "StopDef":
        return cls(
            route=row.route,
            direction_id=row.direction_id,
            stop_sequence=row.stop_sequence,
            stop_id=row.stop_id,
            lat=row.lat,
            lon=row.lon,
            stop_name=row.stop_name,
        )


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth
    Returns distance in meters
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def split_into_segments(
    route: str,
    direction_id: int,
    coordinates: list,
    target_length_m: float = DEFAULT_SEGMENT_LENGTH_M,
) -> list[SegmentDef]:
    """
    Split a polyline into segments of roughly target_length_m.

    A segment is closed as soon as its accumulated length reaches the target
    (so it may run slightly over) or the polyline ends (so the last one may
    be short). Consecutive segments share their boundary vertex.

    Args:
        route: Route short name
        direction_id: Pattern direction (0 or 1)
        coordinates: Polyline as [lon, lat] pairs
        target_length_m: Desired segment length in meters

    Returns:
        Segments in polyline order, with ids "{route}:{direction_id}:{index}"
    """
    if len(coordinates) < 2:
        return []

    segments = []
    seg_coords = [tuple(coordinates[0])]
    seg_length = 0.0
    last = len(coordinates) - 1

    for i in range(1, len(coordinates)):
        prev = coordinates[i - 1]
        curr = tuple(coordinates[i])
        seg_coords.append(curr)
        seg_length += haversine_distance(prev[1], prev[0], curr[1], curr[0])

        if seg_length >= target_length_m or i == last:
            index = len(segments)
            start, end = seg_coords[0], seg_coords[-1]
            mid = seg_coords[len(seg_coords) // 2]
            segments.append(
                SegmentDef(
                    id=f"{route}:{direction_id}:{index}",
                    route=route,
                    direction_id=direction_id,
                    segment_index=index,
                    start_lat=start[1],
                    start_lon=start[0],
                    end_lat=end[1],
                    end_lon=end[0],
                    mid_lat=mid[1],
                    mid_lon=mid[0],
                    length_m=seg_length,
                    coordinates=tuple(seg_coords),
                )
            )
            seg_coords = [curr]
            seg_length = 0.0

    return segments


def join_segments(segments: list[SegmentDef]) -> list[tuple]:
    """Rebuild the original polyline from segments emitted by split_into_segments"""
    coords = []
    for seg in segments:
        coords.extend(seg.coordinates if not coords else seg.coordinates[1:])
    return coords


def haversine_distances(lat: float, lon: float, lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    """Vectorized great circle distance from one point to arrays of points, in meters"""
    lat1, lon1 = np.radians(lat), np.radians(lon)
    lat2, lon2 = np.radians(lats), np.radians(lons)

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    c = 2 * np.arcsin(np.sqrt(a))

    return EARTH_RADIUS_M * c


class CandidateSet:
    """
    Reference items of one route with their coordinates as numpy arrays.

    nearest() scans all candidates at once; np.argmin returns the first
    minimum, so ties go to the item that came first in input order.
    """

    def __init__(self, items: list, lat_attr: str, lon_attr: str):
        self.items = list(items)
        self.lats = np.array([getattr(item, lat_attr) for item in self.items], dtype=float)
        self.lons = np.array([getattr(item, lon_attr) for item in self.items], dtype=float)
        self.directions = np.array(
            [-1 if item.direction_id is None else item.direction_id for item in self.items]
        )

    def __len__(self):
        return len(self.items)

    def nearest(self, lat: float, lon: float, direction_id: Optional[int], max_dist_m: float):
        if not self.items:
            return None

        distances = haversine_distances(lat, lon, self.lats, self.lons)
        if direction_id is not None:
            distances = np.where(self.directions == direction_id, distances, np.inf)

        idx = int(np.argmin(distances))
        if distances[idx] > max_dist_m:
            return None
        return self.items[idx]


def snap_to_segment(
    lat: float,
    lon: float,
    route: str,
    direction_id: Optional[int],
    segments: list[SegmentDef],
    max_dist_m: float = DEFAULT_SNAP_DISTANCE_M,
) -> Optional[str]:
    """
    Find the segment whose midpoint is closest to a GPS position.

    Only segments of the same route are considered, and of the same direction
    when direction_id is known. Ties go to the segment seen first.

    Returns:
        Segment id, or None if nothing lies within max_dist_m
    """
    candidates = CandidateSet([s for s in segments if s.route == route], "mid_lat", "mid_lon")
    seg = candidates.nearest(lat, lon, direction_id, max_dist_m)
    return seg.id if seg else None


def find_nearest_stop(
    lat: float,
    lon: float,
    route: str,
    direction_id: Optional[int],
    stops: list[StopDef],
    max_dist_m: float = DEFAULT_STOP_DISTANCE_M,
) -> Optional[StopDef]:
    """Nearest stop of the route (and direction, if known) within max_dist_m"""
    candidates = CandidateSet([s for s in stops if s.route == route], "lat", "lon")
    return candidates.nearest(lat, lon, direction_id, max_dist_m)


class RouteIndex:
    """
    Reference items bucketed by route so per-position lookups only scan
    candidates of the position's own route.

    Coordinate arrays are built once per route, and input order is preserved
    inside each bucket, so lookups resolve exactly like the flat-list
    functions above.
    """

    def __init__(self, items, lat_attr: str, lon_attr: str):
        buckets = defaultdict(list)
        for item in items:
            buckets[item.route].append(item)
        self.by_route = {
            route: CandidateSet(bucket, lat_attr, lon_attr) for route, bucket in buckets.items()
        }

    @classmethod
    def for_segments(cls, segments: list[SegmentDef]) -> "RouteIndex":
        return cls(segments, "mid_lat", "mid_lon")

    @classmethod
    def for_stops(cls, stops: list[StopDef]) -> "RouteIndex":
        return cls(stops, "lat", "lon")

    def __len__(self):
        return sum(len(bucket) for bucket in self.by_route.values())

    def candidates(self, route: str) -> list:
        bucket = self.by_route.get(route)
        return bucket.items if bucket else []

    def nearest(
        self,
        lat: float,
        lon: float,
        route: str,
        direction_id: Optional[int],
        max_dist_m: float,
    ):
        """Nearest item of the route (and direction, if known) within max_dist_m"""
        bucket = self.by_route.get(route)
        if bucket is None:
            return None
        return bucket.nearest(lat, lon, direction_id, max_dist_m)
