"""
Per-run accumulators for the daily aggregation

Each aggregator is fed one PositionPoint at a time while the day is streamed
and produces rows for one derived table at the end. Instances are created
per run and never shared, so concurrent runs (or tests) cannot leak state
into each other.
"""

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Optional

import numpy as np

from src.metrics import (
    ReconstructedTrip,
    compute_grade,
    compute_headway_metrics,
    observed_headways,
    percentile,
    reconstruct_trips,
)
from src.segments import (
    DEFAULT_SNAP_DISTANCE_M,
    DEFAULT_STOP_DISTANCE_M,
    RouteIndex,
    SegmentDef,
    StopDef,
)
from src.streaming import PositionPoint

MIN_SEGMENT_HOUR_SAMPLES = 2
MIN_STOP_ARRIVALS = 3
STOP_DEDUPE_WINDOW = timedelta(minutes=3)

# Trips shorter than this are excluded from the average runtime
MIN_RUNTIME_SECS = 60


def hour_floor(ts: datetime) -> datetime:
    return ts.replace(minute=0, second=0, microsecond=0)


class TripGrouper:
    """Groups points by (vehicle, route, direction) in first-seen order"""

    def __init__(self):
        self.groups = {}

    def add(self, point: PositionPoint):
        key = (point.vehicle_id, point.route, point.direction_id)
        self.groups.setdefault(key, []).append(point)

    @property
    def vehicle_ids(self) -> set:
        return {vehicle_id for vehicle_id, _, _ in self.groups}

    def reconstruct(self) -> list[ReconstructedTrip]:
        trips = []
        for points in self.groups.values():
            trips.extend(reconstruct_trips(points))
        return trips


class SegmentSpeedAggregator:
    """
    Buckets speed samples by (segment, UTC hour).

    Only moving positions (speed > 0) that snap onto a segment of their own
    route within the snap radius contribute.
    """

    def __init__(self, segments: list[SegmentDef], max_dist_m: float = DEFAULT_SNAP_DISTANCE_M):
        self.index = RouteIndex.for_segments(segments)
        self.segments_by_id = {seg.id: seg for seg in segments}
        self.max_dist_m = max_dist_m
        self.samples = defaultdict(list)  # (segment_id, hour_start) -> [speed]

    def add(self, point: PositionPoint) -> Optional[str]:
        if point.speed is None or point.speed <= 0:
            return None
        seg = self.index.nearest(
            point.lat, point.lon, point.route, point.direction_id, self.max_dist_m
        )
        if seg is None:
            return None

        self.samples[(seg.id, hour_floor(point.recorded_at))].append(point.speed)
        return seg.id

    def rows(self) -> list[dict]:
        rows = []
        for (segment_id, hour_start), speeds in self.samples.items():
            if len(speeds) < MIN_SEGMENT_HOUR_SAMPLES:
                continue
            seg = self.segments_by_id[segment_id]
            rows.append(
                {
                    "segment_id": segment_id,
                    "route": seg.route,
                    "direction_id": seg.direction_id,
                    "hour_start": hour_start,
                    "avg_speed": round(float(np.mean(speeds)), 1),
                    "median_speed": round(percentile(speeds, 50), 1),
                    "p10_speed": round(percentile(speeds, 10), 1),
                    "p90_speed": round(percentile(speeds, 90), 1),
                    "sample_count": len(speeds),
                }
            )
        return rows


class StopHeadwayAggregator:
    """
    Turns stop proximity detections into per-stop arrival series.

    A vehicle dwelling at a stop is seen several times; detections of the same
    (vehicle, stop) within the dedupe window of the last counted arrival are
    dropped.
    """

    def __init__(
        self,
        stops: list[StopDef],
        max_dist_m: float = DEFAULT_STOP_DISTANCE_M,
        dedupe_window: timedelta = STOP_DEDUPE_WINDOW,
    ):
        self.index = RouteIndex.for_stops(stops)
        self.max_dist_m = max_dist_m
        self.dedupe_window = dedupe_window
        self.arrivals = defaultdict(list)  # (route, direction_id, stop_id) -> [datetime]
        self.last_seen = {}  # (vehicle_id, route, direction_id, stop_id) -> datetime

    def add(self, point: PositionPoint) -> Optional[StopDef]:
        stop = self.index.nearest(
            point.lat, point.lon, point.route, point.direction_id, self.max_dist_m
        )
        if stop is None:
            return None

        stop_key = (point.route, point.direction_id, stop.stop_id)
        dedupe_key = (point.vehicle_id,) + stop_key
        last = self.last_seen.get(dedupe_key)
        if last is not None and point.recorded_at - last < self.dedupe_window:
            return None

        self.last_seen[dedupe_key] = point.recorded_at
        self.arrivals[stop_key].append(point.recorded_at)
        return stop

    def _reference_stop(self, route, direction_id, stop_id) -> Optional[StopDef]:
        for stop in self.index.candidates(route):
            if stop.stop_id != stop_id:
                continue
            if direction_id is None or stop.direction_id == direction_id:
                return stop
        return None

    def rows(self, run_date: date) -> list[dict]:
        rows = []
        for (route, direction_id, stop_id), arrivals in self.arrivals.items():
            if len(arrivals) < MIN_STOP_ARRIVALS:
                continue

            headways = np.asarray(observed_headways(sorted(arrivals)), dtype=float)
            stop = self._reference_stop(route, direction_id, stop_id)

            rows.append(
                {
                    "date": run_date,
                    "route": route,
                    "direction_id": direction_id,
                    "stop_id": stop_id,
                    "stop_name": stop.stop_name if stop else None,
                    "stop_sequence": stop.stop_sequence if stop else 0,
                    "avg_headway_secs": round(float(headways.mean())),
                    # Population standard deviation
                    "headway_std_dev": round(float(headways.std()), 1),
                    "observations": len(arrivals),
                }
            )
        return rows


def route_performance_rows(
    trips: list[ReconstructedTrip],
    run_date: date,
    scheduled_headways: Optional[dict] = None,
) -> list[dict]:
    """
    Compute one RoutePerformanceDaily row per route/direction with trips.

    Args:
        trips: All trips reconstructed for the day
        run_date: Date being aggregated
        scheduled_headways: Optional {(route, direction_id): seconds}

    Returns:
        Rows in first-seen route/direction order
    """
    scheduled_headways = scheduled_headways or {}

    by_route = {}
    for trip in trips:
        by_route.setdefault((trip.route, trip.direction_id), []).append(trip)

    rows = []
    for (route, direction_id), route_trips in by_route.items():
        scheduled = scheduled_headways.get((route, direction_id))
        # Non-positive schedules fall back to the observed median
        if not scheduled or scheduled <= 0:
            scheduled = None
        start_times = sorted(t.started_at for t in route_trips)
        headway = compute_headway_metrics(start_times, scheduled)

        runtimes = [t.runtime_secs for t in route_trips if t.runtime_secs > MIN_RUNTIME_SECS]
        speeds = [t.avg_speed for t in route_trips if t.avg_speed > 0]
        avg_runtime = round(sum(runtimes) / len(runtimes)) if runtimes else None
        avg_speed = round(sum(speeds) / len(speeds), 1) if speeds else None

        ewt = headway.excess_wait_time_secs if headway else None
        adherence = headway.headway_adherence_pct if headway else None

        rows.append(
            {
                "date": run_date,
                "route": route,
                "direction_id": direction_id,
                "trips_observed": len(route_trips),
                "avg_headway_secs": headway.avg_headway_secs if headway else None,
                "scheduled_headway_secs": scheduled,
                "headway_adherence_pct": adherence,
                "awt_secs": headway.awt_secs if headway else None,
                "excess_wait_time_secs": ewt,
                "bunching_pct": headway.bunching_pct if headway else None,
                "gapping_pct": headway.gapping_pct if headway else None,
                "avg_runtime_secs": avg_runtime,
                "avg_commercial_speed": avg_speed,
                "grade": compute_grade(ewt, adherence, avg_speed),
            }
        )
    return rows


def network_summary_row(
    run_date: date,
    route_rows: list[dict],
    active_vehicles: int,
    total_trips: int,
    positions_collected: int,
) -> dict:
    """
    Roll route/direction rows up into the day's network summary.

    Means are unweighted across route/directions. The worst route is the one
    with the highest EWT (first one wins on ties).
    """
    speeds = [r["avg_commercial_speed"] for r in route_rows if r["avg_commercial_speed"] is not None]
    ewts = [r["excess_wait_time_secs"] for r in route_rows if r["excess_wait_time_secs"] is not None]

    worst_route = None
    worst_ewt = None
    for row in route_rows:
        ewt = row["excess_wait_time_secs"]
        if ewt is not None and (worst_ewt is None or ewt > worst_ewt):
            worst_ewt = ewt
            worst_route = row["route"]

    return {
        "date": run_date,
        "active_vehicles": active_vehicles,
        "total_trips": total_trips,
        "avg_commercial_speed": round(sum(speeds) / len(speeds), 1) if speeds else None,
        "avg_excess_wait_time": round(sum(ewts) / len(ewts)) if ewts else None,
        "worst_route": worst_route,
        "worst_route_ewt": worst_ewt,
        "positions_collected": positions_collected,
    }
