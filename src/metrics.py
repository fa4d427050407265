"""
Trip reconstruction and transit performance metrics

Reconstructs individual bus trips from GPS breadcrumbs and computes
headway-based reliability metrics (AWT/SWT/EWT, adherence, bunching, gapping).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import numpy as np

from src.streaming import PositionPoint

MAX_TRIP_GAP_MINUTES = 10
MIN_TRIP_POSITIONS = 3

# Headway slack allowed before a gap counts as non-adherent (3 min)
ADHERENCE_SLACK_SECS = 180
BUNCHING_FACTOR = 0.5
GAPPING_FACTOR = 1.5

# STCP 2024 network commercial speed, a historic low (km/h)
BASELINE_COMMERCIAL_SPEED_KMH = 15.4

# (grade, max EWT exclusive, min adherence exclusive), best first
GRADE_THRESHOLDS = [
    ("A", 60, 90),
    ("B", 120, 80),
    ("C", 180, 70),
    ("D", 300, 50),
]
GRADE_ORDER = ["A", "B", "C", "D", "F"]


@dataclass(frozen=True)
class ReconstructedTrip:
    vehicle_id: str
    vehicle_num: Optional[str]
    route: str
    trip_id: Optional[str]
    direction_id: Optional[int]
    started_at: datetime
    ended_at: datetime
    runtime_secs: int
    positions: int
    avg_speed: float


@dataclass(frozen=True)
class HeadwayMetrics:
    avg_headway_secs: int
    reference_headway_secs: float
    awt_secs: int
    swt_secs: int
    excess_wait_time_secs: int
    headway_adherence_pct: float  # % within reference + 3 min
    bunching_pct: float  # % below 50% of reference
    gapping_pct: float  # % above 150% of reference


def reconstruct_trips(
    points: list[PositionPoint], max_gap_minutes: float = MAX_TRIP_GAP_MINUTES
) -> list[ReconstructedTrip]:
    """
    Reconstruct trips from the time-ordered points of one vehicle+route+direction.

    A new trip starts when:
    - the trip id changes (only when both consecutive points carry one)
    - the gap between consecutive points exceeds max_gap_minutes

    Trips with fewer than 3 positions are GPS noise and are dropped.

    Args:
        points: Points of a single vehicle/route/direction, sorted by recorded_at
        max_gap_minutes: Largest gap tolerated inside a trip

    Returns:
        Trips in the order they appear in the input
    """
    if len(points) < 2:
        return []

    trips = []
    trip_points = [points[0]]

    for prev, curr in zip(points, points[1:]):
        gap_minutes = (curr.recorded_at - prev.recorded_at).total_seconds() / 60
        trip_changed = bool(curr.trip_id and prev.trip_id and curr.trip_id != prev.trip_id)

        if trip_changed or gap_minutes > max_gap_minutes:
            if len(trip_points) >= MIN_TRIP_POSITIONS:
                trips.append(_finalize_trip(trip_points))
            trip_points = [curr]
        else:
            trip_points.append(curr)

    if len(trip_points) >= MIN_TRIP_POSITIONS:
        trips.append(_finalize_trip(trip_points))

    return trips


def _finalize_trip(points: list[PositionPoint]) -> ReconstructedTrip:
    first, last = points[0], points[-1]
    speeds = [p.speed for p in points if p.speed is not None and p.speed >= 0]
    avg_speed = sum(speeds) / len(speeds) if speeds else 0.0

    return ReconstructedTrip(
        vehicle_id=first.vehicle_id,
        vehicle_num=first.vehicle_num,
        route=first.route,
        trip_id=first.trip_id,
        direction_id=first.direction_id,
        started_at=first.recorded_at,
        ended_at=last.recorded_at,
        runtime_secs=round((last.recorded_at - first.recorded_at).total_seconds()),
        positions=len(points),
        avg_speed=round(avg_speed, 1),
    )


def observed_headways(event_times: list[datetime]) -> list[float]:
    """Seconds between consecutive events (input must be sorted)"""
    return [(b - a).total_seconds() for a, b in zip(event_times, event_times[1:])]


def compute_headway_metrics(
    start_times: list[datetime], scheduled_headway_secs: Optional[float] = None
) -> Optional[HeadwayMetrics]:
    """
    Compute headway-based reliability metrics from sorted trip start times.

    AWT models passengers arriving uniformly in time: sum(H^2) / (2 * sum(H)),
    so long gaps pull it up. SWT is half the reference headway and EWT is the
    (non-negative) difference. The reference headway is the scheduled one
    when known, otherwise the median observed headway.

    Args:
        start_times: Trip start timestamps, sorted ascending
        scheduled_headway_secs: Planned headway in seconds (None if unknown)

    Returns:
        HeadwayMetrics, or None with fewer than 2 starts
    """
    headways = observed_headways(start_times)
    if not headways:
        return None

    total = sum(headways)
    if total <= 0:
        return None

    awt = sum(h * h for h in headways) / (2 * total)

    if scheduled_headway_secs and scheduled_headway_secs > 0:
        reference = float(scheduled_headway_secs)
    else:
        # Upper middle element for even counts
        reference = sorted(headways)[len(headways) // 2]

    swt = reference / 2
    ewt = max(0.0, awt - swt)

    count = len(headways)
    adherent = sum(1 for h in headways if 0 <= h <= reference + ADHERENCE_SLACK_SECS)
    bunched = sum(1 for h in headways if h < reference * BUNCHING_FACTOR)
    gapped = sum(1 for h in headways if h > reference * GAPPING_FACTOR)

    return HeadwayMetrics(
        avg_headway_secs=round(total / count),
        reference_headway_secs=reference,
        awt_secs=round(awt),
        swt_secs=round(swt),
        excess_wait_time_secs=round(ewt),
        headway_adherence_pct=round(adherent / count * 100, 1),
        bunching_pct=round(bunched / count * 100, 1),
        gapping_pct=round(gapped / count * 100, 1),
    )


def percentile(values: list[float], p: float) -> float:
    """Linear-interpolation percentile (p in 0-100); 0 for an empty list"""
    if not values:
        return 0.0
    return float(np.percentile(np.asarray(values, dtype=float), p))


def compute_grade(
    ewt: Optional[float], adherence: Optional[float], speed: Optional[float] = None
) -> str:
    """
    Assign a letter grade from EWT, headway adherence and commercial speed.

    The grade is the best one whose EWT AND adherence thresholds both hold
    (A: EWT < 60s and adherence > 90%, B: < 120s and > 80%, C: < 180s and
    > 70%, D: < 300s and > 50%, otherwise F). A route running well below the
    15.4 km/h network baseline is capped: below 65% of it at D, below 85% at C.

    Returns:
        "A"-"F", or "N/A" when EWT or adherence is unknown
    """
    if ewt is None or adherence is None:
        return "N/A"

    grade = "F"
    for letter, max_ewt, min_adherence in GRADE_THRESHOLDS:
        if ewt < max_ewt and adherence > min_adherence:
            grade = letter
            break

    if speed is not None:
        if speed < BASELINE_COMMERCIAL_SPEED_KMH * 0.65:
            grade = _cap_grade(grade, "D")
        elif speed < BASELINE_COMMERCIAL_SPEED_KMH * 0.85:
            grade = _cap_grade(grade, "C")

    return grade


def _cap_grade(grade: str, cap: str) -> str:
    return GRADE_ORDER[max(GRADE_ORDER.index(grade), GRADE_ORDER.index(cap))]
